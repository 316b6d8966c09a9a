"""Selector engine, action registry and flow scheduler."""
