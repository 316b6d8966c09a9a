"""Flow document models and per-action configuration."""

from . import models
from .flow import Flow, FlowEdge, FlowNode, TargetLocator

__all__ = ["models", "Flow", "FlowEdge", "FlowNode", "TargetLocator"]
