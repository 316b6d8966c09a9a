"""Command line entry point for running recorded flows."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List

import requests

from engine.config import load_config
from engine.errors import ReplayError
from engine.flow_store import FileFlowStore, parse_flow
from engine.registry import build_default_registry
from engine.scheduler import RunStatus, validate_flow

from .dsl.flow import Flow
from .service import ReplayService

DEFAULT_SERVER = "http://localhost:7000"


def load_flow(path: Path) -> Flow:
    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError("flow file must contain a JSON object")
    return parse_flow(data)


def parse_variables(pairs: List[str]) -> Dict[str, Any]:
    """``name=value`` pairs; values that parse as JSON keep their type."""

    variables: Dict[str, Any] = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"--var expects name=value, got '{pair}'")
        try:
            value: Any = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        variables[name.strip()] = value
    return variables


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flow-replay", description="Replay recorded browser flows")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run a flow in a local browser")
    run.add_argument("flow", help="Path to flow JSON file")
    run.add_argument("--var", action="append", default=[], metavar="NAME=VALUE", help="Initial variable")
    run.add_argument("--config", type=Path, default=None, help="TOML file with a [replay] table")
    run.add_argument("--headed", action="store_true", help="Show the browser window")

    check = commands.add_parser("validate", help="Check a flow's structure without running it")
    check.add_argument("flow", help="Path to flow JSON file")

    submit = commands.add_parser("submit", help="Start a flow on a running replay server")
    submit.add_argument("flow", help="Path to flow JSON file")
    submit.add_argument("--var", action="append", default=[], metavar="NAME=VALUE", help="Initial variable")
    submit.add_argument("--server", default=DEFAULT_SERVER, help="Replay server base URL")
    submit.add_argument(
        "--interval",
        type=float,
        default=1.0,
        help="Polling interval in seconds while waiting for completion",
    )

    serve = commands.add_parser("serve", help="Start the HTTP control server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=7000)
    return parser


async def _run_local(flow: Flow, variables: Dict[str, Any], config_path: Path | None, headed: bool) -> Dict[str, Any]:
    from engine.playwright_agent import PlaywrightDomAgent

    config = load_config(config_path)
    if headed:
        config.headless = False
    agent = await PlaywrightDomAgent.launch(headless=config.headless, action_timeout_ms=config.action_timeout_ms)
    try:
        service = ReplayService(agent, config=config, flow_store=FileFlowStore(config.log_root))
        run_id = await service.run(flow, variables)
        summary = await service.wait(run_id)
    finally:
        await agent.close()
    return summary.as_dict()


def _submit(args: argparse.Namespace, parser: argparse.ArgumentParser, flow: Flow, variables: Dict[str, Any]) -> int:
    try:
        response = requests.post(
            f"{args.server}/runs",
            json={"flow": flow.to_wire(), "variables": variables},
            timeout=30,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        parser.error(f"Failed to start run: {exc}")

    run_id = response.json().get("run_id")
    if not run_id:
        parser.error("replay server response missing run identifier")

    status_url = f"{args.server}/runs/{run_id}"
    while True:
        try:
            status_resp = requests.get(status_url, timeout=30)
            status_resp.raise_for_status()
        except requests.RequestException as exc:
            parser.error(f"Failed to poll run status: {exc}")

        status_data = status_resp.json()
        state = str(status_data.get("status", "")).lower()
        if state in {"completed", "failed", "cancelled"}:
            print(json.dumps(status_data.get("summary", status_data), indent=2, ensure_ascii=False))
            return 0 if state == "completed" else 1
        time.sleep(max(args.interval, 0.1))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if args.command == "serve":
        from engine.server import main as serve

        serve(host=args.host, port=args.port)
        return 0

    flow_path = Path(args.flow)
    if not flow_path.exists():
        parser.error(f"Flow file {flow_path} does not exist")

    try:
        flow = load_flow(flow_path)
        variables = parse_variables(getattr(args, "var", []))
    except (ValueError, ReplayError) as exc:
        parser.error(f"Failed to load flow: {exc}")

    if args.command == "validate":
        try:
            plan = validate_flow(flow, build_default_registry())
        except ReplayError as exc:
            print(json.dumps(exc.to_dict(), indent=2, ensure_ascii=False))
            return 2
        print(json.dumps({"flow_id": flow.id, "entry": plan.entry, "nodes": len(plan.nodes)}, indent=2))
        return 0

    if args.command == "submit":
        return _submit(args, parser, flow, variables)

    try:
        summary = asyncio.run(_run_local(flow, variables, args.config, args.headed))
    except ReplayError as exc:
        print(json.dumps(exc.to_dict(), indent=2, ensure_ascii=False))
        return 2
    print(json.dumps(summary, indent=2, ensure_ascii=False, default=str))
    return 0 if summary["status"] == RunStatus.COMPLETED.value else 1


if __name__ == "__main__":
    raise SystemExit(main())
