"""HTTP control surface for replay runs.

Runs execute on a dedicated event loop thread so they keep progressing
between requests; request handlers hop onto that loop through ``_run``.
"""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Optional

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from replay.service import ReplayService

from .config import load_config
from .errors import IllegalTransition, ReplayError, UnknownRun, ValidationError
from .flow_store import FileFlowStore
from .playwright_agent import PlaywrightDomAgent

app = Flask(__name__)
log = logging.getLogger(__name__)

LOOP = asyncio.new_event_loop()
_loop_thread: Optional[threading.Thread] = None
_loop_lock = threading.Lock()

_service: Optional[ReplayService] = None

_STATUS_CODES = {
    ValidationError: 400,
    UnknownRun: 404,
    IllegalTransition: 409,
}


def _ensure_loop() -> None:
    global _loop_thread
    with _loop_lock:
        if _loop_thread is None or not _loop_thread.is_alive():
            _loop_thread = threading.Thread(target=LOOP.run_forever, name="replay-loop", daemon=True)
            _loop_thread.start()


def _run(coro):
    _ensure_loop()
    return asyncio.run_coroutine_threadsafe(coro, LOOP).result()


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    return fn(*args)


def _get_service() -> ReplayService:
    global _service
    if _service is None:
        config = load_config()
        agent = _run(PlaywrightDomAgent.launch(headless=config.headless, action_timeout_ms=config.action_timeout_ms))
        _service = ReplayService(agent, config=config, flow_store=FileFlowStore(config.log_root), isolate_tabs=True)
    return _service


@atexit.register
def _shutdown_service() -> None:  # pragma: no cover - shutdown path
    service = _service
    if service is None or not LOOP.is_running():
        return
    try:
        _run(service.shutdown())
        close = getattr(service.agent, "close", None)
        if close is not None:
            _run(close())
    except Exception as exc:
        log.debug("Replay service shutdown failed: %s", exc)


@app.errorhandler(ReplayError)
def handle_replay_error(error: ReplayError):
    status = next((code for cls, code in _STATUS_CODES.items() if isinstance(error, cls)), 500)
    return jsonify({"error": error.to_dict()}), status


@app.errorhandler(Exception)
def handle_exception(error):  # pragma: no cover - defensive handler
    if isinstance(error, HTTPException):
        return jsonify({"error": {"code": error.name, "message": error.description}}), error.code
    correlation_id = str(uuid.uuid4())[:8]
    log.exception("[%s] Uncaught exception: %s", correlation_id, error)
    return jsonify({"error": {"code": "INTERNAL", "message": str(error), "correlation_id": correlation_id}}), 500


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", code="INVALID_REQUEST")
    return data


@app.post("/runs")
def start_run():
    data = _json_body()
    flow = data.get("flow") or data.get("flowId") or data.get("flow_id")
    if not flow:
        raise ValidationError("Request needs 'flow' or 'flowId'", code="INVALID_REQUEST")
    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        raise ValidationError("'variables' must be an object", code="INVALID_REQUEST")
    service = _get_service()
    run_id = _run(service.run(flow, variables, run_id=data.get("runId")))
    return jsonify({"run_id": run_id}), 202


@app.get("/runs/<run_id>")
def run_status(run_id: str):
    service = _get_service()
    return jsonify(_run(_call(service.status, run_id)))


def _control(run_id: str, operation: str):
    service = _get_service()
    _run(_call(getattr(service, operation), run_id))
    return jsonify(_run(_call(service.status, run_id)))


@app.post("/runs/<run_id>/pause")
def pause_run(run_id: str):
    return _control(run_id, "pause")


@app.post("/runs/<run_id>/resume")
def resume_run(run_id: str):
    return _control(run_id, "resume")


@app.post("/runs/<run_id>/cancel")
def cancel_run(run_id: str):
    return _control(run_id, "cancel")


@app.get("/runs/<run_id>/events")
def run_events(run_id: str):
    service = _get_service()
    events = _run(_call(service.events, run_id))
    body = "".join(json.dumps(event, ensure_ascii=False, default=str) + "\n" for event in events)
    return Response(body, mimetype="application/x-ndjson")


@app.get("/actions")
def list_actions():
    return jsonify(_get_service().registry.schema())


@app.get("/healthz")
def healthz():
    return jsonify({"ok": True})


def main(host: str = "127.0.0.1", port: int = 7000) -> None:  # pragma: no cover - manual entry point
    logging.basicConfig(level=logging.INFO)
    app.run(host=host, port=port, threaded=True)
