"""Error taxonomy shared by the selector engine, action registry and scheduler."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ReplayError(Exception):
    """Base class for every failure raised while replaying a flow."""

    code = "REPLAY_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        node_id: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}
        self.node_id = node_id

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.node_id:
            payload["node_id"] = self.node_id
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ElementNotFound(ReplayError):
    code = "ELEMENT_NOT_FOUND"
    retryable = True


class ActionTimeout(ReplayError):
    code = "TIMEOUT"
    retryable = True


class ValidationError(ReplayError):
    """Malformed configuration, unresolved variable or malformed flow."""

    code = "VALIDATION"
    retryable = False


class ExecutionError(ReplayError):
    code = "EXECUTION_ERROR"
    retryable = False


class RunCancelled(ReplayError):
    code = "CANCELLED"
    retryable = False


class IllegalTransition(ReplayError):
    """Raised when a run is asked to move between incompatible states."""

    code = "ILLEGAL_TRANSITION"
    retryable = False


class UnknownRun(ReplayError):
    code = "UNKNOWN_RUN"
    retryable = False
