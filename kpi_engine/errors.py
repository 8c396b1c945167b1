from __future__ import annotations

import uuid
from typing import Any


class EngineError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        error_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.error_id = error_id or str(uuid.uuid4())
        self.details = details or {}


class InvalidRequestError(EngineError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=400, code="invalid_request", message=message, details=details)


class ConfigurationError(EngineError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=500, code="configuration_error", message=message, details=details)


class RemoteRejectedError(EngineError):
    """The warehouse refused the statement at submission time."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=502, code="remote_rejected", message=message, details=details)


class RemoteUnavailableError(EngineError):
    """The warehouse could not be reached, or answered with a server-side failure."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=503, code="remote_unavailable", message=message, details=details)


class QueryExecutionFailedError(EngineError):
    """The statement was accepted but ended FAILED, CANCELED or CLOSED."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=502, code="query_execution_failed", message=message, details=details)


class StatementTimeoutError(EngineError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=504, code="timeout", message=message, details=details)


class IntegrityViolationError(EngineError):
    """The warehouse answered in a shape its own contract rules out."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=502, code="integrity_violation", message=message, details=details)
