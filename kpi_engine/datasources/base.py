from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class StatementState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    CLOSED = "CLOSED"

    @property
    def is_terminal(self) -> bool:
        return self not in (StatementState.PENDING, StatementState.RUNNING)


@dataclass(slots=True)
class ExecutionHandle:
    statement_id: str
    state: StatementState
    result_payload: dict[str, Any] | None = None
    manifest: dict[str, Any] | None = None
    error_message: str | None = None
    error_code: str | None = None


@dataclass(slots=True)
class StatementResult:
    statement_id: str
    state: StatementState
    columns: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)
    poll_count: int = 0

    @property
    def row_count(self) -> int:
        return len(self.rows)


class StatementExecutor(Protocol):
    async def execute(
        self,
        *,
        statement: str,
        poll_interval_seconds: float,
        deadline_seconds: float,
        correlation_id: str | None = None,
    ) -> StatementResult: ...
