from __future__ import annotations

import asyncio
import logging
from time import monotonic
from typing import Any, Awaitable, Callable, NoReturn

import httpx

from kpi_engine.datasources.base import ExecutionHandle, StatementResult, StatementState
from kpi_engine.errors import (
    ConfigurationError,
    IntegrityViolationError,
    QueryExecutionFailedError,
    RemoteRejectedError,
    RemoteUnavailableError,
    StatementTimeoutError,
)
from kpi_engine.settings import Settings

logger = logging.getLogger("uvicorn.error")

_STATEMENTS_PATH = "/api/2.0/sql/statements"


def _normalize_host(host: str) -> str:
    host = host.strip().rstrip("/")
    if host and "://" not in host:
        host = f"https://{host}"
    return host


def _remote_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or "no response body"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error_code") or body)
    return str(body)


def _object(value: Any, *, field: str, statement_id: str | None = None) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise IntegrityViolationError(
            f"Warehouse returned a non-object '{field}'",
            details={"statement_id": statement_id, "field": field},
        )
    return value


def _parse_handle(body: Any, *, statement_id: str | None = None) -> ExecutionHandle:
    if not isinstance(body, dict):
        raise IntegrityViolationError("Warehouse returned a non-object statement payload")
    resolved_id = body.get("statement_id") or statement_id
    if not resolved_id:
        raise IntegrityViolationError("Warehouse did not return statement_id")
    resolved_id = str(resolved_id)

    status = _object(body.get("status"), field="status", statement_id=resolved_id)
    raw_state = status.get("state")
    try:
        state = StatementState(raw_state)
    except ValueError as exc:
        raise IntegrityViolationError(
            f"Warehouse reported unknown statement state '{raw_state}'",
            details={"statement_id": resolved_id},
        ) from exc

    error = _object(status.get("error"), field="status.error", statement_id=resolved_id)
    result_payload = None
    if state is StatementState.SUCCEEDED and "result" in body:
        result_payload = _object(body["result"], field="result", statement_id=resolved_id)
    message = error.get("message")
    code = error.get("error_code")
    return ExecutionHandle(
        statement_id=resolved_id,
        state=state,
        result_payload=result_payload,
        manifest=body.get("manifest") if isinstance(body.get("manifest"), dict) else None,
        error_message=str(message) if message is not None else None,
        error_code=str(code) if code is not None else None,
    )


def _manifest_columns(manifest: dict[str, Any] | None) -> list[str]:
    schema = (manifest or {}).get("schema")
    columns = schema.get("columns") if isinstance(schema, dict) else None
    if not isinstance(columns, list):
        return []
    return [str(column.get("name")) for column in columns if isinstance(column, dict)]


class DatabricksStatementClient:
    """Drives the Databricks SQL Statement Execution API: submit, poll, cancel.

    The deadline covers submit, polling and result chunks. Every request is bounded by
    whatever is left of it, so the only work past the deadline is one cancel, itself
    bounded by ``http_timeout_seconds``.
    """

    def __init__(
        self,
        *,
        host: str,
        token: str,
        warehouse_id: str,
        wait_timeout: str = "0s",
        include_statement_in_errors: bool = False,
        http_timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._host = _normalize_host(host)
        self._token = token
        self._warehouse_id = warehouse_id
        self._wait_timeout = wait_timeout
        self._include_statement_in_errors = include_statement_in_errors
        self._http_timeout_seconds = http_timeout_seconds
        self._transport = transport
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> DatabricksStatementClient:
        return cls(
            host=settings.databricks_host,
            token=settings.databricks_token,
            warehouse_id=settings.warehouse_id,
            wait_timeout=settings.statement_wait_timeout,
            include_statement_in_errors=settings.environment != "production",
            http_timeout_seconds=settings.statement_http_timeout_seconds,
            transport=transport,
        )

    async def execute(
        self,
        *,
        statement: str,
        poll_interval_seconds: float,
        deadline_seconds: float,
        correlation_id: str | None = None,
    ) -> StatementResult:
        self._assert_configured()
        deadline = self._clock() + deadline_seconds
        async with self._http_client() as client:
            handle = await self.submit(client, statement=statement, correlation_id=correlation_id, deadline=deadline)
            poll_count = 0
            while not handle.state.is_terminal:
                remaining = deadline - self._clock()
                if remaining > 0:
                    await self._sleep(min(poll_interval_seconds, remaining))
                if self._clock() >= deadline:
                    await self._expire(client, handle=handle, deadline_seconds=deadline_seconds, correlation_id=correlation_id)
                try:
                    handle = await self.poll(client, statement_id=handle.statement_id, deadline=deadline)
                except StatementTimeoutError:
                    await self._expire(client, handle=handle, deadline_seconds=deadline_seconds, correlation_id=correlation_id)
                poll_count += 1
                logger.debug(
                    "engine.statement.poll | %s",
                    {
                        "correlation_id": correlation_id,
                        "statement_id": handle.statement_id,
                        "state": handle.state.value,
                        "poll_count": poll_count,
                    },
                )
            return await self._finish(
                client,
                handle=handle,
                poll_count=poll_count,
                deadline=deadline,
                correlation_id=correlation_id,
            )

    async def submit(
        self,
        client: httpx.AsyncClient,
        *,
        statement: str,
        correlation_id: str | None = None,
        deadline: float | None = None,
    ) -> ExecutionHandle:
        payload = {
            "statement": statement,
            "warehouse_id": self._warehouse_id,
            "wait_timeout": self._wait_timeout,
            "on_wait_timeout": "CONTINUE",
            "disposition": "INLINE",
            "format": "JSON_ARRAY",
        }
        response = await self._send(client, "POST", _STATEMENTS_PATH, phase="submit", deadline=deadline, json=payload)
        self._raise_for_status(response, phase="submit", statement=statement)
        handle = _parse_handle(self._json(response, phase="submit"))
        logger.info(
            "engine.statement.submit | %s",
            {
                "correlation_id": correlation_id,
                "statement_id": handle.statement_id,
                "state": handle.state.value,
            },
        )
        if handle.state is StatementState.FAILED:
            raise RemoteRejectedError(
                f"Warehouse rejected the statement: {handle.error_message or 'no message'}",
                details=self._error_details(handle, statement=statement),
            )
        return handle

    async def poll(
        self,
        client: httpx.AsyncClient,
        *,
        statement_id: str,
        deadline: float | None = None,
    ) -> ExecutionHandle:
        response = await self._send(
            client,
            "GET",
            f"{_STATEMENTS_PATH}/{statement_id}",
            phase="poll",
            deadline=deadline,
        )
        self._raise_for_status(response, phase="poll")
        return _parse_handle(self._json(response, phase="poll"), statement_id=statement_id)

    async def cancel(
        self,
        client: httpx.AsyncClient,
        *,
        statement_id: str,
        correlation_id: str | None = None,
    ) -> bool:
        log_payload = {"correlation_id": correlation_id, "statement_id": statement_id}
        try:
            response = await asyncio.wait_for(
                client.post(f"{_STATEMENTS_PATH}/{statement_id}/cancel"),
                timeout=self._http_timeout_seconds,
            )
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.warning(
                "engine.statement.cancel_failed | %s",
                {**log_payload, "reason": exc.__class__.__name__},
            )
            return False
        if response.status_code >= 400:
            logger.warning(
                "engine.statement.cancel_failed | %s",
                {**log_payload, "http_status": response.status_code},
            )
            return False
        logger.info("engine.statement.cancel | %s", log_payload)
        return True

    async def _expire(
        self,
        client: httpx.AsyncClient,
        *,
        handle: ExecutionHandle,
        deadline_seconds: float,
        correlation_id: str | None,
    ) -> NoReturn:
        await self.cancel(client, statement_id=handle.statement_id, correlation_id=correlation_id)
        raise StatementTimeoutError(
            f"Statement did not finish within {deadline_seconds:g}s",
            details={"statement_id": handle.statement_id, "last_state": handle.state.value},
        )

    async def _finish(
        self,
        client: httpx.AsyncClient,
        *,
        handle: ExecutionHandle,
        poll_count: int,
        deadline: float,
        correlation_id: str | None,
    ) -> StatementResult:
        if handle.state is not StatementState.SUCCEEDED:
            raise QueryExecutionFailedError(
                f"Statement ended in state {handle.state.value}: {handle.error_message or 'no message'}",
                details=self._error_details(handle),
            )
        rows = await self._collect_rows(client, handle=handle, deadline=deadline)
        result = StatementResult(
            statement_id=handle.statement_id,
            state=handle.state,
            columns=_manifest_columns(handle.manifest),
            rows=rows,
            poll_count=poll_count,
        )
        logger.info(
            "engine.statement.complete | %s",
            {
                "correlation_id": correlation_id,
                "statement_id": result.statement_id,
                "poll_count": poll_count,
                "row_count": result.row_count,
            },
        )
        return result

    async def _collect_rows(
        self,
        client: httpx.AsyncClient,
        *,
        handle: ExecutionHandle,
        deadline: float | None = None,
    ) -> list[list[Any]]:
        payload = handle.result_payload
        if payload is None:
            raise IntegrityViolationError(
                "Statement SUCCEEDED without a result payload",
                details={"statement_id": handle.statement_id},
            )
        data = payload.get("data_array")
        if data is None:
            # an empty result set carries row_count 0 and no data_array
            if payload.get("row_count") == 0:
                return []
            raise IntegrityViolationError(
                "Statement SUCCEEDED without result rows",
                details={"statement_id": handle.statement_id},
            )
        if not isinstance(data, list):
            raise IntegrityViolationError(
                "Result rows are not an array",
                details={"statement_id": handle.statement_id},
            )

        rows = list(data)
        seen_links: set[str] = set()
        next_link = payload.get("next_chunk_internal_link")
        while next_link:
            if not isinstance(next_link, str) or next_link in seen_links:
                raise IntegrityViolationError(
                    "Result chunk link is invalid or repeats an earlier chunk",
                    details={"statement_id": handle.statement_id, "chunks_fetched": len(seen_links)},
                )
            seen_links.add(next_link)
            response = await self._send(client, "GET", next_link, phase="fetch_chunk", deadline=deadline)
            self._raise_for_status(response, phase="fetch_chunk")
            chunk = self._json(response, phase="fetch_chunk")
            chunk_rows = chunk.get("data_array") if isinstance(chunk, dict) else None
            if not isinstance(chunk_rows, list):
                raise IntegrityViolationError(
                    "Result chunk arrived without rows",
                    details={"statement_id": handle.statement_id},
                )
            rows.extend(chunk_rows)
            next_link = chunk.get("next_chunk_internal_link")
        return rows

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        phase: str,
        deadline: float | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        timeout = self._http_timeout_seconds
        bounded_by_deadline = False
        if deadline is not None:
            remaining = max(0.0, deadline - self._clock())
            if remaining < timeout:
                timeout = remaining
                bounded_by_deadline = True
        try:
            return await asyncio.wait_for(client.request(method, url, json=json), timeout=timeout)
        except TimeoutError as exc:
            if bounded_by_deadline:
                raise StatementTimeoutError(
                    f"Databricks {phase} request ran past the statement deadline",
                    details={"phase": phase},
                ) from exc
            raise RemoteUnavailableError(
                f"Databricks {phase} request timed out after {timeout:g}s",
                details={"phase": phase},
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteUnavailableError(
                f"Databricks {phase} request failed: {exc.__class__.__name__}",
                details={"phase": phase},
            ) from exc

    def _raise_for_status(self, response: httpx.Response, *, phase: str, statement: str | None = None) -> None:
        if response.status_code < 400:
            return
        message = f"Databricks {phase} failed with HTTP {response.status_code}: {_remote_message(response)}"
        details: dict[str, Any] = {"phase": phase, "http_status": response.status_code}
        if response.status_code >= 500 or response.status_code == 429:
            raise RemoteUnavailableError(message, details=details)
        if statement is not None and self._include_statement_in_errors:
            details["statement"] = statement
        raise RemoteRejectedError(message, details=details)

    def _json(self, response: httpx.Response, *, phase: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise IntegrityViolationError(
                f"Databricks {phase} returned a non-JSON body",
                details={"phase": phase},
            ) from exc

    def _error_details(self, handle: ExecutionHandle, *, statement: str | None = None) -> dict[str, Any]:
        details: dict[str, Any] = {
            "statement_id": handle.statement_id,
            "state": handle.state.value,
            "remote_error_code": handle.error_code,
        }
        if statement is not None and self._include_statement_in_errors:
            details["statement"] = statement
        return details

    def _assert_configured(self) -> None:
        if self._host and self._token and self._warehouse_id:
            return
        raise ConfigurationError(
            "Missing Databricks configuration",
            details={
                "has_host": bool(self._host),
                "has_token": bool(self._token),
                "has_warehouse_id": bool(self._warehouse_id),
            },
        )

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._host,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/json",
            },
            timeout=self._http_timeout_seconds,
            transport=self._transport,
        )
