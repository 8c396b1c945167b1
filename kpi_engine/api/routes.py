from __future__ import annotations

import logging
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, TypeVar

from fastapi import APIRouter, Body, Header
from pydantic import BaseModel, ValidationError

from kpi_engine.errors import EngineError, InvalidRequestError
from kpi_engine.schemas import KpiQueryRequest, KpiQueryResponse, OptionsRequest, OptionsResponse, PingResponse
from kpi_engine.services.pipeline import KpiPipeline
from kpi_engine.settings import get_settings

router = APIRouter()
_settings = get_settings()
_pipeline = KpiPipeline(_settings)
logger = logging.getLogger("uvicorn.error")

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def _sanitize_error_message(message: str) -> str:
    if _settings.environment == "production":
        return "Internal processing error"
    lowered = message.lower()
    if "bearer" in lowered or "token" in lowered or (_settings.databricks_host and _settings.databricks_host in message):
        return "Internal processing error"
    return message


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_payload(model: type[_ModelT], payload: dict[str, Any] | None) -> _ModelT:
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        raise InvalidRequestError("Malformed request", details={"errors": errors}) from exc


def _audit_log(
    *,
    operation: str,
    status: str,
    duration_ms: int,
    subject: str | None = None,
    error_code: str | None = None,
    correlation_id: str | None = None,
) -> None:
    logger.info(
        "engine.audit.execution | %s",
        {
            "operation": operation,
            "subject": subject,
            "status": status,
            "duration_ms": duration_ms,
            "error_code": error_code,
            "correlation_id": correlation_id,
        },
    )


def _health_payload() -> dict[str, Any]:
    return {"ok": True, "status": "ok", "service": "kpi-engine", "version": _settings.api_version, "now": _now_iso()}


@router.get("/health")
async def health() -> dict[str, Any]:
    return _health_payload()


@router.get("/api/query")
async def query_health() -> dict[str, Any]:
    return _health_payload()


@router.post("/api/query", response_model=KpiQueryResponse | PingResponse)
async def query_kpi(
    payload: dict[str, Any] | None = Body(default=None),
    x_correlation_id: str | None = Header(default=None),
) -> KpiQueryResponse | PingResponse:
    if payload and payload.get("ping") is True:
        return PingResponse(now=_now_iso(), version=_settings.api_version, received=payload)

    request = _parse_payload(KpiQueryRequest, payload)
    started = perf_counter()
    try:
        result = await _pipeline.execute_kpi(request=request, correlation_id=x_correlation_id)
        _audit_log(
            operation="kpi.query",
            subject=request.kpi,
            status="ok",
            duration_ms=max(0, int((perf_counter() - started) * 1000)),
            correlation_id=x_correlation_id,
        )
        return KpiQueryResponse(version=_settings.api_version, result=result)
    except EngineError as exc:
        _audit_log(
            operation="kpi.query",
            subject=request.kpi,
            status="timeout" if exc.code == "timeout" else "error",
            duration_ms=max(0, int((perf_counter() - started) * 1000)),
            error_code=exc.code,
            correlation_id=x_correlation_id,
        )
        raise
    except Exception as exc:
        _audit_log(
            operation="kpi.query",
            subject=request.kpi,
            status="error",
            duration_ms=max(0, int((perf_counter() - started) * 1000)),
            error_code="internal_error",
            correlation_id=x_correlation_id,
        )
        raise EngineError(
            status_code=500,
            code="internal_error",
            message=_sanitize_error_message(str(exc)),
        ) from exc


@router.post("/api/filters", response_model=OptionsResponse)
async def list_filter_options(
    payload: dict[str, Any] | None = Body(default=None),
    x_correlation_id: str | None = Header(default=None),
) -> OptionsResponse:
    request = _parse_payload(OptionsRequest, payload)
    started = perf_counter()
    subject = f"{request.table}.{request.dimension}"
    try:
        result = await _pipeline.list_options(request=request, correlation_id=x_correlation_id)
        _audit_log(
            operation="filters.options",
            subject=subject,
            status="ok",
            duration_ms=max(0, int((perf_counter() - started) * 1000)),
            correlation_id=x_correlation_id,
        )
        return OptionsResponse(version=_settings.api_version, result=result)
    except EngineError as exc:
        _audit_log(
            operation="filters.options",
            subject=subject,
            status="timeout" if exc.code == "timeout" else "error",
            duration_ms=max(0, int((perf_counter() - started) * 1000)),
            error_code=exc.code,
            correlation_id=x_correlation_id,
        )
        raise
    except Exception as exc:
        _audit_log(
            operation="filters.options",
            subject=subject,
            status="error",
            duration_ms=max(0, int((perf_counter() - started) * 1000)),
            error_code="internal_error",
            correlation_id=x_correlation_id,
        )
        raise EngineError(
            status_code=500,
            code="internal_error",
            message=_sanitize_error_message(str(exc)),
        ) from exc
