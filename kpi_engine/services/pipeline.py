from __future__ import annotations

import logging
from time import perf_counter

from kpi_engine.datasources.base import StatementExecutor
from kpi_engine.datasources.databricks import DatabricksStatementClient
from kpi_engine.observability import log_statement
from kpi_engine.schemas import KpiQueryRequest, KpiQueryResult, OptionsRequest, OptionsResult
from kpi_engine.services.clauses import CategoryExclusion
from kpi_engine.services.compiler import compile_kpi_query, compile_options_query, sql_hash
from kpi_engine.services.normalizer import normalize_kpi_rows, normalize_option_rows
from kpi_engine.settings import Settings

logger = logging.getLogger("uvicorn.error")


def _elapsed_ms(started: float) -> int:
    return max(0, int((perf_counter() - started) * 1000))


class KpiPipeline:
    """Request-scoped flow: compile, submit and poll, normalize. Holds no per-request state."""

    def __init__(self, settings: Settings, executor: StatementExecutor | None = None) -> None:
        self._settings = settings
        self._executor = executor or DatabricksStatementClient.from_settings(settings)

    def _exclusion(self) -> CategoryExclusion | None:
        if not self._settings.kpi_exclude_default_category:
            return None
        return CategoryExclusion(
            column=self._settings.kpi_excluded_category_column,
            value=self._settings.kpi_excluded_category_value,
        )

    async def execute_kpi(self, *, request: KpiQueryRequest, correlation_id: str | None = None) -> KpiQueryResult:
        started = perf_counter()
        compiled = compile_kpi_query(
            request,
            catalog=self._settings.warehouse_catalog,
            schema=self._settings.warehouse_schema,
            row_limit=self._settings.kpi_row_limit,
            exclusion=self._exclusion(),
        )
        sql = compiled.sql
        digest = sql_hash(sql)
        log_statement(sql=sql, context="kpi", sql_hash=digest, correlation_id=correlation_id)

        result = await self._executor.execute(
            statement=sql,
            poll_interval_seconds=self._settings.kpi_poll_interval_seconds,
            deadline_seconds=self._settings.kpi_deadline_seconds,
            correlation_id=correlation_id,
        )
        rows = normalize_kpi_rows(result.rows[: compiled.row_limit])
        elapsed_ms = _elapsed_ms(started)
        logger.info(
            "engine.query.execute | %s",
            {
                "correlation_id": correlation_id,
                "kpi": request.kpi,
                "group_by": request.group_by,
                "scope": request.scope,
                "dimension": compiled.dimension_label,
                "sql_hash": digest,
                "statement_id": result.statement_id,
                "execution_time_ms": elapsed_ms,
                "row_count": len(rows),
            },
        )
        return KpiQueryResult(
            kpi=request.kpi,
            group_by=request.group_by,
            scope=request.scope,
            rows=rows,
            row_count=len(rows),
            statement_id=result.statement_id,
            sql_hash=digest,
            execution_time_ms=elapsed_ms,
        )

    async def list_options(self, *, request: OptionsRequest, correlation_id: str | None = None) -> OptionsResult:
        started = perf_counter()
        compiled = compile_options_query(
            request,
            catalog=self._settings.warehouse_catalog,
            schema=self._settings.warehouse_schema,
            row_limit=self._settings.options_row_limit,
        )
        sql = compiled.sql
        digest = sql_hash(sql)
        log_statement(sql=sql, context="options", sql_hash=digest, correlation_id=correlation_id)

        result = await self._executor.execute(
            statement=sql,
            poll_interval_seconds=self._settings.options_poll_interval_seconds,
            deadline_seconds=self._settings.options_deadline_seconds,
            correlation_id=correlation_id,
        )
        rows = normalize_option_rows(result.rows[: compiled.row_limit])
        elapsed_ms = _elapsed_ms(started)
        logger.info(
            "engine.options.execute | %s",
            {
                "correlation_id": correlation_id,
                "dimension": request.dimension,
                "table": request.table,
                "sql_hash": digest,
                "statement_id": result.statement_id,
                "execution_time_ms": elapsed_ms,
                "row_count": len(rows),
            },
        )
        return OptionsResult(
            dimension=request.dimension,
            table=request.table,
            rows=rows,
            row_count=len(rows),
            statement_id=result.statement_id,
            sql_hash=digest,
            execution_time_ms=elapsed_ms,
        )
