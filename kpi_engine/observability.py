import logging
from typing import Any

from kpi_engine.settings import get_settings

settings = get_settings()
logger = logging.getLogger("uvicorn.error")

_MAX_STATEMENT_CHARS = 4000


def _truncate(text: str) -> str:
    if len(text) > _MAX_STATEMENT_CHARS:
        return text[:_MAX_STATEMENT_CHARS] + "...(truncated)"
    return text


def log_statement(
    *,
    sql: str,
    context: str,
    sql_hash: str,
    correlation_id: str | None = None,
) -> None:
    """
    Emits the statement text sent to the warehouse.
    Controlled via LOG_STATEMENTS; the hash is always logged by the pipeline.
    """
    if not settings.log_statements:
        return

    payload: dict[str, Any] = {
        "context": context,
        "correlation_id": correlation_id,
        "sql_hash": sql_hash,
        "sql": _truncate(" ".join(sql.split())),
    }
    logger.info("engine.statement.text | %s", payload)
