from __future__ import annotations

import re
from dataclasses import dataclass

from kpi_engine.schemas import KpiFilters, Scope
from kpi_engine.services.kpi_registry import (
    CHANNEL_COLUMN,
    MEGABRAND_COLUMN,
    MONTH_COLUMN,
    REGION_COLUMN,
    STATE_COLUMN,
    KpiDefinition,
)
from kpi_engine.services.sanitizer import quote_literal, sanitize_identifier

TAUTOLOGY = "1 = 1"

_MONTH_RE = re.compile(r"\d{6}")


@dataclass(frozen=True, slots=True)
class CategoryExclusion:
    column: str
    value: str


def normalize_max_month(max_month: str | None) -> str | None:
    if max_month is None:
        return None
    sanitized = sanitize_identifier(max_month)
    return sanitized or None


def scope_predicate(*, scope: Scope, max_month: str | None, source: str) -> str:
    month = normalize_max_month(max_month)
    if month is None:
        return f"{MONTH_COLUMN} = (SELECT MAX({MONTH_COLUMN}) FROM {source})"
    if scope == "YTD" and _MONTH_RE.fullmatch(month):
        return f"{MONTH_COLUMN} BETWEEN {quote_literal(month[:4] + '01')} AND {quote_literal(month)}"
    # MTD, or a month value that cannot anchor a range
    return f"{MONTH_COLUMN} = {quote_literal(month)}"


def in_predicate(column: str, values: list[str]) -> str | None:
    if not values:
        return None
    literals = ", ".join(quote_literal(value) for value in values)
    return f"{column} IN ({literals})"


def _filter_columns(kpi: KpiDefinition, filters: KpiFilters) -> list[tuple[str, list[str]]]:
    pairs = [
        (MEGABRAND_COLUMN, filters.megabrand),
        (REGION_COLUMN, filters.region),
        (STATE_COLUMN, filters.state),
        (kpi.geo_column, filters.wholesaler_id),
    ]
    if kpi.has_channel_dimension:
        pairs.append((CHANNEL_COLUMN, filters.channel))
    return pairs


def exclusion_predicate(kpi: KpiDefinition, exclusion: CategoryExclusion | None) -> str | None:
    if exclusion is None:
        return None
    column = sanitize_identifier(exclusion.column)
    if not column or (column == CHANNEL_COLUMN and not kpi.has_channel_dimension):
        return None
    return f"{column} <> {quote_literal(exclusion.value)}"


def build_predicates(
    kpi: KpiDefinition,
    *,
    source: str,
    scope: Scope,
    max_month: str | None,
    filters: KpiFilters,
    exclusion: CategoryExclusion | None = None,
) -> list[str]:
    predicates = [TAUTOLOGY, scope_predicate(scope=scope, max_month=max_month, source=source)]
    for column, values in _filter_columns(kpi, filters):
        predicate = in_predicate(column, values)
        if predicate:
            predicates.append(predicate)
    excluded = exclusion_predicate(kpi, exclusion)
    if excluded:
        predicates.append(excluded)
    return predicates
