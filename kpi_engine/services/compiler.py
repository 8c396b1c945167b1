from __future__ import annotations

import hashlib
from dataclasses import dataclass

from kpi_engine.schemas import KpiQueryRequest, OptionsRequest
from kpi_engine.services.clauses import TAUTOLOGY, CategoryExclusion, build_predicates
from kpi_engine.services.grouping import (
    CURRENT_VALUE_ALIAS,
    DIMENSION_ALIAS,
    PRIOR_VALUE_ALIAS,
    resolve_grouping,
)
from kpi_engine.services.kpi_registry import resolve_kpi, resolve_option_source
from kpi_engine.services.sanitizer import qualified_table

OPTION_LABEL_ALIAS = "label"


@dataclass(frozen=True, slots=True)
class CompiledStatement:
    select_clause: str
    from_clause: str
    where_clause: str
    group_by_clause: str
    order_by_clause: str
    row_limit: int
    dimension_label: str

    @property
    def sql(self) -> str:
        parts = [self.select_clause, self.from_clause, self.where_clause]
        if self.group_by_clause:
            parts.append(self.group_by_clause)
        if self.order_by_clause:
            parts.append(self.order_by_clause)
        parts.append(f"LIMIT {self.row_limit}")
        return " ".join(parts)


def sql_hash(sql: str) -> str:
    normalized = " ".join(sql.split()).strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _safe_limit(row_limit: int) -> int:
    return max(1, int(row_limit))


def compile_kpi_query(
    request: KpiQueryRequest,
    *,
    catalog: str,
    schema: str,
    row_limit: int,
    exclusion: CategoryExclusion | None = None,
) -> CompiledStatement:
    kpi = resolve_kpi(request.kpi)
    source = qualified_table(catalog, schema, kpi.table)
    grouping = resolve_grouping(request.group_by, kpi)
    predicates = build_predicates(
        kpi,
        source=source,
        scope=request.scope,
        max_month=request.max_month,
        filters=request.filters,
        exclusion=exclusion,
    )
    agg = kpi.aggregation
    select_parts = [
        f"{grouping.dimension_expression} AS {DIMENSION_ALIAS}",
        f"{agg}({kpi.current_column}) AS {CURRENT_VALUE_ALIAS}",
        f"{agg}({kpi.prior_column}) AS {PRIOR_VALUE_ALIAS}",
    ]
    return CompiledStatement(
        select_clause=f"SELECT {', '.join(select_parts)}",
        from_clause=f"FROM {source}",
        where_clause="WHERE " + " AND ".join(predicates),
        group_by_clause=grouping.group_by_clause,
        order_by_clause=grouping.order_by_clause,
        row_limit=_safe_limit(row_limit),
        dimension_label=grouping.label,
    )


def compile_options_query(
    request: OptionsRequest,
    *,
    catalog: str,
    schema: str,
    row_limit: int,
) -> CompiledStatement:
    dimension, table = resolve_option_source(request.dimension, request.table)
    return CompiledStatement(
        select_clause=f"SELECT DISTINCT {dimension} AS {OPTION_LABEL_ALIAS}",
        from_clause=f"FROM {qualified_table(catalog, schema, table)}",
        where_clause=f"WHERE {TAUTOLOGY} AND {dimension} IS NOT NULL",
        group_by_clause="",
        order_by_clause=f"ORDER BY {OPTION_LABEL_ALIAS} ASC",
        row_limit=_safe_limit(row_limit),
        dimension_label=dimension,
    )
