from __future__ import annotations

from dataclasses import dataclass

from kpi_engine.errors import InvalidRequestError
from kpi_engine.schemas import GroupBy
from kpi_engine.services.kpi_registry import (
    ALL_CHANNELS_LABEL,
    CHANNEL_COLUMN,
    MEGABRAND_COLUMN,
    MONTH_COLUMN,
    REGION_COLUMN,
    STATE_COLUMN,
    KpiDefinition,
)
from kpi_engine.services.sanitizer import quote_literal

CURRENT_VALUE_ALIAS = "value_current"
PRIOR_VALUE_ALIAS = "value_prior"
DIMENSION_ALIAS = "dimension"

_STATIC_DIMENSIONS: dict[str, str] = {
    "megabrand": MEGABRAND_COLUMN,
    "region": REGION_COLUMN,
    "state": STATE_COLUMN,
}


@dataclass(frozen=True, slots=True)
class GroupingResolution:
    dimension_expression: str
    group_by_clause: str
    order_by_clause: str
    label: str


def _grouped(column: str, order_by_clause: str) -> GroupingResolution:
    return GroupingResolution(
        dimension_expression=column,
        group_by_clause=f"GROUP BY {column}",
        order_by_clause=order_by_clause,
        label=column,
    )


def resolve_grouping(group_by: GroupBy, kpi: KpiDefinition) -> GroupingResolution:
    by_value = f"ORDER BY {CURRENT_VALUE_ALIAS} DESC"
    if group_by == "time":
        return _grouped(MONTH_COLUMN, f"ORDER BY {MONTH_COLUMN} ASC")
    if group_by in _STATIC_DIMENSIONS:
        return _grouped(_STATIC_DIMENSIONS[group_by], by_value)
    if group_by == "wholesaler":
        return _grouped(kpi.geo_column, by_value)
    if group_by == "channel":
        if kpi.has_channel_dimension:
            return _grouped(CHANNEL_COLUMN, by_value)
        # recorded without a channel breakdown: one aggregate row for all channels
        return GroupingResolution(
            dimension_expression=quote_literal(ALL_CHANNELS_LABEL),
            group_by_clause="",
            order_by_clause=by_value,
            label=ALL_CHANNELS_LABEL,
        )
    raise InvalidRequestError(f"Unsupported grouping '{group_by}'")
