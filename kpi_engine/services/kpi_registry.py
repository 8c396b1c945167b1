from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal, Mapping

from kpi_engine.errors import InvalidRequestError

Aggregation = Literal["SUM", "AVG"]

MONTH_COLUMN = "cal_yr_mo_nbr"
MEGABRAND_COLUMN = "megabrand"
REGION_COLUMN = "sls_regn_cd"
STATE_COLUMN = "mktng_st_cd"
CHANNEL_COLUMN = "channel"
WHOLESALER_COLUMN = "wslr_nbr"
KEY_ACCOUNT_MANAGER_COLUMN = "kam_nbr"

ALL_CHANNELS_LABEL = "All Channels"


@dataclass(frozen=True, slots=True)
class KpiDefinition:
    name: str
    table: str
    measure_column: str
    aggregation: Aggregation
    has_channel_dimension: bool
    geo_column: str

    @property
    def current_column(self) -> str:
        return f"{self.measure_column}_CY"

    @property
    def prior_column(self) -> str:
        return f"{self.measure_column}_LY"


def _kpi(
    name: str,
    *,
    table: str,
    measure_column: str,
    aggregation: Aggregation,
    has_channel_dimension: bool = True,
    geo_column: str = WHOLESALER_COLUMN,
) -> tuple[str, KpiDefinition]:
    return name, KpiDefinition(
        name=name,
        table=table,
        measure_column=measure_column,
        aggregation=aggregation,
        has_channel_dimension=has_channel_dimension,
        geo_column=geo_column,
    )


# Table and column names below are interpolated into statement text. Only
# entries listed here can ever be queried.
_KPI_DEFINITIONS: Mapping[str, KpiDefinition] = MappingProxyType(
    dict(
        [
            _kpi("volume", table="mbmc_actuals_volume", measure_column="volume", aggregation="SUM"),
            _kpi("revenue", table="mbmc_actuals_revenue", measure_column="net_revenue", aggregation="SUM"),
            _kpi(
                "distro",
                table="mbmc_actuals_distro",
                measure_column="distro_pts",
                aggregation="SUM",
                has_channel_dimension=False,
            ),
            _kpi(
                "displays",
                table="mbmc_actuals_displays",
                measure_column="displays",
                aggregation="SUM",
                has_channel_dimension=False,
                geo_column=KEY_ACCOUNT_MANAGER_COLUMN,
            ),
            _kpi("share", table="mbmc_actuals_share", measure_column="share_pct", aggregation="AVG"),
            _kpi(
                "velocity",
                table="mbmc_actuals_velocity",
                measure_column="velocity_rate",
                aggregation="AVG",
                has_channel_dimension=False,
            ),
        ]
    )
)

OPTION_DIMENSIONS: frozenset[str] = frozenset(
    {WHOLESALER_COLUMN, STATE_COLUMN, REGION_COLUMN, CHANNEL_COLUMN, MEGABRAND_COLUMN}
)
OPTION_TABLES: frozenset[str] = frozenset({"mbmc_actuals_volume", "mbmc_actuals_revenue", "mbmc_actuals_distro"})


def registered_kpis() -> list[str]:
    return sorted(_KPI_DEFINITIONS)


def resolve_kpi(name: str) -> KpiDefinition:
    definition = _KPI_DEFINITIONS.get(name)
    if definition is None:
        raise InvalidRequestError(f"Unknown kpi '{name}'", details={"supported": registered_kpis()})
    return definition


def resolve_option_source(dimension: str, table: str) -> tuple[str, str]:
    if dimension not in OPTION_DIMENSIONS or table not in OPTION_TABLES:
        raise InvalidRequestError(f"Invalid dimension '{dimension}' or table '{table}'")
    return dimension, table
