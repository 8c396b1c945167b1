from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

GroupBy = Literal["time", "megabrand", "region", "state", "wholesaler", "channel"]
Scope = Literal["MTD", "YTD"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class KpiFilters(CamelModel):
    megabrand: list[str] = Field(default_factory=list)
    region: list[str] = Field(default_factory=list)
    state: list[str] = Field(default_factory=list)
    wholesaler_id: list[str] = Field(default_factory=list)
    channel: list[str] = Field(default_factory=list)

    @field_validator("megabrand", "region", "state", "wholesaler_id", "channel", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, int, float)):
            return [str(value)]
        if isinstance(value, list):
            return [str(item) for item in value if item is not None]
        return value


class KpiQueryRequest(CamelModel):
    contract_version: Literal["kpi_request.v1"] | None = None
    kpi: str
    group_by: GroupBy = "time"
    scope: Scope = "YTD"
    max_month: str | None = None
    filters: KpiFilters = Field(default_factory=KpiFilters)

    @field_validator("scope", mode="before")
    @classmethod
    def _upper_scope(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("group_by", mode="before")
    @classmethod
    def _lower_group_by(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("max_month", mode="before")
    @classmethod
    def _stringify_max_month(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return str(value)


class OptionsRequest(CamelModel):
    dimension: str
    table: str


class NormalizedRecord(CamelModel):
    dimension: Any = None
    current_value: Any = None
    prior_value: Any = None


class OptionRecord(CamelModel):
    label: Any = None
    value: Any = None


class KpiQueryResult(CamelModel):
    kpi: str
    group_by: GroupBy
    scope: Scope
    rows: list[NormalizedRecord] = Field(default_factory=list)
    row_count: int = 0
    statement_id: str
    sql_hash: str
    execution_time_ms: int


class OptionsResult(CamelModel):
    dimension: str
    table: str
    rows: list[OptionRecord] = Field(default_factory=list)
    row_count: int = 0
    statement_id: str
    sql_hash: str
    execution_time_ms: int


class KpiQueryResponse(CamelModel):
    ok: bool = True
    version: str
    result: KpiQueryResult


class OptionsResponse(CamelModel):
    ok: bool = True
    version: str
    result: OptionsResult


class PingResponse(CamelModel):
    ok: bool = True
    mode: Literal["ping"] = "ping"
    now: str
    version: str
    received: dict[str, Any] = Field(default_factory=dict)
