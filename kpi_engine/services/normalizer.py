from __future__ import annotations

from typing import Any

from kpi_engine.errors import IntegrityViolationError
from kpi_engine.schemas import NormalizedRecord, OptionRecord


def _require_width(row: Any, width: int, index: int) -> list[Any]:
    if not isinstance(row, (list, tuple)) or len(row) < width:
        raise IntegrityViolationError(
            "Warehouse returned a row narrower than the compiled projection",
            details={"row_index": index, "expected_columns": width},
        )
    return list(row)


def normalize_kpi_rows(rows: list[Any]) -> list[NormalizedRecord]:
    records: list[NormalizedRecord] = []
    for index, row in enumerate(rows):
        cells = _require_width(row, 3, index)
        records.append(NormalizedRecord(dimension=cells[0], current_value=cells[1], prior_value=cells[2]))
    return records


def normalize_option_rows(rows: list[Any]) -> list[OptionRecord]:
    records: list[OptionRecord] = []
    for index, row in enumerate(rows):
        cells = _require_width(row, 1, index)
        records.append(OptionRecord(label=cells[0], value=cells[0]))
    return records
