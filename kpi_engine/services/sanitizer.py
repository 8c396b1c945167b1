"""Choke point for every caller-supplied string that ends up in statement text.

The Statement Execution API takes one literal statement string, so values are
spliced in rather than bound as parameters. Identifiers are reduced to
``[A-Za-z0-9_]``; literals keep their content but have quotes and backslashes
doubled, which is what Databricks SQL needs inside a single-quoted string.
"""

from __future__ import annotations

import re
from typing import Any

_UNSAFE_IDENTIFIER_CHARS = re.compile(r"[^A-Za-z0-9_]")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def sanitize_identifier(value: Any) -> str:
    return _UNSAFE_IDENTIFIER_CHARS.sub("", _as_text(value))


def escape_literal(value: Any) -> str:
    return _as_text(value).replace("\\", "\\\\").replace("'", "''")


def quote_literal(value: Any) -> str:
    return f"'{escape_literal(value)}'"


def qualified_table(catalog: str, schema: str, table: str) -> str:
    parts = [sanitize_identifier(part) for part in (catalog, schema, table)]
    return ".".join(part for part in parts if part)
