from __future__ import annotations

import re
from typing import Dict, Mapping, Sequence

import ibis

_READ_ONLY_KEYWORDS = ("select", "with")

HEAP_PREFIX = "asof__heap__"

_SIMPLE_DUCKDB_TYPES: Dict[str, str] = {
    "Boolean": "BOOLEAN",
    "Int8": "TINYINT",
    "Int16": "SMALLINT",
    "Int32": "INTEGER",
    "Int64": "BIGINT",
    "UInt8": "UTINYINT",
    "UInt16": "USMALLINT",
    "UInt32": "UINTEGER",
    "UInt64": "UBIGINT",
    "Float32": "FLOAT",
    "Float64": "DOUBLE",
    "String": "VARCHAR",
    "Binary": "BLOB",
    "Date": "DATE",
    "Time": "TIME",
    "Timestamp": "TIMESTAMP",
    "UUID": "UUID",
    "JSON": "JSON",
}

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def heap_table_name(table_name: str) -> str:
    if not table_name:
        raise ValueError("table_name must be non-empty")
    return f"{HEAP_PREFIX}{table_name}"


def validate_identifier(name: str, *, what: str = "identifier") -> str:
    if not _IDENT_RE.match(name or ""):
        raise ValueError(f"Invalid {what}: {name!r}")
    if name.startswith("_"):
        raise ValueError(f"Invalid {what}: {name!r} (leading underscore is reserved)")
    return name


def is_read_only_query(sql: str) -> bool:
    """
    True when `sql`, after leading whitespace, starts with SELECT or WITH
    (any case) followed by whitespace or the end of the text.
    """
    if sql is None:
        return False
    text = sql.lstrip()
    lowered = text[:6].lower()
    for keyword in _READ_ONLY_KEYWORDS:
        if lowered.startswith(keyword):
            rest = text[len(keyword):]
            if not rest or rest[0].isspace():
                return True
    return False


def duckdb_type(type_name: str) -> str:
    """Normalise an ibis type string (e.g. "int64", "string") to a DuckDB column type."""
    try:
        dt = ibis.dtype(type_name)
    except Exception as exc:
        raise ValueError(f"Unknown column type: {type_name!r}") from exc

    if dt.is_decimal():
        precision = dt.precision if dt.precision is not None else 18
        scale = dt.scale if dt.scale is not None else 3
        return f"DECIMAL({precision},{scale})"

    mapped = _SIMPLE_DUCKDB_TYPES.get(type(dt).__name__)
    if mapped is None:
        raise ValueError(f"Unsupported column type: {type_name!r} ({dt})")
    return mapped


def column_definitions(schema: Mapping[str, str]) -> Dict[str, str]:
    if not schema:
        raise ValueError("A table needs at least one column.")
    return {validate_identifier(col, what="column name"): duckdb_type(t) for col, t in schema.items()}


def json_aggregate_sql(sql: str, columns: Sequence[str]) -> str:
    """Wrap `sql` so that it returns exactly one row holding a JSON array of row objects."""
    if not columns:
        raise ValueError("Cannot aggregate a query without result columns.")
    pairs = ", ".join(f"{quote_literal(c)}, q.{quote_ident(c)}" for c in columns)
    return (
        f"SELECT COALESCE(json_group_array(json_object({pairs})), '[]'::JSON) "
        f"FROM ({sql}) AS q"
    )
