import json
import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Sequence

from sqlalchemy import BOOLEAN, DATE, INTEGER, JSON, NUMERIC, TEXT, TIMESTAMP
from sqlalchemy.dialects.postgresql import DOUBLE_PRECISION, JSONB
from sqlalchemy.types import TypeEngine


# -----------------------------------------------------------------------------
# TYPE MAPPER
# Purpose: translate Postgres type OIDs reported by the probe into the storage
# types used for result-table DDL. Intentionally lossy: result tables only
# stage already-computed rows.
# -----------------------------------------------------------------------------


class StorageType(str, Enum):
    INTEGER = "INTEGER"
    DOUBLE = "DOUBLE"
    NUMERIC = "NUMERIC"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    TIMESTAMP = "TIMESTAMP"
    JSONB = "JSONB"
    TEXT = "TEXT"


# pg_type OIDs
PG_TYPE_STORAGE: Dict[int, StorageType] = {
    20: StorageType.INTEGER,  # int8
    21: StorageType.INTEGER,  # int2
    23: StorageType.INTEGER,  # int4
    700: StorageType.DOUBLE,  # float4
    701: StorageType.DOUBLE,  # float8
    1700: StorageType.NUMERIC,
    16: StorageType.BOOLEAN,
    1082: StorageType.DATE,
    1114: StorageType.TIMESTAMP,  # timestamp
    1184: StorageType.TIMESTAMP,  # timestamptz
    114: StorageType.JSONB,  # json
    3802: StorageType.JSONB,
}

COLUMN_TYPES: Dict[StorageType, TypeEngine] = {
    StorageType.INTEGER: INTEGER(),
    StorageType.DOUBLE: DOUBLE_PRECISION(),
    StorageType.NUMERIC: NUMERIC(),
    StorageType.BOOLEAN: BOOLEAN(),
    StorageType.DATE: DATE(),
    StorageType.TIMESTAMP: TIMESTAMP(timezone=False),
    StorageType.JSONB: JSONB(none_as_null=True),
    StorageType.TEXT: TEXT(),
}


def map_type(type_oid: int) -> StorageType:
    """Map a native type OID to its storage type; unknown OIDs fall back to TEXT."""
    return PG_TYPE_STORAGE.get(type_oid, StorageType.TEXT)


def column_type(storage_type: StorageType) -> TypeEngine:
    return COLUMN_TYPES[storage_type]


# Native types whose values the driver already returns as str
STRING_TYPE_OIDS = frozenset({18, 19, 25, 705, 1042, 1043})


def fetched_as_text(type_oid: int) -> bool:
    """
    True when a column should be read in the server's text form.

    Covers TEXT-mapped columns of non-string native types (arrays, intervals,
    bytea...) and JSON, so SQL NULL and a JSON ``null`` stay distinguishable.
    """
    storage_type = map_type(type_oid)
    if storage_type is StorageType.JSONB:
        return True
    return storage_type is StorageType.TEXT and type_oid not in STRING_TYPE_OIDS


def coerce_value(storage_type: StorageType, value: Any) -> Any:
    """
    Prepare an already-fetched value for re-insertion into a result column.

    Values fetched in text form are bound as text, except JSON, which is
    parsed back so it is stored as JSONB (a JSON ``null`` binds as JSON null,
    not SQL NULL). Aware timestamps are folded to naive UTC.
    """
    if value is None:
        return None

    if storage_type is StorageType.TEXT:
        return value if isinstance(value, str) else str(value)

    if storage_type is StorageType.JSONB and isinstance(value, str):
        decoded = json.loads(value)
        return JSON.NULL if decoded is None else decoded

    if storage_type is StorageType.TIMESTAMP and isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)

    return value


# =========================
# Query parameters
# =========================
# Params travel through the queue as JSON values; the driver encodes them with
# binary codecs that need the matching Python type. Strings are read as the
# server's text form of the parameter type.

_TRUE_WORDS = frozenset({"t", "true", "y", "yes", "on", "1"})
_FALSE_WORDS = frozenset({"f", "false", "n", "no", "off", "0"})


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _as_json_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ValueError(f"invalid boolean literal: {value!r}")
    return bool(value)


def _as_date(value: Any) -> Any:
    return date.fromisoformat(value) if isinstance(value, str) else value


def _as_time(value: Any) -> Any:
    return time.fromisoformat(value) if isinstance(value, str) else value


def _as_datetime(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _as_naive_datetime(value: Any) -> Any:
    # timestamp without time zone ignores any offset in the literal
    value = _as_datetime(value)
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.replace(tzinfo=None)
    return value


def _as_decimal(value: Any) -> Any:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _as_uuid(value: Any) -> Any:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


PARAM_CONVERTERS: Dict[int, Callable[[Any], Any]] = {
    16: _as_bool,
    18: _as_text,  # "char"
    19: _as_text,  # name
    20: int,
    21: int,
    23: int,
    25: _as_text,
    114: _as_json_text,
    700: float,
    701: float,
    705: _as_text,  # unknown
    1042: _as_text,  # bpchar
    1043: _as_text,  # varchar
    1082: _as_date,
    1083: _as_time,
    1114: _as_naive_datetime,
    1184: _as_datetime,
    1700: _as_decimal,
    2950: _as_uuid,
    3802: _as_json_text,
}


def bind_params(param_oids: Sequence[int], params: Sequence[Any]) -> List[Any]:
    """
    Convert JSON-carried params to what the driver expects for each placeholder.

    ``param_oids`` are the parameter types the server inferred for the
    prepared statement. NULLs, surplus params and types without a converter
    pass through unchanged (the driver reports any mismatch).

    Raises:
        ValueError: a string is not a valid literal of its parameter type.
    """
    bound = []
    for index, value in enumerate(params):
        converter = None
        if index < len(param_oids):
            converter = PARAM_CONVERTERS.get(param_oids[index])
        if value is None or converter is None:
            bound.append(value)
        else:
            bound.append(converter(value))
    return bound
