"""
Conversion of raw query-string values into typed values.

coerce() never raises: anything that cannot be converted is returned unchanged so
the worst outcome of bad input is a literal string comparison.
"""
from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Any, Mapping, Optional
from uuid import UUID

from dateutil import parser as dt_parser

from src.query.expressions import FieldType

# Canonical hyphenated UUID; the only shape auto-detected as a reference.
_CANONICAL_REF_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_COMPACT_REF_RE = re.compile(r"^[0-9a-fA-F]{32}$")
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
# Auto-detection only treats ISO-like values as dates; "12" or "may" stay literal.
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ].*)?$")


def _to_reference(value: str, explicit: bool) -> Optional[UUID]:
    if len(value) == 36 and _CANONICAL_REF_RE.match(value):
        return UUID(value)
    if explicit and len(value) == 32 and _COMPACT_REF_RE.match(value):
        return UUID(hex=value)
    return None


def _to_number(value: str) -> Any:
    text = value.strip()
    if not _NUMBER_RE.match(text):
        return value
    if re.match(r"^[+-]?\d+$", text):
        return int(text)
    number = float(text)
    if math.isnan(number) or math.isinf(number):
        return value
    return number


def _to_boolean(value: str, case_sensitive: bool = False) -> Any:
    probe = value if case_sensitive else value.lower()
    if probe == "true":
        return True
    if probe == "false":
        return False
    return value


def _to_date(value: str) -> Any:
    try:
        return dt_parser.parse(value)
    except (ValueError, OverflowError):
        return value


# PUBLIC_INTERFACE
def coerce(value: Any, field_type: Optional[FieldType] = None) -> Any:
    """
    Convert a raw value to the type expected for a field.

    Parameters:
        value: str, list/tuple of raw values, or a mapping of raw values (recursed).
        field_type: type reported by the Field-Type Provider, or None when unknown.
    Returns:
        The typed value; unparsable input is returned unchanged.
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [coerce(v, field_type) for v in value]
    if isinstance(value, Mapping):
        return {k: coerce(v, field_type) for k, v in value.items()}
    if not isinstance(value, str):
        return value

    if field_type in (None, FieldType.REFERENCE):
        ref = _to_reference(value, explicit=field_type is FieldType.REFERENCE)
        if ref is not None:
            return ref
        if field_type is FieldType.REFERENCE:
            return value

    if field_type is FieldType.NUMBER:
        return _to_number(value)
    if field_type is FieldType.BOOLEAN:
        return _to_boolean(value)
    if field_type is FieldType.DATE:
        return _to_date(value)
    if field_type is FieldType.STRING:
        return value

    # Unknown type: boolean literal -> number -> ISO date -> string
    detected = _to_boolean(value, case_sensitive=True)
    if isinstance(detected, bool):
        return detected
    if value.strip():
        number = _to_number(value)
        if not isinstance(number, str):
            return number
    if _ISO_DATE_RE.match(value.strip()):
        parsed = _to_date(value.strip())
        if isinstance(parsed, datetime):
            return parsed
    return value
