from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, Numeric, String, Text, Uuid
from sqlalchemy import inspect as sa_inspect

from src.query.expressions import FieldType


class FieldTypeProvider(Protocol):
    """Schema introspection supplied by each business module."""

    def get_field_type(self, entity: str, path: str) -> Optional[FieldType]:
        ...


class StaticFieldTypeProvider:
    """Field types declared up front as {entity: {path: FieldType}}."""

    def __init__(self, types: Mapping[str, Mapping[str, FieldType]]) -> None:
        self._types: Dict[str, Dict[str, FieldType]] = {e: dict(f) for e, f in types.items()}

    def get_field_type(self, entity: str, path: str) -> Optional[FieldType]:
        return self._types.get(entity, {}).get(path)


def _column_field_type(column: Any) -> Optional[FieldType]:
    if column.foreign_keys:
        return FieldType.REFERENCE
    col_type = column.type
    if isinstance(col_type, Uuid):
        return FieldType.REFERENCE
    if isinstance(col_type, Boolean):
        return FieldType.BOOLEAN
    if isinstance(col_type, (Date, DateTime)):
        return FieldType.DATE
    if isinstance(col_type, (Integer, Numeric, Float)):
        return FieldType.NUMBER
    if isinstance(col_type, (String, Text)):
        return FieldType.STRING
    return None


class SqlAlchemyFieldTypeProvider:
    """
    Field types derived from SQLAlchemy mapped classes.

    Paths into JSON columns (e.g. attributes.color) are reported as unknown so
    their values are auto-detected at coercion time.
    """

    def __init__(self, models: Mapping[str, type]) -> None:
        self._models = dict(models)
        self._cache: Dict[tuple[str, str], Optional[FieldType]] = {}

    def get_field_type(self, entity: str, path: str) -> Optional[FieldType]:
        key = (entity, path)
        if key not in self._cache:
            self._cache[key] = self._lookup(entity, path)
        return self._cache[key]

    def _lookup(self, entity: str, path: str) -> Optional[FieldType]:
        model = self._models.get(entity)
        if model is None or "." in path:
            return None
        mapper = sa_inspect(model)
        attr = mapper.column_attrs.get(path)
        if attr is None:
            return None
        return _column_field_type(attr.columns[0])
