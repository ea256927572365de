"""
Filter compilation.

Turns a sanitized QuerySpec into a CompiledFilter. Recognised key shapes:

    field=value            equality (repeated key -> membership)
    field[op]=value        comparison, op must be allow-listed
    field[or]=v1,v2        any of the values (one Or group per key)
    field[and]=v1,v2       all of the values
    a.b.c=value            equality on a nested path

Tenant and soft-delete constraints are injected after per-key compilation.
"""
from __future__ import annotations

import logging
import re
from typing import Any, List, Mapping, Optional

from src.query.coercion import coerce
from src.query.context import EntityDescriptor, QueryConfig, QueryOptions, SecurityContext
from src.query.errors import ValidationError
from src.query.expressions import (
    CompiledFilter,
    Constraint,
    FieldType,
    FilterNode,
    Match,
    Operator,
    Or,
    and_all,
)
from src.query.field_types import FieldTypeProvider
from src.query.sanitize import RESERVED_KEYS, QueryValue, first

logger = logging.getLogger(__name__)

_BRACKET_RE = re.compile(r"^(?P<field>[^\[\]]+)\[(?P<op>\w+)\]$")
_PATH_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


def _split(raw: QueryValue) -> List[str]:
    if isinstance(raw, list):
        return [v.strip() for v in raw if v.strip()]
    return [v.strip() for v in raw.split(",") if v.strip()]


def _scalar(raw: QueryValue) -> str:
    if isinstance(raw, list):
        return raw[0] if raw else ""
    return raw


def _is_true(raw: Optional[str]) -> bool:
    return raw is not None and raw.strip().lower() == "true"


# PUBLIC_INTERFACE
def security_scope(
    entity: EntityDescriptor,
    security: SecurityContext,
    include_deleted: bool = False,
) -> Match:
    """
    Return the constraints every query against the entity must carry.

    Used for root queries, population sub-queries and aggregate pipelines alike.
    """
    scope = Match()
    if security.tenant_id is not None and entity.tenant_field:
        scope = scope.with_constraint(entity.tenant_field, Constraint(Operator.EQ, security.tenant_id))
    if entity.soft_delete_field and not include_deleted:
        scope = scope.with_constraint(entity.soft_delete_field, Constraint(Operator.NE, True))
    return scope


class FilterCompiler:
    """Compiles one entity's QuerySpec under a given security context."""

    def __init__(
        self,
        entity: EntityDescriptor,
        field_types: FieldTypeProvider,
        security: SecurityContext,
        config: QueryConfig,
        options: Optional[QueryOptions] = None,
    ) -> None:
        self.entity = entity
        self.field_types = field_types
        self.security = security
        self.config = config
        self.options = options or QueryOptions()
        self.or_groups = 0

    # PUBLIC_INTERFACE
    def compile(self, spec: Mapping[str, QueryValue]) -> CompiledFilter:
        """
        Compile the non-reserved keys of a sanitized QuerySpec.

        Raises:
            ValidationError: disallowed operator, malformed key, too many OR values,
                path too deep, invalid regex, or a tenant constraint that contradicts
                the caller's tenant.
        """
        main = self.options.base_filter
        groups: List[FilterNode] = []

        for key, raw in spec.items():
            if key in RESERVED_KEYS:
                continue

            bracket = _BRACKET_RE.match(key)
            if bracket:
                path, op = bracket.group("field"), bracket.group("op")
                self._check_path(path)
                # [or]/[and] are combinators, not comparison operators, and are
                # not subject to the operator allowlist.
                if op == "or":
                    groups.append(self._or_group(path, raw))
                    continue
                if op == "and":
                    for value in _split(raw):
                        main = main.with_constraint(path, Constraint(Operator.EQ, self._coerce(path, value)))
                    continue
                if op not in self.config.allowed_operators:
                    raise ValidationError(f"Operator {op} not allowed", {"field": path, "operator": op})
                main = main.with_constraint(path, self._comparison(path, Operator(op), raw))
                continue

            if "[" in key or "]" in key:
                raise ValidationError(f"Malformed filter key: {key}")
            self._check_path(key)
            main = main.with_constraint(key, self._equality(key, raw))

        self.or_groups = len(groups)
        main = self._apply_scope(main, spec)
        return and_all([main, *groups])

    def _coerce(self, path: str, value: Any) -> Any:
        return coerce(value, self.field_types.get_field_type(self.entity.name, path))

    def _check_path(self, path: str) -> None:
        if not _PATH_RE.match(path):
            raise ValidationError(f"Invalid field path: {path}")
        if path.count(".") > self.config.max_nested_depth:
            raise ValidationError(
                f"Field path nests deeper than {self.config.max_nested_depth} levels",
                {"field": path},
            )

    def _equality(self, path: str, raw: QueryValue) -> Constraint:
        if isinstance(raw, list):
            return Constraint(Operator.IN, self._coerce(path, raw))
        return Constraint(Operator.EQ, self._coerce(path, raw))

    def _or_group(self, path: str, raw: QueryValue) -> Or:
        values = _split(raw)
        if not values:
            raise ValidationError("OR condition needs at least one value", {"field": path})
        if len(values) > self.config.max_or_clauses:
            raise ValidationError(
                f"Too many OR conditions. Max: {self.config.max_or_clauses}",
                {"field": path, "provided": len(values)},
            )
        return Or(tuple(Match({path: (Constraint(Operator.EQ, self._coerce(path, v)),)}) for v in values))

    def _comparison(self, path: str, op: Operator, raw: QueryValue) -> Constraint:
        if op in (Operator.IN, Operator.NIN):
            return Constraint(op, self._coerce(path, _split(raw)))
        value = _scalar(raw)
        if op is Operator.EXISTS:
            flag = coerce(value, FieldType.BOOLEAN)
            if not isinstance(flag, bool):
                raise ValidationError("exists expects true or false", {"field": path, "value": value})
            return Constraint(op, flag)
        if op is Operator.REGEX:
            try:
                return Constraint(op, re.compile(value))
            except re.error as exc:
                raise ValidationError("Invalid regular expression", {"field": path, "error": str(exc)})
        return Constraint(op, self._coerce(path, value))

    def _apply_scope(self, main: Match, spec: Mapping[str, QueryValue]) -> Match:
        tenant_field = self.entity.tenant_field
        tenant_id = self.security.tenant_id
        if tenant_id is not None and tenant_field:
            explicit = main.constraints_for(tenant_field)
            if not explicit:
                main = main.with_constraint(tenant_field, Constraint(Operator.EQ, tenant_id))
            elif not self.options.allow_tenant_override:
                for constraint in explicit:
                    if not self._same_tenant(constraint, tenant_id):
                        logger.warning(
                            "Rejected cross-tenant filter on %s.%s", self.entity.name, tenant_field
                        )
                        raise ValidationError(
                            "Tenant filter does not match the caller's tenant",
                            {"field": tenant_field},
                        )

        delete_field = self.entity.soft_delete_field
        include_deleted = self.options.include_deleted or _is_true(first(spec, "includeDeleted"))
        if delete_field and not include_deleted and not main.has_field(delete_field):
            main = main.with_constraint(delete_field, Constraint(Operator.NE, True))
        return main

    @staticmethod
    def _same_tenant(constraint: Constraint, tenant_id: Any) -> bool:
        if constraint.op is Operator.EQ:
            return str(constraint.value) == str(tenant_id)
        if constraint.op is Operator.IN:
            return all(str(v) == str(tenant_id) for v in constraint.value)
        return False
