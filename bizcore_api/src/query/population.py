"""
Relation expansion ("populate").

Each requested relation becomes one sub-query against the related entity's
executor. Sub-queries carry the same tenant scoping and soft-delete exclusion
as a root query, so population can never leak records across tenants.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from src.query.backends.base import QueryBackend, Record
from src.query.context import EntityDescriptor, SecurityContext
from src.query.errors import ValidationError
from src.query.expressions import Constraint, Operator
from src.query.filters import security_scope
from src.query.ordering import SortKey

logger = logging.getLogger(__name__)

# relation name -> nested relations of the related entity
PopulateTree = Dict[str, "PopulateTree"]


def _key(value: Any) -> str:
    return str(value)


# PUBLIC_INTERFACE
def parse_populate(
    raw: Optional[str],
    entity: EntityDescriptor,
    entities: Mapping[str, EntityDescriptor],
    max_depth: int = 3,
) -> PopulateTree:
    """
    Parse "rel1,rel2.nested" into a relation tree, validating every segment.

    Raises:
        ValidationError: a relation is not declared on the entity it is read
            from, or the path nests deeper than max_depth.
    """
    tree: PopulateTree = {}
    for path in [p.strip() for p in (raw or "").split(",") if p.strip()]:
        parts = path.split(".")
        if len(parts) > max_depth:
            raise ValidationError(f"Populate path nests deeper than {max_depth} levels", {"populate": path})
        current_entity, node = entity, tree
        for part in parts:
            relation = current_entity.relations.get(part)
            if relation is None:
                raise ValidationError(
                    f"Unknown relation {part} on {current_entity.name}",
                    {"populate": path, "allowed": sorted(current_entity.relations)},
                )
            node = node.setdefault(part, {})
            current_entity = entities[relation.entity]
    return tree


class PopulationResolver:
    """Attaches related records to already-fetched parent records."""

    def __init__(
        self,
        backend: QueryBackend,
        entities: Mapping[str, EntityDescriptor],
        security: SecurityContext,
    ) -> None:
        self.backend = backend
        self.entities = entities
        self.security = security

    def _projection(self, related: EntityDescriptor, select: Tuple[str, ...], children: PopulateTree, foreign: str):
        if not select:
            return None
        nested = [related.relations[name].local_field for name in children]
        return tuple(dict.fromkeys((related.id_field, foreign, *select, *nested)))

    # PUBLIC_INTERFACE
    async def resolve(self, entity: EntityDescriptor, records: List[Record], tree: PopulateTree) -> int:
        """
        Populate `records` in place following `tree`.

        Each parent gets the related record (or None) under the relation name.
        Returns the number of sub-queries issued.
        """
        issued = 0
        for name, children in tree.items():
            relation = entity.relations[name]
            related = self.entities[relation.entity]

            values: Dict[str, Any] = {}
            for record in records:
                value = record.get(relation.local_field)
                if value is not None:
                    values.setdefault(_key(value), value)
            if not values:
                for record in records:
                    record[name] = None
                continue

            sub_filter = security_scope(related, self.security).with_constraint(
                relation.foreign_field, Constraint(Operator.IN, list(values.values()))
            )
            executor = self.backend.executor_for(related.name)
            rows = await executor.find(
                sub_filter,
                (SortKey(related.id_field),),
                self._projection(related, relation.select, children, relation.foreign_field),
                0,
                len(values),
            )
            issued += 1
            logger.debug("Populated %s.%s: %d of %d references", entity.name, name, len(rows), len(values))

            if children and rows:
                issued += await self.resolve(related, rows, children)

            index = {_key(row.get(relation.foreign_field)): row for row in rows}
            for record in records:
                match = index.get(_key(record.get(relation.local_field)))
                record[name] = dict(match) if match is not None else None

        return issued
