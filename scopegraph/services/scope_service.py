"""
Scope Service — resolves which entity IDs of a type an actor may access.

Resolution order for (actor, scope_type):

  1. super-admin                         → WILDCARD
  2. direct rows exist, any wildcard     → WILDCARD
  3. direct rows exist                   → IdSet(distinct values)
  4. no rows, hierarchy links defined    → derive from parent types
        any parent EMPTY                 → EMPTY
        otherwise                        → DerivedScope (lazy predicate)
  5. anything else                       → EMPTY  (deny-by-default)

Direct rows always win over derivation, even when a parent would grant more.

A DerivedScope is never expanded into an ID list: it is applied to a query as
"child.<fk> IN <parent set>" per link, or evaluated against a single record.
Nested derived parents (variant → vehicle_model → brand) need the parent's
model, registered by the entity layer through ``register_scope_model``.

Resolution is a pure read and is not cached. A storage failure while reading
scope rows resolves to EMPTY and is logged; it never reaches the caller.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from sqlalchemy import and_, false, select, true
from sqlalchemy.exc import SQLAlchemyError

from scopegraph.core.actor import Actor
from scopegraph.core.scope_links import HierarchyLink, links_for
from scopegraph.models import db
from scopegraph.models.scope import SCOPE_TYPES
from scopegraph.services.scope_store import active_scope_values

logger = logging.getLogger(__name__)


def record_field(record, name):
    if record is None:
        return None
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


# ═══════════════════════════════════════════════════════════════
# Entity model registry
# ═══════════════════════════════════════════════════════════════

_scope_models: dict[str, type] = {}


def register_scope_model(scope_type: str, model: type) -> None:
    """Tell the resolver which table holds rows of *scope_type*."""
    _scope_models[scope_type] = model


def scope_model_for(scope_type: str) -> type | None:
    return _scope_models.get(scope_type)


def clear_scope_models() -> None:
    _scope_models.clear()


# ═══════════════════════════════════════════════════════════════
# Access sets
# ═══════════════════════════════════════════════════════════════


class AccessSet:
    """Result of scope resolution. Subclasses are immutable."""

    kind = "abstract"

    @property
    def allows_all(self) -> bool:
        return False

    @property
    def is_empty(self) -> bool:
        return False

    def allows(self, entity_id=None, record=None) -> bool:
        raise NotImplementedError

    def clause(self, model):
        """SQL predicate restricting *model* rows to this set."""
        raise NotImplementedError

    def describe(self):
        return self.kind


class _Wildcard(AccessSet):
    kind = "wildcard"

    @property
    def allows_all(self) -> bool:
        return True

    def allows(self, entity_id=None, record=None) -> bool:
        return True

    def clause(self, model):
        return true()

    def __repr__(self):
        return "WILDCARD"


class _Empty(AccessSet):
    kind = "empty"

    @property
    def is_empty(self) -> bool:
        return True

    def allows(self, entity_id=None, record=None) -> bool:
        return False

    def clause(self, model):
        return false()

    def __repr__(self):
        return "EMPTY"


WILDCARD = _Wildcard()
EMPTY = _Empty()


@dataclass(frozen=True)
class IdSet(AccessSet):
    ids: frozenset[int]

    kind = "ids"

    def allows(self, entity_id=None, record=None) -> bool:
        if entity_id is None:
            entity_id = record_field(record, "id")
        if entity_id is None:
            raise ValueError("entity_id is required to test an enumerated scope")
        return entity_id in self.ids

    def clause(self, model):
        return model.id.in_(sorted(self.ids))

    def describe(self):
        return sorted(self.ids)


@dataclass(frozen=True)
class DerivedScope(AccessSet):
    """Access inherited from parent types through hierarchy links.

    ``parents`` pairs each link with the parent's resolved set; no parent is
    EMPTY. When every parent allows all, the scope allows all too.
    """

    scope_type: str
    parents: tuple[tuple[HierarchyLink, AccessSet], ...]

    kind = "derived"

    @property
    def allows_all(self) -> bool:
        return all(parent.allows_all for _, parent in self.parents)

    def allows(self, entity_id=None, record=None) -> bool:
        if self.allows_all:
            return True
        if record is None and entity_id is not None:
            model = scope_model_for(self.scope_type)
            if model is not None:
                try:
                    record = db.session.get(model, entity_id)
                except SQLAlchemyError:
                    logger.exception(
                        "Could not load %s %s; denying", self.scope_type, entity_id,
                        extra={"scope_type": self.scope_type},
                    )
                    return False
        if record is None:
            logger.debug(
                "No %s record to evaluate derived scope against", self.scope_type,
                extra={"scope_type": self.scope_type},
            )
            return False
        return all(self._link_allows(link, parent, record) for link, parent in self.parents)

    @staticmethod
    def _link_allows(link: HierarchyLink, parent: AccessSet, record) -> bool:
        if parent.allows_all:
            return True
        parent_id = record_field(record, link.foreign_key)
        if parent_id is None:
            return False
        return parent.allows(entity_id=parent_id)

    def clause(self, model):
        if self.allows_all:
            return true()
        clauses = []
        for link, parent in self.parents:
            if parent.allows_all:
                continue
            fk = getattr(model, link.foreign_key, None)
            if fk is None:
                logger.warning(
                    "%s has no column %s; denying derived %s scope",
                    getattr(model, "__name__", model), link.foreign_key, self.scope_type,
                    extra={"scope_type": self.scope_type},
                )
                return false()
            if isinstance(parent, IdSet):
                clauses.append(fk.in_(sorted(parent.ids)))
                continue
            parent_model = scope_model_for(link.parent_type)
            if parent_model is None:
                logger.warning(
                    "No model registered for scope type %s; denying derived %s scope",
                    link.parent_type, self.scope_type,
                    extra={"scope_type": self.scope_type},
                )
                return false()
            clauses.append(fk.in_(select(parent_model.id).where(parent.clause(parent_model))))
        return and_(*clauses)

    def describe(self):
        return {
            "derived_from": {
                link.parent_type: {"foreign_key": link.foreign_key, "access": parent.describe()}
                for link, parent in self.parents
            },
        }


# ═══════════════════════════════════════════════════════════════
# Resolution
# ═══════════════════════════════════════════════════════════════


def resolve_accessible_ids(actor: Actor, scope_type: str) -> AccessSet:
    if actor.is_super_admin():
        return WILDCARD

    try:
        values = active_scope_values(actor.id, scope_type)
    except SQLAlchemyError:
        logger.exception(
            "Scope rows could not be read; denying %s", scope_type,
            extra={"actor_id": actor.id, "scope_type": scope_type},
        )
        return EMPTY
    if values:
        if any(v is None for v in values):
            return WILDCARD
        return IdSet(frozenset(values))

    links = links_for(scope_type)
    if not links:
        if scope_type not in SCOPE_TYPES:
            logger.warning(
                "Unknown scope type %r; denying access", scope_type,
                extra={"actor_id": actor.id, "scope_type": scope_type},
            )
        return EMPTY

    parents = []
    for link in links:
        parent = resolve_accessible_ids(actor, link.parent_type)
        if parent.is_empty:
            return EMPTY
        parents.append((link, parent))
    return DerivedScope(scope_type, tuple(parents))


def has_access_to(actor: Actor, scope_type: str, entity_id: int | None = None, *, record=None) -> bool:
    """True if *actor* may access the given entity of *scope_type*.

    Enumerated scopes need ``entity_id`` (or a record carrying ``id``).
    Derived scopes are checked against ``record``'s foreign keys, or against
    the registered model row for ``entity_id``.
    """
    if actor.is_super_admin():
        return True
    return resolve_accessible_ids(actor, scope_type).allows(entity_id=entity_id, record=record)


def scope_clause(actor: Actor, model, scope_type: str):
    return resolve_accessible_ids(actor, scope_type).clause(model)


def apply_scope(query, model, actor: Actor, scope_type: str):
    """Restrict a ``select()`` or legacy ``Model.query`` to the actor's scope."""
    access = resolve_accessible_ids(actor, scope_type)
    if access.allows_all:
        return query
    return query.where(access.clause(model))


def scope_configuration(actor: Actor) -> dict[str, AccessSet]:
    """Resolved access for every known scope type."""
    return {scope_type: resolve_accessible_ids(actor, scope_type) for scope_type in SCOPE_TYPES}


def validate_hierarchy(actor: Actor, record, parent_scope_type: str, parent_foreign_key: str) -> bool:
    """True if the record's parent (via *parent_foreign_key*) is accessible.

    Stops a user scoped to branch 1 from acting on a location of branch 2.
    """
    if actor.is_super_admin():
        return True
    parent_id = record_field(record, parent_foreign_key)
    if parent_id is None:
        return False
    return has_access_to(actor, parent_scope_type, parent_id)
