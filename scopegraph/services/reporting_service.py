"""
Reporting Service — downline resolution and roll-up metrics.

ReportingHierarchy rows form a tree per topic: each row points at its
supervisor's row through ``parent_id``. Rows without one hang under the
supervisor's rows for the same topic whose combo overlaps their own (or
under all of them when none does). For a supervisor:

    root    = the supervisor's own active row with the exact topic whose
              combo contains every queried key with an equal value
    downline = user ids of root and every descendant that again matches
              topic + combo containment (non-matching rows are walked
              through but not counted)

No root means no roll-up: resolvers return an empty set / 0 rather than
falling back to a wider scope.

Metric data lives outside this engine; ``aggregate`` hands the resolved user
ids to a MetricsSource.
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from scopegraph.core.actor import Actor
from scopegraph.core.combo import Combo, combo_contains, normalize_combo
from scopegraph.models.hierarchy import ReportingHierarchy

logger = logging.getLogger(__name__)

METRIC_COUNT = "count"
METRIC_VALUE = "value"
METRICS = (METRIC_COUNT, METRIC_VALUE)


class MetricsSource(Protocol):
    """Transactional data the reports are computed from (sales, bookings...)."""

    def count_rows(
        self, user_ids: set[int], *, topic: str, combo: Combo,
        date_from: date | None, date_to: date | None,
    ) -> int: ...

    def sum_amount(
        self, user_ids: set[int], *, topic: str, combo: Combo,
        date_from: date | None, date_to: date | None,
    ) -> float: ...


def _row_matches(row: ReportingHierarchy, topic: str, combo: Combo) -> bool:
    return bool(row.is_active) and row.topic == topic and combo_contains(row.combo, combo)


def _combos_overlap(a: Combo | None, b: Combo | None) -> bool:
    return combo_contains(a, b) or combo_contains(b, a)


def _supervisor_rows(row: ReportingHierarchy, by_user_topic: dict) -> list[ReportingHierarchy]:
    """The supervisor's rows a ``parent_id``-less row hangs under.

    Rows whose combo overlaps the child's win; with none, every row the
    supervisor holds for the topic is a parent.
    """
    candidates = by_user_topic.get((row.supervisor_id, row.topic), [])
    overlapping = [c for c in candidates if _combos_overlap(c.combo, row.combo)]
    return overlapping or candidates


def _rows_by_user_topic(rows) -> dict[tuple[int, str], list[ReportingHierarchy]]:
    index: dict[tuple[int, str], list[ReportingHierarchy]] = defaultdict(list)
    for row in sorted(rows, key=lambda r: r.id):
        index[(row.user_id, row.topic)].append(row)
    return index


def find_reporting_node(actor: Actor, topic: str, combo: Combo | None = None) -> ReportingHierarchy | None:
    combo = normalize_combo(combo)
    try:
        rows = (
            ReportingHierarchy.query_active()
            .filter_by(user_id=actor.id, topic=topic, is_active=True)
            .order_by(ReportingHierarchy.id)
            .all()
        )
    except SQLAlchemyError:
        logger.exception(
            "Reporting rows could not be read; no root", extra={"actor_id": actor.id, "topic": topic},
        )
        return None
    for row in rows:
        if combo_contains(row.combo, combo):
            return row
    return None


def _children_index(rows: list[ReportingHierarchy]) -> dict[int, list[ReportingHierarchy]]:
    by_user_topic = _rows_by_user_topic(rows)

    children: dict[int, list[ReportingHierarchy]] = defaultdict(list)
    for row in rows:
        if row.parent_id is not None:
            parents = [row.parent_id]
        elif row.supervisor_id is not None:
            parents = [p.id for p in _supervisor_rows(row, by_user_topic)]
        else:
            parents = []
        for parent_id in parents:
            if parent_id != row.id:
                children[parent_id].append(row)
    return children


def get_downline_user_ids(node: ReportingHierarchy | None, topic: str, combo: Combo | None = None) -> set[int]:
    """User ids of *node* and its descendants that match topic + combo."""
    if node is None:
        return set()
    combo = normalize_combo(combo)

    # One query for the whole forest, then walk in memory.
    try:
        rows = ReportingHierarchy.query_active().all()
    except SQLAlchemyError:
        logger.exception("Reporting rows could not be read; empty downline", extra={"topic": topic})
        return set()
    children = _children_index(rows)

    user_ids: set[int] = set()
    visited = {node.id}
    on_path = {node.id}
    stack = [(node, iter(children.get(node.id, ())))]
    if _row_matches(node, topic, combo):
        user_ids.add(node.user_id)
    while stack:
        row, pending = stack[-1]
        child = next(pending, None)
        if child is None:
            stack.pop()
            on_path.discard(row.id)
            continue
        if child.id in on_path:
            logger.warning(
                "Cycle detected in reporting hierarchy at row %s", child.id,
                extra={"topic": topic, "event_type": "graph_cycle"},
            )
            continue
        if child.id in visited:
            continue
        visited.add(child.id)
        on_path.add(child.id)
        if _row_matches(child, topic, combo):
            user_ids.add(child.user_id)
        stack.append((child, iter(children.get(child.id, ()))))
    return user_ids


def downline_for_actor(actor: Actor, topic: str, combo: Combo | None = None) -> set[int]:
    return get_downline_user_ids(find_reporting_node(actor, topic, combo), topic, combo)


def aggregate(
    actor: Actor,
    topic: str,
    combo: Combo | None,
    metric: str,
    date_from: date | None = None,
    date_to: date | None = None,
    *,
    source: MetricsSource,
):
    """Roll up *metric* over the actor's downline. Unknown metric → 0."""
    if metric not in METRICS:
        logger.warning(
            "Unknown reporting metric %r; returning 0", metric,
            extra={"actor_id": actor.id, "topic": topic},
        )
        return 0

    combo = normalize_combo(combo)
    user_ids = downline_for_actor(actor, topic, combo)
    if not user_ids:
        return 0

    if metric == METRIC_COUNT:
        result = source.count_rows(user_ids, topic=topic, combo=combo, date_from=date_from, date_to=date_to)
    else:
        result = source.sum_amount(user_ids, topic=topic, combo=combo, date_from=date_from, date_to=date_to)
    return result or 0


def supervisor_chain(actor: Actor, topic: str, combo: Combo | None = None) -> list[int]:
    """Supervisor user ids above *actor* for topic/combo, nearest first."""
    node = find_reporting_node(actor, topic, combo)
    if node is None:
        return []

    try:
        rows = {row.id: row for row in ReportingHierarchy.query_active().all()}
    except SQLAlchemyError:
        logger.exception(
            "Reporting rows could not be read; empty chain", extra={"actor_id": actor.id, "topic": topic},
        )
        return []
    by_user_topic = _rows_by_user_topic(rows.values())

    chain: list[int] = []
    seen = {node.id}
    current = node
    while True:
        parent = rows.get(current.parent_id) if current.parent_id is not None else None
        if parent is None and current.supervisor_id is not None:
            parent = next(iter(_supervisor_rows(current, by_user_topic)), None)
        if parent is None:
            break
        if parent.id in seen:
            logger.warning(
                "Cycle detected in reporting hierarchy at row %s", parent.id,
                extra={"topic": topic, "event_type": "graph_cycle"},
            )
            break
        seen.add(parent.id)
        chain.append(parent.user_id)
        current = parent
    return chain
