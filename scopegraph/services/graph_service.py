"""
Graph Service — adjacency-list traversal over GraphNode / GraphEdge rows.

The graph is batch-loaded once per request (two queries, no per-node
fetches) into a ``HierarchyGraph``. Traversal follows only edges whose
``powers`` match the requested topic and combo:

    edge.powers["topic"] == topic
    and for every key in the query combo, the edge's combo leaves the key
    unconstrained (absent / None) or holds the same value

Edges are expected to form a DAG, but storage does not enforce it; traversal
keeps a visited set and logs a warning when it meets a back edge.

Actor-level results are cached for GRAPH_CACHE_TTL seconds (default 60) via
cache_service. Any graph mutation should call ``invalidate_graph_cache``;
staleness up to the TTL is otherwise accepted. A storage failure yields an
empty result, logged and never cached.
"""

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from scopegraph.config import DEFAULT_GRAPH_CACHE_TTL
from scopegraph.core.actor import Actor
from scopegraph.core.combo import Combo, combo_hash, combo_matches
from scopegraph.models.graph import GraphEdge, GraphNode
from scopegraph.services import cache_service

logger = logging.getLogger(__name__)


def edge_matches(powers: Mapping | None, topic: str, combo: Combo | None) -> bool:
    powers = powers or {}
    if powers.get("topic") != topic:
        return False
    return combo_matches(powers.get("combo"), combo)


@dataclass(frozen=True)
class NodeView:
    id: int
    user_id: int
    role: str
    attributes: dict = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class EdgeView:
    id: int | None
    from_id: int
    to_id: int
    type: str
    level: int
    powers: dict = field(default_factory=dict, compare=False, hash=False)

    def matches(self, topic: str, combo: Combo | None) -> bool:
        return edge_matches(self.powers, topic, combo)


def _get(obj, name, default=None):
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


class HierarchyGraph:
    """Immutable in-memory graph: nodes by id, outgoing edges by source id."""

    def __init__(self, nodes: dict[int, NodeView], outgoing: dict[int, list[EdgeView]]):
        self._nodes = nodes
        self._outgoing = outgoing

    @classmethod
    def build_from(cls, nodes: Iterable, edges: Iterable) -> "HierarchyGraph":
        """Build from ORM rows or plain mappings with the same field names."""
        node_map: dict[int, NodeView] = {}
        for n in nodes:
            node_map[_get(n, "id")] = NodeView(
                id=_get(n, "id"),
                user_id=_get(n, "user_id"),
                role=_get(n, "role", ""),
                attributes=dict(_get(n, "attributes") or {}),
            )

        outgoing: dict[int, list[EdgeView]] = defaultdict(list)
        for e in edges:
            from_id = _get(e, "from_node_id")
            to_id = _get(e, "to_node_id")
            if from_id not in node_map or to_id not in node_map:
                logger.debug("Skipping edge %s with an inactive endpoint", _get(e, "id"))
                continue
            outgoing[from_id].append(EdgeView(
                id=_get(e, "id"),
                from_id=from_id,
                to_id=to_id,
                type=_get(e, "type", ""),
                level=_get(e, "level", 0) or 0,
                powers=dict(_get(e, "powers") or {}),
            ))
        for edge_list in outgoing.values():
            edge_list.sort(key=lambda x: (x.level, x.to_id))
        return cls(node_map, dict(outgoing))

    # ── Accessors ────────────────────────────────────────────────────────

    def __contains__(self, node_id) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, node_id: int) -> NodeView | None:
        return self._nodes.get(node_id)

    def outgoing(self, node_id: int) -> list[EdgeView]:
        return list(self._outgoing.get(node_id, ()))

    def nodes_for_user(self, user_id: int) -> list[int]:
        return sorted(n.id for n in self._nodes.values() if n.user_id == user_id)

    # ── Traversal ────────────────────────────────────────────────────────

    def reachable(self, root_ids: Iterable[int], follow: Callable[[EdgeView], bool] | None = None) -> set[int]:
        """Node ids reachable from *root_ids* (inclusive) along edges accepted by *follow*."""
        visited: set[int] = set()
        cycle_at: int | None = None
        for root_id in root_ids:
            if root_id not in self._nodes or root_id in visited:
                continue
            visited.add(root_id)
            on_path = {root_id}
            stack = [(root_id, iter(self._outgoing.get(root_id, ())))]
            while stack:
                node_id, edges = stack[-1]
                edge = next(edges, None)
                if edge is None:
                    stack.pop()
                    on_path.discard(node_id)
                    continue
                if follow is not None and not follow(edge):
                    continue
                target = edge.to_id
                if target in on_path:
                    cycle_at = target
                    continue
                if target in visited:
                    continue
                visited.add(target)
                on_path.add(target)
                stack.append((target, iter(self._outgoing.get(target, ()))))
        if cycle_at is not None:
            logger.warning(
                "Cycle detected in hierarchy graph at node %s; traversal stopped revisiting",
                cycle_at, extra={"node_id": cycle_at, "event_type": "graph_cycle"},
            )
        return visited

    def subtree(self, root_id: int, topic: str, combo: Combo | None = None) -> set[int]:
        return self.reachable([root_id], lambda edge: edge.matches(topic, combo))

    def subtree_actor_ids(self, root_id: int, topic: str, combo: Combo | None = None) -> set[int]:
        return {self._nodes[node_id].user_id for node_id in self.subtree(root_id, topic, combo)}


# ═══════════════════════════════════════════════════════════════
# Loading & actor-level helpers
# ═══════════════════════════════════════════════════════════════


def _graph_ttl() -> int:
    if has_app_context():
        return current_app.config.get("GRAPH_CACHE_TTL", DEFAULT_GRAPH_CACHE_TTL)
    return DEFAULT_GRAPH_CACHE_TTL


def _graph_enabled() -> bool:
    if has_app_context():
        return bool(current_app.config.get("RBAC_GRAPH_ENABLED", True))
    return True


def _fetch_graph(topic: str | None) -> HierarchyGraph:
    nodes = GraphNode.query_active().all()
    edges = GraphEdge.query_active().all()
    if topic is not None:
        edges = [e for e in edges if (e.powers or {}).get("topic") == topic]
    return HierarchyGraph.build_from(nodes, edges)


def load_graph(topic: str | None = None) -> HierarchyGraph:
    """Batch-load active nodes and edges. With *topic*, keep only its edges."""
    try:
        return _fetch_graph(topic)
    except SQLAlchemyError:
        logger.exception("Graph rows could not be read; using an empty graph", extra={"topic": topic})
        return HierarchyGraph({}, {})


def subtree_actor_ids_for_actor(actor: Actor, topic: str, combo: Combo | None = None) -> set[int]:
    """Actor ids reachable from any of *actor*'s nodes for topic/combo. Cached."""

    def _load():
        graph = _fetch_graph(topic)
        roots = graph.nodes_for_user(actor.id)
        reached = graph.reachable(roots, lambda edge: edge.matches(topic, combo))
        return sorted({graph.node(node_id).user_id for node_id in reached})

    key = cache_service.graph_key(actor.id, topic, combo_hash(combo))
    try:
        return set(cache_service.get_cached(key, ttl=_graph_ttl(), loader=_load))
    except SQLAlchemyError:
        logger.exception(
            "Graph rows could not be read; empty subtree", extra={"actor_id": actor.id, "topic": topic},
        )
        return set()


def traverse_for_actor(actor: Actor, edge_type: str | None = None, attribute: str | None = None) -> list:
    """Walk every edge reachable from *actor*'s nodes.

    attribute  → collect that attribute's values from the visited nodes
    edge_type  → ids of visited nodes that have an outgoing edge of the type
    neither    → ids of all visited nodes

    Returns ``[]`` when RBAC_GRAPH_ENABLED is off.
    """
    if not _graph_enabled():
        return []

    def _load():
        graph = _fetch_graph(None)
        visited = sorted(graph.reachable(graph.nodes_for_user(actor.id)))
        result: list = []
        for node_id in visited:
            if attribute:
                value = graph.node(node_id).attributes.get(attribute)
                values = value if isinstance(value, list) else [value]
                for v in values:
                    if v is not None and v not in result:
                        result.append(v)
            elif edge_type:
                if any(e.type == edge_type for e in graph.outgoing(node_id)):
                    result.append(node_id)
            else:
                result.append(node_id)
        return result

    key = cache_service.traversal_key(actor.id, edge_type, attribute)
    try:
        return cache_service.get_cached(key, ttl=_graph_ttl(), loader=_load)
    except SQLAlchemyError:
        logger.exception("Graph rows could not be read; empty traversal", extra={"actor_id": actor.id})
        return []


def invalidate_graph_cache() -> int:
    removed = cache_service.invalidate_prefix(cache_service.GRAPH_PREFIX)
    logger.debug("Graph cache invalidated (%d keys)", removed)
    return removed
