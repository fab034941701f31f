"""Hierarchy graph: edge matching, subtree traversal, cycles and caching."""

import logging

import pytest
from sqlalchemy.exc import SQLAlchemyError

from scopegraph.core.actor import Actor
from scopegraph.models import db
from scopegraph.models.graph import (
    EDGE_APPROVAL,
    EDGE_REPORTS_TO,
    ORIGIN_FREESTANDING,
    ORIGIN_REPORTING,
    GraphEdge,
    GraphNode,
    NodeOrigin,
)
from scopegraph.services import graph_service
from scopegraph.services.graph_service import HierarchyGraph, edge_matches


def _powers(topic="sales", **combo):
    return {"topic": topic, "combo": combo}


def _graph(nodes, edges):
    """nodes: {id: user_id}; edges: [(from, to, powers)]"""
    return HierarchyGraph.build_from(
        [{"id": nid, "user_id": uid, "role": "member"} for nid, uid in nodes.items()],
        [
            {"id": i, "from_node_id": f, "to_node_id": t, "type": EDGE_REPORTS_TO, "level": 1, "powers": p}
            for i, (f, t, p) in enumerate(edges, start=1)
        ],
    )


class TestEdgeMatches:
    def test_wildcard_key_matches_any_value(self):
        powers = _powers(branch="Bkn", segment=None)
        assert edge_matches(powers, "sales", {"branch": "Bkn", "segment": "Personal"}) is True

    def test_different_value_does_not_match(self):
        powers = _powers(branch="Bkn", segment=None)
        assert edge_matches(powers, "sales", {"branch": "Pune"}) is False

    def test_absent_key_is_wildcard(self):
        assert edge_matches(_powers(branch="Bkn"), "sales", {"branch": "Bkn", "brand": "Alpha"}) is True

    def test_topic_must_be_equal(self):
        assert edge_matches(_powers(branch="Bkn"), "quotation", {"branch": "Bkn"}) is False
        assert edge_matches({"combo": {}}, "sales", {}) is False

    def test_empty_query_matches_any_combo(self):
        assert edge_matches(_powers(branch="Bkn"), "sales", {}) is True


class TestSubtree:
    def test_follows_matching_edges_only(self):
        g = _graph(
            {1: 10, 2: 20, 3: 30, 4: 40},
            [
                (1, 2, _powers(branch="Bkn")),
                (2, 3, _powers(branch=None)),
                (1, 4, _powers(branch="Pune")),
            ],
        )
        assert g.subtree(1, "sales", {"branch": "Bkn"}) == {1, 2, 3}
        assert g.subtree_actor_ids(1, "sales", {"branch": "Bkn"}) == {10, 20, 30}

    def test_other_topic_not_followed(self):
        g = _graph({1: 10, 2: 20}, [(1, 2, _powers(topic="quotation"))])
        assert g.subtree(1, "sales", {}) == {1}

    def test_actor_ids_are_deduplicated(self):
        g = _graph({1: 10, 2: 20, 3: 20}, [(1, 2, _powers()), (1, 3, _powers())])
        assert g.subtree_actor_ids(1, "sales", {}) == {10, 20}

    def test_unknown_root_is_empty(self):
        g = _graph({1: 10}, [])
        assert g.subtree(99, "sales", {}) == set()

    def test_diamond_is_not_a_cycle(self, caplog):
        g = _graph(
            {1: 1, 2: 2, 3: 3, 4: 4},
            [(1, 2, _powers()), (1, 3, _powers()), (2, 4, _powers()), (3, 4, _powers())],
        )
        with caplog.at_level(logging.WARNING, logger="scopegraph.services.graph_service"):
            assert g.subtree(1, "sales", {}) == {1, 2, 3, 4}
        assert "Cycle" not in caplog.text

    def test_edges_to_missing_nodes_are_skipped(self):
        g = _graph({1: 10}, [(1, 2, _powers())])
        assert g.outgoing(1) == []


class TestCycleSafety:
    def test_two_node_cycle_terminates(self, caplog):
        g = _graph({1: 10, 2: 20}, [(1, 2, _powers()), (2, 1, _powers())])
        with caplog.at_level(logging.WARNING, logger="scopegraph.services.graph_service"):
            assert g.subtree(1, "sales", {}) == {1, 2}
        assert "Cycle detected" in caplog.text

    def test_self_loop_and_longer_cycle(self):
        g = _graph(
            {1: 1, 2: 2, 3: 3},
            [(1, 1, _powers()), (1, 2, _powers()), (2, 3, _powers()), (3, 1, _powers())],
        )
        assert g.subtree(3, "sales", {}) == {1, 2, 3}
        assert g.subtree_actor_ids(2, "sales", {}) == {1, 2, 3}


# ── DB-backed helpers ────────────────────────────────────────────────────


@pytest.fixture()
def chain(make_user):
    """manager → lead → rep, sales edges for branch Bkn."""
    users = [make_user(n) for n in ("manager", "lead", "rep")]
    nodes = [GraphNode(user_id=u.id, role="member") for u in users]
    db.session.add_all(nodes)
    db.session.flush()
    db.session.add_all([
        GraphEdge(from_node_id=nodes[0].id, to_node_id=nodes[1].id, type=EDGE_REPORTS_TO, level=1,
                  powers=_powers(branch="Bkn")),
        GraphEdge(from_node_id=nodes[1].id, to_node_id=nodes[2].id, type=EDGE_APPROVAL, level=2,
                  powers=_powers(branch="Bkn")),
    ])
    db.session.commit()
    return users, nodes


def test_load_graph_skips_soft_deleted_rows(chain):
    users, nodes = chain
    nodes[2].soft_delete()
    db.session.commit()

    g = graph_service.load_graph("sales")
    assert len(g) == 2
    assert g.subtree(nodes[0].id, "sales", {"branch": "Bkn"}) == {nodes[0].id, nodes[1].id}


def test_load_graph_filters_topic(chain):
    _, nodes = chain
    g = graph_service.load_graph("quotation")
    assert g.outgoing(nodes[0].id) == []


def test_subtree_actor_ids_for_actor_is_cached(chain):
    users, nodes = chain
    manager = Actor(id=users[0].id)

    first = graph_service.subtree_actor_ids_for_actor(manager, "sales", {"branch": "Bkn"})
    assert first == {u.id for u in users}

    # Mutate without invalidating: cached value is served until TTL/invalidation.
    nodes[2].soft_delete()
    db.session.commit()
    assert graph_service.subtree_actor_ids_for_actor(manager, "sales", {"branch": "Bkn"}) == first

    graph_service.invalidate_graph_cache()
    assert graph_service.subtree_actor_ids_for_actor(manager, "sales", {"branch": "Bkn"}) == {
        users[0].id, users[1].id,
    }


def test_combo_mismatch_returns_only_own_id(chain):
    users, _ = chain
    manager = Actor(id=users[0].id)
    assert graph_service.subtree_actor_ids_for_actor(manager, "sales", {"branch": "Pune"}) == {users[0].id}


def test_actor_without_nodes_gets_empty_set(make_actor):
    assert graph_service.subtree_actor_ids_for_actor(make_actor(), "sales", {}) == set()


class TestTraverseForActor:
    def test_edge_type_collects_nodes_with_outgoing_edge(self, chain):
        users, nodes = chain
        manager = Actor(id=users[0].id)
        assert graph_service.traverse_for_actor(manager, edge_type=EDGE_APPROVAL) == [nodes[1].id]

    def test_attribute_values_are_collected(self, chain):
        users, nodes = chain
        nodes[1].attributes = {"branches": ["Bkn", "Pune"]}
        nodes[2].attributes = {"branches": "Bkn"}
        db.session.commit()
        manager = Actor(id=users[0].id)
        assert graph_service.traverse_for_actor(manager, attribute="branches") == ["Bkn", "Pune"]

    def test_no_filter_returns_visited_nodes(self, chain):
        users, nodes = chain
        lead = Actor(id=users[1].id)
        assert graph_service.traverse_for_actor(lead) == sorted([nodes[1].id, nodes[2].id])

    def test_disabled_flag_returns_empty(self, chain, app):
        users, _ = chain
        app.config["RBAC_GRAPH_ENABLED"] = False
        try:
            assert graph_service.traverse_for_actor(Actor(id=users[0].id)) == []
        finally:
            app.config["RBAC_GRAPH_ENABLED"] = True


class TestNodeOrigin:
    def test_origin_round_trips_through_columns(self, make_user):
        user = make_user()
        node = GraphNode(user_id=user.id, role="member", origin=NodeOrigin(ORIGIN_REPORTING, 4))
        db.session.add(node)
        db.session.commit()

        assert (node.origin_type, node.origin_id) == (ORIGIN_REPORTING, 4)
        assert db.session.get(GraphNode, node.id).origin == NodeOrigin(ORIGIN_REPORTING, 4)

    def test_node_without_origin_is_freestanding(self, make_user):
        node = GraphNode(user_id=make_user().id, role="member")
        db.session.add(node)
        db.session.commit()
        assert node.origin == NodeOrigin()
        assert node.origin.kind == ORIGIN_FREESTANDING

    @pytest.mark.parametrize("kind, definition_id", [("escalation", 1), (ORIGIN_FREESTANDING, 3)])
    def test_invalid_origin_rejected(self, kind, definition_id):
        with pytest.raises(ValueError):
            NodeOrigin(kind, definition_id)


class TestStorageFailure:
    @pytest.fixture()
    def broken_store(self, monkeypatch):
        def failing_query():
            raise SQLAlchemyError("connection lost")

        monkeypatch.setattr(GraphNode, "query_active", failing_query)
        return monkeypatch

    def test_load_graph_is_empty(self, chain, broken_store, caplog):
        with caplog.at_level(logging.ERROR, logger="scopegraph.services.graph_service"):
            assert len(graph_service.load_graph("sales")) == 0
        assert "could not be read" in caplog.text

    def test_actor_helpers_return_empty_and_cache_nothing(self, chain, broken_store):
        users, nodes = chain
        manager = Actor(id=users[0].id)

        assert graph_service.subtree_actor_ids_for_actor(manager, "sales", {"branch": "Bkn"}) == set()
        assert graph_service.traverse_for_actor(manager) == []

        broken_store.undo()
        assert graph_service.subtree_actor_ids_for_actor(manager, "sales", {"branch": "Bkn"}) == {
            u.id for u in users
        }
        assert graph_service.traverse_for_actor(manager) == sorted(n.id for n in nodes)
