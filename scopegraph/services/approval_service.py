"""
Approval Service — builds and walks approval chains over the graph.

A chain is an initiator node followed by approver nodes, joined by
``approval`` edges whose levels run 1..N in creation order:

    initiator ──(1)──▶ level_1 ──(2)──▶ level_2 ──(3)──▶ level_3

Two ways to build one:
    initiate(definition, combo, actor)          one definition, `level` hops
    initialize_topic_chain(topic, combo, actor) one hop per matching definition

A request combo that the definition does not accept is an ordinary outcome:
both builders return None and write nothing. Building is atomic; a storage
failure rolls back every node and edge of the call and raises
ChainBuildError.

Approver decisions are stored on the node's ``attributes["status"]``:
pending → approved | rejected, and a rejection cancels everything after it.
Notifying approvers is left to the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from scopegraph.core.actor import Actor
from scopegraph.core.combo import Combo, combo_matches, normalize_combo
from scopegraph.core.exceptions import (
    ChainBuildError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from scopegraph.models import db
from scopegraph.models.audit import write_audit
from scopegraph.models.auth import User
from scopegraph.models.graph import (
    EDGE_APPROVAL,
    ORIGIN_APPROVAL,
    ROLE_INITIATOR,
    GraphEdge,
    GraphNode,
    NodeOrigin,
)
from scopegraph.models.hierarchy import ApprovalHierarchy
from scopegraph.services.graph_service import invalidate_graph_cache

logger = logging.getLogger(__name__)

STATUS_INITIATED = "initiated"
STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_CANCELLED = "cancelled"


@dataclass
class ApprovalChain:
    """Handle returned by a successful build. Always truthy."""

    root: GraphNode
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)
    definition_ids: tuple[int, ...] = ()

    @property
    def approvers(self) -> list[GraphNode]:
        return self.nodes[1:]

    @property
    def first_approver(self) -> GraphNode | None:
        return self.nodes[1] if len(self.nodes) > 1 else None

    def __len__(self) -> int:
        return len(self.edges)

    def __bool__(self) -> bool:
        return True


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _edge_powers(definition: ApprovalHierarchy) -> dict:
    powers = dict(definition.powers or {})
    powers["topic"] = definition.topic
    powers["combo"] = normalize_combo(definition.combo)
    return powers


def _link(previous: GraphNode, node: GraphNode, level: int, definition: ApprovalHierarchy) -> GraphEdge:
    edge = GraphEdge(
        from_node_id=previous.id,
        to_node_id=node.id,
        type=EDGE_APPROVAL,
        level=level,
        powers=_edge_powers(definition),
    )
    db.session.add(edge)
    db.session.flush()
    return edge


def _build_chain(actor: Actor, topic: str, request_combo: dict, steps: list[ApprovalHierarchy]) -> ApprovalChain:
    definition_ids = tuple(dict.fromkeys(d.id for d in steps))
    try:
        with db.session.begin_nested():
            root = GraphNode(
                user_id=actor.id,
                role=ROLE_INITIATOR,
                attributes={
                    "topic": topic,
                    "combo": request_combo,
                    "status": STATUS_INITIATED,
                    "initiated_at": _now_iso(),
                },
                origin=NodeOrigin(),
            )
            db.session.add(root)
            db.session.flush()

            chain = ApprovalChain(root=root, nodes=[root], definition_ids=definition_ids)
            previous = root
            for level, definition in enumerate(steps, start=1):
                node = GraphNode(
                    user_id=definition.approver_id,
                    role=f"level_{level}",
                    attributes={
                        **(definition.powers or {}),
                        "topic": topic,
                        "combo": request_combo,
                        "level": level,
                        "definition_level": definition.level,
                        "status": STATUS_PENDING,
                    },
                    origin=NodeOrigin(ORIGIN_APPROVAL, definition.id),
                )
                db.session.add(node)
                db.session.flush()
                chain.edges.append(_link(previous, node, level, definition))
                chain.nodes.append(node)
                previous = node

            write_audit(
                entity_type="graph_node",
                entity_id=str(root.id),
                action="approval.initiated",
                actor_user_id=actor.id,
                diff={
                    "topic": topic,
                    "combo": request_combo,
                    "definitions": list(definition_ids),
                    "levels": len(chain.edges),
                },
            )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error(
            "Approval chain build failed for topic %s: %s", topic, exc,
            extra={"actor_id": actor.id, "topic": topic, "event_type": "chain_build_failed"},
        )
        raise ChainBuildError(definition_ids[0] if definition_ids else None) from exc

    invalidate_graph_cache()
    logger.info(
        "Approval chain %s created: %d level(s)", chain.root.id, len(chain),
        extra={"actor_id": actor.id, "topic": topic, "node_id": chain.root.id},
    )
    return chain


# ═══════════════════════════════════════════════════════════════
# Building
# ═══════════════════════════════════════════════════════════════


def initiate(definition: ApprovalHierarchy, request_combo: Combo | None, actor: Actor) -> ApprovalChain | None:
    """Build ``definition.level`` approval hops for *actor*'s request.

    Returns None when the request combo does not satisfy the definition.
    """
    request_combo = normalize_combo(request_combo)
    if not definition.is_active or definition.is_deleted:
        logger.info(
            "Definition %s is inactive; no chain built", definition.id,
            extra={"actor_id": actor.id, "definition_id": definition.id},
        )
        return None
    if not combo_matches(definition.combo, request_combo):
        logger.info(
            "Combo %s does not match definition %s", request_combo, definition.id,
            extra={"actor_id": actor.id, "topic": definition.topic, "definition_id": definition.id},
        )
        return None
    return _build_chain(actor, definition.topic, request_combo, [definition] * definition.level)


def initialize_topic_chain(topic: str, combo: Combo | None, actor: Actor) -> ApprovalChain | None:
    """One hop per active definition of *topic* that accepts *combo*, in level order."""
    combo = normalize_combo(combo)
    definitions = (
        ApprovalHierarchy.query_active()
        .filter_by(topic=topic, is_active=True)
        .order_by(ApprovalHierarchy.level, ApprovalHierarchy.id)
        .all()
    )
    if not definitions:
        raise NotFoundError("ApprovalHierarchy", topic)
    steps = [d for d in definitions if combo_matches(d.combo, combo)]
    if not steps:
        logger.info(
            "No %s definition accepts combo %s", topic, combo,
            extra={"actor_id": actor.id, "topic": topic},
        )
        return None
    return _build_chain(actor, topic, combo, steps)


# ═══════════════════════════════════════════════════════════════
# Walking
# ═══════════════════════════════════════════════════════════════


def _status(node: GraphNode) -> str:
    return (node.attributes or {}).get("status", STATUS_PENDING)


def _set_attributes(node: GraphNode, **changes) -> None:
    # JSON columns only track reassignment
    node.attributes = {**(node.attributes or {}), **changes}


def get_next_approver(node: GraphNode) -> GraphNode | None:
    edge = (
        node.outgoing_edges
        .filter(GraphEdge.type == EDGE_APPROVAL, GraphEdge.deleted_at.is_(None))
        .order_by(GraphEdge.level)
        .first()
    )
    if edge is None or edge.to_node is None or edge.to_node.is_deleted:
        return None
    return edge.to_node


def get_previous_node(node: GraphNode) -> GraphNode | None:
    edge = (
        node.incoming_edges
        .filter(GraphEdge.type == EDGE_APPROVAL, GraphEdge.deleted_at.is_(None))
        .first()
    )
    return edge.from_node if edge is not None else None


def get_approval_chain(root: GraphNode) -> list[GraphNode]:
    """Nodes from *root* to the last approver, in order."""
    chain = [root]
    seen = {root.id}
    current = root
    while (nxt := get_next_approver(current)) is not None:
        if nxt.id in seen:
            logger.warning(
                "Cycle detected in approval chain at node %s", nxt.id,
                extra={"node_id": nxt.id, "event_type": "graph_cycle"},
            )
            break
        seen.add(nxt.id)
        chain.append(nxt)
        current = nxt
    return chain


def _overall_status(approvers: list[GraphNode]) -> str:
    statuses = {_status(n) for n in approvers}
    if STATUS_REJECTED in statuses:
        return STATUS_REJECTED
    if statuses == {STATUS_APPROVED}:
        return STATUS_APPROVED
    if STATUS_PENDING in statuses:
        return STATUS_PENDING
    return STATUS_INITIATED


def get_approval_status(root: GraphNode) -> dict:
    chain = get_approval_chain(root)
    approvers = [n for n in chain if n.role != ROLE_INITIATOR]
    attrs = root.attributes or {}
    return {
        "root_id": root.id,
        "initiator_id": root.user_id,
        "topic": attrs.get("topic"),
        "combo": attrs.get("combo", {}),
        "initiated_at": attrs.get("initiated_at"),
        "overall_status": _overall_status(approvers),
        "approvers": [
            {
                "node_id": n.id,
                "user_id": n.user_id,
                "level": (n.attributes or {}).get("level", 0),
                "status": _status(n),
                "decided_at": (n.attributes or {}).get("approved_at") or (n.attributes or {}).get("rejected_at"),
                "note": (n.attributes or {}).get("note"),
            }
            for n in approvers
        ],
    }


def is_approval_complete(root: GraphNode) -> bool:
    return all(_status(n) == STATUS_APPROVED for n in get_approval_chain(root) if n.role != ROLE_INITIATOR)


def can_proceed_to_next(node: GraphNode) -> bool:
    return _status(node) == STATUS_APPROVED


# ═══════════════════════════════════════════════════════════════
# Decisions
# ═══════════════════════════════════════════════════════════════


def _check_decidable(node: GraphNode, actor: Actor, ability: str) -> None:
    if node.user_id != actor.id:
        raise PermissionDenied(actor_id=actor.id, ability=ability)
    if node.role == ROLE_INITIATOR:
        raise ValidationError("The initiator node cannot be decided", {"node_id": node.id})
    if _status(node) != STATUS_PENDING:
        raise ValidationError(
            f"Node {node.id} is already {_status(node)}", {"status": _status(node)},
        )
    previous = get_previous_node(node)
    if previous is not None and previous.role != ROLE_INITIATOR and not can_proceed_to_next(previous):
        raise ValidationError(
            "Previous approval level is not approved yet", {"previous_node_id": previous.id},
        )


def approve_node(node: GraphNode, actor: Actor, note: str = "") -> GraphNode:
    _check_decidable(node, actor, "approval.approve")
    changes = {"status": STATUS_APPROVED, "approved_at": _now_iso(), "approved_by": actor.id}
    if note:
        changes["note"] = note
    _set_attributes(node, **changes)
    write_audit(
        entity_type="graph_node",
        entity_id=str(node.id),
        action="approval.approved",
        actor_user_id=actor.id,
        diff={"note": note} if note else None,
    )
    db.session.commit()
    invalidate_graph_cache()
    logger.info(
        "Approval node %s approved", node.id,
        extra={"actor_id": actor.id, "node_id": node.id, "decision": STATUS_APPROVED},
    )
    return node


def reject_node(node: GraphNode, actor: Actor, reason: str) -> GraphNode:
    """Reject at *node* and cancel every approver after it."""
    _check_decidable(node, actor, "approval.reject")
    if not reason:
        raise ValidationError("A rejection reason is required", {"reason": "required"})
    _set_attributes(
        node,
        status=STATUS_REJECTED,
        rejected_at=_now_iso(),
        rejected_by=actor.id,
        rejection_reason=reason,
    )
    cancelled = []
    for downstream in get_approval_chain(node)[1:]:
        if _status(downstream) == STATUS_PENDING:
            _set_attributes(downstream, status=STATUS_CANCELLED, cancelled_at=_now_iso())
            cancelled.append(downstream.id)
    write_audit(
        entity_type="graph_node",
        entity_id=str(node.id),
        action="approval.rejected",
        actor_user_id=actor.id,
        diff={"reason": reason, "cancelled": cancelled},
    )
    db.session.commit()
    invalidate_graph_cache()
    logger.info(
        "Approval node %s rejected, %d downstream cancelled", node.id, len(cancelled),
        extra={"actor_id": actor.id, "node_id": node.id, "decision": STATUS_REJECTED},
    )
    return node


# ═══════════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════════


def pending_approvals_for(actor: Actor) -> list[GraphNode]:
    nodes = (
        GraphNode.query_active()
        .filter(GraphNode.user_id == actor.id, GraphNode.role.like("level_%"))
        .order_by(GraphNode.id)
        .all()
    )
    return [n for n in nodes if _status(n) == STATUS_PENDING]


def approvers_at_level(topic: str, level: int) -> list[User]:
    """Distinct approvers of the active *topic* definitions at *level*."""
    return (
        User.query
        .join(ApprovalHierarchy, ApprovalHierarchy.approver_id == User.id)
        .filter(
            ApprovalHierarchy.topic == topic,
            ApprovalHierarchy.level == level,
            ApprovalHierarchy.is_active.is_(True),
            ApprovalHierarchy.deleted_at.is_(None),
        )
        .distinct()
        .order_by(User.id)
        .all()
    )
