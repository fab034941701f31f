"""
Graph primitives — nodes and typed, levelled edges.

Used to materialise approval chains (ApprovalHierarchy.initiate) and ad hoc
graphs. A node's origin is a tagged union stored as (origin_type, origin_id):

    NodeOrigin("approval", 12)   → spawned by ApprovalHierarchy 12
    NodeOrigin("reporting", 4)   → spawned by ReportingHierarchy 4
    NodeOrigin("freestanding")   → created directly (chain initiators)

Edges carry `powers`, which always holds at least {"topic", "combo"} so the
traversal can match them without joining back to the definition.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from scopegraph.models import db
from scopegraph.models.soft_delete import SoftDeleteMixin

# ── Constants ─────────────────────────────────────────────────────────────────

ORIGIN_APPROVAL = "approval"
ORIGIN_REPORTING = "reporting"
ORIGIN_FREESTANDING = "freestanding"
VALID_ORIGINS = frozenset({ORIGIN_APPROVAL, ORIGIN_REPORTING, ORIGIN_FREESTANDING})

EDGE_APPROVAL = "approval"
EDGE_REPORTS_TO = "reports_to"

ROLE_INITIATOR = "initiator"


@dataclass(frozen=True)
class NodeOrigin:
    kind: str = ORIGIN_FREESTANDING
    definition_id: int | None = None

    def __post_init__(self):
        if self.kind not in VALID_ORIGINS:
            raise ValueError(f"Unknown node origin: {self.kind!r}")
        if self.kind == ORIGIN_FREESTANDING and self.definition_id is not None:
            raise ValueError("freestanding nodes carry no definition id")


class GraphNode(SoftDeleteMixin, db.Model):
    __tablename__ = "graph_nodes"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role = db.Column(db.String(50), nullable=False)
    attributes = db.Column(db.JSON, nullable=False, default=dict)
    origin_type = db.Column(db.String(20), nullable=False, default=ORIGIN_FREESTANDING)
    origin_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_graph_nodes_origin", "origin_type", "origin_id"),
    )

    outgoing_edges = db.relationship(
        "GraphEdge", foreign_keys="GraphEdge.from_node_id",
        back_populates="from_node", lazy="dynamic",
    )
    incoming_edges = db.relationship(
        "GraphEdge", foreign_keys="GraphEdge.to_node_id",
        back_populates="to_node", lazy="dynamic",
    )

    @property
    def origin(self) -> NodeOrigin:
        return NodeOrigin(self.origin_type or ORIGIN_FREESTANDING, self.origin_id)

    @origin.setter
    def origin(self, value: NodeOrigin) -> None:
        self.origin_type = value.kind
        self.origin_id = value.definition_id

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role": self.role,
            "attributes": self.attributes or {},
            "origin_type": self.origin_type,
            "origin_id": self.origin_id,
        }


class GraphEdge(SoftDeleteMixin, db.Model):
    __tablename__ = "graph_edges"

    id = db.Column(db.Integer, primary_key=True)
    from_node_id = db.Column(
        db.Integer, db.ForeignKey("graph_nodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    to_node_id = db.Column(
        db.Integer, db.ForeignKey("graph_nodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type = db.Column(db.String(30), nullable=False)
    level = db.Column(db.Integer, nullable=False, default=0)
    powers = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.CheckConstraint("level >= 0", name="ck_graph_edges_level_non_negative"),
    )

    from_node = db.relationship("GraphNode", foreign_keys=[from_node_id], back_populates="outgoing_edges")
    to_node = db.relationship("GraphNode", foreign_keys=[to_node_id], back_populates="incoming_edges")

    def to_dict(self):
        return {
            "id": self.id,
            "from_node_id": self.from_node_id,
            "to_node_id": self.to_node_id,
            "type": self.type,
            "level": self.level,
            "powers": self.powers or {},
        }
