"""
Approval and reporting hierarchy definitions.

ApprovalHierarchy:
    One definition = one approver, a number of approval hops (`level`), a
    topic ("sales", "quotation", ...) and a combo of attribute constraints
    such as {"branch": "Bkn", "segment": None}. A None value in the combo is a
    wildcard. `powers` is copied onto every edge of a chain built from it.

ReportingHierarchy:
    A tree of (user, supervisor) rows per topic. `parent_id` points at the
    supervisor's own reporting row, so descendants-and-self of a row is the
    downline of that user for the row's topic.
"""

from datetime import datetime, timezone

from scopegraph.models import db
from scopegraph.models.soft_delete import SoftDeleteMixin


class ApprovalHierarchy(SoftDeleteMixin, db.Model):
    __tablename__ = "approval_hierarchies"

    id = db.Column(db.Integer, primary_key=True)
    approver_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    level = db.Column(db.Integer, nullable=False)
    topic = db.Column(db.String(100), nullable=False)
    combo = db.Column(db.JSON, nullable=True)
    powers = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_approval_hierarchies_topic_level", "topic", "level"),
        db.CheckConstraint("level >= 0", name="ck_approval_hierarchies_level_non_negative"),
    )

    approver = db.relationship("User", foreign_keys=[approver_id])

    def to_dict(self):
        return {
            "id": self.id,
            "approver_id": self.approver_id,
            "level": self.level,
            "topic": self.topic,
            "combo": self.combo or {},
            "powers": self.powers or {},
            "is_active": self.is_active,
        }


class ReportingHierarchy(SoftDeleteMixin, db.Model):
    __tablename__ = "reporting_hierarchies"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    supervisor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    parent_id = db.Column(
        db.Integer, db.ForeignKey("reporting_hierarchies.id", ondelete="SET NULL"), nullable=True
    )
    topic = db.Column(db.String(100), nullable=False)
    combo = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_reporting_hierarchies_user_topic", "user_id", "topic"),
        db.Index("ix_reporting_hierarchies_parent", "parent_id"),
    )

    user = db.relationship("User", foreign_keys=[user_id])
    supervisor = db.relationship("User", foreign_keys=[supervisor_id])

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "supervisor_id": self.supervisor_id,
            "parent_id": self.parent_id,
            "topic": self.topic,
            "combo": self.combo or {},
            "is_active": self.is_active,
        }
