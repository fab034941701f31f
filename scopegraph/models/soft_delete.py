"""
Soft Delete Mixin — scope assignments, graph rows and hierarchy definitions.

Adds a `deleted_at` timestamp column and query helpers. Resolvers never look
at `deleted_at` themselves; they read through `query_active()` so soft-delete
filtering stays at the repository boundary.

Usage:
    class ApprovalHierarchy(SoftDeleteMixin, db.Model):
        ...

    definition.soft_delete()
    db.session.commit()

    ApprovalHierarchy.query_active().filter_by(topic="sales").all()
"""

from datetime import datetime, timezone

from scopegraph.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime, nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        """Restore a soft-deleted record."""
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))
