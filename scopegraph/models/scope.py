"""
Data scope assignments — which entity IDs of which type a user may access.

    user_id=1, scope_type="branch", scope_value=5     → user 1 may access branch 5
    user_id=1, scope_type="branch", scope_value=None  → user 1 may access ALL branches

No row for a type means no access to that type unless the type can be derived
from a parent type (see scopegraph.core.scope_links).
"""

from datetime import datetime, timezone

from scopegraph.models import db
from scopegraph.models.soft_delete import SoftDeleteMixin

# ── Constants ─────────────────────────────────────────────────────────────────

SCOPE_TYPES = (
    "branch",
    "location",
    "department",
    "division",
    "vertical",
    "brand",
    "segment",
    "sub_segment",
    "vehicle_model",
    "variant",
    "color",
)

SCOPE_STATUS_ACTIVE = "active"
SCOPE_STATUS_INACTIVE = "inactive"


class UserDataScope(SoftDeleteMixin, db.Model):
    __tablename__ = "user_data_scopes"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    scope_type = db.Column(db.String(30), nullable=False)
    scope_value = db.Column(db.Integer, nullable=True)  # NULL = wildcard
    hierarchy_level = db.Column(db.SmallInteger, nullable=False, default=0)
    status = db.Column(db.String(10), nullable=False, default=SCOPE_STATUS_ACTIVE)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("user_id", "scope_type", "scope_value", name="uq_user_scope_value"),
        db.Index("ix_user_data_scopes_lookup", "user_id", "scope_type", "status"),
    )

    @property
    def is_wildcard(self):
        return self.scope_value is None

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "scope_type": self.scope_type,
            "scope_value": self.scope_value,
            "hierarchy_level": self.hierarchy_level,
            "status": self.status,
            "is_wildcard": self.is_wildcard,
        }
