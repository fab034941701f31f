"""
Scope Store — UserDataScope rows: resolver reads and admin assignment.

The resolvers only consume ``active_scope_values``; rows are already filtered
to active status and non-deleted here, so nothing upstream checks
``deleted_at`` or ``status`` again.

The assignment helpers at the bottom back admin tooling and seeding. Each one
replaces the user's rows for the given type, matching how scopes are edited
in the admin screens.
"""

import logging

from scopegraph.core.exceptions import NotFoundError, ValidationError
from scopegraph.models import db
from scopegraph.models.auth import User
from scopegraph.models.scope import SCOPE_STATUS_ACTIVE, SCOPE_TYPES, UserDataScope

logger = logging.getLogger(__name__)


def active_scope_values(user_id: int, scope_type: str) -> list[int | None]:
    """Return ``scope_value`` of every active row; ``None`` entries are wildcards."""
    rows = (
        db.session.query(UserDataScope.scope_value)
        .filter(
            UserDataScope.user_id == user_id,
            UserDataScope.scope_type == scope_type,
            UserDataScope.status == SCOPE_STATUS_ACTIVE,
            UserDataScope.deleted_at.is_(None),
        )
        .all()
    )
    return [r[0] for r in rows]


def scope_types_for(user_id: int) -> list[str]:
    rows = (
        db.session.query(UserDataScope.scope_type)
        .filter(
            UserDataScope.user_id == user_id,
            UserDataScope.status == SCOPE_STATUS_ACTIVE,
            UserDataScope.deleted_at.is_(None),
        )
        .distinct()
        .all()
    )
    return sorted(r[0] for r in rows)


# ── Assignment helpers ───────────────────────────────────────────────────


def _validate_scope_type(scope_type: str) -> None:
    if scope_type not in SCOPE_TYPES:
        raise ValidationError(
            f"Invalid scope type: {scope_type}",
            {"scope_type": f"must be one of {', '.join(SCOPE_TYPES)}"},
        )


def _soft_delete_type(user_id: int, scope_type: str) -> int:
    rows = UserDataScope.query_active().filter_by(user_id=user_id, scope_type=scope_type).all()
    for row in rows:
        row.soft_delete()
    return len(rows)


def assign_scope(
    user_id: int,
    scope_type: str,
    scope_values: list[int | None] | int | None = None,
    *,
    hierarchy_level: int = 0,
) -> list[UserDataScope]:
    """Replace the user's rows for *scope_type*.

    ``scope_values=None`` (or a list containing ``None``) grants the wildcard.
    """
    _validate_scope_type(scope_type)
    if db.session.get(User, user_id) is None:
        raise NotFoundError("User", user_id)

    if scope_values is None or isinstance(scope_values, int):
        scope_values = [scope_values]
    values = list(dict.fromkeys(scope_values))

    _soft_delete_type(user_id, scope_type)
    db.session.flush()

    created = []
    for value in values:
        # A soft-deleted row for the same value would trip the unique
        # constraint; bring it back instead.
        row = UserDataScope.query.filter_by(
            user_id=user_id, scope_type=scope_type, scope_value=value,
        ).first()
        if row is None:
            row = UserDataScope(user_id=user_id, scope_type=scope_type, scope_value=value)
            db.session.add(row)
        row.restore()
        row.status = SCOPE_STATUS_ACTIVE
        row.hierarchy_level = hierarchy_level
        created.append(row)

    db.session.commit()
    logger.info(
        "Scope %s assigned to user %s: %s", scope_type, user_id, values,
        extra={"scope_type": scope_type},
    )
    return created


def assign_scopes(user_id: int, scopes: dict[str, list[int | None] | int | None]) -> None:
    """Bulk form of ``assign_scope``: ``{"branch": [1, 2], "brand": None}``."""
    for scope_type, values in scopes.items():
        assign_scope(user_id, scope_type, values)


def revoke_scope(user_id: int, scope_type: str) -> int:
    """Soft-delete every row of *scope_type* for the user. Returns the count."""
    _validate_scope_type(scope_type)
    removed = _soft_delete_type(user_id, scope_type)
    db.session.commit()
    return removed
