"""
Permission Service — DB-driven RBAC with a process-local cache.

Reads the permission store (users, roles, permissions, time-bound role
assignments) and builds the ``Actor`` value the resolvers receive.

Evaluation is deny-by-default:
  - only assignments that are active and inside their time window count
  - a permission is granted only if at least one current role grants it
  - super-admin roles bypass the permission check entirely
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from flask import current_app, has_app_context

from scopegraph.config import DEFAULT_PERMISSION_CACHE_TTL, DEFAULT_SUPER_ADMIN_ROLES
from scopegraph.core.actor import Actor
from scopegraph.core.exceptions import ConflictError, NotFoundError, ValidationError
from scopegraph.models import db
from scopegraph.models.audit import write_audit
from scopegraph.models.auth import Permission, Role, RolePermission, User, UserRole

logger = logging.getLogger(__name__)

# Cache key: user_id → (cached_at, (role_names, permissions))
_permission_cache: dict[int, tuple[float, tuple[frozenset[str], frozenset[str]]]] = {}
_cache_lock = threading.Lock()

ACTIONS = ("view", "create", "edit", "delete")


def super_admin_roles() -> frozenset[str]:
    if has_app_context():
        return frozenset(current_app.config.get("SUPER_ADMIN_ROLES", DEFAULT_SUPER_ADMIN_ROLES))
    return frozenset(DEFAULT_SUPER_ADMIN_ROLES)


def _cache_ttl() -> int:
    if has_app_context():
        return current_app.config.get("PERMISSION_CACHE_TTL", DEFAULT_PERMISSION_CACHE_TTL)
    return DEFAULT_PERMISSION_CACHE_TTL


def _get_cached(user_id: int) -> Optional[tuple[frozenset[str], frozenset[str]]]:
    ttl = _cache_ttl()
    with _cache_lock:
        entry = _permission_cache.get(user_id)
        if entry is None:
            return None
        cached_at, grants = entry
        if time.time() - cached_at > ttl:
            del _permission_cache[user_id]
            return None
        return grants


def _set_cached(user_id: int, grants: tuple[frozenset[str], frozenset[str]]) -> None:
    with _cache_lock:
        _permission_cache[user_id] = (time.time(), grants)


def invalidate_cache(user_id: int) -> None:
    with _cache_lock:
        _permission_cache.pop(user_id, None)


def invalidate_all_cache() -> None:
    with _cache_lock:
        _permission_cache.clear()


def _current_role_rows(user_id: int) -> list[tuple[int, str]]:
    rows = (
        db.session.query(
            Role.id,
            Role.name,
            UserRole.starts_at,
            UserRole.ends_at,
            UserRole.is_active,
        )
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .all()
    )

    result: list[tuple[int, str]] = []
    now = datetime.now(timezone.utc)
    for role_id, role_name, ur_starts_at, ur_ends_at, ur_is_active in rows:
        if ur_is_active is False:
            continue
        if ur_starts_at and now < ur_starts_at.replace(tzinfo=timezone.utc):
            continue
        if ur_ends_at and now > ur_ends_at.replace(tzinfo=timezone.utc):
            continue
        result.append((role_id, role_name))
    return result


def _load_grants(user_id: int) -> tuple[frozenset[str], frozenset[str]]:
    cached = _get_cached(user_id)
    if cached is not None:
        return cached

    role_rows = _current_role_rows(user_id)
    role_names = frozenset(name for _, name in role_rows)
    role_ids = sorted({rid for rid, _ in role_rows})
    perms: frozenset[str] = frozenset()
    if role_ids:
        rows = (
            db.session.query(Permission.codename)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .filter(RolePermission.role_id.in_(role_ids))
            .distinct()
            .all()
        )
        perms = frozenset(r[0] for r in rows)

    grants = (role_names, perms)
    _set_cached(user_id, grants)
    return grants


def get_user_role_names(user_id: int) -> list[str]:
    role_names, _ = _load_grants(user_id)
    return sorted(role_names)


def get_user_permissions(user_id: int) -> set[str]:
    _, perms = _load_grants(user_id)
    return set(perms)


def has_permission(user_id: int, codename: str) -> bool:
    role_names, perms = _load_grants(user_id)
    if role_names & super_admin_roles():
        return True
    return codename in perms


def load_actor(user_id: int) -> Actor:
    """Build the Actor for *user_id* from the permission store."""
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    role_names, perms = _load_grants(user_id)
    return Actor(
        id=user.id,
        roles=role_names,
        permissions=perms,
        super_admin_roles=super_admin_roles(),
    )


# ═══════════════════════════════════════════════════════════════
# Role assignment
# ═══════════════════════════════════════════════════════════════


def assign_role(
    user_id: int,
    role_name: str,
    *,
    assigned_by: int | None = None,
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
) -> UserRole:
    """Assign a role to a user, optionally bounded in time."""
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User", user_id)
    role = Role.query.filter_by(name=role_name).first()
    if not role:
        raise NotFoundError("Role", role_name)
    if starts_at and ends_at and ends_at <= starts_at:
        raise ValidationError("ends_at must be after starts_at", {"ends_at": "before starts_at"})

    existing = UserRole.query.filter_by(user_id=user_id, role_id=role.id).first()
    if existing and existing.is_active:
        raise ConflictError("UserRole", "role", role_name)

    if existing:
        # Reactivate a previously revoked/expired assignment.
        ur = existing
        ur.is_active = True
        ur.revoked_at = None
        ur.revoke_reason = None
        ur.assigned_by = assigned_by
        ur.assigned_at = datetime.now(timezone.utc)
        ur.starts_at = starts_at
        ur.ends_at = ends_at
    else:
        ur = UserRole(
            user_id=user_id,
            role_id=role.id,
            assigned_by=assigned_by,
            starts_at=starts_at,
            ends_at=ends_at,
        )
        db.session.add(ur)
    db.session.flush()
    write_audit(
        entity_type="user_role",
        entity_id=str(ur.id),
        action="user_role.assigned",
        actor_user_id=assigned_by,
        diff={
            "user_id": user_id,
            "role": role_name,
            "starts_at": starts_at.isoformat() if starts_at else None,
            "ends_at": ends_at.isoformat() if ends_at else None,
        },
    )
    db.session.commit()
    invalidate_cache(user_id)
    logger.info("Role %s assigned to user %s", role_name, user_id, extra={"actor_id": assigned_by})
    return ur


def revoke_role(user_id: int, role_name: str, *, revoked_by: int | None = None, reason: str = "revoked") -> UserRole:
    """Deactivate a user's role assignment. The row is kept for audit."""
    role = Role.query.filter_by(name=role_name).first()
    if not role:
        raise NotFoundError("Role", role_name)
    ur = UserRole.query.filter_by(user_id=user_id, role_id=role.id, is_active=True).first()
    if not ur:
        raise NotFoundError("UserRole", f"{user_id}:{role_name}")

    now = datetime.now(timezone.utc)
    ur.is_active = False
    ur.revoked_at = now
    ur.revoke_reason = reason
    write_audit(
        entity_type="user_role",
        entity_id=str(ur.id),
        action="user_role.revoked",
        actor_user_id=revoked_by,
        diff={"user_id": user_id, "role": role_name, "reason": reason},
    )
    db.session.commit()
    invalidate_cache(user_id)
    return ur


def expire_temporary_assignments(now: datetime | None = None) -> dict:
    """
    Auto-expire time-bound role assignments.

    Expired assignments are deactivated (is_active=False) and audited.
    """
    now = now or datetime.now(timezone.utc)
    rows = (
        UserRole.query
        .filter(
            UserRole.is_active.is_(True),
            UserRole.ends_at.isnot(None),
            UserRole.ends_at < now,
        )
        .all()
    )
    expired = 0
    for ur in rows:
        ur.is_active = False
        ur.revoked_at = now
        ur.revoke_reason = "expired"
        expired += 1
        write_audit(
            entity_type="user_role",
            entity_id=str(ur.id),
            action="user_role.expired",
            diff={
                "user_id": ur.user_id,
                "role_id": ur.role_id,
                "ends_at": ur.ends_at.isoformat() if ur.ends_at else None,
                "expired_at": now.isoformat(),
            },
        )
        invalidate_cache(ur.user_id)
    if expired:
        db.session.commit()
        logger.info("Expired %d temporary role assignment(s)", expired)
    return {"expired_assignments": expired}


# ═══════════════════════════════════════════════════════════════
# Seed data
# ═══════════════════════════════════════════════════════════════

SEED_RESOURCES = {
    "foundation": (
        "branch", "location", "department", "division", "vertical",
    ),
    "vehicle": (
        "brand", "segment", "sub_segment", "vehicle_model", "variant", "color",
    ),
    "users": (
        "user", "role", "permission", "data_scope",
    ),
    "workflow": (
        "approval_hierarchy", "reporting_hierarchy", "graph_node", "graph_edge",
    ),
}

SEED_ROLES = {
    "super_admin": ("Super Admin", None),
    "foundation_manager": ("Foundation Manager", ("foundation",)),
    "user_manager": ("User Manager", ("users",)),
    "vehicle_manager": ("Vehicle Manager", ("vehicle",)),
}


def seed_permissions() -> dict:
    """Create the standard roles and ``<resource>.<action>`` permissions.

    Idempotent; existing rows are left untouched. Returns creation counts.
    """
    created = {"permissions": 0, "roles": 0, "grants": 0}

    perms_by_category: dict[str, list[Permission]] = {}
    for category, resources in SEED_RESOURCES.items():
        for resource in resources:
            for action in ACTIONS:
                codename = f"{resource}.{action}"
                perm = Permission.query.filter_by(codename=codename).first()
                if perm is None:
                    perm = Permission(
                        codename=codename,
                        category=category,
                        description=f"{action.title()} {resource.replace('_', ' ')}",
                    )
                    db.session.add(perm)
                    created["permissions"] += 1
                perms_by_category.setdefault(category, []).append(perm)
    db.session.flush()

    for name, (display_name, categories) in SEED_ROLES.items():
        role = Role.query.filter_by(name=name).first()
        if role is None:
            role = Role(name=name, display_name=display_name, is_system=True)
            db.session.add(role)
            db.session.flush()
            created["roles"] += 1
        # super_admin bypasses checks and needs no explicit grants
        for category in categories or ():
            for perm in perms_by_category[category]:
                exists = RolePermission.query.filter_by(role_id=role.id, permission_id=perm.id).first()
                if exists is None:
                    db.session.add(RolePermission(role_id=role.id, permission_id=perm.id))
                    created["grants"] += 1

    db.session.commit()
    invalidate_all_cache()
    logger.info(
        "Seeded RBAC: %d permissions, %d roles, %d grants",
        created["permissions"], created["roles"], created["grants"],
    )
    return created
