"""Permission store: actor loading, caching and time-bound role assignments."""

from datetime import datetime, timedelta, timezone

import pytest

from scopegraph.core.exceptions import ConflictError, NotFoundError, ValidationError
from scopegraph.models import db
from scopegraph.models.audit import AuditLog
from scopegraph.models.auth import Permission, Role, RolePermission, UserRole
from scopegraph.services import permission_service as svc


@pytest.fixture()
def seeded():
    return svc.seed_permissions()


class TestSeed:
    def test_creates_roles_and_permissions(self, seeded):
        assert seeded["roles"] == 4
        assert seeded["permissions"] == Permission.query.count()
        assert Permission.query.filter_by(codename="variant.delete").one().category == "vehicle"
        assert Role.query.filter_by(name="super_admin").one().is_system is True

    def test_idempotent(self, seeded):
        assert svc.seed_permissions() == {"permissions": 0, "roles": 0, "grants": 0}

    def test_super_admin_has_no_explicit_grants(self, seeded):
        role = Role.query.filter_by(name="super_admin").one()
        assert role.role_permissions.count() == 0


class TestLoadActor:
    def test_roles_and_permissions(self, seeded, make_user):
        user = make_user()
        svc.assign_role(user.id, "vehicle_manager")

        actor = svc.load_actor(user.id)
        assert actor.roles == {"vehicle_manager"}
        assert "brand.view" in actor.permissions
        assert "branch.view" not in actor.permissions
        assert actor.is_super_admin() is False

    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            svc.load_actor(9999)

    def test_super_admin_roles_from_config(self, seeded, make_user, app):
        user = make_user()
        svc.assign_role(user.id, "user_manager")
        original = app.config["SUPER_ADMIN_ROLES"]
        app.config["SUPER_ADMIN_ROLES"] = ("user_manager",)
        try:
            assert svc.load_actor(user.id).is_super_admin() is True
            assert svc.has_permission(user.id, "branch.delete") is True
        finally:
            app.config["SUPER_ADMIN_ROLES"] = original

    def test_future_assignment_not_current(self, seeded, make_user):
        user = make_user()
        svc.assign_role(
            user.id, "foundation_manager",
            starts_at=datetime.now(timezone.utc) + timedelta(days=1),
        )
        assert svc.get_user_role_names(user.id) == []
        assert svc.has_permission(user.id, "branch.view") is False


class TestCache:
    def test_stale_until_invalidated(self, seeded, make_user):
        user = make_user()
        svc.assign_role(user.id, "user_manager")
        assert "branch.view" not in svc.get_user_permissions(user.id)

        role = Role.query.filter_by(name="user_manager").one()
        perm = Permission.query.filter_by(codename="branch.view").one()
        db.session.add(RolePermission(role_id=role.id, permission_id=perm.id))
        db.session.commit()
        assert "branch.view" not in svc.get_user_permissions(user.id)

        svc.invalidate_cache(user.id)
        assert "branch.view" in svc.get_user_permissions(user.id)

    def test_ttl_expiry(self, seeded, make_user, app):
        user = make_user()
        svc.assign_role(user.id, "user_manager")
        assert svc.get_user_role_names(user.id) == ["user_manager"]

        UserRole.query.filter_by(user_id=user.id).update({"is_active": False})
        db.session.commit()
        original = app.config["PERMISSION_CACHE_TTL"]
        app.config["PERMISSION_CACHE_TTL"] = -1
        try:
            assert svc.get_user_role_names(user.id) == []
        finally:
            app.config["PERMISSION_CACHE_TTL"] = original


class TestAssignRevoke:
    def test_assign_twice_conflicts(self, seeded, make_user):
        user = make_user()
        svc.assign_role(user.id, "user_manager")
        with pytest.raises(ConflictError):
            svc.assign_role(user.id, "user_manager")

    def test_unknown_role(self, seeded, make_user):
        with pytest.raises(NotFoundError):
            svc.assign_role(make_user().id, "astronaut")

    def test_window_must_be_ordered(self, seeded, make_user):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            svc.assign_role(make_user().id, "user_manager", starts_at=now, ends_at=now - timedelta(hours=1))

    def test_revoke_then_reassign_reuses_row(self, seeded, make_user):
        admin = make_user("admin")
        user = make_user()
        first = svc.assign_role(user.id, "user_manager", assigned_by=admin.id)
        svc.revoke_role(user.id, "user_manager", revoked_by=admin.id, reason="left team")

        assert svc.get_user_role_names(user.id) == []
        assert UserRole.query.filter_by(user_id=user.id).one().revoke_reason == "left team"

        again = svc.assign_role(user.id, "user_manager", assigned_by=admin.id)
        assert again.id == first.id
        assert svc.get_user_role_names(user.id) == ["user_manager"]

        actions = [a.action for a in AuditLog.query.order_by(AuditLog.id).all()]
        assert actions == ["user_role.assigned", "user_role.revoked", "user_role.assigned"]

    def test_revoke_missing_assignment(self, seeded, make_user):
        with pytest.raises(NotFoundError):
            svc.revoke_role(make_user().id, "user_manager")


def test_expire_temporary_assignments(seeded, make_user):
    user = make_user()
    other = make_user()
    now = datetime.now(timezone.utc)
    svc.assign_role(user.id, "user_manager", ends_at=now - timedelta(days=1))
    svc.assign_role(other.id, "user_manager", ends_at=now + timedelta(days=1))

    assert svc.expire_temporary_assignments(now) == {"expired_assignments": 1}
    assert UserRole.query.filter_by(user_id=user.id).one().is_active is False
    assert UserRole.query.filter_by(user_id=other.id).one().is_active is True
    assert AuditLog.query.filter_by(action="user_role.expired").count() == 1

    assert svc.expire_temporary_assignments(now) == {"expired_assignments": 0}
