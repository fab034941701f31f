"""
Shared pytest fixtures for the scopegraph test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - entities: minimal organisation/vehicle tables registered for scoping
    - make_user: factory creating persisted users
    - make_actor: factory creating persisted users wrapped as Actor
"""

from types import SimpleNamespace

import pytest

from scopegraph import create_app
from scopegraph.core.actor import Actor
from scopegraph.models import db as _db
from scopegraph.models.auth import User
from scopegraph.services import cache_service
from scopegraph.services.permission_service import invalidate_all_cache
from scopegraph.services.scope_service import clear_scope_models, register_scope_model


# ── Entity tables owned by the host application ──────────────────────────
# The engine never defines these; tests need a few to apply predicates to.


class Branch(_db.Model):
    __tablename__ = "test_branches"
    id = _db.Column(_db.Integer, primary_key=True)
    name = _db.Column(_db.String(50), nullable=False)


class Location(_db.Model):
    __tablename__ = "test_locations"
    id = _db.Column(_db.Integer, primary_key=True)
    name = _db.Column(_db.String(50), nullable=False)
    branch_id = _db.Column(_db.Integer, _db.ForeignKey("test_branches.id"), nullable=True)


class Brand(_db.Model):
    __tablename__ = "test_brands"
    id = _db.Column(_db.Integer, primary_key=True)
    name = _db.Column(_db.String(50), nullable=False)


class Segment(_db.Model):
    __tablename__ = "test_segments"
    id = _db.Column(_db.Integer, primary_key=True)
    name = _db.Column(_db.String(50), nullable=False)


class SubSegment(_db.Model):
    __tablename__ = "test_sub_segments"
    id = _db.Column(_db.Integer, primary_key=True)
    name = _db.Column(_db.String(50), nullable=False)
    segment_id = _db.Column(_db.Integer, _db.ForeignKey("test_segments.id"), nullable=True)


class VehicleModel(_db.Model):
    __tablename__ = "test_vehicle_models"
    id = _db.Column(_db.Integer, primary_key=True)
    name = _db.Column(_db.String(50), nullable=False)
    brand_id = _db.Column(_db.Integer, _db.ForeignKey("test_brands.id"), nullable=True)
    segment_id = _db.Column(_db.Integer, _db.ForeignKey("test_segments.id"), nullable=True)
    sub_segment_id = _db.Column(_db.Integer, _db.ForeignKey("test_sub_segments.id"), nullable=True)


class Variant(_db.Model):
    __tablename__ = "test_variants"
    id = _db.Column(_db.Integer, primary_key=True)
    name = _db.Column(_db.String(50), nullable=False)
    vehicle_model_id = _db.Column(_db.Integer, _db.ForeignKey("test_vehicle_models.id"), nullable=True)
    brand_id = _db.Column(_db.Integer, _db.ForeignKey("test_brands.id"), nullable=True)
    segment_id = _db.Column(_db.Integer, _db.ForeignKey("test_segments.id"), nullable=True)
    sub_segment_id = _db.Column(_db.Integer, _db.ForeignKey("test_sub_segments.id"), nullable=True)


_ENTITY_MODELS = {
    "branch": Branch,
    "location": Location,
    "brand": Brand,
    "segment": Segment,
    "sub_segment": SubSegment,
    "vehicle_model": VehicleModel,
    "variant": Variant,
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # DB is recreated per test and ids are reused; clear caches keyed
        # by user_id to avoid stale decisions.
        invalidate_all_cache()
        cache_service.clear_all()
        yield
        invalidate_all_cache()
        cache_service.clear_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def entities():
    """Register the entity tables with the scope resolver."""
    for scope_type, model in _ENTITY_MODELS.items():
        register_scope_model(scope_type, model)
    yield SimpleNamespace(
        Branch=Branch,
        Location=Location,
        Brand=Brand,
        Segment=Segment,
        SubSegment=SubSegment,
        VehicleModel=VehicleModel,
        Variant=Variant,
    )
    clear_scope_models()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(name=None):
        counter["n"] += 1
        label = name or f"user{counter['n']}"
        user = User(email=f"{label}@test.local", full_name=label.title(), status="active")
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_actor(make_user):
    def _make(name=None, roles=(), permissions=()):
        user = make_user(name)
        return Actor(id=user.id, roles=roles, permissions=permissions)

    return _make
