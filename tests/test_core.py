"""Core value types: combos, hierarchy links, actors and exceptions."""

import pytest

from scopegraph.core.actor import Actor
from scopegraph.core.combo import combo_contains, combo_hash, combo_matches, normalize_combo
from scopegraph.core.exceptions import (
    AccessDenied,
    ChainBuildError,
    ConflictError,
    NotFoundError,
    OutOfScope,
    PermissionDenied,
    ValidationError,
)
from scopegraph.core.scope_links import HIERARCHY_LINKS, HierarchyLink, links_for, validate_links


class TestCombo:
    def test_normalize(self):
        assert normalize_combo(None) == {}
        assert normalize_combo({1: "a", "b": None}) == {"1": "a", "b": None}
        with pytest.raises(TypeError):
            normalize_combo(["branch"])

    def test_matches_treats_none_and_absent_as_wildcard(self):
        stored = {"branch": "Bkn", "segment": None}
        assert combo_matches(stored, {"branch": "Bkn", "segment": "Personal", "brand": "Alpha"})
        assert not combo_matches(stored, {"branch": "Pune"})
        assert combo_matches(None, {"branch": "Pune"})

    def test_contains_is_exact(self):
        stored = {"branch": "Bkn", "segment": None}
        assert combo_contains(stored, {"branch": "Bkn"})
        assert combo_contains(stored, {"segment": None})
        assert not combo_contains(stored, {"segment": "Personal"})
        assert not combo_contains(stored, {"brand": "Alpha"})
        assert combo_contains(stored, {})

    def test_hash_is_order_independent(self):
        assert combo_hash({"a": 1, "b": 2}) == combo_hash({"b": 2, "a": 1})
        assert combo_hash({"a": 1}) != combo_hash({"a": 2})
        assert combo_hash(None) == combo_hash({})


class TestHierarchyLinks:
    def test_builtin_links_are_acyclic(self):
        validate_links(HIERARCHY_LINKS)

    def test_cycle_is_rejected(self):
        links = {
            "a": (HierarchyLink("b", "b_id"),),
            "b": (HierarchyLink("c", "c_id"),),
            "c": (HierarchyLink("a", "a_id"),),
        }
        with pytest.raises(ValueError, match="cycle"):
            validate_links(links)

    def test_shared_parent_is_not_a_cycle(self):
        validate_links({
            "x": (HierarchyLink("p", "p_id"), HierarchyLink("y", "y_id")),
            "y": (HierarchyLink("p", "p_id"),),
        })

    def test_links_for(self):
        assert links_for("location") == (HierarchyLink("branch", "branch_id"),)
        assert links_for("branch") == ()


class TestActor:
    def test_iterables_are_frozen(self):
        actor = Actor(id=1, roles=["a", "a"], permissions=("branch.view",))
        assert actor.roles == frozenset({"a"})
        assert hash(actor) == hash(Actor(id=1, roles={"a"}, permissions={"branch.view"}))

    def test_super_admin(self):
        assert Actor(id=1, roles={"SuperAdmin"}).is_super_admin()
        assert not Actor(id=1, roles={"admin"}).is_super_admin()
        assert Actor(id=1, roles={"root"}, super_admin_roles={"root"}).is_super_admin()


class TestExceptions:
    def test_access_denied_reasons(self):
        assert PermissionDenied(actor_id=1, ability="branch.view").reason == "no_permission"
        err = OutOfScope(actor_id=1, scope_type="branch", entity_id=5, ability="branch.view")
        assert err.reason == "out_of_scope"
        assert "branch id=5" in str(err)
        assert issubclass(OutOfScope, AccessDenied)

    def test_messages(self):
        assert str(NotFoundError("User", 3)) == "User id=3 not found"
        assert str(NotFoundError("User")) == "User not found"
        assert "already exists" in str(ConflictError("UserRole", "role", "admin"))
        assert ValidationError("bad", {"x": "y"}).details == {"x": "y"}
        assert ChainBuildError(7).definition_id == 7
