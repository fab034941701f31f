"""
Access Gate — "can actor X do Y on entity Z".

Abilities are ``"<resource_type>.<action>"``. Any non-empty action is a
literal permission name (``"branch.edit"``, ``"rbac.manage"``,
``"approval.approve"``); ``"<resource_type>.*"`` asks for any of
view/create/edit/delete.

Checks, in order:
  1. super-admin                      → allow (short-circuit)
  2. permission (literal or wildcard) → else deny_no_permission
  3. resource given + scoped type     → has_access_to, else deny_out_of_scope

A resource that carries the foreign keys of a derived type is checked
against them; one carrying only ``id`` is loaded from the registered model.

Both denials raise subclasses of AccessDenied (403 at the HTTP boundary) so
logs can tell a missing grant from out-of-scope data.
"""

import logging
from collections.abc import Mapping

from scopegraph.core.actor import Actor
from scopegraph.core.exceptions import OutOfScope, PermissionDenied
from scopegraph.core.scope_links import links_for
from scopegraph.models.scope import SCOPE_TYPES
from scopegraph.services.permission_service import ACTIONS
from scopegraph.services.scope_service import has_access_to, record_field

logger = logging.getLogger(__name__)

DECISION_ALLOW_SUPERUSER = "allow_superuser"
DECISION_ALLOW = "allow"
DECISION_DENY_NO_PERMISSION = "deny_no_permission"
DECISION_DENY_OUT_OF_SCOPE = "deny_out_of_scope"
DECISION_DENY_INVALID_ABILITY = "deny_invalid_ability"


def parse_ability(ability: str) -> tuple[str, str] | None:
    if not isinstance(ability, str) or "." not in ability:
        return None
    resource_type, action = ability.rsplit(".", 1)
    if not resource_type or not action or ability != ability.strip():
        return None
    return resource_type, action


def _permission_granted(actor: Actor, resource_type: str, action: str) -> bool:
    if actor.has_permission(f"{resource_type}.*"):
        return True
    if action == "*":
        return any(actor.has_permission(f"{resource_type}.{a}") for a in ACTIONS)
    return actor.has_permission(f"{resource_type}.{action}")


def _carries(resource, name: str) -> bool:
    if isinstance(resource, Mapping):
        return name in resource
    return hasattr(resource, name)


def _in_scope(actor: Actor, resource_type: str, resource) -> bool:
    entity_id = record_field(resource, "id")
    links = links_for(resource_type)
    record = resource
    if links and not all(_carries(resource, link.foreign_key) for link in links):
        record = None
    try:
        return has_access_to(actor, resource_type, entity_id, record=record)
    except ValueError:
        logger.warning(
            "Resource without id checked against %s scope; denying", resource_type,
            extra={"actor_id": actor.id, "scope_type": resource_type},
        )
        return False


def evaluate(actor: Actor, ability: str, resource=None) -> dict:
    """Return the decision without raising."""
    result = {
        "allowed": False,
        "decision": DECISION_DENY_INVALID_ABILITY,
        "ability": ability,
        "actor_id": actor.id,
        "roles": sorted(actor.roles),
    }
    if actor.is_super_admin():
        result.update(allowed=True, decision=DECISION_ALLOW_SUPERUSER)
        return result

    parsed = parse_ability(ability)
    if parsed is None:
        logger.warning("Invalid ability %r", ability, extra={"actor_id": actor.id})
        return result
    resource_type, action = parsed

    if not _permission_granted(actor, resource_type, action):
        result["decision"] = DECISION_DENY_NO_PERMISSION
    elif resource is not None and resource_type in SCOPE_TYPES and not _in_scope(actor, resource_type, resource):
        result["decision"] = DECISION_DENY_OUT_OF_SCOPE
        result["scope_type"] = resource_type
        result["entity_id"] = record_field(resource, "id")
    else:
        result.update(allowed=True, decision=DECISION_ALLOW)

    logger.debug(
        "Access %s for %s", result["decision"], ability,
        extra={"actor_id": actor.id, "decision": result["decision"], "scope_type": resource_type},
    )
    return result


def can(actor: Actor, ability: str, resource=None) -> bool:
    return evaluate(actor, ability, resource)["allowed"]


def authorize(actor: Actor, ability: str, resource=None) -> None:
    """Raise PermissionDenied / OutOfScope unless *actor* may perform *ability*."""
    decision = evaluate(actor, ability, resource)
    if decision["allowed"]:
        return
    logger.info(
        "Access denied: %s", ability,
        extra={"actor_id": actor.id, "decision": decision["decision"]},
    )
    if decision["decision"] == DECISION_DENY_OUT_OF_SCOPE:
        raise OutOfScope(
            actor_id=actor.id,
            scope_type=decision["scope_type"],
            entity_id=decision["entity_id"],
            ability=ability,
        )
    raise PermissionDenied(actor_id=actor.id, ability=ability)
