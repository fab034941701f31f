"""
Engine-wide exception hierarchy.

Services raise these types; the application factory registers one handler per
type so every caller gets the same HTTP status:

    AccessDenied (PermissionDenied / OutOfScope) → 403
    NotFoundError                                → 404
    ValidationError                              → 422
    ConflictError                                → 409
    ChainBuildError                              → 500

Outcomes that are expected and frequent (combo mismatch, unknown scope type)
are NOT exceptions; resolvers return a falsy result or an empty access set.

Usage:
    from scopegraph.core.exceptions import OutOfScope, PermissionDenied

    raise PermissionDenied(actor_id=7, ability="branch.edit")
    raise OutOfScope(actor_id=7, scope_type="branch", entity_id=42)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "ApprovalHierarchy").
        resource_id: The PK that was looked up. Included in logs.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value."""

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class AccessDenied(Exception):
    """Base for every authorization rejection.

    `reason` separates missing permission from out-of-scope data for logs and
    metrics; both surface as HTTP 403 at the boundary.
    """

    reason = "denied"

    def __init__(self, message: str, *, actor_id: int | None = None, ability: str | None = None) -> None:
        self.actor_id = actor_id
        self.ability = ability
        super().__init__(message)


class PermissionDenied(AccessDenied):
    """The actor's roles do not grant the requested ability."""

    reason = "no_permission"

    def __init__(self, actor_id: int | None = None, ability: str | None = None) -> None:
        super().__init__(
            f"Actor {actor_id} does not have permission for '{ability}'",
            actor_id=actor_id,
            ability=ability,
        )


class OutOfScope(AccessDenied):
    """The actor holds the permission but the entity lies outside their data scope."""

    reason = "out_of_scope"

    def __init__(
        self,
        actor_id: int | None = None,
        scope_type: str | None = None,
        entity_id: int | None = None,
        ability: str | None = None,
    ) -> None:
        self.scope_type = scope_type
        self.entity_id = entity_id
        super().__init__(
            f"Actor {actor_id} cannot access {scope_type} id={entity_id}",
            actor_id=actor_id,
            ability=ability,
        )


class ChainBuildError(Exception):
    """Raised when an approval chain could not be persisted.

    Nothing from the failed build is left behind; the wrapped storage error is
    kept on `__cause__` for logs.
    """

    def __init__(self, definition_id: int | None, message: str = "approval chain could not be built") -> None:
        self.definition_id = definition_id
        super().__init__(f"{message} (definition={definition_id})")
