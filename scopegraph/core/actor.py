"""
Actor — the authenticated principal every resolver receives explicitly.

Built by ``permission_service.load_actor`` from the permission store, or by the
identity provider directly. Nothing in the engine reads a "current user" from
request globals.
"""

from dataclasses import dataclass, field

DEFAULT_SUPER_ADMIN_ROLES = frozenset({"super_admin", "super-admin", "SuperAdmin"})


@dataclass(frozen=True)
class Actor:
    id: int
    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[str] = field(default_factory=frozenset)
    super_admin_roles: frozenset[str] = field(default=DEFAULT_SUPER_ADMIN_ROLES, repr=False, compare=False)

    def __post_init__(self):
        # Accept any iterable from callers but keep the instance hashable.
        object.__setattr__(self, "roles", frozenset(self.roles))
        object.__setattr__(self, "permissions", frozenset(self.permissions))
        object.__setattr__(self, "super_admin_roles", frozenset(self.super_admin_roles))

    def is_super_admin(self) -> bool:
        return bool(self.roles & self.super_admin_roles)

    def has_permission(self, name: str) -> bool:
        return name in self.permissions
