"""Role-based permission checks for privileged harvester operations.

Authentication itself is handled elsewhere; this module only answers whether
an already-identified actor may perform an operation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from harvester.errors import AuthorizationError, ValidationError

ROLES = ("ADMIN", "DATA_MANAGER", "QUALITY_MANAGER", "OPERATOR")

PERMISSIONS = (
    "view_dashboard",
    "view_logs",
    "view_review",
    "view_errors",
    "view_batch",
    "manage_source",
    "manage_batch",
    "run_crawl",
    "approve_items",
    "reject_items",
    "edit_items",
    "delete_items",
    "configure_ocr",
    "configure_settings",
)

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "ADMIN": frozenset(PERMISSIONS),
    "DATA_MANAGER": frozenset({
        "view_dashboard", "view_logs", "view_review", "view_errors", "view_batch",
        "manage_source", "manage_batch", "run_crawl", "edit_items", "configure_ocr",
    }),
    "QUALITY_MANAGER": frozenset({
        "view_dashboard", "view_review", "view_errors",
        "approve_items", "reject_items", "edit_items",
    }),
    "OPERATOR": frozenset({
        "view_dashboard", "view_logs", "view_review", "approve_items",
    }),
}


@dataclass(frozen=True)
class Actor:
    """An identified caller."""

    actor_id: str
    role: str

    def can(self, permission: str) -> bool:
        return permission in ROLE_PERMISSIONS.get(self.role, frozenset())


def actor_from_env(actor_id: str | None = None, role: str | None = None) -> Actor:
    """Build an actor from explicit values or HARVESTER_ACTOR / HARVESTER_ROLE."""
    resolved_id = actor_id or os.environ.get("HARVESTER_ACTOR", "local-admin")
    resolved_role = (role or os.environ.get("HARVESTER_ROLE", "ADMIN")).upper()
    if resolved_role not in ROLES:
        raise ValidationError(f"Unknown role: {resolved_role}", allowed=list(ROLES))
    return Actor(actor_id=resolved_id, role=resolved_role)


def require_permission(actor: Actor | None, permission: str) -> Actor:
    """Raise AuthorizationError unless ``actor`` holds ``permission``."""
    if permission not in PERMISSIONS:
        raise ValueError(f"Unknown permission: {permission}")
    if actor is None or not actor.actor_id:
        raise AuthorizationError("Authentication required")
    if not actor.can(permission):
        raise AuthorizationError(
            f"Role {actor.role} lacks permission {permission}",
            role=actor.role,
            permission=permission,
        )
    return actor
