"""
IR Playbook Authorization Gate

Maps actors to roles and roles to permission sets, and decides whether an
actor may perform an action.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

import jsonschema
import yaml

from ..core.actions import Action, Permission
from ..core.exceptions import AuthorizationError, ConfigurationError

logger = logging.getLogger(__name__)


ROLES_SCHEMA = {
    "type": "object",
    "properties": {
        "require_authentication": {"type": "boolean"},
        "default_role": {"type": "string"},
        "roles": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "permissions": {
                        "type": "array",
                        "items": {"enum": [p.value for p in Permission]},
                    },
                },
                "required": ["permissions"],
            },
        },
        "assignments": {
            "type": "object",
            "additionalProperties": {"type": "string"},
        },
        "users": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {"role": {"type": "string"}},
                "required": ["role"],
            },
        },
    },
    "additionalProperties": True,
}

ALL_PERMISSIONS = frozenset(Permission)

DEFAULT_ROLES: Dict[str, FrozenSet[Permission]] = {
    "ADMIN": ALL_PERMISSIONS,
    "IR_ANALYST": ALL_PERMISSIONS,
    "SOC_TIER2": frozenset({Permission.STATUS, Permission.COLLECT}),
    "SOC_TIER1": frozenset({Permission.STATUS}),
}


@dataclass(frozen=True)
class Actor:
    """Operator identity from the front-end."""
    id: str
    name: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name or self.id}


@dataclass(frozen=True)
class RoleSnapshot:
    """Immutable role table with actor assignments."""
    roles: Dict[str, FrozenSet[Permission]] = field(
        default_factory=lambda: dict(DEFAULT_ROLES)
    )
    assignments: Dict[str, str] = field(default_factory=dict)
    default_role: str = "SOC_TIER1"
    require_authentication: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoleSnapshot":
        try:
            jsonschema.validate(data, ROLES_SCHEMA)
        except jsonschema.ValidationError as e:
            raise ConfigurationError(
                f"Invalid role definitions: {e.message}",
                source="roles",
                errors=[e.message],
            )

        if "roles" in data:
            roles = {
                name: frozenset(Permission(p) for p in entry["permissions"])
                for name, entry in data["roles"].items()
            }
        else:
            roles = dict(DEFAULT_ROLES)

        default_role = data.get("default_role", "SOC_TIER1")
        if default_role not in roles:
            logger.warning(f"Default role {default_role} has no definition")

        # users: id -> {role} is accepted alongside the flat assignments table
        assignments = {uid: entry["role"] for uid, entry in (data.get("users") or {}).items()}
        assignments.update(data.get("assignments") or {})

        return cls(
            roles=roles,
            assignments=assignments,
            default_role=default_role,
            require_authentication=data.get("require_authentication", False),
        )

    @classmethod
    def from_file(cls, path: str) -> "RoleSnapshot":
        file_path = Path(path)
        if not file_path.exists():
            raise ConfigurationError(f"Roles file not found: {path}", source=path)

        with open(file_path) as f:
            if file_path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}

        snapshot = cls.from_dict(data)
        logger.info(
            f"Loaded {len(snapshot.roles)} roles and "
            f"{len(snapshot.assignments)} assignments from {path}"
        )
        return snapshot

    def role_for(self, actor_id: str) -> str:
        return self.assignments.get(actor_id, self.default_role)

    def permissions_for(self, role: str) -> FrozenSet[Permission]:
        return self.roles.get(role, frozenset())


@dataclass(frozen=True)
class AuthorizationDecision:
    """Allow/Deny with the facts it was based on."""
    allowed: bool
    role: str
    permission: Permission
    reason: str = ""


class AuthorizationGate:
    """
    Role-based authorization over a swappable RoleSnapshot.

    Deterministic for a given snapshot: each call reads the snapshot
    reference exactly once.
    """

    def __init__(self, snapshot: Optional[RoleSnapshot] = None):
        self._snapshot = snapshot or RoleSnapshot()

    @property
    def snapshot(self) -> RoleSnapshot:
        return self._snapshot

    @property
    def permissive(self) -> bool:
        return not self._snapshot.require_authentication

    def reload(self, snapshot: RoleSnapshot) -> None:
        """Replace the role table atomically."""
        self._snapshot = snapshot
        logger.info(f"Authorization roles reloaded ({len(snapshot.roles)} roles)")

    def authorize(self, actor: Actor, action: Action) -> AuthorizationDecision:
        snapshot = self._snapshot
        permission = action.spec.permission
        role = snapshot.role_for(actor.id)

        if not snapshot.require_authentication:
            return AuthorizationDecision(
                allowed=True,
                role=role,
                permission=permission,
                reason="authentication not required",
            )

        if permission in snapshot.permissions_for(role):
            return AuthorizationDecision(allowed=True, role=role, permission=permission)

        if role not in snapshot.roles:
            reason = f"role {role} is not defined"
        else:
            reason = f"role {role} lacks permission {permission.value}"

        return AuthorizationDecision(
            allowed=False,
            role=role,
            permission=permission,
            reason=reason,
        )

    def require(self, actor: Actor, action: Action) -> AuthorizationDecision:
        """Authorize or raise AuthorizationError."""
        decision = self.authorize(actor, action)
        if not decision.allowed:
            raise AuthorizationError(
                f"Actor {actor.id} is not permitted to perform {action.value}",
                actor_id=actor.id,
                role=decision.role,
                permission=decision.permission.value,
            )
        return decision

    def describe_actor(self, actor_id: str) -> Dict[str, Any]:
        snapshot = self._snapshot
        role = snapshot.role_for(actor_id)
        permissions: List[str] = sorted(p.value for p in snapshot.permissions_for(role))
        return {
            "actor_id": actor_id,
            "role": role,
            "permissions": permissions,
            "authentication_required": snapshot.require_authentication,
        }
