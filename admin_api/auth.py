"""API-key based role resolution for admin endpoints."""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Mapping, Optional

SUPER_ADMIN_ROLE = "Super Admin"
NO_PERMISSION_MESSAGE = "You don't have permission to access this page"


class ApiKeyRoleResolver:
    """Map request API keys to the set of roles they carry."""

    def __init__(self, key_roles: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._key_roles: Dict[str, FrozenSet[str]] = {
            str(key): frozenset(roles) for key, roles in (key_roles or {}).items() if key
        }

    @classmethod
    def for_super_admins(cls, keys: Iterable[str]) -> "ApiKeyRoleResolver":
        return cls({key: (SUPER_ADMIN_ROLE,) for key in keys})

    def roles_for(self, api_key: Optional[str]) -> FrozenSet[str]:
        """Return roles for ``api_key``; unknown or missing keys get none."""
        if not api_key:
            return frozenset()
        return self._key_roles.get(api_key.strip(), frozenset())


def has_role(roles: Iterable[str], role: str) -> bool:
    return role in set(roles or ())
