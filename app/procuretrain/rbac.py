"""
Role-based permission engine.

Every query here is a pure lookup against the active role -> permission
table and never raises: a missing role, an unknown role or an unknown
permission token all answer "deny".
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from functools import wraps
from pathlib import Path
from types import MappingProxyType
from typing import Any

from flask import Flask, abort, g

from app.procuretrain.constants import (
    EVENT_MANAGER,
    FINANCE_PERSON,
    ORDINARY_USER,
    PERMISSIONS,
    ROLE_DESCRIPTIONS,
    ROLE_DISPLAY_NAMES,
    ROLE_LEVELS,
    ROLE_PERMISSIONS,
    ROLES,
    SUPER_ADMIN,
)

RoleTable = Mapping[str, frozenset[str]]


def load_role_permissions(source: Mapping[str, Iterable[str]]) -> RoleTable:
    """
    Validate and freeze a role -> permissions mapping.

    Raises ValueError for unknown roles or permission tokens so a bad table
    is rejected at startup rather than silently granting or denying.
    """
    table: dict[str, frozenset[str]] = {}
    for role, perms in source.items():
        if role not in ROLES:
            raise ValueError(f"Unknown role in permission table: {role!r}")
        if isinstance(perms, str):
            raise ValueError(f"Permissions for {role!r} must be a list, not a string.")
        perm_set = frozenset(perms)
        unknown = sorted(perm_set - PERMISSIONS)
        if unknown:
            raise ValueError(f"Unknown permission(s) for {role!r}: {', '.join(unknown)}")
        table[role] = perm_set
    return MappingProxyType(table)


_active_table: RoleTable = load_role_permissions(ROLE_PERMISSIONS)


def install_role_permissions(table: RoleTable) -> None:
    global _active_table
    _active_table = table


def reset_role_permissions() -> None:
    install_role_permissions(load_role_permissions(ROLE_PERMISSIONS))


def read_role_table(path: str | Path) -> RoleTable:
    """Read and validate a JSON role table file (object of role -> [permission])."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"RBAC table at {path} must be a JSON object.")
    return load_role_permissions(raw)


def init_rbac(app: Flask) -> None:
    """Load RBAC_TABLE_PATH if configured, else the built-in table."""
    path = (app.config.get("RBAC_TABLE_PATH") or "").strip()
    if not path:
        reset_role_permissions()
        return
    table = read_role_table(path)
    install_role_permissions(table)
    app.logger.info("Loaded role permission table from %s (%d roles)", path, len(table))


def _is_token(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def has_permission(role: str | None, permission: str) -> bool:
    if not _is_token(role) or not _is_token(permission):
        return False
    return permission in _active_table.get(role, frozenset())


def has_any_permission(role: str | None, permissions: Iterable[str]) -> bool:
    if not _is_token(role):
        return False
    return any(has_permission(role, p) for p in list(permissions or ()))


def has_all_permissions(role: str | None, permissions: Iterable[str]) -> bool:
    # An empty list is vacuously satisfied, but only for a role we know.
    if not _is_token(role) or role not in _active_table:
        return False
    return all(has_permission(role, p) for p in list(permissions or ()))


def get_role_permissions(role: str | None) -> frozenset[str]:
    if not _is_token(role):
        return frozenset()
    return _active_table.get(role, frozenset())


def can_access_admin(role: str | None) -> bool:
    return has_permission(role, "admin.dashboard")


def can_manage_events(role: str | None) -> bool:
    return has_any_permission(role, ["events.create", "events.update", "events.delete"])


def can_manage_users(role: str | None) -> bool:
    return has_permission(role, "users.create")


def can_manage_finance(role: str | None) -> bool:
    return has_permission(role, "finance.update")


def can_view_all_registrations(role: str | None) -> bool:
    return has_permission(role, "registrations.read_all")


def can_manage_registrations(role: str | None) -> bool:
    return has_any_permission(role, ["registrations.approve", "registrations.cancel", "registrations.update"])


def can_assign_role(acting_role: str | None, target_role: str | None) -> bool:
    """Only super admins assign roles; there is no finer-grained delegation."""
    if not has_permission(acting_role, "users.assign_roles"):
        return False
    return acting_role == SUPER_ADMIN


def get_role_level(role: str | None) -> int:
    if not _is_token(role):
        return 0
    return ROLE_LEVELS.get(role, 0)


def is_higher_role(role: str | None, compare_role: str | None) -> bool:
    return get_role_level(role) > get_role_level(compare_role)


def can_manage_role(acting_role: str | None, target_role: str | None) -> bool:
    if not _is_token(acting_role):
        return False
    return is_higher_role(acting_role, target_role) and has_permission(acting_role, "users.update")


def get_role_display_name(role: str | None) -> str:
    return ROLE_DISPLAY_NAMES.get(role, "Unknown Role") if _is_token(role) else "Unknown Role"


def get_role_description(role: str | None) -> str:
    return ROLE_DESCRIPTIONS.get(role, "No description available") if _is_token(role) else "No description available"


def get_available_roles() -> list[dict[str, str]]:
    return [
        {"value": r, "label": get_role_display_name(r), "description": get_role_description(r)}
        for r in (SUPER_ADMIN, EVENT_MANAGER, FINANCE_PERSON, ORDINARY_USER)
    ]


# ---------------------------------------------------------------------------
# Flask integration
# ---------------------------------------------------------------------------


def _user_role(user: Any) -> str | None:
    if not user or not getattr(user, "is_active", False) or getattr(user, "deleted_at", None) is not None:
        return None
    return getattr(user, "role", None)


def user_has_permission(user: Any, permission_key: str) -> bool:
    return has_permission(_user_role(user), permission_key)


def _guard(check: Callable[[str | None], bool], missing: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = getattr(g, "current_user", None)
            # Unauthenticated -> 401, authenticated but unauthorized -> 403
            role = _user_role(user)
            if role is None:
                abort(401)
            if not check(role):
                g.missing_permission = missing
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    return _guard(lambda role: has_permission(role, permission_key), permission_key)


def require_any_permission(permission_keys: list[str]) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    return _guard(lambda role: has_any_permission(role, permission_keys), " | ".join(permission_keys))


def require_all_permissions(permission_keys: list[str]) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    return _guard(lambda role: has_all_permissions(role, permission_keys), " & ".join(permission_keys))
