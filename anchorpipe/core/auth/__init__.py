"""
Authentication and authorization for Anchorpipe.
"""

from .password import hash_password, password_policy_errors, verify_password
from .rbac import (
    Ability,
    PermissionAction,
    PermissionSubject,
    create_ability_for_role,
    require_permission,
)
from .session import (
    clear_session_cookie,
    create_session_token,
    read_session,
    revoke_session,
    set_session_cookie,
)

__all__ = [
    "hash_password",
    "password_policy_errors",
    "verify_password",
    "Ability",
    "PermissionAction",
    "PermissionSubject",
    "create_ability_for_role",
    "require_permission",
    "clear_session_cookie",
    "create_session_token",
    "read_session",
    "revoke_session",
    "set_session_cookie",
]
