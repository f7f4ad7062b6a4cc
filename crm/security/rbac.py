# crm/security/rbac.py
"""
Role-based access control over flat permission strings.

Two independent axes:
- permission strings from the user's role (exact equality, no wildcards, no hierarchy)
- exact title match (e.g. only title == "CTO" may read the audit log)
Where both apply, both are checked.
"""
from typing import Dict, Iterable, List, Union

from crm.db.enums import Permission
from crm.errors import AuthErrorKind, AuthorizationError
from crm.schemas.session_user import SessionUser

PermissionLike = Union[Permission, str]

# Permission keys and labels for the roles UI
AVAILABLE_PERMISSIONS: List[Dict[str, str]] = [
    {"value": Permission.LEADS_READ.value, "label": "Leads: read"},
    {"value": Permission.LEADS_WRITE.value, "label": "Leads: write"},
    {"value": Permission.CLIENTS_READ.value, "label": "Clients: read"},
    {"value": Permission.CLIENTS_WRITE.value, "label": "Clients: write"},
    {"value": Permission.CREDENTIALS_READ.value, "label": "Credentials: read"},
    {"value": Permission.CREDENTIALS_DECRYPT.value, "label": "Credentials: decrypt"},
    {"value": Permission.TICKETS_READ.value, "label": "Tickets: read"},
    {"value": Permission.TICKETS_WRITE.value, "label": "Tickets: write"},
    {"value": Permission.PAYMENTS_READ.value, "label": "Payments: read"},
    {"value": Permission.PAYMENTS_WRITE.value, "label": "Payments: write"},
    {"value": Permission.USERS_MANAGE.value, "label": "Users: manage"},
    {"value": Permission.ROLES_MANAGE.value, "label": "Roles: manage"},
    {"value": Permission.AUDIT_READ.value, "label": "Audit: read"},
]

ALL_PERMISSIONS: List[str] = [p.value for p in Permission]

TITLE_CTO = "CTO"
TITLE_CEO = "CEO"


def _value(permission: PermissionLike) -> str:
    return permission.value if isinstance(permission, Permission) else str(permission)


def has_permission(user: SessionUser, permission: PermissionLike) -> bool:
    return _value(permission) in user.permissions


def has_any_permission(user: SessionUser, permissions: Iterable[PermissionLike]) -> bool:
    return any(has_permission(user, p) for p in permissions)


def has_all_permissions(user: SessionUser, permissions: Iterable[PermissionLike]) -> bool:
    return all(has_permission(user, p) for p in permissions)


def has_title(user: SessionUser, title: str) -> bool:
    return user.title == title


def require_permission(user: SessionUser, permission: PermissionLike) -> None:
    '''
    Raise AuthorizationError(PERMISSION_DENIED) when the permission is missing.
    Sensitive mutations must not catch and continue.
    '''
    if not has_permission(user, permission):
        value = _value(permission)
        raise AuthorizationError(
            f"Permission denied: {value}",
            kind=AuthErrorKind.PERMISSION_DENIED,
            required=value,
        )


def require_title(user: SessionUser, title: str) -> None:
    if not has_title(user, title):
        raise AuthorizationError(
            f"Restricted to title: {title}",
            kind=AuthErrorKind.TITLE_REQUIRED,
            required=title,
        )


def validate_permission_values(values: Iterable[str]) -> List[str]:
    """Keep order, drop duplicates, reject anything outside the closed set."""
    result: List[str] = []
    for value in values:
        value = _value(value)
        if value not in ALL_PERMISSIONS:
            raise ValueError(f"Unknown permission: {value}")
        if value not in result:
            result.append(value)
    return result
