import pytest

from crm.db.enums import Permission
from crm.errors import AuthErrorKind, AuthorizationError
from crm.schemas.session_user import SessionUser
from crm.security import rbac


def _user(permissions, title=None):
    return SessionUser(
        id="u-1", email="u@antreva.test", name="U", title=title,
        role_id="r-1", role_name="custom", permissions=permissions,
    )


def test_exact_string_match_only():
    user = _user(["clients.read"])
    assert rbac.has_permission(user, Permission.CLIENTS_READ)
    assert rbac.has_permission(user, "clients.read")
    assert not rbac.has_permission(user, Permission.CLIENTS_WRITE)
    assert not rbac.has_permission(_user(["clients.*"]), "clients.read")


def test_any_and_all():
    user = _user(["leads.read", "tickets.read"])
    assert rbac.has_any_permission(user, [Permission.LEADS_WRITE, Permission.TICKETS_READ])
    assert not rbac.has_all_permissions(user, [Permission.LEADS_READ, Permission.LEADS_WRITE])


def test_require_permission_raises_with_kind():
    with pytest.raises(AuthorizationError) as exc:
        rbac.require_permission(_user([]), Permission.USERS_MANAGE)
    assert exc.value.kind == AuthErrorKind.PERMISSION_DENIED
    assert exc.value.required == "users.manage"


def test_require_title_is_exact():
    rbac.require_title(_user([], title="CTO"), rbac.TITLE_CTO)
    with pytest.raises(AuthorizationError) as exc:
        rbac.require_title(_user([], title="cto"), rbac.TITLE_CTO)
    assert exc.value.kind == AuthErrorKind.TITLE_REQUIRED


def test_permission_catalog_is_closed():
    assert len(rbac.ALL_PERMISSIONS) == 13
    assert [p["value"] for p in rbac.AVAILABLE_PERMISSIONS] == rbac.ALL_PERMISSIONS
    assert rbac.validate_permission_values(["audit.read", "audit.read"]) == ["audit.read"]
    with pytest.raises(ValueError):
        rbac.validate_permission_values(["audit.write"])
