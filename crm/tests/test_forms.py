import pytest
from werkzeug.datastructures import MultiDict

from crm.db.enums import Permission, UserStatus
from crm.errors import PolicyViolationError
from crm.schemas.forms import (
    BankAccountForm,
    CredentialCreateForm,
    LoginForm,
    PasswordResetForm,
    RoleUpdateForm,
    UserUpdateForm,
    parse_form,
)


def test_login_form_normalizes_and_blocks_open_redirect():
    form = parse_form(LoginForm, MultiDict({
        "email": " Ana@Antreva.TEST ", "password": "x", "return_url": "//evil.example/",
    }))
    assert form.email == "ana@antreva.test"
    assert form.return_url == "/"


def test_missing_credentials_message():
    with pytest.raises(PolicyViolationError, match="Email and password are required"):
        parse_form(LoginForm, {"email": "", "password": ""})


def test_password_confirmation_must_match():
    with pytest.raises(PolicyViolationError, match="Passwords do not match"):
        parse_form(PasswordResetForm, {"user_id": "u", "new_password": "a", "confirm_password": "b"})


def test_unknown_status_keeps_current():
    form = parse_form(UserUpdateForm, {
        "user_id": "u", "email": "a@b.test", "name": "A", "role_id": "r", "status": "banished",
    })
    assert form.status is None
    form = parse_form(UserUpdateForm, {
        "user_id": "u", "email": "a@b.test", "name": "A", "role_id": "r", "status": "deactivated",
    })
    assert form.status == UserStatus.deactivated


def test_role_form_reads_permission_checkboxes():
    form = RoleUpdateForm.from_form(MultiDict({
        "name": " Support ",
        "permission_tickets.read": "on",
        "permission_credentials.decrypt": "on",
        "permission_bogus.perm": "on",
    }), role_id="r-1")
    assert form.role_id == "r-1"
    assert form.name == "support"
    assert form.permissions == [Permission.CREDENTIALS_DECRYPT, Permission.TICKETS_READ]


def test_bank_account_form_checkbox_and_enums():
    form = parse_form(BankAccountForm, {
        "bank_name": "Banco BHD", "account_holder": "Antreva SRL", "account_number": " ",
        "account_type": "savings", "currency": "USD", "is_active": "off",
    })
    assert form.account_number is None
    assert form.is_active is False

    with pytest.raises(PolicyViolationError):
        parse_form(BankAccountForm, {
            "bank_name": "B", "account_holder": "H", "account_type": "crypto", "currency": "USD",
        })


def test_credential_value_kept_verbatim():
    form = parse_form(CredentialCreateForm, {"label": "  Hosting ", "value": "  pass phrase  "})
    assert form.label == "Hosting"
    assert form.value == "  pass phrase  "

    with pytest.raises(PolicyViolationError, match="Label and value are required"):
        parse_form(CredentialCreateForm, {"label": "Hosting", "value": "   "})
