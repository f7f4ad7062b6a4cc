"""
Typed request DTOs. Form data is validated here, at the boundary, before it reaches the services.
"""
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError, ValidationInfo, field_validator

from crm.db.enums import BankAccountType, Currency, Permission, UserStatus
from crm.errors import PolicyViolationError

FormT = TypeVar("FormT", bound=BaseModel)


def _strip_or_none(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class LoginForm(BaseModel):
    email: str
    password: str
    return_url: str = "/"

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("Email and password are required")
        return v

    @field_validator("password")
    @classmethod
    def password_present(cls, v: str) -> str:
        if not v:
            raise ValueError("Email and password are required")
        return v

    @field_validator("return_url")
    @classmethod
    def local_only(cls, v: str) -> str:
        # 只允许站内跳转
        if not v or not v.startswith("/") or v.startswith("//"):
            return "/"
        return v


class MfaCodeForm(BaseModel):
    code: str

    @field_validator("code")
    @classmethod
    def code_present(cls, v: str) -> str:
        v = v.strip().replace(" ", "")
        if not v:
            raise ValueError("MFA code is required")
        return v


class PasswordChangeForm(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, v: str, info) -> str:
        if info.data.get("new_password") != v:
            raise ValueError("Passwords do not match")
        return v


class UserCreateForm(BaseModel):
    email: str
    name: str
    title: Optional[str] = None
    role_id: str
    password: Optional[str] = None

    @field_validator("title", "password", mode="before")
    @classmethod
    def strip_optional(cls, v):
        return _strip_or_none(v)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not v or "@" not in v:
            raise ValueError("A valid email is required")
        return v

    @field_validator("name")
    @classmethod
    def name_present(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name and email are required")
        return v


class UserUpdateForm(UserCreateForm):
    user_id: str
    status: Optional[UserStatus] = None

    @field_validator("status", mode="before")
    @classmethod
    def known_status(cls, v):
        # 未知状态保持原值
        if v in (None, ""):
            return None
        try:
            return UserStatus(v)
        except ValueError:
            return None


class PasswordResetForm(BaseModel):
    user_id: str
    new_password: str
    confirm_password: str

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, v: str, info) -> str:
        if info.data.get("new_password") != v:
            raise ValueError("Passwords do not match")
        return v


class NameUpdateForm(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def name_length(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters")
        if len(v) > 100:
            raise ValueError("Name must be less than 100 characters")
        return v


class RoleUpdateForm(BaseModel):
    role_id: str
    name: Optional[str] = None
    permissions: List[Permission] = []

    @field_validator("name", mode="before")
    @classmethod
    def lower_name(cls, v):
        v = _strip_or_none(v)
        return v.lower() if v else None

    @classmethod
    def from_form(cls, form, role_id: Optional[str] = None) -> "RoleUpdateForm":
        # checkbox 字段: permission_<value> = "on"
        permissions = [p for p in Permission if form.get(f"permission_{p.value}") == "on"]
        return parse_form(cls, {
            "role_id": role_id or form.get("role_id") or "",
            "name": form.get("name"),
            "permissions": permissions,
        })


class CredentialCreateForm(BaseModel):
    label: str
    value: str
    username: Optional[str] = None
    client_id: Optional[str] = None

    @field_validator("username", "client_id", mode="before")
    @classmethod
    def strip_optional(cls, v):
        return _strip_or_none(v)

    @field_validator("label", "value")
    @classmethod
    def required(cls, v: str, info: ValidationInfo) -> str:
        if not v or not v.strip():
            raise ValueError("Label and value are required")
        # secret value is stored exactly as entered
        return v if info.field_name == "value" else v.strip()


class BankAccountForm(BaseModel):
    bank_name: str
    account_holder: str
    account_number: Optional[str] = None
    routing_number: Optional[str] = None
    account_type: BankAccountType
    currency: Currency
    is_active: bool = True

    @field_validator("account_number", "routing_number", mode="before")
    @classmethod
    def strip_optional(cls, v):
        return _strip_or_none(v)

    @field_validator("bank_name", "account_holder")
    @classmethod
    def required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Bank name and account holder are required")
        return v

    @field_validator("is_active", mode="before")
    @classmethod
    def checkbox(cls, v):
        if isinstance(v, str):
            return v in ("true", "on", "1")
        return bool(v)


def parse_form(model: Type[FormT], data) -> FormT:
    '''
    Validate raw form data into a DTO.
    Raises PolicyViolationError carrying the first validation message.
    '''
    # werkzeug MultiDict -> 单值 dict
    payload = data.to_dict() if hasattr(data, "to_dict") else dict(data)
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        message = str(first.get("msg", "Invalid input"))
        if first.get("type") == "value_error":
            # pydantic 前缀 "Value error, "
            raise PolicyViolationError(message.removeprefix("Value error, ")) from e
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise PolicyViolationError(f"{field}: {message}") from e
