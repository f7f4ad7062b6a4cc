# crm/errors.py
from enum import Enum
from typing import Optional


class AuthErrorKind(str, Enum):
    '''
    认证/授权失败的结构化分类

    INVALID_CREDENTIALS: unknown email, inactive account or wrong password. Never says which.
    ACCOUNT_LOCKED: lockout window in effect, revealed only to the locked account.
    INVALID_MFA_CODE: TOTP code rejected (wrong, expired or replayed).
    NOT_AUTHENTICATED: no live session for the request.
    PERMISSION_DENIED: permission string missing from the session's role.
    TITLE_REQUIRED: action gated on an exact user title (e.g. "CTO").
    '''
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    INVALID_MFA_CODE = "INVALID_MFA_CODE"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"

    PERMISSION_DENIED = "PERMISSION_DENIED"
    TITLE_REQUIRED = "TITLE_REQUIRED"


class CRMError(Exception):
    """Base class for every error raised by the crm package."""


class ConfigurationError(CRMError):
    """Fatal startup error: missing or malformed configuration (e.g. ENCRYPTION_KEY)."""


class AuthenticationError(CRMError):
    def __init__(self, message: str, kind: AuthErrorKind = AuthErrorKind.INVALID_CREDENTIALS):
        super().__init__(message)
        self.kind = kind


class AuthorizationError(CRMError):
    def __init__(
        self,
        message: str,
        kind: AuthErrorKind = AuthErrorKind.PERMISSION_DENIED,
        required: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.required = required


class DecryptionError(CRMError):
    """
    Authentication tag mismatch or malformed stored value.
    May indicate tampering or a key mismatch, callers log it apart from normal decrypt events.
    """


class NotFoundError(CRMError):
    def __init__(self, entity: str, entity_id: Optional[str] = None):
        message = f"{entity} not found" if entity_id is None else f"{entity} not found: {entity_id}"
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id


class AuditWriteError(CRMError):
    """The audit store rejected a write. Surfaced to the caller, never dropped."""


class PolicyViolationError(CRMError):
    """Input rejected by a validation rule (password complexity, form fields, uniqueness)."""
