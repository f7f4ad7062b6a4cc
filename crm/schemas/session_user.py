from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from crm.errors import AuthErrorKind
from crm.models.user import User


class SessionUser(BaseModel):
    '''
    Resolved identity attached to a request.
    permissions 每次解析 session 时从 role 重新读取，不做跨请求缓存
    '''
    id: str
    email: str
    name: str
    title: Optional[str] = None
    role_id: str
    role_name: str
    permissions: List[str] = []
    mfa_enabled: bool = False

    @classmethod
    def from_orm_model(cls, user: User) -> "SessionUser":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            title=user.title,
            role_id=user.role_id,
            role_name=user.role.name,
            permissions=list(user.role.permissions or []),
            mfa_enabled=user.mfa_enabled,
        )


class LoginResult(BaseModel):
    '''
    登录/MFA 步骤的结构化结果

    success: password (and MFA when enabled) accepted
    requires_mfa: password accepted but no session yet, complete_mfa_login must follow
    token: raw session token for the cookie, only set once a session exists
    error: user-facing message, never says which factor failed
    locked: error is a lockout message
    restart: the pending MFA step is no longer valid, start again from the password step
    kind: failure category for callers and logs, None on success
    mfa_started_at / credential_fingerprint: set with requires_mfa, the caller keeps them
        server side and hands them back to complete_mfa_login
    '''
    success: bool
    user: Optional[SessionUser] = None
    token: Optional[str] = None
    requires_mfa: bool = False
    error: Optional[str] = None
    locked: bool = False
    restart: bool = False
    kind: Optional[AuthErrorKind] = None
    mfa_started_at: Optional[datetime] = None
    credential_fingerprint: Optional[str] = None
