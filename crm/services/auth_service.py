# crm/services/auth_service.py
"""
Authentication and session lifecycle.

Anonymous -> (password ok, MFA on) PendingMfa -> Authenticated -> Expired / Destroyed

SOC 2 notes:
- bcrypt cost 12+ (PasswordHasher)
- fixed 24h session expiry, no sliding refresh
- lockout for 15 minutes after 5 failed attempts
- TOTP MFA with per-user replay guard
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple
from uuid import uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from crm.db.base import utcnow
from crm.db.enums import AuditEntityType
from crm.errors import AuthErrorKind, DecryptionError, NotFoundError
from crm.logger import get_logger
from crm.models.user import User
from crm.models.user_session import UserSession
from crm.schemas.session_user import LoginResult, SessionUser
from crm.security.encryption import FieldCipher, generate_token, hash_value, secure_compare
from crm.security.password_policy import PasswordHasher
from crm.security.totp import TotpPolicy
from crm.services.audit_log_service import AuditLogService

logger = get_logger(__name__)

# Session duration (24 hours)
SESSION_DURATION = timedelta(hours=24)

# Failed attempts before lockout, shared by password and MFA failures
MAX_FAILED_ATTEMPTS = 5

# Lockout duration (15 minutes)
LOCKOUT_DURATION = timedelta(minutes=15)

# Password step is only good for this long before the MFA code must arrive
PENDING_MFA_DURATION = timedelta(minutes=5)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
INVALID_MFA_MESSAGE = "Invalid MFA code"
TOO_MANY_ATTEMPTS_MESSAGE = "Too many failed attempts. Account locked for 15 minutes."
MFA_EXPIRED_MESSAGE = "Sign-in expired. Please log in again."


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def credential_fingerprint(user: User) -> str:
    # 密码被修改或重置后指纹随之变化
    return hash_value(user.password_hash)


class AuthService:
    """
    Login, MFA completion and server-side session management.
    Does not commit: the caller owns the transaction, like every other service.
    """

    def __init__(
        self,
        db: Session,
        cipher: FieldCipher,
        audit_log_service: AuditLogService,
        hasher: PasswordHasher,
        totp: Optional[TotpPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.cipher = cipher
        self.audit_log_service = audit_log_service
        self.hasher = hasher
        self.totp = totp or TotpPolicy()
        self.clock = clock

    # ======================================================
    # 🔐 Internal helpers
    # ======================================================

    def _get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.execute(select(User).where(User.email == email)).scalar_one_or_none()

    def _get_user(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def _lock_message(self, user: User, now: datetime) -> str:
        remaining = (user.locked_until - now).total_seconds()
        minutes = max(1, math.ceil(remaining / 60))
        return f"Account locked. Try again in {minutes} minute(s)."

    def _clear_expired_lockout(self, user: User, now: datetime) -> None:
        # 锁定窗口已过：计数清零，重新给 5 次机会
        if user.locked_until is not None and user.locked_until <= now:
            self.db.execute(
                update(User)
                .where(User.id == user.id)
                .values(failed_login_attempts=0, failed_mfa_attempts=0, locked_until=None)
            )
            self.db.refresh(user)

    def _register_failure(self, user: User, counter_column, now: datetime) -> bool:
        '''
        Atomically increment one failure counter (UPDATE ... SET n = n + 1) and lock the
        account when it reaches MAX_FAILED_ATTEMPTS.
        :return: True if this failure triggered the lockout
        '''
        self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values({counter_column: counter_column + 1})
            .execution_options(synchronize_session=False)
        )
        attempts = self.db.execute(
            select(counter_column).where(User.id == user.id)
        ).scalar_one()

        locked = attempts >= MAX_FAILED_ATTEMPTS
        if locked:
            self.db.execute(
                update(User)
                .where(User.id == user.id)
                .values(locked_until=now + LOCKOUT_DURATION)
                .execution_options(synchronize_session=False)
            )
            logger.warning("Account locked after %s failed attempts: user_id=%s", attempts, user.id)
        self.db.refresh(user)
        return locked

    def _fail(
        self,
        *,
        email: str,
        reason: str,
        message: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        kind: AuthErrorKind,
        user_id: Optional[str] = None,
        locked: bool = False,
        restart: bool = False,
    ) -> LoginResult:
        # 每一次失败都写 failed_login 审计，reason 只进审计，不返回给用户
        logger.warning("Failed login: reason=%s ip=%s", reason, ip_address)
        self.audit_log_service.record_failed_login(
            email,
            reason=reason,
            ip_address=ip_address,
            user_agent=user_agent,
            user_id=user_id,
        )
        return LoginResult(
            success=False,
            error=message,
            locked=locked,
            restart=restart,
            kind=AuthErrorKind.ACCOUNT_LOCKED if locked else kind,
        )

    # ======================================================
    # 🔑 Login
    # ======================================================

    def login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """
        First factor. Returns a token when MFA is off, requires_mfa when it is on.

        :param email: Login email (normalised before lookup)
        :type email: str
        :param password: Plaintext password
        :type password: str
        """
        email = normalize_email(email)
        now = self.clock()
        user = self._get_user_by_email(email)

        if user is None:
            self.hasher.dummy_verify(password)
            return self._fail(
                email=email, reason="unknown_email", message=INVALID_CREDENTIALS_MESSAGE,
                ip_address=ip_address, user_agent=user_agent, kind=AuthErrorKind.INVALID_CREDENTIALS,
            )

        if not user.is_active:
            self.hasher.dummy_verify(password)
            return self._fail(
                email=email, reason=f"status_{user.status.value}", message=INVALID_CREDENTIALS_MESSAGE,
                ip_address=ip_address, user_agent=user_agent, user_id=user.id, kind=AuthErrorKind.INVALID_CREDENTIALS,
            )

        self._clear_expired_lockout(user, now)

        # 锁定期间不校验密码
        if user.locked_until is not None and user.locked_until > now:
            return self._fail(
                email=email, reason="locked", message=self._lock_message(user, now),
                ip_address=ip_address, user_agent=user_agent, user_id=user.id, locked=True, kind=AuthErrorKind.ACCOUNT_LOCKED,
            )

        if not self.hasher.verify(password, user.password_hash):
            locked = self._register_failure(user, User.failed_login_attempts, now)
            return self._fail(
                email=email, reason="bad_password",
                message=TOO_MANY_ATTEMPTS_MESSAGE if locked else INVALID_CREDENTIALS_MESSAGE,
                ip_address=ip_address, user_agent=user_agent, user_id=user.id, locked=locked,
                kind=AuthErrorKind.INVALID_CREDENTIALS,
            )

        if user.mfa_enabled:
            # 第二步之前不创建 session
            return LoginResult(
                success=True,
                requires_mfa=True,
                user=SessionUser.from_orm_model(user),
                mfa_started_at=now,
                credential_fingerprint=credential_fingerprint(user),
            )

        token = self.create_session(user.id, ip_address, user_agent)
        self.audit_log_service.record_login(user.id, ip_address, user_agent)
        return LoginResult(success=True, token=token, user=SessionUser.from_orm_model(user))

    def complete_mfa_login(
        self,
        user_id: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        started_at: datetime,
        fingerprint: str,
    ) -> LoginResult:
        """
        Second factor. MFA failures count on their own counter but share the lockout.

        :param user_id: user that passed the password step (kept server side between steps)
        :type user_id: str
        :param code: TOTP code
        :type code: str
        :param started_at: mfa_started_at from the password step
        :param fingerprint: credential_fingerprint from the password step
        """
        now = self.clock()
        user = self._get_user(user_id) if user_id else None

        if user is None or not user.is_active or not user.mfa_enabled:
            return self._fail(
                email=user.email if user else str(user_id), reason="mfa_unavailable",
                message=INVALID_MFA_MESSAGE, ip_address=ip_address, user_agent=user_agent,
                user_id=user.id if user else None, kind=AuthErrorKind.INVALID_MFA_CODE,
            )

        # 密码步骤过期，或之后密码被修改/重置，都要重新输入密码
        expired = now - started_at > PENDING_MFA_DURATION
        if expired or not secure_compare(fingerprint, credential_fingerprint(user)):
            return self._fail(
                email=user.email, reason="mfa_pending_expired", message=MFA_EXPIRED_MESSAGE,
                ip_address=ip_address, user_agent=user_agent, user_id=user.id, restart=True,
                kind=AuthErrorKind.INVALID_MFA_CODE,
            )

        self._clear_expired_lockout(user, now)
        if user.locked_until is not None and user.locked_until > now:
            return self._fail(
                email=user.email, reason="locked", message=self._lock_message(user, now),
                ip_address=ip_address, user_agent=user_agent, user_id=user.id, locked=True, kind=AuthErrorKind.ACCOUNT_LOCKED,
            )

        secret = self._decrypt_mfa_secret(user)
        step = self.totp.verify(
            code,
            secret,
            last_used_step=user.mfa_last_used_step,
            for_time=now.replace(tzinfo=timezone.utc),
        )

        # 条件更新：并发请求重放同一个 code 时只有一个能成功
        accepted = step is not None and self.db.execute(
            update(User)
            .where(
                User.id == user.id,
                or_(User.mfa_last_used_step.is_(None), User.mfa_last_used_step < step),
            )
            .values(mfa_last_used_step=step)
            .execution_options(synchronize_session=False)
        ).rowcount == 1

        if not accepted:
            locked = self._register_failure(user, User.failed_mfa_attempts, now)
            return self._fail(
                email=user.email, reason="bad_mfa_code",
                message=TOO_MANY_ATTEMPTS_MESSAGE if locked else INVALID_MFA_MESSAGE,
                ip_address=ip_address, user_agent=user_agent, user_id=user.id, locked=locked,
                kind=AuthErrorKind.INVALID_MFA_CODE,
            )

        token = self.create_session(user.id, ip_address, user_agent)
        self.audit_log_service.record_login(user.id, ip_address, user_agent)
        return LoginResult(success=True, token=token, user=SessionUser.from_orm_model(user))

    # ======================================================
    # 🎫 Sessions
    # ======================================================

    def create_session(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        '''
        Create a session row and return the raw token for the cookie.
        Only hash_value(token) is persisted. Resets failure counters and lockout.
        '''
        now = self.clock()
        token = generate_token(32)
        self.db.add(UserSession(
            id=str(uuid4()),
            user_id=user_id,
            token_hash=hash_value(token),
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
            created_at=now,
            expires_at=now + SESSION_DURATION,
        ))
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                last_login_at=now,
                failed_login_attempts=0,
                failed_mfa_attempts=0,
                locked_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        user = self._get_user(user_id)
        if user is not None:
            self.db.refresh(user)
        return token

    def validate_session(self, token: Optional[str]) -> Optional[SessionUser]:
        """Live, non-expired session of an active user, or None. Permissions read fresh from the role."""
        if not token:
            return None
        user_session = self.db.execute(
            select(UserSession).where(
                UserSession.token_hash == hash_value(token),
                UserSession.expires_at > self.clock(),
            )
        ).unique().scalar_one_or_none()

        if user_session is None or not user_session.user.is_active:
            return None

        user = user_session.user
        self.db.refresh(user.role)
        return SessionUser.from_orm_model(user)

    def destroy_session(self, token: Optional[str]) -> int:
        if not token:
            return 0
        result = self.db.execute(
            delete(UserSession).where(UserSession.token_hash == hash_value(token))
        )
        return result.rowcount

    def destroy_all_sessions(self, user_id: str) -> int:
        """Logout everywhere (deactivation, password reset)."""
        result = self.db.execute(delete(UserSession).where(UserSession.user_id == user_id))
        if result.rowcount:
            logger.info("Revoked %s session(s) for user_id=%s", result.rowcount, user_id)
        return result.rowcount

    def purge_expired_sessions(self) -> int:
        result = self.db.execute(delete(UserSession).where(UserSession.expires_at <= self.clock()))
        return result.rowcount

    # ======================================================
    # 📱 MFA enrolment
    # ======================================================

    def _decrypt_mfa_secret(self, user: User) -> str:
        try:
            return self.cipher.decrypt(user.mfa_secret, user.mfa_secret_iv)
        except DecryptionError:
            logger.error("MFA secret failed to decrypt, possible tampering or key mismatch: user_id=%s", user.id)
            raise

    def generate_mfa_secret(self, user_id: str) -> Tuple[str, str]:
        '''
        :return: (secret, otpauth_url) for the enrolment QR code. Nothing is stored yet.
        '''
        user = self._get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        secret = self.totp.generate_secret()
        return secret, self.totp.generate_uri(secret, label=user.email)

    def enable_mfa(self, user_id: str, secret: str, code: str) -> bool:
        """Store the secret encrypted once the user proves the authenticator works."""
        user = self._get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        step = self.totp.verify(code, secret, for_time=self.clock().replace(tzinfo=timezone.utc))
        if step is None:
            return False

        encrypted = self.cipher.encrypt(secret)
        user.mfa_secret = encrypted.encrypted
        user.mfa_secret_iv = encrypted.iv
        user.mfa_last_used_step = step
        self.audit_log_service.record_update(
            user_id=user.id,
            entity_type=AuditEntityType.User,
            entity_id=user.id,
            before={"mfa_enabled": False},
            after={"mfa_enabled": True},
        )
        return True

    def disable_mfa(self, user_id: str, operator_id: Optional[str] = None) -> None:
        user = self._get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        was_enabled = user.mfa_enabled
        user.mfa_secret = None
        user.mfa_secret_iv = None
        user.mfa_last_used_step = None
        self.audit_log_service.record_update(
            user_id=operator_id or user.id,
            entity_type=AuditEntityType.User,
            entity_id=user.id,
            before={"mfa_enabled": was_enabled},
            after={"mfa_enabled": False},
        )
