from datetime import timedelta, timezone

from crm.db.enums import AuditAction, UserStatus
from crm.errors import AuthErrorKind
from crm.models.audit_log import AuditLog
from crm.models.user_session import UserSession
from crm.security.encryption import hash_value
from crm.security.totp import TotpPolicy
from crm.services.auth_service import (
    INVALID_CREDENTIALS_MESSAGE,
    INVALID_MFA_MESSAGE,
    MAX_FAILED_ATTEMPTS,
    MFA_EXPIRED_MESSAGE,
    PENDING_MFA_DURATION,
    TOO_MANY_ATTEMPTS_MESSAGE,
    credential_fingerprint,
)
from crm.services.role_service import RoleService
from conftest import PASSWORD, enable_mfa, role_id


def _audit_rows(db, action):
    return db.query(AuditLog).filter(AuditLog.action == action).all()


def _reasons(db):
    return [row.audit_metadata["context"]["reason"] for row in _audit_rows(db, AuditAction.failed_login)]


def _complete(auth_service, clock, user, code):
    # password step just happened, same password
    return auth_service.complete_mfa_login(
        user.id, code, started_at=clock.now, fingerprint=credential_fingerprint(user),
    )


# ======================================================
# Password step
# ======================================================

def test_login_without_mfa_creates_session(db, auth_service, make_user):
    user = make_user()
    result = auth_service.login("  ANA@antreva.test ", PASSWORD, "198.51.100.1", "browser")

    assert result.success and not result.requires_mfa
    assert result.token
    assert result.user.email == "ana@antreva.test"

    stored = db.query(UserSession).one()
    assert stored.user_id == user.id
    # 只存 token 的哈希
    assert stored.token_hash == hash_value(result.token)
    assert stored.token_hash != result.token
    assert stored.expires_at - stored.created_at == timedelta(hours=24)
    assert len(_audit_rows(db, AuditAction.login)) == 1


def test_unknown_email_and_wrong_password_share_one_message(db, auth_service, make_user):
    make_user()
    unknown = auth_service.login("nobody@antreva.test", PASSWORD)
    wrong = auth_service.login("ana@antreva.test", "Wrong-Password-1")

    assert unknown.error == wrong.error == INVALID_CREDENTIALS_MESSAGE
    assert unknown.kind == wrong.kind == AuthErrorKind.INVALID_CREDENTIALS
    failed = _audit_rows(db, AuditAction.failed_login)
    assert {row.entity_id for row in failed} == {"nobody@antreva.test", "ana@antreva.test"}
    assert db.query(UserSession).count() == 0


def test_inactive_user_cannot_login(db, auth_service, make_user):
    user = make_user()
    user.status = UserStatus.suspended
    db.flush()

    result = auth_service.login("ana@antreva.test", PASSWORD)
    assert not result.success
    assert result.error == INVALID_CREDENTIALS_MESSAGE


def test_lockout_after_five_failures_skips_password_check(db, auth_service, hasher, make_user, monkeypatch):
    user = make_user()
    for attempt in range(MAX_FAILED_ATTEMPTS):
        result = auth_service.login("ana@antreva.test", "Wrong-Password-1")
        assert not result.success
    assert result.locked
    assert result.error == TOO_MANY_ATTEMPTS_MESSAGE

    db.refresh(user)
    assert user.failed_login_attempts == MAX_FAILED_ATTEMPTS
    assert user.locked_until is not None

    calls = []
    monkeypatch.setattr(hasher, "verify", lambda *args: calls.append(args) or True)

    result = auth_service.login("ana@antreva.test", PASSWORD)
    assert not result.success
    assert result.locked
    assert result.error == "Account locked. Try again in 15 minute(s)."
    assert result.kind == AuthErrorKind.ACCOUNT_LOCKED
    assert calls == []
    assert db.query(UserSession).count() == 0
    # 锁定时的快速失败也要写 failed_login
    assert sorted(_reasons(db)) == ["bad_password"] * MAX_FAILED_ATTEMPTS + ["locked"]


def test_lockout_expires_and_counters_reset(db, auth_service, clock, make_user):
    user = make_user()
    for _ in range(MAX_FAILED_ATTEMPTS):
        auth_service.login("ana@antreva.test", "Wrong-Password-1")

    clock.now = clock.now + timedelta(minutes=16)
    result = auth_service.login("ana@antreva.test", PASSWORD)

    assert result.success
    db.refresh(user)
    assert user.failed_login_attempts == 0
    assert user.locked_until is None
    assert user.last_login_at == clock.now


# ======================================================
# Sessions
# ======================================================

def test_session_reflects_role_changes_without_relogin(session_factory, cipher, hasher, clock):
    from crm.services.audit_log_service import AuditLogService
    from crm.services.auth_service import AuthService
    from crm.services.user_service import UserService

    def services(db):
        audit = AuditLogService(db, client_info_provider=dict)
        auth = AuthService(db, cipher, audit, hasher, clock=clock)
        return audit, auth, UserService(db, audit, auth, hasher)

    # request 1: login
    db = session_factory()
    audit, auth, users = services(db)
    support_id = role_id(db, "support")
    users.create_user(email="ana@antreva.test", name="Ana", role_id=support_id, password=PASSWORD)
    token = auth.login("ana@antreva.test", PASSWORD).token
    role = RoleService(db, audit).get_role(support_id)
    expected = list(role.permissions)
    db.commit()
    db.close()

    # request 2: session matches the role
    db = session_factory()
    session_user = services(db)[1].validate_session(token)
    assert session_user.permissions == expected
    db.close()

    # admin edits the role
    db = session_factory()
    audit = services(db)[0]
    RoleService(db, audit).update_role(
        role_id=support_id, name=None, permissions=["tickets.read"], operator_id=None,
    )
    db.commit()
    db.close()

    # request 3: new permissions, same token
    db = session_factory()
    session_user = services(db)[1].validate_session(token)
    assert session_user.permissions == ["tickets.read"]
    db.close()


def test_destroyed_session_no_longer_resolves(db, auth_service, make_user):
    make_user()
    token = auth_service.login("ana@antreva.test", PASSWORD).token
    assert auth_service.validate_session(token) is not None

    assert auth_service.destroy_session(token) == 1
    assert auth_service.validate_session(token) is None


def test_expired_session_rejected_and_purged(db, auth_service, clock, make_user):
    make_user()
    token = auth_service.login("ana@antreva.test", PASSWORD).token

    clock.now = clock.now + timedelta(hours=24, seconds=1)
    assert auth_service.validate_session(token) is None
    assert auth_service.purge_expired_sessions() == 1
    assert db.query(UserSession).count() == 0


def test_garbage_token_resolves_to_nothing(auth_service):
    assert auth_service.validate_session(None) is None
    assert auth_service.validate_session("not-a-token") is None


def test_deactivation_revokes_all_sessions(db, auth_service, user_service, make_user):
    user = make_user()
    auth_service.login("ana@antreva.test", PASSWORD)
    auth_service.login("ana@antreva.test", PASSWORD)
    assert db.query(UserSession).filter(UserSession.user_id == user.id).count() == 2

    user_service.deactivate_user(user_id=user.id, operator_id=None)
    assert db.query(UserSession).filter(UserSession.user_id == user.id).count() == 0


# ======================================================
# MFA
# ======================================================

def test_mfa_login_end_to_end(db, auth_service, cipher, clock, client_info, make_user):
    user = make_user()
    secret = enable_mfa(db, cipher, user)
    # 一次失败，确认成功后计数清零
    auth_service.login("ana@antreva.test", "Wrong-Password-1")

    first = auth_service.login("ana@antreva.test", PASSWORD)
    assert first.success and first.requires_mfa
    assert first.token is None
    assert db.query(UserSession).count() == 0

    code = TotpPolicy().generate(secret, for_time=clock.now.replace(tzinfo=timezone.utc))
    second = auth_service.complete_mfa_login(
        user.id, code, started_at=first.mfa_started_at, fingerprint=first.credential_fingerprint,
    )

    assert second.success and second.token
    assert auth_service.validate_session(second.token).id == user.id
    db.refresh(user)
    assert user.failed_login_attempts == 0
    assert user.mfa_last_used_step is not None

    logins = _audit_rows(db, AuditAction.login)
    assert len(logins) == 1
    # ip/user-agent 来自请求上下文
    assert logins[0].audit_metadata["ip_address"] == client_info["ip_address"]
    assert logins[0].audit_metadata["user_agent"] == client_info["user_agent"]


def test_mfa_code_cannot_be_replayed(db, auth_service, cipher, clock, make_user):
    user = make_user()
    secret = enable_mfa(db, cipher, user)
    code = TotpPolicy().generate(secret, for_time=clock.now.replace(tzinfo=timezone.utc))

    assert _complete(auth_service, clock, user, code).success
    replay = _complete(auth_service, clock, user, code)
    assert not replay.success
    assert replay.error == INVALID_MFA_MESSAGE


def test_mfa_failures_lock_the_account(db, auth_service, cipher, clock, make_user):
    user = make_user()
    secret = enable_mfa(db, cipher, user)

    for _ in range(MAX_FAILED_ATTEMPTS):
        result = _complete(auth_service, clock, user, "000000")
    assert result.locked

    db.refresh(user)
    assert user.failed_mfa_attempts == MAX_FAILED_ATTEMPTS
    assert user.failed_login_attempts == 0

    # 锁定期间正确的 code 和密码都不行
    code = TotpPolicy().generate(secret, for_time=clock.now.replace(tzinfo=timezone.utc))
    assert _complete(auth_service, clock, user, code).locked
    assert auth_service.login("ana@antreva.test", PASSWORD).locked
    assert sorted(_reasons(db)) == ["bad_mfa_code"] * MAX_FAILED_ATTEMPTS + ["locked", "locked"]


def test_pending_mfa_expires(db, auth_service, cipher, clock, make_user):
    user = make_user()
    secret = enable_mfa(db, cipher, user)
    first = auth_service.login("ana@antreva.test", PASSWORD)

    clock.now = clock.now + PENDING_MFA_DURATION + timedelta(seconds=1)
    code = TotpPolicy().generate(secret, for_time=clock.now.replace(tzinfo=timezone.utc))
    result = auth_service.complete_mfa_login(
        user.id, code, started_at=first.mfa_started_at, fingerprint=first.credential_fingerprint,
    )

    assert not result.success and result.restart
    assert result.error == MFA_EXPIRED_MESSAGE
    assert db.query(UserSession).count() == 0
    assert _reasons(db) == ["mfa_pending_expired"]


def test_pending_mfa_dies_with_password_reset(db, auth_service, user_service, cipher, clock, make_user):
    user = make_user()
    secret = enable_mfa(db, cipher, user)
    first = auth_service.login("ana@antreva.test", PASSWORD)

    user_service.reset_password(user_id=user.id, new_password="Brand-New-Pass-77", operator_id=None)

    code = TotpPolicy().generate(secret, for_time=clock.now.replace(tzinfo=timezone.utc))
    result = auth_service.complete_mfa_login(
        user.id, code, started_at=first.mfa_started_at, fingerprint=first.credential_fingerprint,
    )
    assert result.restart
    assert result.token is None
    assert db.query(UserSession).count() == 0


def test_enable_and_disable_mfa(db, auth_service, clock, make_user):
    user = make_user()
    secret, uri = auth_service.generate_mfa_secret(user.id)
    assert secret in uri

    assert not auth_service.enable_mfa(user.id, secret, "123")
    code = TotpPolicy().generate(secret, for_time=clock.now.replace(tzinfo=timezone.utc))
    assert auth_service.enable_mfa(user.id, secret, code)
    assert user.mfa_enabled
    assert user.mfa_secret != secret

    assert auth_service.login("ana@antreva.test", PASSWORD).requires_mfa

    auth_service.disable_mfa(user.id)
    assert not user.mfa_enabled
    assert auth_service.login("ana@antreva.test", PASSWORD).token
