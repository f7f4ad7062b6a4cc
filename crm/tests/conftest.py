import os
import tempfile
from datetime import datetime

# logger 在导入时创建日志目录，必须先于 crm 模块导入
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="crm-test-logs-"))

import pytest

from crm.app_factory import create_app
from crm.db.auto_init import seed_default_roles
from crm.db.init_db import init_db
from crm.db.session import build_session_factory, create_db_engine
from crm.models.role import Role
from crm.models.user import User
from crm.security.encryption import FieldCipher
from crm.security.password_policy import PasswordHasher
from crm.security.totp import TotpPolicy
from crm.services.audit_log_service import AuditLogService
from crm.services.auth_service import AuthService
from crm.services.user_service import UserService

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
PASSWORD = "Correct-Horse-42"
NOW = datetime(2026, 3, 2, 9, 30, 0)


class FakeClock:
    """Naive UTC clock that tests can move forward."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = build_session_factory(engine)
    db = factory()
    seed_default_roles(db)
    db.commit()
    db.close()
    return factory


@pytest.fixture
def db(session_factory):
    db = session_factory()
    yield db
    db.rollback()
    db.close()


@pytest.fixture
def cipher():
    return FieldCipher(TEST_KEY)


@pytest.fixture
def hasher():
    # bcrypt 最低 cost，测试提速
    return PasswordHasher(rounds=4)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client_info():
    return {"ip_address": "203.0.113.7", "user_agent": "pytest-agent"}


@pytest.fixture
def audit_log_service(db, client_info):
    return AuditLogService(db, client_info_provider=lambda: dict(client_info))


@pytest.fixture
def auth_service(db, cipher, audit_log_service, hasher, clock):
    return AuthService(db, cipher, audit_log_service, hasher, totp=TotpPolicy(), clock=clock)


@pytest.fixture
def user_service(db, audit_log_service, auth_service, hasher):
    return UserService(db, audit_log_service, auth_service, hasher)


def role_id(db, name):
    return db.query(Role).filter(Role.name == name).one().id


@pytest.fixture
def make_user(db, user_service):
    def _make(email="ana@antreva.test", role="support", title=None, password=PASSWORD):
        user, _ = user_service.create_user(
            email=email,
            name="Ana Test",
            title=title,
            role_id=role_id(db, role),
            password=password,
        )
        db.flush()
        return user
    return _make


def enable_mfa(db, cipher, user: User) -> str:
    """Store an encrypted TOTP secret directly, without consuming a time-step."""
    secret = TotpPolicy().generate_secret()
    encrypted = cipher.encrypt(secret)
    user.mfa_secret = encrypted.encrypted
    user.mfa_secret_iv = encrypted.iv
    user.mfa_last_used_step = None
    db.flush()
    return secret


# ======================================================
# Flask app fixtures
# ======================================================

@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "DATABASE_URL": "sqlite://",
        "ENCRYPTION_KEY": TEST_KEY,
        "BCRYPT_ROUNDS": 4,
        "SESSION_COOKIE_SECURE_FLAG": False,
        "SESSION_DIR": str(tmp_path / "flask_session"),
    })
    yield app
    app.extensions["db_engine"].dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def app_user(app):
    """Create a committed user inside the app's database."""
    from crm.db.session import get_session
    from crm.routes.guards import build_user_service

    def _make(email="cto@antreva.test", role="admin", title="CTO", password=PASSWORD, mfa=False):
        with app.app_context():
            db = get_session()
            try:
                user, _ = build_user_service(db).create_user(
                    email=email,
                    name="App User",
                    title=title,
                    role_id=role_id(db, role),
                    password=password,
                )
                secret = enable_mfa(db, app.extensions["field_cipher"], user) if mfa else None
                db.commit()
                return user.id, secret
            finally:
                db.close()
    return _make
