'''“组装 Flask App 的工厂”（不启动，无行为副作用）
负责把 Flask 实例拼接好：注入配置，构建共享的 cipher / hasher / 数据库 engine，初始化 session，
注册蓝图和 error handler。不调用 app.run()，会被 run.py、WSGI server 和测试调用'''
# crm/app_factory.py
import os

import click
from cachelib import FileSystemCache
from dotenv import load_dotenv
from flask import Flask, jsonify, render_template
from flask_session import Session

from crm.db.auto_init import seed_default_roles
from crm.db.init_db import init_db
from crm.db.session import build_session_factory, create_db_engine
from crm.errors import (
    AuditWriteError,
    AuthErrorKind,
    AuthenticationError,
    AuthorizationError,
    DecryptionError,
    NotFoundError,
    PolicyViolationError,
)
from crm.logger import get_logger
from crm.security.encryption import load_field_cipher
from crm.security.password_policy import DEFAULT_BCRYPT_ROUNDS, PasswordHasher
from crm.security.totp import TotpPolicy

# 加载环境变量
load_dotenv()

logger = get_logger(__name__)

# 项目根目录（使用绝对路径）
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in ('0', 'false', 'no', 'off')


def create_app(config_overrides=None):
    """
    应用工厂函数

    :param config_overrides: dict applied over the environment-derived config (tests)
    :raises ConfigurationError: ENCRYPTION_KEY missing or malformed
    """
    template_dir = os.path.join(BASE_DIR, 'templates')
    app = Flask(__name__, template_folder=template_dir)

    # 基础配置
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    db_path = os.path.join(BASE_DIR, 'crm.db')
    app.config['DATABASE_URL'] = os.getenv('DATABASE_URL', f"sqlite:///{db_path}")
    app.config['ENCRYPTION_KEY'] = os.getenv('ENCRYPTION_KEY', '')
    app.config['BCRYPT_ROUNDS'] = int(os.getenv('BCRYPT_ROUNDS', DEFAULT_BCRYPT_ROUNDS))
    app.config['SESSION_COOKIE_SECURE_FLAG'] = _env_flag('SESSION_COOKIE_SECURE_FLAG', True)

    # Flask-Session: 服务端存储，只放 MFA 中间状态等短期数据
    app.config['SESSION_TYPE'] = 'cachelib'
    app.config['SESSION_PERMANENT'] = False
    app.config['SESSION_KEY_PREFIX'] = 'crm:'
    app.config['SESSION_DIR'] = os.path.join(BASE_DIR, 'flask_session')
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

    if config_overrides:
        app.config.update(config_overrides)
    app.config['SESSION_COOKIE_SECURE'] = app.config['SESSION_COOKIE_SECURE_FLAG']

    # 启动时立即校验密钥，不推迟到第一次加解密
    app.extensions['field_cipher'] = load_field_cipher({'ENCRYPTION_KEY': app.config['ENCRYPTION_KEY']})
    app.extensions['password_hasher'] = PasswordHasher(rounds=app.config['BCRYPT_ROUNDS'])
    app.extensions['totp_policy'] = TotpPolicy()

    engine = create_db_engine(app.config['DATABASE_URL'])
    init_db(engine)
    app.extensions['db_engine'] = engine
    app.extensions['db_session_factory'] = build_session_factory(engine)

    db = app.extensions["db_session_factory"]()
    try:
        seed_default_roles(db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    # 初始化 Session
    # 文件存储，目录可在 config_overrides 里改
    app.config['SESSION_CACHELIB'] = FileSystemCache(app.config['SESSION_DIR'], threshold=500)
    Session(app)

    # 注册蓝图
    from crm.routes.auth import auth_bp
    from crm.routes.audit import audit_bp
    from crm.routes.user import user_bp
    from crm.routes.role import role_bp
    from crm.routes.credential import credential_bp
    from crm.routes.bank_account import bank_account_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(user_bp)
    app.register_blueprint(role_bp)
    app.register_blueprint(credential_bp)
    app.register_blueprint(bank_account_bp)

    # 注册错误处理
    register_error_handlers(app)
    register_commands(app)

    return app


def _error_response(template, status, message, **extra):
    from crm.routes.guards import wants_json
    if wants_json():
        return jsonify({'error': message, **extra}), status
    return render_template(template, message=message), status


def register_error_handlers(app):
    """注册错误处理器"""

    @app.errorhandler(AuthenticationError)
    def not_authenticated(error):
        status = 401 if error.kind == AuthErrorKind.NOT_AUTHENTICATED else 400
        return _error_response('errors/400.html', status, str(error), kind=error.kind.value)

    @app.errorhandler(AuthorizationError)
    def forbidden(error):
        from crm.routes.guards import get_session
        user = get_session()
        logger.warning(
            "Authorization denied: user_id=%s kind=%s required=%s",
            user.id if user else None, error.kind.value, error.required,
        )
        return _error_response('errors/403.html', 403, str(error), kind=error.kind.value)

    @app.errorhandler(NotFoundError)
    def entity_not_found(error):
        return _error_response('errors/404.html', 404, str(error))

    @app.errorhandler(PolicyViolationError)
    def policy_violation(error):
        return _error_response('errors/400.html', 400, str(error))

    @app.errorhandler(DecryptionError)
    def decryption_failed(error):
        logger.error("Decryption failed while handling request: %s", error)
        return _error_response('errors/500.html', 500, 'Stored secret could not be decrypted')

    @app.errorhandler(AuditWriteError)
    def audit_write_failed(error):
        logger.critical("Request aborted, audit entry could not be written: %s", error)
        return _error_response('errors/500.html', 500, 'Action could not be recorded')

    @app.errorhandler(404)
    def not_found(error):
        return _error_response('errors/404.html', 404, 'Not found')

    @app.errorhandler(500)
    def internal_error(error):
        return _error_response('errors/500.html', 500, 'Internal server error')


def register_commands(app):

    @app.cli.command('purge-sessions')
    def purge_sessions():
        """Delete expired session rows."""
        from crm.services.audit_log_service import AuditLogService
        from crm.services.auth_service import AuthService

        db = app.extensions['db_session_factory']()
        try:
            auth_service = AuthService(
                db,
                cipher=app.extensions['field_cipher'],
                audit_log_service=AuditLogService(db),
                hasher=app.extensions['password_hasher'],
                totp=app.extensions['totp_policy'],
            )
            count = auth_service.purge_expired_sessions()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info("Purged %s expired session(s)", count)
        click.echo(f"Purged {count} expired session(s)")
