# crm/routes/auth.py
from datetime import datetime

from flask import Blueprint, render_template, request, redirect, url_for, flash, session

from crm.db.session import get_session
from crm.errors import PolicyViolationError
from crm.logger import get_logger
from crm.routes import guards
from crm.schemas.forms import LoginForm, MfaCodeForm, parse_form
from crm.services.audit_log_service import get_client_info

logger = get_logger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='')

# Flask-Session keys (server-side store, the client only holds the session id)
PENDING_MFA_USER_ID = 'pending_mfa_user_id'
PENDING_MFA_RETURN_URL = 'pending_mfa_return_url'
PENDING_MFA_STARTED_AT = 'pending_mfa_started_at'
PENDING_MFA_FINGERPRINT = 'pending_mfa_fingerprint'
PENDING_MFA_KEYS = (PENDING_MFA_USER_ID, PENDING_MFA_RETURN_URL, PENDING_MFA_STARTED_AT, PENDING_MFA_FINGERPRINT)


def _clear_pending_mfa():
    for key in PENDING_MFA_KEYS:
        session.pop(key, None)


def _login_redirect(token: str, return_url: str):
    response = redirect(return_url or '/')
    return guards.set_session_cookie(response, token)


@auth_bp.route('/login', methods=['GET', 'POST'])
def login():
    """登录页面"""
    return_url = request.values.get('returnUrl') or request.values.get('return_url') or '/'

    if request.method == 'GET':
        if guards.get_session() is not None:
            return redirect(return_url if return_url.startswith('/') and not return_url.startswith('//') else '/')
        return render_template('auth/login.html', return_url=return_url)

    try:
        form = parse_form(LoginForm, {
            'email': request.form.get('email', ''),
            'password': request.form.get('password', ''),
            'return_url': return_url,
        })
    except PolicyViolationError as e:
        flash(str(e), 'error')
        return render_template('auth/login.html', return_url=return_url), 400

    client_info = get_client_info()
    db = get_session()
    try:
        auth_service = guards.build_auth_service(db)
        result = auth_service.login(
            form.email,
            form.password,
            ip_address=client_info.get('ip_address'),
            user_agent=client_info.get('user_agent'),
        )
        # 失败计数和 failed_login 审计也要落库
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    if not result.success:
        flash(result.error, 'error')
        return render_template('auth/login.html', return_url=form.return_url), 401

    if result.requires_mfa:
        session[PENDING_MFA_USER_ID] = result.user.id
        session[PENDING_MFA_RETURN_URL] = form.return_url
        session[PENDING_MFA_STARTED_AT] = result.mfa_started_at.isoformat()
        session[PENDING_MFA_FINGERPRINT] = result.credential_fingerprint
        return redirect(url_for('auth.login_mfa'))

    logger.info("Login succeeded: user_id=%s", result.user.id)
    return _login_redirect(result.token, form.return_url)


@auth_bp.route('/login/mfa', methods=['GET', 'POST'])
def login_mfa():
    """第二步：TOTP 验证"""
    user_id = session.get(PENDING_MFA_USER_ID)
    started_at = session.get(PENDING_MFA_STARTED_AT)
    fingerprint = session.get(PENDING_MFA_FINGERPRINT)
    if not user_id or not started_at or not fingerprint:
        _clear_pending_mfa()
        return redirect(url_for('auth.login'))

    if request.method == 'GET':
        return render_template('auth/mfa.html')

    try:
        form = parse_form(MfaCodeForm, {'code': request.form.get('code', '')})
    except PolicyViolationError as e:
        flash(str(e), 'error')
        return render_template('auth/mfa.html'), 400

    client_info = get_client_info()
    db = get_session()
    try:
        auth_service = guards.build_auth_service(db)
        result = auth_service.complete_mfa_login(
            user_id,
            form.code,
            ip_address=client_info.get('ip_address'),
            user_agent=client_info.get('user_agent'),
            started_at=datetime.fromisoformat(started_at),
            fingerprint=fingerprint,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    if not result.success:
        flash(result.error, 'error')
        if result.locked or result.restart:
            # 重新从密码步骤开始
            _clear_pending_mfa()
            return redirect(url_for('auth.login'))
        return render_template('auth/mfa.html'), 401

    return_url = session.get(PENDING_MFA_RETURN_URL) or '/'
    _clear_pending_mfa()
    logger.info("MFA login succeeded: user_id=%s", result.user.id)
    return _login_redirect(result.token, return_url)


@auth_bp.route('/logout')
def logout():
    """登出"""
    user = guards.get_session()
    if user:
        db = get_session()
        try:
            guards.build_audit_log_service(db).record_logout(user.id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    session.clear()
    response = redirect(url_for('auth.login'))
    flash('You have been signed out', 'info')
    return guards.destroy_session(response)


@auth_bp.route('/')
def index():
    """首页重定向"""
    if guards.get_session() is not None:
        return redirect(url_for('user.profile'))
    return redirect(url_for('auth.login'))
