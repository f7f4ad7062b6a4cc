# crm/routes/user.py
from flask import Blueprint, jsonify, request, session

from crm.db.enums import Permission
from crm.db.session import get_session
from crm.errors import PolicyViolationError
from crm.routes import guards
from crm.routes.guards import login_required, permission_required
from crm.schemas.forms import (
    MfaCodeForm,
    NameUpdateForm,
    PasswordChangeForm,
    PasswordResetForm,
    UserCreateForm,
    UserUpdateForm,
    parse_form,
)

user_bp = Blueprint('user', __name__, url_prefix='/settings')

# MFA 绑定过程中的待确认 secret，只存服务端 session
PENDING_MFA_SECRET = 'pending_mfa_secret'


def _serialize(user):
    return {
        'id': user.id,
        'email': user.email,
        'name': user.name,
        'title': user.title,
        'role_id': user.role_id,
        'role_name': user.role.name,
        'status': user.status.value,
        'mfa_enabled': user.mfa_enabled,
        'last_login_at': user.last_login_at.isoformat() if user.last_login_at else None,
    }


# ======================================================
# 👥 User management (users.manage)
# ======================================================

@user_bp.route('/users')
@permission_required(Permission.USERS_MANAGE)
def list_users():
    """用户列表（管理员）"""
    db = get_session()
    try:
        users = guards.build_user_service(db).list_users()
        return jsonify({'users': [_serialize(u) for u in users]})
    finally:
        db.close()


@user_bp.route('/users', methods=['POST'])
@permission_required(Permission.USERS_MANAGE)
def create_user():
    """邀请用户（管理员）"""
    form = parse_form(UserCreateForm, request.form)
    operator = guards.get_session()

    db = get_session()
    try:
        user, temporary_password = guards.build_user_service(db).create_user(
            email=form.email,
            name=form.name,
            title=form.title,
            role_id=form.role_id,
            password=form.password,
            operator_id=operator.id,
        )
        db.commit()
        payload = {'user': _serialize(user)}
        if temporary_password:
            # shown once to the inviting admin
            payload['temporary_password'] = temporary_password
        return jsonify(payload), 201
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@user_bp.route('/users/<user_id>', methods=['POST'])
@permission_required(Permission.USERS_MANAGE)
def update_user(user_id):
    """编辑用户（管理员）"""
    data = request.form.to_dict()
    data['user_id'] = user_id
    form = parse_form(UserUpdateForm, data)
    operator = guards.get_session()

    db = get_session()
    try:
        user = guards.build_user_service(db).update_user(
            user_id=form.user_id,
            name=form.name,
            email=form.email,
            title=form.title,
            role_id=form.role_id,
            status=form.status,
            operator_id=operator.id,
        )
        db.commit()
        return jsonify({'user': _serialize(user)})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@user_bp.route('/users/<user_id>/reset-password', methods=['POST'])
@permission_required(Permission.USERS_MANAGE)
def reset_password(user_id):
    """重置密码（管理员）"""
    data = request.form.to_dict()
    data['user_id'] = user_id
    form = parse_form(PasswordResetForm, data)
    operator = guards.get_session()

    db = get_session()
    try:
        guards.build_user_service(db).reset_password(
            user_id=form.user_id,
            new_password=form.new_password,
            operator_id=operator.id,
        )
        db.commit()
        return jsonify({'success': True})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@user_bp.route('/users/<user_id>/deactivate', methods=['POST'])
@permission_required(Permission.USERS_MANAGE)
def deactivate_user(user_id):
    """停用用户，同时注销其所有 session"""
    operator = guards.get_session()
    if operator.id == user_id:
        raise PolicyViolationError("You cannot deactivate your own account")

    db = get_session()
    try:
        guards.build_user_service(db).deactivate_user(user_id=user_id, operator_id=operator.id)
        db.commit()
        return jsonify({'success': True})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ======================================================
# 🙋 Own profile (any authenticated user)
# ======================================================

@user_bp.route('/profile')
@login_required
def profile():
    return jsonify({'user': guards.get_session().model_dump()})


@user_bp.route('/profile/name', methods=['POST'])
@login_required
def update_name():
    form = parse_form(NameUpdateForm, request.form)
    current = guards.get_session()

    db = get_session()
    try:
        user = guards.build_user_service(db).update_name(user_id=current.id, name=form.name)
        db.commit()
        return jsonify({'success': True, 'name': user.name})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@user_bp.route('/profile/password', methods=['POST'])
@login_required
def change_password():
    form = parse_form(PasswordChangeForm, request.form)
    current = guards.get_session()

    db = get_session()
    try:
        guards.build_user_service(db).change_password(
            user_id=current.id,
            current_password=form.current_password,
            new_password=form.new_password,
        )
        db.commit()
        return jsonify({'success': True})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ======================================================
# 📱 MFA enrolment
# ======================================================

@user_bp.route('/mfa/setup', methods=['POST'])
@login_required
def mfa_setup():
    """生成待确认的 secret 与 otpauth URL"""
    current = guards.get_session()
    db = get_session()
    try:
        secret, otpauth_url = guards.build_auth_service(db).generate_mfa_secret(current.id)
    finally:
        db.close()

    session[PENDING_MFA_SECRET] = secret
    return jsonify({'secret': secret, 'otpauth_url': otpauth_url})


@user_bp.route('/mfa/enable', methods=['POST'])
@login_required
def mfa_enable():
    secret = session.get(PENDING_MFA_SECRET)
    if not secret:
        raise PolicyViolationError("Start MFA setup first")
    form = parse_form(MfaCodeForm, request.form)
    current = guards.get_session()

    db = get_session()
    try:
        enabled = guards.build_auth_service(db).enable_mfa(current.id, secret, form.code)
        if not enabled:
            raise PolicyViolationError("Invalid MFA code")
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    session.pop(PENDING_MFA_SECRET, None)
    return jsonify({'success': True})


@user_bp.route('/mfa/disable', methods=['POST'])
@login_required
def mfa_disable():
    current = guards.get_session()
    db = get_session()
    try:
        guards.build_auth_service(db).disable_mfa(current.id)
        db.commit()
        return jsonify({'success': True})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
