# crm/routes/role.py
from flask import Blueprint, jsonify, request

from crm.db.enums import Permission
from crm.db.session import get_session
from crm.routes import guards
from crm.routes.guards import permission_required
from crm.schemas.forms import RoleUpdateForm
from crm.security.rbac import AVAILABLE_PERMISSIONS
from crm.services.role_service import RoleService

role_bp = Blueprint('role', __name__, url_prefix='/settings/roles')


def _serialize(role):
    return {'id': role.id, 'name': role.name, 'permissions': list(role.permissions or [])}


def _role_service(db):
    return RoleService(db, guards.build_audit_log_service(db))


@role_bp.route('')
@permission_required(Permission.ROLES_MANAGE)
def list_roles():
    db = get_session()
    try:
        roles = _role_service(db).list_roles()
        return jsonify({
            'roles': [_serialize(r) for r in roles],
            'available_permissions': AVAILABLE_PERMISSIONS,
        })
    finally:
        db.close()


@role_bp.route('', methods=['POST'])
@permission_required(Permission.ROLES_MANAGE)
def create_role():
    form = RoleUpdateForm.from_form(request.form, role_id='new')
    operator = guards.get_session()

    db = get_session()
    try:
        role = _role_service(db).create_role(
            name=form.name or '',
            permissions=[p.value for p in form.permissions],
            operator_id=operator.id,
        )
        db.commit()
        return jsonify({'role': _serialize(role)}), 201
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@role_bp.route('/<role_id>', methods=['POST'])
@permission_required(Permission.ROLES_MANAGE)
def update_role(role_id):
    """权限变更在持有者下一次请求时生效"""
    form = RoleUpdateForm.from_form(request.form, role_id=role_id)
    operator = guards.get_session()

    db = get_session()
    try:
        role = _role_service(db).update_role(
            role_id=form.role_id,
            name=form.name,
            permissions=[p.value for p in form.permissions],
            operator_id=operator.id,
        )
        db.commit()
        return jsonify({'role': _serialize(role)})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
