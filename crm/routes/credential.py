# crm/routes/credential.py
from flask import Blueprint, current_app, jsonify, request

from crm.db.session import get_session
from crm.routes import guards
from crm.routes.guards import login_required
from crm.schemas.forms import CredentialCreateForm, parse_form
from crm.services.credential_service import CredentialService

credential_bp = Blueprint('credential', __name__, url_prefix='/credentials')


def _credential_service(db):
    return CredentialService(
        db,
        cipher=current_app.extensions['field_cipher'],
        audit_log_service=guards.build_audit_log_service(db),
    )


@credential_bp.route('/')
@login_required
def list_credentials():
    client_id = request.args.get('client_id', '').strip() or None
    db = get_session()
    try:
        credentials = _credential_service(db).list_credentials(
            actor=guards.get_session(), client_id=client_id,
        )
        return jsonify({'credentials': credentials})
    finally:
        db.close()


@credential_bp.route('/', methods=['POST'])
@login_required
def create_credential():
    form = parse_form(CredentialCreateForm, request.form)
    db = get_session()
    try:
        credential = _credential_service(db).create_credential(
            actor=guards.get_session(),
            label=form.label,
            value=form.value,
            username=form.username,
            client_id=form.client_id,
        )
        db.commit()
        return jsonify({'id': credential.id, 'label': credential.label}), 201
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@credential_bp.route('/<credential_id>/decrypt', methods=['POST'])
@login_required
def decrypt_credential(credential_id):
    """明文只在审计记录提交后返回"""
    db = get_session()
    try:
        value = _credential_service(db).decrypt_credential(
            actor=guards.get_session(), credential_id=credential_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    return jsonify({'value': value})
