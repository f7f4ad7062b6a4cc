# crm/routes/bank_account.py
from flask import Blueprint, current_app, jsonify, request

from crm.db.enums import Permission
from crm.db.session import get_session
from crm.errors import PolicyViolationError
from crm.routes import guards
from crm.routes.guards import permission_required
from crm.schemas.forms import BankAccountForm, parse_form
from crm.services.bank_account_service import BankAccountService

bank_account_bp = Blueprint('bank_account', __name__, url_prefix='/settings/bank-accounts')


def _serialize(account):
    return {
        'id': account.id,
        'bank_name': account.bank_name,
        'account_holder': account.account_holder,
        'account_number_last4': account.account_number_last4,
        'routing_number': account.routing_number,
        'account_type': account.account_type.value,
        'currency': account.currency.value,
        'is_active': account.is_active,
    }


def _bank_account_service(db):
    return BankAccountService(
        db,
        cipher=current_app.extensions['field_cipher'],
        audit_log_service=guards.build_audit_log_service(db),
    )


def _form():
    data = request.form.to_dict()
    # 未勾选的 checkbox 不会提交
    data.setdefault('is_active', 'off')
    return parse_form(BankAccountForm, data)


@bank_account_bp.route('')
@permission_required(Permission.USERS_MANAGE)
def list_bank_accounts():
    db = get_session()
    try:
        accounts = _bank_account_service(db).list_bank_accounts(actor=guards.get_session())
        return jsonify({'bank_accounts': [_serialize(a) for a in accounts]})
    finally:
        db.close()


@bank_account_bp.route('', methods=['POST'])
@permission_required(Permission.USERS_MANAGE)
def create_bank_account():
    form = _form()
    if not form.account_number:
        raise PolicyViolationError("Account number is required")

    db = get_session()
    try:
        account = _bank_account_service(db).create_bank_account(
            actor=guards.get_session(),
            bank_name=form.bank_name,
            account_holder=form.account_holder,
            account_number=form.account_number,
            account_type=form.account_type,
            currency=form.currency,
            routing_number=form.routing_number,
            is_active=form.is_active,
        )
        db.commit()
        return jsonify({'bank_account': _serialize(account)}), 201
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@bank_account_bp.route('/<account_id>', methods=['POST'])
@permission_required(Permission.USERS_MANAGE)
def update_bank_account(account_id):
    form = _form()
    db = get_session()
    try:
        account = _bank_account_service(db).update_bank_account(
            actor=guards.get_session(),
            account_id=account_id,
            bank_name=form.bank_name,
            account_holder=form.account_holder,
            account_number=form.account_number,
            account_type=form.account_type,
            currency=form.currency,
            routing_number=form.routing_number,
            is_active=form.is_active,
        )
        db.commit()
        return jsonify({'bank_account': _serialize(account)})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@bank_account_bp.route('/<account_id>/reveal', methods=['POST'])
@permission_required(Permission.USERS_MANAGE)
def reveal_account_number(account_id):
    db = get_session()
    try:
        account_number = _bank_account_service(db).get_decrypted_account_number(
            actor=guards.get_session(), account_id=account_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    return jsonify({'account_number': account_number})


@bank_account_bp.route('/<account_id>/delete', methods=['POST'])
@permission_required(Permission.USERS_MANAGE)
def delete_bank_account(account_id):
    db = get_session()
    try:
        _bank_account_service(db).delete_bank_account(actor=guards.get_session(), account_id=account_id)
        db.commit()
        return jsonify({'success': True})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
