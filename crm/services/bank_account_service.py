# crm/services/bank_account_service.py
import re
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm.db.enums import AuditEntityType, BankAccountType, Currency, Permission
from crm.errors import DecryptionError, NotFoundError
from crm.logger import get_logger
from crm.models.bank_account import BankAccount
from crm.schemas.session_user import SessionUser
from crm.security.encryption import FieldCipher
from crm.security.rbac import require_permission
from crm.services.audit_log_service import AuditLogService

logger = get_logger(__name__)


def last_four(account_number: str) -> str:
    digits = re.sub(r"\D", "", account_number or "")
    return digits[-4:] if len(digits) >= 4 else "****"


def _display(account: BankAccount) -> dict:
    return {
        "bank_name": account.bank_name,
        "account_holder": account.account_holder,
        "last4": account.account_number_last4,
        "routing_number": account.routing_number,
        "account_type": account.account_type.value,
        "currency": account.currency.value,
        "is_active": account.is_active,
    }


class BankAccountService:
    """
    Receiving bank accounts shown on invoices.
    Managed under users.manage; the full number is encrypted and only revealed with an audit row.
    """

    def __init__(self, db: Session, cipher: FieldCipher, audit_log_service: AuditLogService):
        self.db = db
        self.cipher = cipher
        self.audit_log_service = audit_log_service

    def _get(self, account_id: str) -> BankAccount:
        account = self.db.get(BankAccount, account_id)
        if not account:
            raise NotFoundError("BankAccount", account_id)
        return account

    def list_bank_accounts(self, *, actor: SessionUser) -> List[BankAccount]:
        require_permission(actor, Permission.USERS_MANAGE)
        return list(self.db.execute(select(BankAccount).order_by(BankAccount.created_at.desc())).scalars())

    def create_bank_account(
        self,
        *,
        actor: SessionUser,
        bank_name: str,
        account_holder: str,
        account_number: str,
        account_type: BankAccountType,
        currency: Currency,
        routing_number: Optional[str] = None,
        is_active: bool = True,
    ) -> BankAccount:
        require_permission(actor, Permission.USERS_MANAGE)

        encrypted = self.cipher.encrypt(account_number)
        account = BankAccount(
            id=str(uuid4()),
            bank_name=bank_name,
            account_holder=account_holder,
            routing_number=routing_number,
            account_number=encrypted.encrypted,
            account_number_iv=encrypted.iv,
            account_number_last4=last_four(account_number),
            account_type=account_type,
            currency=currency,
            is_active=is_active,
        )
        self.db.add(account)
        self.db.flush()

        self.audit_log_service.record_create(
            user_id=actor.id,
            entity_type=AuditEntityType.Payment,
            entity_id=account.id,
            data=_display(account),
        )
        return account

    def update_bank_account(
        self,
        *,
        actor: SessionUser,
        account_id: str,
        bank_name: str,
        account_holder: str,
        account_type: BankAccountType,
        currency: Currency,
        account_number: Optional[str] = None,
        routing_number: Optional[str] = None,
        is_active: bool = True,
    ) -> BankAccount:
        '''
        Empty account_number keeps the stored ciphertext untouched.
        '''
        require_permission(actor, Permission.USERS_MANAGE)
        account = self._get(account_id)
        before = _display(account)

        account.bank_name = bank_name
        account.account_holder = account_holder
        account.routing_number = routing_number
        account.account_type = account_type
        account.currency = currency
        account.is_active = is_active
        if account_number:
            encrypted = self.cipher.encrypt(account_number)
            account.account_number = encrypted.encrypted
            account.account_number_iv = encrypted.iv
            account.account_number_last4 = last_four(account_number)
        self.db.flush()

        self.audit_log_service.record_update(
            user_id=actor.id,
            entity_type=AuditEntityType.Payment,
            entity_id=account.id,
            before=before,
            after=_display(account),
        )
        return account

    def get_decrypted_account_number(self, *, actor: SessionUser, account_id: str) -> str:
        require_permission(actor, Permission.USERS_MANAGE)
        account = self._get(account_id)

        try:
            plaintext = self.cipher.decrypt(account.account_number, account.account_number_iv)
        except DecryptionError:
            logger.error(
                "Bank account decrypt failed, possible tampering or key mismatch: account_id=%s user_id=%s",
                account.id, actor.id,
            )
            raise

        self.audit_log_service.record_decrypt(
            user_id=actor.id,
            entity_type=AuditEntityType.Payment,
            entity_id=account.id,
            context={"bank_name": account.bank_name, "last4": account.account_number_last4},
        )
        return plaintext

    def delete_bank_account(self, *, actor: SessionUser, account_id: str) -> None:
        require_permission(actor, Permission.USERS_MANAGE)
        account = self._get(account_id)
        data = _display(account)
        self.db.delete(account)
        self.db.flush()
        self.audit_log_service.record_delete(
            user_id=actor.id,
            entity_type=AuditEntityType.Payment,
            entity_id=account_id,
            data=data,
        )
