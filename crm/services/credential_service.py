# crm/services/credential_service.py
"""
Support credentials: third-party logins kept for client support.

Secrets are encrypted with the shared FieldCipher before they touch the database.
Every decrypt writes an audit row first; the plaintext is only returned after that row is flushed.
"""
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm.db.enums import AuditEntityType, Permission
from crm.errors import DecryptionError, NotFoundError
from crm.logger import get_logger
from crm.models.support_credential import SupportCredential
from crm.schemas.session_user import SessionUser
from crm.security.encryption import FieldCipher
from crm.security.rbac import require_permission
from crm.services.audit_log_service import AuditLogService

logger = get_logger(__name__)


class CredentialService:
    def __init__(self, db: Session, cipher: FieldCipher, audit_log_service: AuditLogService):
        self.db = db
        self.cipher = cipher
        self.audit_log_service = audit_log_service

    def _get(self, credential_id: str) -> SupportCredential:
        credential = self.db.get(SupportCredential, credential_id)
        if not credential:
            raise NotFoundError("Credential", credential_id)
        return credential

    def create_credential(
        self,
        *,
        actor: SessionUser,
        label: str,
        value: str,
        username: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> SupportCredential:
        require_permission(actor, Permission.CLIENTS_WRITE)

        encrypted = self.cipher.encrypt(value)
        credential = SupportCredential(
            id=str(uuid4()),
            client_id=client_id,
            label=label,
            username=username,
            encrypted_value=encrypted.encrypted,
            iv=encrypted.iv,
        )
        self.db.add(credential)
        self.db.flush()

        self.audit_log_service.record_create(
            user_id=actor.id,
            entity_type=AuditEntityType.Credential,
            entity_id=credential.id,
            data={
                "label": label,
                "username": username,
                "client_id": client_id,
                "encrypted_value": encrypted.encrypted,
                "iv": encrypted.iv,
            },
        )
        return credential

    def list_credentials(self, *, actor: SessionUser, client_id: Optional[str] = None) -> List[dict]:
        '''Display metadata only, never the ciphertext.'''
        require_permission(actor, Permission.CREDENTIALS_READ)

        query = select(SupportCredential).order_by(SupportCredential.created_at.desc())
        if client_id:
            query = query.where(SupportCredential.client_id == client_id)
        return [
            {
                "id": c.id,
                "client_id": c.client_id,
                "label": c.label,
                "username": c.username,
                "created_at": c.created_at.isoformat() if c.created_at else None,
            }
            for c in self.db.execute(query).scalars()
        ]

    def decrypt_credential(self, *, actor: SessionUser, credential_id: str) -> str:
        """
        Reveal a stored secret.

        :raises AuthorizationError: actor lacks credentials.decrypt
        :raises DecryptionError: stored value failed authentication (tampering or key mismatch)
        :raises AuditWriteError: the decrypt could not be recorded, nothing is revealed
        """
        require_permission(actor, Permission.CREDENTIALS_DECRYPT)
        credential = self._get(credential_id)

        try:
            plaintext = self.cipher.decrypt(credential.encrypted_value, credential.iv)
        except DecryptionError:
            logger.error(
                "Credential decrypt failed, possible tampering or key mismatch: credential_id=%s user_id=%s",
                credential.id, actor.id,
            )
            raise

        self.audit_log_service.record_decrypt(
            user_id=actor.id,
            entity_type=AuditEntityType.Credential,
            entity_id=credential.id,
            context={"label": credential.label, "client_id": credential.client_id},
        )
        return plaintext
