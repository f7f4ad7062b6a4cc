from typing import Any, Callable, Dict, Optional, Tuple, Union
from uuid import uuid4
from decimal import Decimal
from datetime import datetime, date
import enum

from flask import has_request_context, request
from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm.db.base import utcnow
from crm.db.enums import AuditEntityType, AuditAction
from crm.errors import AuditWriteError
from crm.logger import get_logger
from crm.models.audit_log import AuditLog

logger = get_logger(__name__)

REDACTED = "[REDACTED]"

# case-insensitive substring match against metadata keys
SENSITIVE_FIELDS = (
    "password",
    "passwordHash",
    "password_hash",
    "encryptedValue",
    "encrypted_value",
    "accessToken",
    "access_token",
    "accessTokenEncrypted",
    "mfaSecret",
    "mfa_secret",
    "iv",
    "accountNumber",
    "account_number",
)
_SENSITIVE_LOWER = tuple(f.lower() for f in SENSITIVE_FIELDS)


def get_client_info() -> Dict[str, str]:
    '''
    从当前请求头获取 IP 和 User-Agent
    Outside a request (background job, CLI) returns {} instead of failing.
    '''
    if not has_request_context():
        return {}
    info: Dict[str, str] = {}
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip_address = (
        forwarded.split(",")[0].strip()
        or request.headers.get("X-Real-IP")
        or request.remote_addr
    )
    if ip_address:
        info["ip_address"] = ip_address
    user_agent = request.headers.get("User-Agent")
    if user_agent:
        info["user_agent"] = user_agent
    return info


def is_sensitive_key(key: str) -> bool:
    key_lower = str(key).lower()
    return any(f in key_lower for f in _SENSITIVE_LOWER)


class AuditLogService:
    """
    Centralized service for recording all auditable actions.
    This service is the ONLY place where AuditLog records can be created.
    Rows are append-only; every call creates a new one.
    """

    def __init__(self, db: Session, client_info_provider: Callable[[], Dict[str, str]] = get_client_info):
        self.db = db
        self.client_info_provider = client_info_provider

    def serialize_audit_value(self, value) -> Any:
        if value is None:
            return None
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, enum.Enum):
            return value.value
        if isinstance(value, (int, float, str, bool)):
            return value
        if isinstance(value, dict):
            return {str(k): self.serialize_audit_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self.serialize_audit_value(v) for v in value]
        return str(value)  # 兜底

    def redact_sensitive_fields(self, obj: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Copy of obj with sensitive keys replaced by the redaction marker, nested dicts and lists included."""
        if obj is None:
            return None
        redacted: Dict[str, Any] = {}
        for key, value in obj.items():
            if is_sensitive_key(key):
                redacted[key] = REDACTED
            else:
                redacted[key] = self._redact_value(value)
        return redacted

    def _redact_value(self, value):
        if isinstance(value, dict):
            return self.redact_sensitive_fields(value)
        if isinstance(value, (list, tuple)):
            return [self._redact_value(v) for v in value]
        return value

    def _normalize_entity_type(self, entity_type: Union[str, AuditEntityType]) -> AuditEntityType:
        """
        将字符串或枚举值转换为 AuditEntityType 枚举
        Accepts the enum, its value ("client_contact") or its name ("ClientContact").
        """
        if isinstance(entity_type, AuditEntityType):
            return entity_type
        entity_type_str = str(entity_type).strip()
        for enum_member in AuditEntityType:
            if enum_member.value == entity_type_str.lower():
                return enum_member
        for enum_member in AuditEntityType:
            if enum_member.name.lower() == entity_type_str.lower():
                return enum_member
        raise ValueError(f"Unknown entity_type: {entity_type_str}. Valid values: {[e.value for e in AuditEntityType]}")

    def _normalize_action(self, action: Union[str, AuditAction]) -> AuditAction:
        if isinstance(action, AuditAction):
            return action
        try:
            return AuditAction(str(action).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown action: {action}. Valid values: {[a.value for a in AuditAction]}")

    def build_metadata(self, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        metadata = dict(metadata or {})
        # 调用方未提供的字段从请求上下文补全，各自独立
        if not metadata.get("ip_address") or not metadata.get("user_agent"):
            client_info = self.client_info_provider() or {}
            if not metadata.get("ip_address"):
                metadata["ip_address"] = client_info.get("ip_address")
            if not metadata.get("user_agent"):
                metadata["user_agent"] = client_info.get("user_agent")

        safe_metadata = {
            "ip_address": metadata.get("ip_address"),
            "user_agent": metadata.get("user_agent"),
            "before": self.redact_sensitive_fields(metadata.get("before")),
            "after": self.redact_sensitive_fields(metadata.get("after")),
            "context": metadata.get("context"),
        }
        return {
            key: self.serialize_audit_value(value)
            for key, value in safe_metadata.items()
            if value is not None
        }

    def log_action(
        self,
        *,
        user_id: Optional[str],
        entity_type: Union[str, AuditEntityType],
        entity_id: str,
        action: Union[str, AuditAction],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        '''
        Write one immutable audit row. The row is flushed immediately so a failing audit store
        surfaces here as AuditWriteError instead of at some later commit.

        :param user_id: 操作用户ID, None for system or anonymous events
        :type user_id: Optional[str]
        :param entity_type: 实体类型：可以是字符串或 AuditEntityType 枚举
        :type entity_type: Union[str, AuditEntityType]
        :param entity_id: 所属实体唯一id (the submitted email for failed logins)
        :type entity_id: str
        :param action: create / read / update / delete / decrypt / login / logout / failed_login
        :type action: Union[str, AuditAction]
        :param metadata: ip_address, user_agent, before, after, context. before/after are redacted
        :type metadata: Optional[Dict[str, Any]]
        '''
        log = AuditLog(
            id=str(uuid4()),
            user_id=user_id,
            entity_type=self._normalize_entity_type(entity_type),
            entity_id=str(entity_id),
            action=self._normalize_action(action),
            audit_metadata=self.build_metadata(metadata),
            created_at=utcnow(),
        )
        try:
            self.db.add(log)
            self.db.flush()
        except SQLAlchemyError as e:
            logger.critical(
                "AUDIT WRITE FAILED entity=%s id=%s action=%s: %s",
                log.entity_type.value, log.entity_id, log.action.value, e,
            )
            raise AuditWriteError(f"Audit write failed for {log.action.value} on {log.entity_type.value}") from e
        return log

    # ======================================================
    # Convenience functions for common audit events
    # ======================================================

    def record_login(self, user_id: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> AuditLog:
        return self.log_action(
            user_id=user_id,
            entity_type=AuditEntityType.Session,
            entity_id=user_id,
            action=AuditAction.login,
            metadata={"ip_address": ip_address, "user_agent": user_agent},
        )

    def record_logout(self, user_id: str) -> AuditLog:
        return self.log_action(
            user_id=user_id,
            entity_type=AuditEntityType.Session,
            entity_id=user_id,
            action=AuditAction.logout,
        )

    def record_failed_login(
        self,
        email: str,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> AuditLog:
        return self.log_action(
            user_id=user_id,
            entity_type=AuditEntityType.Session,
            entity_id=email,
            action=AuditAction.failed_login,
            metadata={
                "ip_address": ip_address,
                "user_agent": user_agent,
                "context": {"reason": reason},
            },
        )

    def record_decrypt(
        self,
        *,
        user_id: str,
        entity_type: Union[str, AuditEntityType],
        entity_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        return self.log_action(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=AuditAction.decrypt,
            metadata={"context": context},
        )

    def record_create(self, *, user_id: Optional[str], entity_type, entity_id: str, data: Optional[dict] = None) -> AuditLog:
        return self.log_action(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=AuditAction.create,
            metadata={"after": data},
        )

    def record_update(
        self,
        *,
        user_id: Optional[str],
        entity_type,
        entity_id: str,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
    ) -> AuditLog:
        return self.log_action(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=AuditAction.update,
            metadata={"before": before, "after": after},
        )

    def record_delete(self, *, user_id: Optional[str], entity_type, entity_id: str, data: Optional[dict] = None) -> AuditLog:
        return self.log_action(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=AuditAction.delete,
            metadata={"before": data},
        )

    # ======================================================
    # Read side (audit log viewer)
    # ======================================================

    def list_logs(
        self,
        *,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        action: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Tuple[list, int]:
        '''
        Newest first. Invalid entity_type / action raise ValueError.
        :return: (logs, total)
        '''
        query = self.db.query(AuditLog)

        if user_id:
            query = query.filter(AuditLog.user_id == user_id)
        if entity_type:
            query = query.filter(AuditLog.entity_type == self._normalize_entity_type(entity_type))
        if action:
            query = query.filter(AuditLog.action == self._normalize_action(action))
        if start:
            query = query.filter(AuditLog.created_at >= start)
        if end:
            query = query.filter(AuditLog.created_at < end)
        if search and len(search.strip()) >= 2:
            query = query.filter(AuditLog.entity_id.contains(search.strip()))

        total = query.count()
        page = max(page, 1)
        logs = (
            query.order_by(desc(AuditLog.created_at))
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return logs, total
