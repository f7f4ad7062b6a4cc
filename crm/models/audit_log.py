# crm/models/audit_log.py
from sqlalchemy import (
    String,
    DateTime,
    Enum,
    JSON,
    TypeDecorator,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Any, Optional

from crm.db.base import Base, utcnow
from crm.db.enums import AuditEntityType, AuditAction


class AuditEntityTypeEnum(TypeDecorator):
    """
    自定义类型装饰器，用于处理字符串到枚举的转换
    Stored as the plain string value so legacy rows written as free text still load.
    Unknown values are rejected in both directions: the set is closed.
    """
    impl = String
    cache_ok = True

    def __init__(self):
        super().__init__(length=50)

    @staticmethod
    def _coerce(value: Any) -> Optional[AuditEntityType]:
        if value is None:
            return None
        if isinstance(value, AuditEntityType):
            return value
        value_lower = str(value).strip().lower()
        for enum_member in AuditEntityType:
            if enum_member.value == value_lower or enum_member.name.lower() == value_lower:
                return enum_member
        raise ValueError(
            f"Cannot convert '{value}' to AuditEntityType. Valid values: {[e.value for e in AuditEntityType]}"
        )

    def process_bind_param(self, value: Any, dialect) -> Optional[str]:
        """写入数据库时的处理"""
        member = self._coerce(value)
        return member.value if member else None

    def process_result_value(self, value: Any, dialect) -> Optional[AuditEntityType]:
        """从数据库读取时的处理"""
        return self._coerce(value)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    # =========
    # 🔒 Immutable fields (no update, no delete)
    # =========
    id :Mapped[str] = mapped_column(String(36), primary_key=True, comment="Audit log UUID")

    user_id :Mapped[Optional[str]] = mapped_column(
        String(36),
        nullable=True,
        index=True,
        comment="Acting user, NULL for system or anonymous events",
    )

    entity_type :Mapped[AuditEntityType] = mapped_column(
        AuditEntityTypeEnum(),
        nullable=False,
        comment="Type of the audited entity"
    )

    entity_id :Mapped[str] = mapped_column(String(255), nullable=False, comment="ID of the audited entity (email for failed logins)")

    action :Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, name="audit_action"),
        nullable=False,
        comment="Type of action performed on the entity"
    )

    # "metadata" is reserved on declarative classes
    audit_metadata :Mapped[Optional[dict]] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
        comment="Redacted before/after, context, ip_address, user_agent",
    )

    created_at :Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
        index=True,
        comment="Timestamp when the action was performed"
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog entity={self.entity_type.value} "
            f"entity_id={self.entity_id} "
            f"action={self.action.value}>"
        )


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise RuntimeError(f"AuditLog rows are immutable (id={target.id})")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise RuntimeError(f"AuditLog rows cannot be deleted (id={target.id})")
