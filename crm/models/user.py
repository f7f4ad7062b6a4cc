# crm/models/user.py
from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Enum,
    ForeignKey,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from typing import Optional

from crm.db.base import Base, utcnow
from crm.db.enums import UserStatus
from crm.models.role import Role


class User(Base):
    """
    CRM staff account. Never hard-deleted: status flips to keep audit references valid.
    """

    __tablename__ = "users"

    id :Mapped[str] = mapped_column(String(36), primary_key=True, comment="User UUID")

    email :Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        comment="Login email, stored trimmed and lower-cased",
    )

    name :Mapped[str] = mapped_column(String(100), nullable=False, comment="Display name")
    title :Mapped[Optional[str]] = mapped_column(String(50), nullable=True, comment="Job title, e.g. CEO / CTO")

    password_hash :Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="bcrypt hash",
    )

    role_id :Mapped[str] = mapped_column(String(36), ForeignKey("roles.id"), nullable=False)
    role :Mapped[Role] = relationship(Role, lazy="joined")

    status :Mapped[UserStatus] = mapped_column(
        Enum(UserStatus, name="user_status"),
        nullable=False,
        default=UserStatus.active,
    )

    # 登录锁定
    failed_login_attempts :Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_mfa_attempts :Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locked_until :Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # MFA: secret encrypted at rest as "<hex ciphertext>:<hex tag>" + hex iv
    mfa_secret :Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mfa_secret_iv :Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    mfa_last_used_step :Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Last accepted TOTP time-step, codes at or before it are rejected",
    )

    last_login_at :Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at :Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
        comment="Account creation timestamp",
    )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.active

    @property
    def mfa_enabled(self) -> bool:
        return bool(self.mfa_secret and self.mfa_secret_iv)

    def __repr__(self) -> str:
        return f"<User email={self.email} status={self.status.value}>"
