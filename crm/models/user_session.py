# crm/models/user_session.py
from sqlalchemy import String, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from typing import Optional

from crm.db.base import Base, utcnow
from crm.models.user import User


class UserSession(Base):
    """
    Server-side authentication grant.
    Only the SHA-256 of the cookie token is stored; the raw token lives in the client cookie.
    """

    __tablename__ = "sessions"

    id :Mapped[str] = mapped_column(String(36), primary_key=True)

    user_id :Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    user :Mapped[User] = relationship(User, lazy="joined")

    token_hash :Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    ip_address :Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent :Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    created_at :Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at :Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
