# crm/models/support_credential.py
from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional

from crm.db.base import Base, utcnow


class SupportCredential(Base):
    """
    Third-party login kept for client support.
    The secret is only ever stored encrypted; label/username are display metadata.
    """

    __tablename__ = "support_credentials"

    id :Mapped[str] = mapped_column(String(36), primary_key=True)
    client_id :Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True, comment="Owning client")

    label :Mapped[str] = mapped_column(String(100), nullable=False, comment="e.g. Instagram, Hosting panel")
    username :Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    encrypted_value :Mapped[str] = mapped_column(String(2048), nullable=False, comment="<hex ciphertext>:<hex tag>")
    iv :Mapped[str] = mapped_column(String(64), nullable=False, comment="Hex IV")

    created_at :Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
