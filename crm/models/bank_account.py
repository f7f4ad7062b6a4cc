# crm/models/bank_account.py
from sqlalchemy import String, Boolean, DateTime, Enum
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional

from crm.db.base import Base, utcnow
from crm.db.enums import BankAccountType, Currency


class BankAccount(Base):
    """Receiving bank account. Account number encrypted at rest, last 4 kept for display."""

    __tablename__ = "bank_accounts"

    id :Mapped[str] = mapped_column(String(36), primary_key=True)

    bank_name :Mapped[str] = mapped_column(String(100), nullable=False)
    routing_number :Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    account_number :Mapped[str] = mapped_column(String(512), nullable=False, comment="Encrypted, <hex ciphertext>:<hex tag>")
    account_number_iv :Mapped[str] = mapped_column(String(64), nullable=False)
    account_number_last4 :Mapped[str] = mapped_column(String(4), nullable=False)

    account_type :Mapped[BankAccountType] = mapped_column(Enum(BankAccountType, name="bank_account_type"), nullable=False)
    currency :Mapped[Currency] = mapped_column(Enum(Currency, name="currency"), nullable=False)
    account_holder :Mapped[str] = mapped_column(String(150), nullable=False)

    is_active :Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at :Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
