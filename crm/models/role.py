# crm/models/role.py
from sqlalchemy import String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import List

from crm.db.base import Base, utcnow


class Role(Base):
    """
    Named permission bundle. Many users reference one role.
    Mutated only through RoleService (roles.manage).
    """

    __tablename__ = "roles"

    id :Mapped[str] = mapped_column(String(36), primary_key=True, comment="Role UUID")

    name :Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        comment="Role name, lower-case",
    )

    permissions :Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Ordered list of flat permission strings, e.g. clients.read",
    )

    created_at :Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
        comment="Role creation timestamp",
    )

    def __repr__(self) -> str:
        return f"<Role name={self.name} permissions={len(self.permissions or [])}>"
