# crm/db/base.py
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC now; every DateTime column in the schema stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
