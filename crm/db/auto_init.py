"""
数据库自动初始化检查模块
在应用启动时检查并补齐默认角色（以及可选的 CEO / CTO 种子账号）
"""
import os
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm.logger import get_logger
from crm.models.role import Role
from crm.security.rbac import ALL_PERMISSIONS, TITLE_CEO, TITLE_CTO

logger = get_logger(__name__)

# name -> permissions
DEFAULT_ROLES = {
    "admin": ALL_PERMISSIONS,
    "manager": [
        "leads.read", "leads.write", "clients.read", "clients.write",
        "credentials.read", "tickets.read", "tickets.write",
        "payments.read", "payments.write",
    ],
    "support": [
        "clients.read", "credentials.read", "credentials.decrypt",
        "tickets.read", "tickets.write",
    ],
    "readonly": ["leads.read", "clients.read", "tickets.read", "payments.read"],
}


def seed_default_roles(db: Session) -> int:
    '''Create missing default roles. Existing roles are left as they are. Returns how many were added.'''
    created = 0
    for name, permissions in DEFAULT_ROLES.items():
        exists = db.execute(select(Role).where(Role.name == name)).scalar_one_or_none()
        if exists:
            continue
        db.add(Role(id=str(uuid4()), name=name, permissions=list(permissions)))
        created += 1
    db.flush()
    if created:
        logger.info("Seeded %s default role(s)", created)
    return created


def seed_executives(user_service, environ=None) -> dict:
    """
    CEO / CTO accounts from SEED_CEO_EMAIL / SEED_CTO_EMAIL (names from SEED_*_NAME).
    Both get the admin role and a temporary password.

    :return: email -> temporary password, only for accounts created now
    """
    environ = os.environ if environ is None else environ
    admin_role = user_service.db.execute(select(Role).where(Role.name == "admin")).scalar_one()

    created = {}
    for title in (TITLE_CEO, TITLE_CTO):
        email = environ.get(f"SEED_{title}_EMAIL")
        if not email:
            continue
        if user_service.get_user_by_email(email):
            logger.info("Seed user %s already exists, skipped", title)
            continue
        user, temporary_password = user_service.create_user(
            email=email,
            name=environ.get(f"SEED_{title}_NAME") or title,
            title=title,
            role_id=admin_role.id,
        )
        created[user.email] = temporary_password
    return created
