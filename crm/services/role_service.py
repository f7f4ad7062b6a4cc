# crm/services/role_service.py
from typing import Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm.db.enums import AuditEntityType
from crm.errors import NotFoundError, PolicyViolationError
from crm.logger import get_logger
from crm.models.role import Role
from crm.security.rbac import validate_permission_values
from crm.services.audit_log_service import AuditLogService

logger = get_logger(__name__)


class RoleService:
    '''
    Role / permission bundle maintenance (roles.manage).
    Changes apply to every holder on their next request: sessions read permissions from the role each time.
    '''

    def __init__(self, db: Session, audit_log_service: AuditLogService):
        self.db = db
        self.audit_log_service = audit_log_service

    def _clean_permissions(self, permissions: Iterable[str]) -> List[str]:
        try:
            return validate_permission_values(permissions)
        except ValueError as e:
            raise PolicyViolationError(str(e)) from e

    def _ensure_name_free(self, name: str, exclude_role_id: Optional[str] = None) -> None:
        existing = self.get_role_by_name(name)
        if existing and existing.id != exclude_role_id:
            raise PolicyViolationError(f"Role name already exists: {name}")

    def get_role(self, role_id: str) -> Role:
        role = self.db.get(Role, role_id)
        if not role:
            raise NotFoundError("Role", role_id)
        return role

    def get_role_by_name(self, name: str) -> Optional[Role]:
        return self.db.execute(
            select(Role).where(Role.name == name.strip().lower())
        ).scalar_one_or_none()

    def list_roles(self) -> List[Role]:
        return list(self.db.execute(select(Role).order_by(Role.name)).scalars())

    def create_role(self, *, name: str, permissions: Iterable[str], operator_id: Optional[str] = None) -> Role:
        name = (name or "").strip().lower()
        if not name:
            raise PolicyViolationError("Role name is required")
        self._ensure_name_free(name)

        role = Role(id=str(uuid4()), name=name, permissions=self._clean_permissions(permissions))
        self.db.add(role)
        self.db.flush()

        self.audit_log_service.record_create(
            user_id=operator_id,
            entity_type=AuditEntityType.Role,
            entity_id=role.id,
            data={"name": role.name, "permissions": role.permissions},
        )
        return role

    def update_role(
        self,
        *,
        role_id: str,
        name: Optional[str],
        permissions: Iterable[str],
        operator_id: str,
    ) -> Role:
        """
        Replace a role's permission list (and optionally rename it).

        :param name: New name, lower-cased. None keeps the current name
        :param permissions: Full new permission list, unknown strings are rejected
        """
        role = self.get_role(role_id)
        before = {"name": role.name, "permissions": list(role.permissions or [])}

        if name:
            name = name.strip().lower()
            if name != role.name:
                self._ensure_name_free(name, exclude_role_id=role.id)
                role.name = name
        # 重新赋值列表, JSON 列不追踪原地修改
        role.permissions = self._clean_permissions(permissions)
        self.db.flush()

        after = {"name": role.name, "permissions": list(role.permissions)}
        self.audit_log_service.record_update(
            user_id=operator_id,
            entity_type=AuditEntityType.Role,
            entity_id=role.id,
            before=before,
            after=after,
        )
        logger.info("Role updated: role=%s by user_id=%s", role.name, operator_id)
        return role
