# crm/services/user_service.py
from uuid import uuid4
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm.db.enums import AuditEntityType, UserStatus
from crm.errors import NotFoundError, PolicyViolationError
from crm.models.role import Role
from crm.models.user import User
from crm.security.encryption import generate_token
from crm.security.password_policy import PasswordHasher, validate_password_complexity
from crm.services.audit_log_service import AuditLogService
from crm.services.auth_service import AuthService, normalize_email


def _snapshot(user: User) -> dict:
    return {
        "name": user.name,
        "email": user.email,
        "title": user.title,
        "role_id": user.role_id,
        "status": user.status.value,
    }


class UserService:
    """
    Staff account maintenance:
    - invite (create)
    - profile edits and admin edits
    - password reset / change
    - deactivation (soft delete, revokes sessions)

    Permission checks happen in the routes; this layer enforces data rules and writes audit rows.
    """

    def __init__(
        self,
        db: Session,
        audit_log_service: AuditLogService,
        auth_service: AuthService,
        hasher: PasswordHasher,
    ):
        self.db = db
        self.audit_log_service = audit_log_service
        self.auth_service = auth_service
        self.hasher = hasher

    # ======================================================
    # 🔐 Internal helpers
    # ======================================================

    def _require_user(self, user_id: str) -> User:
        user = self.get_user_by_id(user_id)
        if not user:
            raise NotFoundError("User", user_id)
        return user

    def _require_role(self, role_id: str) -> Role:
        role = self.db.get(Role, role_id)
        if not role:
            raise NotFoundError("Role", role_id)
        return role

    def _check_password(self, password: str) -> None:
        result = validate_password_complexity(password)
        if not result.valid:
            raise PolicyViolationError(result.error)

    def _ensure_email_free(self, email: str, exclude_user_id: Optional[str] = None) -> None:
        existing = self.get_user_by_email(email)
        if existing and existing.id != exclude_user_id:
            raise PolicyViolationError("Email already in use")

    # ======================================================
    # 👤 User CRUD
    # ======================================================

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.execute(
            select(User).where(User.email == normalize_email(email))
        ).scalar_one_or_none()

    def list_users(self) -> list:
        return list(self.db.execute(select(User).order_by(User.created_at.desc())).scalars())

    def create_user(
        self,
        *,
        email: str,
        name: str,
        role_id: str,
        title: Optional[str] = None,
        password: Optional[str] = None,
        operator_id: Optional[str] = None,
    ) -> Tuple[User, Optional[str]]:
        """
        Invite a user.

        :param password: Initial password. When omitted a temporary one is generated
        :type password: Optional[str]
        :return: (user, temporary_password or None)
        """
        email = normalize_email(email)
        self._ensure_email_free(email)
        self._require_role(role_id)

        temporary_password = None
        if password is None:
            # hex token + fixed suffix so it satisfies the complexity rules
            temporary_password = generate_token(8) + "Aa1!"
            password = temporary_password
        else:
            self._check_password(password)

        user = User(
            id=str(uuid4()),
            email=email,
            name=name.strip(),
            title=title,
            password_hash=self.hasher.hash(password),
            role_id=role_id,
            status=UserStatus.active,
            failed_login_attempts=0,
            failed_mfa_attempts=0,
        )
        self.db.add(user)
        self.db.flush()

        self.audit_log_service.record_create(
            user_id=operator_id,
            entity_type=AuditEntityType.User,
            entity_id=user.id,
            data=_snapshot(user),
        )
        return user, temporary_password

    def update_user(
        self,
        *,
        user_id: str,
        name: str,
        email: str,
        title: Optional[str],
        role_id: str,
        status: Optional[UserStatus],
        operator_id: str,
    ) -> User:
        '''
        Admin edit. Unknown status keeps the current one; leaving "active" revokes all sessions.
        '''
        user = self._require_user(user_id)
        self._require_role(role_id)
        email = normalize_email(email)
        if email != user.email:
            self._ensure_email_free(email, exclude_user_id=user.id)

        before = _snapshot(user)
        user.name = name.strip()
        user.email = email
        user.title = title
        user.role_id = role_id
        if status is not None:
            user.status = status
        self.db.flush()
        self.db.refresh(user)

        if not user.is_active:
            self.auth_service.destroy_all_sessions(user.id)

        self.audit_log_service.record_update(
            user_id=operator_id,
            entity_type=AuditEntityType.User,
            entity_id=user.id,
            before=before,
            after=_snapshot(user),
        )
        return user

    # ======================================================
    # 🔁 Account maintenance
    # ======================================================

    def reset_password(
        self,
        *,
        user_id: str,
        new_password: str,
        operator_id: str,
    ) -> None:
        """
        Admin-set password. Clears lockout and revokes every session of the target.

        :param user_id: ID of the user to reset password for
        :type user_id: str
        :param new_password: New plaintext password, complexity checked
        :type new_password: str
        """
        user = self._require_user(user_id)
        self._check_password(new_password)

        user.password_hash = self.hasher.hash(new_password)
        user.failed_login_attempts = 0
        user.failed_mfa_attempts = 0
        user.locked_until = None
        self.db.flush()
        self.auth_service.destroy_all_sessions(user.id)

        self.audit_log_service.record_update(
            user_id=operator_id,
            entity_type=AuditEntityType.User,
            entity_id=user.id,
            before={"password_hash": "-"},
            after={"password_hash": "-", "lockout_cleared": True},
        )

    def change_password(self, *, user_id: str, current_password: str, new_password: str) -> None:
        user = self._require_user(user_id)
        if not self.hasher.verify(current_password, user.password_hash):
            raise PolicyViolationError("Current password is incorrect")
        self._check_password(new_password)
        user.password_hash = self.hasher.hash(new_password)
        self.db.flush()
        self.audit_log_service.record_update(
            user_id=user.id,
            entity_type=AuditEntityType.User,
            entity_id=user.id,
            before={"password_hash": "-"},
            after={"password_hash": "-"},
        )

    def update_name(self, *, user_id: str, name: str) -> User:
        user = self._require_user(user_id)
        name = name.strip()
        if len(name) < 2:
            raise PolicyViolationError("Name must be at least 2 characters")
        if len(name) > 100:
            raise PolicyViolationError("Name must be less than 100 characters")

        old_name = user.name
        user.name = name
        self.db.flush()
        self.audit_log_service.record_update(
            user_id=user.id,
            entity_type=AuditEntityType.User,
            entity_id=user.id,
            before={"name": old_name},
            after={"name": name},
        )
        return user

    def deactivate_user(self, *, user_id: str, operator_id: str) -> None:
        """
        Deactivate (soft delete) user.

        :param user_id: ID of the user to deactivate
        :type user_id: str
        """
        user = self._require_user(user_id)
        before = user.status.value
        user.status = UserStatus.deactivated
        self.db.flush()
        self.auth_service.destroy_all_sessions(user.id)
        self.audit_log_service.record_update(
            user_id=operator_id,
            entity_type=AuditEntityType.User,
            entity_id=user.id,
            before={"status": before},
            after={"status": UserStatus.deactivated.value},
        )
