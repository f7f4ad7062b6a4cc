# crm/routes/guards.py
"""
Request-side session handling: cookie lifecycle, identity resolution and route guards.

The cookie carries the raw opaque token; the database only knows its SHA-256.
Identity is resolved at most once per request and cached on flask.g.
"""
from functools import wraps
from typing import Optional

from flask import current_app, g, redirect, request, url_for
from sqlalchemy.orm import Session

from crm.db.session import get_session as get_db_session
from crm.errors import AuthErrorKind, AuthenticationError
from crm.schemas.session_user import SessionUser
from crm.security.rbac import require_permission, require_title
from crm.services.audit_log_service import AuditLogService
from crm.services.auth_service import SESSION_DURATION, AuthService
from crm.services.user_service import UserService

SESSION_COOKIE_NAME = "antreva_session"

_CACHE_KEY = "crm_session_user"


# ======================================================
# Service wiring (shared read-only objects live in app.extensions)
# ======================================================

def build_audit_log_service(db: Session) -> AuditLogService:
    return AuditLogService(db)


def build_auth_service(db: Session, audit_log_service: Optional[AuditLogService] = None) -> AuthService:
    ext = current_app.extensions
    return AuthService(
        db,
        cipher=ext["field_cipher"],
        audit_log_service=audit_log_service or build_audit_log_service(db),
        hasher=ext["password_hasher"],
        totp=ext["totp_policy"],
    )


def build_user_service(db: Session) -> UserService:
    audit_log_service = build_audit_log_service(db)
    return UserService(
        db,
        audit_log_service=audit_log_service,
        auth_service=build_auth_service(db, audit_log_service),
        hasher=current_app.extensions["password_hasher"],
    )


# ======================================================
# Cookie lifecycle
# ======================================================

def get_session_token() -> Optional[str]:
    return request.cookies.get(SESSION_COOKIE_NAME) or None


def get_session() -> Optional[SessionUser]:
    '''
    Resolve the request's session cookie to a SessionUser, or None.
    Permissions come from the role as stored now, so role edits apply on the next request.
    '''
    if _CACHE_KEY in g:
        return g.get(_CACHE_KEY)

    user = None
    token = get_session_token()
    if token:
        db = get_db_session()
        try:
            user = build_auth_service(db).validate_session(token)
        finally:
            db.close()
    setattr(g, _CACHE_KEY, user)
    return user


def set_session_cookie(response, token: str):
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=int(SESSION_DURATION.total_seconds()),
        path="/",
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE_FLAG", True),
        samesite="Lax",
    )
    return response


def destroy_session(response):
    """Delete the session row behind the request cookie and clear the cookie on the response."""
    token = get_session_token()
    if token:
        db = get_db_session()
        try:
            build_auth_service(db).destroy_session(token)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
    g.pop(_CACHE_KEY, None)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


# ======================================================
# Route guards
# ======================================================

def wants_json() -> bool:
    best = request.accept_mimetypes.best_match(["application/json", "text/html"])
    return request.is_json or best == "application/json"


def _anonymous_response():
    if wants_json():
        raise AuthenticationError("Authentication required", kind=AuthErrorKind.NOT_AUTHENTICATED)
    return redirect(url_for("auth.login", returnUrl=request.full_path.rstrip("?")))


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if get_session() is None:
            return _anonymous_response()
        return view(*args, **kwargs)
    return wrapped


def permission_required(permission):
    """Authenticated and holding `permission`; AuthorizationError (403) otherwise."""
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user = get_session()
            if user is None:
                return _anonymous_response()
            require_permission(user, permission)
            return view(*args, **kwargs)
        return wrapped
    return decorator


def title_required(title: str):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user = get_session()
            if user is None:
                return _anonymous_response()
            require_title(user, title)
            return view(*args, **kwargs)
        return wrapped
    return decorator
