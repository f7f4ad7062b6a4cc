# crm/routes/audit.py
from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request

from crm.db.enums import Permission
from crm.db.session import get_session
from crm.errors import PolicyViolationError
from crm.routes.guards import build_audit_log_service, permission_required, title_required
from crm.security.rbac import TITLE_CTO

audit_bp = Blueprint('audit', __name__, url_prefix='/audit-logs')

PER_PAGE = 50


def _parse_date(value, field):
    try:
        return datetime.strptime(value, '%Y-%m-%d')
    except ValueError:
        raise PolicyViolationError(f"{field} must be YYYY-MM-DD")


def _serialize(log):
    return {
        'id': log.id,
        'user_id': log.user_id,
        'entity_type': log.entity_type.value,
        'entity_id': log.entity_id,
        'action': log.action.value,
        'metadata': log.audit_metadata or {},
        'created_at': log.created_at.isoformat(),
    }


@audit_bp.route('/')
@permission_required(Permission.AUDIT_READ)
@title_required(TITLE_CTO)
def list_logs():
    """审计日志列表, audit.read AND title CTO"""
    user_id = request.args.get('user_id', '').strip() or None
    entity_type = request.args.get('entity_type', '').strip() or None
    action = request.args.get('action', '').strip() or None
    start_date = request.args.get('start_date', '').strip() or None
    end_date = request.args.get('end_date', '').strip() or None
    search = request.args.get('search', '').strip() or None
    try:
        page = max(int(request.args.get('page', 1)), 1)
    except ValueError:
        page = 1

    start = _parse_date(start_date, 'start_date') if start_date else None
    # end_date 当天也包含在内
    end = _parse_date(end_date, 'end_date') + timedelta(days=1) if end_date else None

    db = get_session()
    try:
        try:
            logs, total = build_audit_log_service(db).list_logs(
                user_id=user_id,
                entity_type=entity_type,
                action=action,
                start=start,
                end=end,
                search=search,
                page=page,
                per_page=PER_PAGE,
            )
        except ValueError as e:
            raise PolicyViolationError(str(e)) from e

        return jsonify({
            'logs': [_serialize(log) for log in logs],
            'total': total,
            'page': page,
            'per_page': PER_PAGE,
        })
    finally:
        db.close()
