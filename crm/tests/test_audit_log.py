from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from crm.db.enums import AuditAction, AuditEntityType
from crm.errors import AuditWriteError
from crm.models.audit_log import AuditLog
from crm.services.audit_log_service import REDACTED, AuditLogService
from conftest import NOW


def test_before_after_are_redacted(db, audit_log_service):
    log = audit_log_service.log_action(
        user_id=None,
        entity_type=AuditEntityType.User,
        entity_id="u-1",
        action=AuditAction.update,
        metadata={
            "before": {"password": "x", "name": "y"},
            "after": {"accessTokenEncrypted": "t", "profile": {"mfa_secret": "s", "city": "SD"}},
        },
    )
    stored = db.get(AuditLog, log.id)
    assert stored.audit_metadata["before"] == {"password": REDACTED, "name": "y"}
    assert stored.audit_metadata["after"] == {
        "accessTokenEncrypted": REDACTED,
        "profile": {"mfa_secret": REDACTED, "city": "SD"},
    }


def test_dicts_inside_lists_are_redacted(db, audit_log_service):
    log = audit_log_service.log_action(
        user_id=None,
        entity_type=AuditEntityType.Client,
        entity_id="c-1",
        action=AuditAction.update,
        metadata={
            "before": {"contacts": [{"name": "a", "password": "hunter2"}, "plain"]},
            "after": {"groups": [[{"mfa_secret": "s"}]]},
        },
    )
    stored = db.get(AuditLog, log.id)
    assert "hunter2" not in str(stored.audit_metadata)
    assert stored.audit_metadata["before"] == {"contacts": [{"name": "a", "password": REDACTED}, "plain"]}
    assert stored.audit_metadata["after"] == {"groups": [[{"mfa_secret": REDACTED}]]}


def test_client_info_filled_from_request_context(audit_log_service, client_info):
    log = audit_log_service.record_logout("u-1")
    assert log.audit_metadata["ip_address"] == client_info["ip_address"]
    assert log.audit_metadata["user_agent"] == client_info["user_agent"]


def test_user_agent_filled_even_when_ip_given(audit_log_service, client_info):
    log = audit_log_service.log_action(
        user_id="u-1",
        entity_type=AuditEntityType.Session,
        entity_id="u-1",
        action=AuditAction.logout,
        metadata={"ip_address": "198.51.100.9"},
    )
    assert log.audit_metadata["ip_address"] == "198.51.100.9"
    assert log.audit_metadata["user_agent"] == client_info["user_agent"]


def test_missing_request_context_is_not_an_error(db):
    service = AuditLogService(db)
    log = service.record_logout("u-1")
    assert "ip_address" not in log.audit_metadata
    assert "user_agent" not in log.audit_metadata


def test_values_serialized_to_json_types(audit_log_service):
    log = audit_log_service.record_update(
        user_id=None,
        entity_type="payment",
        entity_id="p-1",
        before={"amount": Decimal("10.50"), "due": NOW},
        after={"status": AuditAction.create},
    )
    assert log.audit_metadata["before"] == {"amount": 10.5, "due": NOW.isoformat()}
    assert log.audit_metadata["after"] == {"status": "create"}


def test_entity_type_accepts_value_or_name(audit_log_service):
    assert audit_log_service.record_delete(user_id=None, entity_type="client_contact", entity_id="c").entity_type \
        == AuditEntityType.ClientContact
    assert audit_log_service.record_delete(user_id=None, entity_type="ClientContact", entity_id="c").entity_type \
        == AuditEntityType.ClientContact


def test_unknown_entity_type_or_action_rejected(audit_log_service):
    with pytest.raises(ValueError):
        audit_log_service.log_action(user_id=None, entity_type="spaceship", entity_id="1", action="create")
    with pytest.raises(ValueError):
        audit_log_service.log_action(user_id=None, entity_type="user", entity_id="1", action="teleport")


def test_each_call_appends_a_row(db, audit_log_service):
    audit_log_service.record_logout("u-1")
    audit_log_service.record_logout("u-1")
    assert db.query(AuditLog).count() == 2


def test_rows_cannot_be_updated(db, audit_log_service):
    log = audit_log_service.record_logout("u-1")
    log.entity_id = "u-2"
    with pytest.raises(RuntimeError):
        db.flush()


def test_rows_cannot_be_deleted(db, audit_log_service):
    log = audit_log_service.record_logout("u-1")
    db.delete(log)
    with pytest.raises(RuntimeError):
        db.flush()


def test_write_failure_surfaces(db, audit_log_service, monkeypatch):
    def broken_flush(*args, **kwargs):
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "flush", broken_flush)
    with pytest.raises(AuditWriteError):
        audit_log_service.record_logout("u-1")


def test_list_logs_filters_and_pages(db, audit_log_service):
    for i in range(3):
        audit_log_service.record_failed_login(f"user{i}@antreva.test", reason="bad_password")
    audit_log_service.record_logout("u-9")

    logs, total = audit_log_service.list_logs(action="failed_login", per_page=2)
    assert total == 3
    assert len(logs) == 2

    logs, total = audit_log_service.list_logs(search="user1@")
    assert total == 1
    assert logs[0].entity_id == "user1@antreva.test"

    logs, total = audit_log_service.list_logs(start=NOW + timedelta(days=3650))
    assert total == 0

    with pytest.raises(ValueError):
        audit_log_service.list_logs(action="teleport")
