"""Tests for the retention purge (service, admin endpoint and CLI)."""

from datetime import datetime, timezone

import pytest
from click.testing import CliRunner
from sqlalchemy import func, select

from repairdesk import cli as cli_module
from repairdesk.db.enums import (
    AssignmentAction,
    AttachmentKind,
    LineNotificationStatus,
    LineNotificationType,
    RepairTicketStatus,
)
from repairdesk.db.models import (
    LineNotification,
    RepairAssignmentHistory,
    RepairAttachment,
    RepairTicket,
    RepairTicketAssignee,
)
from repairdesk.services.data_purge_service import purge_closed_tickets

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)
OLD = datetime(2024, 1, 1)


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


@pytest.fixture
def aged_tickets(db, technician, make_ticket):
    old_closed = make_ticket(
        status=RepairTicketStatus.COMPLETED, updated_at=OLD, assignee_ids=[technician.id]
    )
    db.add(
        RepairAssignmentHistory(
            repair_ticket_id=old_closed.id, action=AssignmentAction.NOTE, note="done"
        )
    )
    make_ticket(status=RepairTicketStatus.CANCELLED, updated_at=OLD)
    make_ticket(status=RepairTicketStatus.IN_PROGRESS, updated_at=OLD)
    make_ticket(status=RepairTicketStatus.COMPLETED)
    db.add(
        LineNotification(
            line_user_id="U1",
            type=LineNotificationType.REPAIR_STATUS_UPDATE,
            title="old",
            message="m",
            status=LineNotificationStatus.SENT,
            created_at=OLD,
        )
    )
    db.commit()


def test_dry_run_changes_nothing(db, aged_tickets):
    result = purge_closed_tickets(db, older_than_days=365, dry_run=True, now=NOW)

    assert (result.tickets_deleted, result.notifications_deleted, result.dry_run) == (2, 1, True)
    assert _count(db, RepairTicket) == 4


def test_purge_removes_closed_tickets_and_children(db, aged_tickets):
    result = purge_closed_tickets(db, older_than_days=365, now=NOW)

    assert result.tickets_deleted == 2
    assert result.notifications_deleted == 1
    remaining = db.execute(select(RepairTicket.status)).scalars().all()
    assert sorted(remaining) == sorted([RepairTicketStatus.IN_PROGRESS, RepairTicketStatus.COMPLETED])
    assert _count(db, RepairTicketAssignee) == 0
    assert _count(db, RepairAssignmentHistory) == 0
    assert _count(db, LineNotification) == 0


def test_keep_notifications(db, aged_tickets):
    result = purge_closed_tickets(db, older_than_days=365, include_notifications=False, now=NOW)

    assert result.notifications_deleted == 0
    assert _count(db, LineNotification) == 1


def test_negative_age_is_rejected(db):
    with pytest.raises(ValueError):
        purge_closed_tickets(db, older_than_days=-1)


@pytest.mark.asyncio
async def test_purge_endpoint_is_admin_only(client, technician, admin, headers_for, aged_tickets):
    denied = await client.post(
        "/data-management/purge", json={"dry_run": True}, headers=headers_for(technician)
    )
    allowed = await client.post(
        "/data-management/purge",
        json={"older_than_days": 365, "dry_run": True},
        headers=headers_for(admin),
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json() == {"tickets_deleted": 2, "notifications_deleted": 1, "dry_run": True}


def test_cli_dry_run():
    runner = CliRunner()
    result = runner.invoke(cli_module.cli, ["purge-tickets", "--older-than-days", "30", "--dry-run"])

    assert result.exit_code == 0
    assert "Would delete 0 ticket(s)" in result.output


def test_cli_check_line(monkeypatch, line_client):
    monkeypatch.setattr(cli_module, "build_line_client", lambda: line_client)

    result = CliRunner().invoke(cli_module.cli, ["check-line"])

    assert result.exit_code == 0
    assert "Repair Desk (@repair)" in result.output


class RecordingStorage:
    def __init__(self, fail: bool = False):
        self.deleted: list[str] = []
        self.fail = fail

    def delete_file(self, key: str) -> None:
        if self.fail:
            raise RuntimeError("bucket unavailable")
        self.deleted.append(key)


def _attach(db, ticket, key):
    db.add(
        RepairAttachment(
            repair_ticket_id=ticket.id,
            kind=AttachmentKind.PROBLEM,
            filename="photo.jpg",
            file_url=f"https://cdn.test/{key}",
            storage_key=key,
            file_size=10,
            mime_type="image/jpeg",
        )
    )
    db.commit()


def test_purge_deletes_stored_files(db, make_ticket):
    old = make_ticket(status=RepairTicketStatus.CANCELLED, updated_at=OLD)
    kept = make_ticket(status=RepairTicketStatus.PENDING, updated_at=OLD)
    _attach(db, old, "repairs/old/photo.jpg")
    _attach(db, kept, "repairs/kept/photo.jpg")
    storage = RecordingStorage()

    purge_closed_tickets(db, older_than_days=30, now=NOW, storage=storage)

    assert storage.deleted == ["repairs/old/photo.jpg"]
    assert _count(db, RepairAttachment) == 1


def test_blob_failure_does_not_stop_purge(db, make_ticket):
    old = make_ticket(status=RepairTicketStatus.COMPLETED, updated_at=OLD)
    _attach(db, old, "repairs/old/photo.jpg")

    result = purge_closed_tickets(db, older_than_days=30, now=NOW, storage=RecordingStorage(fail=True))

    assert result.tickets_deleted == 1
    assert _count(db, RepairTicket) == 0
