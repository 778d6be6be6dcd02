"""
Tests for the repair ticket workflow.

Covers create, partial update, accept/reject, cancel and the rule that
ledger entries and LINE delivery never undo a committed change.
"""

import re

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import sessionmaker

from repairdesk.core.config import settings
from repairdesk.core.status_rules import InvalidStatusTransitionError
from repairdesk.db.base import Base
from repairdesk.db.enums import (
    AssignmentAction,
    AttachmentKind,
    LineNotificationStatus,
    LineNotificationType,
    ProblemCategory,
    RepairTicketStatus,
    Role,
    UrgencyLevel,
)
from repairdesk.db.models import (
    LineNotification,
    RepairAttachment,
    RepairTicket,
    RepairTicketAssignee,
    User,
)
from repairdesk.schemas.repairs import RepairTicketCreateCommand, RepairTicketUpdateCommand
from repairdesk.services import assignment_ledger, repair_service
from repairdesk.services.repair_errors import (
    AttachmentValidationError,
    InvalidAssigneeError,
    TicketCodeGenerationError,
    UnknownReporterError,
)
from repairdesk.services.repair_service import IncomingFile
from repairdesk.services.storage_service import BlobStorage

PNG = IncomingFile("broken.png", "image/png", b"\x89PNG fake")


class FakeS3:
    def __init__(self, fail_on: set[str] | None = None):
        self.objects: dict[str, bytes] = {}
        self.fail_on = fail_on or set()

    def put_object(self, *, Bucket, Key, Body, ContentType):
        if any(name in Key for name in self.fail_on):
            raise RuntimeError("bucket unavailable")
        self.objects[Key] = Body

    def delete_object(self, *, Bucket, Key):
        self.objects.pop(Key, None)


@pytest.fixture
def storage(monkeypatch):
    monkeypatch.setattr(settings, "S3_PUBLIC_BASE_URL", "https://cdn.test")
    return BlobStorage(client=FakeS3(), bucket="repairs-test")


def _command(**overrides) -> RepairTicketCreateCommand:
    data = dict(
        reporter_name="Somchai",
        reporter_department="Finance",
        problem_title="Monitor flickers",
        problem_description="Second screen flickers",
        location="Building A",
    )
    data.update(overrides)
    return RepairTicketCreateCommand(**data)


def _logs(db) -> list[LineNotification]:
    return list(db.execute(select(LineNotification).order_by(LineNotification.id)).scalars())


def _actions(db, ticket_id) -> list[AssignmentAction]:
    return [entry.action for entry in assignment_ledger.list_history(db, ticket_id)]


# =============================================================================
# Create
# =============================================================================


class TestCreateTicket:
    @pytest.mark.asyncio
    async def test_critical_ticket_from_line_reporter(
        self, db, make_user, link_line, line_api, line_client
    ):
        link_line(make_user(Role.IT), "U-staff")

        ticket = await repair_service.create_ticket(
            db, line_client, _command(urgency="CRITICAL"), line_user_id="U-reporter"
        )

        assert re.match(r"^TRR-\d{8}\d{3}$", ticket.ticket_code)
        assert ticket.status == RepairTicketStatus.PENDING
        assert ticket.urgency == UrgencyLevel.CRITICAL
        assert ticket.linking_code is None
        assert ticket.reporter_line_user_id == "U-reporter"

        assert len(line_api.sends("multicast")) == 1
        pushes = line_api.sends("push")
        assert len(pushes) == 1
        assert pushes[0]["json"]["to"] == "U-reporter"

        logs = _logs(db)
        assert {(log.line_user_id, log.type) for log in logs} == {
            ("U-staff", LineNotificationType.REPAIR_TICKET_CREATED),
            ("U-reporter", LineNotificationType.REPAIR_REPORTER_UPDATE),
        }
        assert all(log.status == LineNotificationStatus.SENT for log in logs)

    @pytest.mark.asyncio
    async def test_guest_ticket_gets_linking_code(self, db, line_api, line_client):
        ticket = await repair_service.create_ticket(db, line_client, _command())

        assert ticket.linking_code.startswith(f"{ticket.ticket_code}-")
        assert re.match(r"^[A-Z0-9]{4}$", ticket.linking_code.rsplit("-", 1)[1])
        assert line_api.calls == []

    @pytest.mark.asyncio
    async def test_defaults_for_unknown_category_and_urgency(self, db, line_client):
        ticket = await repair_service.create_ticket(
            db, line_client, _command(problem_category="TOASTER", urgency="whenever")
        )

        assert ticket.problem_category == ProblemCategory.OTHER
        assert ticket.urgency == UrgencyLevel.NORMAL

    @pytest.mark.asyncio
    async def test_codes_increase(self, db, line_client):
        first = await repair_service.create_ticket(db, line_client, _command())
        second = await repair_service.create_ticket(db, line_client, _command())

        assert int(second.ticket_code[-3:]) == int(first.ticket_code[-3:]) + 1

    @pytest.mark.asyncio
    async def test_code_collision_takes_the_next_code(
        self, db, reporter, make_ticket, line_client, monkeypatch
    ):
        make_ticket(ticket_code="TRR-01012569050")
        codes = iter(["TRR-01012569050", "TRR-01012569051"])
        monkeypatch.setattr(repair_service, "generate_ticket_code", lambda session: next(codes))

        ticket = await repair_service.create_ticket(
            db, line_client, _command(user_id=reporter.id)
        )

        assert ticket.ticket_code == "TRR-01012569051"
        assert ticket.user_id == reporter.id

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_collisions(
        self, db, make_ticket, line_api, line_client, monkeypatch
    ):
        make_ticket(ticket_code="TRR-01012569050")
        monkeypatch.setattr(
            repair_service, "generate_ticket_code", lambda session: "TRR-01012569050"
        )

        with pytest.raises(TicketCodeGenerationError):
            await repair_service.create_ticket(db, line_client, _command())

        assert db.execute(select(func.count()).select_from(RepairTicket)).scalar_one() == 1
        assert line_api.calls == []

    @pytest.mark.asyncio
    async def test_unknown_reporter_account_is_rejected(self, db, line_api, line_client):
        with pytest.raises(UnknownReporterError) as exc:
            await repair_service.create_ticket(db, line_client, _command(user_id=987654))

        assert "987654" in str(exc.value)
        assert db.execute(select(func.count()).select_from(RepairTicket)).scalar_one() == 0
        assert line_api.calls == []

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_fail_create(
        self, db, make_user, link_line, line_api, line_client
    ):
        link_line(make_user(Role.IT), "U-staff")
        line_api.fail_always = True

        ticket = await repair_service.create_ticket(db, line_client, _command(), line_user_id="U-r")

        assert ticket.id is not None
        assert {log.status for log in _logs(db)} == {LineNotificationStatus.FAILED}

    @pytest.mark.asyncio
    async def test_rejects_non_image_before_saving(self, db, line_client, storage):
        bad = IncomingFile("notes.pdf", "application/pdf", b"%PDF")

        with pytest.raises(AttachmentValidationError):
            await repair_service.create_ticket(db, line_client, _command(), files=[bad], storage=storage)

        items, total = repair_service.list_tickets(db)
        assert total == 0

    @pytest.mark.asyncio
    async def test_attachments_uploaded(self, db, line_client, storage):
        ticket = await repair_service.create_ticket(
            db, line_client, _command(), files=[PNG], storage=storage
        )

        assert len(ticket.attachments) == 1
        attachment = ticket.attachments[0]
        assert attachment.kind == AttachmentKind.PROBLEM
        assert attachment.file_url.startswith(f"https://cdn.test/repairs/{ticket.ticket_code}/")
        assert attachment.storage_key in storage.client.objects

    @pytest.mark.asyncio
    async def test_upload_failure_skips_file(self, db, line_client, monkeypatch):
        monkeypatch.setattr(settings, "S3_PUBLIC_BASE_URL", "https://cdn.test")
        storage = BlobStorage(client=FakeS3(fail_on={"broken"}), bucket="repairs-test")
        good = IncomingFile("good.jpg", "image/jpeg", b"\xff\xd8")

        ticket = await repair_service.create_ticket(
            db, line_client, _command(), files=[PNG, good], storage=storage
        )

        assert [a.filename for a in ticket.attachments] == ["good.jpg"]


# =============================================================================
# Update
# =============================================================================


class TestUpdateTicket:
    @pytest.mark.asyncio
    async def test_assign_records_ledger_and_notifies(
        self, db, admin, technician, reporter, link_line, make_ticket, line_api, line_client
    ):
        link_line(technician, "U-tech")
        link_line(reporter, "U-reporter")
        ticket = make_ticket(user_id=reporter.id)

        updated = await repair_service.update_ticket(
            db,
            line_client,
            ticket.id,
            RepairTicketUpdateCommand(status="ASSIGNED", assignee_ids=[technician.id]),
            actor_id=admin.id,
        )

        assert updated.status == RepairTicketStatus.ASSIGNED
        assert updated.assignee_ids == [technician.id]
        assert sorted(_actions(db, ticket.id)) == sorted(
            [AssignmentAction.ASSIGN, AssignmentAction.STATUS_CHANGE]
        )
        recipients = [call["json"]["to"] for call in line_api.sends("push")]
        assert recipients == ["U-tech", "U-reporter"]
        tech_card = line_api.sends("push")[0]["json"]["messages"][0]
        assert tech_card["altText"].startswith("New job assigned to you")

    @pytest.mark.asyncio
    async def test_accept(self, db, technician, make_ticket, line_client):
        ticket = make_ticket(status=RepairTicketStatus.ASSIGNED, assignee_ids=[technician.id])

        await repair_service.update_ticket(
            db, line_client, ticket.id, RepairTicketUpdateCommand(status="IN_PROGRESS"), actor_id=technician.id
        )

        [entry] = assignment_ledger.list_history(db, ticket.id)
        assert entry.action == AssignmentAction.ACCEPT
        assert entry.assignee_id == technician.id
        assert (entry.from_status, entry.to_status) == ("ASSIGNED", "IN_PROGRESS")

    @pytest.mark.asyncio
    async def test_reject(self, db, technician, make_ticket, line_client):
        ticket = make_ticket(status=RepairTicketStatus.ASSIGNED, assignee_ids=[technician.id])

        updated = await repair_service.update_ticket(
            db, line_client, ticket.id, RepairTicketUpdateCommand(status="PENDING"), actor_id=technician.id
        )

        assert updated.status == RepairTicketStatus.PENDING
        assert _actions(db, ticket.id) == [AssignmentAction.REJECT]

    @pytest.mark.asyncio
    async def test_invalid_transition_changes_nothing(
        self, db, admin, technician, reporter, link_line, make_ticket, line_api, line_client
    ):
        link_line(reporter, "U-reporter")
        ticket = make_ticket(status=RepairTicketStatus.COMPLETED, user_id=reporter.id, location="Lab 1")

        with pytest.raises(InvalidStatusTransitionError):
            await repair_service.update_ticket(
                db,
                line_client,
                ticket.id,
                RepairTicketUpdateCommand(
                    status="IN_PROGRESS", location="Lab 2", assignee_ids=[technician.id]
                ),
                actor_id=admin.id,
            )

        db.expire_all()
        reloaded = repair_service.get_ticket(db, ticket.id)
        assert reloaded.status == RepairTicketStatus.COMPLETED
        assert reloaded.location == "Lab 1"
        assert reloaded.assignee_ids == []
        assert assignment_ledger.list_history(db, ticket.id) == []
        assert line_api.calls == []

    @pytest.mark.asyncio
    async def test_unknown_assignee(self, db, admin, make_ticket, line_api, line_client):
        ticket = make_ticket(location="Lab 1")

        with pytest.raises(InvalidAssigneeError) as exc:
            await repair_service.update_ticket(
                db,
                line_client,
                ticket.id,
                RepairTicketUpdateCommand(assignee_ids=[999999], location="Lab 9"),
                actor_id=admin.id,
            )

        assert exc.value.missing_ids == [999999]
        db.expire_all()
        assert repair_service.get_ticket(db, ticket.id).location == "Lab 1"
        assert line_api.calls == []

    @pytest.mark.asyncio
    async def test_same_status_allows_field_updates(self, db, admin, make_ticket, line_api, line_client):
        ticket = make_ticket(status=RepairTicketStatus.COMPLETED)

        updated = await repair_service.update_ticket(
            db,
            line_client,
            ticket.id,
            RepairTicketUpdateCommand(status="COMPLETED", location="Warehouse"),
            actor_id=admin.id,
        )

        assert updated.location == "Warehouse"
        assert assignment_ledger.list_history(db, ticket.id) == []
        assert line_api.calls == []

    @pytest.mark.asyncio
    async def test_unsent_fields_are_kept(self, db, admin, make_ticket, line_client):
        ticket = make_ticket(location="Lab 1", problem_description="Old details")

        updated = await repair_service.update_ticket(
            db, line_client, ticket.id, RepairTicketUpdateCommand(location=None), actor_id=admin.id
        )

        assert updated.location is None
        assert updated.problem_description == "Old details"

    @pytest.mark.asyncio
    async def test_reassignment_delta_and_transfer_notice(
        self, db, admin, make_user, link_line, make_ticket, line_api, line_client
    ):
        one, two, three = (make_user(Role.IT) for _ in range(3))
        link_line(three, "U-three")
        ticket = make_ticket(status=RepairTicketStatus.ASSIGNED, assignee_ids=[one.id, two.id])

        updated = await repair_service.update_ticket(
            db,
            line_client,
            ticket.id,
            RepairTicketUpdateCommand(assignee_ids=[two.id, three.id]),
            actor_id=admin.id,
        )

        assert sorted(updated.assignee_ids) == sorted([two.id, three.id])
        history = assignment_ledger.list_history(db, ticket.id)
        assert sorted((e.action, e.assignee_id) for e in history) == sorted(
            [(AssignmentAction.ASSIGN, three.id), (AssignmentAction.UNASSIGN, one.id)]
        )
        [push] = line_api.sends("push")
        assert push["json"]["to"] == "U-three"
        assert push["json"]["messages"][0]["altText"].startswith("A job was transferred to you")

    @pytest.mark.asyncio
    async def test_self_assignment_is_a_claim(self, db, technician, link_line, make_ticket, line_api, line_client):
        link_line(technician, "U-tech")
        ticket = make_ticket()

        await repair_service.update_ticket(
            db,
            line_client,
            ticket.id,
            RepairTicketUpdateCommand(assignee_ids=[technician.id]),
            actor_id=technician.id,
        )

        card = line_api.sends("push")[0]["json"]["messages"][0]
        assert card["altText"].startswith("You picked up a repair job")

    @pytest.mark.asyncio
    async def test_completion_notifies_assignees_and_reporter(
        self, db, technician, link_line, make_ticket, line_api, line_client
    ):
        link_line(technician, "U-tech")
        ticket = make_ticket(
            status=RepairTicketStatus.IN_PROGRESS,
            assignee_ids=[technician.id],
            reporter_line_user_id="U-guest",
        )

        updated = await repair_service.update_ticket(
            db,
            line_client,
            ticket.id,
            RepairTicketUpdateCommand(status="COMPLETED", notes="Replaced cable"),
            actor_id=technician.id,
        )

        assert updated.completed_at is not None
        assert [call["json"]["to"] for call in line_api.sends("push")] == ["U-tech", "U-guest"]
        types = [log.type for log in _logs(db)]
        assert types == [
            LineNotificationType.REPAIR_TICKET_COMPLETED,
            LineNotificationType.REPAIR_REPORTER_UPDATE,
        ]
        assert AssignmentAction.NOTE in _actions(db, ticket.id)

    @pytest.mark.asyncio
    async def test_message_to_reporter_is_recorded(self, db, admin, make_ticket, line_client):
        ticket = make_ticket()

        await repair_service.update_ticket(
            db,
            line_client,
            ticket.id,
            RepairTicketUpdateCommand(message_to_reporter="Technician arrives at 2pm"),
            actor_id=admin.id,
        )

        [entry] = assignment_ledger.list_history(db, ticket.id)
        assert entry.action == AssignmentAction.MESSAGE_TO_REPORTER
        assert entry.note == "Technician arrives at 2pm"


class TestCancelTicket:
    @pytest.mark.asyncio
    async def test_cancel_with_reason(self, db, technician, link_line, make_ticket, line_api, line_client):
        link_line(technician, "U-tech")
        ticket = make_ticket(status=RepairTicketStatus.ASSIGNED, assignee_ids=[technician.id])

        cancelled = await repair_service.cancel_ticket(
            db, line_client, ticket.id, actor_id=None, reason="Duplicate request"
        )

        assert cancelled.status == RepairTicketStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert cancelled.notes == "Duplicate request"
        card = line_api.sends("push")[0]["json"]["messages"][0]
        assert card["altText"] == f"Repair {ticket.ticket_code} cancelled"

    @pytest.mark.asyncio
    async def test_cannot_cancel_completed(self, db, make_ticket, line_client):
        ticket = make_ticket(status=RepairTicketStatus.COMPLETED)

        with pytest.raises(InvalidStatusTransitionError):
            await repair_service.cancel_ticket(db, line_client, ticket.id, actor_id=None)


# =============================================================================
# Reads / misc
# =============================================================================


class TestReads:
    def test_list_filters_and_total(self, db, technician, make_ticket):
        make_ticket(urgency=UrgencyLevel.URGENT)
        make_ticket(status=RepairTicketStatus.ASSIGNED, assignee_ids=[technician.id])
        make_ticket()

        _, total = repair_service.list_tickets(db)
        urgent, urgent_total = repair_service.list_tickets(db, urgency=UrgencyLevel.URGENT)
        mine, mine_total = repair_service.list_tickets(db, assignee_id=technician.id)
        page, _ = repair_service.list_tickets(db, limit=2)

        assert total == 3
        assert urgent_total == 1 and urgent[0].urgency == UrgencyLevel.URGENT
        assert mine_total == 1 and mine[0].assignee_ids == [technician.id]
        assert len(page) == 2

    def test_statistics(self, db, make_ticket):
        make_ticket(urgency=UrgencyLevel.CRITICAL)
        make_ticket(status=RepairTicketStatus.COMPLETED)

        stats = repair_service.get_statistics(db)

        assert stats["total"] == 2
        assert stats["by_status"]["PENDING"] == 1
        assert stats["by_status"]["COMPLETED"] == 1
        assert stats["by_status"]["WAITING_PARTS"] == 0
        assert stats["by_urgency"]["CRITICAL"] == 1

    def test_get_by_code_is_case_insensitive(self, db, make_ticket):
        ticket = make_ticket()
        assert repair_service.get_ticket_by_code(db, ticket.ticket_code.lower()).id == ticket.id

    @pytest.mark.asyncio
    async def test_completion_attachments(self, db, make_ticket, storage):
        ticket = make_ticket(status=RepairTicketStatus.IN_PROGRESS)

        attachments = await repair_service.add_completion_attachments(
            db, ticket.id, [PNG], storage=storage
        )

        assert [a.kind for a in attachments] == [AttachmentKind.COMPLETION]
        stored = db.execute(select(RepairAttachment)).scalars().all()
        assert len(stored) == 1

    @pytest.mark.asyncio
    async def test_rush_failure_is_reported_not_raised(
        self, db, technician, link_line, make_ticket, line_api, line_client
    ):
        link_line(technician, "U-tech")
        ticket = make_ticket(assignee_ids=[technician.id])
        line_api.fail_always = True

        result = await repair_service.rush_ticket(db, line_client, ticket.id)

        assert not result.success
        assert result.reason == "delivery_failed"


# =============================================================================
# Assignee replacement
# =============================================================================


def test_assignee_swap_is_never_seen_half_done(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'assignees.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False)

    with Session() as setup:
        old_tech = User(email="old@test.com", name="Old Tech", role=Role.IT)
        new_tech = User(email="new@test.com", name="New Tech", role=Role.IT)
        ticket = RepairTicket(
            ticket_code="TRR-01012569001",
            status=RepairTicketStatus.ASSIGNED,
            urgency=UrgencyLevel.NORMAL,
            reporter_name="Somchai",
            problem_category=ProblemCategory.OTHER,
            problem_title="Monitor flickers",
        )
        setup.add_all([old_tech, new_tech, ticket])
        setup.flush()
        setup.add(RepairTicketAssignee(repair_ticket_id=ticket.id, user_id=old_tech.id))
        setup.commit()
        ticket_id, old_id, new_id = ticket.id, old_tech.id, new_tech.id

    def visible_assignees() -> list[int]:
        with Session() as reader:
            return list(
                reader.execute(
                    select(RepairTicketAssignee.user_id).where(
                        RepairTicketAssignee.repair_ticket_id == ticket_id
                    )
                ).scalars()
            )

    writer = Session()
    try:
        repair_service._replace_assignees(writer, writer.get(RepairTicket, ticket_id), [new_id])

        # Delete and insert are flushed but not committed
        assert visible_assignees() == [old_id]

        writer.commit()
    finally:
        writer.close()

    assert visible_assignees() == [new_id]
    engine.dispose()
