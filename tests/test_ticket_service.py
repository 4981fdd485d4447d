"""
Ticket service tests
"""

import pytest

from helpdesk.config import AuditAction, NotificationType
from helpdesk.core import ResourceNotFoundException, ValidationException
from helpdesk.triage.application import TicketService

from tests.fakes import (
    FakeAuditTrail, FakeOutcomeRepository, FakeTicketRepository, RecordingNotifier, make_ticket
)


@pytest.fixture
def tickets():
    return FakeTicketRepository()


@pytest.fixture
def audit():
    return FakeAuditTrail()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(tickets, audit, notifier):
    return TicketService(tickets, FakeOutcomeRepository(), audit, notifier)


class TestValidation:

    async def test_unknown_category_on_create(self, service, tickets):
        with pytest.raises(ValidationException) as exc_info:
            await service.create_ticket("Help", "Broken", category="gardening")

        assert exc_info.value.details["field"] == "category"
        assert tickets.tickets == {}

    async def test_unknown_status_filter(self, service):
        with pytest.raises(ValidationException):
            await service.list_tickets(status="pending")

    async def test_unknown_category_filter(self, service):
        with pytest.raises(ValidationException):
            await service.list_tickets(category="gardening")


class TestStaffActions:

    async def test_reply_backfills_missing_trace_id(self, service, tickets, audit, notifier):
        ticket = tickets.add(make_ticket(trace_id=None))

        await service.reply(ticket.id, "Looking into it")

        assert tickets.tickets[ticket.id].trace_id
        assert audit.events[-1].trace_id == tickets.tickets[ticket.id].trace_id
        assert audit.actions(ticket.id) == [AuditAction.REPLY_SENT]
        assert notifier.events[-1].type == NotificationType.REPLY_SENT

    async def test_assign_missing_ticket(self, service, audit):
        with pytest.raises(ResourceNotFoundException):
            await service.assign("missing", "agent-1")
        assert audit.events == []

    async def test_latest_outcome_missing(self, service, tickets):
        ticket = tickets.add(make_ticket())

        with pytest.raises(ResourceNotFoundException) as exc_info:
            await service.get_latest_outcome(ticket.id)
        assert exc_info.value.resource_type == "TriageOutcome"
