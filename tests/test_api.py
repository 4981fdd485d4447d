"""
HTTP API tests

Runs the FastAPI app through httpx.ASGITransport with services backed by
in-memory SQLite. The lifespan is not run; services are placed in
``app.state`` by the fixture and background triage is recorded, not run.
"""

from types import SimpleNamespace
from typing import List

import httpx
import pytest

from helpdesk.config import AuditAction, AuditActor, TicketStatus
from helpdesk.main import app
from helpdesk.triage.application import TicketService, TriageOrchestrator
from helpdesk.triage.infrastructure import (
    InMemoryNotificationBroadcaster,
    InMemoryTriageLock,
    SQLAlchemyAuditTrailWriter,
    SQLAlchemyKnowledgeLookup,
    SQLAlchemyTicketRepository,
    SQLAlchemyTriageOutcomeRepository,
    StubTriageProvider,
    TriageConfigManager,
)

from tests.fakes import ScriptedProvider

STATE_KEYS = ("ticket_service", "orchestrator", "dispatcher", "broadcaster", "provider")

CHARGED_TWICE = {
    "title": "Help needed",
    "description": "I was charged twice for the same item"
}


class RecordingDispatcher:
    is_running = True

    def __init__(self):
        self.submitted: List[str] = []

    def submit(self, ticket_id: str, attempt: int = 1, delay_seconds: float = 0.0) -> str:
        self.submitted.append(ticket_id)
        return f"triage:{ticket_id}:{attempt}"


@pytest.fixture
async def api(session_factory):
    tickets = SQLAlchemyTicketRepository(session_factory)
    outcomes = SQLAlchemyTriageOutcomeRepository(session_factory)
    audit = SQLAlchemyAuditTrailWriter(session_factory)
    broadcaster = InMemoryNotificationBroadcaster()
    dispatcher = RecordingDispatcher()

    def build_orchestrator(provider, **kwargs):
        return TriageOrchestrator(
            tickets=tickets,
            outcomes=outcomes,
            audit=audit,
            knowledge=SQLAlchemyKnowledgeLookup(session_factory),
            provider=provider,
            notifier=broadcaster,
            config_provider=TriageConfigManager(),
            lock=InMemoryTriageLock(),
            **kwargs
        )

    app.state.ticket_service = TicketService(tickets, outcomes, audit, broadcaster)
    app.state.orchestrator = build_orchestrator(StubTriageProvider())
    app.state.dispatcher = dispatcher
    app.state.broadcaster = broadcaster
    app.state.provider = StubTriageProvider()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield SimpleNamespace(
            client=client,
            dispatcher=dispatcher,
            broadcaster=broadcaster,
            build_orchestrator=build_orchestrator
        )

    for key in STATE_KEYS:
        setattr(app.state, key, None)


async def create_ticket(client, payload=None) -> dict:
    response = await client.post("/tickets", json=payload or CHARGED_TWICE)
    assert response.status_code == 201
    return response.json()


class TestTickets:

    async def test_create_ticket(self, api):
        response = await api.client.post("/tickets", json=CHARGED_TWICE)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == TicketStatus.OPEN
        assert body["category"] == "other"
        assert body["trace_id"]
        assert api.dispatcher.submitted == [body["id"]]
        assert "X-Correlation-ID" in response.headers

    async def test_create_records_audit_and_notifies(self, api):
        queue = api.broadcaster.subscribe()

        ticket = await create_ticket(api.client)

        audit = (await api.client.get(f"/tickets/{ticket['id']}/audit")).json()
        assert [(e["action"], e["actor"]) for e in audit] == [
            (AuditAction.TICKET_CREATED, AuditActor.USER)
        ]
        assert audit[0]["trace_id"] == ticket["trace_id"]
        assert queue.get_nowait()["type"] == "TICKET_CREATED"

    async def test_invalid_payload(self, api):
        response = await api.client.post("/tickets", json={"title": "", "description": "x"})
        assert response.status_code == 422

    async def test_get_missing_ticket(self, api):
        response = await api.client.get("/tickets/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404
        assert response.json()["resource_type"] == "Ticket"

    async def test_list_with_filters(self, api):
        billing = await create_ticket(api.client, {**CHARGED_TWICE, "category": "billing"})
        await create_ticket(api.client, {**CHARGED_TWICE, "category": "tech"})

        response = await api.client.get("/tickets", params={"category": "billing"})

        assert response.status_code == 200
        assert [t["id"] for t in response.json()] == [billing["id"]]
        assert len((await api.client.get("/tickets", params={"status": "open"})).json()) == 2

    async def test_reply(self, api):
        ticket = await create_ticket(api.client)

        response = await api.client.post(
            f"/tickets/{ticket['id']}/reply", json={"message": "We refunded you."}
        )

        assert response.status_code == 204
        audit = (await api.client.get(f"/tickets/{ticket['id']}/audit")).json()
        assert audit[-1]["action"] == AuditAction.REPLY_SENT
        assert audit[-1]["actor"] == AuditActor.AGENT
        assert audit[-1]["meta"] == {"message": "We refunded you."}

    async def test_assign(self, api):
        ticket = await create_ticket(api.client)

        response = await api.client.post(
            f"/tickets/{ticket['id']}/assign", json={"assignee_id": "agent-7"}
        )

        assert response.status_code == 200
        assert response.json()["assignee"] == "agent-7"
        audit = (await api.client.get(f"/tickets/{ticket['id']}/audit")).json()
        assert audit[-1]["action"] == AuditAction.ASSIGNED_TO_HUMAN
        assert audit[-1]["actor"] == AuditActor.AGENT

    async def test_reply_to_missing_ticket(self, api):
        response = await api.client.post(
            "/tickets/00000000-0000-0000-0000-000000000000/reply", json={"message": "hi"}
        )
        assert response.status_code == 404


class TestAgent:

    async def test_triage_charged_twice_waits_for_staff(self, api):
        ticket = await create_ticket(api.client)

        response = await api.client.post("/agent/triage", json={"ticket_id": ticket["id"]})

        assert response.status_code == 202
        body = response.json()
        assert body["ok"] is True
        assert body["ticket_id"] == ticket["id"]
        assert body["outcome_id"]

        suggestion = (await api.client.get(f"/agent/suggestion/{ticket['id']}")).json()
        assert suggestion["id"] == body["outcome_id"]
        assert suggestion["predicted_category"] == "billing"
        assert suggestion["confidence"] == pytest.approx(0.2)
        assert suggestion["cited_doc_ids"] == []
        assert suggestion["auto_closed"] is False
        assert suggestion["model_info"]["provider"] == "stub"

        updated = (await api.client.get(f"/tickets/{ticket['id']}")).json()
        assert updated["status"] == TicketStatus.WAITING_HUMAN
        assert updated["outcome_id"] == body["outcome_id"]

        audit = (await api.client.get(f"/tickets/{ticket['id']}/audit")).json()
        assert [e["action"] for e in audit] == [
            AuditAction.TICKET_CREATED,
            AuditAction.TICKET_RECEIVED,
            AuditAction.AGENT_CLASSIFIED,
            AuditAction.KB_RETRIEVED,
            AuditAction.DRAFT_GENERATED,
            AuditAction.ASSIGNED_TO_HUMAN,
        ]
        assert {e["trace_id"] for e in audit} == {ticket["trace_id"]}

    async def test_triage_unknown_ticket_is_accepted(self, api):
        response = await api.client.post(
            "/agent/triage", json={"ticket_id": "00000000-0000-0000-0000-000000000000"}
        )

        assert response.status_code == 202
        assert response.json()["outcome_id"] is None

    async def test_triage_failure_is_bad_gateway(self, api):
        app.state.orchestrator = api.build_orchestrator(
            ScriptedProvider(classify_error=RuntimeError("provider down")),
            max_retries=0
        )
        ticket = await create_ticket(api.client)

        response = await api.client.post("/agent/triage", json={"ticket_id": ticket["id"]})

        assert response.status_code == 502
        assert response.json()["step"] == "classify"
        unchanged = (await api.client.get(f"/tickets/{ticket['id']}")).json()
        assert unchanged["status"] == TicketStatus.OPEN

    async def test_suggestion_missing(self, api):
        ticket = await create_ticket(api.client)

        response = await api.client.get(f"/agent/suggestion/{ticket['id']}")

        assert response.status_code == 404
        assert response.json()["resource_type"] == "TriageOutcome"


class TestServiceAvailability:

    async def test_missing_service_is_unavailable(self, api):
        app.state.ticket_service = None

        response = await api.client.get("/tickets")

        assert response.status_code == 503

    async def test_health(self, api):
        response = await api.client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["provider"] == "stub"
        assert body["checks"]["dispatcher"] == "running"

    async def test_root(self, api):
        response = await api.client.get("/")

        assert response.status_code == 200
        assert "tickets" in response.json()["modules"]
