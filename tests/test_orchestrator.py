"""
Triage orchestrator tests

Covers step ordering, policy outcomes, single-flight and failure handling
against in-memory collaborators.
"""

import asyncio

import pytest

from helpdesk.config import AuditAction, AuditActor, NotificationType, TicketStatus
from helpdesk.core import StepTimeoutException, TriageFailedException
from helpdesk.triage.domain import CandidateDocument, TriageConfig

from tests.fakes import ScriptedProvider, make_ticket

SUCCESS_ACTIONS_AUTO_CLOSED = [
    AuditAction.TICKET_RECEIVED,
    AuditAction.AGENT_CLASSIFIED,
    AuditAction.KB_RETRIEVED,
    AuditAction.DRAFT_GENERATED,
    AuditAction.AUTO_CLOSED,
]

DOCS = [
    CandidateDocument(id="kb-1", title="How refunds work"),
    CandidateDocument(id="kb-2", title="Duplicate charges"),
]


class TestSuccessfulRun:
    """Happy-path pipeline"""

    async def test_audit_events_in_step_order(self, make_harness):
        h = make_harness(
            provider=ScriptedProvider(confidence=0.85),
            config=TriageConfig(confidence_threshold=0.8),
            documents=DOCS
        )
        ticket = h.tickets.add(make_ticket())

        await h.orchestrator.triage(ticket.id)

        assert h.audit.actions(ticket.id) == SUCCESS_ACTIONS_AUTO_CLOSED
        assert all(e.actor == AuditActor.SYSTEM for e in h.audit.events)

    async def test_single_trace_id_for_the_whole_run(self, make_harness):
        h = make_harness(documents=DOCS)
        ticket = h.tickets.add(make_ticket(trace_id="trace-abc"))

        await h.orchestrator.triage(ticket.id)

        assert {e.trace_id for e in h.audit.events} == {"trace-abc"}

    async def test_step_meta_is_recorded(self, make_harness):
        h = make_harness(
            provider=ScriptedProvider(category="billing", confidence=0.85),
            documents=DOCS
        )
        ticket = h.tickets.add(make_ticket())

        await h.orchestrator.triage(ticket.id)

        by_action = {e.action: e.meta for e in h.audit.events}
        assert by_action[AuditAction.AGENT_CLASSIFIED] == {
            "predicted_category": "billing",
            "confidence": 0.85
        }
        assert by_action[AuditAction.KB_RETRIEVED] == {"article_ids": ["kb-1", "kb-2"]}
        assert by_action[AuditAction.DRAFT_GENERATED]["cited_doc_ids"] == ["kb-1", "kb-2"]

    async def test_outcome_is_stored_and_linked(self, make_harness):
        h = make_harness(provider=ScriptedProvider(confidence=0.85), documents=DOCS)
        ticket = h.tickets.add(make_ticket())

        outcome = await h.orchestrator.triage(ticket.id)

        assert outcome is not None
        assert h.outcomes.outcomes == [outcome]
        assert h.tickets.tickets[ticket.id].outcome_id == outcome.id
        assert outcome.model_info.provider == "scripted"
        assert outcome.model_info.model == "test-model"
        assert outcome.model_info.prompt_version == "t1"
        assert outcome.model_info.latency_ms >= 0

    async def test_provider_inputs(self, make_harness):
        """Classify sees title and description, draft sees the description, search the title"""
        provider = ScriptedProvider()
        h = make_harness(provider=provider)
        ticket = h.tickets.add(make_ticket(title="Refund request", description="Charged twice"))

        await h.orchestrator.triage(ticket.id)

        assert h.knowledge.queries == ["Refund request"]
        assert provider.draft_inputs == ["Charged twice"]

    async def test_status_change_is_notified(self, make_harness):
        h = make_harness(
            provider=ScriptedProvider(confidence=0.85),
            config=TriageConfig(confidence_threshold=0.8)
        )
        ticket = h.tickets.add(make_ticket())

        await h.orchestrator.triage(ticket.id)

        assert len(h.notifier.events) == 1
        event = h.notifier.events[0]
        assert event.type == NotificationType.STATUS_CHANGED
        assert event.ticket_id == ticket.id
        assert event.payload == {"status": TicketStatus.RESOLVED}

    async def test_no_knowledge_results_is_not_an_error(self, make_harness):
        h = make_harness(documents=[])
        ticket = h.tickets.add(make_ticket())

        outcome = await h.orchestrator.triage(ticket.id)

        assert outcome.cited_doc_ids == []
        kb_event = [e for e in h.audit.events if e.action == AuditAction.KB_RETRIEVED][0]
        assert kb_event.meta == {"article_ids": []}

    async def test_knowledge_results_capped_by_limit(self, make_harness):
        docs = [CandidateDocument(id=f"kb-{i}", title=f"Doc {i}") for i in range(5)]
        h = make_harness(documents=docs, kb_limit=3)
        ticket = h.tickets.add(make_ticket())

        outcome = await h.orchestrator.triage(ticket.id)

        assert outcome.cited_doc_ids == ["kb-0", "kb-1", "kb-2"]


class TestAutoClosePolicy:
    """Policy evaluation"""

    async def test_confident_ticket_is_resolved(self, make_harness):
        h = make_harness(
            provider=ScriptedProvider(confidence=0.85),
            config=TriageConfig(auto_close_enabled=True, confidence_threshold=0.8)
        )
        ticket = h.tickets.add(make_ticket())

        outcome = await h.orchestrator.triage(ticket.id)

        assert outcome.auto_closed is True
        assert h.tickets.tickets[ticket.id].status == TicketStatus.RESOLVED
        assert h.audit.actions()[-1] == AuditAction.AUTO_CLOSED

    async def test_unsure_ticket_waits_for_staff(self, make_harness):
        h = make_harness(
            provider=ScriptedProvider(confidence=0.5),
            config=TriageConfig(auto_close_enabled=True, confidence_threshold=0.8)
        )
        ticket = h.tickets.add(make_ticket())

        outcome = await h.orchestrator.triage(ticket.id)

        assert outcome.auto_closed is False
        assert h.tickets.tickets[ticket.id].status == TicketStatus.WAITING_HUMAN
        assert h.audit.actions()[-1] == AuditAction.ASSIGNED_TO_HUMAN
        assert h.notifier.events[0].payload == {"status": TicketStatus.WAITING_HUMAN}

    async def test_threshold_is_inclusive(self, make_harness):
        h = make_harness(
            provider=ScriptedProvider(confidence=0.8),
            config=TriageConfig(confidence_threshold=0.8)
        )
        ticket = h.tickets.add(make_ticket())

        outcome = await h.orchestrator.triage(ticket.id)

        assert outcome.auto_closed is True

    async def test_disabled_auto_close_never_resolves(self, make_harness):
        h = make_harness(
            provider=ScriptedProvider(confidence=1.0),
            config=TriageConfig(auto_close_enabled=False, confidence_threshold=0.1)
        )
        ticket = h.tickets.add(make_ticket())

        outcome = await h.orchestrator.triage(ticket.id)

        assert outcome.auto_closed is False
        assert h.tickets.tickets[ticket.id].status == TicketStatus.WAITING_HUMAN

    async def test_policy_is_read_after_drafting(self, make_harness):
        config = TriageConfig(confidence_threshold=0.99)
        h = make_harness(config=config)

        def relax_policy():
            h.config.config = TriageConfig(confidence_threshold=0.8)

        h.orchestrator._provider = ScriptedProvider(confidence=0.85, on_draft=relax_policy)
        ticket = h.tickets.add(make_ticket())

        outcome = await h.orchestrator.triage(ticket.id)

        assert outcome.auto_closed is True


class TestSingleFlight:
    """At most one run per ticket"""

    async def test_overlapping_runs_produce_one_outcome(self, make_harness):
        h = make_harness(provider=ScriptedProvider(classify_delay=0.05))
        ticket = h.tickets.add(make_ticket())

        results = await asyncio.gather(
            h.orchestrator.triage(ticket.id),
            h.orchestrator.triage(ticket.id)
        )

        assert sum(1 for r in results if r is not None) == 1
        assert len(h.outcomes.outcomes) == 1
        assert h.audit.actions().count(AuditAction.TICKET_RECEIVED) == 1

    async def test_different_tickets_run_concurrently(self, make_harness):
        h = make_harness(provider=ScriptedProvider(classify_delay=0.02))
        first = h.tickets.add(make_ticket())
        second = h.tickets.add(make_ticket())

        results = await asyncio.gather(
            h.orchestrator.triage(first.id),
            h.orchestrator.triage(second.id)
        )

        assert all(r is not None for r in results)

    async def test_lock_released_after_success(self, make_harness):
        h = make_harness()
        ticket = h.tickets.add(make_ticket())

        await h.orchestrator.triage(ticket.id)

        assert not h.lock.is_held(ticket.id)

    async def test_retriage_creates_new_outcome(self, make_harness):
        h = make_harness()
        ticket = h.tickets.add(make_ticket())

        first = await h.orchestrator.triage(ticket.id)
        second = await h.orchestrator.triage(ticket.id)

        assert first.id != second.id
        assert len(h.outcomes.outcomes) == 2
        assert h.tickets.tickets[ticket.id].outcome_id == second.id


class TestFailures:
    """Timeouts, provider errors and missing tickets"""

    async def test_timeout_exhausts_retries_then_fails(self, make_harness):
        provider = ScriptedProvider(classify_delay=0.2)
        h = make_harness(provider=provider, step_timeout_ms=20, max_retries=2, backoff_ms=1)
        ticket = h.tickets.add(make_ticket())

        with pytest.raises(TriageFailedException) as exc_info:
            await h.orchestrator.triage(ticket.id)

        assert exc_info.value.step == "classify"
        assert exc_info.value.ticket_id == ticket.id
        assert isinstance(exc_info.value.__cause__, StepTimeoutException)
        assert provider.classify_calls == 3

        # let the abandoned attempts finish
        await asyncio.sleep(0.25)

    async def test_failed_run_keeps_partial_audit_and_status(self, make_harness):
        provider = ScriptedProvider(classify_error=RuntimeError("provider down"))
        h = make_harness(provider=provider, max_retries=1)
        ticket = h.tickets.add(make_ticket())

        with pytest.raises(TriageFailedException):
            await h.orchestrator.triage(ticket.id)

        assert h.audit.actions() == [AuditAction.TICKET_RECEIVED]
        assert h.tickets.tickets[ticket.id].status == TicketStatus.OPEN
        assert h.outcomes.outcomes == []
        assert h.notifier.events == []
        assert provider.classify_calls == 2

    async def test_lock_released_after_failure(self, make_harness):
        provider = ScriptedProvider(classify_error=RuntimeError("provider down"))
        h = make_harness(provider=provider, max_retries=0)
        ticket = h.tickets.add(make_ticket())

        with pytest.raises(TriageFailedException):
            await h.orchestrator.triage(ticket.id)

        assert not h.lock.is_held(ticket.id)
        provider.classify_error = None
        assert await h.orchestrator.triage(ticket.id) is not None

    async def test_missing_ticket_is_a_silent_abort(self, make_harness):
        h = make_harness()

        result = await h.orchestrator.triage("does-not-exist")

        assert result is None
        assert h.audit.events == []
        assert h.notifier.events == []
        assert not h.lock.is_held("does-not-exist")


class TestLegacyTickets:
    """Tickets created before trace IDs existed"""

    async def test_trace_id_is_backfilled_once(self, make_harness):
        h = make_harness(trace_id_factory=lambda: "backfilled-trace")
        ticket = h.tickets.add(make_ticket(trace_id=None))

        await h.orchestrator.triage(ticket.id)

        assert h.tickets.tickets[ticket.id].trace_id == "backfilled-trace"
        assert {e.trace_id for e in h.audit.events} == {"backfilled-trace"}

    async def test_existing_trace_id_is_kept(self, make_harness):
        h = make_harness(trace_id_factory=lambda: "unused")
        ticket = h.tickets.add(make_ticket(trace_id="original"))

        await h.orchestrator.triage(ticket.id)

        assert h.tickets.tickets[ticket.id].trace_id == "original"
