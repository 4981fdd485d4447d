"""
pytest configuration and shared fixtures
"""

from dataclasses import dataclass
from typing import Optional

import pytest

from helpdesk.infrastructure.database import build_engine, build_session_maker, create_tables
from helpdesk.triage.application import TriageOrchestrator, TicketService
from helpdesk.triage.domain import TriageConfig
from helpdesk.triage.infrastructure import InMemoryTriageLock, StubTriageProvider

from tests.fakes import (
    FakeTicketRepository, FakeOutcomeRepository, FakeAuditTrail, FakeKnowledge,
    RecordingNotifier, StaticConfigProvider
)


@pytest.fixture
async def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    yield build_session_maker(engine)
    await engine.dispose()


@dataclass
class TriageHarness:
    tickets: FakeTicketRepository
    outcomes: FakeOutcomeRepository
    audit: FakeAuditTrail
    knowledge: FakeKnowledge
    notifier: RecordingNotifier
    config: StaticConfigProvider
    lock: InMemoryTriageLock
    provider: object
    orchestrator: TriageOrchestrator
    service: TicketService


@pytest.fixture
def make_harness():
    """Build an orchestrator wired to in-memory collaborators."""

    def _make(
        provider=None,
        config: Optional[TriageConfig] = None,
        documents=None,
        step_timeout_ms: int = 1500,
        max_retries: int = 2,
        backoff_ms: int = 1,
        kb_limit: int = 3,
        trace_id_factory=None
    ) -> TriageHarness:
        tickets = FakeTicketRepository()
        outcomes = FakeOutcomeRepository()
        audit = FakeAuditTrail()
        knowledge = FakeKnowledge(documents)
        notifier = RecordingNotifier()
        config_provider = StaticConfigProvider(config)
        lock = InMemoryTriageLock()
        provider = provider or StubTriageProvider()

        kwargs = {}
        if trace_id_factory is not None:
            kwargs["trace_id_factory"] = trace_id_factory

        orchestrator = TriageOrchestrator(
            tickets=tickets,
            outcomes=outcomes,
            audit=audit,
            knowledge=knowledge,
            provider=provider,
            notifier=notifier,
            config_provider=config_provider,
            lock=lock,
            step_timeout_ms=step_timeout_ms,
            max_retries=max_retries,
            backoff_ms=backoff_ms,
            kb_limit=kb_limit,
            **kwargs
        )
        return TriageHarness(
            tickets=tickets,
            outcomes=outcomes,
            audit=audit,
            knowledge=knowledge,
            notifier=notifier,
            config=config_provider,
            lock=lock,
            provider=provider,
            orchestrator=orchestrator,
            service=TicketService(tickets, outcomes, audit, notifier)
        )

    return _make
