"""
Triage Infrastructure Layer
============================

Infrastructure implementations for ticket triage module.

Contains:
- Models: SQLAlchemy ORM models
- Repositories: Data access implementations
- Providers: Classify/draft implementations (stub, LLM)
- Locks: Single-flight guards
- External: Policy file, notifications, background dispatcher
"""

from helpdesk.triage.infrastructure.models import (
    TicketModel,
    TriageOutcomeModel,
    AuditEventModel,
    ArticleModel,
    TriageLeaseModel,
)
from helpdesk.triage.infrastructure.repositories import (
    SQLAlchemyTicketRepository,
    SQLAlchemyTriageOutcomeRepository,
    SQLAlchemyAuditTrailWriter,
    SQLAlchemyKnowledgeLookup,
)
from helpdesk.triage.infrastructure.providers import (
    StubTriageProvider,
    LLMTriageProvider,
    build_triage_provider,
)
from helpdesk.triage.infrastructure.locks import (
    InMemoryTriageLock,
    DatabaseTriageLease,
    build_triage_lock,
)
from helpdesk.triage.infrastructure.external import (
    TriageConfigManager,
    CircuitBreaker,
    WebhookNotificationEmitter,
    InMemoryNotificationBroadcaster,
    CompositeNotificationEmitter,
    TriageDispatcher,
)

__all__ = [
    "TicketModel",
    "TriageOutcomeModel",
    "AuditEventModel",
    "ArticleModel",
    "TriageLeaseModel",
    "SQLAlchemyTicketRepository",
    "SQLAlchemyTriageOutcomeRepository",
    "SQLAlchemyAuditTrailWriter",
    "SQLAlchemyKnowledgeLookup",
    "StubTriageProvider",
    "LLMTriageProvider",
    "build_triage_provider",
    "InMemoryTriageLock",
    "DatabaseTriageLease",
    "build_triage_lock",
    "TriageConfigManager",
    "CircuitBreaker",
    "WebhookNotificationEmitter",
    "InMemoryNotificationBroadcaster",
    "CompositeNotificationEmitter",
    "TriageDispatcher",
]
