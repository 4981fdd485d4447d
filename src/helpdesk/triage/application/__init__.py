"""
Triage Application Layer
=========================

Application layer for ticket triage module.

Contains:
- Services: Triage orchestration and ticket actions
- Resilience: Step timeout and retry wrappers
- DTOs: Data transfer objects for API serialization
"""

from helpdesk.triage.application.dto import (
    CreateTicketRequest,
    ReplyRequest,
    AssignRequest,
    TriageRequest,
    TicketResponse,
    AuditEventResponse,
    TriageOutcomeResponse,
    TriageAcceptedResponse,
    ModelInfoResponse,
)
from helpdesk.triage.application.services import (
    TriageOrchestrator,
    TicketService,
    ITicketRepository,
    ITriageOutcomeRepository,
    IAuditTrailWriter,
    IKnowledgeLookup,
    INotificationEmitter,
    ITriageConfigProvider,
    ITriageProvider,
    ITriageLock,
)
from helpdesk.triage.application.resilience import with_timeout, with_retry

__all__ = [
    # DTOs
    "CreateTicketRequest",
    "ReplyRequest",
    "AssignRequest",
    "TriageRequest",
    "TicketResponse",
    "AuditEventResponse",
    "TriageOutcomeResponse",
    "TriageAcceptedResponse",
    "ModelInfoResponse",
    # Services
    "TriageOrchestrator",
    "TicketService",
    "with_timeout",
    "with_retry",
    # Interfaces
    "ITicketRepository",
    "ITriageOutcomeRepository",
    "IAuditTrailWriter",
    "IKnowledgeLookup",
    "INotificationEmitter",
    "ITriageConfigProvider",
    "ITriageProvider",
    "ITriageLock",
]
