"""
Triage Application Services
============================

Application services for ticket triage.

Orchestrates business logic between domain entities, repositories and
external collaborators (provider, knowledge lookup, notifications).
"""

import time
import uuid
from typing import Optional, List, Dict, Any, Callable
from abc import ABC, abstractmethod

from helpdesk.triage.domain import (
    Ticket, TriageOutcome, AuditEvent, ClassificationResult, DraftResult,
    CandidateDocument, ModelInfo, NotificationEvent, TriageConfig
)
from helpdesk.triage.application.resilience import with_timeout, with_retry
from helpdesk.config import (
    TicketCategory, TicketStatus, AuditActor, AuditAction, NotificationType,
    TICKET_CATEGORIES, VALID_STATUSES
)
from helpdesk.core import (
    ResourceNotFoundException, TriageFailedException, ValidationException
)
from helpdesk.shared.infrastructure.logging import get_logger, get_context_logger, log_latency

logger = get_logger(__name__)


# ========== Repository Interfaces ==========

class ITicketRepository(ABC):
    """Interface for ticket data access."""

    @abstractmethod
    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        """Get ticket by ID, None when missing or malformed."""

    @abstractmethod
    async def create(self, ticket: Ticket) -> Ticket:
        """Create new ticket."""

    @abstractmethod
    async def list(
        self,
        filters: Dict[str, Any],
        limit: int = 50
    ) -> List[Ticket]:
        """List tickets, newest first."""

    @abstractmethod
    async def set_trace_id(self, ticket_id: str, trace_id: str) -> None:
        """Persist a trace ID on a ticket that has none."""

    @abstractmethod
    async def update_status(
        self,
        ticket_id: str,
        status: str,
        outcome_id: Optional[str] = None
    ) -> None:
        """Set status and, when given, the most recent outcome reference."""

    @abstractmethod
    async def assign(self, ticket_id: str, assignee: str) -> Optional[Ticket]:
        """Set the assignee, returning the updated ticket."""


class ITriageOutcomeRepository(ABC):
    """Interface for triage outcome storage."""

    @abstractmethod
    async def create(self, outcome: TriageOutcome) -> TriageOutcome:
        """Store a triage outcome."""

    @abstractmethod
    async def get_latest_for_ticket(self, ticket_id: str) -> Optional[TriageOutcome]:
        """Most recent outcome of a ticket."""


class IAuditTrailWriter(ABC):
    """Interface for the append-only audit trail."""

    @abstractmethod
    async def append(
        self,
        ticket_id: str,
        trace_id: str,
        actor: str,
        action: str,
        meta: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """Durably store an event; timestamp is assigned here."""

    @abstractmethod
    async def list_for_ticket(self, ticket_id: str) -> List[AuditEvent]:
        """Events of a ticket ordered by timestamp ascending."""


class IKnowledgeLookup(ABC):
    """Interface for knowledge-base search."""

    @abstractmethod
    async def search(self, query: str, limit: int = 3) -> List[CandidateDocument]:
        """Ranked published articles relevant to ``query``."""


class INotificationEmitter(ABC):
    """Interface for fire-and-forget notification publishing."""

    @abstractmethod
    async def publish(self, event: NotificationEvent) -> bool:
        """Attempt delivery once; never raises, returns False on failure."""


class ITriageConfigProvider(ABC):
    """Interface for auto-close policy access."""

    @abstractmethod
    def get_config(self) -> TriageConfig:
        """Get current policy snapshot."""


class ITriageProvider(ABC):
    """
    Classification/drafting capability.

    Implementations expose provenance through ``name``, ``model`` and
    ``prompt_version``.
    """

    name: str
    model: str
    prompt_version: str

    @abstractmethod
    async def classify(self, text: str) -> ClassificationResult:
        """Estimate the ticket category and a confidence in [0, 1]."""

    @abstractmethod
    async def draft(
        self,
        text: str,
        candidates: List[CandidateDocument]
    ) -> DraftResult:
        """Draft a reply citing only ids from ``candidates``."""


class ITriageLock(ABC):
    """Single-flight guard keyed by ticket ID."""

    @abstractmethod
    async def try_acquire(self, ticket_id: str) -> bool:
        """Mark the ticket as in progress; False when already held."""

    @abstractmethod
    async def release(self, ticket_id: str) -> None:
        """Release the ticket."""


# ========== Application Services ==========

class TriageOrchestrator:
    """
    Runs the triage pipeline for one ticket at a time per ticket ID.

    Steps run strictly in sequence: receive, classify, retrieve knowledge,
    draft, record outcome, evaluate policy, transition the ticket. Every
    step boundary is written to the audit trail under the ticket's trace ID.
    """

    def __init__(
        self,
        tickets: ITicketRepository,
        outcomes: ITriageOutcomeRepository,
        audit: IAuditTrailWriter,
        knowledge: IKnowledgeLookup,
        provider: ITriageProvider,
        notifier: INotificationEmitter,
        config_provider: ITriageConfigProvider,
        lock: ITriageLock,
        step_timeout_ms: int = 1500,
        max_retries: int = 2,
        backoff_ms: int = 100,
        kb_limit: int = 3,
        trace_id_factory: Callable[[], str] = lambda: str(uuid.uuid4())
    ):
        self._tickets = tickets
        self._outcomes = outcomes
        self._audit = audit
        self._knowledge = knowledge
        self._provider = provider
        self._notifier = notifier
        self._config_provider = config_provider
        self._lock = lock
        self._step_timeout_ms = step_timeout_ms
        self._max_retries = max_retries
        self._backoff_ms = backoff_ms
        self._kb_limit = kb_limit
        self._new_trace_id = trace_id_factory

    async def triage(self, ticket_id: str) -> Optional[TriageOutcome]:
        """
        Triage a ticket.

        Returns:
            The new TriageOutcome, or None when the run was skipped because
            another run holds the ticket or the ticket does not exist.

        Raises:
            TriageFailedException: If classify or draft exhausted its retries
        """
        if not await self._lock.try_acquire(ticket_id):
            logger.warning(
                "Triage already in progress; skipping",
                extra={"ticket_id": ticket_id}
            )
            return None

        try:
            return await self._run(ticket_id)
        finally:
            await self._lock.release(ticket_id)

    async def _run(self, ticket_id: str) -> Optional[TriageOutcome]:
        ticket = await self._tickets.get_by_id(ticket_id)
        if ticket is None:
            logger.info("Ticket not found; triage aborted", extra={"ticket_id": ticket_id})
            return None

        trace_id = ticket.trace_id
        if not trace_id:
            # Legacy ticket without a trace ID
            trace_id = self._new_trace_id()
            await self._tickets.set_trace_id(ticket.id, trace_id)
            ticket.trace_id = trace_id

        log = get_context_logger(__name__, trace_id=trace_id)

        async def record(action: str, meta: Optional[Dict[str, Any]] = None) -> None:
            await self._audit.append(ticket.id, trace_id, AuditActor.SYSTEM, action, meta)

        await record(AuditAction.TICKET_RECEIVED)

        classification = await self._run_step(
            ticket.id, "classify", lambda: self._provider.classify(ticket.full_text)
        )
        await record(AuditAction.AGENT_CLASSIFIED, classification.to_meta())

        candidates = []
        if self._kb_limit > 0:
            with log_latency(log, "knowledge_lookup", ticket_id=ticket.id):
                candidates = (await self._knowledge.search(ticket.title, self._kb_limit))[:self._kb_limit]
        await record(AuditAction.KB_RETRIEVED, {"article_ids": [doc.id for doc in candidates]})

        started = time.perf_counter()
        draft = await self._run_step(
            ticket.id, "draft", lambda: self._provider.draft(ticket.description, candidates)
        )
        latency_ms = int((time.perf_counter() - started) * 1000)
        await record(AuditAction.DRAFT_GENERATED, draft.to_meta())

        # Policy is read here, not at the start of the run
        config = self._config_provider.get_config()
        auto_close = config.should_auto_close(classification.confidence)

        outcome = await self._outcomes.create(TriageOutcome(
            id=None,
            ticket_id=ticket.id,
            predicted_category=classification.predicted_category,
            confidence=classification.confidence,
            draft_reply=draft.draft_reply,
            cited_doc_ids=list(draft.cited_doc_ids),
            auto_closed=auto_close,
            model_info=ModelInfo(
                provider=self._provider.name,
                model=self._provider.model,
                prompt_version=self._provider.prompt_version,
                latency_ms=latency_ms
            )
        ))

        if auto_close:
            status, action = TicketStatus.RESOLVED, AuditAction.AUTO_CLOSED
        else:
            status, action = TicketStatus.WAITING_HUMAN, AuditAction.ASSIGNED_TO_HUMAN

        await self._tickets.update_status(ticket.id, status, outcome.id)
        await record(action)
        await self._notifier.publish(NotificationEvent(
            type=NotificationType.STATUS_CHANGED,
            ticket_id=ticket.id,
            payload={"status": status}
        ))

        log.info(
            "Triage completed",
            extra={
                "ticket_id": ticket.id,
                "outcome_id": outcome.id,
                "predicted_category": outcome.predicted_category,
                "confidence": outcome.confidence,
                "auto_close": auto_close,
                "threshold": config.confidence_threshold,
                "draft_latency_ms": latency_ms
            }
        )
        return outcome

    async def _run_step(self, ticket_id: str, step: str, step_fn):
        try:
            return await with_retry(
                lambda: with_timeout(step_fn, self._step_timeout_ms, step),
                retries=self._max_retries,
                step=step,
                backoff_ms=self._backoff_ms
            )
        except Exception as e:
            raise TriageFailedException(
                ticket_id, step, {"ticket_id": ticket_id, "step": step, "error": str(e)}
            ) from e


class TicketService:
    """
    Ticket submission and staff actions surrounding the triage core.

    Uses the same audit trail and notification contracts as the orchestrator.
    """

    def __init__(
        self,
        tickets: ITicketRepository,
        outcomes: ITriageOutcomeRepository,
        audit: IAuditTrailWriter,
        notifier: INotificationEmitter
    ):
        self._tickets = tickets
        self._outcomes = outcomes
        self._audit = audit
        self._notifier = notifier

    async def create_ticket(
        self,
        title: str,
        description: str,
        category: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Ticket:
        """Create a ticket with a fresh trace ID and record its creation."""
        if category and category not in TICKET_CATEGORIES:
            raise ValidationException(
                f"Unknown category: {category}", {"field": "category", "value": category}
            )
        ticket = await self._tickets.create(Ticket(
            id=None,
            title=title,
            description=description,
            category=category or TicketCategory.OTHER,
            status=TicketStatus.OPEN,
            trace_id=str(uuid.uuid4()),
            created_by=created_by
        ))

        await self._audit.append(
            ticket.id, ticket.trace_id, AuditActor.USER, AuditAction.TICKET_CREATED, {}
        )
        await self._notifier.publish(NotificationEvent(
            type=NotificationType.TICKET_CREATED,
            ticket_id=ticket.id
        ))
        return ticket

    async def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._tickets.get_by_id(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return ticket

    async def list_tickets(
        self,
        status: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 50
    ) -> List[Ticket]:
        filters = {}
        if status:
            if status not in VALID_STATUSES:
                raise ValidationException(
                    f"Unknown status: {status}", {"field": "status", "value": status}
                )
            filters["status"] = status
        if category:
            if category not in TICKET_CATEGORIES:
                raise ValidationException(
                    f"Unknown category: {category}", {"field": "category", "value": category}
                )
            filters["category"] = category
        return await self._tickets.list(filters, limit=limit)

    async def _ensure_trace_id(self, ticket: Ticket) -> str:
        if not ticket.trace_id:
            ticket.trace_id = str(uuid.uuid4())
            await self._tickets.set_trace_id(ticket.id, ticket.trace_id)
        return ticket.trace_id

    async def reply(self, ticket_id: str, message: str) -> None:
        """Record a staff reply."""
        ticket = await self.get_ticket(ticket_id)
        await self._ensure_trace_id(ticket)
        await self._audit.append(
            ticket.id, ticket.trace_id, AuditActor.AGENT, AuditAction.REPLY_SENT,
            {"message": message}
        )
        await self._notifier.publish(NotificationEvent(
            type=NotificationType.REPLY_SENT,
            ticket_id=ticket.id,
            payload={"message": message}
        ))

    async def assign(self, ticket_id: str, assignee_id: str) -> Ticket:
        """Hand a ticket to a staff member."""
        ticket = await self._tickets.assign(ticket_id, assignee_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)

        await self._ensure_trace_id(ticket)
        await self._audit.append(
            ticket.id, ticket.trace_id, AuditActor.AGENT, AuditAction.ASSIGNED_TO_HUMAN,
            {"assignee_id": assignee_id}
        )
        await self._notifier.publish(NotificationEvent(
            type=NotificationType.ASSIGNED_TO_HUMAN,
            ticket_id=ticket.id,
            payload={"assignee_id": assignee_id}
        ))
        return ticket

    async def get_audit_trail(self, ticket_id: str) -> List[AuditEvent]:
        ticket = await self.get_ticket(ticket_id)
        return await self._audit.list_for_ticket(ticket.id)

    async def get_latest_outcome(self, ticket_id: str) -> TriageOutcome:
        outcome = await self._outcomes.get_latest_for_ticket(ticket_id)
        if outcome is None:
            raise ResourceNotFoundException("TriageOutcome", ticket_id)
        return outcome
