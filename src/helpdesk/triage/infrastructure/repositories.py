"""
Triage Infrastructure Repositories
====================================

SQLAlchemy implementations of triage repositories.

Each operation runs in its own session and commits before returning, so
every audit append and status write is durable on its own. A triage run
that fails halfway leaves the events it already wrote in place.
"""

from typing import List, Optional, Any, Dict
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import case, select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from helpdesk.triage.application import (
    ITicketRepository, ITriageOutcomeRepository, IAuditTrailWriter, IKnowledgeLookup
)
from helpdesk.triage.domain import (
    Ticket, TriageOutcome, AuditEvent, CandidateDocument, ModelInfo
)
from helpdesk.triage.infrastructure.models import (
    TicketModel, TriageOutcomeModel, AuditEventModel, ArticleModel
)
from helpdesk.config import ArticleStatus, VALID_ACTORS
from helpdesk.core import RepositoryException


def _parse_uuid(value: Optional[str]) -> Optional[UUID]:
    if value is None:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _require_uuid(value: str, resource: str) -> UUID:
    parsed = _parse_uuid(value)
    if parsed is None:
        raise RepositoryException(f"Invalid {resource} ID: {value}")
    return parsed


def _ticket_to_domain(model: TicketModel) -> Ticket:
    return Ticket(
        id=str(model.id),
        title=model.title,
        description=model.description,
        category=model.category,
        status=model.status,
        trace_id=model.trace_id,
        created_by=model.created_by,
        assignee=model.assignee,
        outcome_id=str(model.outcome_id) if model.outcome_id else None,
        created_at=model.created_at,
        updated_at=model.updated_at
    )


def _outcome_to_domain(model: TriageOutcomeModel) -> TriageOutcome:
    return TriageOutcome(
        id=str(model.id),
        ticket_id=str(model.ticket_id),
        predicted_category=model.predicted_category,
        confidence=model.confidence,
        draft_reply=model.draft_reply,
        cited_doc_ids=list(model.cited_doc_ids or []),
        auto_closed=model.auto_closed,
        model_info=ModelInfo(
            provider=model.provider,
            model=model.model,
            prompt_version=model.prompt_version,
            latency_ms=model.latency_ms
        ),
        created_at=model.created_at
    )


def _event_to_domain(model: AuditEventModel) -> AuditEvent:
    return AuditEvent(
        id=model.id,
        ticket_id=str(model.ticket_id),
        trace_id=model.trace_id,
        actor=model.actor,
        action=model.action,
        meta=model.meta,
        timestamp=model.timestamp
    )


class SQLAlchemyTicketRepository(ITicketRepository):
    """SQLAlchemy implementation for tickets."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        """Get ticket by ID."""
        ticket_uuid = _parse_uuid(ticket_id)
        if ticket_uuid is None:
            return None

        async with self._session_factory() as session:
            model = await session.get(TicketModel, ticket_uuid)
            return _ticket_to_domain(model) if model else None

    async def create(self, ticket: Ticket) -> Ticket:
        """Create new ticket."""
        model = TicketModel(
            id=_parse_uuid(ticket.id) or uuid4(),
            title=ticket.title,
            description=ticket.description,
            category=ticket.category,
            status=ticket.status,
            trace_id=ticket.trace_id,
            created_by=ticket.created_by,
            assignee=ticket.assignee,
            created_at=ticket.created_at
        )

        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
            return _ticket_to_domain(model)

    async def list(
        self,
        filters: Dict[str, Any],
        limit: int = 50
    ) -> List[Ticket]:
        """List tickets with filters, newest first."""
        stmt = select(TicketModel)
        if "status" in filters:
            stmt = stmt.where(TicketModel.status == filters["status"])
        if "category" in filters:
            stmt = stmt.where(TicketModel.category == filters["category"])
        if "created_by" in filters:
            stmt = stmt.where(TicketModel.created_by == filters["created_by"])
        stmt = stmt.order_by(TicketModel.created_at.desc()).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_ticket_to_domain(m) for m in result.scalars().all()]

    async def set_trace_id(self, ticket_id: str, trace_id: str) -> None:
        """Persist a trace ID; an existing trace ID is never overwritten."""
        ticket_uuid = _require_uuid(ticket_id, "ticket")

        stmt = (
            update(TicketModel)
            .where(
                TicketModel.id == ticket_uuid,
                or_(TicketModel.trace_id.is_(None), TicketModel.trace_id == "")
            )
            .values(trace_id=trace_id, updated_at=datetime.now(timezone.utc))
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def update_status(
        self,
        ticket_id: str,
        status: str,
        outcome_id: Optional[str] = None
    ) -> None:
        """Set status and outcome reference (last write wins)."""
        ticket_uuid = _require_uuid(ticket_id, "ticket")

        values: Dict[str, Any] = {"status": status, "updated_at": datetime.now(timezone.utc)}
        if outcome_id is not None:
            values["outcome_id"] = _require_uuid(outcome_id, "outcome")

        async with self._session_factory() as session:
            await session.execute(
                update(TicketModel).where(TicketModel.id == ticket_uuid).values(**values)
            )
            await session.commit()

    async def assign(self, ticket_id: str, assignee: str) -> Optional[Ticket]:
        """Set the assignee."""
        ticket_uuid = _parse_uuid(ticket_id)
        if ticket_uuid is None:
            return None

        async with self._session_factory() as session:
            model = await session.get(TicketModel, ticket_uuid)
            if model is None:
                return None
            model.assignee = assignee
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return _ticket_to_domain(model)


class SQLAlchemyTriageOutcomeRepository(ITriageOutcomeRepository):
    """SQLAlchemy implementation for triage outcomes."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, outcome: TriageOutcome) -> TriageOutcome:
        """Store a triage outcome."""
        model = TriageOutcomeModel(
            id=uuid4(),
            ticket_id=_require_uuid(outcome.ticket_id, "ticket"),
            predicted_category=outcome.predicted_category,
            confidence=outcome.confidence,
            draft_reply=outcome.draft_reply,
            cited_doc_ids=list(outcome.cited_doc_ids),
            auto_closed=outcome.auto_closed,
            provider=outcome.model_info.provider,
            model=outcome.model_info.model,
            prompt_version=outcome.model_info.prompt_version,
            latency_ms=outcome.model_info.latency_ms,
            created_at=outcome.created_at
        )

        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
            return _outcome_to_domain(model)

    async def get_latest_for_ticket(self, ticket_id: str) -> Optional[TriageOutcome]:
        """Most recent outcome of a ticket."""
        ticket_uuid = _parse_uuid(ticket_id)
        if ticket_uuid is None:
            return None

        stmt = (
            select(TriageOutcomeModel)
            .where(TriageOutcomeModel.ticket_id == ticket_uuid)
            .order_by(TriageOutcomeModel.created_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _outcome_to_domain(model) if model else None


class SQLAlchemyAuditTrailWriter(IAuditTrailWriter):
    """SQLAlchemy implementation of the audit trail."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(
        self,
        ticket_id: str,
        trace_id: str,
        actor: str,
        action: str,
        meta: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """Append and commit one event."""
        if actor not in VALID_ACTORS:
            raise RepositoryException(f"Invalid audit actor: {actor}")
        if not trace_id:
            raise RepositoryException("Audit events require a trace ID")

        model = AuditEventModel(
            ticket_id=_require_uuid(ticket_id, "ticket"),
            trace_id=trace_id,
            actor=actor,
            action=action,
            meta=meta,
            timestamp=datetime.now(timezone.utc)
        )

        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
            return _event_to_domain(model)

    async def list_for_ticket(self, ticket_id: str) -> List[AuditEvent]:
        """Events ordered by timestamp, then append order."""
        ticket_uuid = _parse_uuid(ticket_id)
        if ticket_uuid is None:
            return []

        stmt = (
            select(AuditEventModel)
            .where(AuditEventModel.ticket_id == ticket_uuid)
            .order_by(AuditEventModel.timestamp.asc(), AuditEventModel.id.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_event_to_domain(m) for m in result.scalars().all()]


class SQLAlchemyKnowledgeLookup(IKnowledgeLookup):
    """
    Keyword search over published knowledge-base articles.

    Ranks by distinct query terms matched (title matches count double),
    then by most recent update.
    """

    MIN_TERM_LENGTH = 3

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @classmethod
    def _terms(cls, query: str) -> List[str]:
        terms = []
        for raw in query.lower().split():
            term = "".join(ch for ch in raw if ch.isalnum())
            if len(term) >= cls.MIN_TERM_LENGTH and term not in terms:
                terms.append(term)
        return terms

    async def search(self, query: str, limit: int = 3) -> List[CandidateDocument]:
        """Ranked published articles relevant to ``query``."""
        terms = self._terms(query)
        if not terms or limit <= 0:
            return []

        matches = []
        term_scores = []
        for term in terms:
            pattern = f"%{term}%"
            in_title = ArticleModel.title.ilike(pattern)
            in_body = ArticleModel.body.ilike(pattern)
            matches.extend([in_title, in_body])
            term_scores.append(case((in_title, 2), (in_body, 1), else_=0))
        score = sum(term_scores)

        stmt = (
            select(ArticleModel.id, ArticleModel.title)
            .where(ArticleModel.status == ArticleStatus.PUBLISHED, or_(*matches))
            .order_by(score.desc(), ArticleModel.updated_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [CandidateDocument(id=str(row.id), title=row.title) for row in result.all()]
