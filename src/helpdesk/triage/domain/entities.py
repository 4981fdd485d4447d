"""
Triage Domain Entities
======================

Domain entities for the ticket triage module.

Contains pure Python business objects for tickets, triage outcomes,
audit events and the auto-close policy.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field

from helpdesk.config import TicketCategory, TicketStatus, TICKET_CATEGORIES


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClassificationResult:
    """
    Result of ticket classification.

    Produced by a triage provider's ``classify`` step.
    """
    predicted_category: str
    confidence: float  # 0.0 to 1.0

    def __post_init__(self):
        """Validate classification result."""
        if self.predicted_category not in TICKET_CATEGORIES:
            raise ValueError(f"Unknown category: {self.predicted_category}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("Confidence must be between 0 and 1")

    def to_meta(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CandidateDocument:
    """A knowledge-base article offered to the drafting step as a possible citation."""
    id: str
    title: str


@dataclass(frozen=True)
class DraftResult:
    """
    Result of reply drafting.

    ``cited_doc_ids`` must be a subset of the candidate document ids
    handed to ``draft``.
    """
    draft_reply: str
    cited_doc_ids: List[str] = field(default_factory=list)

    def to_meta(self) -> Dict[str, Any]:
        return {"draft_reply": self.draft_reply, "cited_doc_ids": list(self.cited_doc_ids)}


@dataclass(frozen=True)
class ModelInfo:
    """Provenance of a triage outcome."""
    provider: str
    model: str
    prompt_version: str
    latency_ms: int


@dataclass
class Ticket:
    """
    Support ticket.

    The trace ID is set once (at creation, or lazily by the orchestrator
    for legacy tickets) and never changes afterwards.
    """
    id: Optional[str]  # UUID string, None for new tickets
    title: str
    description: str
    category: str = TicketCategory.OTHER
    status: str = TicketStatus.OPEN
    trace_id: Optional[str] = None
    created_by: Optional[str] = None
    assignee: Optional[str] = None
    outcome_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def full_text(self) -> str:
        """Combined title and description used for classification."""
        return f"{self.title}\n{self.description}"


@dataclass(frozen=True)
class TriageOutcome:
    """
    Result of one completed triage run.

    Created exactly once per completed run and never mutated.
    """
    id: Optional[str]
    ticket_id: str
    predicted_category: str
    confidence: float
    draft_reply: str
    cited_doc_ids: List[str]
    auto_closed: bool
    model_info: ModelInfo
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AuditEvent:
    """One immutable record of something that happened to a ticket."""
    id: Optional[int]
    ticket_id: str
    trace_id: str
    actor: str
    action: str
    meta: Optional[Dict[str, Any]]
    timestamp: datetime


@dataclass(frozen=True)
class NotificationEvent:
    """Event broadcast to live clients; delivery is not guaranteed."""
    type: str
    ticket_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "ticket_id": self.ticket_id, "payload": dict(self.payload)}


class TriageConfig(BaseModel):
    """
    Auto-close policy, read as an immutable snapshot at policy evaluation.

    ``sla_hours`` is informational for the surrounding system.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    auto_close_enabled: bool = True
    confidence_threshold: float = Field(default=0.78, ge=0.0, le=1.0)
    sla_hours: float = Field(default=24, ge=1)

    def should_auto_close(self, confidence: float) -> bool:
        return self.auto_close_enabled and confidence >= self.confidence_threshold
