"""
Triage Application DTOs
========================

Data Transfer Objects for the triage API layer.

Pydantic models for request/response validation.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Dict, Any, Literal
from datetime import datetime

from helpdesk.triage.domain import Ticket, TriageOutcome, AuditEvent


# ========== Type Aliases for Literals ==========
TicketCategoryStr = Literal["billing", "tech", "shipping", "other"]
TicketStatusStr = Literal["open", "triaged", "waiting_human", "resolved", "closed"]


# ========== Request DTOs ==========

class CreateTicketRequest(BaseModel):
    """Request model for ticket submission."""
    title: str = Field(..., min_length=1, max_length=500, description="Ticket title")
    description: str = Field(..., min_length=1, description="Ticket description")
    category: Optional[TicketCategoryStr] = Field(None, description="Submitter's category guess")
    created_by: Optional[str] = Field(None, description="Submitting user reference")

    @field_validator("description")
    @classmethod
    def validate_description_length(cls, v: str) -> str:
        """Ensure description is not too long for the provider."""
        if len(v) > 10000:
            raise ValueError("Description too long (max 10000 characters)")
        return v


class TriageRequest(BaseModel):
    """Request model for an explicit triage re-run."""
    ticket_id: str = Field(..., min_length=1, description="Ticket ID")


class ReplyRequest(BaseModel):
    """Request model for a staff reply."""
    message: str = Field(..., min_length=1)


class AssignRequest(BaseModel):
    """Request model for assigning a ticket to staff."""
    assignee_id: str = Field(..., min_length=1)


# ========== Response DTOs ==========

class TicketResponse(BaseModel):
    """Ticket representation."""
    id: str
    title: str
    description: str
    category: TicketCategoryStr
    status: TicketStatusStr
    trace_id: Optional[str]
    created_by: Optional[str] = None
    assignee: Optional[str] = None
    outcome_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, ticket: Ticket) -> "TicketResponse":
        return cls(
            id=ticket.id,
            title=ticket.title,
            description=ticket.description,
            category=ticket.category,
            status=ticket.status,
            trace_id=ticket.trace_id,
            created_by=ticket.created_by,
            assignee=ticket.assignee,
            outcome_id=ticket.outcome_id,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at
        )


class AuditEventResponse(BaseModel):
    """Audit event representation."""
    id: Optional[int]
    ticket_id: str
    trace_id: str
    actor: Literal["system", "agent", "user"]
    action: str
    meta: Optional[Dict[str, Any]] = None
    timestamp: datetime

    @classmethod
    def from_domain(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            ticket_id=event.ticket_id,
            trace_id=event.trace_id,
            actor=event.actor,
            action=event.action,
            meta=event.meta,
            timestamp=event.timestamp
        )


class ModelInfoResponse(BaseModel):
    """Provenance of a triage outcome."""
    provider: str
    model: str
    prompt_version: str
    latency_ms: int


class TriageOutcomeResponse(BaseModel):
    """Triage outcome (suggestion) representation."""
    id: str
    ticket_id: str
    predicted_category: TicketCategoryStr
    confidence: float = Field(..., ge=0.0, le=1.0)
    draft_reply: str
    cited_doc_ids: List[str]
    auto_closed: bool
    model_info: ModelInfoResponse
    created_at: datetime

    @classmethod
    def from_domain(cls, outcome: TriageOutcome) -> "TriageOutcomeResponse":
        return cls(
            id=outcome.id,
            ticket_id=outcome.ticket_id,
            predicted_category=outcome.predicted_category,
            confidence=outcome.confidence,
            draft_reply=outcome.draft_reply,
            cited_doc_ids=list(outcome.cited_doc_ids),
            auto_closed=outcome.auto_closed,
            model_info=ModelInfoResponse(
                provider=outcome.model_info.provider,
                model=outcome.model_info.model,
                prompt_version=outcome.model_info.prompt_version,
                latency_ms=outcome.model_info.latency_ms
            ),
            created_at=outcome.created_at
        )


class TriageAcceptedResponse(BaseModel):
    """Acknowledgment of a triage request."""
    ok: bool = True
    ticket_id: str
    outcome_id: Optional[str] = Field(
        None, description="Outcome created by this run; null when the run was skipped"
    )
