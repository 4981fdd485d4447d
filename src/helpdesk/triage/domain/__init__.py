"""
Triage Domain Layer
===================

Domain layer for ticket triage module.

Contains:
- Entities: Ticket, TriageOutcome, AuditEvent
- Value Objects: ClassificationResult, DraftResult, CandidateDocument,
  ModelInfo, NotificationEvent, TriageConfig

This layer is framework-agnostic and contains pure business logic.
"""

from helpdesk.triage.domain.entities import (
    ClassificationResult,
    CandidateDocument,
    DraftResult,
    ModelInfo,
    Ticket,
    TriageOutcome,
    AuditEvent,
    NotificationEvent,
    TriageConfig,
)

__all__ = [
    "ClassificationResult",
    "CandidateDocument",
    "DraftResult",
    "ModelInfo",
    "Ticket",
    "TriageOutcome",
    "AuditEvent",
    "NotificationEvent",
    "TriageConfig",
]
