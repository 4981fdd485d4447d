"""
Triage Module
=============

Bounded Context for helpdesk ticket triage.

Responsibilities:
- Classify incoming tickets and draft a reply citing knowledge-base articles
- Auto-close confident tickets, hand the rest to staff
- Record every step in an append-only audit trail under one trace ID
- Notify subscribers about ticket status changes
"""

__version__ = "1.0.0"
