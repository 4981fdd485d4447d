"""
Triage Interfaces Layer
========================

Interface adapters (controllers) for ticket triage module.

Contains:
- Controllers: FastAPI route handlers
"""

from helpdesk.triage.interfaces.controllers import (
    ticket_router,
    agent_router,
    notifications_router,
)

__all__ = ["ticket_router", "agent_router", "notifications_router"]
