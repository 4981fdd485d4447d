"""
Triage Controllers (API Routes)
================================

FastAPI routes for tickets, agent actions and the notification stream.

Controllers delegate to application services held in ``app.state``.
"""

import asyncio
import json
from typing import List, Optional, AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse

from helpdesk.triage.application import (
    TicketService, TriageOrchestrator,
    CreateTicketRequest, TriageRequest, ReplyRequest, AssignRequest,
    TicketResponse, AuditEventResponse, TriageOutcomeResponse, TriageAcceptedResponse
)
from helpdesk.triage.application.dto import TicketCategoryStr, TicketStatusStr
from helpdesk.triage.infrastructure import TriageDispatcher, InMemoryNotificationBroadcaster
from helpdesk.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

ticket_router = APIRouter(prefix="/tickets", tags=["Tickets"])
agent_router = APIRouter(prefix="/agent", tags=["Agent"])
notifications_router = APIRouter(prefix="/notifications", tags=["Notifications"])

HEARTBEAT_SECONDS = 15.0


# ========== Example payloads for Swagger ==========

CREATE_TICKET_REQUEST_EXAMPLE = {
    "title": "Refund request",
    "description": "I was charged twice for the same item"
}

SUGGESTION_RESPONSE_EXAMPLE = {
    "id": "5b0d7d36-8c53-4a4e-9a43-0a7f5f7e7c2e",
    "ticket_id": "1f0c3c1e-2b9e-4d59-a7e4-6f1f3f0b8a11",
    "predicted_category": "billing",
    "confidence": 0.2,
    "draft_reply": "Thanks for reaching out. Here's what we found:\n"
                   "If this resolves your issue, feel free to close the ticket. "
                   "Otherwise, reply and an agent will assist you.",
    "cited_doc_ids": [],
    "auto_closed": False,
    "model_info": {
        "provider": "stub",
        "model": "heuristic",
        "prompt_version": "v1",
        "latency_ms": 0
    },
    "created_at": "2024-01-01T00:00:00Z"
}


# ========== Dependencies ==========

def _from_state(request: Request, name: str, label: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized"
        )
    return component


def get_ticket_service(request: Request) -> TicketService:
    return _from_state(request, "ticket_service", "Ticket service")


def get_orchestrator(request: Request) -> TriageOrchestrator:
    return _from_state(request, "orchestrator", "Triage orchestrator")


def get_dispatcher(request: Request) -> TriageDispatcher:
    return _from_state(request, "dispatcher", "Triage dispatcher")


def get_broadcaster(request: Request) -> InMemoryNotificationBroadcaster:
    return _from_state(request, "broadcaster", "Notification stream")


# ========== Ticket routes ==========

@ticket_router.post(
    "",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a ticket",
    description="""
    Create a ticket and schedule its triage in the background.

    The response is returned before triage starts; follow progress through
    `GET /tickets/{id}/audit` or the notification stream.
    """,
    responses={
        201: {"description": "Ticket created"},
        422: {"description": "Invalid payload"}
    }
)
async def create_ticket(
    request: Request,
    payload: CreateTicketRequest,
    service: TicketService = Depends(get_ticket_service),
    dispatcher: TriageDispatcher = Depends(get_dispatcher)
):
    ticket = await service.create_ticket(
        title=payload.title,
        description=payload.description,
        category=payload.category,
        created_by=payload.created_by
    )
    dispatcher.submit(ticket.id)

    logger.info(
        "Ticket created",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "ticket_id": ticket.id,
            "trace_id": ticket.trace_id
        }
    )
    return TicketResponse.from_domain(ticket)


@ticket_router.get(
    "",
    response_model=List[TicketResponse],
    summary="List tickets",
    description="Newest first, optionally filtered by status and category."
)
async def list_tickets(
    status_filter: Optional[TicketStatusStr] = Query(None, alias="status"),
    category: Optional[TicketCategoryStr] = Query(None),
    limit: int = Query(50, ge=1, le=50),
    service: TicketService = Depends(get_ticket_service)
):
    tickets = await service.list_tickets(status=status_filter, category=category, limit=limit)
    return [TicketResponse.from_domain(t) for t in tickets]


@ticket_router.get(
    "/{ticket_id}",
    response_model=TicketResponse,
    summary="Get a ticket",
    responses={404: {"description": "Ticket not found"}}
)
async def get_ticket(
    ticket_id: str,
    service: TicketService = Depends(get_ticket_service)
):
    return TicketResponse.from_domain(await service.get_ticket(ticket_id))


@ticket_router.post(
    "/{ticket_id}/reply",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Reply to a ticket",
    responses={404: {"description": "Ticket not found"}}
)
async def reply_to_ticket(
    ticket_id: str,
    payload: ReplyRequest,
    service: TicketService = Depends(get_ticket_service)
):
    await service.reply(ticket_id, payload.message)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@ticket_router.post(
    "/{ticket_id}/assign",
    response_model=TicketResponse,
    summary="Assign a ticket to staff",
    responses={404: {"description": "Ticket not found"}}
)
async def assign_ticket(
    ticket_id: str,
    payload: AssignRequest,
    service: TicketService = Depends(get_ticket_service)
):
    ticket = await service.assign(ticket_id, payload.assignee_id)
    return TicketResponse.from_domain(ticket)


@ticket_router.get(
    "/{ticket_id}/audit",
    response_model=List[AuditEventResponse],
    summary="Audit trail of a ticket",
    description="Events ordered by timestamp, oldest first.",
    responses={404: {"description": "Ticket not found"}}
)
async def get_audit_trail(
    ticket_id: str,
    service: TicketService = Depends(get_ticket_service)
):
    events = await service.get_audit_trail(ticket_id)
    return [AuditEventResponse.from_domain(e) for e in events]


# ========== Agent routes ==========

@agent_router.post(
    "/triage",
    response_model=TriageAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-run triage for a ticket",
    description="""
    Run the triage pipeline and wait for it to finish.

    `outcome_id` is null when another run already holds the ticket or the
    ticket does not exist. A run that exhausts its retries responds 502 with
    the failing step.
    """,
    responses={
        202: {"description": "Triage finished or skipped"},
        502: {"description": "Triage step failed after retries"}
    }
)
async def run_triage(
    request: Request,
    payload: TriageRequest,
    orchestrator: TriageOrchestrator = Depends(get_orchestrator)
):
    logger.info(
        "Triage requested",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "ticket_id": payload.ticket_id
        }
    )
    outcome = await orchestrator.triage(payload.ticket_id)
    return TriageAcceptedResponse(
        ticket_id=payload.ticket_id,
        outcome_id=outcome.id if outcome else None
    )


@agent_router.get(
    "/suggestion/{ticket_id}",
    response_model=TriageOutcomeResponse,
    summary="Latest triage suggestion",
    responses={
        200: {
            "description": "Most recent outcome",
            "content": {"application/json": {"example": SUGGESTION_RESPONSE_EXAMPLE}}
        },
        404: {"description": "No outcome for this ticket"}
    }
)
async def get_suggestion(
    ticket_id: str,
    service: TicketService = Depends(get_ticket_service)
):
    return TriageOutcomeResponse.from_domain(await service.get_latest_outcome(ticket_id))


# ========== Notification stream ==========

def format_sse(payload: dict) -> str:
    return f"event: {payload['type']}\ndata: {json.dumps(payload)}\n\n"


async def notification_event_stream(
    broadcaster: InMemoryNotificationBroadcaster,
    request: Optional[Request] = None,
    heartbeat_seconds: float = HEARTBEAT_SECONDS
) -> AsyncGenerator[str, None]:
    """Server-Sent Events for one subscriber until it disconnects or is dropped."""
    queue = broadcaster.subscribe()
    try:
        while broadcaster.is_subscribed(queue):
            if request is not None and await request.is_disconnected():
                break
            try:
                payload = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(payload)
    finally:
        broadcaster.unsubscribe(queue)


@notifications_router.get(
    "/stream",
    summary="Notification stream",
    description="Server-Sent Events of ticket notifications.",
    response_class=StreamingResponse
)
async def stream_notifications(
    request: Request,
    broadcaster: InMemoryNotificationBroadcaster = Depends(get_broadcaster)
):
    return StreamingResponse(
        notification_event_stream(broadcaster, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    )
