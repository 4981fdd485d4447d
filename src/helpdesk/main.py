"""
Helpdesk Triage - Main Application
===================================

Customer helpdesk with automated ticket triage.

Modules:
- Triage: Classify tickets, draft cited replies, auto-close or hand to staff

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, triage providers, notifications, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from helpdesk.config import settings
from helpdesk.core import (
    ResourceNotFoundException, TriageFailedException, ValidationException
)

# Infrastructure
from helpdesk.infrastructure.database import (
    init_database, close_database, create_tables, get_session_maker
)

# Triage Module
from helpdesk.triage.application import TriageOrchestrator, TicketService
from helpdesk.triage.infrastructure import (
    SQLAlchemyTicketRepository,
    SQLAlchemyTriageOutcomeRepository,
    SQLAlchemyAuditTrailWriter,
    SQLAlchemyKnowledgeLookup,
    TriageConfigManager,
    WebhookNotificationEmitter,
    InMemoryNotificationBroadcaster,
    CompositeNotificationEmitter,
    TriageDispatcher,
    build_triage_provider,
    build_triage_lock,
)
from helpdesk.triage.interfaces import ticket_router, agent_router, notifications_router

# Shared
from helpdesk.shared.infrastructure.logging import setup_logging, get_logger
from helpdesk.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    not_found_exception_handler,
    triage_failed_exception_handler,
    validation_exception_handler,
    global_exception_handler
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load triage policy and watch the file
    4. Build provider, lock, notifiers and the orchestrator
    5. Start the triage dispatcher

    SHUTDOWN:
    1. Stop the dispatcher
    2. Stop the config watcher
    3. Close the webhook client and the database
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Helpdesk Triage", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()
    # For development - use migrations in production
    await create_tables()
    session_factory = get_session_maker()

    logger.info("Loading triage configuration")
    config_manager = TriageConfigManager()
    config_manager.load(settings.triage_config_path)
    config_manager.start_watching()

    broadcaster = InMemoryNotificationBroadcaster()
    webhook = None
    if settings.notification_webhook_url:
        webhook = WebhookNotificationEmitter(
            settings.notification_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds
        )
        notifier = CompositeNotificationEmitter([broadcaster, webhook])
    else:
        notifier = broadcaster

    tickets = SQLAlchemyTicketRepository(session_factory)
    outcomes = SQLAlchemyTriageOutcomeRepository(session_factory)
    audit = SQLAlchemyAuditTrailWriter(session_factory)

    provider = build_triage_provider(settings)
    logger.info("Triage provider selected", extra={
        "provider": provider.name,
        "model": provider.model,
        "prompt_version": provider.prompt_version
    })

    orchestrator = TriageOrchestrator(
        tickets=tickets,
        outcomes=outcomes,
        audit=audit,
        knowledge=SQLAlchemyKnowledgeLookup(session_factory),
        provider=provider,
        notifier=notifier,
        config_provider=config_manager,
        lock=build_triage_lock(settings, session_factory),
        step_timeout_ms=settings.triage_step_timeout_ms,
        max_retries=settings.triage_max_retries,
        backoff_ms=settings.triage_backoff_ms,
        kb_limit=settings.triage_kb_limit
    )

    dispatcher = TriageDispatcher(
        orchestrator,
        retries=settings.triage_dispatch_retries,
        backoff_seconds=settings.triage_dispatch_backoff_seconds
    )
    await dispatcher.start()

    # Store services in app state for dependency injection
    app.state.config_manager = config_manager
    app.state.broadcaster = broadcaster
    app.state.orchestrator = orchestrator
    app.state.ticket_service = TicketService(tickets, outcomes, audit, notifier)
    app.state.dispatcher = dispatcher
    app.state.provider = provider

    logger.info("Helpdesk Triage started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Helpdesk Triage")

    await dispatcher.stop()
    config_manager.stop_watching()
    if webhook is not None:
        await webhook.close()
    await close_database()

    logger.info("Helpdesk Triage shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Helpdesk Triage API",
    description="""
    ## Customer Helpdesk with Automated Triage

    Every new ticket is classified, matched against knowledge-base articles
    and answered with a draft reply. Confident tickets are resolved
    automatically; the rest wait for staff.

    ---

    ### Tickets

    - `POST /tickets` - Submit a ticket (triage runs in the background)
    - `GET /tickets` - List tickets
    - `GET /tickets/{id}` - Ticket details
    - `POST /tickets/{id}/reply` - Staff reply
    - `POST /tickets/{id}/assign` - Assign to staff
    - `GET /tickets/{id}/audit` - Audit trail

    ### Agent

    - `POST /agent/triage` - Re-run triage and wait for the result
    - `GET /agent/suggestion/{ticket_id}` - Latest triage outcome

    ### Notifications

    - `GET /notifications/stream` - Server-Sent Events

    ---

    ### Auto-close policy

    Read from `triage_config.yaml` (hot-reloaded):
    `auto_close_enabled`, `confidence_threshold`, `sla_hours`.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ResourceNotFoundException, not_found_exception_handler)
app.add_exception_handler(TriageFailedException, triage_failed_exception_handler)
app.add_exception_handler(ValidationException, validation_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(ticket_router)
app.include_router(agent_router)
app.include_router(notifications_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "triage_config": "loaded",
                        "dispatcher": "running",
                        "provider": "stub",
                        "stream_subscribers": 0
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.
    """
    state = request.app.state
    dispatcher = getattr(state, "dispatcher", None)
    provider = getattr(state, "provider", None)
    broadcaster = getattr(state, "broadcaster", None)

    checks = {
        "triage_config": "loaded" if getattr(state, "config_manager", None) else "not_loaded",
        "dispatcher": "running" if dispatcher and dispatcher.is_running else "stopped",
        "provider": provider.name if provider else "not_configured",
        "stream_subscribers": broadcaster.subscriber_count if broadcaster else 0
    }

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "tickets": {
                "prefix": "/tickets",
                "endpoints": [
                    "POST /tickets - Submit ticket",
                    "GET /tickets - List tickets",
                    "GET /tickets/{id} - Get ticket",
                    "POST /tickets/{id}/reply - Reply",
                    "POST /tickets/{id}/assign - Assign",
                    "GET /tickets/{id}/audit - Audit trail"
                ]
            },
            "agent": {
                "prefix": "/agent",
                "endpoints": [
                    "POST /agent/triage - Run triage",
                    "GET /agent/suggestion/{ticket_id} - Latest suggestion"
                ]
            },
            "notifications": {
                "prefix": "/notifications",
                "endpoints": ["GET /notifications/stream - Event stream"]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "helpdesk.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
