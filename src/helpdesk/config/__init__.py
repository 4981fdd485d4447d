"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="helpdesk-triage", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/helpdesk",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Triage Provider ==========
    triage_provider: str = Field(
        default="stub",
        description="Classification/drafting provider: 'stub' (keyword heuristic) or 'llm'"
    )
    llm_api_key: Optional[str] = Field(
        default=None,
        description="API key for the OpenAI-compatible inference endpoint"
    )
    llm_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of an OpenAI-compatible endpoint (None for api.openai.com)"
    )
    llm_model: str = Field(default="gpt-4o-mini", description="Model for classification and drafting")
    llm_temperature: float = Field(
        default=0.3,
        description="Sampling temperature for LLM calls",
        ge=0.0,
        le=1.0
    )
    llm_max_tokens: int = Field(
        default=800,
        description="Max tokens for LLM generation",
        ge=1,
        le=8000
    )

    # ========== Triage Orchestration ==========
    triage_step_timeout_ms: int = Field(
        default=1500,
        description="Time budget for a single classify/draft attempt",
        ge=1
    )
    triage_max_retries: int = Field(
        default=2,
        description="Additional attempts after the first failed classify/draft attempt",
        ge=0
    )
    triage_backoff_ms: int = Field(
        default=100,
        description="Linear backoff unit between attempts (delay = unit * attempt number)",
        ge=0
    )
    triage_kb_limit: int = Field(
        default=3,
        description="Maximum candidate documents handed to the drafting step",
        ge=0,
        le=3
    )
    triage_lock_backend: str = Field(
        default="memory",
        description="Single-flight lock backend: 'memory' (process-local) or 'database' (lease)"
    )
    triage_lease_seconds: int = Field(
        default=300,
        description="Expiry of a database triage lease held by a crashed process",
        ge=1
    )
    triage_dispatch_retries: int = Field(
        default=0,
        description="Re-submissions of a failed detached triage run before giving up",
        ge=0
    )
    triage_dispatch_backoff_seconds: float = Field(
        default=30.0,
        description="Linear backoff unit between detached triage re-submissions",
        ge=0
    )
    triage_config_path: Path = Field(
        default=Path("triage_config.yaml"),
        description="Path to the auto-close policy YAML file"
    )

    # ========== Notifications ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving ticket notification events"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for webhook notification calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "testing", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("triage_provider")
    @classmethod
    def validate_triage_provider(cls, v: str) -> str:
        if v not in PROVIDER_NAMES:
            raise ValueError(f"triage_provider must be one of {PROVIDER_NAMES}")
        return v

    @field_validator("triage_lock_backend")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        if v not in LOCK_BACKENDS:
            raise ValueError(f"triage_lock_backend must be one of {LOCK_BACKENDS}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class TicketCategory(str):
    """Ticket categories, also the classifier's label set."""
    BILLING = "billing"
    TECH = "tech"
    SHIPPING = "shipping"
    OTHER = "other"


class TicketStatus(str):
    """Ticket lifecycle statuses."""
    OPEN = "open"
    TRIAGED = "triaged"
    WAITING_HUMAN = "waiting_human"
    RESOLVED = "resolved"
    CLOSED = "closed"


class AuditActor(str):
    """Who performed an audited action."""
    SYSTEM = "system"
    AGENT = "agent"
    USER = "user"


class AuditAction(str):
    """Audit action vocabulary."""
    TICKET_CREATED = "TICKET_CREATED"
    TICKET_RECEIVED = "TICKET_RECEIVED"
    AGENT_CLASSIFIED = "AGENT_CLASSIFIED"
    KB_RETRIEVED = "KB_RETRIEVED"
    DRAFT_GENERATED = "DRAFT_GENERATED"
    AUTO_CLOSED = "AUTO_CLOSED"
    ASSIGNED_TO_HUMAN = "ASSIGNED_TO_HUMAN"
    REPLY_SENT = "REPLY_SENT"


class NotificationType(str):
    """Notification event types."""
    TICKET_CREATED = "TICKET_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    REPLY_SENT = "REPLY_SENT"
    ASSIGNED_TO_HUMAN = "ASSIGNED_TO_HUMAN"


class ArticleStatus(str):
    """Knowledge-base article publication states."""
    DRAFT = "draft"
    PUBLISHED = "published"


# ========== Lists for validation ==========

TICKET_CATEGORIES = [
    TicketCategory.BILLING, TicketCategory.TECH,
    TicketCategory.SHIPPING, TicketCategory.OTHER
]
VALID_STATUSES = [
    TicketStatus.OPEN, TicketStatus.TRIAGED, TicketStatus.WAITING_HUMAN,
    TicketStatus.RESOLVED, TicketStatus.CLOSED
]
VALID_ACTORS = [AuditActor.SYSTEM, AuditActor.AGENT, AuditActor.USER]
PROVIDER_NAMES = ["stub", "llm"]
LOCK_BACKENDS = ["memory", "database"]


# Global settings instance
settings = get_settings()
