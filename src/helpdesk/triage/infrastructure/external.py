"""
Triage External Service Integrations
======================================

Collaborators of the triage pipeline that live outside the database:
- YAML policy file with watchdog hot-reload
- Notification emitters (webhook, in-process stream, fan-out)
- APScheduler dispatcher for detached triage runs
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Any, List, Set

import yaml
import httpx
from pydantic import ValidationError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from helpdesk.triage.application import (
    INotificationEmitter, ITriageConfigProvider, TriageOrchestrator
)
from helpdesk.triage.domain import NotificationEvent, TriageConfig
from helpdesk.core import ConfigurationException
from helpdesk.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Policy configuration ==========

class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for policy file changes."""

    def __init__(self, config_manager: "TriageConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info(f"Triage config file changed: {event.src_path}")
            self.config_manager.reload()


class TriageConfigManager(ITriageConfigProvider):
    """
    Thread-safe holder of the auto-close policy.

    The policy is read from a YAML file, reloaded when the file changes and
    can be updated at runtime. ``get_config`` always returns a complete
    snapshot; a run never observes half of an update.
    """

    def __init__(self):
        self._config: Optional[TriageConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> TriageConfig:
        """Initial configuration load."""
        self._path = path
        config = self._load_from_file(path)
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> TriageConfig:
        if not path.exists():
            logger.warning(f"Triage config file not found: {path}, using defaults")
            return TriageConfig()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        try:
            return TriageConfig(**data)
        except ValidationError as e:
            raise ConfigurationException(f"Invalid triage config in {path}: {e}") from e

    def reload(self) -> bool:
        """Reload from file, keeping the previous policy if the file is invalid."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError, ConfigurationException) as e:
            logger.error(f"Failed to reload triage config: {e}")
            return False

        with self._lock:
            self._config = new_config
        logger.info(
            "Triage configuration reloaded",
            extra=new_config.model_dump()
        )
        return True

    def update(self, **changes: Any) -> TriageConfig:
        """
        Replace policy fields and persist the result when a file is loaded.

        Raises:
            ConfigurationException: If the changed policy is invalid
        """
        with self._lock:
            current = self._config or TriageConfig()
            try:
                new_config = TriageConfig(**{**current.model_dump(), **changes})
            except ValidationError as e:
                raise ConfigurationException(f"Invalid triage config update: {e}") from e
            self._config = new_config

        if self._path is not None:
            with open(self._path, "w") as f:
                yaml.safe_dump(new_config.model_dump(), f, sort_keys=False)

        logger.info("Triage configuration updated", extra=new_config.model_dump())
        return new_config

    def get_config(self) -> TriageConfig:
        with self._lock:
            return self._config or TriageConfig()

    def start_watching(self) -> None:
        """
        Watch the policy file for changes.

        Skipped when the file does not exist or the platform cannot watch it.
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                f"Config file doesn't exist, skipping file watch: {self._path}. "
                "Using default triage configuration."
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info(f"Started watching config file: {self._path}")
        except OSError as e:
            logger.warning(f"File watching not available, using static config: {e}")
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None


# ========== Notifications ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling a failing endpoint for a while.

    CLOSED lets calls through; OPEN rejects them for ``recovery_timeout``
    seconds after ``failure_threshold`` consecutive failures; HALF_OPEN lets
    a probe through.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class WebhookNotificationEmitter(INotificationEmitter):
    """
    POSTs notification events as JSON to a webhook.

    One attempt per event. Delivery failures are logged and reported as
    False; they never reach the caller as exceptions.
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self._webhook_url = webhook_url
        self._timeout_seconds = timeout_seconds
        self._http_client = client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._http_client

    async def publish(self, event: NotificationEvent) -> bool:
        if not self._webhook_url:
            logger.debug("Notification webhook URL not configured, skipping")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping notification",
                extra={"ticket_id": event.ticket_id, "type": event.type}
            )
            return False

        try:
            client = await self._get_client()
            response = await client.post(self._webhook_url, json=event.to_dict())
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            self._circuit_breaker.record_failure()
            logger.error(
                "Notification delivery failed",
                extra={"error": str(e), "ticket_id": event.ticket_id, "type": event.type}
            )
            return False

        if response.is_success:
            self._circuit_breaker.record_success()
            logger.info(
                "Notification sent",
                extra={"ticket_id": event.ticket_id, "type": event.type}
            )
            return True

        self._circuit_breaker.record_failure()
        logger.warning(
            "Notification webhook returned non-2xx",
            extra={"status_code": response.status_code, "ticket_id": event.ticket_id}
        )
        return False

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class InMemoryNotificationBroadcaster(INotificationEmitter):
    """
    Fans events out to in-process subscribers (the SSE stream).

    Each subscriber owns a bounded queue; a subscriber whose queue is full
    is dropped instead of slowing down publishers.
    """

    def __init__(self, max_queue_size: int = 100):
        self._max_queue_size = max_queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def is_subscribed(self, queue: asyncio.Queue) -> bool:
        return queue in self._subscribers

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: NotificationEvent) -> bool:
        payload = event.to_dict()
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                self._subscribers.discard(queue)
                logger.warning(
                    "Notification subscriber fell behind, dropping it",
                    extra={"ticket_id": event.ticket_id, "type": event.type}
                )
        return True


class CompositeNotificationEmitter(INotificationEmitter):
    """Publishes each event to every wrapped emitter."""

    def __init__(self, emitters: List[INotificationEmitter]):
        self._emitters = list(emitters)

    async def publish(self, event: NotificationEvent) -> bool:
        results = [await emitter.publish(event) for emitter in self._emitters]
        return all(results)


# ========== Detached triage runs ==========

class TriageDispatcher:
    """
    Runs triage in the background on an APScheduler event loop scheduler.

    Ticket creation schedules a run and returns immediately. A failed run is
    rescheduled up to ``retries`` times with linear backoff, then given up
    with an error log; the partial audit trail shows where it stopped.
    """

    def __init__(
        self,
        orchestrator: TriageOrchestrator,
        scheduler: Optional[AsyncIOScheduler] = None,
        retries: int = 0,
        backoff_seconds: float = 30.0
    ):
        self._orchestrator = orchestrator
        self._scheduler = scheduler
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._running = False

    async def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            logger.warning("Triage dispatcher already running")
            return

        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.start()
        self._running = True
        logger.info(
            "Triage dispatcher started",
            extra={"retries": self.retries, "backoff_seconds": self.backoff_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler; pending runs are dropped."""
        if not self._running:
            return

        self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Triage dispatcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def submit(self, ticket_id: str, attempt: int = 1, delay_seconds: float = 0.0) -> str:
        """Schedule a triage run; returns the job ID."""
        if self._scheduler is None:
            raise RuntimeError("Dispatcher not started. Call start() first.")

        job_id = f"triage:{ticket_id}:{attempt}"
        self._scheduler.add_job(
            self._run_job,
            "date",
            run_date=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds),
            args=[ticket_id, attempt],
            id=job_id,
            name=f"Triage {ticket_id}",
            misfire_grace_time=None,
            replace_existing=True
        )
        logger.debug(
            "Triage run scheduled",
            extra={"ticket_id": ticket_id, "attempt": attempt, "delay_seconds": delay_seconds}
        )
        return job_id

    async def _run_job(self, ticket_id: str, attempt: int) -> None:
        try:
            await self._orchestrator.triage(ticket_id)
        except Exception as e:
            if attempt <= self.retries:
                delay = self.backoff_seconds * attempt
                logger.warning(
                    "Triage run failed, rescheduling",
                    extra={
                        "ticket_id": ticket_id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error": str(e)
                    }
                )
                self.submit(ticket_id, attempt=attempt + 1, delay_seconds=delay)
            else:
                logger.error(
                    "Triage run failed, giving up",
                    extra={"ticket_id": ticket_id, "attempt": attempt, "error": str(e)},
                    exc_info=True
                )
