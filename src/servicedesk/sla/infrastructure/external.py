"""
SLA Escalation External Integrations
=====================================

Runtime integrations around the escalation engine:
- Wall-clock elapsed-time oracle
- YAML engine config with watchdog hot reload
- Sweep job and APScheduler wrapper for background evaluation
"""

import asyncio
import math
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from servicedesk.core import ConfigurationException
from servicedesk.shared.infrastructure.logging import get_logger
from servicedesk.sla.application.dto import SweepRunReport
from servicedesk.sla.application.services import (
    EscalationService,
    IElapsedTimeOracle,
    IEscalationConfigProvider,
)
from servicedesk.sla.domain import EscalationEngineConfig, SlaTracking

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WallClockElapsedOracle(IElapsedTimeOracle):
    """
    Elapsed minutes on a 24x7 calendar.

    Paused tracking stops counting at pause start, and finished pauses
    (total_paused_minutes) are subtracted. Business calendars and holidays
    plug in as another IElapsedTimeOracle.
    """

    async def elapsed_minutes(self, tracking: SlaTracking, until: datetime) -> float:
        if tracking.sla_start_time is None:
            return tracking.business_elapsed_minutes

        end = until
        if tracking.is_paused and tracking.pause_started_at is not None:
            end = min(until, tracking.pause_started_at)

        minutes = (end - tracking.sla_start_time).total_seconds() / 60
        minutes -= tracking.total_paused_minutes or 0
        return float(max(0, math.floor(minutes)))


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation config file changes."""

    def __init__(self, config_manager: "EscalationConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def _matches(self, event) -> bool:
        if event.is_directory:
            return False
        return Path(event.src_path).resolve() == self.config_path.resolve()

    def on_modified(self, event):
        if self._matches(event):
            logger.info("Escalation config file changed", extra={"path": event.src_path})
            self.config_manager.reload()

    # Editors that write via rename surface as a create
    def on_created(self, event):
        self.on_modified(event)


class EscalationConfigManager(IEscalationConfigProvider):
    """
    Thread-safe escalation engine configuration with hot-reload support.

    The watchdog observer calls reload() from its own thread; readers always
    get a complete config object.
    """

    def __init__(self):
        self._config: Optional[EscalationEngineConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> EscalationEngineConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: file exists but is not a valid config
        """
        self._path = Path(path)
        config = self._load_from_file(self._path)
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> EscalationEngineConfig:
        """Load and validate the YAML config file."""
        if not path.exists():
            logger.warning(
                "Escalation config file not found, using defaults",
                extra={"path": str(path)}
            )
            return EscalationEngineConfig()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationException(
                f"Escalation config is not valid YAML: {e}", {"path": str(path)}
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationException(
                "Escalation config must be a mapping", {"path": str(path)}
            )

        try:
            return EscalationEngineConfig(**data)
        except ValidationError as e:
            raise ConfigurationException(
                "Invalid escalation config",
                {"path": str(path), "errors": e.errors()}
            ) from e

    def reload(self) -> bool:
        """Reload configuration from file, keeping the old one on failure."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except ConfigurationException as e:
            logger.error(
                "Failed to reload escalation config, keeping previous",
                extra={"error": e.message, **e.details}
            )
            return False

        with self._lock:
            self._config = new_config
        logger.info(
            "Escalation configuration reloaded",
            extra={
                "recurring_breach_policy": new_config.recurring_breach_policy.value,
                "recipient_selection": new_config.recipient_selection.value,
            }
        )
        return True

    def start_watching(self) -> None:
        """
        Start watching the configuration file for changes.

        Skipped when the file does not exist or the platform has no
        file-system notifications.
        """
        if self._path is None:
            raise ConfigurationException("Escalation config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Escalation config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching escalation config", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning(
                "File watching not available, using static config",
                extra={"error": str(e)}
            )
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    @property
    def config(self) -> EscalationEngineConfig:
        """Get current configuration."""
        with self._lock:
            if self._config is None:
                raise ConfigurationException("Escalation configuration not loaded")
            return self._config

    def get_config(self) -> EscalationEngineConfig:
        return self.config


class EscalationSweepJob:
    """
    One scheduled sweep over all open tickets.

    Overlapping runs are refused with a `skipped` report; APScheduler's
    max_instances=1 covers the scheduled path, this covers manual triggers.
    """

    def __init__(
        self,
        service: EscalationService,
        clock: Callable[[], datetime] = _utcnow
    ):
        self._service = service
        self._clock = clock
        self._running = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._last_report: Optional[SweepRunReport] = None
        self._runs = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> Optional[SweepRunReport]:
        return self._last_report

    async def run(self) -> SweepRunReport:
        """Run the sweep and return its report. Never raises."""
        started_at = self._clock()

        if self._running:
            logger.warning("Escalation sweep already in progress, skipping run")
            return SweepRunReport(
                status="skipped",
                started_at=started_at,
                completed_at=started_at,
                duration_ms=0.0,
                reason="previous run still in progress",
            )

        self._running = True
        self._idle.clear()
        start = time.perf_counter()
        try:
            report = await self._sweep(started_at)
        finally:
            self._running = False
            self._idle.set()

        report.completed_at = self._clock()
        report.duration_ms = round((time.perf_counter() - start) * 1000, 2)
        self._last_report = report
        self._runs += 1

        logger.info(
            "Escalation sweep run finished",
            extra={
                "status": report.status,
                "tickets_processed": report.tickets_processed,
                "tickets_failed": report.tickets_failed,
                "escalations_triggered": report.escalations_triggered,
                "duration_ms": report.duration_ms,
            }
        )
        return report

    async def _sweep(self, started_at: datetime) -> SweepRunReport:
        try:
            results = await self._service.process_all_pending()
        except Exception as e:
            logger.exception("Escalation sweep failed", extra={"error": str(e)})
            return SweepRunReport(
                status="failed",
                started_at=started_at,
                cancelled=self._service.is_cancelled,
                errors=[str(e) or type(e).__name__],
                reason="sweep aborted",
            )

        failed = [r for r in results if not r.ok]
        return SweepRunReport(
            status="completed_with_errors" if failed else "success",
            started_at=started_at,
            tickets_processed=len(results),
            tickets_failed=len(failed),
            escalations_triggered=sum(len(r.fired) for r in results),
            cancelled=self._service.is_cancelled,
            errors=[f"{r.ticket_id}: {r.error}" for r in failed],
        )

    async def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for an in-flight run to finish. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def status(self) -> Dict[str, Any]:
        """Job state for health reporting."""
        return {
            "running": self._running,
            "runs": self._runs,
            "last_run": self._last_report.model_dump(mode="json") if self._last_report else None,
        }


class EscalationScheduler:
    """
    Wrapper for APScheduler for the background escalation sweep.

    Manages the lifecycle of the scheduler and its single job.
    """

    JOB_ID = "escalation_sweep"

    def __init__(self, interval_seconds: int = 300):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Escalation scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="Escalation Sweep Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Escalation scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self, wait: bool = True) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None

        self._running = False
        logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def next_run_time(self) -> Optional[datetime]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(self.JOB_ID)
        return job.next_run_time if job else None
