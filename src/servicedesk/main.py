"""
Service Desk SLA Escalation - Main Application
===============================================

Background worker that sweeps open tickets for due SLA escalations.

Clean Architecture Layers:
- Application: EscalationService orchestrator and DTOs
- Domain: entities, trigger evaluator, value objects
- Infrastructure: database, repositories, config watcher, scheduler

Run with:
    python -m servicedesk.main
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from servicedesk.config import Settings, get_settings
from servicedesk.infrastructure.database import (
    close_database, create_tables, get_session_factory, init_database
)
from servicedesk.shared.infrastructure.logging import get_logger, setup_logging
from servicedesk.sla.application import EscalationService, RecipientResolver
from servicedesk.sla.infrastructure import (
    EscalationConfigManager,
    EscalationScheduler,
    EscalationSweepJob,
    SQLAlchemyEscalationLog,
    SQLAlchemyEscalationRuleRepository,
    SQLAlchemyTrackingStore,
    SQLAlchemyUserDirectory,
    WallClockElapsedOracle,
)

logger = get_logger(__name__)

SHUTDOWN_GRACE_SECONDS = 30.0


@dataclass
class EscalationRuntime:
    """Long-lived collaborators built once at startup."""
    service: EscalationService
    sweep_job: EscalationSweepJob
    scheduler: EscalationScheduler
    config_manager: EscalationConfigManager


def build_service(config_manager: EscalationConfigManager) -> EscalationService:
    """Wire the SQL repositories into one escalation service."""
    session_factory = get_session_factory()
    return EscalationService(
        tracking_store=SQLAlchemyTrackingStore(session_factory, WallClockElapsedOracle()),
        rule_repository=SQLAlchemyEscalationRuleRepository(session_factory),
        escalation_log=SQLAlchemyEscalationLog(session_factory),
        recipient_resolver=RecipientResolver(SQLAlchemyUserDirectory(session_factory)),
        config_provider=config_manager,
    )


@asynccontextmanager
async def lifespan(settings: Settings) -> AsyncGenerator[EscalationRuntime, None]:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database (and tables in development)
    3. Load escalation configuration and start watching it
    4. Build the escalation service and sweep job
    5. Start the scheduler

    SHUTDOWN:
    1. Cancel the running sweep and wait for in-flight tickets
    2. Stop the scheduler
    3. Stop the config watcher
    4. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting escalation engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database(settings)
    if settings.create_tables_on_startup:
        logger.info("Creating database tables")
        await create_tables()

    config_manager = EscalationConfigManager()
    config_manager.load(settings.escalation_config_path)
    config_manager.start_watching()

    service = build_service(config_manager)
    sweep_job = EscalationSweepJob(service)
    scheduler = EscalationScheduler(interval_seconds=settings.escalation_sweep_interval)

    runtime = EscalationRuntime(
        service=service,
        sweep_job=sweep_job,
        scheduler=scheduler,
        config_manager=config_manager,
    )

    try:
        await scheduler.start(sweep_job.run)
        logger.info("Escalation engine started")
        yield runtime
    finally:
        # === SHUTDOWN ===
        logger.info("Shutting down escalation engine")
        service.cancel()
        if not await sweep_job.wait_until_idle(SHUTDOWN_GRACE_SECONDS):
            logger.warning(
                "Sweep still running at shutdown",
                extra={"grace_seconds": SHUTDOWN_GRACE_SECONDS}
            )
        await scheduler.stop(wait=False)
        config_manager.stop_watching()
        await close_database()
        logger.info("Escalation engine stopped")


async def run(settings: Optional[Settings] = None) -> None:
    """Run until SIGINT/SIGTERM."""
    settings = settings or get_settings()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    async with lifespan(settings):
        await stop_event.wait()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
