"""Worker process entry point.

Configures logging, rebuilds every tenant's job triggers from the persisted
job configs and runs until SIGINT/SIGTERM. Run with
``python -m tenantsync.main`` or the ``tenantsync-worker`` script.
"""

import asyncio
import logging
import signal

from tenantsync.core.config import Settings, get_settings


def _configure_logging(settings: Settings) -> None:
    """Set up logging based on LOG_FORMAT.

    json: Structured JSON via python-json-logger (for production).
    text: Human-readable format (for local development).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicate output
    root_logger.handlers.clear()

    handler = logging.StreamHandler()

    if settings.LOG_FORMAT == "json":
        from pythonjsonlogger.json import JsonFormatter

        formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "timestamp",
                "levelname": "level",
                "name": "service",
            },
            static_fields={"app": settings.APP_NAME},
        )
        handler.setFormatter(formatter)
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    root_logger.addHandler(handler)


logger = logging.getLogger(__name__)


async def run_worker(settings: Settings | None = None) -> None:
    """Run the tenant job scheduler until the process is signalled."""
    from tenantsync.integrations.providers import close_providers
    from tenantsync.integrations.service import configure_integration_service
    from tenantsync.jobs.context import build_supabase_dependencies
    from tenantsync.jobs.registry import build_runners
    from tenantsync.services.scheduler import TenantJobScheduler

    settings = settings or get_settings()
    logger.info("Starting tenantsync worker (%s)...", settings.APP_ENV)

    if not settings.ENABLE_SCHEDULER:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false), nothing to run")
        return

    deps = build_supabase_dependencies(settings)
    scheduler = TenantJobScheduler(deps.job_configs, build_runners(deps), notifier=deps.notifier)
    configure_integration_service(deps, scheduler)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await scheduler.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down tenantsync worker...")
        await scheduler.shutdown()
        await close_providers()


def main() -> None:
    settings = get_settings()
    _configure_logging(settings)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
