"""Per-tenant recurring job scheduler.

Uses APScheduler to install one trigger per (tenant_id, job_kind) from the
persisted job configs. Each firing runs as its own asyncio task, so a slow
tenant never holds back another tenant's trigger. A firing whose key is
still running is dropped, not queued.

Cadences:
- EVERY_10_SECONDS: IntervalTrigger(seconds=10)
- EVERY_30_MINUTES: CronTrigger(minute="*/30")
- EVERY_HOUR: CronTrigger(minute=0)
- EVERY_DAY: CronTrigger(hour=0, minute=0)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from tenantsync.core.exceptions import sanitize_error
from tenantsync.db.base import JobConfigStore
from tenantsync.integrations.sync_domain import OutcomeStatus
from tenantsync.services.notification_service import NotificationEvent, NotificationService
from tenantsync.services.scheduler_models import Cadence, JobKind, JobResult, ScheduledJobConfig

logger = logging.getLogger(__name__)

JobRunner = Callable[[str], Awaitable[JobResult]]
JobKey = tuple[str, JobKind]


def build_trigger(cadence: Cadence) -> BaseTrigger:
    """Map a cadence to its APScheduler trigger."""
    if cadence == Cadence.EVERY_10_SECONDS:
        return IntervalTrigger(seconds=10)
    if cadence == Cadence.EVERY_30_MINUTES:
        return CronTrigger(minute="*/30")
    if cadence == Cadence.EVERY_DAY:
        return CronTrigger(hour=0, minute=0)
    return CronTrigger(minute=0)


def job_id(tenant_id: str, job_kind: JobKind) -> str:
    return f"{tenant_id}:{job_kind.value}"


class TenantJobScheduler:
    """Owns the trigger registry and the in-flight set for all tenants."""

    def __init__(
        self,
        config_store: JobConfigStore,
        runners: dict[JobKind, JobRunner],
        notifier: NotificationService | None = None,
        scheduler: Any = None,
    ) -> None:
        self._configs = config_store
        self._runners = runners
        self._notifier = notifier
        self._scheduler = scheduler if scheduler is not None else AsyncIOScheduler()
        self._triggers: dict[JobKey, Cadence] = {}
        self._running: set[JobKey] = set()
        self._tasks: dict[JobKey, asyncio.Task[JobResult]] = {}

    @property
    def scheduled(self) -> dict[JobKey, Cadence]:
        """Live triggers by key."""
        return dict(self._triggers)

    def is_running(self, tenant_id: str, job_kind: JobKind) -> bool:
        return (tenant_id, job_kind) in self._running

    async def start(self) -> int:
        """Rebuild every trigger from persisted configs and start firing.

        Returns:
            Number of triggers installed.
        """
        configs = await self._configs.list_enabled()
        for config in configs:
            self._install(config)
        self._scheduler.start()
        logger.info("Tenant job scheduler started with %d triggers", len(self._triggers))
        return len(self._triggers)

    async def apply_config(self, config: ScheduledJobConfig) -> None:
        """Persist a job config and bring its trigger in line with it."""
        await self._configs.save(config)
        self.remove(config.tenant_id, config.job_kind)
        if config.enabled:
            self._install(config)

    def _install(self, config: ScheduledJobConfig) -> None:
        if config.job_kind not in self._runners:
            logger.warning(
                "No runner for job kind, trigger not installed",
                extra={"tenant_id": config.tenant_id, "job_kind": config.job_kind.value},
            )
            return
        key = config.key
        # One live trigger per key: the old one goes before the new one.
        self.remove(*key)
        self._scheduler.add_job(
            self._on_trigger,
            trigger=build_trigger(config.cadence),
            args=[config.tenant_id, config.job_kind],
            id=job_id(*key),
            name=f"{config.job_kind.value} for {config.tenant_id}",
            replace_existing=True,
        )
        self._triggers[key] = config.cadence
        logger.info(
            "Job trigger installed",
            extra={
                "tenant_id": config.tenant_id,
                "job_kind": config.job_kind.value,
                "cadence": config.cadence.value,
            },
        )

    def remove(self, tenant_id: str, job_kind: JobKind) -> bool:
        """Cancel the trigger for a key. An in-flight run is not interrupted."""
        key = (tenant_id, job_kind)
        try:
            self._scheduler.remove_job(job_id(tenant_id, job_kind))
        except JobLookupError:
            pass
        removed = self._triggers.pop(key, None) is not None
        if removed:
            logger.info(
                "Job trigger removed",
                extra={"tenant_id": tenant_id, "job_kind": job_kind.value},
            )
        return removed

    async def _on_trigger(self, tenant_id: str, job_kind: JobKind) -> None:
        self._fire(tenant_id, job_kind)

    def _fire(self, tenant_id: str, job_kind: JobKind) -> asyncio.Task[JobResult] | None:
        """Start a run for the key unless one is already in flight."""
        key = (tenant_id, job_kind)
        if key in self._running:
            logger.info(
                "Job still running, firing dropped",
                extra={"tenant_id": tenant_id, "job_kind": job_kind.value},
            )
            return None
        self._running.add(key)
        task = asyncio.get_running_loop().create_task(self._execute(tenant_id, job_kind))
        self._tasks[key] = task
        return task

    async def run_now(self, tenant_id: str, job_kind: JobKind) -> JobResult | None:
        """Run a job immediately through the same overlap guard.

        Returns:
            The result, or None if a run for the key was already in flight.
        """
        task = self._fire(tenant_id, job_kind)
        if task is None:
            return None
        return await task

    async def _execute(self, tenant_id: str, job_kind: JobKind) -> JobResult:
        key = (tenant_id, job_kind)
        log_context = {"tenant_id": tenant_id, "job_kind": job_kind.value}
        try:
            runner = self._runners[job_kind]
            try:
                result = await runner(tenant_id)
            except Exception as e:
                logger.exception("Job run failed", extra=log_context)
                result = JobResult(
                    tenant_id=tenant_id,
                    job_kind=job_kind,
                    status=OutcomeStatus.FAILED,
                    error=sanitize_error(e),
                )
            result.finish()
            logger.info(
                "Job run finished",
                extra={
                    **log_context,
                    "status": result.status.value,
                    "items_processed": result.items_processed,
                    "items_failed": result.items_failed,
                },
            )
            try:
                await self._configs.record_run(
                    tenant_id, job_kind, result.completed_at, result.status
                )
            except Exception:
                logger.warning("Could not record job run", extra=log_context, exc_info=True)
            await self._notify(result)
            return result
        finally:
            self._running.discard(key)
            self._tasks.pop(key, None)

    async def _notify(self, result: JobResult) -> None:
        if self._notifier is None:
            return
        if result.status == OutcomeStatus.NEEDS_AUTH:
            await self._notifier.notify(
                result.tenant_id,
                NotificationEvent.SYNC_NEEDS_AUTHORIZATION,
                {
                    "job_kind": result.job_kind.value,
                    "authorization_url": result.authorization_url,
                },
            )
        elif (
            result.status in (OutcomeStatus.SUCCESS, OutcomeStatus.PARTIAL)
            and result.items_processed > 0
        ):
            await self._notifier.notify(
                result.tenant_id,
                NotificationEvent.SYNC_COMPLETED,
                {
                    "job_kind": result.job_kind.value,
                    "status": result.status.value,
                    "items_processed": result.items_processed,
                },
            )

    async def shutdown(self) -> None:
        """Stop firing and wait for in-flight runs to finish."""
        if getattr(self._scheduler, "running", False):
            self._scheduler.shutdown(wait=False)
        tasks = list(self._tasks.values())
        if tasks:
            logger.info("Waiting for %d in-flight jobs", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
        self._triggers.clear()
        logger.info("Tenant job scheduler stopped")
