"""Tests for the per-tenant job scheduler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from tenantsync.db.memory import InMemoryJobConfigStore
from tenantsync.integrations.sync_domain import OutcomeStatus
from tenantsync.services.notification_service import NotificationEvent
from tenantsync.services.scheduler import TenantJobScheduler, build_trigger, job_id
from tenantsync.services.scheduler_models import Cadence, JobKind, JobResult, ScheduledJobConfig


def _result(
    tenant_id: str,
    status: OutcomeStatus = OutcomeStatus.SUCCESS,
    items: int = 0,
    job_kind: JobKind = JobKind.LEAD_SYNC,
) -> JobResult:
    return JobResult(tenant_id=tenant_id, job_kind=job_kind, status=status, items_processed=items)


@pytest.fixture
def apscheduler() -> MagicMock:
    return MagicMock()


@pytest.fixture
def store() -> InMemoryJobConfigStore:
    return InMemoryJobConfigStore(
        [
            ScheduledJobConfig("tenant-1", JobKind.LEAD_SYNC, Cadence.EVERY_10_SECONDS),
            ScheduledJobConfig("tenant-2", JobKind.LEAD_SYNC, Cadence.EVERY_DAY),
            ScheduledJobConfig("tenant-2", JobKind.AUTO_REPLY, enabled=False),
        ]
    )


def _scheduler(
    store: InMemoryJobConfigStore,
    apscheduler: MagicMock,
    runner: AsyncMock | None = None,
    notifier: MagicMock | None = None,
) -> TenantJobScheduler:
    runner = runner or AsyncMock(side_effect=lambda tenant_id: _result(tenant_id))
    return TenantJobScheduler(
        store,
        {JobKind.LEAD_SYNC: runner, JobKind.AUTO_REPLY: runner},
        notifier=notifier,
        scheduler=apscheduler,
    )


class TestBuildTrigger:
    """Cadence to trigger mapping."""

    def test_ten_seconds_is_an_interval(self) -> None:
        trigger = build_trigger(Cadence.EVERY_10_SECONDS)
        assert isinstance(trigger, IntervalTrigger)
        assert trigger.interval.total_seconds() == 10

    @pytest.mark.parametrize(
        "cadence", [Cadence.EVERY_30_MINUTES, Cadence.EVERY_HOUR, Cadence.EVERY_DAY]
    )
    def test_longer_cadences_are_cron(self, cadence: Cadence) -> None:
        assert isinstance(build_trigger(cadence), CronTrigger)

    def test_unknown_cadence_parses_to_hourly(self) -> None:
        assert Cadence.parse("EVERY_FORTNIGHT") == Cadence.EVERY_HOUR
        assert Cadence.parse("every_day") == Cadence.EVERY_DAY


class TestTriggers:
    """Installing and removing triggers."""

    @pytest.mark.asyncio
    async def test_start_installs_enabled_configs(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock
    ) -> None:
        scheduler = _scheduler(store, apscheduler)

        installed = await scheduler.start()

        assert installed == 2
        assert scheduler.scheduled == {
            ("tenant-1", JobKind.LEAD_SYNC): Cadence.EVERY_10_SECONDS,
            ("tenant-2", JobKind.LEAD_SYNC): Cadence.EVERY_DAY,
        }
        apscheduler.start.assert_called_once()
        job_ids = {call.kwargs["id"] for call in apscheduler.add_job.call_args_list}
        assert job_ids == {"tenant-1:lead-sync", "tenant-2:lead-sync"}

    @pytest.mark.asyncio
    async def test_cadence_change_replaces_trigger(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock
    ) -> None:
        """Test that a key never has two live triggers."""
        scheduler = _scheduler(store, apscheduler)
        await scheduler.start()

        await scheduler.apply_config(
            ScheduledJobConfig("tenant-1", JobKind.LEAD_SYNC, Cadence.EVERY_30_MINUTES)
        )

        assert scheduler.scheduled[("tenant-1", JobKind.LEAD_SYNC)] == Cadence.EVERY_30_MINUTES
        apscheduler.remove_job.assert_any_call(job_id("tenant-1", JobKind.LEAD_SYNC))
        stored = await store.get("tenant-1", JobKind.LEAD_SYNC)
        assert stored is not None
        assert stored.cadence == Cadence.EVERY_30_MINUTES

    @pytest.mark.asyncio
    async def test_disabling_removes_trigger(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock
    ) -> None:
        scheduler = _scheduler(store, apscheduler)
        await scheduler.start()

        await scheduler.apply_config(
            ScheduledJobConfig("tenant-2", JobKind.LEAD_SYNC, Cadence.EVERY_DAY, enabled=False)
        )

        assert ("tenant-2", JobKind.LEAD_SYNC) not in scheduler.scheduled
        assert ("tenant-1", JobKind.LEAD_SYNC) in scheduler.scheduled

    def test_remove_unknown_key(self, store: InMemoryJobConfigStore, apscheduler: MagicMock) -> None:
        scheduler = _scheduler(store, apscheduler)
        assert scheduler.remove("tenant-9", JobKind.LEAD_SYNC) is False

    @pytest.mark.asyncio
    async def test_kind_without_runner_is_not_installed(self, apscheduler: MagicMock) -> None:
        store = InMemoryJobConfigStore([ScheduledJobConfig("tenant-1", JobKind.META_CAMPAIGN_SYNC)])
        scheduler = _scheduler(store, apscheduler)

        assert await scheduler.start() == 0
        apscheduler.add_job.assert_not_called()


class TestRuns:
    """Execution, overlap and bookkeeping."""

    @pytest.mark.asyncio
    async def test_run_now_records_run(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock
    ) -> None:
        scheduler = _scheduler(store, apscheduler)

        result = await scheduler.run_now("tenant-1", JobKind.LEAD_SYNC)

        assert result is not None
        assert result.status == OutcomeStatus.SUCCESS
        assert result.completed_at is not None
        stored = await store.get("tenant-1", JobKind.LEAD_SYNC)
        assert stored is not None
        assert stored.last_run_status == OutcomeStatus.SUCCESS
        assert stored.last_run_at == result.completed_at
        assert not scheduler.is_running("tenant-1", JobKind.LEAD_SYNC)

    @pytest.mark.asyncio
    async def test_overlapping_firing_is_dropped(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock
    ) -> None:
        """Test that a key already running drops the new firing."""
        release = asyncio.Event()

        async def slow(tenant_id: str) -> JobResult:
            await release.wait()
            return _result(tenant_id)

        runner = AsyncMock(side_effect=slow)
        scheduler = _scheduler(store, apscheduler, runner=runner)

        first = asyncio.create_task(scheduler.run_now("tenant-1", JobKind.LEAD_SYNC))
        await asyncio.sleep(0)
        assert scheduler.is_running("tenant-1", JobKind.LEAD_SYNC)

        assert await scheduler.run_now("tenant-1", JobKind.LEAD_SYNC) is None

        release.set()
        assert (await first) is not None
        assert runner.await_count == 1

    @pytest.mark.asyncio
    async def test_other_tenants_run_concurrently(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock
    ) -> None:
        release = asyncio.Event()

        async def slow(tenant_id: str) -> JobResult:
            if tenant_id == "tenant-1":
                await release.wait()
            return _result(tenant_id)

        scheduler = _scheduler(store, apscheduler, runner=AsyncMock(side_effect=slow))

        blocked = asyncio.create_task(scheduler.run_now("tenant-1", JobKind.LEAD_SYNC))
        await asyncio.sleep(0)

        other = await scheduler.run_now("tenant-2", JobKind.LEAD_SYNC)

        assert other is not None
        assert scheduler.is_running("tenant-1", JobKind.LEAD_SYNC)
        release.set()
        await blocked

    @pytest.mark.asyncio
    async def test_runner_exception_is_a_failed_run(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock
    ) -> None:
        runner = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = _scheduler(store, apscheduler, runner=runner)

        result = await scheduler.run_now("tenant-1", JobKind.LEAD_SYNC)

        assert result is not None
        assert result.status == OutcomeStatus.FAILED
        assert result.error is not None
        assert "boom" not in result.error
        assert not scheduler.is_running("tenant-1", JobKind.LEAD_SYNC)

    @pytest.mark.asyncio
    async def test_trigger_callback_starts_run(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock
    ) -> None:
        runner = AsyncMock(side_effect=lambda tenant_id: _result(tenant_id))
        scheduler = _scheduler(store, apscheduler, runner=runner)
        await scheduler.start()
        callback = apscheduler.add_job.call_args_list[0].args[0]
        args = apscheduler.add_job.call_args_list[0].kwargs["args"]

        await callback(*args)
        await scheduler.shutdown()

        runner.assert_awaited_once_with(args[0])


class TestNotifications:
    """Run results reported to tenants."""

    @pytest.mark.asyncio
    async def test_completed_run_with_items_notifies(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock, notifier: MagicMock
    ) -> None:
        runner = AsyncMock(side_effect=lambda tenant_id: _result(tenant_id, items=3))
        scheduler = _scheduler(store, apscheduler, runner=runner, notifier=notifier)

        await scheduler.run_now("tenant-1", JobKind.LEAD_SYNC)

        notifier.notify.assert_awaited_once()
        tenant_id, event, payload = notifier.notify.await_args.args
        assert tenant_id == "tenant-1"
        assert event == NotificationEvent.SYNC_COMPLETED
        assert payload["items_processed"] == 3

    @pytest.mark.asyncio
    async def test_empty_run_is_silent(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock, notifier: MagicMock
    ) -> None:
        scheduler = _scheduler(store, apscheduler, notifier=notifier)

        await scheduler.run_now("tenant-1", JobKind.LEAD_SYNC)

        notifier.notify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_needs_auth_carries_authorization_url(
        self, store: InMemoryJobConfigStore, apscheduler: MagicMock, notifier: MagicMock
    ) -> None:
        def needs_auth(tenant_id: str) -> JobResult:
            result = _result(tenant_id, OutcomeStatus.NEEDS_AUTH)
            result.authorization_url = "https://login.example.com/consent"
            return result

        scheduler = _scheduler(
            store, apscheduler, runner=AsyncMock(side_effect=needs_auth), notifier=notifier
        )

        await scheduler.run_now("tenant-1", JobKind.LEAD_SYNC)

        _, event, payload = notifier.notify.await_args.args
        assert event == NotificationEvent.SYNC_NEEDS_AUTHORIZATION
        assert payload["authorization_url"] == "https://login.example.com/consent"


class TestJobResult:
    """Folding unit statuses into one job status."""

    @pytest.mark.parametrize(
        ("statuses", "expected"),
        [
            ([], OutcomeStatus.SUCCESS),
            ([OutcomeStatus.SUCCESS, OutcomeStatus.SUCCESS], OutcomeStatus.SUCCESS),
            ([OutcomeStatus.SUCCESS, OutcomeStatus.FAILED], OutcomeStatus.PARTIAL),
            ([OutcomeStatus.FAILED, OutcomeStatus.RETRYABLE], OutcomeStatus.FAILED),
            ([OutcomeStatus.RETRYABLE], OutcomeStatus.RETRYABLE),
            ([OutcomeStatus.SUCCESS, OutcomeStatus.NEEDS_AUTH], OutcomeStatus.NEEDS_AUTH),
        ],
    )
    def test_from_statuses(self, statuses: list[OutcomeStatus], expected: OutcomeStatus) -> None:
        result = JobResult.from_statuses("tenant-1", JobKind.LEAD_SYNC, statuses)
        assert result.status == expected
