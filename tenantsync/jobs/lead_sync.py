"""Lead sync job: ingest every configured mailbox folder of a tenant."""

import asyncio
import logging

from tenantsync.core.exceptions import ConfigurationError
from tenantsync.integrations.domain import Provider
from tenantsync.integrations.sync_domain import OutcomeStatus, PartitionKey, PartitionKind, SyncOutcome
from tenantsync.jobs.context import JobDependencies, summarize
from tenantsync.services.scheduler_models import JobKind, JobResult

logger = logging.getLogger(__name__)


async def lead_partitions(deps: JobDependencies, tenant_id: str) -> list[PartitionKey]:
    """One partition per (mailbox, folder) of the tenant's lead config.

    Raises:
        ConfigurationError: If lead capture is off or no mailbox is configured.
    """
    config = await deps.tenant_configs.get_lead_config(tenant_id)
    if config is None or not config.enabled:
        raise ConfigurationError(tenant_id, "Lead capture is not enabled")
    if not config.mailboxes:
        raise ConfigurationError(tenant_id, "No mailbox configured for lead capture")

    folders = config.folders or deps.settings.LEAD_DEFAULT_FOLDERS
    return [
        PartitionKey(
            provider=Provider.MICROSOFT,
            kind=PartitionKind.LEADS,
            account=mailbox.lower(),
            folder=folder,
        )
        for mailbox in config.mailboxes
        for folder in folders
    ]


async def run_lead_sync(deps: JobDependencies, tenant_id: str) -> JobResult:
    """Sync all lead partitions of a tenant concurrently."""
    try:
        partitions = await lead_partitions(deps, tenant_id)
    except ConfigurationError as e:
        logger.warning("Lead sync not configured", extra={"tenant_id": tenant_id})
        return JobResult.from_statuses(
            tenant_id, JobKind.LEAD_SYNC, [OutcomeStatus.FAILED], error=e.message
        )

    outcomes: list[SyncOutcome] = await asyncio.gather(
        *(deps.sync_engine.sync_partition(tenant_id, partition) for partition in partitions)
    )
    return summarize(tenant_id, JobKind.LEAD_SYNC, outcomes)

