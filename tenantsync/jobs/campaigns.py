"""Campaign jobs: mirror remote campaigns and push pending local edits."""

import asyncio
import logging

from tenantsync.integrations.domain import Provider
from tenantsync.integrations.sync_domain import PartitionKey, PartitionKind, SyncOutcome
from tenantsync.jobs.context import JobDependencies, summarize
from tenantsync.services.scheduler_models import JobKind, JobResult

logger = logging.getLogger(__name__)

CAMPAIGN_SYNC_JOBS: dict[Provider, JobKind] = {
    Provider.LINKEDIN: JobKind.LINKEDIN_CAMPAIGN_SYNC,
    Provider.META: JobKind.META_CAMPAIGN_SYNC,
    Provider.GOOGLE_ADS: JobKind.GOOGLE_ADS_CAMPAIGN_SYNC,
}


async def run_campaign_sync(deps: JobDependencies, tenant_id: str, provider: Provider) -> JobResult:
    """Mirror the campaigns of every active ad account the tenant connected."""
    job_kind = CAMPAIGN_SYNC_JOBS[provider]
    accounts = await deps.tenant_configs.list_ad_accounts(tenant_id, provider)
    if not accounts:
        logger.info(
            "No ad accounts connected, nothing to sync",
            extra={"tenant_id": tenant_id, "provider": provider.value},
        )
        return JobResult.from_statuses(tenant_id, job_kind, [])

    partitions = [
        PartitionKey(provider=provider, kind=PartitionKind.CAMPAIGNS, account=account.account_id)
        for account in accounts
    ]
    outcomes: list[SyncOutcome] = await asyncio.gather(
        *(deps.sync_engine.sync_partition(tenant_id, partition) for partition in partitions)
    )
    return summarize(tenant_id, job_kind, outcomes)


async def run_campaign_reconcile(deps: JobDependencies, tenant_id: str) -> JobResult:
    """Reconcile every campaign whose desired state diverges from the remote."""
    outcomes = await deps.patch_engine.reconcile_pending(tenant_id)
    failed = [o for o in outcomes if o.error]
    return JobResult.from_statuses(
        tenant_id,
        JobKind.CAMPAIGN_RECONCILE,
        [o.status for o in outcomes],
        items_processed=sum(1 for o in outcomes if o.patched or o.created),
        items_failed=len(failed),
        error="; ".join(f"{o.local_id}: {o.error}" for o in failed) or None,
        authorization_url=next(
            (o.authorization_url for o in outcomes if o.authorization_url), None
        ),
        details={
            "entities": [
                {"local_id": o.local_id, "status": o.status.value, "changed_fields": o.changed_fields}
                for o in outcomes
            ]
        },
    )
