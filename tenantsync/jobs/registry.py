"""Maps every job kind to the coroutine that runs it for one tenant."""

from functools import partial

from tenantsync.jobs.auto_reply import run_auto_reply
from tenantsync.jobs.campaigns import CAMPAIGN_SYNC_JOBS, run_campaign_reconcile, run_campaign_sync
from tenantsync.jobs.context import JobDependencies
from tenantsync.jobs.lead_sync import run_lead_sync
from tenantsync.services.scheduler import JobRunner
from tenantsync.services.scheduler_models import JobKind


def build_runners(deps: JobDependencies) -> dict[JobKind, JobRunner]:
    runners: dict[JobKind, JobRunner] = {
        JobKind.LEAD_SYNC: partial(run_lead_sync, deps),
        JobKind.AUTO_REPLY: partial(run_auto_reply, deps),
        JobKind.CAMPAIGN_RECONCILE: partial(run_campaign_reconcile, deps),
    }
    for provider, job_kind in CAMPAIGN_SYNC_JOBS.items():
        runners[job_kind] = partial(run_campaign_sync, deps, provider=provider)
    return runners
