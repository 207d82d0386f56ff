"""Background jobs driven by the tenant job scheduler."""

from tenantsync.jobs.auto_reply import run_auto_reply
from tenantsync.jobs.campaigns import run_campaign_reconcile, run_campaign_sync
from tenantsync.jobs.lead_sync import run_lead_sync
from tenantsync.jobs.registry import build_runners

__all__ = [
    "build_runners",
    "run_auto_reply",
    "run_campaign_reconcile",
    "run_campaign_sync",
    "run_lead_sync",
]
