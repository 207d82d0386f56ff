"""Models for tenant-scoped recurring jobs.

Per (tenant_id, job_kind) the scheduler moves between three states:

    ABSENT --config enabled--> SCHEDULED --trigger fires--> RUNNING
    RUNNING --run completes (success or failure)--> SCHEDULED
    SCHEDULED --config disabled / cadence changed--> ABSENT (then SCHEDULED again)

A trigger that fires while its key is RUNNING is dropped, not queued.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from tenantsync.integrations.domain import Provider, parse_datetime
from tenantsync.integrations.sync_domain import OutcomeStatus

logger = logging.getLogger(__name__)


class JobKind(str, Enum):
    """Fixed set of recurring jobs a tenant can enable."""

    LEAD_SYNC = "lead-sync"
    AUTO_REPLY = "auto-reply"
    LINKEDIN_CAMPAIGN_SYNC = "linkedin-campaign-sync"
    META_CAMPAIGN_SYNC = "meta-campaign-sync"
    GOOGLE_ADS_CAMPAIGN_SYNC = "google-ads-campaign-sync"
    CAMPAIGN_RECONCILE = "campaign-reconcile"

    @property
    def provider(self) -> Provider | None:
        """Provider the job depends on, if it depends on exactly one."""
        return _JOB_PROVIDERS.get(self)


_JOB_PROVIDERS: dict[JobKind, Provider] = {
    JobKind.LEAD_SYNC: Provider.MICROSOFT,
    JobKind.AUTO_REPLY: Provider.MICROSOFT,
    JobKind.LINKEDIN_CAMPAIGN_SYNC: Provider.LINKEDIN,
    JobKind.META_CAMPAIGN_SYNC: Provider.META,
    JobKind.GOOGLE_ADS_CAMPAIGN_SYNC: Provider.GOOGLE_ADS,
}


class Cadence(str, Enum):
    """Fixed enumeration of recurring cadences."""

    EVERY_10_SECONDS = "EVERY_10_SECONDS"
    EVERY_30_MINUTES = "EVERY_30_MINUTES"
    EVERY_HOUR = "EVERY_HOUR"
    EVERY_DAY = "EVERY_DAY"

    @classmethod
    def parse(cls, value: str | None, default: "Cadence | None" = None) -> "Cadence":
        """Parse a stored cadence, falling back to the default for unknown values."""
        fallback = default or cls.EVERY_HOUR
        if value is None:
            return fallback
        try:
            return cls(str(value).upper())
        except ValueError:
            logger.warning(
                "Unknown cadence, falling back to default",
                extra={"cadence": value, "default": fallback.value},
            )
            return fallback


@dataclass
class ScheduledJobConfig:
    """Persisted schedule for one (tenant, job kind)."""

    tenant_id: str
    job_kind: JobKind
    cadence: Cadence = Cadence.EVERY_HOUR
    enabled: bool = True
    last_run_at: datetime | None = None
    last_run_status: OutcomeStatus | None = None

    @property
    def key(self) -> tuple[str, JobKind]:
        return (self.tenant_id, self.job_kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "job_kind": self.job_kind.value,
            "cadence": self.cadence.value,
            "enabled": self.enabled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_status": self.last_run_status.value if self.last_run_status else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_cadence: Cadence | None = None) -> "ScheduledJobConfig":
        status = data.get("last_run_status")
        return cls(
            tenant_id=data["tenant_id"],
            job_kind=JobKind(data["job_kind"]),
            cadence=Cadence.parse(data.get("cadence"), default_cadence),
            enabled=bool(data.get("enabled", True)),
            last_run_at=parse_datetime(data.get("last_run_at")),
            last_run_status=OutcomeStatus(status) if status else None,
        )


@dataclass
class JobResult:
    """Aggregated result of one job run, handed back to the scheduler."""

    tenant_id: str
    job_kind: JobKind
    status: OutcomeStatus
    items_processed: int = 0
    items_failed: int = 0
    error: str | None = None
    authorization_url: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @classmethod
    def from_statuses(
        cls,
        tenant_id: str,
        job_kind: JobKind,
        statuses: Iterable[OutcomeStatus],
        **kwargs: Any,
    ) -> "JobResult":
        """Fold per-unit statuses into one job status.

        NEEDS_AUTH wins because it requires tenant action. Otherwise the job is
        SUCCESS when every unit succeeded, PARTIAL when some did, and the worst
        failure kind when none did. A job with no units is a SUCCESS.
        """
        collected = list(statuses)
        if OutcomeStatus.NEEDS_AUTH in collected:
            status = OutcomeStatus.NEEDS_AUTH
        elif not collected or all(s == OutcomeStatus.SUCCESS for s in collected):
            status = OutcomeStatus.SUCCESS
        elif any(s in (OutcomeStatus.SUCCESS, OutcomeStatus.PARTIAL) for s in collected):
            status = OutcomeStatus.PARTIAL
        elif OutcomeStatus.FAILED in collected:
            status = OutcomeStatus.FAILED
        else:
            status = OutcomeStatus.RETRYABLE
        return cls(tenant_id=tenant_id, job_kind=job_kind, status=status, **kwargs)

    def finish(self) -> "JobResult":
        self.completed_at = datetime.now(UTC)
        return self
