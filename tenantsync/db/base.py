"""Store interfaces used by the sync engine.

Every engine depends on these abstract stores only. Two implementations
ship with the package: ``tenantsync.db.repositories`` (Supabase tables) and
``tenantsync.db.memory`` (process-local, for local runs and tests). Both
enforce the same uniqueness keys; multi-row invariants are the caller's job.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from tenantsync.integrations.domain import CredentialPurpose, CredentialRecord, Provider
from tenantsync.integrations.sync_domain import (
    AdAccount,
    AutoReplyConfig,
    LeadConfig,
    LeadMessage,
    LeadRecord,
    LeadStatus,
    OutcomeStatus,
    SyncCursor,
)
from tenantsync.services.campaign_models import MirroredEntity
from tenantsync.services.outbound_models import PendingOutboundAction
from tenantsync.services.scheduler_models import JobKind, ScheduledJobConfig


class CredentialStore(ABC):
    """Credential records, unique per (tenant, provider, purpose)."""

    @abstractmethod
    async def get(
        self, tenant_id: str, provider: Provider, purpose: CredentialPurpose
    ) -> CredentialRecord | None: ...

    @abstractmethod
    async def save(self, record: CredentialRecord) -> CredentialRecord:
        """Create or replace the record unconditionally (authorization, re-derivation)."""

    @abstractmethod
    async def save_refreshed(self, record: CredentialRecord) -> bool:
        """Persist a refreshed token unless a fresher one is already stored.

        Returns:
            True if the row was written, False if a concurrent refresh with a
            later expiry won.
        """

    @abstractmethod
    async def mark_needs_reauth(
        self, tenant_id: str, provider: Provider, purpose: CredentialPurpose
    ) -> None: ...

    @abstractmethod
    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int: ...


class CursorStore(ABC):
    """Sync cursors, unique per (tenant, partition key)."""

    @abstractmethod
    async def get(self, tenant_id: str, partition_key: str) -> SyncCursor | None: ...

    @abstractmethod
    async def save(self, cursor: SyncCursor) -> None: ...

    @abstractmethod
    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int: ...


class LeadStore(ABC):
    """Leads keyed by (tenant, email, source provider) and their messages."""

    @abstractmethod
    async def get_lead(
        self, tenant_id: str, email: str, source_provider: Provider
    ) -> LeadRecord | None: ...

    @abstractmethod
    async def get_lead_by_id(self, lead_id: str) -> LeadRecord | None: ...

    @abstractmethod
    async def save_lead(self, lead: LeadRecord) -> LeadRecord:
        """Upsert by natural key; the returned record carries its surrogate id."""

    @abstractmethod
    async def list_leads(
        self, tenant_id: str, status: LeadStatus | None = None
    ) -> list[LeadRecord]: ...

    @abstractmethod
    async def get_message(self, tenant_id: str, message_id: str) -> LeadMessage | None: ...

    @abstractmethod
    async def save_message(self, message: LeadMessage) -> LeadMessage:
        """Upsert by (tenant, message id)."""

    @abstractmethod
    async def list_messages(self, tenant_id: str, conversation_id: str) -> list[LeadMessage]:
        """Messages of one conversation, oldest first."""

    @abstractmethod
    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int: ...


class EntityStore(ABC):
    """Mirrored entities keyed by local id, unique per (tenant, provider, external id)."""

    @abstractmethod
    async def get(self, local_id: str) -> MirroredEntity | None: ...

    @abstractmethod
    async def get_by_external_id(
        self, tenant_id: str, provider: Provider, external_id: str
    ) -> MirroredEntity | None: ...

    @abstractmethod
    async def save(self, entity: MirroredEntity) -> MirroredEntity: ...

    @abstractmethod
    async def delete(self, local_id: str) -> None: ...

    @abstractmethod
    async def list_for_tenant(
        self, tenant_id: str, provider: Provider | None = None
    ) -> list[MirroredEntity]: ...

    @abstractmethod
    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int: ...


class OutboundActionStore(ABC):
    """Pending and confirmed outbound actions."""

    @abstractmethod
    async def list_for_key(
        self, tenant_id: str, correlation_key: str
    ) -> list[PendingOutboundAction]: ...

    @abstractmethod
    async def create(self, action: PendingOutboundAction) -> PendingOutboundAction: ...

    @abstractmethod
    async def update(self, action: PendingOutboundAction) -> PendingOutboundAction: ...

    @abstractmethod
    async def confirm(self, action: PendingOutboundAction) -> bool:
        """Write the confirmed state only if the stored row is still pending.

        Returns:
            True if this call performed the transition.
        """

    @abstractmethod
    async def list_pending(self, tenant_id: str) -> list[PendingOutboundAction]: ...


class JobConfigStore(ABC):
    """Scheduled job configuration, unique per (tenant, job kind)."""

    @abstractmethod
    async def list_enabled(self) -> list[ScheduledJobConfig]: ...

    @abstractmethod
    async def get(self, tenant_id: str, job_kind: JobKind) -> ScheduledJobConfig | None: ...

    @abstractmethod
    async def save(self, config: ScheduledJobConfig) -> None: ...

    @abstractmethod
    async def delete(self, tenant_id: str, job_kind: JobKind) -> None: ...

    @abstractmethod
    async def record_run(
        self,
        tenant_id: str,
        job_kind: JobKind,
        completed_at: datetime,
        status: OutcomeStatus,
    ) -> None: ...


class TenantConfigStore(ABC):
    """Read-only tenant configuration consumed by jobs."""

    @abstractmethod
    async def get_lead_config(self, tenant_id: str) -> LeadConfig | None: ...

    @abstractmethod
    async def get_auto_reply_config(self, tenant_id: str) -> AutoReplyConfig | None: ...

    @abstractmethod
    async def list_ad_accounts(self, tenant_id: str, provider: Provider) -> list[AdAccount]: ...
