"""In-memory store implementations.

Same keys and conditional-write semantics as the Supabase stores, held in
process dictionaries. Used for local dry runs and by the test suite.
"""

import copy
import uuid
from datetime import datetime

from tenantsync.db.base import (
    CredentialStore,
    CursorStore,
    EntityStore,
    JobConfigStore,
    LeadStore,
    OutboundActionStore,
    TenantConfigStore,
)
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
from tenantsync.services.outbound_models import OutboundState, PendingOutboundAction
from tenantsync.services.scheduler_models import JobKind, ScheduledJobConfig


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self.records: dict[tuple[str, Provider, CredentialPurpose], CredentialRecord] = {}

    async def get(
        self, tenant_id: str, provider: Provider, purpose: CredentialPurpose
    ) -> CredentialRecord | None:
        record = self.records.get((tenant_id, provider, purpose))
        return copy.deepcopy(record) if record else None

    async def save(self, record: CredentialRecord) -> CredentialRecord:
        self.records[record.key] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def save_refreshed(self, record: CredentialRecord) -> bool:
        stored = self.records.get(record.key)
        if stored is None:
            return False
        if (
            stored.expires_at is not None
            and record.expires_at is not None
            and stored.expires_at >= record.expires_at
        ):
            return False
        self.records[record.key] = copy.deepcopy(record)
        return True

    async def mark_needs_reauth(
        self, tenant_id: str, provider: Provider, purpose: CredentialPurpose
    ) -> None:
        stored = self.records.get((tenant_id, provider, purpose))
        if stored is not None:
            stored.needs_reauth = True

    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int:
        keys = [k for k in self.records if k[0] == tenant_id and k[1] == provider]
        for key in keys:
            del self.records[key]
        return len(keys)


class InMemoryCursorStore(CursorStore):
    def __init__(self) -> None:
        self.cursors: dict[tuple[str, str], SyncCursor] = {}

    async def get(self, tenant_id: str, partition_key: str) -> SyncCursor | None:
        cursor = self.cursors.get((tenant_id, partition_key))
        return copy.deepcopy(cursor) if cursor else None

    async def save(self, cursor: SyncCursor) -> None:
        self.cursors[(cursor.tenant_id, cursor.partition_key)] = copy.deepcopy(cursor)

    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int:
        prefix = f"{provider.value}/"
        keys = [k for k in self.cursors if k[0] == tenant_id and k[1].startswith(prefix)]
        for key in keys:
            del self.cursors[key]
        return len(keys)


class InMemoryLeadStore(LeadStore):
    def __init__(self) -> None:
        self.leads: dict[tuple[str, str, Provider], LeadRecord] = {}
        self.messages: dict[tuple[str, str], LeadMessage] = {}

    async def get_lead(
        self, tenant_id: str, email: str, source_provider: Provider
    ) -> LeadRecord | None:
        lead = self.leads.get((tenant_id, email, source_provider))
        return copy.deepcopy(lead) if lead else None

    async def get_lead_by_id(self, lead_id: str) -> LeadRecord | None:
        for lead in self.leads.values():
            if lead.id == lead_id:
                return copy.deepcopy(lead)
        return None

    async def save_lead(self, lead: LeadRecord) -> LeadRecord:
        stored = copy.deepcopy(lead)
        existing = self.leads.get(lead.natural_key)
        stored.id = stored.id or (existing.id if existing else None) or _new_id()
        self.leads[lead.natural_key] = stored
        return copy.deepcopy(stored)

    async def list_leads(self, tenant_id: str, status: LeadStatus | None = None) -> list[LeadRecord]:
        return [
            copy.deepcopy(lead)
            for lead in self.leads.values()
            if lead.tenant_id == tenant_id and (status is None or lead.status == status)
        ]

    async def get_message(self, tenant_id: str, message_id: str) -> LeadMessage | None:
        message = self.messages.get((tenant_id, message_id))
        return copy.deepcopy(message) if message else None

    async def save_message(self, message: LeadMessage) -> LeadMessage:
        self.messages[(message.tenant_id, message.message_id)] = copy.deepcopy(message)
        return copy.deepcopy(message)

    async def list_messages(self, tenant_id: str, conversation_id: str) -> list[LeadMessage]:
        found = [
            copy.deepcopy(m)
            for m in self.messages.values()
            if m.tenant_id == tenant_id and m.conversation_id == conversation_id
        ]
        return sorted(found, key=lambda m: (m.received_at is None, m.received_at))

    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int:
        doomed = [k for k, lead in self.leads.items() if k[0] == tenant_id and k[2] == provider]
        lead_ids = {self.leads[k].id for k in doomed}
        for key in doomed:
            del self.leads[key]
        for key in [k for k, m in self.messages.items() if m.lead_id in lead_ids]:
            del self.messages[key]
        return len(doomed)


class InMemoryEntityStore(EntityStore):
    def __init__(self) -> None:
        self.entities: dict[str, MirroredEntity] = {}

    async def get(self, local_id: str) -> MirroredEntity | None:
        entity = self.entities.get(local_id)
        return copy.deepcopy(entity) if entity else None

    async def get_by_external_id(
        self, tenant_id: str, provider: Provider, external_id: str
    ) -> MirroredEntity | None:
        for entity in self.entities.values():
            if (
                entity.tenant_id == tenant_id
                and entity.provider == provider
                and entity.external_id == external_id
            ):
                return copy.deepcopy(entity)
        return None

    async def save(self, entity: MirroredEntity) -> MirroredEntity:
        stored = copy.deepcopy(entity)
        stored.id = stored.id or _new_id()
        self.entities[stored.id] = stored
        return copy.deepcopy(stored)

    async def delete(self, local_id: str) -> None:
        self.entities.pop(local_id, None)

    async def list_for_tenant(
        self, tenant_id: str, provider: Provider | None = None
    ) -> list[MirroredEntity]:
        return [
            copy.deepcopy(e)
            for e in self.entities.values()
            if e.tenant_id == tenant_id and (provider is None or e.provider == provider)
        ]

    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int:
        doomed = [
            k for k, e in self.entities.items() if e.tenant_id == tenant_id and e.provider == provider
        ]
        for key in doomed:
            del self.entities[key]
        return len(doomed)


class InMemoryOutboundActionStore(OutboundActionStore):
    def __init__(self) -> None:
        self.actions: dict[str, PendingOutboundAction] = {}

    async def list_for_key(
        self, tenant_id: str, correlation_key: str
    ) -> list[PendingOutboundAction]:
        found = [
            copy.deepcopy(a)
            for a in self.actions.values()
            if a.tenant_id == tenant_id and a.correlation_key == correlation_key
        ]
        return sorted(found, key=lambda a: a.created_at)

    async def create(self, action: PendingOutboundAction) -> PendingOutboundAction:
        stored = copy.deepcopy(action)
        stored.id = stored.id or _new_id()
        self.actions[stored.id] = stored
        return copy.deepcopy(stored)

    async def update(self, action: PendingOutboundAction) -> PendingOutboundAction:
        self.actions[action.id] = copy.deepcopy(action)
        return copy.deepcopy(action)

    async def confirm(self, action: PendingOutboundAction) -> bool:
        stored = self.actions.get(action.id)
        if stored is None or stored.state != OutboundState.PENDING:
            return False
        self.actions[action.id] = copy.deepcopy(action)
        return True

    async def list_pending(self, tenant_id: str) -> list[PendingOutboundAction]:
        return [
            copy.deepcopy(a)
            for a in self.actions.values()
            if a.tenant_id == tenant_id and a.state == OutboundState.PENDING
        ]


class InMemoryJobConfigStore(JobConfigStore):
    def __init__(self, configs: list[ScheduledJobConfig] | None = None) -> None:
        self.configs: dict[tuple[str, JobKind], ScheduledJobConfig] = {
            c.key: copy.deepcopy(c) for c in configs or []
        }

    async def list_enabled(self) -> list[ScheduledJobConfig]:
        return [copy.deepcopy(c) for c in self.configs.values() if c.enabled]

    async def get(self, tenant_id: str, job_kind: JobKind) -> ScheduledJobConfig | None:
        config = self.configs.get((tenant_id, job_kind))
        return copy.deepcopy(config) if config else None

    async def save(self, config: ScheduledJobConfig) -> None:
        self.configs[config.key] = copy.deepcopy(config)

    async def delete(self, tenant_id: str, job_kind: JobKind) -> None:
        self.configs.pop((tenant_id, job_kind), None)

    async def record_run(
        self,
        tenant_id: str,
        job_kind: JobKind,
        completed_at: datetime,
        status: OutcomeStatus,
    ) -> None:
        config = self.configs.get((tenant_id, job_kind))
        if config is not None:
            config.last_run_at = completed_at
            config.last_run_status = status


class InMemoryTenantConfigStore(TenantConfigStore):
    def __init__(self) -> None:
        self.lead_configs: dict[str, LeadConfig] = {}
        self.auto_reply_configs: dict[str, AutoReplyConfig] = {}
        self.ad_accounts: list[AdAccount] = []

    async def get_lead_config(self, tenant_id: str) -> LeadConfig | None:
        return self.lead_configs.get(tenant_id)

    async def get_auto_reply_config(self, tenant_id: str) -> AutoReplyConfig | None:
        config = self.auto_reply_configs.get(tenant_id)
        return config if config and config.is_active else None

    async def list_ad_accounts(self, tenant_id: str, provider: Provider) -> list[AdAccount]:
        return [
            a
            for a in self.ad_accounts
            if a.tenant_id == tenant_id and a.provider == provider and a.is_active
        ]
