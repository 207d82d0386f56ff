"""Supabase-backed store implementations.

Tables and their uniqueness keys:
- platform_credentials: (tenant_id, provider, purpose)
- sync_cursors: (tenant_id, partition_key)
- leads: (tenant_id, email, source_provider)
- lead_messages: (tenant_id, message_id)
- mirrored_entities: id; (tenant_id, provider, external_id)
- outbound_actions: id
- scheduled_job_configs: (tenant_id, job_kind)
- lead_configurations, auto_reply_configs: tenant_id
- ad_accounts: (tenant_id, provider, account_id)
"""

import logging
from datetime import UTC, datetime
from typing import Any

from tenantsync.core.config import settings
from tenantsync.db.base import (
    CredentialStore,
    CursorStore,
    EntityStore,
    JobConfigStore,
    LeadStore,
    OutboundActionStore,
    TenantConfigStore,
)
from tenantsync.db.supabase import SupabaseClient
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
from tenantsync.services.scheduler_models import Cadence, JobKind, ScheduledJobConfig

logger = logging.getLogger(__name__)


def _utc_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _now_iso() -> str:
    return _utc_iso(datetime.now(UTC))


class SupabaseCredentialStore(CredentialStore):
    table = "platform_credentials"

    async def get(
        self, tenant_id: str, provider: Provider, purpose: CredentialPurpose
    ) -> CredentialRecord | None:
        rows = SupabaseClient.execute(
            "fetch credential",
            lambda db: db.table(self.table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("provider", provider.value)
            .eq("purpose", purpose.value)
            .limit(1)
            .execute(),
            tenant_id=tenant_id,
            provider=provider.value,
        )
        return CredentialRecord.from_dict(rows[0]) if rows else None

    async def save(self, record: CredentialRecord) -> CredentialRecord:
        row = record.to_dict()
        row["updated_at"] = _now_iso()
        rows = SupabaseClient.execute(
            "save credential",
            lambda db: db.table(self.table)
            .upsert(row, on_conflict="tenant_id,provider,purpose")
            .execute(),
            tenant_id=record.tenant_id,
            provider=record.provider.value,
        )
        return CredentialRecord.from_dict(rows[0]) if rows else record

    async def save_refreshed(self, record: CredentialRecord) -> bool:
        row = record.to_dict()
        row["updated_at"] = _now_iso()

        def query(db: Any) -> Any:
            builder = (
                db.table(self.table)
                .update(row)
                .eq("tenant_id", record.tenant_id)
                .eq("provider", record.provider.value)
                .eq("purpose", record.purpose.value)
            )
            # Last expiry wins: never overwrite a fresher token from a concurrent refresh.
            if record.expires_at is not None:
                cutoff = _utc_iso(record.expires_at)
                builder = builder.or_(f"expires_at.is.null,expires_at.lt.{cutoff}")
            return builder.execute()

        rows = SupabaseClient.execute(
            "persist refreshed credential",
            query,
            tenant_id=record.tenant_id,
            provider=record.provider.value,
        )
        return bool(rows)

    async def mark_needs_reauth(
        self, tenant_id: str, provider: Provider, purpose: CredentialPurpose
    ) -> None:
        SupabaseClient.execute(
            "mark credential for reauthorization",
            lambda db: db.table(self.table)
            .update({"needs_reauth": True, "updated_at": _now_iso()})
            .eq("tenant_id", tenant_id)
            .eq("provider", provider.value)
            .eq("purpose", purpose.value)
            .execute(),
            tenant_id=tenant_id,
            provider=provider.value,
        )

    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int:
        rows = SupabaseClient.execute(
            "delete credentials",
            lambda db: db.table(self.table)
            .delete()
            .eq("tenant_id", tenant_id)
            .eq("provider", provider.value)
            .execute(),
            tenant_id=tenant_id,
            provider=provider.value,
        )
        return len(rows)


class SupabaseCursorStore(CursorStore):
    table = "sync_cursors"

    async def get(self, tenant_id: str, partition_key: str) -> SyncCursor | None:
        rows = SupabaseClient.execute(
            "fetch sync cursor",
            lambda db: db.table(self.table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("partition_key", partition_key)
            .limit(1)
            .execute(),
            tenant_id=tenant_id,
            partition_key=partition_key,
        )
        return SyncCursor.from_dict(rows[0]) if rows else None

    async def save(self, cursor: SyncCursor) -> None:
        SupabaseClient.execute(
            "save sync cursor",
            lambda db: db.table(self.table)
            .upsert(cursor.to_dict(), on_conflict="tenant_id,partition_key")
            .execute(),
            tenant_id=cursor.tenant_id,
            partition_key=cursor.partition_key,
        )

    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int:
        rows = SupabaseClient.execute(
            "delete sync cursors",
            lambda db: db.table(self.table)
            .delete()
            .eq("tenant_id", tenant_id)
            .like("partition_key", f"{provider.value}/%")
            .execute(),
            tenant_id=tenant_id,
            provider=provider.value,
        )
        return len(rows)


class SupabaseLeadStore(LeadStore):
    leads_table = "leads"
    messages_table = "lead_messages"

    async def get_lead(
        self, tenant_id: str, email: str, source_provider: Provider
    ) -> LeadRecord | None:
        rows = SupabaseClient.execute(
            "fetch lead",
            lambda db: db.table(self.leads_table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("email", email)
            .eq("source_provider", source_provider.value)
            .limit(1)
            .execute(),
            tenant_id=tenant_id,
        )
        return LeadRecord.from_dict(rows[0]) if rows else None

    async def get_lead_by_id(self, lead_id: str) -> LeadRecord | None:
        rows = SupabaseClient.execute(
            "fetch lead",
            lambda db: db.table(self.leads_table).select("*").eq("id", lead_id).limit(1).execute(),
            lead_id=lead_id,
        )
        return LeadRecord.from_dict(rows[0]) if rows else None

    async def save_lead(self, lead: LeadRecord) -> LeadRecord:
        row = lead.to_dict()
        row["updated_at"] = _now_iso()
        rows = SupabaseClient.execute(
            "save lead",
            lambda db: db.table(self.leads_table)
            .upsert(row, on_conflict="tenant_id,email,source_provider")
            .execute(),
            tenant_id=lead.tenant_id,
        )
        return LeadRecord.from_dict(rows[0]) if rows else lead

    async def list_leads(self, tenant_id: str, status: LeadStatus | None = None) -> list[LeadRecord]:
        def query(db: Any) -> Any:
            builder = db.table(self.leads_table).select("*").eq("tenant_id", tenant_id)
            if status is not None:
                builder = builder.eq("status", status.value)
            return builder.execute()

        rows = SupabaseClient.execute("list leads", query, tenant_id=tenant_id)
        return [LeadRecord.from_dict(row) for row in rows]

    async def get_message(self, tenant_id: str, message_id: str) -> LeadMessage | None:
        rows = SupabaseClient.execute(
            "fetch lead message",
            lambda db: db.table(self.messages_table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("message_id", message_id)
            .limit(1)
            .execute(),
            tenant_id=tenant_id,
        )
        return LeadMessage.from_dict(rows[0]) if rows else None

    async def save_message(self, message: LeadMessage) -> LeadMessage:
        rows = SupabaseClient.execute(
            "save lead message",
            lambda db: db.table(self.messages_table)
            .upsert(message.to_dict(), on_conflict="tenant_id,message_id")
            .execute(),
            tenant_id=message.tenant_id,
        )
        return LeadMessage.from_dict(rows[0]) if rows else message

    async def list_messages(self, tenant_id: str, conversation_id: str) -> list[LeadMessage]:
        rows = SupabaseClient.execute(
            "list conversation messages",
            lambda db: db.table(self.messages_table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("conversation_id", conversation_id)
            .order("received_at")
            .execute(),
            tenant_id=tenant_id,
        )
        return [LeadMessage.from_dict(row) for row in rows]

    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int:
        leads = await self.list_leads(tenant_id)
        lead_ids = [lead.id for lead in leads if lead.source_provider == provider and lead.id]
        if not lead_ids:
            return 0
        SupabaseClient.execute(
            "delete lead messages",
            lambda db: db.table(self.messages_table)
            .delete()
            .eq("tenant_id", tenant_id)
            .in_("lead_id", lead_ids)
            .execute(),
            tenant_id=tenant_id,
        )
        rows = SupabaseClient.execute(
            "delete leads",
            lambda db: db.table(self.leads_table)
            .delete()
            .eq("tenant_id", tenant_id)
            .eq("source_provider", provider.value)
            .execute(),
            tenant_id=tenant_id,
        )
        return len(rows)


class SupabaseEntityStore(EntityStore):
    table = "mirrored_entities"

    async def get(self, local_id: str) -> MirroredEntity | None:
        rows = SupabaseClient.execute(
            "fetch mirrored entity",
            lambda db: db.table(self.table).select("*").eq("id", local_id).limit(1).execute(),
            local_id=local_id,
        )
        return MirroredEntity.from_dict(rows[0]) if rows else None

    async def get_by_external_id(
        self, tenant_id: str, provider: Provider, external_id: str
    ) -> MirroredEntity | None:
        rows = SupabaseClient.execute(
            "fetch mirrored entity",
            lambda db: db.table(self.table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("provider", provider.value)
            .eq("external_id", external_id)
            .limit(1)
            .execute(),
            tenant_id=tenant_id,
            external_id=external_id,
        )
        return MirroredEntity.from_dict(rows[0]) if rows else None

    async def save(self, entity: MirroredEntity) -> MirroredEntity:
        row = entity.to_dict()
        if entity.id:
            rows = SupabaseClient.execute(
                "save mirrored entity",
                lambda db: db.table(self.table).upsert(row, on_conflict="id").execute(),
                local_id=entity.id,
            )
        else:
            rows = SupabaseClient.execute(
                "create mirrored entity",
                lambda db: db.table(self.table).insert(row).execute(),
                tenant_id=entity.tenant_id,
            )
        return MirroredEntity.from_dict(rows[0]) if rows else entity

    async def delete(self, local_id: str) -> None:
        SupabaseClient.execute(
            "delete mirrored entity",
            lambda db: db.table(self.table).delete().eq("id", local_id).execute(),
            local_id=local_id,
        )

    async def list_for_tenant(
        self, tenant_id: str, provider: Provider | None = None
    ) -> list[MirroredEntity]:
        def query(db: Any) -> Any:
            builder = db.table(self.table).select("*").eq("tenant_id", tenant_id)
            if provider is not None:
                builder = builder.eq("provider", provider.value)
            return builder.execute()

        rows = SupabaseClient.execute("list mirrored entities", query, tenant_id=tenant_id)
        return [MirroredEntity.from_dict(row) for row in rows]

    async def delete_for_provider(self, tenant_id: str, provider: Provider) -> int:
        rows = SupabaseClient.execute(
            "delete mirrored entities",
            lambda db: db.table(self.table)
            .delete()
            .eq("tenant_id", tenant_id)
            .eq("provider", provider.value)
            .execute(),
            tenant_id=tenant_id,
        )
        return len(rows)


class SupabaseOutboundActionStore(OutboundActionStore):
    table = "outbound_actions"

    async def list_for_key(
        self, tenant_id: str, correlation_key: str
    ) -> list[PendingOutboundAction]:
        rows = SupabaseClient.execute(
            "list outbound actions",
            lambda db: db.table(self.table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("correlation_key", correlation_key)
            .order("created_at")
            .execute(),
            tenant_id=tenant_id,
            correlation_key=correlation_key,
        )
        return [PendingOutboundAction.from_dict(row) for row in rows]

    async def create(self, action: PendingOutboundAction) -> PendingOutboundAction:
        rows = SupabaseClient.execute(
            "create outbound action",
            lambda db: db.table(self.table).insert(action.to_dict()).execute(),
            tenant_id=action.tenant_id,
            correlation_key=action.correlation_key,
        )
        return PendingOutboundAction.from_dict(rows[0]) if rows else action

    async def update(self, action: PendingOutboundAction) -> PendingOutboundAction:
        rows = SupabaseClient.execute(
            "update outbound action",
            lambda db: db.table(self.table).update(action.to_dict()).eq("id", action.id).execute(),
            action_id=action.id,
        )
        return PendingOutboundAction.from_dict(rows[0]) if rows else action

    async def confirm(self, action: PendingOutboundAction) -> bool:
        rows = SupabaseClient.execute(
            "confirm outbound action",
            lambda db: db.table(self.table)
            .update(
                {
                    "state": OutboundState.CONFIRMED.value,
                    "external_id": action.external_id,
                    "remote_accepted": True,
                    "confirmed_at": _now_iso(),
                }
            )
            .eq("id", action.id)
            .eq("state", OutboundState.PENDING.value)
            .execute(),
            action_id=action.id,
        )
        return bool(rows)

    async def list_pending(self, tenant_id: str) -> list[PendingOutboundAction]:
        rows = SupabaseClient.execute(
            "list pending outbound actions",
            lambda db: db.table(self.table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("state", OutboundState.PENDING.value)
            .execute(),
            tenant_id=tenant_id,
        )
        return [PendingOutboundAction.from_dict(row) for row in rows]


class SupabaseJobConfigStore(JobConfigStore):
    table = "scheduled_job_configs"

    def _parse(self, row: dict[str, Any]) -> ScheduledJobConfig:
        return ScheduledJobConfig.from_dict(
            row, default_cadence=Cadence.parse(settings.DEFAULT_SYNC_CADENCE)
        )

    async def list_enabled(self) -> list[ScheduledJobConfig]:
        rows = SupabaseClient.execute(
            "list scheduled job configs",
            lambda db: db.table(self.table).select("*").eq("enabled", True).execute(),
        )
        configs = []
        for row in rows:
            try:
                configs.append(self._parse(row))
            except (KeyError, ValueError):
                logger.warning("Skipping malformed job config", extra={"row_id": row.get("id")})
        return configs

    async def get(self, tenant_id: str, job_kind: JobKind) -> ScheduledJobConfig | None:
        rows = SupabaseClient.execute(
            "fetch scheduled job config",
            lambda db: db.table(self.table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("job_kind", job_kind.value)
            .limit(1)
            .execute(),
            tenant_id=tenant_id,
            job_kind=job_kind.value,
        )
        return self._parse(rows[0]) if rows else None

    async def save(self, config: ScheduledJobConfig) -> None:
        SupabaseClient.execute(
            "save scheduled job config",
            lambda db: db.table(self.table)
            .upsert(config.to_dict(), on_conflict="tenant_id,job_kind")
            .execute(),
            tenant_id=config.tenant_id,
            job_kind=config.job_kind.value,
        )

    async def delete(self, tenant_id: str, job_kind: JobKind) -> None:
        SupabaseClient.execute(
            "delete scheduled job config",
            lambda db: db.table(self.table)
            .delete()
            .eq("tenant_id", tenant_id)
            .eq("job_kind", job_kind.value)
            .execute(),
            tenant_id=tenant_id,
            job_kind=job_kind.value,
        )

    async def record_run(
        self,
        tenant_id: str,
        job_kind: JobKind,
        completed_at: datetime,
        status: OutcomeStatus,
    ) -> None:
        SupabaseClient.execute(
            "record job run",
            lambda db: db.table(self.table)
            .update({"last_run_at": _utc_iso(completed_at), "last_run_status": status.value})
            .eq("tenant_id", tenant_id)
            .eq("job_kind", job_kind.value)
            .execute(),
            tenant_id=tenant_id,
            job_kind=job_kind.value,
        )


class SupabaseTenantConfigStore(TenantConfigStore):
    async def get_lead_config(self, tenant_id: str) -> LeadConfig | None:
        rows = SupabaseClient.execute(
            "fetch lead configuration",
            lambda db: db.table("lead_configurations")
            .select("*")
            .eq("tenant_id", tenant_id)
            .limit(1)
            .execute(),
            tenant_id=tenant_id,
        )
        return LeadConfig.from_dict(rows[0]) if rows else None

    async def get_auto_reply_config(self, tenant_id: str) -> AutoReplyConfig | None:
        rows = SupabaseClient.execute(
            "fetch auto-reply configuration",
            lambda db: db.table("auto_reply_configs")
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("is_active", True)
            .limit(1)
            .execute(),
            tenant_id=tenant_id,
        )
        return AutoReplyConfig.from_dict(rows[0]) if rows else None

    async def list_ad_accounts(self, tenant_id: str, provider: Provider) -> list[AdAccount]:
        rows = SupabaseClient.execute(
            "list ad accounts",
            lambda db: db.table("ad_accounts")
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("provider", provider.value)
            .eq("is_active", True)
            .execute(),
            tenant_id=tenant_id,
            provider=provider.value,
        )
        return [AdAccount.from_dict(row) for row in rows]
