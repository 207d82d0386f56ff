"""Wiring of stores and engines shared by every job run."""

from collections.abc import Callable
from dataclasses import dataclass

from tenantsync.core.config import Settings, get_settings
from tenantsync.db.base import (
    CredentialStore,
    CursorStore,
    EntityStore,
    JobConfigStore,
    LeadStore,
    OutboundActionStore,
    TenantConfigStore,
)
from tenantsync.integrations.delta_sync import (
    CampaignMirrorHandler,
    DeltaSyncEngine,
    LeadIngestionHandler,
)
from tenantsync.integrations.domain import Provider
from tenantsync.integrations.oauth import TokenLifecycleManager
from tenantsync.integrations.providers import (
    AdPlatformProvider,
    BaseProvider,
    get_ad_provider,
    get_provider,
)
from tenantsync.integrations.sync_domain import SyncOutcome
from tenantsync.services.campaign_patch import DiffPatchEngine
from tenantsync.services.notification_service import NotificationService
from tenantsync.services.outbound_delivery import OutboundDeliveryEngine
from tenantsync.services.scheduler_models import JobKind, JobResult


@dataclass
class JobDependencies:
    """Everything a job run needs, built once per worker process."""

    credentials: CredentialStore
    cursors: CursorStore
    leads: LeadStore
    entities: EntityStore
    outbound: OutboundActionStore
    job_configs: JobConfigStore
    tenant_configs: TenantConfigStore
    token_manager: TokenLifecycleManager
    sync_engine: DeltaSyncEngine
    patch_engine: DiffPatchEngine
    delivery_engine: OutboundDeliveryEngine
    notifier: NotificationService | None
    settings: Settings

    @classmethod
    def build(
        cls,
        credentials: CredentialStore,
        cursors: CursorStore,
        leads: LeadStore,
        entities: EntityStore,
        outbound: OutboundActionStore,
        job_configs: JobConfigStore,
        tenant_configs: TenantConfigStore,
        notifier: NotificationService | None = None,
        provider_factory: Callable[[Provider], BaseProvider] | None = None,
        settings: Settings | None = None,
    ) -> "JobDependencies":
        """Build the engines on top of the given stores.

        Args:
            provider_factory: Returns the client for a provider. Defaults to
                the shared clients.
            settings: Settings override.
        """
        settings = settings or get_settings()
        factory = provider_factory or get_provider

        def ad_factory(provider: Provider) -> AdPlatformProvider:
            if provider_factory is None:
                return get_ad_provider(provider)
            client = provider_factory(provider)
            if not isinstance(client, AdPlatformProvider):
                raise ValueError(f"{provider.value} is not an ad platform")
            return client

        token_manager = TokenLifecycleManager(credentials, provider_factory=factory, settings=settings)
        delivery_engine = OutboundDeliveryEngine(
            outbound,
            token_manager,
            provider_factory=factory,
            settings=settings,
        )
        sync_engine = DeltaSyncEngine(
            token_manager,
            cursors,
            handlers=[
                LeadIngestionHandler(
                    leads,
                    tenant_configs,
                    outbound_store=outbound,
                    outbound_engine=delivery_engine,
                    provider_factory=factory,
                ),
                CampaignMirrorHandler(entities, provider_factory=ad_factory),
            ],
            provider_factory=factory,
            settings=settings,
        )
        patch_engine = DiffPatchEngine(
            entities, token_manager, notifier=notifier, provider_factory=ad_factory
        )
        return cls(
            credentials=credentials,
            cursors=cursors,
            leads=leads,
            entities=entities,
            outbound=outbound,
            job_configs=job_configs,
            tenant_configs=tenant_configs,
            token_manager=token_manager,
            sync_engine=sync_engine,
            patch_engine=patch_engine,
            delivery_engine=delivery_engine,
            notifier=notifier,
            settings=settings,
        )


def build_supabase_dependencies(settings: Settings | None = None) -> JobDependencies:
    """Build the production wiring backed by Supabase."""
    from tenantsync.db.repositories import (
        SupabaseCredentialStore,
        SupabaseCursorStore,
        SupabaseEntityStore,
        SupabaseJobConfigStore,
        SupabaseLeadStore,
        SupabaseOutboundActionStore,
        SupabaseTenantConfigStore,
    )
    from tenantsync.services.notification_service import get_notification_service

    return JobDependencies.build(
        credentials=SupabaseCredentialStore(),
        cursors=SupabaseCursorStore(),
        leads=SupabaseLeadStore(),
        entities=SupabaseEntityStore(),
        outbound=SupabaseOutboundActionStore(),
        job_configs=SupabaseJobConfigStore(),
        tenant_configs=SupabaseTenantConfigStore(),
        notifier=get_notification_service(),
        settings=settings,
    )


def summarize(tenant_id: str, job_kind: JobKind, outcomes: list[SyncOutcome]) -> JobResult:
    """Fold partition outcomes into one job result."""
    failed = [o for o in outcomes if o.error]
    auth_url = next((o.authorization_url for o in outcomes if o.authorization_url), None)
    return JobResult.from_statuses(
        tenant_id,
        job_kind,
        [o.status for o in outcomes],
        items_processed=sum(o.items_processed for o in outcomes),
        items_failed=sum(o.items_failed for o in outcomes),
        error="; ".join(f"{o.partition_key}: {o.error}" for o in failed) or None,
        authorization_url=auth_url,
        details={"partitions": [o.to_dict() for o in outcomes]},
    )
