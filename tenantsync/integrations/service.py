"""Integration lifecycle: connecting and disconnecting provider accounts.

Key features:
- Builds the consent link for a tenant, provider and purpose
- Completes the OAuth redirect, either directly or from the opaque state
- Disconnect cascades through everything synced from the provider and
  cancels the tenant's live job triggers for it
"""

import logging
from typing import TYPE_CHECKING, Any

from tenantsync.core.exceptions import ValidationRejectedError
from tenantsync.db.base import CredentialStore, CursorStore, EntityStore, JobConfigStore, LeadStore
from tenantsync.integrations.domain import CredentialPurpose, CredentialRecord, Provider
from tenantsync.integrations.oauth import TokenLifecycleManager, decode_state
from tenantsync.services.scheduler_models import JobKind

if TYPE_CHECKING:
    from tenantsync.jobs.context import JobDependencies
    from tenantsync.services.scheduler import TenantJobScheduler

logger = logging.getLogger(__name__)


class IntegrationService:
    """Connects and disconnects a tenant's provider accounts."""

    def __init__(
        self,
        token_manager: TokenLifecycleManager,
        credentials: CredentialStore,
        cursors: CursorStore,
        leads: LeadStore,
        entities: EntityStore,
        job_configs: JobConfigStore,
        scheduler: "TenantJobScheduler | None" = None,
    ) -> None:
        self._tokens = token_manager
        self._credentials = credentials
        self._cursors = cursors
        self._leads = leads
        self._entities = entities
        self._job_configs = job_configs
        self._scheduler = scheduler

    @classmethod
    def from_dependencies(
        cls, deps: "JobDependencies", scheduler: "TenantJobScheduler | None" = None
    ) -> "IntegrationService":
        return cls(
            token_manager=deps.token_manager,
            credentials=deps.credentials,
            cursors=deps.cursors,
            leads=deps.leads,
            entities=deps.entities,
            job_configs=deps.job_configs,
            scheduler=scheduler,
        )

    def authorization_url(
        self,
        tenant_id: str,
        provider: Provider,
        purpose: CredentialPurpose = CredentialPurpose.PRIMARY_AUTH,
        scopes: list[str] | None = None,
    ) -> str:
        """Build the link a tenant follows to connect or reauthorize."""
        return self._tokens.authorization_url(tenant_id, provider, purpose, scopes)

    async def complete_authorization(
        self,
        tenant_id: str,
        provider: Provider,
        purpose: CredentialPurpose,
        code: str,
        scopes: list[str] | None = None,
        redirect_uri: str | None = None,
    ) -> CredentialRecord:
        """Exchange an authorization code and create or replace the credential."""
        return await self._tokens.complete_authorization(
            tenant_id, provider, purpose, code, scopes=scopes, redirect_uri=redirect_uri
        )

    async def complete_from_state(
        self,
        state: str,
        code: str,
        scopes: list[str] | None = None,
        redirect_uri: str | None = None,
    ) -> CredentialRecord:
        """Complete an OAuth redirect using the ``state`` it carried back.

        Raises:
            ValidationRejectedError: If the state cannot be decoded.
        """
        try:
            tenant_id, provider, purpose = decode_state(state)
        except ValueError as e:
            raise ValidationRejectedError("oauth", str(e), fields=["state"]) from e
        return await self.complete_authorization(
            tenant_id, provider, purpose, code, scopes=scopes, redirect_uri=redirect_uri
        )

    async def disconnect(self, tenant_id: str, provider: Provider) -> dict[str, Any]:
        """Remove a provider connection and everything synced through it.

        Args:
            tenant_id: Tenant disconnecting.
            provider: Provider being disconnected.

        Returns:
            Counts of what was removed.
        """
        job_kinds = [kind for kind in JobKind if kind.provider == provider]
        cancelled = 0
        for job_kind in job_kinds:
            if self._scheduler is not None and self._scheduler.remove(tenant_id, job_kind):
                cancelled += 1
            await self._job_configs.delete(tenant_id, job_kind)

        removed = {
            "credentials": await self._credentials.delete_for_provider(tenant_id, provider),
            "cursors": await self._cursors.delete_for_provider(tenant_id, provider),
            "leads": await self._leads.delete_for_provider(tenant_id, provider),
            "entities": await self._entities.delete_for_provider(tenant_id, provider),
            "job_configs": len(job_kinds),
            "triggers_cancelled": cancelled,
        }
        for purpose in CredentialPurpose:
            self._tokens.forget(tenant_id, provider, purpose)
        logger.info(
            "Provider disconnected",
            extra={"tenant_id": tenant_id, "provider": provider.value, **removed},
        )
        return removed


_integration_service: IntegrationService | None = None


def get_integration_service() -> IntegrationService:
    """Get or create the integration service singleton."""
    global _integration_service
    if _integration_service is None:
        from tenantsync.jobs.context import build_supabase_dependencies

        _integration_service = IntegrationService.from_dependencies(build_supabase_dependencies())
    return _integration_service


def configure_integration_service(
    deps: "JobDependencies", scheduler: "TenantJobScheduler | None" = None
) -> IntegrationService:
    """Install the singleton on top of an existing wiring (used by the worker)."""
    global _integration_service
    _integration_service = IntegrationService.from_dependencies(deps, scheduler)
    return _integration_service
