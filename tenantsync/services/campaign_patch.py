"""Reconciliation of locally desired campaign state against the platforms.

``DiffPatchEngine.reconcile`` compares an entity's desired state with the
last state seen on the platform using the provider's field schema, and
sends a partial update that contains only the changed, currently mutable
fields. Immutability is derived from the entity's lifecycle state at patch
time, so a field editable on a draft is never sent once the campaign runs.

Deletion is a two-state protocol: drafts are deleted outright (remote and
local); anything else moves to the platform's pending-deletion status and
is kept locally as PENDING_DELETION.
"""

import copy
import logging
from collections.abc import Callable
from typing import Any

from tenantsync.core.exceptions import (
    NeedsAuthorizationError,
    NotFoundError,
    RetryableTransientError,
    TenantSyncException,
    ValidationRejectedError,
    sanitize_error,
)
from tenantsync.db.base import EntityStore
from tenantsync.integrations.domain import CredentialPurpose, NeedsAuth, Provider
from tenantsync.integrations.oauth import TokenLifecycleManager
from tenantsync.integrations.providers import AdPlatformProvider, get_ad_provider
from tenantsync.integrations.sync_domain import OutcomeStatus
from tenantsync.services.campaign_models import LifecycleState, MirroredEntity, ReconcileOutcome
from tenantsync.services.notification_service import NotificationEvent, NotificationService
from tenantsync.services.structural_diff import apply_changes, build_partial_payload, diff_state

logger = logging.getLogger(__name__)

_TRANSITION_EVENTS: dict[LifecycleState, NotificationEvent] = {
    LifecycleState.ACTIVE: NotificationEvent.CAMPAIGN_ACTIVATED,
    LifecycleState.PAUSED: NotificationEvent.CAMPAIGN_PAUSED,
    LifecycleState.PENDING_DELETION: NotificationEvent.CAMPAIGN_PENDING_DELETION,
}

_CLOSED_STATES = frozenset({LifecycleState.PENDING_DELETION, LifecycleState.REMOVED})


class DiffPatchEngine:
    """Emits minimal, lifecycle-aware updates for mirrored campaigns."""

    def __init__(
        self,
        entity_store: EntityStore,
        token_manager: TokenLifecycleManager,
        notifier: NotificationService | None = None,
        provider_factory: Callable[[Provider], AdPlatformProvider] | None = None,
    ) -> None:
        self._entities = entity_store
        self._tokens = token_manager
        self._notifier = notifier
        self._provider_factory = provider_factory or get_ad_provider

    async def _access_token(self, entity: MirroredEntity, outcome: ReconcileOutcome) -> str | None:
        try:
            token = await self._tokens.get_valid_token(
                entity.tenant_id, entity.provider, CredentialPurpose.PRIMARY_AUTH
            )
        except RetryableTransientError as e:
            self._fail(outcome, entity, e)
            return None
        if isinstance(token, NeedsAuth):
            outcome.status = OutcomeStatus.NEEDS_AUTH
            outcome.error = f"Authorization required ({token.reason})"
            outcome.authorization_url = token.authorization_url
            return None
        return token.access_token

    def _fail(self, outcome: ReconcileOutcome, entity: MirroredEntity, error: Exception) -> ReconcileOutcome:
        """Translate a provider failure into the outcome."""
        log_context = {
            "local_id": entity.id,
            "tenant_id": entity.tenant_id,
            "provider": entity.provider.value,
            "error_type": type(error).__name__,
        }
        if isinstance(error, NeedsAuthorizationError):
            outcome.status = OutcomeStatus.NEEDS_AUTH
            outcome.authorization_url = self._tokens.authorization_url(
                entity.tenant_id, entity.provider, CredentialPurpose.PRIMARY_AUTH
            )
        elif isinstance(error, ValidationRejectedError):
            outcome.status = OutcomeStatus.FAILED
            outcome.error_fields = list(error.fields)
        elif isinstance(error, RetryableTransientError):
            outcome.status = OutcomeStatus.RETRYABLE
            outcome.retry_after = error.retry_after
        else:
            outcome.status = OutcomeStatus.FAILED
        outcome.error = sanitize_error(error)
        logger.warning(
            "Campaign reconcile failed",
            extra={**log_context, "status": outcome.status.value},
            exc_info=error,
        )
        return outcome

    async def _notify_transition(self, entity: MirroredEntity, previous: LifecycleState) -> None:
        if self._notifier is None or entity.lifecycle_state == previous:
            return
        event = _TRANSITION_EVENTS.get(entity.lifecycle_state)
        if event is None:
            return
        await self._notifier.notify(
            entity.tenant_id,
            event,
            {
                "local_id": entity.id,
                "external_id": entity.external_id,
                "provider": entity.provider.value,
                "name": entity.desired_state.get("name"),
            },
        )

    async def reconcile(self, local_id: str) -> ReconcileOutcome:
        """Push the entity's pending local changes to its platform.

        Args:
            local_id: Local surrogate id of the entity.

        Returns:
            What was sent (if anything) and how it went.
        """
        outcome = ReconcileOutcome(local_id=local_id)
        entity = await self._entities.get(local_id)
        if entity is None:
            outcome.status = OutcomeStatus.FAILED
            outcome.error = f"Entity {local_id} not found"
            return outcome

        provider = self._provider_factory(entity.provider)
        if entity.external_id is None:
            return await self._create(entity, provider, outcome)

        schema = provider.schema
        diff = diff_state(
            schema.fields,
            entity.desired_state,
            entity.last_known_remote_state,
            entity.lifecycle_state,
        )
        outcome.skipped_immutable = list(diff.skipped_immutable)
        if diff.skipped_immutable:
            logger.warning(
                "Ignoring changes to fields that are immutable in the current lifecycle state",
                extra={
                    "local_id": local_id,
                    "lifecycle_state": entity.lifecycle_state.value,
                    "fields": diff.skipped_immutable,
                },
            )
        if diff.is_empty:
            return outcome

        payload = build_partial_payload(diff.changes)
        outcome.changed_fields = diff.changed_fields
        outcome.payload = payload
        try:
            provider.validate_patch(payload)
        except ValidationRejectedError as e:
            return self._fail(outcome, entity, e)

        access_token = await self._access_token(entity, outcome)
        if access_token is None:
            return outcome

        try:
            await provider.patch_entity(
                access_token, entity.account_id, entity.external_id, payload, diff.remote_paths
            )
        except TenantSyncException as e:
            return self._fail(outcome, entity, e)

        previous = entity.lifecycle_state
        entity.last_known_remote_state = apply_changes(entity.last_known_remote_state, diff.changes)
        if "status" in diff.changed_fields:
            entity.lifecycle_state = schema.lifecycle_for(entity.desired_state.get("status"))
        saved = await self._entities.save(entity)
        outcome.patched = True

        logger.info(
            "Campaign patched",
            extra={
                "local_id": local_id,
                "provider": entity.provider.value,
                "changed_fields": outcome.changed_fields,
            },
        )
        await self._notify_transition(saved, previous)
        return outcome

    async def _create(
        self, entity: MirroredEntity, provider: AdPlatformProvider, outcome: ReconcileOutcome
    ) -> ReconcileOutcome:
        schema = provider.schema
        payload = schema.to_remote(entity.desired_state)
        outcome.payload = payload
        try:
            provider.validate_patch(payload)
        except ValidationRejectedError as e:
            return self._fail(outcome, entity, e)

        access_token = await self._access_token(entity, outcome)
        if access_token is None:
            return outcome

        try:
            external_id = await provider.create_entity(access_token, entity.account_id, payload)
        except TenantSyncException as e:
            return self._fail(outcome, entity, e)

        previous = entity.lifecycle_state
        entity.external_id = external_id
        entity.last_known_remote_state = copy.deepcopy(entity.desired_state)
        entity.lifecycle_state = schema.lifecycle_for(entity.desired_state.get("status"))
        saved = await self._entities.save(entity)

        outcome.created = True
        outcome.changed_fields = sorted(entity.desired_state)
        logger.info(
            "Campaign created remotely",
            extra={"local_id": saved.id, "provider": entity.provider.value, "external_id": external_id},
        )
        await self._notify_transition(saved, previous)
        return outcome

    async def delete(self, local_id: str) -> ReconcileOutcome:
        """Delete a draft, or move anything else to pending deletion.

        An active campaign is never hard-deleted.
        """
        outcome = ReconcileOutcome(local_id=local_id)
        entity = await self._entities.get(local_id)
        if entity is None:
            outcome.status = OutcomeStatus.FAILED
            outcome.error = f"Entity {local_id} not found"
            return outcome
        if entity.lifecycle_state in _CLOSED_STATES:
            return outcome

        provider = self._provider_factory(entity.provider)

        if entity.lifecycle_state == LifecycleState.DRAFT or entity.external_id is None:
            if entity.external_id is not None:
                access_token = await self._access_token(entity, outcome)
                if access_token is None:
                    return outcome
                try:
                    await provider.delete_entity(access_token, entity.account_id, entity.external_id)
                except NotFoundError:
                    logger.info("Draft already gone remotely", extra={"local_id": local_id})
                except TenantSyncException as e:
                    return self._fail(outcome, entity, e)
                outcome.patched = True
            await self._entities.delete(local_id)
            logger.info("Draft campaign deleted", extra={"local_id": local_id})
            return outcome

        schema = provider.schema
        status_value = schema.pending_deletion_status
        partial: dict[str, Any] = {schema.status_field: status_value}
        access_token = await self._access_token(entity, outcome)
        if access_token is None:
            return outcome
        try:
            await provider.patch_entity(
                access_token, entity.account_id, entity.external_id, partial, [schema.status_field]
            )
        except TenantSyncException as e:
            return self._fail(outcome, entity, e)

        previous = entity.lifecycle_state
        entity.desired_state["status"] = status_value
        entity.last_known_remote_state["status"] = status_value
        entity.lifecycle_state = LifecycleState.PENDING_DELETION
        saved = await self._entities.save(entity)

        outcome.patched = True
        outcome.changed_fields = ["status"]
        outcome.payload = partial
        logger.info(
            "Campaign moved to pending deletion",
            extra={"local_id": local_id, "provider": entity.provider.value},
        )
        await self._notify_transition(saved, previous)
        return outcome

    async def reconcile_pending(
        self, tenant_id: str, provider: Provider | None = None
    ) -> list[ReconcileOutcome]:
        """Reconcile every entity of a tenant whose desired state diverges."""
        entities = await self._entities.list_for_tenant(tenant_id, provider)
        outcomes = []
        for entity in entities:
            if entity.lifecycle_state in _CLOSED_STATES or not entity.has_pending_changes:
                continue
            if entity.id is None:
                continue
            outcomes.append(await self.reconcile(entity.id))
        return outcomes
