"""Incremental, cursor-based synchronization of remote collections.

``DeltaSyncEngine.sync_partition`` pulls one partition (a mailbox folder or
an ad account) page by page, hands every item to the partition's handler
and advances the saved cursor only after a page was fully processed. The
same engine drives lead ingestion and campaign mirroring; what differs is
the handler.

Failure isolation:
- Item level: a malformed item (PartialItemFailure, missing keys, bad
  values) is logged, counted and skipped; the page continues.
- Page level: authorization, transient, store or unexpected errors abort
  the run without touching the cursor, so the same page is retried next run.
- Partition level: every outcome is returned, never raised, so one failing
  partition cannot block the others.
"""

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from tenantsync.core.config import Settings, get_settings
from tenantsync.core.exceptions import (
    NeedsAuthorizationError,
    PartialItemFailure,
    RetryableTransientError,
    TenantSyncException,
    sanitize_error,
)
from tenantsync.db.base import CursorStore, EntityStore, LeadStore, OutboundActionStore, TenantConfigStore
from tenantsync.integrations.classification import LeadClassifier, MailMessage, parse_graph_message
from tenantsync.integrations.domain import CredentialPurpose, NeedsAuth, Provider
from tenantsync.integrations.oauth import TokenLifecycleManager
from tenantsync.integrations.providers import (
    AdPlatformProvider,
    BaseProvider,
    MicrosoftGraphProvider,
    get_ad_provider,
    get_provider,
)
from tenantsync.integrations.sync_domain import (
    LeadMessage,
    LeadRecord,
    LeadStatus,
    MessageDirection,
    OutcomeStatus,
    PartitionKey,
    PartitionKind,
    SyncCursor,
    SyncOutcome,
)
from tenantsync.services.campaign_models import LifecycleState, MirroredEntity

if TYPE_CHECKING:
    from tenantsync.services.outbound_delivery import OutboundDeliveryEngine

logger = logging.getLogger(__name__)

# Errors that mean "this one item is malformed", as opposed to "the page failed"
ITEM_ERRORS: tuple[type[Exception], ...] = (PartialItemFailure, KeyError, ValueError, TypeError)


class ItemDisposition(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"


@dataclass
class SyncContext:
    """Per-run state shared between the engine and a handler."""

    tenant_id: str
    partition: PartitionKey
    access_token: str
    classifier: LeadClassifier | None = None
    touched_conversations: set[str] = field(default_factory=set)


class PartitionHandler(ABC):
    """Turns the items of one partition kind into local records."""

    kind: PartitionKind
    purpose: CredentialPurpose = CredentialPurpose.PRIMARY_AUTH
    required_scopes: tuple[str, ...] = ()

    async def prepare(self, context: SyncContext) -> None:
        """Load per-run configuration before the first page."""

    @abstractmethod
    async def process_item(self, context: SyncContext, item: dict[str, Any]) -> ItemDisposition:
        """Upsert one remote item.

        Raises:
            PartialItemFailure: If the item is malformed (skipped by the engine).
        """

    async def after_page(self, context: SyncContext) -> None:
        """Follow-up work once every item of a page is stored."""


class DeltaSyncEngine:
    """Pulls remote collections incrementally into local stores."""

    def __init__(
        self,
        token_manager: TokenLifecycleManager,
        cursor_store: CursorStore,
        handlers: list[PartitionHandler],
        provider_factory: Callable[[Provider], BaseProvider] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._tokens = token_manager
        self._cursors = cursor_store
        self._handlers = {h.kind: h for h in handlers}
        self._provider_factory = provider_factory or get_provider
        self._settings = settings or get_settings()

    async def sync_partition(self, tenant_id: str, partition_key: str | PartitionKey) -> SyncOutcome:
        """Synchronize one partition for one tenant.

        Args:
            tenant_id: Tenant to sync.
            partition_key: Partition, rendered or parsed.

        Returns:
            The outcome; failures are reported in it, never raised.
        """
        try:
            partition = (
                partition_key
                if isinstance(partition_key, PartitionKey)
                else PartitionKey.parse(partition_key)
            )
        except ValueError as e:
            return SyncOutcome(
                tenant_id=tenant_id,
                partition_key=str(partition_key),
                status=OutcomeStatus.FAILED,
                error=str(e),
            ).finish()

        outcome = SyncOutcome(tenant_id=tenant_id, partition_key=str(partition))
        handler = self._handlers.get(partition.kind)
        if handler is None:
            outcome.status = OutcomeStatus.FAILED
            outcome.error = f"No handler for {partition.kind.value} partitions"
            return outcome.finish()

        log_context = {"tenant_id": tenant_id, "partition": str(partition)}

        try:
            token = await self._tokens.get_valid_token(
                tenant_id, partition.provider, handler.purpose, list(handler.required_scopes)
            )
        except RetryableTransientError as e:
            logger.warning("Token unavailable, partition skipped", extra=log_context, exc_info=True)
            outcome.status = OutcomeStatus.RETRYABLE
            outcome.error = sanitize_error(e)
            return outcome.finish()

        if isinstance(token, NeedsAuth):
            outcome.status = OutcomeStatus.NEEDS_AUTH
            outcome.error = f"Authorization required ({token.reason})"
            outcome.authorization_url = token.authorization_url
            return outcome.finish()

        context = SyncContext(
            tenant_id=tenant_id, partition=partition, access_token=token.access_token
        )
        try:
            await self._run(handler, context, outcome)
        except NeedsAuthorizationError as e:
            logger.warning("Provider rejected the token mid-sync", extra=log_context, exc_info=True)
            outcome.status = OutcomeStatus.NEEDS_AUTH
            outcome.error = sanitize_error(e)
            outcome.authorization_url = self._tokens.authorization_url(
                tenant_id, partition.provider, handler.purpose
            )
        except TenantSyncException as e:
            logger.warning(
                "Partition sync aborted; cursor left in place",
                extra={**log_context, "error_code": e.code},
                exc_info=True,
            )
            outcome.status = OutcomeStatus.RETRYABLE if e.retryable else OutcomeStatus.FAILED
            outcome.error = sanitize_error(e)
        except Exception as e:
            logger.exception("Unexpected error during partition sync", extra=log_context)
            outcome.status = OutcomeStatus.FAILED
            outcome.error = sanitize_error(e)

        outcome.finish()
        logger.info(
            "Partition sync finished",
            extra={
                **log_context,
                "status": outcome.status.value,
                "items_processed": outcome.items_processed,
                "items_skipped": outcome.items_skipped,
                "items_failed": outcome.items_failed,
                "pages": outcome.pages_processed,
            },
        )
        return outcome

    async def _run(self, handler: PartitionHandler, context: SyncContext, outcome: SyncOutcome) -> None:
        partition = context.partition
        key = str(partition)
        provider = self._provider_factory(partition.provider)
        await handler.prepare(context)

        cursor = await self._cursors.get(context.tenant_id, key)
        position = cursor.continuation_token if cursor else None
        since = datetime.now(UTC) - timedelta(days=self._settings.SYNC_LOOKBACK_DAYS)
        if position is None:
            logger.info(
                "No cursor, running bounded initial sync",
                extra={
                    "tenant_id": context.tenant_id,
                    "partition": key,
                    "lookback_days": self._settings.SYNC_LOOKBACK_DAYS,
                },
            )

        for _ in range(self._settings.SYNC_MAX_PAGES_PER_RUN):
            page = await provider.list_changes(context.access_token, partition, position, since)
            outcome.items_fetched += len(page.items)
            context.touched_conversations.clear()

            for item in page.items:
                try:
                    disposition = await handler.process_item(context, item)
                except ITEM_ERRORS as e:
                    outcome.items_failed += 1
                    logger.warning(
                        "Skipping malformed item",
                        extra={
                            "tenant_id": context.tenant_id,
                            "partition": key,
                            "item_id": item.get("id") if isinstance(item, dict) else None,
                            "error": str(e),
                        },
                    )
                    continue
                if disposition == ItemDisposition.PROCESSED:
                    outcome.items_processed += 1
                else:
                    outcome.items_skipped += 1

            await handler.after_page(context)
            outcome.pages_processed += 1

            # The page is fully stored: only now may the cursor move.
            next_position = page.next_cursor or position
            await self._cursors.save(
                SyncCursor(
                    tenant_id=context.tenant_id,
                    partition_key=key,
                    continuation_token=next_position,
                    last_synced_at=datetime.now(UTC),
                )
            )
            if next_position != position:
                outcome.cursor_advanced = True
            position = next_position

            if not page.has_more:
                break
        else:
            logger.info(
                "Page limit reached, continuing next run",
                extra={"tenant_id": context.tenant_id, "partition": key},
            )


# ---------------------------------------------------------------------------
# Lead ingestion
# ---------------------------------------------------------------------------


class LeadIngestionHandler(PartitionHandler):
    """Classifies mailbox messages and upserts leads and their messages."""

    kind = PartitionKind.LEADS
    purpose = CredentialPurpose.SECONDARY_INGESTION
    required_scopes = ("Mail.Read",)

    def __init__(
        self,
        lead_store: LeadStore,
        tenant_config_store: TenantConfigStore,
        outbound_store: OutboundActionStore | None = None,
        outbound_engine: "OutboundDeliveryEngine | None" = None,
        provider_factory: Callable[[Provider], BaseProvider] | None = None,
    ) -> None:
        self._leads = lead_store
        self._config = tenant_config_store
        self._outbound_store = outbound_store
        self._outbound_engine = outbound_engine
        self._provider_factory = provider_factory or get_provider

    async def prepare(self, context: SyncContext) -> None:
        config = await self._config.get_lead_config(context.tenant_id)
        context.classifier = LeadClassifier(config)

    async def process_item(self, context: SyncContext, item: dict[str, Any]) -> ItemDisposition:
        message = parse_graph_message(item)
        mailbox = context.partition.account.lower()

        if message.from_address == mailbox:
            stored = await self._store_outgoing(context, message)
            return ItemDisposition.PROCESSED if stored else ItemDisposition.SKIPPED

        classifier = context.classifier or LeadClassifier()
        candidate = classifier.classify(message)
        if candidate is None:
            return ItemDisposition.SKIPPED

        incoming = LeadRecord(
            tenant_id=context.tenant_id,
            email=candidate.email,
            source_provider=context.partition.provider,
            name=candidate.name,
            phone=candidate.phone,
            status=LeadStatus.NEW,
            mailbox=mailbox,
            conversation_ids=[message.conversation_id] if message.conversation_id else [],
            first_seen_at=message.received_at,
            last_message_at=message.received_at,
        )
        existing = await self._leads.get_lead(
            context.tenant_id, candidate.email, context.partition.provider
        )
        lead = existing.merged_with(incoming) if existing else incoming
        saved = await self._leads.save_lead(lead)

        await self._leads.save_message(
            LeadMessage(
                tenant_id=context.tenant_id,
                message_id=message.message_id,
                conversation_id=message.conversation_id,
                direction=MessageDirection.INBOUND,
                from_address=message.from_address,
                to_addresses=message.to_addresses,
                subject=message.subject,
                body=message.body,
                received_at=message.received_at,
                lead_id=saved.id,
                mailbox=mailbox,
            )
        )
        if message.conversation_id:
            context.touched_conversations.add(message.conversation_id)
        return ItemDisposition.PROCESSED

    async def _store_outgoing(
        self, context: SyncContext, message: MailMessage, lead_id: str | None = None
    ) -> bool:
        """Store a message sent by the mailbox itself, if it belongs to a known lead."""
        if lead_id is None:
            for address in message.to_addresses:
                lead = await self._leads.get_lead(
                    context.tenant_id, address, context.partition.provider
                )
                if lead is not None:
                    lead_id = lead.id
                    break
        if lead_id is None:
            return False
        await self._leads.save_message(
            LeadMessage(
                tenant_id=context.tenant_id,
                message_id=message.message_id,
                conversation_id=message.conversation_id,
                direction=MessageDirection.OUTBOUND,
                from_address=message.from_address,
                to_addresses=message.to_addresses,
                subject=message.subject,
                body=message.body,
                received_at=message.received_at,
                lead_id=lead_id,
                mailbox=context.partition.account.lower(),
            )
        )
        return True

    async def after_page(self, context: SyncContext) -> None:
        if self._outbound_store is None or self._outbound_engine is None:
            return

        mailbox = context.partition.account.lower()
        pending = await self._outbound_store.list_pending(context.tenant_id)
        candidates = {
            action.correlation_key: action
            for action in pending
            if action.payload.mailbox.lower() == mailbox
            and (action.correlation_key in context.touched_conversations or action.remote_accepted)
        }
        if not candidates:
            return

        provider = self._provider_factory(context.partition.provider)
        if not isinstance(provider, MicrosoftGraphProvider):
            return

        for conversation_id, action in candidates.items():
            try:
                thread = await provider.list_conversation_messages(
                    context.access_token, mailbox, conversation_id
                )
            except RetryableTransientError:
                logger.warning(
                    "Could not fetch thread for outbound reconciliation",
                    extra={"tenant_id": context.tenant_id, "conversation_id": conversation_id},
                    exc_info=True,
                )
                continue

            outgoing = []
            for raw in thread:
                try:
                    message = parse_graph_message(raw)
                except PartialItemFailure:
                    continue
                if message.from_address == mailbox:
                    outgoing.append(message)
                    await self._store_outgoing(context, message, lead_id=action.payload.lead_id)

            await self._outbound_engine.reconcile(context.tenant_id, conversation_id, outgoing)


# ---------------------------------------------------------------------------
# Campaign mirroring
# ---------------------------------------------------------------------------


class CampaignMirrorHandler(PartitionHandler):
    """Mirrors remote campaigns into local entities."""

    kind = PartitionKind.CAMPAIGNS
    purpose = CredentialPurpose.PRIMARY_AUTH

    def __init__(
        self,
        entity_store: EntityStore,
        provider_factory: Callable[[Provider], AdPlatformProvider] | None = None,
    ) -> None:
        self._entities = entity_store
        self._provider_factory = provider_factory or get_ad_provider

    async def process_item(self, context: SyncContext, item: dict[str, Any]) -> ItemDisposition:
        partition = context.partition
        provider = self._provider_factory(partition.provider)
        remote = provider.normalize_entity(item)
        lifecycle = provider.schema.lifecycle_for(remote.status)

        existing = await self._entities.get_by_external_id(
            context.tenant_id, partition.provider, remote.external_id
        )
        if existing is None:
            await self._entities.save(
                MirroredEntity(
                    tenant_id=context.tenant_id,
                    provider=partition.provider,
                    account_id=partition.account,
                    external_id=remote.external_id,
                    desired_state=copy.deepcopy(remote.state),
                    last_known_remote_state=remote.state,
                    lifecycle_state=lifecycle,
                    remote_updated_at=remote.updated_at,
                )
            )
            return ItemDisposition.PROCESSED

        if (
            existing.remote_updated_at is not None
            and remote.updated_at is not None
            and remote.updated_at < existing.remote_updated_at
        ):
            return ItemDisposition.SKIPPED

        # Fields the tenant has not edited follow the remote; pending edits stay.
        previous = existing.last_known_remote_state
        for name, value in remote.state.items():
            if name not in existing.desired_state or existing.desired_state[name] == previous.get(name):
                existing.desired_state[name] = copy.deepcopy(value)

        existing.last_known_remote_state = remote.state
        existing.remote_updated_at = remote.updated_at or existing.remote_updated_at
        if not (
            existing.lifecycle_state == LifecycleState.PENDING_DELETION
            and lifecycle != LifecycleState.REMOVED
        ):
            existing.lifecycle_state = lifecycle
        await self._entities.save(existing)
        return ItemDisposition.PROCESSED
