"""Idempotent outbound delivery with a primary/fallback call pair.

Used for replies sent on behalf of a tenant mailbox. A
``PendingOutboundAction`` row is written before any network call; that row
is the durability point that survives a crash mid-attempt.

Delivery steps:
1. Validate addressing and content; invalid input is never attempted.
2. Return the external id of an already confirmed action for the key.
3. If an earlier attempt was accepted remotely but never resolved, only try
   to resolve it again; it is never re-sent.
4. Otherwise reply in-thread (primary). On a rate limit wait and retry the
   primary once; on any other failure, or a second failure, send a new
   message instead (fallback).
5. Resolve the sent copy from Sent Items with a short bounded poll and
   confirm the action with its id.

Anything unresolved stays pending and is confirmed later by ``reconcile``
when lead ingestion pulls the conversation thread.
"""

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from tenantsync.core.config import Settings, get_settings
from tenantsync.core.exceptions import (
    NeedsAuthorizationError,
    RateLimitError,
    RetryableTransientError,
    TenantSyncException,
)
from tenantsync.db.base import OutboundActionStore
from tenantsync.integrations.classification import MailMessage
from tenantsync.integrations.domain import CredentialPurpose, NeedsAuth, Provider, parse_datetime
from tenantsync.integrations.oauth import TokenLifecycleManager
from tenantsync.integrations.providers import BaseProvider, MicrosoftGraphProvider, get_provider
from tenantsync.services.outbound_models import OutboundMessage, PendingOutboundAction

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_REPLY_PREFIX = re.compile(r"^\s*((re|fw|fwd|aw|sv)\s*:\s*)+", re.IGNORECASE)

# Sent items created this long before the pending row still count as ours
_CLOCK_SKEW = timedelta(minutes=2)


def normalize_subject(subject: str) -> str:
    """Strip reply/forward prefixes and case for subject matching."""
    return _REPLY_PREFIX.sub("", subject or "").strip().lower()


class OutboundDeliveryEngine:
    """Sends mail replies at most once per correlation key and confirms them."""

    def __init__(
        self,
        action_store: OutboundActionStore,
        token_manager: TokenLifecycleManager,
        provider_factory: Callable[[Provider], BaseProvider] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._actions = action_store
        self._tokens = token_manager
        self._provider_factory = provider_factory or get_provider
        self._settings = settings or get_settings()

    @property
    def provider(self) -> MicrosoftGraphProvider:
        client = self._provider_factory(Provider.MICROSOFT)
        if not isinstance(client, MicrosoftGraphProvider):
            raise TypeError(f"{type(client).__name__} cannot send mail")
        return client

    def validate(self, message: OutboundMessage) -> str | None:
        """Return why a message must not be sent, or None if it may be."""
        if not ADDRESS_PATTERN.match(message.mailbox or ""):
            return "invalid_sender"
        if not ADDRESS_PATTERN.match(message.recipient or ""):
            return "invalid_recipient"
        sender_domain = message.mailbox.rsplit("@", 1)[-1].lower()
        if sender_domain in self._settings.OUTBOUND_BLOCKED_SENDER_DOMAINS:
            return "blocked_sender_domain"
        if message.recipient.lower() == message.mailbox.lower():
            return "recipient_is_sender"
        if not message.subject.strip() or not message.body.strip():
            return "empty_content"
        if not message.reply_to_message_id:
            return "missing_reply_target"
        return None

    async def deliver(self, correlation_key: str, message: OutboundMessage) -> str | None:
        """Send ``message`` for ``correlation_key`` unless it was already sent.

        Args:
            correlation_key: Conversation the reply belongs to.
            message: What to send.

        Returns:
            The external message id once confirmed, or None if the message was
            not sent or could not be confirmed yet. None must never be treated
            as delivered.
        """
        log_context = {"tenant_id": message.tenant_id, "correlation_key": correlation_key}

        reason = self.validate(message)
        if reason is not None:
            logger.warning("Outbound message rejected", extra={**log_context, "reason": reason})
            return None

        existing = await self._actions.list_for_key(message.tenant_id, correlation_key)
        for action in existing:
            if action.is_confirmed:
                logger.info("Outbound message already confirmed", extra=log_context)
                return action.external_id

        action = next(iter(existing), None)
        if action is None:
            action = await self._actions.create(
                PendingOutboundAction(
                    tenant_id=message.tenant_id,
                    correlation_key=correlation_key,
                    payload=message,
                )
            )

        access_token = await self._access_token(message.tenant_id, log_context)
        if access_token is None:
            return None

        if not action.remote_accepted and action.attempts > 0:
            # An earlier attempt that reported failure may still have gone out.
            external_id = await self._resolve(access_token, action, poll=False)
            if external_id is not None:
                action.remote_accepted = True
                action = await self._actions.update(action)
                return await self._confirm(action, external_id)

        if not action.remote_accepted:
            accepted = await self._send(access_token, action, message)
            if not accepted:
                logger.warning("Outbound message not delivered", extra=log_context)
                return None
            action.remote_accepted = True
            action = await self._actions.update(action)

        external_id = await self._resolve(access_token, action, poll=True)
        if external_id is None:
            logger.info("Outbound message accepted but not yet resolved", extra=log_context)
            return None
        return await self._confirm(action, external_id)

    async def _access_token(self, tenant_id: str, log_context: dict[str, Any]) -> str | None:
        try:
            token = await self._tokens.get_valid_token(
                tenant_id,
                Provider.MICROSOFT,
                CredentialPurpose.SECONDARY_INGESTION,
                ["Mail.Send"],
            )
        except RetryableTransientError:
            logger.warning("No token for outbound delivery", extra=log_context, exc_info=True)
            return None
        if isinstance(token, NeedsAuth):
            logger.warning(
                "Outbound delivery needs authorization",
                extra={**log_context, "reason": token.reason},
            )
            return None
        return token.access_token

    async def _send(
        self, access_token: str, action: PendingOutboundAction, message: OutboundMessage
    ) -> bool:
        """Attempt the primary call (with one rate-limit retry), then the fallback."""
        log_context = {"tenant_id": message.tenant_id, "correlation_key": action.correlation_key}
        action.attempts += 1
        await self._actions.update(action)

        try:
            await self._reply(access_token, message)
            return True
        except NeedsAuthorizationError:
            logger.warning("Mailbox rejected the reply token", extra=log_context)
            return False
        except RateLimitError as e:
            wait = min(
                e.retry_after or self._settings.OUTBOUND_RATE_LIMIT_WAIT_SECONDS,
                self._settings.OUTBOUND_MAX_RATE_LIMIT_WAIT_SECONDS,
            )
            logger.warning(
                "Reply rate limited, retrying once", extra={**log_context, "wait_seconds": wait}
            )
            await asyncio.sleep(wait)
            try:
                await self._reply(access_token, message)
                return True
            except TenantSyncException:
                logger.warning("Reply retry failed, using fallback", extra=log_context, exc_info=True)
        except RetryableTransientError:
            # A timed-out reply may still have gone out.
            if await self._resolve(access_token, action, poll=False):
                return True
            logger.warning("Reply failed, using fallback", extra=log_context, exc_info=True)
        except TenantSyncException:
            logger.warning("Reply rejected, using fallback", extra=log_context, exc_info=True)

        try:
            await self.provider.send_mail(
                access_token, message.mailbox, message.recipient, message.subject, message.body
            )
            return True
        except TenantSyncException:
            logger.warning("Fallback send failed", extra=log_context, exc_info=True)
            return False

    async def _reply(self, access_token: str, message: OutboundMessage) -> None:
        await self.provider.reply_to_message(
            access_token, message.mailbox, message.reply_to_message_id or "", message.body
        )

    def _matches(self, item: dict[str, Any], action: PendingOutboundAction) -> bool:
        created = parse_datetime(item.get("createdDateTime"))
        if created is not None and created < action.created_at - _CLOCK_SKEW:
            return False
        if item.get("conversationId") == action.correlation_key:
            return True
        recipients = {
            (r.get("emailAddress") or {}).get("address", "").lower()
            for r in item.get("toRecipients") or []
        }
        return action.payload.recipient.lower() in recipients and normalize_subject(
            item.get("subject", "")
        ) == normalize_subject(action.payload.subject)

    async def _resolve(
        self, access_token: str, action: PendingOutboundAction, poll: bool
    ) -> str | None:
        """Find the sent copy of an action in the mailbox's Sent Items."""
        attempts = self._settings.OUTBOUND_RESOLVE_ATTEMPTS if poll else 1
        for attempt in range(attempts):
            if attempt:
                await asyncio.sleep(self._settings.OUTBOUND_RESOLVE_DELAY_SECONDS)
            try:
                sent = await self.provider.list_sent_items(access_token, action.payload.mailbox, top=10)
            except TenantSyncException:
                logger.warning(
                    "Could not list sent items",
                    extra={"tenant_id": action.tenant_id, "correlation_key": action.correlation_key},
                    exc_info=True,
                )
                continue
            for item in sent:
                if item.get("id") and self._matches(item, action):
                    return item["id"]
        return None

    async def _confirm(self, action: PendingOutboundAction, external_id: str) -> str | None:
        action.confirm(external_id)
        if await self._actions.confirm(action):
            logger.info(
                "Outbound message confirmed",
                extra={"tenant_id": action.tenant_id, "correlation_key": action.correlation_key},
            )
            return external_id
        # Someone else confirmed first; theirs is the one external id.
        for stored in await self._actions.list_for_key(action.tenant_id, action.correlation_key):
            if stored.is_confirmed:
                return stored.external_id
        return None

    async def reconcile(
        self, tenant_id: str, correlation_key: str, remote_messages: list[MailMessage]
    ) -> int:
        """Confirm pending actions against messages found in the remote thread.

        Args:
            tenant_id: Tenant the actions belong to.
            correlation_key: Conversation id.
            remote_messages: Messages sent by the mailbox in that conversation.

        Returns:
            Number of actions confirmed.
        """
        actions = await self._actions.list_for_key(tenant_id, correlation_key)
        claimed = {a.external_id for a in actions if a.is_confirmed}
        confirmed = 0
        for action in actions:
            if action.is_confirmed:
                continue
            for remote in remote_messages:
                if remote.message_id in claimed:
                    continue
                if remote.received_at is not None and remote.received_at < action.created_at - _CLOCK_SKEW:
                    continue
                if action.payload.recipient.lower() not in remote.to_addresses:
                    continue
                if normalize_subject(remote.subject) != normalize_subject(action.payload.subject):
                    continue
                if await self._confirm(action, remote.message_id) == remote.message_id:
                    claimed.add(remote.message_id)
                    confirmed += 1
                break
        if confirmed:
            logger.info(
                "Reconciled outbound actions",
                extra={"tenant_id": tenant_id, "correlation_key": correlation_key, "confirmed": confirmed},
            )
        return confirmed
