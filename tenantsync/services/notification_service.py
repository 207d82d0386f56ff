"""Tenant notifications for sync lifecycle events.

Notifications are fire-and-forget from the engine's perspective: a failed
write is logged and dropped, never raised into the job that triggered it.
"""

import logging
from enum import Enum
from typing import Any

from tenantsync.db.supabase import SupabaseClient

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    """Events the engine reports to tenants."""

    SYNC_COMPLETED = "sync.completed"
    SYNC_NEEDS_AUTHORIZATION = "sync.needs_authorization"
    CAMPAIGN_ACTIVATED = "campaign.activated"
    CAMPAIGN_PAUSED = "campaign.paused"
    CAMPAIGN_PENDING_DELETION = "campaign.pending_deletion"
    LEAD_CONTACTED = "lead.contacted"


class NotificationService:
    """Writes tenant notifications to the ``notifications`` table."""

    table = "notifications"

    async def notify(
        self,
        tenant_id: str,
        event: NotificationEvent,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Record a notification for a tenant.

        Args:
            tenant_id: Tenant to notify.
            event: What happened.
            payload: Event details (no secrets, no provider error payloads).
        """
        row = {"tenant_id": tenant_id, "event": event.value, "payload": payload or {}}
        try:
            SupabaseClient.execute(
                "create notification",
                lambda db: db.table(self.table).insert(row).execute(),
                tenant_id=tenant_id,
                notification_event=event.value,
            )
        except Exception:
            logger.warning(
                "Notification dropped",
                extra={"tenant_id": tenant_id, "notification_event": event.value},
                exc_info=True,
            )
            return
        logger.info(
            "Notification created",
            extra={"tenant_id": tenant_id, "notification_event": event.value},
        )


_notification_service: NotificationService | None = None


def get_notification_service() -> NotificationService:
    """Get or create the notification service singleton."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
