"""Models for side-effecting outbound actions.

State machine for a PendingOutboundAction:
    PENDING -> CONFIRMED   (external id resolved, synchronously or by reconciliation)

A pending action that has ``remote_accepted`` set was accepted by the
platform but its external id could not be resolved yet; it must never be
sent again, only reconciled.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from tenantsync.integrations.domain import parse_datetime


class OutboundState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


@dataclass
class OutboundMessage:
    """A reply to send on behalf of a tenant mailbox."""

    tenant_id: str
    mailbox: str
    recipient: str
    subject: str
    body: str
    reply_to_message_id: str | None = None
    lead_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "mailbox": self.mailbox,
            "recipient": self.recipient,
            "subject": self.subject,
            "body": self.body,
            "reply_to_message_id": self.reply_to_message_id,
            "lead_id": self.lead_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OutboundMessage":
        return cls(
            tenant_id=data["tenant_id"],
            mailbox=data.get("mailbox") or "",
            recipient=data.get("recipient") or "",
            subject=data.get("subject") or "",
            body=data.get("body") or "",
            reply_to_message_id=data.get("reply_to_message_id"),
            lead_id=data.get("lead_id"),
        )


@dataclass
class PendingOutboundAction:
    """Durable record of an outbound attempt, written before any network call."""

    tenant_id: str
    correlation_key: str
    payload: OutboundMessage
    id: str | None = None
    state: OutboundState = OutboundState.PENDING
    external_id: str | None = None
    remote_accepted: bool = False
    attempts: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    confirmed_at: datetime | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.state == OutboundState.CONFIRMED

    def confirm(self, external_id: str) -> None:
        """Transition to CONFIRMED with exactly one external id.

        Raises:
            ValueError: If no external id is given or the action is already
                confirmed with a different one.
        """
        if not external_id:
            raise ValueError("A confirmed outbound action requires an external id")
        if self.is_confirmed and self.external_id != external_id:
            raise ValueError(
                f"Outbound action {self.id} already confirmed as {self.external_id}"
            )
        self.state = OutboundState.CONFIRMED
        self.external_id = external_id
        self.confirmed_at = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "tenant_id": self.tenant_id,
            "correlation_key": self.correlation_key,
            "payload": self.payload.to_dict(),
            "state": self.state.value,
            "external_id": self.external_id,
            "remote_accepted": self.remote_accepted,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
        }
        if self.id:
            data["id"] = self.id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingOutboundAction":
        return cls(
            tenant_id=data["tenant_id"],
            correlation_key=data["correlation_key"],
            payload=OutboundMessage.from_dict(data.get("payload") or {"tenant_id": data["tenant_id"]}),
            id=data.get("id"),
            state=OutboundState(data.get("state") or OutboundState.PENDING.value),
            external_id=data.get("external_id"),
            remote_accepted=bool(data.get("remote_accepted", False)),
            attempts=int(data.get("attempts") or 0),
            created_at=parse_datetime(data.get("created_at")) or datetime.now(UTC),
            confirmed_at=parse_datetime(data.get("confirmed_at")),
        )
