"""Domain models for incremental synchronization.

Key models:
- PartitionKey: an independently synchronized unit (a mailbox folder, an ad account)
- SyncCursor: persisted continuation position for one partition
- SyncOutcome: result of one partition run, returned to the scheduler
- LeadRecord / LeadMessage: records produced by lead ingestion
- LeadConfig / AutoReplyConfig / AdAccount: tenant configuration read by jobs

Enums:
- OutcomeStatus: SUCCESS, PARTIAL, NEEDS_AUTH, RETRYABLE, FAILED
- PartitionKind: LEADS (mail folders) or CAMPAIGNS (ad accounts)
- LeadStatus: NEW < CONTACTED < CONVERTED < CLOSED
- MessageDirection: INBOUND or OUTBOUND
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from tenantsync.integrations.domain import Provider, parse_datetime


class OutcomeStatus(str, Enum):
    """Status of a sync, reconcile or job run."""

    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"  # Some items or partitions failed, the rest went through
    NEEDS_AUTH = "NEEDS_AUTH"
    RETRYABLE = "RETRYABLE"
    FAILED = "FAILED"


class PartitionKind(str, Enum):
    """What a partition mirrors."""

    LEADS = "leads"
    CAMPAIGNS = "campaigns"


@dataclass(frozen=True)
class PartitionKey:
    """Identifies one independently synchronized partition.

    Rendered as ``provider/kind/account[/folder]``, e.g.
    ``microsoft/leads/sales@acme.com/inbox`` or ``linkedin/campaigns/50912``.
    """

    provider: Provider
    kind: PartitionKind
    account: str
    folder: str | None = None

    def __str__(self) -> str:
        parts = [self.provider.value, self.kind.value, self.account]
        if self.folder:
            parts.append(self.folder)
        return "/".join(parts)

    @classmethod
    def parse(cls, value: str) -> "PartitionKey":
        """Parse a rendered partition key.

        Raises:
            ValueError: If the key is malformed.
        """
        parts = value.split("/", 3)
        if len(parts) < 3 or not parts[2]:
            raise ValueError(f"Malformed partition key: {value!r}")
        return cls(
            provider=Provider(parts[0]),
            kind=PartitionKind(parts[1]),
            account=parts[2],
            folder=parts[3] if len(parts) == 4 and parts[3] else None,
        )

    @property
    def provider_prefix(self) -> str:
        return f"{self.provider.value}/"


@dataclass
class SyncCursor:
    """Persisted continuation position for one partition.

    A cursor without a continuation token means the next run performs the
    bounded initial backfill.
    """

    tenant_id: str
    partition_key: str
    continuation_token: str | None = None
    last_synced_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "partition_key": self.partition_key,
            "continuation_token": self.continuation_token,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncCursor":
        return cls(
            tenant_id=data["tenant_id"],
            partition_key=data["partition_key"],
            continuation_token=data.get("continuation_token"),
            last_synced_at=parse_datetime(data.get("last_synced_at")),
        )


@dataclass
class SyncOutcome:
    """Result of one ``sync_partition`` call."""

    tenant_id: str
    partition_key: str
    status: OutcomeStatus = OutcomeStatus.SUCCESS
    items_fetched: int = 0
    items_processed: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    pages_processed: int = 0
    cursor_advanced: bool = False
    error: str | None = None
    authorization_url: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def needs_auth(self) -> bool:
        return self.status == OutcomeStatus.NEEDS_AUTH

    @property
    def duration_seconds(self) -> float | None:
        """Run duration in seconds, or None while still running."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def finish(self) -> "SyncOutcome":
        """Stamp completion and derive PARTIAL when items failed on a successful run."""
        self.completed_at = datetime.now(UTC)
        if self.status == OutcomeStatus.SUCCESS and self.items_failed:
            self.status = OutcomeStatus.PARTIAL
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "partition_key": self.partition_key,
            "status": self.status.value,
            "items_fetched": self.items_fetched,
            "items_processed": self.items_processed,
            "items_skipped": self.items_skipped,
            "items_failed": self.items_failed,
            "pages_processed": self.pages_processed,
            "cursor_advanced": self.cursor_advanced,
            "error": self.error,
            "authorization_url": self.authorization_url,
        }


# ---------------------------------------------------------------------------
# Leads
# ---------------------------------------------------------------------------


class LeadStatus(str, Enum):
    """Lead pipeline status. Later members rank higher."""

    NEW = "NEW"
    CONTACTED = "CONTACTED"
    CONVERTED = "CONVERTED"
    CLOSED = "CLOSED"

    @property
    def rank(self) -> int:
        return _LEAD_STATUS_ORDER.index(self)

    @classmethod
    def highest(cls, a: "LeadStatus", b: "LeadStatus") -> "LeadStatus":
        return a if a.rank >= b.rank else b


_LEAD_STATUS_ORDER = [LeadStatus.NEW, LeadStatus.CONTACTED, LeadStatus.CONVERTED, LeadStatus.CLOSED]


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


@dataclass
class LeadRecord:
    """A lead derived from inbound mail, keyed by (tenant, email, source provider)."""

    tenant_id: str
    email: str
    source_provider: Provider
    id: str | None = None
    name: str | None = None
    phone: str | None = None
    status: LeadStatus = LeadStatus.NEW
    mailbox: str | None = None
    conversation_ids: list[str] = field(default_factory=list)
    first_seen_at: datetime | None = None
    last_message_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def natural_key(self) -> tuple[str, str, Provider]:
        return (self.tenant_id, self.email, self.source_provider)

    def merged_with(self, incoming: "LeadRecord") -> "LeadRecord":
        """Fold a freshly-derived record into this stored one.

        Status never regresses, known contact details are kept, conversation
        ids accumulate and timestamps only move outward.
        """
        conversations = list(self.conversation_ids)
        for conversation_id in incoming.conversation_ids:
            if conversation_id not in conversations:
                conversations.append(conversation_id)

        first_seen = min(
            (t for t in (self.first_seen_at, incoming.first_seen_at) if t is not None),
            default=None,
        )
        last_message = max(
            (t for t in (self.last_message_at, incoming.last_message_at) if t is not None),
            default=None,
        )
        return LeadRecord(
            tenant_id=self.tenant_id,
            email=self.email,
            source_provider=self.source_provider,
            id=self.id or incoming.id,
            name=self.name or incoming.name,
            phone=self.phone or incoming.phone,
            status=LeadStatus.highest(self.status, incoming.status),
            mailbox=self.mailbox or incoming.mailbox,
            conversation_ids=conversations,
            first_seen_at=first_seen,
            last_message_at=last_message,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "tenant_id": self.tenant_id,
            "email": self.email,
            "source_provider": self.source_provider.value,
            "name": self.name,
            "phone": self.phone,
            "status": self.status.value,
            "mailbox": self.mailbox,
            "conversation_ids": list(self.conversation_ids),
            "first_seen_at": self.first_seen_at.isoformat() if self.first_seen_at else None,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if self.id:
            data["id"] = self.id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LeadRecord":
        return cls(
            tenant_id=data["tenant_id"],
            email=data["email"],
            source_provider=Provider(data["source_provider"]),
            id=data.get("id"),
            name=data.get("name"),
            phone=data.get("phone"),
            status=LeadStatus(data.get("status") or LeadStatus.NEW.value),
            mailbox=data.get("mailbox"),
            conversation_ids=list(data.get("conversation_ids") or []),
            first_seen_at=parse_datetime(data.get("first_seen_at")),
            last_message_at=parse_datetime(data.get("last_message_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )


@dataclass
class LeadMessage:
    """One stored mail message, unique per (tenant, message id)."""

    tenant_id: str
    message_id: str
    conversation_id: str | None
    direction: MessageDirection
    from_address: str
    to_addresses: list[str] = field(default_factory=list)
    subject: str = ""
    body: str = ""
    received_at: datetime | None = None
    lead_id: str | None = None
    mailbox: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "message_id": self.message_id,
            "conversation_id": self.conversation_id,
            "direction": self.direction.value,
            "from_address": self.from_address,
            "to_addresses": list(self.to_addresses),
            "subject": self.subject,
            "body": self.body,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "lead_id": self.lead_id,
            "mailbox": self.mailbox,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LeadMessage":
        return cls(
            tenant_id=data["tenant_id"],
            message_id=data["message_id"],
            conversation_id=data.get("conversation_id"),
            direction=MessageDirection(data.get("direction") or MessageDirection.INBOUND.value),
            from_address=data.get("from_address") or "",
            to_addresses=list(data.get("to_addresses") or []),
            subject=data.get("subject") or "",
            body=data.get("body") or "",
            received_at=parse_datetime(data.get("received_at")),
            lead_id=data.get("lead_id"),
            mailbox=data.get("mailbox"),
        )


# ---------------------------------------------------------------------------
# Tenant configuration
# ---------------------------------------------------------------------------


@dataclass
class LeadConfig:
    """Tenant lead-capture rules. Empty lists fall back to configured defaults."""

    tenant_id: str
    enabled: bool = True
    mailboxes: list[str] = field(default_factory=list)
    folders: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    excluded_emails: list[str] = field(default_factory=list)
    special_emails: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LeadConfig":
        return cls(
            tenant_id=data["tenant_id"],
            enabled=bool(data.get("enabled", True)),
            mailboxes=list(data.get("mailboxes") or []),
            folders=list(data.get("folders") or []),
            keywords=list(data.get("keywords") or []),
            excluded_emails=list(data.get("excluded_emails") or []),
            special_emails=list(data.get("special_emails") or []),
        )


@dataclass
class AutoReplyConfig:
    """Tenant auto-reply template for first contact with a new lead."""

    tenant_id: str
    mailbox: str
    subject: str
    body: str
    company_name: str = ""
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutoReplyConfig":
        return cls(
            tenant_id=data["tenant_id"],
            mailbox=data.get("mailbox") or "",
            subject=data.get("subject") or "",
            body=data.get("body") or "",
            company_name=data.get("company_name") or "",
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class AdAccount:
    """An external ad account connected by a tenant."""

    tenant_id: str
    provider: Provider
    account_id: str
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AdAccount":
        return cls(
            tenant_id=data["tenant_id"],
            provider=Provider(data["provider"]),
            account_id=str(data["account_id"]),
            is_active=bool(data.get("is_active", True)),
        )
