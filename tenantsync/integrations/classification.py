"""Lead classification for ingested mail.

Decides whether an inbound message is lead-worthy and, if so, derives the
lead's contact details from it. Rules come from the tenant's lead
configuration; empty rule lists fall back to the configured defaults.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tenantsync.core.config import get_settings
from tenantsync.core.exceptions import PartialItemFailure
from tenantsync.integrations.domain import parse_datetime
from tenantsync.integrations.sync_domain import LeadConfig

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_PATTERN = re.compile(r"\+?\d[\d\s-]{6,}\d")
_TAG_PATTERN = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


def normalize_email(address: str) -> str:
    return address.strip().lower()


def html_to_text(value: str) -> str:
    """Flatten an HTML body to searchable text."""
    text = _TAG_PATTERN.sub(" ", value or "")
    return _WHITESPACE.sub(" ", html.unescape(text)).strip()


@dataclass
class MailMessage:
    """A mail message parsed out of a provider payload."""

    message_id: str
    conversation_id: str | None
    from_address: str
    from_name: str | None = None
    to_addresses: list[str] = field(default_factory=list)
    subject: str = ""
    body: str = ""
    received_at: datetime | None = None

    @property
    def searchable_text(self) -> str:
        return f"{self.subject} {self.body}"


def parse_graph_message(item: dict[str, Any]) -> MailMessage:
    """Parse a Microsoft Graph message resource.

    Raises:
        PartialItemFailure: If the message has no id or no sender address.
    """
    message_id = item.get("id")
    if not message_id:
        raise PartialItemFailure(None, "Message has no id")

    sender = (item.get("from") or {}).get("emailAddress") or {}
    address = sender.get("address")
    if not address:
        raise PartialItemFailure(message_id, "Message has no sender address")

    body = item.get("body") or {}
    content = body.get("content") or item.get("bodyPreview") or ""
    if body.get("contentType", "").lower() == "html":
        content = html_to_text(content)

    recipients = [
        normalize_email(r["emailAddress"]["address"])
        for r in item.get("toRecipients") or []
        if (r.get("emailAddress") or {}).get("address")
    ]
    return MailMessage(
        message_id=message_id,
        conversation_id=item.get("conversationId"),
        from_address=normalize_email(address),
        from_name=sender.get("name") or None,
        to_addresses=recipients,
        subject=item.get("subject") or "",
        body=content,
        received_at=parse_datetime(item.get("receivedDateTime") or item.get("createdDateTime")),
    )


@dataclass
class LeadCandidate:
    """Contact details derived from a lead-worthy message."""

    email: str
    name: str | None = None
    phone: str | None = None


class LeadClassifier:
    """Applies a tenant's lead rules to inbound messages."""

    def __init__(self, config: LeadConfig | None = None) -> None:
        settings = get_settings()
        keywords = (config.keywords if config else None) or settings.LEAD_DEFAULT_KEYWORDS
        self.keywords = [k.lower() for k in keywords if k.strip()]
        self.excluded = {normalize_email(e) for e in (config.excluded_emails if config else [])}
        self.special = {normalize_email(e) for e in (config.special_emails if config else [])}

    def is_excluded(self, address: str) -> bool:
        return normalize_email(address) in self.excluded

    def matches_keywords(self, message: MailMessage) -> bool:
        text = message.searchable_text.lower()
        return any(keyword in text for keyword in self.keywords)

    def classify(self, message: MailMessage) -> LeadCandidate | None:
        """Return the lead a message represents, or None if it is not lead-worthy.

        Raises:
            PartialItemFailure: If a message from a forwarding address carries
                no other email address to attribute the lead to.
        """
        if self.is_excluded(message.from_address):
            return None
        if not self.matches_keywords(message):
            return None

        phone_match = PHONE_PATTERN.search(message.body)
        phone = phone_match.group(0).strip() if phone_match else None

        if message.from_address in self.special:
            email = self._extract_forwarded_address(message)
            return LeadCandidate(email=email, phone=phone)

        return LeadCandidate(email=message.from_address, name=message.from_name, phone=phone)

    def _extract_forwarded_address(self, message: MailMessage) -> str:
        for match in EMAIL_PATTERN.finditer(message.searchable_text):
            candidate = normalize_email(match.group(0))
            if candidate not in self.special and candidate not in message.to_addresses:
                return candidate
        raise PartialItemFailure(
            message.message_id, "Forwarded lead message carries no lead address"
        )
