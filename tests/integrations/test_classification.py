"""Tests for lead classification of ingested mail."""

import pytest

from tenantsync.core.exceptions import PartialItemFailure
from tenantsync.integrations.classification import (
    LeadClassifier,
    MailMessage,
    html_to_text,
    parse_graph_message,
)
from tenantsync.integrations.sync_domain import LeadConfig


def _message(sender: str, subject: str, body: str = "", to: list[str] | None = None) -> MailMessage:
    return MailMessage(
        message_id="m1",
        conversation_id="c1",
        from_address=sender,
        from_name="Jane Doe",
        to_addresses=to or ["sales@acme.com"],
        subject=subject,
        body=body,
    )


class TestParseGraphMessage:
    """Parsing of Graph message resources."""

    def test_parses_html_body_and_recipients(self) -> None:
        item = {
            "id": "AAMk1",
            "conversationId": "conv-1",
            "subject": "Quote request",
            "body": {"contentType": "html", "content": "<p>Hello&nbsp;there</p><br>Call me"},
            "from": {"emailAddress": {"address": "Jane@Corp.com", "name": "Jane"}},
            "toRecipients": [{"emailAddress": {"address": "Sales@Acme.com"}}],
            "receivedDateTime": "2024-05-01T10:00:00Z",
        }

        message = parse_graph_message(item)

        assert message.from_address == "jane@corp.com"
        assert message.to_addresses == ["sales@acme.com"]
        assert message.body == "Hello there Call me"
        assert message.received_at is not None
        assert message.received_at.tzinfo is not None

    def test_missing_sender_is_item_failure(self) -> None:
        """Test that a message without a sender is skipped, not fatal."""
        with pytest.raises(PartialItemFailure) as exc_info:
            parse_graph_message({"id": "AAMk2", "subject": "x"})
        assert exc_info.value.item_id == "AAMk2"

    def test_missing_id_is_item_failure(self) -> None:
        with pytest.raises(PartialItemFailure):
            parse_graph_message({"from": {"emailAddress": {"address": "a@b.com"}}})

    def test_html_to_text_strips_tags(self) -> None:
        assert html_to_text("<div>Price <b>quote</b></div>") == "Price quote"


class TestLeadClassifier:
    """Rule evaluation."""

    def test_default_keywords_match(self) -> None:
        """Test that default keywords apply when the tenant has none."""
        candidate = LeadClassifier().classify(_message("jane@corp.com", "Interested in a demo"))
        assert candidate is not None
        assert candidate.email == "jane@corp.com"
        assert candidate.name == "Jane Doe"

    def test_no_keyword_no_lead(self) -> None:
        assert LeadClassifier().classify(_message("jane@corp.com", "Lunch?")) is None

    def test_tenant_keywords_replace_defaults(self) -> None:
        classifier = LeadClassifier(LeadConfig(tenant_id="t", keywords=["Pricing"]))
        assert classifier.classify(_message("a@corp.com", "pricing for 10 seats")) is not None
        assert classifier.classify(_message("a@corp.com", "Quote please")) is None

    def test_excluded_sender(self) -> None:
        classifier = LeadClassifier(LeadConfig(tenant_id="t", excluded_emails=["Noreply@Vendor.com"]))
        assert classifier.classify(_message("noreply@vendor.com", "Your quote")) is None

    def test_phone_is_extracted(self) -> None:
        candidate = LeadClassifier().classify(
            _message("a@corp.com", "Quote", body="Call me on +1 415-555-0100 today")
        )
        assert candidate is not None
        assert candidate.phone == "+1 415-555-0100"

    def test_forwarding_address_attributes_lead_to_body_address(self) -> None:
        """Test that form-forwarding senders yield the address in the body."""
        classifier = LeadClassifier(LeadConfig(tenant_id="t", special_emails=["forms@site.com"]))
        candidate = classifier.classify(
            _message("forms@site.com", "New inquiry", body="From: Bob <Bob@Prospect.io>")
        )
        assert candidate is not None
        assert candidate.email == "bob@prospect.io"

    def test_forwarding_without_address_is_item_failure(self) -> None:
        classifier = LeadClassifier(LeadConfig(tenant_id="t", special_emails=["forms@site.com"]))
        with pytest.raises(PartialItemFailure):
            classifier.classify(_message("forms@site.com", "New inquiry", body="no address"))
