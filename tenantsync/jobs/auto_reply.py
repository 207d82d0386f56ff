"""Auto-reply job: first-contact replies to new leads.

A lead qualifies when it is still NEW, none of its conversations holds an
outbound message, and one conversation holds exactly one message, inbound.
The reply goes out through the OutboundDeliveryEngine keyed by that
conversation, so a rerun never sends a second reply. The lead moves to
CONTACTED only once the sent message was confirmed, whether by this job
or later by thread reconciliation during lead sync.
"""

import html
import logging

from tenantsync.integrations.classification import normalize_email
from tenantsync.integrations.sync_domain import (
    AutoReplyConfig,
    LeadMessage,
    LeadRecord,
    LeadStatus,
    MessageDirection,
    OutcomeStatus,
)
from tenantsync.jobs.context import JobDependencies
from tenantsync.services.notification_service import NotificationEvent
from tenantsync.services.outbound_models import OutboundMessage
from tenantsync.services.scheduler_models import JobKind, JobResult

logger = logging.getLogger(__name__)

DEFAULT_LEAD_NAME = "Customer"
DEFAULT_COMPANY = "Our Company"


def render_template(text: str, lead: LeadRecord, company: str) -> str:
    """Fill ``{{lead.name}}``, ``{{lead.email}}`` and ``{{company}}``."""
    replacements = {
        "{{lead.name}}": lead.name or DEFAULT_LEAD_NAME,
        "{{lead.email}}": lead.email or "",
        "{{company}}": company or DEFAULT_COMPANY,
    }
    for placeholder, value in replacements.items():
        text = text.replace(placeholder, value)
    return text


def _to_html(text: str) -> str:
    return html.escape(text).replace("\n", "<br>")


async def _first_contact_message(deps: JobDependencies, lead: LeadRecord) -> LeadMessage | None:
    """The single inbound message to reply to, or None if the lead does not qualify."""
    candidate: LeadMessage | None = None
    for conversation_id in lead.conversation_ids:
        messages = await deps.leads.list_messages(lead.tenant_id, conversation_id)
        if any(m.direction == MessageDirection.OUTBOUND for m in messages):
            return None
        if candidate is None and len(messages) == 1:
            candidate = messages[0]
    return candidate


async def run_auto_reply(deps: JobDependencies, tenant_id: str) -> JobResult:
    """Send the tenant's auto-reply template to every qualifying new lead."""
    config = await deps.tenant_configs.get_auto_reply_config(tenant_id)
    if config is None:
        logger.info("Auto-reply not configured", extra={"tenant_id": tenant_id})
        return JobResult.from_statuses(tenant_id, JobKind.AUTO_REPLY, [])

    lead_config = await deps.tenant_configs.get_lead_config(tenant_id)
    skipped_addresses = set()
    if lead_config is not None:
        skipped_addresses = {
            normalize_email(e) for e in lead_config.excluded_emails + lead_config.special_emails
        }

    leads = await deps.leads.list_leads(tenant_id, LeadStatus.NEW)
    statuses: list[OutcomeStatus] = []
    contacted = 0
    for lead in leads:
        if normalize_email(lead.email) in skipped_addresses:
            continue
        try:
            status = await _reply_to_lead(deps, config, lead)
        except Exception:
            logger.warning(
                "Auto-reply failed for lead",
                extra={"tenant_id": tenant_id, "lead_id": lead.id},
                exc_info=True,
            )
            status = OutcomeStatus.FAILED
        if status is None:
            continue
        statuses.append(status)
        if status == OutcomeStatus.SUCCESS:
            contacted += 1

    return JobResult.from_statuses(
        tenant_id,
        JobKind.AUTO_REPLY,
        statuses,
        items_processed=contacted,
        items_failed=sum(1 for s in statuses if s != OutcomeStatus.SUCCESS),
    )


async def _confirmed_reply(deps: JobDependencies, lead: LeadRecord) -> str | None:
    """External id of a reply already confirmed in one of the lead's conversations."""
    for conversation_id in lead.conversation_ids:
        for action in await deps.outbound.list_for_key(lead.tenant_id, conversation_id):
            if action.is_confirmed and action.payload.lead_id == lead.id:
                return action.external_id
    return None


async def _reply_to_lead(
    deps: JobDependencies, config: AutoReplyConfig, lead: LeadRecord
) -> OutcomeStatus | None:
    """Reply to one lead. Returns None when the lead does not qualify."""
    external_id = await _confirmed_reply(deps, lead)
    if external_id is not None:
        # Confirmed after the run that sent it, e.g. by thread reconciliation.
        return await _mark_contacted(deps, lead, external_id)

    inbound = await _first_contact_message(deps, lead)
    if inbound is None or inbound.direction != MessageDirection.INBOUND:
        return None
    if not inbound.conversation_id:
        return None

    message = OutboundMessage(
        tenant_id=lead.tenant_id,
        mailbox=lead.mailbox or config.mailbox,
        recipient=lead.email,
        subject=render_template(config.subject, lead, config.company_name),
        body=_to_html(render_template(config.body, lead, config.company_name)),
        reply_to_message_id=inbound.message_id,
        lead_id=lead.id,
    )
    external_id = await deps.delivery_engine.deliver(inbound.conversation_id, message)
    if external_id is None:
        return OutcomeStatus.RETRYABLE
    return await _mark_contacted(deps, lead, external_id)


async def _mark_contacted(deps: JobDependencies, lead: LeadRecord, external_id: str) -> OutcomeStatus:
    lead.status = LeadStatus.CONTACTED
    await deps.leads.save_lead(lead)
    logger.info(
        "Lead contacted",
        extra={"tenant_id": lead.tenant_id, "lead_id": lead.id, "external_id": external_id},
    )
    if deps.notifier is not None:
        await deps.notifier.notify(
            lead.tenant_id,
            NotificationEvent.LEAD_CONTACTED,
            {"lead_id": lead.id, "email": lead.email},
        )
    return OutcomeStatus.SUCCESS
