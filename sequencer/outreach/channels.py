"""Channel handlers for step execution.

Each handler produces optional content for one step and returns a uniform
ChannelOutcome. Dispatch is a lookup in CHANNEL_HANDLERS; channels without a
handler produce an empty payload.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog

from sequencer.clients.freshsales import contact_url, search_url
from sequencer.core.db import get_user_crm_domain
from sequencer.outreach.composer import Draft, DraftComposer, DraftRequest
from sequencer.outreach.models import Enrollment, Step

log = structlog.get_logger()

DRAFT_FAILED_MESSAGE = "Draft generation failed — complete manually"
DEFAULT_TALKING_POINTS = "Review company dossier before calling."


@dataclass
class StepContext:
    """Everything a handler needs to know about the step being executed."""
    db_path: Path
    actor: str
    enrollment: Enrollment
    step: Step
    contact_name: str
    contact_title: str = ""
    contact_seniority: str = ""
    linkedin_url: Optional[str] = None
    crm_contact_id: Optional[str] = None
    company_industry: str = ""
    signals: list[dict] = field(default_factory=list)
    hubspot_status: str = "none"
    freshsales_status: str = "none"
    icp_score: Optional[int] = None

    @property
    def name_resolved(self) -> bool:
        return self.contact_name != self.enrollment.contact_id


@dataclass
class ChannelOutcome:
    draft_content: Optional[str]
    payload: dict


Handler = Callable[[StepContext, DraftComposer, float], Awaitable[ChannelOutcome]]


async def request_draft(
    ctx: StepContext,
    composer: DraftComposer,
    timeout: float,
    default_tone: str,
) -> Optional[Draft]:
    """Ask the composer for a draft. Any failure, including timeout, returns None."""
    request = DraftRequest(
        contact_name=ctx.contact_name,
        company_name=ctx.enrollment.company_domain,
        channel=ctx.step.channel,
        tone=ctx.step.tone or default_tone,
        template=ctx.step.template or "intro",
        contact_title=ctx.contact_title,
        contact_seniority=ctx.contact_seniority,
        company_industry=ctx.company_industry,
        signals=ctx.signals,
        hubspot_status=ctx.hubspot_status,
        freshsales_status=ctx.freshsales_status,
        icp_score=ctx.icp_score,
    )
    try:
        return await asyncio.wait_for(composer.generate(request), timeout=timeout)
    except asyncio.TimeoutError:
        log.warning("draft_generation_timeout", enrollment_id=ctx.enrollment.id, channel=ctx.step.channel)
    except Exception as e:
        log.warning("draft_generation_failed", enrollment_id=ctx.enrollment.id,
                    channel=ctx.step.channel, error=str(e))
    return None


async def handle_email(ctx: StepContext, composer: DraftComposer, timeout: float) -> ChannelOutcome:
    draft = await request_draft(ctx, composer, timeout, default_tone="formal")
    if draft is None:
        return ChannelOutcome(None, {"type": "email_draft", "error": DRAFT_FAILED_MESSAGE})

    return ChannelOutcome(
        draft.message,
        {"type": "email_draft", "subject": draft.subject, "message": draft.message},
    )


def build_crm_link(ctx: StepContext) -> Optional[str]:
    """Deep link into the actor's Freshsales, or None when not configured."""
    try:
        crm_domain = get_user_crm_domain(ctx.db_path, ctx.actor)
    except Exception as e:
        log.warning("crm_domain_lookup_failed", actor=ctx.actor, error=str(e))
        return None

    if not crm_domain:
        return None
    if ctx.crm_contact_id:
        return contact_url(crm_domain, ctx.crm_contact_id)

    query = ctx.contact_name if ctx.name_resolved else ctx.enrollment.company_domain
    return search_url(crm_domain, query)


async def handle_call(ctx: StepContext, composer: DraftComposer, timeout: float) -> ChannelOutcome:
    freshsales_url = await asyncio.to_thread(build_crm_link, ctx)
    return ChannelOutcome(None, {
        "type": "call",
        "talkingPoints": ctx.step.notes or DEFAULT_TALKING_POINTS,
        "freshsalesUrl": freshsales_url,
        "contactId": ctx.enrollment.contact_id,
        "companyDomain": ctx.enrollment.company_domain,
    })


async def handle_linkedin(ctx: StepContext, composer: DraftComposer, timeout: float) -> ChannelOutcome:
    draft = await request_draft(ctx, composer, timeout, default_tone="casual")
    draft_note = draft.message if draft else None

    return ChannelOutcome(draft_note, {
        "type": "linkedin",
        "channel": ctx.step.channel,
        "draftNote": draft_note,
        "contactId": ctx.enrollment.contact_id,
        "contactName": ctx.contact_name,
        "linkedinUrl": ctx.linkedin_url,
        "companyDomain": ctx.enrollment.company_domain,
    })


async def handle_whatsapp(ctx: StepContext, composer: DraftComposer, timeout: float) -> ChannelOutcome:
    draft = await request_draft(ctx, composer, timeout, default_tone="casual")
    draft_message = draft.message if draft else None

    return ChannelOutcome(draft_message, {
        "type": "whatsapp",
        "draftMessage": draft_message,
        "contactId": ctx.enrollment.contact_id,
    })


CHANNEL_HANDLERS: dict[str, Handler] = {
    "email": handle_email,
    "call": handle_call,
    "linkedin_connect": handle_linkedin,
    "linkedin_inmail": handle_linkedin,
    "whatsapp": handle_whatsapp,
}


async def dispatch(ctx: StepContext, composer: DraftComposer, timeout: float) -> ChannelOutcome:
    handler = CHANNEL_HANDLERS.get(ctx.step.channel)
    if handler is None:
        log.info("channel_without_handler", channel=ctx.step.channel, enrollment_id=ctx.enrollment.id)
        return ChannelOutcome(None, {})
    return await handler(ctx, composer, timeout)
