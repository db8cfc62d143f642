"""Outreach draft generation using Claude."""

import json
from dataclasses import dataclass, field
from typing import Optional

import anthropic
import structlog

from sequencer.core.config import DraftConfig

log = structlog.get_logger()


@dataclass
class ChannelConstraints:
    max_chars: Optional[int]
    max_words: Optional[int]
    has_subject: bool
    platform_guidance: str


CHANNEL_CONSTRAINTS = {
    "email": ChannelConstraints(
        max_chars=None,
        max_words=150,
        has_subject=True,
        platform_guidance="Cold email. Short paragraphs, one clear ask.",
    ),
    "linkedin_connect": ChannelConstraints(
        max_chars=300,
        max_words=None,
        has_subject=False,
        platform_guidance="LinkedIn connection request note. One or two sentences, no pitch.",
    ),
    "linkedin_inmail": ChannelConstraints(
        max_chars=1900,
        max_words=120,
        has_subject=True,
        platform_guidance="LinkedIn InMail. Conversational, reference something specific.",
    ),
    "whatsapp": ChannelConstraints(
        max_chars=500,
        max_words=60,
        has_subject=False,
        platform_guidance="WhatsApp message. Casual, very short, no formatting.",
    ),
}

TONE_INSTRUCTIONS = {
    "formal": "Professional and respectful. Complete sentences, no slang.",
    "casual": "Friendly and relaxed, like a message to a peer.",
    "direct": "Get to the point in the first sentence. No warm-up.",
}


class DraftGenerationError(Exception):
    """Raised when a draft could not be produced."""


@dataclass
class DraftRequest:
    contact_name: str
    company_name: str
    channel: str
    tone: str
    template: str
    contact_title: str = ""
    contact_seniority: str = ""
    company_industry: str = ""
    signals: list[dict] = field(default_factory=list)
    hubspot_status: str = "none"
    freshsales_status: str = "none"
    icp_score: Optional[int] = None


@dataclass
class Draft:
    channel: str
    message: str
    subject: Optional[str] = None


def build_prompt(request: DraftRequest) -> str:
    """Build the generation prompt for a channel."""
    constraints = CHANNEL_CONSTRAINTS[request.channel]

    contact_lines = [
        f"- Name: {request.contact_name}",
        f"- Title: {request.contact_title or 'Unknown'}",
    ]
    if request.contact_seniority:
        contact_lines.append(f"- Seniority: {request.contact_seniority}")

    company_lines = [
        f"- Company: {request.company_name}",
        f"- Industry: {request.company_industry or 'Unknown'}",
    ]
    if request.icp_score is not None:
        company_lines.append(f"- ICP fit score: {request.icp_score}/100")

    if request.signals:
        signal_text = "\n".join(
            f"- {s.get('type', 'signal')}: {s.get('title', '')} {s.get('description', '')}".rstrip()
            for s in request.signals
        )
    else:
        signal_text = "No specific signals available."

    relationship_lines = []
    if request.hubspot_status != "none":
        relationship_lines.append(f"HubSpot status: {request.hubspot_status}. We have an existing relationship.")
    else:
        relationship_lines.append("No existing HubSpot relationship. This is a net-new prospect.")
    if request.freshsales_status != "none":
        relationship_lines.append(f"Freshsales status: {request.freshsales_status}")

    limits = []
    if constraints.max_chars:
        limits.append(f"STRICT: Must be under {constraints.max_chars} characters total.")
    if constraints.max_words:
        limits.append(f"Keep it under {constraints.max_words} words.")

    if constraints.has_subject:
        output_format = 'Return JSON: {"subject": "...", "message": "..."}'
    else:
        output_format = 'Return JSON: {"message": "..."}'

    tone = TONE_INSTRUCTIONS.get(request.tone, TONE_INSTRUCTIONS["formal"])
    contact_block = "\n".join(contact_lines)
    company_block = "\n".join(company_lines)
    relationship_block = "\n".join(relationship_lines)

    return f"""You are a B2B sales outreach writer.

{output_format}
The message should use plain text. No HTML. No markdown formatting.

PLATFORM: {constraints.platform_guidance}

{" ".join(limits)}

TEMPLATE: {request.template}

INSTRUCTIONS:
1. Identify the single most relevant signal or insight about this prospect. Build the message around that hook.
2. Write a concise, human-sounding message.
3. {"The subject line must be specific to the prospect." if constraints.has_subject else "No subject line needed."}

DO NOT:
- Use generic openers like "I hope this finds you well"
- Mention AI, automation, or that this message was generated
- Use buzzwords like "synergy", "leverage", "revolutionize"

Tone: {tone}

--- About the contact ---
{contact_block}

--- About the company ---
{company_block}

--- Relationship history ---
{relationship_block}

--- Company signals ---
{signal_text}

Write the message now."""


def parse_draft(response_text: str) -> dict:
    """Parse the model's JSON answer, tolerating markdown code blocks."""
    text = response_text.strip()
    if text.startswith("```"):
        text = text.split("```")[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {"message": response_text.strip()}

    if not isinstance(parsed, dict):
        return {"message": response_text.strip()}
    return parsed


class DraftComposer:
    """Generates message drafts for outreach steps."""

    def __init__(self, config: DraftConfig, client: Optional[anthropic.AsyncAnthropic] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic()
        return self._client

    async def generate(self, request: DraftRequest) -> Draft:
        """Generate a draft for the request's channel.

        Raises DraftGenerationError on unknown channels, API errors or empty output.
        """
        constraints = CHANNEL_CONSTRAINTS.get(request.channel)
        if constraints is None:
            raise DraftGenerationError(f"Invalid channel: {request.channel}")

        log.info("generating_draft", channel=request.channel, contact=request.contact_name)

        try:
            response = await self.client.messages.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                messages=[{"role": "user", "content": build_prompt(request)}],
            )
            response_text = response.content[0].text
        except Exception as e:
            log.error("claude_error", error=str(e), channel=request.channel)
            raise DraftGenerationError(str(e)) from e

        parsed = parse_draft(response_text)
        message = parsed.get("message") or parsed.get("body")
        if not message:
            raise DraftGenerationError("LLM returned incomplete draft")

        subject = None
        if constraints.has_subject:
            subject = parsed.get("subject") or f"Intro - {request.company_name}"

        log.info("draft_generated", channel=request.channel, subject=subject)
        return Draft(channel=request.channel, message=message, subject=subject)
