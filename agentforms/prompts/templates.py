"""Dynamic prompt construction for the conversation and extraction calls."""

import json
from typing import Mapping, Optional, Sequence

from agentforms.schemas.agent_schema import Agent, AgentSchema, PersonaTone, SchemaField
from agentforms.schemas.session_schema import Message, MessageRole

EXTRACTION_SYSTEM_PROMPT = """
You extract structured form data from a conversation between an agent and a visitor.
Only use what the visitor actually said. Never invent values.
Answer with a single JSON object and nothing else.
"""


def _speaker(message: Message, agent_name: str) -> str:
    return agent_name if message.role == MessageRole.AGENT else "User"


def first_missing_required(
    extracted: Mapping[str, str], schema: AgentSchema
) -> Optional[SchemaField]:
    """First required field, by display order, with no value yet."""
    for field in schema.required_fields():
        if not extracted.get(field.id):
            return field
    return None


def build_conversation_prompt(
    agent: Agent,
    messages: Sequence[Message],
    extracted: Mapping[str, str],
    next_field: Optional[SchemaField],
) -> str:
    """Build the instruction for the agent's next turn."""
    persona = agent.persona
    parts = [
        f"You are {persona.name}, a conversational agent with the following persona:",
        persona.description,
        "",
        f"Tone: {persona.tone.value}",
        "",
    ]
    if agent.knowledge:
        parts += ["Context/Knowledge:", agent.knowledge, ""]

    parts.append("Your goal is to collect the following information through conversation:")
    for field in agent.form_schema.fields:
        marker = " [REQUIRED]" if field.required else ""
        status = " (collected)" if field.id in extracted else ""
        parts.append(f"- {field.label} ({field.type.value}){marker}{status}")
        if field.help_text:
            parts.append(f"  {field.help_text}")

    parts += ["", "Conversation so far:"]
    for message in messages:
        parts.append(f"{_speaker(message, persona.name)}: {message.content}")
    parts.append("")

    if next_field is not None:
        parts.append(f"Next, ask for: {next_field.label}")
        if next_field.placeholder:
            parts.append(f"Suggested phrasing: {next_field.placeholder}")
    else:
        parts.append(
            "All required fields have been collected. "
            "Thank the user and ask if there's anything else."
        )

    parts.append(
        f"\nRespond naturally in a {persona.tone.value} tone. "
        "Keep responses concise and conversational."
    )
    return "\n".join(parts)


def build_extraction_prompt(messages: Sequence[Message], schema: AgentSchema) -> str:
    """Build the user prompt for a JSON field-extraction call."""
    lines = ["Extract structured data from the following conversation.", "", "Fields to extract:"]
    for field in schema.fields:
        line = f"- {field.id}: {field.label} ({field.type.value})"
        if field.options:
            line += f" one of {json.dumps(field.options)}"
        lines.append(line)

    lines += ["", "Conversation:"]
    for message in messages:
        lines.append(f"{message.role.value}: {message.content}")

    lines += [
        "",
        "Return a JSON object keyed by field id. Each value must be an object "
        '{"value": <string>, "confidence": <integer 0-100>}. '
        "Omit fields the visitor has not provided.",
    ]
    return "\n".join(lines)


_ASK_BY_TONE = {
    PersonaTone.FRIENDLY: "Hi! Could you please share your {label}?",
    PersonaTone.PROFESSIONAL: "I'd like to collect your {label}. Could you provide that information?",
    PersonaTone.CASUAL: "What's your {label}?",
    PersonaTone.FORMAL: "Please provide your {label}.",
}

_THANKS_BY_TONE = {
    PersonaTone.FRIENDLY: (
        "Thank you so much! I have all the information I need. "
        "Is there anything else you'd like to share?"
    ),
    PersonaTone.PROFESSIONAL: (
        "Thank you. All required information has been collected. "
        "Is there anything else I can help you with?"
    ),
}

_DEFAULT_THANKS = "Thank you! All required information has been collected."


def scripted_reply(agent: Agent, next_field: Optional[SchemaField]) -> str:
    """Deterministic agent reply used when no language model is configured."""
    tone = agent.persona.tone
    if next_field is None:
        return _THANKS_BY_TONE.get(tone, _DEFAULT_THANKS)

    text = next_field.placeholder or _ASK_BY_TONE[tone].format(label=next_field.label.lower())
    if next_field.help_text:
        text += f" {next_field.help_text}"
    return text
