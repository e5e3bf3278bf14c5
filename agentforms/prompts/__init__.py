from agentforms.prompts.templates import (
    EXTRACTION_SYSTEM_PROMPT,
    build_conversation_prompt,
    build_extraction_prompt,
    first_missing_required,
    scripted_reply,
)

__all__ = [
    "EXTRACTION_SYSTEM_PROMPT",
    "build_conversation_prompt",
    "build_extraction_prompt",
    "first_missing_required",
    "scripted_reply",
]
