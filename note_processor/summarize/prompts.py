"""Prompt text for chat-model summarization."""

import json
from typing import Any

MAX_TAGS = 6

SYSTEM_PROMPT = (
    "You organize notes. From the transcript you are given, write a title, "
    "a concise summary and a few topic tags, in the transcript's language. "
    "Reply with strict JSON only, no other text: "
    '{"title": "...", "summary": "...", "tags": ["#topic1", "#topic2"], '
    '"sections": [{"heading": "...", "bullets": ["..."]}]}. '
    f"At most {MAX_TAGS} tags, short and close to the content. "
    "sections may be an empty list for short notes."
)


def build_user_prompt(text: str, meta: dict[str, Any] | None = None) -> str:
    """Combine the transcript and the note's metadata into the user message."""
    prompt = f"Transcript:\n{text}"
    if meta:
        prompt += f"\n\nMetadata: {json.dumps(meta, ensure_ascii=False)}"
    return prompt
