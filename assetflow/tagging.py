# assetflow/tagging.py
import asyncio
import json
import logging
import re
from typing import Any, Dict, List

from assetflow.ai_client import AIClient
from assetflow.errors import best_effort

logger = logging.getLogger(__name__)

MAX_TAGS = 5
CONTENT_EXCERPT_CHARS = 4000
MAX_TAG_LENGTH = 64

SOURCE_KIND_LABELS = {
    "webpage": "webpage",
    "twitter": "Twitter/X post",
    "document": "document",
}

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```")


def build_tag_messages(content_text: str, title: str, source_kind: str = "webpage") -> List[Dict[str, str]]:
    label = SOURCE_KIND_LABELS.get(source_kind, source_kind)
    return [
        {
            "role": "system",
            "content": (
                "You are a helpful assistant that analyzes web content and generates relevant tags. "
                "Always respond with a JSON array of strings."
            ),
        },
        {
            "role": "user",
            "content": (
                f"Based on the following text from a {label}, generate a list of maximum {MAX_TAGS} "
                f"relevant tags as a JSON array of strings. The title of the {label} is \"{title}\". "
                f"Content: \n\n{(content_text or '')[:CONTENT_EXCERPT_CHARS]}"
            ),
        },
    ]


def parse_tag_response(response: str) -> List[str]:
    """
    Accepts a ```json fenced block or raw JSON; either a bare array of strings or {"tags": [...]}.
    Non-string entries are dropped. Raises ValueError on unparseable input.
    """
    match = _JSON_FENCE.search(response or "")
    cleaned = match.group(1) if match else (response or "")
    parsed: Any = json.loads(cleaned)
    if isinstance(parsed, dict):
        parsed = parsed.get("tags")
    if not isinstance(parsed, list):
        return []
    return [t for t in parsed if isinstance(t, str)]


def normalize_tag_names(names: List[str]) -> List[str]:
    """Trim, lowercase and dedup tag names, keeping first-seen order."""
    seen = set()
    out = []
    for name in names:
        norm = re.sub(r"\s+", " ", name).strip().lower()[:MAX_TAG_LENGTH]
        if norm and norm not in seen:
            seen.add(norm)
            out.append(norm)
    return out


async def generate_tags(
    ai: AIClient,
    content_text: str,
    title: str,
    source_kind: str = "webpage",
    temperature: float = 0.1,
    max_tokens: int = 200,
    timeout_seconds: float = 60.0,
) -> List[str]:
    """Never raises: any call or parse failure yields []."""
    async def _call() -> List[str]:
        logger.debug("Calling AI for %s tag generation", source_kind)
        messages = build_tag_messages(content_text, title, source_kind)
        response = await asyncio.wait_for(
            ai.complete(messages, temperature=temperature, max_tokens=max_tokens, timeout_seconds=timeout_seconds),
            timeout=timeout_seconds,
        )
        return parse_tag_response(response)[:MAX_TAGS]

    outcome = await best_effort("tagging", _call, [], {"title": title[:80] if title else ""})
    return outcome.value
