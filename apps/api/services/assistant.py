"""Local mock reply generator standing in for a generative-language API."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass


_TEMPLATES = (
    "That's a great question about \"{topic}\". Here is how I would think about it step by step.",
    "Thanks for sharing. Regarding \"{topic}\", a few points are worth considering.",
    "Interesting! When it comes to \"{topic}\", the short answer is: it depends on your goals.",
    "Let me help with \"{topic}\". Start with the basics and build up from there.",
)


@dataclass
class AssistantReply:
    content: str
    tokens: int
    model: str
    processing_time_ms: int


def _topic(prompt: str, max_words: int = 8) -> str:
    words = prompt.split()
    topic = " ".join(words[:max_words])
    return topic + ("..." if len(words) > max_words else "")


async def generate_reply(prompt: str, *, model: str = "mock-1", temperature: float = 0.7) -> AssistantReply:
    started = time.perf_counter()
    digest = hashlib.sha256(f"{prompt}:{temperature}".encode("utf-8")).digest()
    content = _TEMPLATES[digest[0] % len(_TEMPLATES)].format(topic=_topic(prompt))
    tokens = len(prompt.split()) + len(content.split())
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    return AssistantReply(content=content, tokens=tokens, model=model, processing_time_ms=elapsed_ms)
