"""Merge a model's reasoning channel into its visible content.

Upstream deltas may carry ``reasoning_content`` next to ``content``. Plain
OpenAI clients only render ``content``, so when reasoning display is on the
reasoning text is inlined ahead of the answer inside ``<think>`` markers::

    <think>
    ...reasoning...
    </think>

    ...answer...

When display is off the reasoning channel is dropped.
"""

from __future__ import annotations

import enum
from typing import Any, Dict, Optional, Tuple

THINK_OPEN = "<think>\n"
THINK_CLOSE = "\n</think>\n\n"


class SpanState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"


def reasoning_text(fragment: Dict[str, Any]) -> Optional[str]:
    """Reasoning fragment of a delta or message (NIM spells it ``reasoning_content``)."""
    value = fragment.get("reasoning_content")
    if value is None:
        value = fragment.get("reasoning")
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else str(value)


def content_text(fragment: Dict[str, Any]) -> Optional[str]:
    value = fragment.get("content")
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else str(value)


class ReasoningSpan:
    """Open/closed state of the inline reasoning span for one streamed choice."""

    def __init__(self, show_reasoning: bool) -> None:
        self.show_reasoning = show_reasoning
        self.state = SpanState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state is SpanState.OPEN

    def _open(self) -> str:
        if self.state is SpanState.OPEN:
            return ""
        self.state = SpanState.OPEN
        return THINK_OPEN

    def close(self) -> str:
        if self.state is SpanState.CLOSED:
            return ""
        self.state = SpanState.CLOSED
        return THINK_CLOSE

    def merge(self, content: Optional[str], reasoning: Optional[str]) -> str:
        # Reasoning for a fragment precedes its content.
        if not self.show_reasoning:
            self.state = SpanState.CLOSED
            return content or ""
        parts = []
        if reasoning:
            parts.append(self._open())
            parts.append(reasoning)
        if content:
            parts.append(self.close())
            parts.append(content)
        return "".join(parts)


def merge_reasoning(
    content: Optional[str],
    reasoning: Optional[str],
    span_open: bool,
    show_reasoning: bool,
) -> Tuple[str, bool]:
    """Combine one fragment pair; returns the output text and the new span state."""
    span = ReasoningSpan(show_reasoning)
    if span_open:
        span.state = SpanState.OPEN
    text = span.merge(content, reasoning)
    return text, span.is_open


def merge_full(content: Optional[str], reasoning: Optional[str], show_reasoning: bool) -> str:
    """Single-shot merge for buffered responses; the span is always closed again."""
    span = ReasoningSpan(show_reasoning)
    text = span.merge(None, reasoning)
    text += span.close()
    return text + (content or "")
