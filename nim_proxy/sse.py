"""Server-sent-event framing for the streaming path.

Upstream bytes arrive in arbitrary chunks; ``SSEFrameReassembler`` turns them
back into complete lines, ``classify_line`` tags each line, and
``StreamTranslator`` rewrites delta events into client-facing frames.
"""

from __future__ import annotations

import codecs
import copy
import json
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .config import settings
from .errors import MalformedEventError
from .reasoning import ReasoningSpan, content_text, reasoning_text

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class SSEFrameReassembler:
    """Buffer the tail of an unterminated line across chunk boundaries."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def push(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def flush(self) -> str:
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return rest[:-1] if rest.endswith("\r") else rest


@dataclass(frozen=True)
class Sentinel:
    line: str


@dataclass(frozen=True)
class Delta:
    line: str
    payload: Dict[str, Any]


@dataclass(frozen=True)
class Opaque:
    line: str


StreamEvent = Union[Sentinel, Delta, Opaque]


def parse_data_payload(line: str) -> Dict[str, Any]:
    try:
        payload = json.loads(line[len(DATA_PREFIX):])
    except ValueError as e:
        raise MalformedEventError(line, f"invalid JSON ({e})") from e
    if not isinstance(payload, dict):
        raise MalformedEventError(line, "payload is not a JSON object")
    return payload


def classify_line(line: str) -> StreamEvent:
    if not line.startswith(DATA_PREFIX):
        return Opaque(line)
    payload = line[len(DATA_PREFIX):]
    if payload.strip() == DONE_SENTINEL:
        return Sentinel(line)
    try:
        return Delta(line, parse_data_payload(line))
    except MalformedEventError as e:
        # Model text may legitimately contain "[DONE]"; only non-JSON payloads count.
        if DONE_SENTINEL in payload:
            return Sentinel(line)
        if settings.debug:
            print(f"[proxy] forwarding malformed stream line: {e}", file=sys.stderr)
        return Opaque(line)


def encode_event(payload: Dict[str, Any]) -> bytes:
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}\n\n".encode()


class StreamTranslator:
    """Per-request pipeline from upstream byte chunks to client SSE frames."""

    def __init__(self, show_reasoning: bool) -> None:
        self.show_reasoning = show_reasoning
        self.reassembler = SSEFrameReassembler()
        self.spans: Dict[int, ReasoningSpan] = {}
        self._last_event: Optional[Dict[str, Any]] = None
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, chunk: bytes) -> List[bytes]:
        out: List[bytes] = []
        for line in self.reassembler.push(chunk):
            if self._done:
                break
            out.extend(self.translate_line(line))
        return out

    def finish(self) -> List[bytes]:
        rest = self.reassembler.flush()
        if not rest:
            return []
        if self._done:
            if settings.debug:
                print(f"[proxy] ignoring trailing data after [DONE]: {rest[:100]}", file=sys.stderr)
            return []
        print(f"[proxy] upstream stream ended mid-line: {rest[:100]}", file=sys.stderr)
        return self.translate_line(rest)

    def translate_line(self, line: str) -> List[bytes]:
        event = classify_line(line)
        if isinstance(event, Sentinel):
            self._done = True
            return self._close_open_spans() + [f"{event.line}\n\n".encode()]
        if isinstance(event, Delta):
            return [encode_event(self._rewrite(event.payload))]
        if not event.line.strip():
            # Frames are re-delimited on output.
            return []
        if event.line.startswith("data:"):
            return [f"{event.line}\n\n".encode()]
        return [f"{event.line}\n".encode()]

    def _span(self, index: int) -> ReasoningSpan:
        span = self.spans.get(index)
        if span is None:
            span = self.spans[index] = ReasoningSpan(self.show_reasoning)
        return span

    def _rewrite(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        choices = payload.get("choices")
        if not isinstance(choices, list):
            return payload
        for position, choice in enumerate(choices):
            if not isinstance(choice, dict) or not isinstance(choice.get("delta"), dict):
                continue
            delta = choice["delta"]
            index = choice.get("index")
            if isinstance(index, bool) or not isinstance(index, int):
                index = position
            text = self._span(index).merge(content_text(delta), reasoning_text(delta))
            delta.pop("reasoning_content", None)
            delta.pop("reasoning", None)
            delta["content"] = text
        self._last_event = payload
        return payload

    def _close_open_spans(self) -> List[bytes]:
        frames: List[bytes] = []
        for index, span in self.spans.items():
            if not span.is_open:
                continue
            closing = span.close()
            event = copy.deepcopy(self._last_event) if self._last_event else {}
            event["choices"] = [{"index": index, "delta": {"content": closing}, "finish_reason": None}]
            event.pop("usage", None)
            frames.append(encode_event(event))
        return frames
