from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Union

from .reasoning import content_text, merge_full, reasoning_text
from .schemas.openai import ChatCompletionRequest, ChatCompletionResponse, Choice, ChoiceMessage, Usage

TRUTHY = ("1", "true", "yes", "on", "enable", "enabled")


def resolve_model(
    client_model: str,
    mapping: Mapping[str, str],
    default_model: str,
    fallback: str = "default",
) -> str:
    """Map a client-facing model name to the NIM model id.

    Unknown names either fall back to ``default_model`` or, with
    ``fallback="passthrough"``, are forwarded unchanged so the upstream can
    reject them itself.
    """
    if client_model in mapping:
        return mapping[client_model]
    if fallback == "passthrough":
        return client_model
    return default_model


def openai_to_nim_payload(
    request: Union[ChatCompletionRequest, Dict[str, Any]],
    upstream_model: str,
    *,
    default_temperature: float = 0.7,
    default_max_tokens: int = 1024,
    enable_thinking: bool = False,
) -> Dict[str, Any]:
    if isinstance(request, dict):
        request = ChatCompletionRequest.model_validate(request)
    # Presence checks, not truthiness: an explicit temperature of 0 is kept.
    payload: Dict[str, Any] = {
        "model": upstream_model,
        "messages": request.messages,
        "temperature": request.temperature if request.temperature is not None else default_temperature,
        "max_tokens": request.max_tokens if request.max_tokens is not None else default_max_tokens,
        "stream": bool(request.stream) if request.stream is not None else False,
    }
    if enable_thinking:
        payload["chat_template_kwargs"] = {"thinking": True}
    return payload


def nim_to_openai_response(
    upstream: Dict[str, Any],
    requested_model: str,
    *,
    show_reasoning: bool = False,
) -> Dict[str, Any]:
    """Map a buffered NIM completion to an OpenAI chat.completion body.

    The client-facing model name is always echoed back, never the NIM id.
    """
    choices: List[Choice] = []
    for position, choice in enumerate(upstream.get("choices") or []):
        message = choice.get("message") or {}
        index = choice.get("index")
        finish_reason = choice.get("finish_reason")
        choices.append(
            Choice(
                index=index if index is not None else position,
                message=ChoiceMessage(
                    role=message.get("role") or "assistant",
                    content=merge_full(content_text(message), reasoning_text(message), show_reasoning),
                ),
                finish_reason=finish_reason or "stop",
            )
        )
    usage = upstream.get("usage")
    response = ChatCompletionResponse(
        id=new_completion_id(),
        created=now_unix(),
        model=requested_model,
        choices=choices,
        usage=Usage.model_validate(usage) if isinstance(usage, dict) else Usage(),
    )
    return response.model_dump()


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def now_unix() -> int:
    return int(time.time())


def truthy_header(value: Optional[str]) -> Optional[bool]:
    """Parse an on/off request header; ``None`` when the header is absent."""
    if value is None:
        return None
    return value.strip().lower() in TRUTHY
