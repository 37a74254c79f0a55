from __future__ import annotations

import json
from typing import Any, Dict, Optional

from .schemas.openai import ErrorResponse


class ProxyError(Exception):
    """Failure that is reported to the client as an OpenAI-style error envelope."""

    status_code: int = 500
    error_type: str = "proxy_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_envelope(self) -> Dict[str, Any]:
        return ErrorResponse(
            error={
                "message": self.message,
                "type": self.error_type,
                "code": self.status_code,
                "details": self.details,
            }
        ).model_dump(exclude_none=True)


class ConfigurationError(ProxyError):
    error_type = "configuration_error"


class InvalidRequestError(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


class TransportError(ProxyError):
    """The upstream could not be reached; no HTTP status is available."""


class MalformedEventError(ValueError):
    """A stream line could not be decoded as a JSON event.

    Never surfaced to the client: the line is forwarded verbatim instead.
    """

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"{reason}: {line[:100]}")
        self.line = line
        self.reason = reason


class UpstreamError(ProxyError):
    error_type = "nvidia_api_error"


class UpstreamAuthError(UpstreamError):
    pass


class UpstreamNotFoundError(UpstreamError):
    pass


class UpstreamRateLimitError(UpstreamError):
    pass


class UpstreamGenericError(UpstreamError):
    pass


_FORBIDDEN_MESSAGE = (
    "NVIDIA API returned 403 Forbidden. Your API key may be invalid, expired, "
    "or not authorized for this model. Please:\n"
    "1. Check your API key at https://build.nvidia.com/\n"
    "2. Verify the NIM_API_KEY environment variable\n"
    "3. Try generating a new API key"
)


def parse_error_body(raw: Any) -> Any:
    """Decode an upstream error body, keeping plain text when it is not JSON."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def _upstream_detail(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    detail = body.get("detail")
    if detail:
        return detail if isinstance(detail, str) else json.dumps(detail, ensure_ascii=False)
    err = body.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str) and err:
        return err
    if body.get("message"):
        return str(body["message"])
    return None


def upstream_error_for_status(status: int, body: Any = None, model: Optional[str] = None) -> UpstreamError:
    """Map a non-2xx upstream response to the matching error, keeping its status code."""
    if status == 401:
        return UpstreamAuthError(
            "NVIDIA API authentication failed. Please verify your NIM_API_KEY.", status, body
        )
    if status == 403:
        return UpstreamAuthError(_FORBIDDEN_MESSAGE, status, body)
    if status == 404:
        target = f"'{model}' " if model else ""
        return UpstreamNotFoundError(
            f"NVIDIA API model {target}was not found. Check MODEL_MAP and DEFAULT_MODEL "
            "for a model id available at https://build.nvidia.com/",
            status,
            body,
        )
    if status == 429:
        return UpstreamRateLimitError(
            "NVIDIA API rate limit exceeded. Please try again later.", status, body
        )
    detail = _upstream_detail(body)
    message = f"NVIDIA API error: {detail}" if detail else "Unknown error from NVIDIA API"
    return UpstreamGenericError(message, status, body)
