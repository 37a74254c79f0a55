from __future__ import annotations

import json
import sys
import traceback
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .errors import (
    ConfigurationError,
    InvalidRequestError,
    ProxyError,
    TransportError,
    parse_error_body,
    upstream_error_for_status,
)
from .schemas.openai import ChatCompletionRequest, ModelCard, ModelList
from .sse import StreamTranslator
from .transform import nim_to_openai_response, now_unix, openai_to_nim_payload, truthy_header

SERVICE_NAME = "OpenAI to NVIDIA NIM Proxy"

app = FastAPI(title=SERVICE_NAME)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def _get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # h2 not installed: stay on HTTP/1.1
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


def _upstream_headers(stream: bool) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {settings.nim_api_key}",
        "Content-Type": "application/json",
    }
    if stream:
        headers["Accept"] = "text/event-stream"
    return headers


def _redacted(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ("<redacted>" if k.lower() == "authorization" else v) for k, v in headers.items()}


@app.exception_handler(ProxyError)
async def _proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        err = InvalidRequestError(f"Endpoint {request.url.path} not found", 404)
    else:
        err = InvalidRequestError(str(exc.detail), exc.status_code)
    return JSONResponse(status_code=err.status_code, content=err.to_envelope())


@app.exception_handler(Exception)
async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    print(f"[proxy] Proxy error: {type(exc).__name__}: {exc}", file=sys.stderr)
    traceback.print_exc(file=sys.stderr)
    err = ProxyError(str(exc) or "Internal server error")
    return JSONResponse(status_code=err.status_code, content=err.to_envelope())


@app.get("/")
async def root():
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "message": "Proxy is running! Use /v1/chat/completions for API calls.",
        "api_key_configured": bool(settings.nim_api_key),
        "api_key_preview": settings.api_key_preview(),
        "reasoning_display": settings.show_reasoning,
        "thinking_mode": settings.enable_thinking_mode,
    }


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "api_key_configured": bool(settings.nim_api_key),
        "reasoning_display": settings.show_reasoning,
        "thinking_mode": settings.enable_thinking_mode,
    }


@app.get("/v1/models")
async def list_models():
    created = now_unix()
    models = ModelList(data=[ModelCard(id=name, created=created) for name in settings.model_map])
    return models.model_dump()


async def _read_upstream_error(resp: httpx.Response) -> Any:
    try:
        raw = await resp.aread()
    except httpx.HTTPError:
        return None
    return parse_error_body(raw)


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    x_show_reasoning: str | None = Header(default=None, alias="X-Show-Reasoning"),
    x_enable_thinking: str | None = Header(default=None, alias="X-Enable-Thinking"),
):
    if not settings.nim_api_key:
        print("[proxy] API call failed: NIM_API_KEY not configured", file=sys.stderr)
        raise ConfigurationError(
            "NVIDIA API key is not configured. Please set the NIM_API_KEY environment variable."
        )

    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequestError("Invalid JSON body")
    try:
        parsed = ChatCompletionRequest.model_validate(body)
    except ValidationError as e:
        raise InvalidRequestError(str(e), details=json.loads(e.json()))

    print(f"[proxy] Incoming request for model: {parsed.model}", file=sys.stderr)
    nim_model = settings.map_model(parsed.model)
    print(f"[proxy] Mapping to NVIDIA model: {nim_model}", file=sys.stderr)

    show_reasoning = truthy_header(x_show_reasoning)
    if show_reasoning is None:
        show_reasoning = settings.show_reasoning
    enable_thinking = truthy_header(x_enable_thinking)
    if enable_thinking is None:
        enable_thinking = settings.enable_thinking_mode

    nim_payload = openai_to_nim_payload(
        parsed,
        nim_model,
        default_temperature=settings.default_temperature,
        default_max_tokens=settings.default_max_tokens,
        enable_thinking=enable_thinking,
    )
    is_stream = nim_payload["stream"]
    url = settings.chat_completions_url
    headers = _upstream_headers(is_stream)
    if settings.debug:
        print(
            "[proxy] upstream request:",
            json.dumps(
                {
                    "url": url,
                    "headers": _redacted(headers),
                    **{k: v for k, v in nim_payload.items() if k != "messages"},
                },
                ensure_ascii=False,
            ),
            file=sys.stderr,
        )

    client = _get_httpx_client()
    if not is_stream:
        try:
            resp = await client.post(
                url,
                json=nim_payload,
                headers=headers,
                timeout=httpx.Timeout(settings.upstream_timeout),
            )
        except httpx.HTTPError as e:
            print(f"[proxy] Proxy error: {type(e).__name__}: {e}", file=sys.stderr)
            raise TransportError(str(e) or type(e).__name__)
        print(f"[proxy] NVIDIA API response status: {resp.status_code}", file=sys.stderr)
        if not resp.is_success:
            details = parse_error_body(resp.content)
            print(f"[proxy] NVIDIA API error {resp.status_code}: {details}", file=sys.stderr)
            raise upstream_error_for_status(resp.status_code, details, model=nim_model)
        try:
            data = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise ProxyError("NVIDIA API returned a non-JSON response body", details=resp.text[:1000])
        return JSONResponse(
            content=nim_to_openai_response(data, parsed.model, show_reasoning=show_reasoning)
        )

    # Streaming: status is checked before the first byte goes to the client.
    try:
        upstream_req = client.build_request(
            "POST",
            url,
            json=nim_payload,
            headers=headers,
            timeout=httpx.Timeout(settings.upstream_timeout, read=None),
        )
        upstream = await client.send(upstream_req, stream=True)
    except httpx.HTTPError as e:
        print(f"[proxy] Proxy error: {type(e).__name__}: {e}", file=sys.stderr)
        raise TransportError(str(e) or type(e).__name__)
    print(f"[proxy] NVIDIA API response status: {upstream.status_code}", file=sys.stderr)
    if not upstream.is_success:
        details = await _read_upstream_error(upstream)
        await upstream.aclose()
        print(f"[proxy] NVIDIA API error {upstream.status_code}: {details}", file=sys.stderr)
        raise upstream_error_for_status(upstream.status_code, details, model=nim_model)

    async def event_stream() -> AsyncIterator[bytes]:
        translator = StreamTranslator(show_reasoning)
        print("[proxy] Starting streaming response", file=sys.stderr)
        try:
            async for chunk in upstream.aiter_bytes():
                if await request.is_disconnected():
                    print("[proxy] Client disconnected during streaming", file=sys.stderr)
                    return
                for frame in translator.feed(chunk):
                    yield frame
                if translator.done:
                    break
            for frame in translator.finish():
                yield frame
            if not translator.done:
                print("[proxy] Upstream stream ended without [DONE]", file=sys.stderr)
            print("[proxy] Streaming response completed", file=sys.stderr)
        except httpx.HTTPError as e:
            # Already streaming: end cleanly, no trailing error object.
            print(f"[proxy] Stream error: {type(e).__name__}: {e}", file=sys.stderr)
        finally:
            await upstream.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        background=BackgroundTask(upstream.aclose),
    )


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"])
async def catch_all(path: str, request: Request):
    raise InvalidRequestError(f"Endpoint {request.url.path} not found", 404)


@app.on_event("startup")
async def _startup():
    # Initialize shared HTTP client eagerly to establish pools
    _ = _get_httpx_client()
    if settings.nim_api_key:
        print("[proxy] NIM_API_KEY is configured", file=sys.stderr)
        print(f"[proxy] Key preview: {settings.api_key_preview()}", file=sys.stderr)
    else:
        print("[proxy] WARNING: NIM_API_KEY environment variable is not set!", file=sys.stderr)
    print(f"[proxy] Upstream: {settings.nim_api_base}", file=sys.stderr)
    print(f"[proxy] Reasoning display: {'ENABLED' if settings.show_reasoning else 'DISABLED'}", file=sys.stderr)
    print(f"[proxy] Thinking mode: {'ENABLED' if settings.enable_thinking_mode else 'DISABLED'}", file=sys.stderr)


@app.on_event("shutdown")
async def _shutdown_close_client():
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        await _HTTPX_CLIENT.aclose()
        _HTTPX_CLIENT = None


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
