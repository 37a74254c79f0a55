import json
import os
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from .transform import TRUTHY, resolve_model


DEFAULT_MODEL_MAP: Dict[str, str] = {
    "gpt-3.5-turbo": "nvidia/llama-3.1-nemotron-ultra-253b-v1",
    "gpt-4": "deepseek/deepseek-r1-0528",
    "gpt-4-turbo": "moonshotai/kimi-k2-instruct-0905",
    "gpt-4o": "deepseek-ai/deepseek-v3.1-terminus",
    "claude-3-opus": "openai/gpt-oss-120b",
    "claude-3-sonnet": "openai/gpt-oss-20b",
    "gemini-pro": "qwen/qwen3-next-80b-a3b-thinking",
}


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in TRUTHY


class Settings:
    def __init__(self) -> None:
        self.nim_api_base: str = os.environ.get("NIM_API_BASE", "https://integrate.api.nvidia.com/v1")
        self.nim_api_key: Optional[str] = os.environ.get("NIM_API_KEY") or None
        # MODEL_MAP expects a JSON object string mapping client model names → NIM model names
        model_map_raw = os.environ.get("MODEL_MAP")
        model_map: Dict[str, str] = dict(DEFAULT_MODEL_MAP)
        if model_map_raw:
            try:
                parsed = json.loads(model_map_raw)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                model_map = {str(k): str(v) for k, v in parsed.items()}
        self.model_map: Mapping[str, str] = MappingProxyType(model_map)
        self.default_model: str = os.environ.get("DEFAULT_MODEL", "meta/llama-3.1-70b-instruct")
        # "default" substitutes DEFAULT_MODEL for unknown names, "passthrough" forwards them unchanged
        fallback = os.environ.get("MODEL_FALLBACK", "default").strip().lower()
        self.model_fallback: str = fallback if fallback in ("default", "passthrough") else "default"
        # Merge reasoning_content into content wrapped in <think> tags
        self.show_reasoning: bool = _env_flag("SHOW_REASONING", "0")
        # Ask thinking-capable models to reason via chat_template_kwargs
        self.enable_thinking_mode: bool = _env_flag("ENABLE_THINKING_MODE", "0")
        try:
            self.default_temperature: float = float(os.environ.get("DEFAULT_TEMPERATURE", "0.7"))
        except ValueError:
            self.default_temperature = 0.7
        try:
            self.default_max_tokens: int = max(1, int(os.environ.get("DEFAULT_MAX_TOKENS", "1024")))
        except ValueError:
            self.default_max_tokens = 1024
        try:
            self.upstream_timeout: float = float(os.environ.get("UPSTREAM_TIMEOUT", "120"))
        except ValueError:
            self.upstream_timeout = 120.0
        # Enable HTTP/2 to improve latency and throughput when supported by upstream.
        self.http2: bool = _env_flag("PROXY_HTTP2", "1")
        self.debug: bool = _env_flag("DEBUG_PROXY", "0")
        self.host: str = os.environ.get("HOST", "0.0.0.0")
        try:
            self.port: int = int(os.environ.get("PORT", "10000"))
        except ValueError:
            self.port = 10000

    @property
    def chat_completions_url(self) -> str:
        return f"{self.nim_api_base.rstrip('/')}/chat/completions"

    def map_model(self, client_model: str) -> str:
        return resolve_model(client_model, self.model_map, self.default_model, self.model_fallback)

    def api_key_preview(self) -> str:
        if not self.nim_api_key:
            return "NOT SET"
        return f"{self.nim_api_key[:10]}..."


settings = Settings()
