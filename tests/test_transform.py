from nim_proxy.config import DEFAULT_MODEL_MAP
from nim_proxy.transform import (
    nim_to_openai_response,
    openai_to_nim_payload,
    resolve_model,
    truthy_header,
)


def test_resolve_model_mapped_names():
    for client_model, nim_model in DEFAULT_MODEL_MAP.items():
        assert resolve_model(client_model, DEFAULT_MODEL_MAP, "meta/llama-3.1-70b-instruct") == nim_model


def test_resolve_model_fallback_policies():
    mapping = {"gpt-4": "deepseek/deepseek-r1-0528"}
    assert resolve_model("unknown", mapping, "meta/llama-3.1-70b-instruct") == "meta/llama-3.1-70b-instruct"
    assert resolve_model("unknown", mapping, "meta/llama-3.1-70b-instruct", "passthrough") == "unknown"
    assert resolve_model("", mapping, "fallback/model") == "fallback/model"


def test_request_mapping_defaults():
    req = {
        "model": "gpt-4",
        "messages": [{"role": "user", "content": "Hello"}],
    }
    out = openai_to_nim_payload(req, "deepseek/deepseek-r1-0528", default_temperature=0.7, default_max_tokens=1024)
    assert out == {
        "model": "deepseek/deepseek-r1-0528",
        "messages": [{"role": "user", "content": "Hello"}],
        "temperature": 0.7,
        "max_tokens": 1024,
        "stream": False,
    }


def test_request_mapping_keeps_explicit_zero_temperature():
    req = {
        "model": "gpt-4",
        "messages": [{"role": "user", "content": "Hello"}],
        "temperature": 0,
        "max_tokens": 64,
        "stream": True,
    }
    out = openai_to_nim_payload(req, "x/y")
    assert out["temperature"] == 0
    assert out["max_tokens"] == 64
    assert out["stream"] is True


def test_request_mapping_passes_messages_verbatim():
    messages = [
        {"role": "system", "content": "be brief"},
        {"role": "tool", "content": "{}", "tool_call_id": "call_1"},
        {"role": "user", "content": [{"type": "text", "text": "hi"}]},
    ]
    out = openai_to_nim_payload({"model": "m", "messages": messages}, "x/y")
    assert out["messages"] == messages
    assert "chat_template_kwargs" not in out


def test_request_mapping_thinking_mode():
    out = openai_to_nim_payload(
        {"model": "m", "messages": [{"role": "user", "content": "hi"}]}, "x/y", enable_thinking=True
    )
    assert out["chat_template_kwargs"] == {"thinking": True}


def test_response_mapping_echoes_client_model():
    upstream = {
        "id": "nim-123",
        "model": "deepseek/deepseek-r1-0528",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": "hi"}, "finish_reason": "stop"}
        ],
        "usage": {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6},
    }
    out = nim_to_openai_response(upstream, "gpt-4")
    assert out["model"] == "gpt-4"
    assert out["object"] == "chat.completion"
    assert out["id"].startswith("chatcmpl-") and out["id"] != "nim-123"
    assert isinstance(out["created"], int)
    assert out["choices"][0]["message"]["content"] == "hi"
    assert out["choices"][0]["finish_reason"] == "stop"
    assert out["usage"] == {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6}


def test_response_mapping_defaults():
    upstream = {"choices": [{"index": 2, "message": {"content": None}}]}
    out = nim_to_openai_response(upstream, "gpt-4")
    choice = out["choices"][0]
    assert choice["index"] == 2
    assert choice["message"] == {"role": "assistant", "content": ""}
    assert choice["finish_reason"] == "stop"
    assert out["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def test_response_mapping_without_choices():
    out = nim_to_openai_response({}, "gpt-4")
    assert out["choices"] == []


def test_response_ids_are_distinct():
    a = nim_to_openai_response({}, "gpt-4")
    b = nim_to_openai_response({}, "gpt-4")
    assert a["id"] != b["id"]


def test_response_mapping_reasoning():
    upstream = {
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": "42", "reasoning_content": "think hard"},
                "finish_reason": "stop",
            }
        ]
    }
    hidden = nim_to_openai_response(upstream, "gpt-4", show_reasoning=False)
    assert hidden["choices"][0]["message"]["content"] == "42"
    shown = nim_to_openai_response(upstream, "gpt-4", show_reasoning=True)
    assert shown["choices"][0]["message"]["content"] == "<think>\nthink hard\n</think>\n\n42"


def test_response_usage_keeps_extra_fields():
    upstream = {
        "choices": [],
        "usage": {
            "prompt_tokens": 1,
            "completion_tokens": 2,
            "total_tokens": 3,
            "completion_tokens_details": {"reasoning_tokens": 2},
        },
    }
    out = nim_to_openai_response(upstream, "gpt-4")
    assert out["usage"]["completion_tokens_details"] == {"reasoning_tokens": 2}


def test_truthy_header():
    assert truthy_header(None) is None
    assert truthy_header("true") is True
    assert truthy_header(" ON ") is True
    assert truthy_header("0") is False


def test_response_usage_null_counters_become_zero():
    upstream = {
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "hi"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 5, "completion_tokens": None, "total_tokens": 5},
    }
    out = nim_to_openai_response(upstream, "gpt-4")
    assert out["choices"][0]["message"]["content"] == "hi"
    assert out["usage"] == {"prompt_tokens": 5, "completion_tokens": 0, "total_tokens": 5}


def test_resolve_model_checks_presence_not_truthiness():
    assert resolve_model("blank", {"blank": ""}, "fallback/model") == ""


def test_truthy_header_shares_env_flag_values(monkeypatch):
    from nim_proxy.config import Settings

    for value in ("1", "true", "yes", "on", "enable", "enabled"):
        monkeypatch.setenv("SHOW_REASONING", value)
        assert Settings().show_reasoning is True
        assert truthy_header(value) is True
