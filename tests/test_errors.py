import pytest

from nim_proxy.errors import (
    ConfigurationError,
    TransportError,
    UpstreamAuthError,
    UpstreamGenericError,
    UpstreamNotFoundError,
    UpstreamRateLimitError,
    parse_error_body,
    upstream_error_for_status,
)


@pytest.mark.parametrize("body", [None, "", "plain text", {"detail": "x"}, {"error": {"message": "m"}}, [1, 2]])
def test_forbidden_always_has_guidance(body):
    err = upstream_error_for_status(403, body)
    assert isinstance(err, UpstreamAuthError)
    env = err.to_envelope()
    assert env["error"]["code"] == 403
    assert env["error"]["type"] == "nvidia_api_error"
    assert "API key" in env["error"]["message"]


@pytest.mark.parametrize(
    "status,cls",
    [
        (401, UpstreamAuthError),
        (404, UpstreamNotFoundError),
        (429, UpstreamRateLimitError),
        (400, UpstreamGenericError),
        (502, UpstreamGenericError),
    ],
)
def test_status_selects_error_class(status, cls):
    err = upstream_error_for_status(status, {"detail": "boom"})
    assert isinstance(err, cls)
    assert err.status_code == status


def test_not_found_names_model():
    err = upstream_error_for_status(404, None, model="meta/missing")
    assert "'meta/missing'" in err.message


def test_generic_prefers_upstream_detail():
    assert upstream_error_for_status(500, {"detail": "bad things"}).message == "NVIDIA API error: bad things"
    assert upstream_error_for_status(422, {"error": {"message": "nope"}}).message == "NVIDIA API error: nope"
    assert upstream_error_for_status(500, None).message == "Unknown error from NVIDIA API"


def test_envelope_details():
    env = upstream_error_for_status(500, {"detail": "x"}).to_envelope()
    assert env["error"]["details"] == {"detail": "x"}
    env = TransportError("connection refused").to_envelope()
    assert env == {"error": {"message": "connection refused", "type": "proxy_error", "code": 500}}
    env = ConfigurationError("no key").to_envelope()
    assert env["error"]["type"] == "configuration_error"
    assert env["error"]["code"] == 500


def test_parse_error_body():
    assert parse_error_body(b'{"detail": "x"}') == {"detail": "x"}
    assert parse_error_body(b"oops") == "oops"
    assert parse_error_body(b"  ") is None
