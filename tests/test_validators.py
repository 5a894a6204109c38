import pytest
from starlette.requests import Request

from decanter.clientkey import client_key
from decanter.config import Settings
from decanter.errors import PayloadTooLarge, UnsupportedMediaType, ValidationFailed
from decanter.personas import Persona
from decanter.validators import (
    check_request_headers,
    collect_errors,
    is_json_media_type,
    validate_narrate,
    validate_review,
)
from decanter.schemas import ReviewRequest

SETTINGS = Settings()


def _request(headers=None, client=("10.0.0.1", 5000)):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/review",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def _messages(exc_info):
    return [e["message"] for e in exc_info.value.errors]


@pytest.mark.parametrize("length", [10, 50_000])
def test_code_length_bounds_are_inclusive(length):
    req = validate_review({"code": "x" * length}, SETTINGS)
    assert len(req.code) == length


@pytest.mark.parametrize(
    "length,fragment",
    [(9, "at least 10"), (50_001, "must not exceed 50000")],
)
def test_code_length_outside_bounds_rejected(length, fragment):
    with pytest.raises(ValidationFailed) as exc_info:
        validate_review({"code": "x" * length}, SETTINGS)
    assert exc_info.value.errors[0]["path"] == "code"
    assert any(fragment in m for m in _messages(exc_info))


def test_missing_code_names_the_field():
    errors = collect_errors(ReviewRequest, {}, SETTINGS)
    assert errors == [{"path": "code", "message": "required property 'code' is missing"}]


def test_code_must_be_a_string():
    with pytest.raises(ValidationFailed) as exc_info:
        validate_review({"code": 12345678901}, SETTINGS)
    assert _messages(exc_info) == ["code must be a string"]


def test_non_object_body_rejected():
    with pytest.raises(ValidationFailed) as exc_info:
        validate_review(["def f(): pass"], SETTINGS)
    assert exc_info.value.errors[0]["path"] == "(root)"


def test_unknown_fields_rejected():
    errors = collect_errors(ReviewRequest, {"code": "print('hello')", "mood": "spicy"}, SETTINGS)
    assert errors == [{"path": "mood", "message": "unexpected property 'mood'"}]


def test_persona_defaults_and_accepts_known_values():
    assert validate_review({"code": "print('hello')"}).persona is Persona.PRINCIPAL
    assert validate_review({"code": "print('hello')", "persona": None}).persona is Persona.PRINCIPAL
    assert validate_review({"code": "print('hello')", "persona": "security"}).persona is Persona.SECURITY


def test_unknown_persona_lists_allowed_values():
    with pytest.raises(ValidationFailed) as exc_info:
        validate_review({"code": "print('hello')", "persona": "pirate"})
    msg = _messages(exc_info)[0]
    assert msg.startswith("persona must be one of")
    assert "mentor" in msg


def test_configured_code_bounds_apply():
    tight = Settings(code_min_chars=3, code_max_chars=5)
    assert validate_review({"code": "abc"}, tight).code == "abc"
    with pytest.raises(ValidationFailed):
        validate_review({"code": "abcdef"}, tight)


def test_narrate_context_optional_but_typed():
    assert validate_narrate({"code": "diff --git a/x b/x"}).context is None
    assert validate_narrate({"code": "diff --git a/x b/x", "context": "hotfix"}).context == "hotfix"
    with pytest.raises(ValidationFailed) as exc_info:
        validate_narrate({"code": "diff --git a/x b/x", "context": 7})
    assert _messages(exc_info) == ["context must be a string"]


@pytest.mark.parametrize(
    "ct,ok",
    [
        ("application/json", True),
        ("application/json; charset=utf-8", True),
        ("application/merge-patch+json", True),
        ("text/plain", False),
        ("", False),
        (None, False),
    ],
)
def test_json_media_types(ct, ok):
    assert is_json_media_type(ct) is ok


def test_header_check_rejects_wrong_media_type():
    with pytest.raises(UnsupportedMediaType):
        check_request_headers(_request({"content-type": "text/plain"}), 1024)


def test_header_check_rejects_declared_oversize():
    with pytest.raises(PayloadTooLarge):
        check_request_headers(_request({"content-type": "application/json", "content-length": "2048"}), 1024)


def test_header_check_rejects_garbage_content_length():
    with pytest.raises(ValidationFailed):
        check_request_headers(_request({"content-type": "application/json", "content-length": "lots"}), 1024)


def test_client_key_prefers_first_forwarded_hop():
    req = _request({"x-forwarded-for": "203.0.113.9, 10.0.0.2"})
    assert client_key(req) == "203.0.113.9"
    assert client_key(_request({"x-real-ip": "198.51.100.4"})) == "198.51.100.4"


def test_client_key_ignores_forwarding_when_untrusted():
    req = _request({"x-forwarded-for": "203.0.113.9"})
    assert client_key(req, trust_forwarded=False) == "10.0.0.1"
    assert client_key(_request(client=None), trust_forwarded=False) == "unknown"
