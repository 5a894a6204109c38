import json

from fastapi.testclient import TestClient

from decanter import main
from decanter.errors import UpstreamTimeout
from decanter.llm_parsing import extends

from conftest import NARRATION_JSON, REVIEW_JSON, VALID_CODE, FakeInvoker

client = TestClient(app=main.app)


def _events(r):
    return [json.loads(line) for line in r.text.strip().split("\n") if line.strip()]


def _chunks(text, size=9):
    return [text[i : i + size] for i in range(0, len(text), size)]


def test_review_stream_emits_partials_then_result(use_invoker):
    fake = use_invoker(FakeInvoker(chunks=_chunks(REVIEW_JSON)))
    r = client.post("/review/stream", json={"code": VALID_CODE})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/x-ndjson")
    assert r.headers["X-RateLimit-Remaining"] == "9"

    events = _events(r)
    assert events[0]["event"] == "meta"
    assert events[0]["request_id"] == r.headers["X-Request-ID"]
    partials = [e["data"] for e in events if e["event"] == "partial"]
    assert len(partials) > 2
    for prev, new in zip(partials, partials[1:]):
        assert extends(prev, new)
    assert events[-1]["event"] == "result"
    assert events[-1]["data"]["score"] == 61
    assert fake.closed


def test_narrate_stream_result(use_invoker):
    use_invoker(FakeInvoker(chunks=_chunks(NARRATION_JSON, 25)))
    r = client.post("/narrate/stream", json={"code": VALID_CODE})
    events = _events(r)
    assert events[-1]["event"] == "result"
    assert events[-1]["data"]["type"] == "feat"


def test_stream_upstream_failure_is_terminal_error_frame(use_invoker):
    fake = use_invoker(FakeInvoker(chunks=['{"title": "Half'], error=UpstreamTimeout()))
    r = client.post("/review/stream", json={"code": VALID_CODE})
    assert r.status_code == 200
    events = _events(r)
    assert [e["event"] for e in events] == ["meta", "partial", "error"]
    assert events[-1]["data"]["kind"] == "upstream_timeout"
    assert fake.closed


def test_stream_unusable_output_is_error_frame(use_invoker):
    use_invoker(FakeInvoker(chunks=["Sorry, ", "I cannot do that."]))
    r = client.post("/review/stream", json={"code": VALID_CODE})
    events = _events(r)
    assert events[-1] == {
        "event": "error",
        "data": {
            "error": "The model returned an unusable response. Please try again.",
            "kind": "normalization_failure",
        },
    }


def test_stream_unexpected_error_is_generic(use_invoker):
    use_invoker(FakeInvoker(chunks=['{"title": "x"'], error=RuntimeError("leaky detail")))
    r = client.post("/review/stream", json={"code": VALID_CODE})
    events = _events(r)
    assert events[-1]["event"] == "error"
    assert events[-1]["data"]["kind"] == "internal_error"
    assert "leaky detail" not in r.text


def test_stream_rejections_happen_before_streaming(use_invoker):
    use_invoker(FakeInvoker(configured=False))
    r = client.post("/review/stream", json={"code": VALID_CODE})
    assert r.status_code == 503

    r = client.post("/narrate/stream", json={"code": "short"})
    assert r.status_code == 400
    assert r.headers["content-type"].startswith("application/json")


def test_stream_rate_limited(use_invoker):
    use_invoker(FakeInvoker(chunks=_chunks(REVIEW_JSON)))
    for _ in range(10):
        client.post("/review/stream", json={"code": VALID_CODE})
    r = client.post("/review/stream", json={"code": VALID_CODE})
    assert r.status_code == 429
    assert "Retry-After" in r.headers


def test_stream_partials_never_show_an_invalid_score(use_invoker):
    bad = REVIEW_JSON.replace('"score": 61', '"score": 150')
    use_invoker(FakeInvoker(chunks=_chunks(bad)))
    r = client.post("/review/stream", json={"code": VALID_CODE})
    events = _events(r)
    partials = [e["data"] for e in events if e["event"] == "partial"]
    assert partials
    assert all("score" not in p for p in partials)
    assert events[-1]["event"] == "error"
    assert events[-1]["data"]["kind"] == "normalization_failure"
