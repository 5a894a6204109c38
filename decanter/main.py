import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from decanter import llm_client
from decanter.clientkey import client_key
from decanter.config import Settings, get_settings
from decanter.errors import DecanterError, InternalError, RateLimited, UpstreamUnavailable
from decanter.llm_parsing import PartialObjectAccumulator, ResultKind, normalize
from decanter.llm_prompts import PullRequestRef, build_narrate_prompt, build_review_prompt, parse_pull_request_url
from decanter.ratelimit import FixedWindowRateLimiter, InMemoryRateStore, RateDecision
from decanter.validators import check_request_headers, read_json_body, validate_narrate, validate_review

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

HARDENING_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}

DiffResolver = Callable[[PullRequestRef], Awaitable[str]]

_limiter: Optional[FixedWindowRateLimiter] = None
_diff_resolver: Optional[DiffResolver] = None


def _build_rate_limiter(settings: Settings) -> FixedWindowRateLimiter:
    store: Any = None
    if settings.redis_url:
        try:
            from decanter.redis_ratelimit import RedisRateStore

            store = RedisRateStore(settings.redis_url)
            log.info("rate_limit store=redis")
        except Exception:
            log.exception("rate_limit: failed to initialise Redis store; using in-process store")
            store = None
    return FixedWindowRateLimiter(
        store if store is not None else InMemoryRateStore(),
        window_seconds=settings.rate_window_seconds,
        max_requests=settings.rate_max_requests,
        enabled=not settings.rate_limit_disabled,
    )


def get_rate_limiter() -> FixedWindowRateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = _build_rate_limiter(get_settings())
    return _limiter


def reset_rate_limiter(limiter: Optional[FixedWindowRateLimiter] = None) -> None:
    global _limiter
    _limiter = limiter


def get_invoker() -> llm_client.ModelInvoker:
    return llm_client.get_invoker()


def set_diff_resolver(resolver: Optional[DiffResolver]) -> None:
    """Install the collaborator that turns a pull request URL into diff text."""
    global _diff_resolver
    _diff_resolver = resolver


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if not settings.gemini_api_key:
        log.error("startup: GEMINI_API_KEY / API_KEY is not set; review endpoints will answer 503")
    yield
    try:
        await llm_client.get_invoker().aclose()
    except Exception:
        log.warning("shutdown: failed to close model client", exc_info=True)
    store = getattr(_limiter, "store", None)
    if store is not None and hasattr(store, "close"):
        try:
            await store.close()
        except Exception:
            log.warning("shutdown: failed to close rate store", exc_info=True)


app = FastAPI(title="decanter", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "X-Request-ID"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        for name, value in HARDENING_HEADERS.items():
            response.headers.setdefault(name, value)
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid,
            request.method,
            request.url.path,
            getattr(response, "status_code", "?"),
            dur_ms,
        )


def _rate_limit_headers(decision: RateDecision) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(int(decision.reset_at)),
    }


@app.exception_handler(DecanterError)
async def decanter_error_handler(request: Request, exc: DecanterError) -> JSONResponse:
    headers: Dict[str, str] = {}
    decision = getattr(request.state, "rate_decision", None)
    if decision is not None:
        headers.update(_rate_limit_headers(decision))
    headers.update(exc.headers())
    if exc.status_code >= 500:
        log.warning("request failed rid=%s kind=%s status=%s", getattr(request.state, "request_id", None), exc.kind, exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload(include_detail=get_settings().is_development),
        headers=headers,
    )


async def _admit(request: Request, settings: Settings, bucket: str) -> RateDecision:
    """
    Header checks, then the rate limit. Nothing here reads the body.
    Each endpoint family ("review", "narrate") has its own budget per client.
    """
    check_request_headers(request, settings.max_body_bytes)
    client = client_key(request, settings.trust_forwarded_headers)
    decision = await get_rate_limiter().check(f"{bucket}:{client}")
    log.info(
        "rate_limit check bucket=%s client=%s allowed=%s remaining=%s",
        bucket,
        client,
        decision.allowed,
        decision.remaining,
    )
    if not decision.allowed:
        raise RateLimited(decision.retry_after(), int(decision.reset_at), decision.limit)
    request.state.rate_decision = decision
    return decision


def _require_model(invoker: llm_client.ModelInvoker) -> None:
    if not invoker.configured:
        raise UpstreamUnavailable("Server configuration error: model credential missing", retryable=False)


async def _resolve_diff(code: str) -> Optional[str]:
    ref = parse_pull_request_url(code)
    if ref is None or _diff_resolver is None:
        return None
    try:
        diff = await _diff_resolver(ref)
    except Exception:
        log.warning("narrate: failed to resolve pull request %s; using the URL as text", ref.label, exc_info=True)
        return None
    log.info("narrate: resolved pull request %s chars=%d", ref.label, len(diff or ""))
    return diff or None


def _frame(event: str, data: Optional[Dict[str, Any]] = None, **extra: Any) -> str:
    payload: Dict[str, Any] = {"event": event}
    payload.update(extra)
    if data is not None:
        payload["data"] = data
    return json.dumps(payload, ensure_ascii=False) + "\n"


def _stream_response(
    request: Request,
    chunks: AsyncIterator[str],
    kind: ResultKind,
    max_chars: int,
    decision: RateDecision,
) -> StreamingResponse:
    rid = getattr(request.state, "request_id", None)
    include_detail = get_settings().is_development

    async def _iter() -> AsyncIterator[str]:
        yield _frame("meta", request_id=rid)
        acc = PartialObjectAccumulator(kind, max_chars=max_chars)
        partials = 0
        try:
            async for chunk in chunks:
                snapshot = acc.feed(chunk)
                if snapshot is not None:
                    partials += 1
                    yield _frame("partial", snapshot)
            result = acc.finish()
            log.info("stream done rid=%s kind=%s partials=%d", rid, kind.value, partials)
            yield _frame("result", result.to_public())
        except DecanterError as exc:
            log.warning("stream failed rid=%s kind=%s error=%s", rid, kind.value, exc.kind)
            yield _frame("error", exc.to_payload(include_detail=include_detail))
        except Exception:
            log.exception("stream: unexpected failure rid=%s", rid)
            yield _frame("error", InternalError().to_payload())
        finally:
            # Closing the source closes the provider stream, also on client disconnect
            await chunks.aclose()

    return StreamingResponse(_iter(), media_type="application/x-ndjson", headers=_rate_limit_headers(decision))


async def _guarded(work: Awaitable[Any]) -> Any:
    try:
        return await work
    except DecanterError:
        raise
    except Exception:
        log.exception("unexpected pipeline failure")
        raise InternalError()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/llm/status")
def llm_status_endpoint() -> Dict[str, Any]:
    return get_invoker().status()


@app.post("/review")
async def review_endpoint(request: Request):
    settings = get_settings()
    decision = await _admit(request, settings, "review")
    req = validate_review(await _guarded(read_json_body(request, settings.max_body_bytes)), settings)
    invoker = get_invoker()
    _require_model(invoker)

    async def _run() -> Dict[str, Any]:
        prompt = build_review_prompt(req, code_limit=settings.prompt_code_max_chars)
        raw = await invoker.complete(prompt)
        return normalize(raw, ResultKind.REVIEW, max_chars=settings.output_max_chars_review).to_public()

    result = await _guarded(_run())
    log.info("review ok persona=%s score=%s", req.persona.value, result.get("score"))
    return JSONResponse(result, headers=_rate_limit_headers(decision))


@app.post("/review/stream")
async def review_stream(request: Request):
    settings = get_settings()
    decision = await _admit(request, settings, "review")
    req = validate_review(await _guarded(read_json_body(request, settings.max_body_bytes)), settings)
    invoker = get_invoker()
    _require_model(invoker)
    prompt = build_review_prompt(req, code_limit=settings.prompt_code_max_chars)
    return _stream_response(request, invoker.stream(prompt), ResultKind.REVIEW, settings.output_max_chars_review, decision)


@app.post("/narrate")
async def narrate_endpoint(request: Request):
    settings = get_settings()
    decision = await _admit(request, settings, "narrate")
    req = validate_narrate(await _guarded(read_json_body(request, settings.max_body_bytes)), settings)
    invoker = get_invoker()
    _require_model(invoker)

    async def _run() -> Dict[str, Any]:
        diff = await _resolve_diff(req.code)
        prompt = build_narrate_prompt(req, diff, code_limit=settings.prompt_code_max_chars)
        raw = await invoker.complete(prompt)
        return normalize(raw, ResultKind.NARRATION, max_chars=settings.output_max_chars_narrate).to_public()

    result = await _guarded(_run())
    log.info("narrate ok type=%s changes=%d", result.get("type"), len(result.get("changes", [])))
    return JSONResponse(result, headers=_rate_limit_headers(decision))


@app.post("/narrate/stream")
async def narrate_stream(request: Request):
    settings = get_settings()
    decision = await _admit(request, settings, "narrate")
    req = validate_narrate(await _guarded(read_json_body(request, settings.max_body_bytes)), settings)
    invoker = get_invoker()
    _require_model(invoker)
    diff = await _resolve_diff(req.code)
    prompt = build_narrate_prompt(req, diff, code_limit=settings.prompt_code_max_chars)
    return _stream_response(request, invoker.stream(prompt), ResultKind.NARRATION, settings.output_max_chars_narrate, decision)
