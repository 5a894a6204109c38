"""
Calls the hosted completion provider (Gemini, Generative Language REST API).
No retries happen here: overload and 5xx responses are reported to the
caller as retryable UpstreamUnavailable errors.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Union

import httpx

from decanter.config import Settings, get_settings
from decanter.errors import UpstreamError, UpstreamTimeout, UpstreamUnavailable

log = logging.getLogger(__name__)

_RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}


class InvokeMode(str, Enum):
    BLOCKING = "blocking"
    STREAMING = "streaming"


class ModelInvoker(Protocol):
    @property
    def configured(self) -> bool: ...

    def status(self) -> Dict[str, Any]: ...

    async def complete(self, prompt: str) -> str: ...

    def stream(self, prompt: str) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


def _extract_gemini_text(payload: Dict[str, Any]) -> Optional[str]:
    """Concatenate the text parts of the first candidate; None when there are none."""
    if not isinstance(payload, dict):
        return None
    candidates = payload.get("candidates") or []
    for cand in candidates:
        if not isinstance(cand, dict):
            continue
        content = cand.get("content") or {}
        parts = content.get("parts") or []
        texts = [p.get("text") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
        if texts:
            return "".join(texts)
    return None


def _provider_error(status_code: int, body: str, where: str) -> Exception:
    log.warning("Gemini %s HTTP %s: %s", where, status_code, (body or "")[:400])
    if status_code in _RETRYABLE_STATUSES:
        return UpstreamUnavailable(detail={"status": status_code})
    return UpstreamError(detail={"status": status_code})


class GeminiInvoker:
    """
    Model invoker for Gemini.

    ``complete`` is the blocking mode: one request raced against the timeout
    budget. ``stream`` is the streaming mode: an async iterator of text chunks
    in provider order. Closing the iterator closes the HTTP stream.
    """

    def __init__(self, settings: Optional[Settings] = None, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.settings.gemini_api_key)

    @property
    def model(self) -> str:
        return self.settings.gemini_model

    def status(self) -> Dict[str, Any]:
        return {
            "provider": "gemini" if self.configured else None,
            "model": self.model if self.configured else None,
            "has_token": self.configured,
        }

    def _require_credentials(self) -> None:
        if not self.configured:
            log.error("llm: missing provider credential (GEMINI_API_KEY / API_KEY)")
            raise UpstreamUnavailable("Server configuration error: model credential missing", retryable=False)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.settings.llm_timeout_secs, connect=10.0))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _url(self, method: str) -> str:
        return f"{self.settings.gemini_endpoint_base}/{self.model}:{method}"

    def _body(self, prompt: str) -> Dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.settings.temperature,
                "responseMimeType": "application/json",
            },
        }

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.settings.gemini_api_key, "Content-Type": "application/json"}

    async def invoke(self, prompt: str, mode: InvokeMode = InvokeMode.BLOCKING) -> Union[str, AsyncIterator[str]]:
        if mode is InvokeMode.STREAMING:
            self._require_credentials()
            return self.stream(prompt)
        return await self.complete(prompt)

    async def complete(self, prompt: str) -> str:
        self._require_credentials()
        started = time.monotonic()
        try:
            resp = await asyncio.wait_for(
                self._http().post(self._url("generateContent"), headers=self._headers(), json=self._body(prompt)),
                timeout=self.settings.llm_timeout_secs,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            log.warning("Gemini generate timed out after %.1fs", time.monotonic() - started)
            raise UpstreamTimeout()
        except httpx.HTTPError as exc:
            log.warning("Gemini request error: %r", exc)
            raise UpstreamUnavailable(detail={"transport": type(exc).__name__})

        if resp.status_code != 200:
            raise _provider_error(resp.status_code, resp.text, "generate")

        try:
            data = resp.json()
        except ValueError:
            log.warning("Gemini generate: non-JSON HTTP body")
            return ""
        text = _extract_gemini_text(data) or ""
        log.info("llm complete model=%s chars=%d dur_ms=%d", self.model, len(text), int((time.monotonic() - started) * 1000))
        return text

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        self._require_credentials()
        deadline = time.monotonic() + self.settings.stream_total_timeout_secs
        lines = self._stream_lines(prompt)
        try:
            while True:
                budget = min(self.settings.stream_idle_timeout_secs, deadline - time.monotonic())
                if budget <= 0:
                    log.warning("Gemini stream exceeded total budget of %.0fs", self.settings.stream_total_timeout_secs)
                    raise UpstreamTimeout()
                try:
                    line = await asyncio.wait_for(lines.__anext__(), timeout=budget)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError:
                    log.warning("Gemini stream idle for %.1fs", budget)
                    raise UpstreamTimeout()
                text = self._decode_sse_line(line)
                if text:
                    yield text
        finally:
            await lines.aclose()

    async def _stream_lines(self, prompt: str) -> AsyncIterator[str]:
        try:
            async with self._http().stream(
                "POST",
                self._url("streamGenerateContent"),
                params={"alt": "sse"},
                headers=self._headers(),
                json=self._body(prompt),
            ) as resp:
                if resp.status_code != 200:
                    body = (await resp.aread()).decode("utf-8", "replace")
                    raise _provider_error(resp.status_code, body, "stream")
                async for line in resp.aiter_lines():
                    yield line
        except httpx.TimeoutException:
            raise UpstreamTimeout()
        except httpx.HTTPError as exc:
            log.warning("Gemini stream error: %r", exc)
            raise UpstreamUnavailable(detail={"transport": type(exc).__name__})

    @staticmethod
    def _decode_sse_line(line: str) -> Optional[str]:
        s = (line or "").strip()
        if not s.startswith("data:"):
            return None
        data = s[len("data:"):].strip()
        if not data or data == "[DONE]":
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            log.debug("Gemini stream: skipping undecodable line %r", data[:120])
            return None
        return _extract_gemini_text(payload)


_invoker: Optional[GeminiInvoker] = None


def get_invoker() -> GeminiInvoker:
    global _invoker
    if _invoker is None:
        _invoker = GeminiInvoker()
    return _invoker


def reset_invoker() -> None:
    global _invoker
    _invoker = None


def status() -> Dict[str, Any]:
    return get_invoker().status()
