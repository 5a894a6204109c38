from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import ValidationError

from decanter.errors import NormalizationFailure
from decanter.schemas import NarrationResult, ReviewResult, _Result, error_list, field_adapters

log = logging.getLogger(__name__)

RAW_EXCERPT_CHARS = 300
REVIEW_MAX_CHARS = 24_000
NARRATE_MAX_CHARS = 8_000

_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_+.-]*[ \t]*\r?\n?(?P<body>[\s\S]*?)\r?\n?[ \t]*```\s*$")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


class ResultKind(str, Enum):
    REVIEW = "review"
    NARRATION = "narration"


_MODELS: Dict[ResultKind, Type[_Result]] = {
    ResultKind.REVIEW: ReviewResult,
    ResultKind.NARRATION: NarrationResult,
}


def model_for(kind: ResultKind) -> Type[_Result]:
    return _MODELS[kind]


def strip_fence(text: str) -> str:
    """Remove one fence wrapping the whole text, with or without a language tag."""
    t = (text or "").strip()
    m = _FENCE_RE.match(t)
    if m:
        return m.group("body").strip()
    return t


def balanced_object_span(s: str) -> Optional[str]:
    """First balanced {...} in ``s``; braces inside JSON strings are ignored."""
    in_str = False
    esc = False
    depth = 0
    start_idx = -1
    for i, ch in enumerate(s):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            # Quotes only open strings once inside an object; prose may contain stray quotes
            if depth > 0:
                in_str = True
        elif ch == "{":
            if depth == 0:
                start_idx = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                return s[start_idx : i + 1]
    return None


# ---------------------------------------------------------------------------
# Parsing strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParseAttempt:
    strategy: str
    ok: bool
    value: Any = None
    error: str = ""


def _loads(strategy: str, text: Optional[str]) -> ParseAttempt:
    if not text:
        return ParseAttempt(strategy, False, error="no candidate text")
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        return ParseAttempt(strategy, False, error=f"{exc.msg} at pos {exc.pos}")
    if not isinstance(value, dict):
        return ParseAttempt(strategy, False, error=f"expected object, got {type(value).__name__}")
    return ParseAttempt(strategy, True, value=value)


def _direct(text: str) -> ParseAttempt:
    return _loads("direct", text)


def _balanced_span(text: str) -> ParseAttempt:
    return _loads("balanced_span", balanced_object_span(text))


def _sanitized(text: str) -> ParseAttempt:
    span = balanced_object_span(text) or text
    s = _TRAILING_COMMA_RE.sub(r"\1", span)
    s = s.replace("“", '"').replace("”", '"').replace("’", "'")
    return _loads("sanitized", s)


STRATEGIES: Tuple[Tuple[str, Callable[[str], ParseAttempt]], ...] = (
    ("direct", _direct),
    ("balanced_span", _balanced_span),
    ("sanitized", _sanitized),
)


def parse_object(text: str) -> Tuple[Optional[Dict[str, Any]], List[ParseAttempt]]:
    """Run the strategies in order; return the first parsed object and every attempt made."""
    attempts: List[ParseAttempt] = []
    for _, strategy in STRATEGIES:
        attempt = strategy(text)
        attempts.append(attempt)
        if attempt.ok:
            return attempt.value, attempts
    return None, attempts


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _excerpt(raw: str) -> str:
    return (raw or "")[:RAW_EXCERPT_CHARS]


def _fail(reason: str, raw: str, kind: ResultKind, issues: Optional[List[Dict[str, str]]] = None) -> NormalizationFailure:
    err = NormalizationFailure(reason, raw_excerpt=_excerpt(raw), issues=issues)
    log.warning(
        "normalize failed kind=%s reason=%s issues=%s raw=%r",
        kind.value,
        reason,
        err.issues,
        err.raw_excerpt,
    )
    return err


def normalize(raw_text: str, kind: ResultKind, *, max_chars: Optional[int] = None) -> _Result:
    """
    Recover a validated result object from raw model text.

    Strips a wrapping fence, tries the parsing strategies in order, validates
    against the result schema (rounding float scores) and enforces the
    serialized-size ceiling. Oversized results are rejected, never truncated.
    Raises NormalizationFailure.
    """
    if not (raw_text or "").strip():
        raise _fail("empty completion", raw_text, kind)

    text = strip_fence(raw_text)
    value, attempts = parse_object(text)
    if value is None:
        issues = [{"path": a.strategy, "message": a.error} for a in attempts]
        raise _fail("no parseable JSON object", raw_text, kind, issues)

    model = model_for(kind)
    try:
        result = model.model_validate(value)
    except ValidationError as exc:
        raise _fail("schema validation failed", raw_text, kind, error_list(exc))

    ceiling = max_chars if max_chars is not None else (REVIEW_MAX_CHARS if kind is ResultKind.REVIEW else NARRATE_MAX_CHARS)
    size = len(json.dumps(result.to_public(), ensure_ascii=False, separators=(",", ":")))
    if size > ceiling:
        raise _fail(
            "result too large",
            raw_text,
            kind,
            [{"path": "(root)", "message": f"serialized size {size} exceeds {ceiling} characters"}],
        )
    log.debug("normalize ok kind=%s strategy=%s size=%d", kind.value, attempts[-1].strategy, size)
    return result


# ---------------------------------------------------------------------------
# Streaming: partial objects
# ---------------------------------------------------------------------------


def close_partial_json(text: str) -> Optional[Dict[str, Any]]:
    """
    Best-effort parse of a JSON object prefix.

    Open strings are closed in place (a string grows monotonically), but a
    trailing number or literal is dropped, because ``8`` may still become
    ``87``. When the prefix cannot be closed as-is, it is cut back to the last
    member separator.
    """
    start = text.find("{")
    if start == -1:
        return None
    s = text[start:]

    in_str = False
    esc = False
    stack: List[str] = []
    cuts: List[Tuple[int, List[str]]] = []
    end = len(s)
    for i, ch in enumerate(s):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if stack:
                stack.pop()
            if not stack:
                end = i + 1
                break
        elif ch == ",":
            cuts.append((i, list(stack)))

    s = s[:end]
    if not stack:
        return _try_object(s)

    candidates: List[str] = []
    tail = s.rstrip()
    if in_str:
        if not esc:
            candidates.append(s + '"' + "".join(reversed(stack)))
    elif tail and tail[-1] in '"}]':
        candidates.append(tail + "".join(reversed(stack)))
    for pos, snapshot in reversed(cuts):
        candidates.append(s[:pos] + "".join(reversed(snapshot)))
    candidates.append("{}")

    for cand in candidates:
        obj = _try_object(cand)
        if obj is not None:
            return obj
    return None


def _try_object(s: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(s)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def extends(prev: Any, new: Any) -> bool:
    """True when ``new`` only adds to ``prev`` (never retracts or rewrites)."""
    if isinstance(prev, dict):
        if not isinstance(new, dict):
            return False
        return all(k in new and extends(v, new[k]) for k, v in prev.items())
    if isinstance(prev, list):
        if not isinstance(new, list) or len(new) < len(prev):
            return False
        for i, item in enumerate(prev):
            last = i == len(prev) - 1
            if last and not extends(item, new[i]):
                return False
            if not last and item != new[i]:
                return False
        return True
    if isinstance(prev, str):
        return isinstance(new, str) and new.startswith(prev)
    return prev == new


@dataclass
class PartialObjectAccumulator:
    """
    Folds raw text chunks into monotonically growing snapshots of the result.

    Each member is checked against its own field type and bounds before it
    can appear in a snapshot; a member that fails (a score of 150, an empty
    title, a half-typed change type) is held back until a later chunk makes
    it valid. Values are emitted in their validated form, so a score of 87.6
    shows as 88 exactly as in the final result.

    ``feed`` returns a new snapshot only when it strictly extends the last one
    emitted; anything else stays buffered until a later chunk extends it.
    ``finish`` normalizes the complete text.
    """

    kind: ResultKind
    max_chars: Optional[int] = None
    buffer: List[str] = field(default_factory=list)
    last: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._adapters = field_adapters(model_for(self.kind))

    @property
    def text(self) -> str:
        return "".join(self.buffer)

    def _checked(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {}
        for key, raw in obj.items():
            adapter = self._adapters.get(key)
            if adapter is None or raw is None:
                continue
            try:
                value = adapter.validate_python(raw)
            except ValidationError:
                continue
            snapshot[key] = adapter.dump_python(value, mode="json")
        return snapshot

    def feed(self, chunk: str) -> Optional[Dict[str, Any]]:
        if not chunk:
            return None
        self.buffer.append(chunk)
        obj = close_partial_json(self.text)
        if obj is None:
            return None
        snapshot = self._checked(obj)
        if snapshot == self.last or not extends(self.last, snapshot):
            return None
        self.last = snapshot
        return dict(snapshot)

    def finish(self) -> _Result:
        return normalize(self.text, self.kind, max_chars=self.max_chars)
