from __future__ import annotations

import math
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import Annotated, Any, Dict, List, Mapping, Optional, Type, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StringConstraints, TypeAdapter, ValidationInfo, field_validator
from pydantic_core import PydanticCustomError

from decanter.personas import DEFAULT_PERSONA, Persona

CODE_MIN_CHARS = 10
CODE_MAX_CHARS = 50_000


def _text(max_length: int) -> Any:
    return Annotated[str, StringConstraints(strict=True, strip_whitespace=True, min_length=1, max_length=max_length)]


ShortText = _text(160)
Label = _text(80)
LanguageTag = _text(40)
LongText = _text(2000)
FixText = _text(6000)
CodeText = _text(20_000)
ChangeLine = _text(400)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class _CodeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    code: str = Field(..., description="Source code or diff to review")

    @field_validator("code", mode="before")
    @classmethod
    def _code_is_string(cls, v: Any) -> Any:
        if not isinstance(v, str):
            raise PydanticCustomError("string_type", "code must be a string")
        return v

    @field_validator("code")
    @classmethod
    def _code_length(cls, v: str, info: ValidationInfo) -> str:
        ctx = info.context or {}
        lo = int(ctx.get("code_min_chars", CODE_MIN_CHARS))
        hi = int(ctx.get("code_max_chars", CODE_MAX_CHARS))
        if len(v) < lo:
            raise PydanticCustomError(
                "code_too_short", "Code must be at least {min} characters", {"min": lo}
            )
        if len(v) > hi:
            raise PydanticCustomError(
                "code_too_long", "Code must not exceed {max} characters", {"max": hi}
            )
        return v


class ReviewRequest(_CodeRequest):
    persona: Persona = Field(DEFAULT_PERSONA, description="Reviewer voice")

    @field_validator("persona", mode="before")
    @classmethod
    def _persona_member(cls, v: Any) -> Any:
        if v is None:
            return DEFAULT_PERSONA
        if isinstance(v, str) and v in Persona._value2member_map_:
            return Persona(v)
        allowed = ", ".join(p.value for p in Persona)
        raise PydanticCustomError("persona", "persona must be one of: {allowed}", {"allowed": allowed})


class NarrateRequest(_CodeRequest):
    context: Optional[str] = Field(None, description="Free-form notes about the change")

    @field_validator("context", mode="before")
    @classmethod
    def _context_is_string(cls, v: Any) -> Any:
        if v is not None and not isinstance(v, str):
            raise PydanticCustomError("string_type", "context must be a string")
        return v


# ---------------------------------------------------------------------------
# Model output
# ---------------------------------------------------------------------------


class ChangeType(str, Enum):
    FEAT = "feat"
    FIX = "fix"
    CHORE = "chore"
    REFACTOR = "refactor"
    DOCS = "docs"
    STYLE = "style"
    TEST = "test"
    PERF = "perf"


def _coerce_score(v: Any) -> Any:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise PydanticCustomError("score_type", "score must be a number")
    if isinstance(v, float):
        if not math.isfinite(v):
            raise PydanticCustomError("score_type", "score must be a finite number")
        # Half-up, so 87.5 -> 88 (round() would give banker's rounding)
        return int(math.floor(v + 0.5))
    return v


def _fold_change_type(v: Any) -> Any:
    if isinstance(v, str):
        return v.strip().lower()
    return v


Score = Annotated[int, BeforeValidator(_coerce_score), Field(ge=0, le=100)]
ChangeTypeTag = Annotated[ChangeType, BeforeValidator(_fold_change_type)]


class _Result(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=False)

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ReviewResult(_Result):
    """Tasting note for a reviewed snippet."""

    title: ShortText
    diagnosis: LongText
    fix: FixText
    refactored_code: Optional[CodeText] = Field(None, alias="refactoredCode")
    language: Optional[LanguageTag] = None
    level: Label
    score: Score


class NarrationResult(_Result):
    """PR description generated from a diff."""

    title: ShortText
    summary: LongText
    type: ChangeTypeTag
    changes: List[ChangeLine] = Field(..., min_length=1, max_length=30)
    impact: LongText
    testing: LongText


ResultModel = Union[ReviewResult, NarrationResult]


@lru_cache(maxsize=None)
def field_adapters(model: Type[_Result]) -> Mapping[str, TypeAdapter]:
    """
    One TypeAdapter per public (aliased) field, carrying the field's own
    constraints and validators, so single members can be checked in isolation.
    """
    adapters: Dict[str, TypeAdapter] = {}
    for name, info in model.model_fields.items():
        tp = Annotated[(info.annotation, *info.metadata)] if info.metadata else info.annotation
        adapters[info.alias or name] = TypeAdapter(tp)
    return MappingProxyType(adapters)


def error_list(exc: Any) -> List[Dict[str, str]]:
    """Flatten a pydantic ValidationError into [{"path", "message"}]."""
    out: List[Dict[str, str]] = []
    for e in exc.errors():
        loc = ".".join(str(p) for p in e.get("loc", ())) or "(root)"
        if e.get("type") == "missing":
            msg = f"required property '{loc}' is missing"
        elif e.get("type") == "extra_forbidden":
            msg = f"unexpected property '{loc}'"
        else:
            msg = e.get("msg", "invalid")
        out.append({"path": loc, "message": msg})
    return out
