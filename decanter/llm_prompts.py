from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from jinja2 import Environment, StrictUndefined

from decanter.personas import instructions_for
from decanter.schemas import ChangeType, NarrateRequest, ReviewRequest

PROMPT_CODE_MAX_CHARS = 48_000
CONTEXT_MAX_CHARS = 4_000
TRUNCATION_MARKER = "\n... (truncated)"

_PR_URL_RE = re.compile(
    r"^https://github\.com/(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+)/pull/(?P<number>\d+)(?:[/?#].*)?$"
)

# Prompts are plain text; autoescape would mangle code.
_env = Environment(
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)

_REVIEW_TEMPLATE = _env.from_string(
    """{{ persona_block }}

Review the code below. Be specific: cite the constructs you are talking about.

Respond with a single JSON object and nothing else. No markdown fences, no prose.
The object MUST match this JSON schema exactly (no additional keys):
{{ schema }}

Field guidance:
- title: sarcastic, technical title for the code (<= 160 chars)
- diagnosis: technical analysis of what is wrong or right (2-3 sentences)
- fix: specific actionable improvement, markdown allowed, before/after snippets welcome
- refactoredCode: the improved version of the code, complete and runnable
- language: language of the submitted code, lowercase (e.g. "python", "typescript")
- level: estimated skill level of the author (e.g. "Intern", "Senior")
- score: integer code-quality rating from 0 to 100

Code to review:
```
{{ code }}
```
"""
)

_NARRATE_TEMPLATE = _env.from_string(
    """You are an expert Tech Lead.
Analyze the code or diff below and write a professional pull request description.

Respond with a single JSON object and nothing else. No markdown fences, no prose.
The object MUST match this JSON schema exactly (no additional keys):
{{ schema }}

Field guidance:
- title: conventional-commit style title
- summary: executive summary of the change
- type: one of {{ change_types }}
- changes: list of specific changes, one short sentence each
- impact: analysis of risk and impact
- testing: steps to verify the change

Context: {{ context }}

Code:
```
{{ code }}
```
"""
)


def _str_prop(max_length: int) -> Dict[str, Any]:
    return {"type": "string", "minLength": 1, "maxLength": max_length}


def review_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "title": _str_prop(160),
            "diagnosis": _str_prop(2000),
            "fix": _str_prop(6000),
            "refactoredCode": _str_prop(20_000),
            "language": _str_prop(40),
            "level": _str_prop(80),
            "score": {"type": "integer", "minimum": 0, "maximum": 100},
        },
        "required": ["title", "diagnosis", "fix", "refactoredCode", "language", "level", "score"],
        "additionalProperties": False,
    }


def narration_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "title": _str_prop(160),
            "summary": _str_prop(2000),
            "type": {"type": "string", "enum": [c.value for c in ChangeType]},
            "changes": {"type": "array", "items": _str_prop(400), "minItems": 1, "maxItems": 30},
            "impact": _str_prop(2000),
            "testing": _str_prop(2000),
        },
        "required": ["title", "summary", "type", "changes", "impact", "testing"],
        "additionalProperties": False,
    }


def truncate_code(text: str, limit: int = PROMPT_CODE_MAX_CHARS) -> str:
    """Cut ``text`` to ``limit`` characters and mark the cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    repo: str
    number: int

    @property
    def label(self) -> str:
        return f"{self.owner}/{self.repo} #{self.number}"


def parse_pull_request_url(text: str) -> Optional[PullRequestRef]:
    """Recognise a GitHub pull request URL; None for anything else."""
    m = _PR_URL_RE.match((text or "").strip())
    if not m:
        return None
    number = int(m.group("number"))
    if number <= 0:
        return None
    return PullRequestRef(m.group("owner"), m.group("repo"), number)


def build_review_prompt(req: ReviewRequest, *, code_limit: int = PROMPT_CODE_MAX_CHARS) -> str:
    return _REVIEW_TEMPLATE.render(
        persona_block=instructions_for(req.persona),
        schema=json.dumps(review_schema(), separators=(",", ":")),
        code=truncate_code(req.code, code_limit),
    )


def build_narrate_prompt(
    req: NarrateRequest,
    diff_text: Optional[str] = None,
    *,
    code_limit: int = PROMPT_CODE_MAX_CHARS,
    context_limit: int = CONTEXT_MAX_CHARS,
) -> str:
    """
    Compose the narration prompt. ``diff_text`` is the already-resolved diff
    when ``req.code`` was a pull request URL; it replaces the code verbatim.

    ``code_limit`` caps the user-supplied text as a whole: the context is cut
    to ``context_limit`` first and the code gets what is left.
    """
    body = diff_text if diff_text is not None else req.code
    context = truncate_code((req.context or "").strip(), context_limit) or "None"
    return _NARRATE_TEMPLATE.render(
        schema=json.dumps(narration_schema(), separators=(",", ":")),
        change_types=", ".join(c.value for c in ChangeType),
        context=context,
        code=truncate_code(body, max(code_limit - len(context), 0)),
    )
