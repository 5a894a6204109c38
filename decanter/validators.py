from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError
from starlette.requests import Request

from decanter.config import Settings
from decanter.errors import PayloadTooLarge, UnsupportedMediaType, ValidationFailed
from decanter.schemas import NarrateRequest, ReviewRequest, error_list

M = TypeVar("M", bound=BaseModel)


def is_json_media_type(content_type: Optional[str]) -> bool:
    """True for application/json and structured-syntax +json types."""
    if not content_type:
        return False
    media = content_type.split(";", 1)[0].strip().lower()
    return media == "application/json" or (media.startswith("application/") and media.endswith("+json"))


def check_request_headers(request: Request, max_bytes: int) -> None:
    """Reject wrong media types and declared oversize bodies without reading the body."""
    if not is_json_media_type(request.headers.get("content-type")):
        raise UnsupportedMediaType()
    declared = request.headers.get("content-length")
    if declared is None:
        return
    try:
        length = int(declared)
    except ValueError:
        raise ValidationFailed([{"path": "(headers)", "message": "invalid Content-Length"}])
    if length > max_bytes:
        raise PayloadTooLarge(max_bytes)


async def read_json_body(request: Request, max_bytes: int) -> Any:
    """
    Enforce the media type and byte ceiling, then parse the body.
    The ceiling is checked on the declared Content-Length first and on the
    bytes actually received, so oversized bodies are never fully buffered.
    """
    check_request_headers(request, max_bytes)

    chunks: List[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > max_bytes:
            raise PayloadTooLarge(max_bytes)
        chunks.append(chunk)

    raw = b"".join(chunks)
    if not raw.strip():
        raise ValidationFailed([{"path": "(root)", "message": "request body is required"}])
    try:
        return json.loads(raw)
    except UnicodeDecodeError:
        raise ValidationFailed([{"path": "(root)", "message": "body must be UTF-8 encoded JSON"}])
    except json.JSONDecodeError as exc:
        raise ValidationFailed([{"path": "(root)", "message": f"body is not valid JSON: {exc.msg}"}])


def collect_errors(model: Type[BaseModel], payload: Any, settings: Optional[Settings] = None) -> List[Dict[str, str]]:
    """
    Return a list of {"path": "...", "message": "..."} violations for ``payload``.
    Missing properties produce messages containing 'required'.
    """
    try:
        _validate(model, payload, settings)
    except ValidationFailed as exc:
        return exc.errors
    return []


def _validate(model: Type[M], payload: Any, settings: Optional[Settings]) -> M:
    if not isinstance(payload, dict):
        raise ValidationFailed([{"path": "(root)", "message": "body must be a JSON object"}])
    context: Dict[str, Any] = {}
    if settings is not None:
        context = {"code_min_chars": settings.code_min_chars, "code_max_chars": settings.code_max_chars}
    try:
        return model.model_validate(payload, context=context)
    except ValidationError as exc:
        raise ValidationFailed(error_list(exc))


def validate_review(payload: Any, settings: Optional[Settings] = None) -> ReviewRequest:
    return _validate(ReviewRequest, payload, settings)


def validate_narrate(payload: Any, settings: Optional[Settings] = None) -> NarrateRequest:
    return _validate(NarrateRequest, payload, settings)
