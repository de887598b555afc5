"""
Submission API.

POST /submit (and /vf/submit, the path the dialog SaaS calls) runs the
publish flow synchronously: validate → create request → post to channel →
bind message.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from slowapi import Limiter
from slowapi.util import get_remote_address

from ideabot.config import get_settings
from ideabot.errors import UpstreamError, ValidationError
from ideabot.schemas import SubmitRequest, SubmitResponse
from ideabot.services.publisher import get_publisher

logger = logging.getLogger(__name__)

router = APIRouter(tags=["submit"])

# Rate limiter for the public submission endpoint
limiter = Limiter(key_func=get_remote_address)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


def _pydantic_error_message(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "body"
    return f"{field}: {first.get('msg', 'invalid value')}"


@router.post("/submit", response_model=SubmitResponse)
@router.post("/vf/submit", response_model=SubmitResponse, include_in_schema=False)
@limiter.limit(lambda: get_settings().submit_rate_limit)
async def submit_request(
    request: Request,  # Required for rate limiter
    x_submit_secret: Optional[str] = Header(None)
):
    """
    Create a feature request and publish it to the channel.

    Returns 400 with a field-specific error on validation failure.
    """
    settings = get_settings()

    if settings.submit_secret and x_submit_secret != settings.submit_secret:
        return _error(403, "Invalid submit secret")

    try:
        body = await request.json()
    except ValueError:
        return _error(400, "body must be a JSON object")

    if not isinstance(body, dict):
        return _error(400, "body must be a JSON object")

    logger.info(f"Submit received, keys={sorted(body.keys())}")

    try:
        payload = SubmitRequest.model_validate(body)
    except PydanticValidationError as e:
        return _error(400, _pydantic_error_message(e))

    try:
        result = await get_publisher().publish(
            author_id=payload.resolved_author_id(),
            author_username=payload.resolved_username(),
            title=payload.resolved_title(),
            description=payload.resolved_description(),
            tags=payload.tags or [],
            domain=payload.domain or ""
        )
    except ValidationError as e:
        logger.info(f"Submit rejected: {e}")
        return _error(400, str(e))
    except UpstreamError as e:
        logger.error(f"Submit: channel post failed: {e}")
        return _error(502, str(e))
    except Exception as e:
        logger.error(f"Submit failed: {e}", exc_info=True)
        return _error(500, "internal error")

    return SubmitResponse(
        request_id=result.request_id,
        channel_message_id=result.channel_message_id,
        channel_chat_id=result.channel_chat_id
    )
