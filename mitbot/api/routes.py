from __future__ import annotations

from typing import Annotated, Awaitable, Callable, Optional, TypeVar

from fastapi import APIRouter, Path

from mitbot.api.schemas import DialogResponse, Envelope, MessageRequest, RevokeResponse
from mitbot.logging import get_logger, user_id_var
from mitbot.service.runtime import get_runtime
from mitbot.service.workflow import Response

T = TypeVar("T")

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

UserId = Annotated[
    str, Path(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.:@-]+$")
]


def _dialog(result: Optional[Response]) -> Optional[DialogResponse]:
    if result is None:
        return None
    return DialogResponse(message=result.message, answers=list(result.answers))


async def _sequenced(user_id: str, func: Callable[[], Awaitable[T]]) -> T:
    """Run ``func`` as the latest request for ``user_id``."""
    user_id_var.set(user_id)
    runtime = get_runtime()
    return await runtime.sequencer.run(user_id, func)


@router.post("/users/{user_id}/tokens", response_model=Envelope, tags=["tokens"])
async def create_token(user_id: UserId):
    """Start the create-token dialog by asking for the token type."""
    workflow = get_runtime().workflow
    result = await _sequenced(user_id, lambda: workflow.create_token(user_id))
    return Envelope(status="ok", data=_dialog(result))


@router.get("/users/{user_id}/tokens", response_model=Envelope, tags=["tokens"])
async def list_tokens(user_id: UserId):
    workflow = get_runtime().workflow
    result = await _sequenced(user_id, lambda: workflow.list_tokens(user_id))
    return Envelope(status="ok", data=_dialog(result))


@router.post("/users/{user_id}/tokens/revoke", response_model=Envelope, tags=["tokens"])
async def revoke_token(user_id: UserId):
    """Revoke the user's only token, or ask which one to revoke.

    ``revoked`` is true when the token was revoked without a follow-up
    question; otherwise ``prompt`` carries the selection question.
    """
    workflow = get_runtime().workflow
    result = await _sequenced(user_id, lambda: workflow.revoke_token(user_id))
    if result is None:
        logger.info("token_revoked_directly", user_id=user_id)
    return Envelope(
        status="ok", data=RevokeResponse(revoked=result is None, prompt=_dialog(result))
    )


@router.post("/users/{user_id}/messages", response_model=Envelope, tags=["dialog"])
async def post_message(body: MessageRequest, user_id: UserId):
    """Submit a button press or typed answer to the running dialog."""
    workflow = get_runtime().workflow
    result = await _sequenced(user_id, lambda: workflow.handle_message(user_id, body.text))
    return Envelope(status="ok", data=_dialog(result))


@router.post("/users/{user_id}/reset", response_model=Envelope, tags=["dialog"])
async def reset_conversation(user_id: UserId):
    workflow = get_runtime().workflow
    result = await _sequenced(user_id, lambda: workflow.reset_conversation(user_id))
    return Envelope(status="ok", data=_dialog(result))
