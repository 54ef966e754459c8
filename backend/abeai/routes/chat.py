"""Chat API routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from abeai.config import get_settings
from abeai.database import get_db
from abeai.schemas.chat import (
    ChatMessageRequest,
    ChatMessageResponse,
    ErrorResponse,
    UpgradeButton,
    UserContextIn,
)
from abeai.schemas.session import Tier
from abeai.core.chat_handler import ChatHandler, ChatResult, ContextOverrides, Outcome
from abeai.core.config_loader import get_rules
from abeai.core.i18n import get_localized
from abeai.core.identity import InvalidIdentifierError, resolve_identity, set_session_cookie
from abeai.core.llm_client import LLMClient, get_llm_client

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def _context_overrides(context: Optional[UserContextIn]) -> Optional[ContextOverrides]:
    if context is None:
        return None
    return ContextOverrides(
        allergies=context.allergies,
        injuries=context.injuries,
        medications=context.medications,
        mental_health=context.mental_health,
        fitness_level=context.fitness_level,
        motivation_level=context.motivation_level,
        age=context.age,
        is_australian=context.is_australian,
    )


@router.options("/", status_code=204, include_in_schema=False)
async def chat_options():
    """Bare OPTIONS on the chat route; real preflights are answered by the CORS middleware."""
    return Response(status_code=204)


@router.post(
    "/",
    response_model=ChatMessageResponse,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}},
)
async def send_message(
    payload: ChatMessageRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
):
    """
    Send a message and get the coach's response.

    If neither user_id nor session_id is provided (and no session cookie is
    present), a new session is created and returned via cookie and sessionId.
    """
    settings = get_settings()

    try:
        identity = resolve_identity(
            payload.user_id,
            payload.session_id,
            request.cookies.get(settings.session_cookie_name),
        )
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=str(e))

    tier = Tier.parse(payload.tier)
    if payload.tier and tier is None:
        raise HTTPException(status_code=400, detail=f"Unknown tier: {payload.tier}")

    try:
        handler = ChatHandler(db, llm_client=llm_client)
        result = await handler.handle_message(
            user_message=payload.message,
            identity=identity,
            tier=tier,
            context=_context_overrides(payload.context),
            country=request.headers.get(settings.geo_country_header),
        )
    except Exception as e:
        logger.error(f"Error handling message for {identity.key}: {e}", exc_info=True)
        await db.rollback()
        result = ChatResult(
            response=get_localized(get_rules().prompts.failure_message),
            outcome=Outcome.FAILED,
        )

    if identity.minted:
        set_session_cookie(response, identity)

    return ChatMessageResponse(
        response=result.response,
        buttons=[UpgradeButton(**button) for button in result.buttons],
        upgrade_suggested=result.upgrade_suggested,
        session_id=identity.identifier if identity.minted else None,
        pillar=result.pillar,
        request_context=result.request_context,
    )
