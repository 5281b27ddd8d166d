# chatbot_api/routers/chat.py
from typing import Any, Callable

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.errors import BadRequestError
from chatbot_api.db.session import get_session
from chatbot_api.middlewares.auth import AuthContext, api_key_auth
from chatbot_api.schemas.chat import ChatRequest, ChatResponse
from chatbot_api.services.llm import create_chat_client
from chatbot_api.services.orchestrator import handle_chat_turn

router = APIRouter(tags=["chat"])

def get_chat_client_factory() -> Callable[[str], Any]:
    # se reemplaza en tests vía app.dependency_overrides
    return create_chat_client

@router.post("/avatar-chat", response_model=ChatResponse)
async def avatar_chat_route(
    body: ChatRequest,
    auth: AuthContext = Depends(api_key_auth),
    session: AsyncSession = Depends(get_session),
    client_factory: Callable[[str], Any] = Depends(get_chat_client_factory),
):
    if not (body.avatar_id or "").strip() or not (body.message or "").strip():
        raise BadRequestError("Missing required fields: avatar_id and message")
    return await handle_chat_turn(session, auth, body, client_factory=client_factory)
