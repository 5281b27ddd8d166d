# chatbot_api/routers/chatbot_config.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.errors import BadRequestError, ConfigurationError, NotFoundError, PermissionDeniedError
from chatbot_api.db.models.catalog import Product, Promotion
from chatbot_api.db.models.knowledge import KnowledgeFile
from chatbot_api.db.session import get_session
from chatbot_api.middlewares.auth import AuthContext, api_key_auth
from chatbot_api.services.context import get_avatar, get_tenant_openai_key
from chatbot_api.services.emitter import record_api_request
from chatbot_api.services.prompt_versions import get_active_prompt_version

router = APIRouter(tags=["chatbot-config"])

CONFIG_ENDPOINT = "get-chatbot-config"

DEFAULT_TYPING_WPM = 150
DEFAULT_BATCH_TIMEOUT_MS = 5000

async def _count(session: AsyncSession, q) -> int:
    return int((await session.execute(q)).scalar() or 0)

@router.get("/get-chatbot-config")
async def get_chatbot_config_route(
    chatbot_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(api_key_auth),
    session: AsyncSession = Depends(get_session),
):
    """Configuración completa del chatbot para workflows externos (n8n)."""
    if not chatbot_id:
        raise BadRequestError("Missing chatbot_id query parameter")
    if auth.avatar_restriction and str(auth.avatar_restriction) != str(chatbot_id):
        raise PermissionDeniedError("API key does not have access to this chatbot")

    try:
        avatar = await get_avatar(session, chatbot_id, auth.user_id)
    except NotFoundError:
        raise NotFoundError("Chatbot not found or access denied")
    avatar_id = str(avatar.id)

    # la key de OpenAI nunca sale del servicio; solo se informa si existe
    try:
        await get_tenant_openai_key(session, auth.user_id)
        has_openai = True
    except ConfigurationError:
        has_openai = False

    products_count = await _count(session, select(func.count(Product.id)).where(
        Product.chatbot_id == avatar_id, Product.is_active.is_(True),
    ))
    promotions_count = await _count(session, select(func.count(Promotion.id)).where(
        Promotion.chatbot_id == avatar_id, Promotion.is_active.is_(True),
    ))
    knowledge_count = await _count(session, select(func.count(KnowledgeFile.id)).where(
        KnowledgeFile.avatar_id == avatar_id, KnowledgeFile.is_linked.is_(True),
    ))
    version = await get_active_prompt_version(session, avatar_id, str(avatar.user_id))

    config = {
        "success": True,
        "chatbot": {
            "id": avatar_id,
            "name": avatar.name,
            "company_name": avatar.company_name,
            "industry": avatar.industry,
            "business_context": avatar.business_context,
            "system_prompt": version.system_prompt if version else None,
            "personality_traits": list(avatar.personality_traits or []),
            "compliance_rules": list(avatar.compliance_rules or []),
            "response_guidelines": list(avatar.response_guidelines or []),
            "languages": {
                "supported": list(avatar.supported_languages or []) or [avatar.default_language or "en"],
                "default": avatar.default_language or "en",
            },
            "price_visible": avatar.price_visible is not False,
            "fine_tuned_model_id": avatar.fine_tuned_model_id,
        },
        "api_keys": {"has_openai": has_openai},
        "whatsapp_settings": {
            # None = el cliente de WhatsApp parte los mensajes solo
            "message_delimiter": avatar.whatsapp_message_delimiter,
            "typing_speed_wpm": avatar.whatsapp_typing_wpm or DEFAULT_TYPING_WPM,
            "batch_timeout_ms": avatar.whatsapp_message_batch_timeout or DEFAULT_BATCH_TIMEOUT_MS,
        },
        "content": {
            "products_count": products_count,
            "promotions_count": promotions_count,
            "knowledge_files_count": knowledge_count,
            "has_products": products_count > 0,
            "has_promotions": promotions_count > 0,
            "has_knowledge": knowledge_count > 0,
        },
        "prompt_version": (
            {"version": version.version_number, "name": version.version_name} if version else None
        ),
        "endpoints": {"chat": "/avatar-chat", "chatbot_data": "/chatbot-data"},
    }

    await record_api_request(
        session, api_key_id=auth.api_key_id, user_id=auth.user_id, endpoint=CONFIG_ENDPOINT, method="GET",
    )
    return config
