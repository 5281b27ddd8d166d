# chatbot_api/routers/chatbot_data.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.errors import BadRequestError, NotFoundError, PermissionDeniedError
from chatbot_api.db.session import get_session
from chatbot_api.middlewares.auth import AuthContext, api_key_auth
from chatbot_api.services import catalog
from chatbot_api.services.api_keys import SCOPE_PRODUCTS, SCOPE_PROMOTIONS
from chatbot_api.services.context import get_avatar
from chatbot_api.services.emitter import record_api_request
from chatbot_api.services.tools import ToolExecutor

router = APIRouter(tags=["chatbot-data"])

DATA_ENDPOINT = "chatbot-data"

# scope requerido por tipo de dato
DATA_TYPE_SCOPES = {
    "catalog": SCOPE_PRODUCTS,
    "products": SCOPE_PRODUCTS,
    "categories": SCOPE_PRODUCTS,
    "promotions": SCOPE_PROMOTIONS,
    "validate_promo": SCOPE_PROMOTIONS,
}

@router.get("/chatbot-data")
async def chatbot_data_route(
    chatbot_id: Optional[str] = Query(default=None),
    type: Optional[str] = Query(default=None),
    query: str = Query(default=""),
    category: Optional[str] = Query(default=None),
    promo_code: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    include_out_of_stock: bool = Query(default=False),
    auth: AuthContext = Depends(api_key_auth),
    session: AsyncSession = Depends(get_session),
):
    """API de solo lectura para agentes de automatización (n8n, Make, ...)."""
    if not chatbot_id:
        raise BadRequestError("Missing chatbot_id query parameter")
    if type not in DATA_TYPE_SCOPES:
        raise BadRequestError(f"Invalid or missing type parameter. Valid types: {', '.join(DATA_TYPE_SCOPES)}")

    scope = DATA_TYPE_SCOPES[type]
    auth.require_scope(scope, f"API key does not have '{scope}' permission")
    if auth.avatar_restriction and str(auth.avatar_restriction) != str(chatbot_id):
        raise PermissionDeniedError("API key does not have access to this chatbot")

    try:
        avatar = await get_avatar(session, chatbot_id, auth.user_id)
    except NotFoundError:
        raise NotFoundError("Chatbot not found or access denied")

    executor = ToolExecutor(session, avatar)
    if type == "catalog":
        data = await executor.browse_full_catalog({"include_out_of_stock": include_out_of_stock})
    elif type == "products":
        if query.strip():
            data = await executor.search_products({"query": query, "limit": limit})
        elif category:
            data = await executor.get_products_by_category({"category": category, "limit": limit})
        else:
            products = await catalog.fetch_catalog(session, executor.chatbot_id, include_out_of_stock=True)
            items = await executor.shape_products(products[:limit])
            data = {"success": True, "products": items, "count": len(items)}
    elif type == "categories":
        data = await executor.list_product_categories({})
    elif type == "promotions":
        data = await executor.get_active_promotions({"limit": limit})
    else:
        if not (promo_code or "").strip():
            raise BadRequestError("Missing promo_code parameter for validate_promo type")
        data = await executor.validate_promo_code({"promo_code": promo_code})

    await record_api_request(
        session, api_key_id=auth.api_key_id, user_id=auth.user_id, endpoint=DATA_ENDPOINT, method="GET",
    )

    return {"success": True, "chatbot_id": executor.chatbot_id, "type": type, "data": data}
