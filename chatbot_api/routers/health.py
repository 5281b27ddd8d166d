from fastapi import APIRouter, Depends
from sqlalchemy import text as sqltext
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.config import settings
from chatbot_api.db.session import get_session

router = APIRouter(tags=["health"])

@router.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    # ping a la DB; si falla, el handler global responde 500
    await session.execute(sqltext("select 1"))
    return {"ok": True, "env": settings.env, "database": "up"}
