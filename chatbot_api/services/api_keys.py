from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.security import hash_api_key
from chatbot_api.db.models.api_key import PlatformApiKey

SCOPE_CHAT = "chat"
SCOPE_PRODUCTS = "products"
SCOPE_PROMOTIONS = "promotions"


@dataclass(frozen=True)
class ApiKeyGrant:
    key_id: str
    user_id: str
    scopes: List[str] = field(default_factory=list)
    avatar_id: Optional[str] = None


def _aware(value: datetime) -> datetime:
    # SQLite devuelve datetimes naive; se asumen UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def verify_platform_api_key(session: AsyncSession, raw_key: str) -> Optional[ApiKeyGrant]:
    """Busca la key por hash; None si no existe, no está activa o expiró."""
    if not raw_key:
        return None
    row = (await session.execute(
        select(PlatformApiKey).where(PlatformApiKey.api_key_hash == hash_api_key(raw_key))
    )).scalars().first()
    if not row or row.status != "active":
        return None
    if row.expires_at and _aware(row.expires_at) <= datetime.now(timezone.utc):
        return None
    return ApiKeyGrant(
        key_id=str(row.id),
        user_id=str(row.user_id),
        scopes=list(row.scopes or []),
        avatar_id=str(row.avatar_id) if row.avatar_id else None,
    )


async def increment_api_key_usage(session: AsyncSession, key_id: str) -> None:
    # incremento atómico en la DB; el commit lo hace quien llama
    await session.execute(
        update(PlatformApiKey)
        .where(PlatformApiKey.id == str(key_id))
        .values(
            request_count=PlatformApiKey.request_count + 1,
            last_used_at=datetime.now(timezone.utc),
        )
    )
