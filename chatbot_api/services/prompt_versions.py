from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.errors import ChatbotError, NotFoundError
from chatbot_api.core.logging_utils import get_logger
from chatbot_api.db.models.avatar import Avatar
from chatbot_api.db.models.prompt_version import PromptVersion
from chatbot_api.utils.ids import is_uuid

logger = get_logger("chatbot_api.prompt_versions")

CREATE_ATTEMPTS = 3


async def create_prompt_version(
    session: AsyncSession,
    *,
    avatar_id: str,
    user_id: str,
    system_prompt: str,
    version_name: Optional[str] = None,
    personality_traits: Optional[List[str]] = None,
    behavior_rules: Optional[List[str]] = None,
    compliance_rules: Optional[List[str]] = None,
    response_guidelines: Optional[List[str]] = None,
) -> PromptVersion:
    """Nueva versión inactiva con version_number = max + 1.

    Dos creaciones concurrentes pueden calcular el mismo número; el unique
    (avatar_id, version_number) rechaza una y se reintenta.
    """
    for attempt in range(1, CREATE_ATTEMPTS + 1):
        current = (await session.execute(
            select(func.max(PromptVersion.version_number)).where(PromptVersion.avatar_id == avatar_id)
        )).scalar()
        version = PromptVersion(
            avatar_id=avatar_id,
            user_id=user_id,
            version_number=(current or 0) + 1,
            version_name=version_name,
            system_prompt=system_prompt,
            personality_traits=list(personality_traits or []),
            behavior_rules=list(behavior_rules or []),
            compliance_rules=list(compliance_rules or []),
            response_guidelines=list(response_guidelines or []),
            is_active=False,
        )
        session.add(version)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.warning("Prompt version number taken, retrying", extra={"avatar_id": avatar_id, "attempt": attempt})
            continue
        await session.refresh(version)
        return version
    raise ChatbotError("Could not allocate a prompt version number", status_code=409)


async def list_prompt_versions(session: AsyncSession, avatar_id: str, user_id: str) -> List[PromptVersion]:
    q = (
        select(PromptVersion)
        .where(PromptVersion.avatar_id == avatar_id, PromptVersion.user_id == user_id)
        .order_by(PromptVersion.version_number.desc())
    )
    return list((await session.execute(q)).scalars().all())


async def get_active_prompt_version(session: AsyncSession, avatar_id: str, user_id: str) -> Optional[PromptVersion]:
    q = select(PromptVersion).where(
        PromptVersion.avatar_id == avatar_id,
        PromptVersion.user_id == user_id,
        PromptVersion.is_active.is_(True),
    )
    return (await session.execute(q)).scalars().first()


async def activate_prompt_version(session: AsyncSession, *, avatar_id: str, version_id: str, user_id: str) -> PromptVersion:
    """Activa una versión y desactiva las demás en una sola transacción.

    El lock sobre la fila del avatar serializa activaciones concurrentes (Postgres);
    el índice único parcial uq_prompt_version_active rechaza cualquier estado con
    dos versiones activas.
    """
    if not is_uuid(version_id):
        raise NotFoundError("Prompt version not found")

    await session.execute(
        select(Avatar.id).where(Avatar.id == avatar_id, Avatar.user_id == user_id).with_for_update()
    )
    await session.execute(
        update(PromptVersion)
        .where(PromptVersion.avatar_id == avatar_id, PromptVersion.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(
        update(PromptVersion)
        .where(
            PromptVersion.id == version_id,
            PromptVersion.avatar_id == avatar_id,
            PromptVersion.user_id == user_id,
        )
        .values(is_active=True, activated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # versión desconocida: no queda ningún cambio aplicado
        await session.rollback()
        raise NotFoundError("Prompt version not found")

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ChatbotError("Another activation is in progress for this avatar", status_code=409)

    logger.info("Prompt version activated", extra={"avatar_id": avatar_id, "version_id": version_id})
    version = (await session.execute(
        select(PromptVersion).where(PromptVersion.id == version_id).execution_options(populate_existing=True)
    )).scalars().one()
    return version
