import binascii
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select, text as sqltext
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.config import settings
from chatbot_api.core.errors import ConfigurationError, NotFoundError
from chatbot_api.core.logging_utils import get_logger
from chatbot_api.core.security import decode_stored_secret
from chatbot_api.db.models.api_key import UserApiKey
from chatbot_api.db.models.avatar import Avatar
from chatbot_api.db.models.knowledge import Memory
from chatbot_api.db.models.prompt_version import PromptVersion
from chatbot_api.services.prompt import KnowledgeChunk, MemoryEntry, PromptProfile, fallback_profile
from chatbot_api.utils.ids import is_uuid

logger = get_logger("chatbot_api.context")

OPENAI_SERVICE = "OpenAI"


@dataclass
class ChatContext:
    avatar: Avatar
    profile: PromptProfile
    rag_chunks: List[KnowledgeChunk] = field(default_factory=list)
    memories: List[MemoryEntry] = field(default_factory=list)


async def get_avatar(session: AsyncSession, avatar_id: str, user_id: Optional[str] = None) -> Avatar:
    """Avatar vivo (no en papelera). Con user_id, además tiene que ser de ese usuario."""
    if not is_uuid(avatar_id):
        raise NotFoundError("Avatar not found")
    q = select(Avatar).where(Avatar.id == str(avatar_id), Avatar.deleted_at.is_(None))
    if user_id is not None:
        q = q.where(Avatar.user_id == str(user_id))
    avatar = (await session.execute(q)).scalars().first()
    if not avatar:
        raise NotFoundError("Avatar not found")
    return avatar


def profile_from_version(version: PromptVersion) -> PromptProfile:
    return PromptProfile(
        system_prompt=version.system_prompt,
        personality_traits=tuple(version.personality_traits or ()),
        behavior_rules=tuple(version.behavior_rules or ()),
        compliance_rules=tuple(version.compliance_rules or ()),
        response_guidelines=tuple(version.response_guidelines or ()),
        version_id=str(version.id),
        version_number=version.version_number,
    )


async def resolve_prompt_profile(
    session: AsyncSession,
    avatar: Avatar,
    prompt_version_id: Optional[str] = None,
) -> PromptProfile:
    """Versión explícita > versión activa > perfil armado desde el avatar."""
    base = select(PromptVersion).where(
        PromptVersion.avatar_id == str(avatar.id),
        PromptVersion.user_id == str(avatar.user_id),
    )
    if prompt_version_id:
        version = None
        if is_uuid(prompt_version_id):
            version = (await session.execute(
                base.where(PromptVersion.id == str(prompt_version_id))
            )).scalars().first()
        if not version:
            raise NotFoundError("Prompt version not found")
        return profile_from_version(version)

    active = (await session.execute(
        base.where(PromptVersion.is_active.is_(True))
        .order_by(PromptVersion.version_number.desc())
        .limit(1)
    )).scalars().first()
    if active:
        return profile_from_version(active)
    return fallback_profile(avatar)


async def search_knowledge_chunks(
    session: AsyncSession,
    *,
    user_id: str,
    avatar_id: str,
    query: str,
    limit: int,
    threshold: float,
) -> List[KnowledgeChunk]:
    # RPC de similitud (pgvector); solo busca en archivos vinculados y procesados
    sql = sqltext("""
        SELECT *
        FROM search_knowledge_chunks(:p_user_id, :p_avatar_id, :p_query, :p_limit, :p_threshold)
    """)
    params = {
        "p_user_id": str(user_id),
        "p_avatar_id": str(avatar_id),
        "p_query": query,
        "p_limit": int(limit),
        "p_threshold": float(threshold),
    }
    async with session.begin_nested():
        rows = (await session.execute(sql, params)).mappings().all()
    out: List[KnowledgeChunk] = []
    for r in rows:
        text = r.get("chunk_text")
        if not text:
            continue
        similarity = r.get("similarity")
        out.append(KnowledgeChunk(
            text=text,
            similarity=float(similarity) if similarity is not None else None,
            file_id=str(r["file_id"]) if r.get("file_id") else None,
        ))
    return out


async def fetch_memories(session: AsyncSession, *, avatar_id: str, user_id: str, limit: int) -> List[MemoryEntry]:
    rows = (await session.execute(
        select(Memory)
        .where(Memory.avatar_id == str(avatar_id), Memory.user_id == str(user_id))
        .order_by(Memory.memory_date.desc(), Memory.created_at.desc())
        .limit(limit)
    )).scalars().all()
    return [
        MemoryEntry(
            title=m.title,
            memory_date=m.memory_date.isoformat() if m.memory_date else None,
            summary=m.memory_summary,
        )
        for m in rows
    ]


async def fetch_context(
    session: AsyncSession,
    avatar: Avatar,
    message: str,
    *,
    prompt_version_id: Optional[str] = None,
) -> ChatContext:
    """Lecturas independientes: versión de prompt, pasajes RAG y memorias."""
    profile = await resolve_prompt_profile(session, avatar, prompt_version_id)

    rag_chunks: List[KnowledgeChunk] = []
    if message and message.strip():
        try:
            rag_chunks = await search_knowledge_chunks(
                session,
                user_id=str(avatar.user_id),
                avatar_id=str(avatar.id),
                query=message,
                limit=settings.rag_match_limit,
                threshold=settings.rag_match_threshold,
            )
        except Exception as e:
            # el conocimiento es contexto opcional: sin pasajes se responde igual
            logger.warning("Knowledge search failed", extra={"avatar_id": str(avatar.id), "error": str(e)})

    memories = await fetch_memories(
        session, avatar_id=str(avatar.id), user_id=str(avatar.user_id), limit=settings.memory_limit,
    )
    return ChatContext(avatar=avatar, profile=profile, rag_chunks=rag_chunks, memories=memories)


async def get_tenant_openai_key(session: AsyncSession, user_id: str) -> str:
    row = (await session.execute(
        select(UserApiKey)
        .where(
            UserApiKey.user_id == str(user_id),
            UserApiKey.service == OPENAI_SERVICE,
            UserApiKey.status == "active",
        )
        .order_by(UserApiKey.created_at.desc())
        .limit(1)
    )).scalars().first()
    if not row:
        raise ConfigurationError("No OpenAI API key found for user")
    try:
        key = decode_stored_secret(row.api_key_encrypted)
    except (binascii.Error, UnicodeDecodeError):
        raise ConfigurationError("Stored OpenAI API key is not valid")
    if not key:
        raise ConfigurationError("No OpenAI API key found for user")
    return key
