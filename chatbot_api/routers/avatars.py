# chatbot_api/routers/avatars.py
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.db.session import get_session
from chatbot_api.middlewares.auth import current_user
from chatbot_api.schemas.knowledge import KnowledgeFileOut, KnowledgeStatusUpdate
from chatbot_api.schemas.product import ProductImportIn, ProductImportOut
from chatbot_api.schemas.prompt_version import PromptVersionCreate, PromptVersionOut
from chatbot_api.services.catalog import import_products
from chatbot_api.services.context import get_avatar
from chatbot_api.services.knowledge import get_knowledge_file, set_processing_status
from chatbot_api.services.prompt_versions import (
    activate_prompt_version, create_prompt_version, list_prompt_versions,
)

router = APIRouter(prefix="/avatars", tags=["avatars"])

# === Versiones de prompt ===
@router.get("/{avatar_id}/prompt-versions", response_model=List[PromptVersionOut])
async def list_prompt_versions_route(
    avatar_id: str,
    user = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    avatar = await get_avatar(session, avatar_id, user["sub"])
    return await list_prompt_versions(session, str(avatar.id), user["sub"])

@router.post("/{avatar_id}/prompt-versions", response_model=PromptVersionOut, status_code=201)
async def create_prompt_version_route(
    avatar_id: str,
    payload: PromptVersionCreate,
    user = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    avatar = await get_avatar(session, avatar_id, user["sub"])
    return await create_prompt_version(
        session,
        avatar_id=str(avatar.id),
        user_id=user["sub"],
        **payload.model_dump(),
    )

@router.post("/{avatar_id}/prompt-versions/{version_id}/activate", response_model=PromptVersionOut)
async def activate_prompt_version_route(
    avatar_id: str,
    version_id: str,
    user = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    avatar = await get_avatar(session, avatar_id, user["sub"])
    return await activate_prompt_version(session, avatar_id=str(avatar.id), version_id=version_id, user_id=user["sub"])

# === Catálogo ===
@router.post("/{avatar_id}/products/import", response_model=ProductImportOut)
async def import_products_route(
    avatar_id: str,
    payload: ProductImportIn,
    user = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    avatar = await get_avatar(session, avatar_id, user["sub"])
    rows = [row.model_dump(exclude_none=True) for row in payload.products]
    return await import_products(session, str(avatar.id), user["sub"], rows)

# === Archivos de conocimiento ===
@router.patch("/{avatar_id}/knowledge-files/{file_id}/status", response_model=KnowledgeFileOut)
async def update_knowledge_status_route(
    avatar_id: str,
    file_id: str,
    payload: KnowledgeStatusUpdate,
    user = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    avatar = await get_avatar(session, avatar_id, user["sub"])
    knowledge_file = await get_knowledge_file(session, avatar_id=str(avatar.id), file_id=file_id, user_id=user["sub"])
    knowledge_file = await set_processing_status(
        session,
        knowledge_file,
        payload.status,
        error_message=payload.error_message,
        chunks_count=payload.chunks_count,
    )
    return {
        "id": str(knowledge_file.id),
        "file_name": knowledge_file.file_name,
        "processing_status": knowledge_file.processing_status,
        "error_message": knowledge_file.error_message,
        "chunks_count": knowledge_file.chunks_count,
        "is_linked": knowledge_file.is_linked,
        "shareable": knowledge_file.shareable,
    }
