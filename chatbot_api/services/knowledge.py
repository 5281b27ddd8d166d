from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.errors import BadRequestError, NotFoundError
from chatbot_api.core.logging_utils import get_logger
from chatbot_api.db.models.knowledge import KnowledgeFile
from chatbot_api.utils.ids import is_uuid

logger = get_logger("chatbot_api.knowledge")

PENDING = "pending"
PROCESSING = "processing"
PROCESSED = "processed"
ERROR = "error"

# pending -> processing -> processed | error; error -> processing (reintento)
ALLOWED_TRANSITIONS = {
    PENDING: {PROCESSING},
    PROCESSING: {PROCESSED, ERROR},
    ERROR: {PROCESSING},
    PROCESSED: set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


async def get_knowledge_file(session: AsyncSession, *, avatar_id: str, file_id: str, user_id: str) -> KnowledgeFile:
    if not is_uuid(file_id):
        raise NotFoundError("Knowledge file not found")
    row = (await session.execute(
        select(KnowledgeFile).where(
            KnowledgeFile.id == file_id,
            KnowledgeFile.avatar_id == avatar_id,
            KnowledgeFile.user_id == user_id,
        )
    )).scalars().first()
    if not row:
        raise NotFoundError("Knowledge file not found")
    return row


async def set_processing_status(
    session: AsyncSession,
    knowledge_file: KnowledgeFile,
    status: str,
    *,
    error_message: Optional[str] = None,
    chunks_count: Optional[int] = None,
) -> KnowledgeFile:
    current = knowledge_file.processing_status or PENDING
    if not can_transition(current, status):
        raise BadRequestError(f"Invalid status transition: {current} -> {status}")

    knowledge_file.processing_status = status
    if status == ERROR:
        knowledge_file.error_message = error_message or "Processing failed"
    else:
        knowledge_file.error_message = None
    if status == PROCESSED and chunks_count is not None:
        knowledge_file.chunks_count = chunks_count
    if status == PROCESSING:
        knowledge_file.chunks_count = 0

    await session.commit()
    await session.refresh(knowledge_file)
    logger.info("Knowledge file status changed", extra={
        "file_id": str(knowledge_file.id), "from": current, "to": status,
    })
    return knowledge_file
