from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.logging_utils import get_logger
from chatbot_api.db.models.api_key import ApiRequestLog
from chatbot_api.services.api_keys import increment_api_key_usage

logger = get_logger("chatbot_api.emitter")


async def record_api_request(
    session: AsyncSession,
    *,
    api_key_id: Optional[str],
    user_id: str,
    endpoint: str,
    method: str = "POST",
    status_code: int = 200,
) -> None:
    """Fila de auditoría + contador de uso de la key (no aplica en test-mode)."""
    session.add(ApiRequestLog(
        api_key_id=api_key_id,
        user_id=str(user_id),
        endpoint=endpoint,
        method=method,
        status_code=status_code,
    ))
    if api_key_id:
        await increment_api_key_usage(session, api_key_id)
    await session.commit()
    logger.debug("API request recorded", extra={"endpoint": endpoint, "status_code": status_code})


def build_chat_response(
    *,
    avatar_id: str,
    message: str,
    model: str,
    knowledge_chunks_used: int = 0,
    memories_accessed: int = 0,
    tool_calls_log: Optional[List[Dict[str, Any]]] = None,
    images_collected: int = 0,
    debug: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    tool_calls_log = tool_calls_log or []
    return {
        "success": True,
        "avatar_id": str(avatar_id),
        "message": message,
        "metadata": {
            "model": model,
            "knowledge_chunks_used": knowledge_chunks_used,
            "memories_accessed": memories_accessed,
            "tool_calls_executed": len(tool_calls_log),
            "tool_calls_log": tool_calls_log,
            "images_collected": images_collected,
            "debug": debug or {},
        },
    }
