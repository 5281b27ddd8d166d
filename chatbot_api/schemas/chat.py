from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

MessageType = Literal["text", "image", "audio", "video", "document", "location", "sticker"]

class MediaPayload(BaseModel):
    type: MessageType
    mime_type: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[str] = None

class HistoryTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str = ""

class ChatRequest(BaseModel):
    # avatar_id y message se validan en el endpoint para devolver el mensaje de error histórico
    avatar_id: Optional[str] = None
    message: Optional[str] = None
    message_type: MessageType = "text"
    media: Optional[MediaPayload] = None
    conversation_history: List[HistoryTurn] = Field(default_factory=list)
    model: Optional[str] = None
    user_identifier: Optional[str] = None
    prompt_version_id: Optional[str] = None

class ToolCallLogEntry(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    success: bool
    duration_ms: float

class ChatMetadata(BaseModel):
    model: str
    knowledge_chunks_used: int = 0
    memories_accessed: int = 0
    tool_calls_executed: int = 0
    tool_calls_log: List[ToolCallLogEntry] = Field(default_factory=list)
    images_collected: int = 0
    debug: Dict[str, Any] = Field(default_factory=dict)

class ChatResponse(BaseModel):
    success: bool
    avatar_id: str
    message: str
    metadata: ChatMetadata
