from typing import Literal, Optional

from pydantic import BaseModel, Field

ProcessingStatus = Literal["pending", "processing", "processed", "error"]

class KnowledgeStatusUpdate(BaseModel):
    status: ProcessingStatus
    error_message: Optional[str] = Field(default=None, max_length=2000)
    chunks_count: Optional[int] = Field(default=None, ge=0)

class KnowledgeFileOut(BaseModel):
    id: str
    file_name: str
    processing_status: ProcessingStatus
    error_message: Optional[str] = None
    chunks_count: Optional[int] = None
    is_linked: bool
    shareable: bool
