from sqlalchemy import Column, String, Text, Boolean, Integer, Date, DateTime, ForeignKey, Uuid, func
from chatbot_api.db.base import Base
from chatbot_api.utils.ids import new_id

class KnowledgeFile(Base):
    __tablename__ = "avatar_knowledge_files"
    id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    avatar_id = Column(Uuid(as_uuid=False), ForeignKey("avatars.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=False), nullable=False)

    file_name = Column(String, nullable=False)
    file_url = Column(String)
    file_size = Column(Integer)

    is_linked = Column(Boolean, nullable=False, default=True)
    shareable = Column(Boolean, nullable=False, default=False)

    processing_status = Column(String, nullable=False, default="pending")  # pending|processing|processed|error
    error_message = Column(Text)
    chunks_count = Column(Integer, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class Memory(Base):
    __tablename__ = "avatar_memories"
    id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    avatar_id = Column(Uuid(as_uuid=False), ForeignKey("avatars.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=False), nullable=False)

    title = Column(String, nullable=False)
    memory_summary = Column(Text)
    memory_date = Column(Date)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
