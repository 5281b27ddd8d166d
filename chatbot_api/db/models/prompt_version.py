from sqlalchemy import (
    Column, String, Text, Boolean, Integer, DateTime, ForeignKey, Index, UniqueConstraint, Uuid, func, text,
)
from chatbot_api.db.base import Base, StringList
from chatbot_api.utils.ids import new_id

class PromptVersion(Base):
    __tablename__ = "avatar_prompt_versions"
    __table_args__ = (
        UniqueConstraint("avatar_id", "version_number", name="uq_prompt_version_number"),
        # a lo sumo una versión activa por avatar, garantizado por la DB
        Index(
            "uq_prompt_version_active",
            "avatar_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    avatar_id = Column(Uuid(as_uuid=False), ForeignKey("avatars.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid(as_uuid=False), nullable=False)

    version_number = Column(Integer, nullable=False)
    version_name = Column(String)
    system_prompt = Column(Text, nullable=False)
    personality_traits = Column(StringList, default=list)
    behavior_rules = Column(StringList, default=list)
    compliance_rules = Column(StringList, default=list)
    response_guidelines = Column(StringList, default=list)

    is_active = Column(Boolean, nullable=False, default=False)
    activated_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
