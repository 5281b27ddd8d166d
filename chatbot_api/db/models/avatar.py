from sqlalchemy import Column, String, Text, Boolean, Integer, DateTime, Uuid, func
from chatbot_api.db.base import Base, StringList
from chatbot_api.utils.ids import new_id

class Avatar(Base):
    """Chatbot de negocio configurado por un usuario (tenant)."""
    __tablename__ = "avatars"
    id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    user_id = Column(Uuid(as_uuid=False), nullable=False, index=True)

    name = Column(String, nullable=False)
    company_name = Column(String)
    industry = Column(String)
    business_context = Column(Text)
    backstory = Column(Text)

    compliance_rules = Column(StringList, default=list)
    response_guidelines = Column(StringList, default=list)
    personality_traits = Column(StringList, default=list)
    supported_languages = Column(StringList, default=list)
    default_language = Column(String, default="en")

    # False => nunca se muestran precios; las consultas de precio se escalan a un humano
    price_visible = Column(Boolean, nullable=False, default=True)

    whatsapp_message_delimiter = Column(String)        # p.ej. "||"; null = split automático
    whatsapp_typing_wpm = Column(Integer, default=200)
    whatsapp_message_batch_timeout = Column(Integer, default=0)

    fine_tuned_model_id = Column(String)

    # papelera: soft delete con ventana de retención
    deleted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
