from sqlalchemy import Column, String, Integer, DateTime, Uuid, func
from chatbot_api.db.base import Base, StringList
from chatbot_api.utils.ids import new_id

class PlatformApiKey(Base):
    """Key opaca de la plataforma (x-api-key). Solo se guarda el hash SHA-256."""
    __tablename__ = "platform_api_keys"
    id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    user_id = Column(Uuid(as_uuid=False), nullable=False, index=True)
    key_name = Column(String, nullable=False)
    api_key_hash = Column(String, nullable=False, unique=True)
    api_key_prefix = Column(String)
    scopes = Column(StringList, default=list)
    avatar_id = Column(Uuid(as_uuid=False))            # null = sin restricción de chatbot
    status = Column(String, nullable=False, default="active")
    expires_at = Column(DateTime(timezone=True))
    request_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class UserApiKey(Base):
    """Credenciales de proveedores externos del tenant (p.ej. OpenAI), en base64."""
    __tablename__ = "user_api_keys"
    id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    user_id = Column(Uuid(as_uuid=False), nullable=False, index=True)
    service = Column(String, nullable=False)
    api_key_encrypted = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class ApiRequestLog(Base):
    __tablename__ = "api_request_logs"
    id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    api_key_id = Column(Uuid(as_uuid=False))           # null en test-mode
    user_id = Column(Uuid(as_uuid=False), nullable=False)
    endpoint = Column(String, nullable=False)
    method = Column(String, nullable=False)
    status_code = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
