# chatbot_api/core/config.py
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    env: str = "dev"
    database_url: str
    supabase_project_url: str
    supabase_jwks_url: str = ""
    supabase_jwt_secret: str = ""

    # Modelo y generación
    default_chat_model: str = "gpt-4o-mini"
    chat_temperature: float = 0.7
    max_tool_rounds: int = 5

    # Contexto
    history_max_turns: int = 30
    rag_match_limit: int = 5
    rag_match_threshold: float = 0.7
    memory_limit: int = 10

    # Separador por defecto para mensajes multi-parte de WhatsApp
    price_escalation_delimiter: str = "||"

    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    # Busca primero en variables de entorno y luego en .env
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
