import sys, asyncio
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from chatbot_api.core.config import settings
from chatbot_api.core.errors import register_exception_handlers
from chatbot_api.core.logging_utils import get_logger, setup_logging
from chatbot_api.db.base import Base
from chatbot_api.db.session import engine

# registra todas las tablas en Base.metadata
from chatbot_api.db.models import api_key, avatar, catalog, knowledge, prompt_version  # noqa: F401

from chatbot_api.routers import health
from chatbot_api.routers import chat as chat_router
from chatbot_api.routers import chatbot_data as chatbot_data_router
from chatbot_api.routers import chatbot_config as chatbot_config_router
from chatbot_api.routers import avatars as avatars_router

if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

app = FastAPI(title="Business Chatbot API")

# CORS (ajustá orígenes en prod)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
setup_logging(app, settings.log_level)
register_exception_handlers(app)

# Routers
app.include_router(health.router)
app.include_router(chat_router.router)            # POST /avatar-chat
app.include_router(chatbot_data_router.router)    # GET /chatbot-data
app.include_router(chatbot_config_router.router)  # GET /get-chatbot-config
app.include_router(avatars_router.router)         # /avatars/{avatar_id}/...

@app.get("/")
async def root():
    return {"ok": True, "service": "chatbot-api", "routers": ["health", "chat", "chatbot-data", "chatbot-config", "avatars"]}

# Crear tablas si no existen (MVP). En prod, usar migraciones.
@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    get_logger("chatbot_api").info("Startup complete", extra={"env": settings.env})
