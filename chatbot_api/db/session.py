from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool
from chatbot_api.core.config import settings

def _engine_kwargs(url: str) -> dict:
    # SQLite (tests/local): conexión nueva por uso y esperar locks en vez de fallar con "database is locked"
    if url.startswith("sqlite"):
        return {"poolclass": NullPool, "connect_args": {"timeout": 30}}
    return {"pool_pre_ping": True}

# Engine asincrónico
engine = create_async_engine(settings.database_url, echo=False, **_engine_kwargs(settings.database_url))

# Session factory
AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)

# Dependency para inyectar sesión en endpoints
async def get_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session
