import base64
import os
import tempfile
import time
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

# La config se lee al importar chatbot_api: el entorno va primero
_DB_DIR = tempfile.mkdtemp(prefix="chatbot-api-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["SUPABASE_PROJECT_URL"] = "https://project.supabase.co"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["SUPABASE_JWKS_URL"] = ""

import httpx
import pytest
from jose import jwt

from chatbot_api.core.security import hash_api_key
from chatbot_api.db.base import Base
from chatbot_api.db.models.api_key import PlatformApiKey, UserApiKey
from chatbot_api.db.models.avatar import Avatar
from chatbot_api.db.models.catalog import Product, Promotion
from chatbot_api.db.models.knowledge import KnowledgeFile, Memory
from chatbot_api.db.models.prompt_version import PromptVersion
from chatbot_api.db.session import AsyncSessionLocal, engine
from chatbot_api.main import app
from chatbot_api.routers.chat import get_chat_client_factory
from chatbot_api.services import context as context_service
from chatbot_api.utils.ids import new_id

PLATFORM_KEY = "pk_live_test_0123456789"


@pytest.fixture(autouse=True)
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def no_knowledge_search(monkeypatch):
    # el RPC de similitud vive en Postgres; en SQLite no hay pasajes
    async def _search(session, **kwargs):
        return []
    monkeypatch.setattr(context_service, "search_knowledge_chunks", _search)


@pytest.fixture
async def session():
    async with AsyncSessionLocal() as s:
        yield s


class Factory:
    def __init__(self, session):
        self.session = session

    async def _save(self, obj):
        self.session.add(obj)
        await self.session.commit()
        await self.session.refresh(obj)
        return obj

    async def avatar(self, **kw) -> Avatar:
        data = dict(
            user_id=new_id(),
            name="Aira",
            company_name="Gadget Hub",
            industry="Electronics",
            business_context="We sell phones and accessories in Kuala Lumpur.",
            compliance_rules=["Never share customer data"],
            response_guidelines=["Keep answers short"],
            personality_traits=["friendly", "concise"],
            supported_languages=["en", "ms"],
            default_language="en",
            price_visible=True,
        )
        data.update(kw)
        return await self._save(Avatar(**data))

    async def product(self, avatar: Avatar, **kw) -> Product:
        data = dict(
            chatbot_id=avatar.id,
            user_id=avatar.user_id,
            sku=f"SKU-{new_id()[:8]}",
            product_name="Widget",
            category="Gadgets",
            price=100.0,
            in_stock=True,
            is_active=True,
        )
        data.update(kw)
        return await self._save(Product(**data))

    async def promotion(self, avatar: Avatar, **kw) -> Promotion:
        data = dict(
            chatbot_id=avatar.id,
            user_id=avatar.user_id,
            title="Sale",
            discount_type="percentage",
            discount_value=10,
            is_active=True,
            applies_to="all",
            current_uses=0,
        )
        data.update(kw)
        return await self._save(Promotion(**data))

    async def prompt_version(self, avatar: Avatar, **kw) -> PromptVersion:
        data = dict(
            avatar_id=avatar.id,
            user_id=avatar.user_id,
            version_number=1,
            system_prompt="You help customers of Gadget Hub.",
            personality_traits=[],
            behavior_rules=[],
            compliance_rules=[],
            response_guidelines=[],
            is_active=False,
        )
        data.update(kw)
        return await self._save(PromptVersion(**data))

    async def platform_key(self, user_id: str, raw_key: str = PLATFORM_KEY, **kw) -> PlatformApiKey:
        data = dict(
            user_id=user_id,
            key_name="integration",
            api_key_hash=hash_api_key(raw_key),
            api_key_prefix=raw_key[:8],
            scopes=["chat", "products", "promotions"],
            status="active",
            request_count=0,
        )
        data.update(kw)
        return await self._save(PlatformApiKey(**data))

    async def openai_key(self, user_id: str, key: str = "sk-test-key") -> UserApiKey:
        return await self._save(UserApiKey(
            user_id=user_id,
            service="OpenAI",
            api_key_encrypted=base64.b64encode(key.encode()).decode(),
            status="active",
        ))

    async def memory(self, avatar: Avatar, **kw) -> Memory:
        data = dict(avatar_id=avatar.id, user_id=avatar.user_id, title="Launch day", memory_summary="Opened the store")
        data.update(kw)
        return await self._save(Memory(**data))

    async def knowledge_file(self, avatar: Avatar, **kw) -> KnowledgeFile:
        data = dict(avatar_id=avatar.id, user_id=avatar.user_id, file_name="catalog.pdf", processing_status="pending")
        data.update(kw)
        return await self._save(KnowledgeFile(**data))


@pytest.fixture
def factory(session):
    return Factory(session)


# =========================
# Doble del cliente de OpenAI
# =========================
def tool_call(name: str, arguments: str = "{}", call_id: Optional[str] = None):
    return SimpleNamespace(
        id=call_id or f"call_{name}",
        type="function",
        function=SimpleNamespace(name=name, arguments=arguments),
    )


def assistant(content: Optional[str] = None, tool_calls: Optional[List[Any]] = None):
    message = SimpleNamespace(role="assistant", content=content, tool_calls=tool_calls or None)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")])


class ScriptedChatClient:
    """Devuelve respuestas en orden; la última se repite si el script se acaba."""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []
        self.api_keys: List[str] = []
        self.closed = False
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True

    async def _create(self, **kwargs):
        # copia superficial: el loop sigue agregando mensajes a la misma lista
        self.requests.append({**kwargs, "messages": list(kwargs["messages"])})
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_llm():
    """Instala un ScriptedChatClient como cliente de OpenAI de la app."""
    def install(*responses) -> ScriptedChatClient:
        client = ScriptedChatClient(list(responses))

        def factory(api_key: str):
            client.api_keys.append(api_key)
            return client

        app.dependency_overrides[get_chat_client_factory] = lambda: factory
        return client

    yield install
    app.dependency_overrides.pop(get_chat_client_factory, None)


@pytest.fixture
async def client():
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def session_token(user_id: str) -> str:
    now = int(time.time())
    claims = {
        "sub": user_id,
        "aud": "authenticated",
        "iss": "https://project.supabase.co/auth/v1",
        "iat": now,
        "exp": now + 3600,
        "email": "owner@example.com",
    }
    return jwt.encode(claims, "test-jwt-secret", algorithm="HS256")


@pytest.fixture
def bearer():
    def _headers(user_id: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {session_token(user_id)}"}
    return _headers


@pytest.fixture
def llm():
    """Helpers para armar respuestas del modelo en los tests."""
    return SimpleNamespace(tool_call=tool_call, assistant=assistant, client=ScriptedChatClient)
