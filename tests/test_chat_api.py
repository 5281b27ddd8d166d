import json
from datetime import datetime, timedelta, timezone

import httpx
import openai
import pytest
from sqlalchemy import select

from chatbot_api.db.models.api_key import ApiRequestLog, PlatformApiKey
from chatbot_api.db.session import AsyncSessionLocal
from chatbot_api.services import context as context_service
from chatbot_api.services.orchestrator import LOOP_EXHAUSTED_REPLY
from chatbot_api.services.pricing_guard import ESCALATION_PARTS
from chatbot_api.services.prompt import RAG_START, KnowledgeChunk
from chatbot_api.utils.ids import new_id

from conftest import PLATFORM_KEY

KEY_HEADERS = {"x-api-key": PLATFORM_KEY}


async def _log_rows():
    async with AsyncSessionLocal() as s:
        return (await s.execute(select(ApiRequestLog))).scalars().all()


async def _request_count(key_id: str) -> int:
    async with AsyncSessionLocal() as s:
        return (await s.execute(
            select(PlatformApiKey.request_count).where(PlatformApiKey.id == key_id)
        )).scalar_one()


@pytest.fixture
async def shop(factory):
    """Avatar con precios visibles, key de plataforma y key de OpenAI del tenant."""
    avatar = await factory.avatar()
    key = await factory.platform_key(avatar.user_id)
    await factory.openai_key(avatar.user_id)
    return {"avatar": avatar, "avatar_id": str(avatar.id), "user_id": str(avatar.user_id), "key_id": str(key.id)}


async def test_phone_question_end_to_end(client, factory, shop, fake_llm, llm):
    await factory.product(
        shop["avatar"], sku="IP15", product_name="iPhone 15", category="Phones", price=3000,
        primary_image_url="https://cdn.example.com/iphone15.jpg",
    )
    model = fake_llm(
        llm.assistant(tool_calls=[llm.tool_call("browse_full_catalog")]),
        llm.assistant("Yes! We have the iPhone 15 in stock."),
    )

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={
        "avatar_id": shop["avatar_id"], "message": "do you have phones?",
    })

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["avatar_id"] == shop["avatar_id"]
    assert "iPhone 15" in body["message"]
    assert body["message"].endswith("[IMAGE:https://cdn.example.com/iphone15.jpg:iPhone 15]")

    meta = body["metadata"]
    assert meta["model"] == "gpt-4o-mini"
    assert meta["tool_calls_executed"] == 1
    assert meta["tool_calls_log"][0]["name"] == "browse_full_catalog"
    assert meta["tool_calls_log"][0]["success"] is True
    assert meta["images_collected"] == 1
    assert meta["debug"]["loop_exhausted"] is False
    assert meta["debug"]["tool"] == "browse_full_catalog"

    first, second = model.requests
    assert model.api_keys == ["sk-test-key"]
    assert first["tool_choice"] == "auto"
    assert first["max_tokens"] == 2000
    assert first["temperature"] == 0.7
    assert first["messages"][0]["role"] == "system"
    assert first["messages"][-1] == {"role": "user", "content": "do you have phones?"}

    tool_result = json.loads(second["messages"][-1]["content"])
    [phone] = tool_result["products_by_category"]["Phones"]
    assert phone["current_price"] == 3000
    assert "price_hidden" not in phone

    [log] = await _log_rows()
    assert log.endpoint == "avatar-chat"
    assert log.status_code == 200
    assert str(log.api_key_id) == shop["key_id"]
    assert await _request_count(shop["key_id"]) == 1


@pytest.mark.parametrize("message", ["How much is the iPhone?", "berapa harga?", "这个多少钱?", "is it RM3000"])
async def test_hidden_prices_never_reach_the_model(client, factory, fake_llm, llm, message):
    avatar = await factory.avatar(price_visible=False, whatsapp_message_delimiter="||")
    key = await factory.platform_key(avatar.user_id)
    model = fake_llm(llm.assistant("It costs RM 3000"))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": str(avatar.id), "message": message})

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["message"] == "||".join(ESCALATION_PARTS)
    assert body["metadata"]["debug"]["price_escalation"] is True
    assert body["metadata"]["tool_calls_executed"] == 0
    assert model.requests == []
    assert len(await _log_rows()) == 1
    assert await _request_count(str(key.id)) == 1


async def test_price_keyword_in_media_caption_is_intercepted(client, factory, fake_llm, llm):
    avatar = await factory.avatar(price_visible=False)
    await factory.platform_key(avatar.user_id)
    model = fake_llm(llm.assistant("unused"))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={
        "avatar_id": str(avatar.id),
        "message": "see photo",
        "message_type": "image",
        "media": {"type": "image", "mime_type": "image/jpeg", "url": "https://x/y.jpg", "caption": "price for this?"},
    })

    assert r.status_code == 200
    assert model.requests == []


async def test_hidden_prices_shape_tool_results(client, factory, fake_llm, llm):
    avatar = await factory.avatar(price_visible=False)
    await factory.platform_key(avatar.user_id)
    await factory.openai_key(avatar.user_id)
    await factory.product(avatar, product_name="iPhone 15", category="Phones", price=3000)
    model = fake_llm(
        llm.assistant(tool_calls=[llm.tool_call("browse_full_catalog")]),
        llm.assistant("We have the iPhone 15."),
    )

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": str(avatar.id), "message": "any phones?"})

    assert r.status_code == 200
    tool_content = model.requests[1]["messages"][-1]["content"]
    assert "3000" not in tool_content
    [phone] = json.loads(tool_content)["products_by_category"]["Phones"]
    assert phone["price_hidden"] is True
    assert "**PRICE POLICY (STRICT):**" in model.requests[0]["messages"][0]["content"]


async def test_history_is_truncated_to_last_30_turns(client, shop, fake_llm, llm):
    model = fake_llm(llm.assistant("Hi again!"))
    history = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"turn {i}"} for i in range(40)]

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={
        "avatar_id": shop["avatar_id"], "message": "hello", "conversation_history": history,
    })

    assert r.status_code == 200
    messages = model.requests[0]["messages"]
    assert len(messages) == 1 + 30 + 1
    assert messages[1]["content"] == "turn 10"
    assert messages[-2]["content"] == "turn 39"


async def test_fine_tuned_model_takes_precedence(client, factory, fake_llm, llm):
    avatar = await factory.avatar(fine_tuned_model_id="ft:gpt-4o:shop:abc")
    await factory.platform_key(avatar.user_id)
    await factory.openai_key(avatar.user_id)
    model = fake_llm(llm.assistant("ok"))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={
        "avatar_id": str(avatar.id), "message": "hi", "model": "gpt-4o-mini",
    })

    assert r.json()["metadata"]["model"] == "ft:gpt-4o:shop:abc"
    assert model.requests[0]["max_tokens"] == 1000


async def test_active_prompt_version_is_used(client, factory, shop, fake_llm, llm):
    await factory.prompt_version(shop["avatar"], version_number=1, system_prompt="OLD PROMPT")
    await factory.prompt_version(shop["avatar"], version_number=2, system_prompt="ACTIVE PROMPT", is_active=True)
    model = fake_llm(llm.assistant("ok"))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": shop["avatar_id"], "message": "hi"})

    system = model.requests[0]["messages"][0]["content"]
    assert "ACTIVE PROMPT" in system
    assert "OLD PROMPT" not in system
    assert r.json()["metadata"]["debug"]["prompt_version"] == 2


async def test_explicit_prompt_version_overrides_active(client, factory, shop, fake_llm, llm):
    draft = await factory.prompt_version(shop["avatar"], version_number=1, system_prompt="DRAFT PROMPT")
    await factory.prompt_version(shop["avatar"], version_number=2, system_prompt="ACTIVE PROMPT", is_active=True)
    model = fake_llm(llm.assistant("ok"))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={
        "avatar_id": shop["avatar_id"], "message": "hi", "prompt_version_id": str(draft.id),
    })

    assert r.status_code == 200
    assert "DRAFT PROMPT" in model.requests[0]["messages"][0]["content"]


async def test_foreign_prompt_version_is_not_found(client, factory, shop, fake_llm, llm):
    other = await factory.avatar()
    foreign = await factory.prompt_version(other, system_prompt="NOT YOURS")
    fake_llm(llm.assistant("ok"))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={
        "avatar_id": shop["avatar_id"], "message": "hi", "prompt_version_id": str(foreign.id),
    })

    assert r.status_code == 404
    assert r.json() == {"error": "Prompt version not found"}


async def test_memories_reach_the_prompt(client, factory, shop, fake_llm, llm):
    await factory.memory(shop["avatar"], title="Anniversary", memory_summary="Store turned 5")
    model = fake_llm(llm.assistant("ok"))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": shop["avatar_id"], "message": "hi"})

    assert r.json()["metadata"]["memories_accessed"] == 1
    assert "Anniversary" in model.requests[0]["messages"][0]["content"]


async def test_exhausted_loop_returns_fallback(client, shop, fake_llm, llm):
    fake_llm(llm.assistant(tool_calls=[llm.tool_call("list_product_categories")]))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": shop["avatar_id"], "message": "hi"})

    assert r.status_code == 200
    body = r.json()
    assert body["message"] == LOOP_EXHAUSTED_REPLY
    assert body["metadata"]["debug"]["loop_exhausted"] is True
    assert body["metadata"]["tool_calls_executed"] == 5


async def test_exhausted_loop_does_not_attach_images(client, factory, shop, fake_llm, llm):
    await factory.product(shop["avatar"], product_name="Widget", primary_image_url="https://x/w.jpg")
    model = fake_llm(llm.assistant(tool_calls=[llm.tool_call("browse_full_catalog")]))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": shop["avatar_id"], "message": "hi"})

    assert r.status_code == 200
    body = r.json()
    assert body["message"] == LOOP_EXHAUSTED_REPLY
    assert body["metadata"]["debug"]["images_injected"] == 0
    assert model.closed is True


async def test_knowledge_passages_reach_the_prompt(client, shop, fake_llm, llm, monkeypatch):
    calls = []

    async def _search(session, **kwargs):
        calls.append(kwargs)
        return [
            KnowledgeChunk(text="Warranty is 12 months on all phones.", similarity=0.91, file_id=new_id()),
            KnowledgeChunk(text="Store opens 10am to 10pm daily.", similarity=0.83, file_id=new_id()),
        ]

    monkeypatch.setattr(context_service, "search_knowledge_chunks", _search)
    model = fake_llm(llm.assistant("Our warranty is 12 months."))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": shop["avatar_id"], "message": "warranty?"})

    assert r.status_code == 200, r.text
    assert r.json()["metadata"]["knowledge_chunks_used"] == 2
    system = model.requests[0]["messages"][0]["content"]
    assert RAG_START in system
    assert "Warranty is 12 months on all phones." in system
    assert calls[0]["query"] == "warranty?"
    assert calls[0]["avatar_id"] == shop["avatar_id"]


async def test_knowledge_search_failure_degrades(client, shop, fake_llm, llm, monkeypatch):
    async def _search(session, **kwargs):
        raise RuntimeError("function search_knowledge_chunks does not exist")

    monkeypatch.setattr(context_service, "search_knowledge_chunks", _search)
    model = fake_llm(llm.assistant("Hello!"))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": shop["avatar_id"], "message": "hi"})

    assert r.status_code == 200, r.text
    assert r.json()["metadata"]["knowledge_chunks_used"] == 0
    assert RAG_START not in model.requests[0]["messages"][0]["content"]


async def test_test_mode_uses_session_token(client, factory, fake_llm, llm, bearer):
    avatar = await factory.avatar()
    await factory.openai_key(avatar.user_id)
    fake_llm(llm.assistant("hello from test console"))

    r = await client.post(
        "/avatar-chat",
        headers={"x-api-key": "test-mode", **bearer(str(avatar.user_id))},
        json={"avatar_id": str(avatar.id), "message": "hi"},
    )

    assert r.status_code == 200, r.text
    [log] = await _log_rows()
    assert log.api_key_id is None
    assert r.headers.get("x-request-id")


# =========================
# Errores
# =========================
async def test_missing_api_key(client, shop):
    r = await client.post("/avatar-chat", json={"avatar_id": shop["avatar_id"], "message": "hi"})
    assert r.status_code == 401
    assert r.json() == {"error": "Missing API key. Include x-api-key header."}


async def test_unknown_api_key(client, shop):
    r = await client.post("/avatar-chat", headers={"x-api-key": "pk_nope"}, json={"avatar_id": shop["avatar_id"], "message": "hi"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid or inactive API key"}


@pytest.mark.parametrize("overrides", [
    {"status": "revoked"},
    {"expires_at": datetime.now(timezone.utc) - timedelta(days=1)},
])
async def test_revoked_or_expired_key(client, factory, overrides):
    avatar = await factory.avatar()
    await factory.platform_key(avatar.user_id, **overrides)
    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": str(avatar.id), "message": "hi"})
    assert r.status_code == 401


async def test_key_without_chat_scope(client, factory):
    avatar = await factory.avatar()
    await factory.platform_key(avatar.user_id, scopes=["products"])
    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": str(avatar.id), "message": "hi"})
    assert r.status_code == 403
    assert r.json() == {"error": "API key does not have chat permission"}


async def test_key_restricted_to_other_avatar(client, factory):
    avatar = await factory.avatar()
    await factory.platform_key(avatar.user_id, avatar_id=new_id())
    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": str(avatar.id), "message": "hi"})
    assert r.status_code == 403
    assert r.json() == {"error": "API key does not have access to this avatar"}


async def test_test_mode_requires_bearer(client, shop):
    r = await client.post("/avatar-chat", headers={"x-api-key": "test-mode"}, json={"avatar_id": shop["avatar_id"], "message": "hi"})
    assert r.status_code == 401
    assert r.json() == {"error": "Test mode requires authorization header"}


async def test_test_mode_rejects_bad_token(client, shop):
    r = await client.post(
        "/avatar-chat",
        headers={"x-api-key": "test-mode", "Authorization": "Bearer not.a.jwt"},
        json={"avatar_id": shop["avatar_id"], "message": "hi"},
    )
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid session token"}


async def test_missing_fields(client, shop):
    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": shop["avatar_id"]})
    assert r.status_code == 400
    assert r.json() == {"error": "Missing required fields: avatar_id and message"}


async def test_invalid_message_type(client, shop):
    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={
        "avatar_id": shop["avatar_id"], "message": "hi", "message_type": "hologram",
    })
    assert r.status_code == 400
    assert r.json()["error"].startswith("Invalid request: message_type")


async def test_unknown_avatar(client, shop):
    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": new_id(), "message": "hi"})
    assert r.status_code == 404
    assert r.json() == {"error": "Avatar not found"}


async def test_trashed_avatar_is_not_found(client, factory):
    avatar = await factory.avatar(deleted_at=datetime.now(timezone.utc))
    await factory.platform_key(avatar.user_id)
    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": str(avatar.id), "message": "hi"})
    assert r.status_code == 404


async def test_missing_openai_key(client, factory, fake_llm, llm):
    avatar = await factory.avatar()
    await factory.platform_key(avatar.user_id)
    model = fake_llm(llm.assistant("unused"))
    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": str(avatar.id), "message": "hi"})
    assert r.status_code == 400
    assert r.json() == {"error": "No OpenAI API key found for user"}
    assert model.requests == []


async def test_upstream_error_is_500(client, shop, fake_llm):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(429, request=request, json={"error": {"message": "Rate limit reached"}})
    fake_llm(openai.RateLimitError("Rate limit reached", response=response, body={"error": {"message": "Rate limit reached"}}))

    r = await client.post("/avatar-chat", headers=KEY_HEADERS, json={"avatar_id": shop["avatar_id"], "message": "hi"})

    assert r.status_code == 500
    assert r.json() == {"error": "OpenAI API error: Rate limit reached"}


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
