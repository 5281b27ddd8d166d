import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Union

from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.config import settings
from chatbot_api.core.logging_utils import get_logger
from chatbot_api.middlewares.auth import AuthContext
from chatbot_api.schemas.chat import ChatRequest
from chatbot_api.services import context as context_service
from chatbot_api.services.api_keys import SCOPE_CHAT
from chatbot_api.services.emitter import build_chat_response, record_api_request
from chatbot_api.services.images import inject_images
from chatbot_api.services.llm import (
    assistant_message_dict, create_chat_client, create_completion, max_tokens_for, normalize_tool_calls,
)
from chatbot_api.services.pricing_guard import build_price_escalation_reply, should_short_circuit
from chatbot_api.services.prompt import build_system_prompt
from chatbot_api.services.tools import TOOL_DEFINITIONS, ToolExecutor

logger = get_logger("chatbot_api.orchestrator")

CHAT_ENDPOINT = "avatar-chat"

LOOP_EXHAUSTED_REPLY = (
    "Sorry, I couldn't put together a complete answer this time. "
    "Could you rephrase your question or tell me a bit more about what you're looking for?"
)

MEDIA_LABELS = {
    "image": "[Image received]",
    "audio": "[Audio message received]",
    "video": "[Video received]",
    "document": "[Document received]",
    "location": "[Location shared]",
    "sticker": "[Sticker received]",
}


@dataclass
class ToolLoopResult:
    reply: str
    rounds: int
    exhausted: bool


async def run_tool_loop(
    client,
    messages: List[Dict[str, Any]],
    executor: ToolExecutor,
    *,
    model: str,
    max_tokens: int,
    temperature: float,
    max_rounds: int,
) -> ToolLoopResult:
    """modelo -> (tool_calls? ejecutar y reenviar) -> ... -> respuesta sin tool_calls.

    Como máximo `max_rounds` rondas de tools; si el modelo sigue pidiendo tools
    después de eso, se corta con una respuesta de fallback. `messages` se extiende en el lugar.
    """
    rounds = 0
    while True:
        message = await create_completion(
            client,
            model=model,
            messages=messages,
            tools=TOOL_DEFINITIONS,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        tool_calls = normalize_tool_calls(message)
        if not tool_calls:
            return ToolLoopResult(reply=(message.content or "").strip(), rounds=rounds, exhausted=False)

        if rounds >= max_rounds:
            logger.warning("Tool loop exhausted", extra={
                "rounds": rounds,
                "pending_tools": [tc["function"]["name"] for tc in tool_calls],
            })
            return ToolLoopResult(reply=LOOP_EXHAUSTED_REPLY, rounds=rounds, exhausted=True)

        messages.append(assistant_message_dict(message))
        # secuencial: cada respuesta va pegada a su tool_call_id
        for tc in tool_calls:
            result = await executor.execute(tc["function"]["name"], tc["function"]["arguments"])
            messages.append({
                "role": "tool",
                "tool_call_id": tc["id"],
                "content": json.dumps(result, default=str, ensure_ascii=False),
            })
        rounds += 1


def price_check_text(body: ChatRequest) -> str:
    parts = [body.message or ""]
    if body.media and body.media.caption:
        parts.append(body.media.caption)
    return " ".join(p for p in parts if p)


def build_user_content(body: ChatRequest) -> Union[str, List[Dict[str, Any]]]:
    """Contenido del mensaje del usuario; una imagen con URL va como parte image_url."""
    text = body.message or ""
    media = body.media
    if body.message_type == "text" or media is None:
        return text

    if body.message_type == "image" and media.url:
        caption = f"\n\nImage caption: {media.caption}" if media.caption else ""
        return [
            {"type": "text", "text": f"{text}{caption}".strip() or "The customer sent an image."},
            {"type": "image_url", "image_url": {"url": media.url}},
        ]

    label = MEDIA_LABELS.get(body.message_type, "[Media received]")
    lines = [label]
    if media.caption:
        lines.append(f"Caption: {media.caption}")
    if text:
        lines.append(text)
    return "\n".join(lines)


def history_messages(body: ChatRequest, max_turns: int) -> List[Dict[str, Any]]:
    turns = body.conversation_history[-max_turns:] if max_turns > 0 else []
    return [{"role": t.role, "content": t.content} for t in turns]


async def handle_chat_turn(
    session: AsyncSession,
    auth: AuthContext,
    body: ChatRequest,
    *,
    client_factory: Callable[[str], Any] = create_chat_client,
) -> Dict[str, Any]:
    started = time.perf_counter()
    auth.require_scope(SCOPE_CHAT, "API key does not have chat permission")
    auth.require_avatar(body.avatar_id)

    avatar = await context_service.get_avatar(session, body.avatar_id, auth.user_id)
    avatar_id = str(avatar.id)
    model = avatar.fine_tuned_model_id or body.model or settings.default_chat_model
    logger.info("Chat turn started", extra={
        "avatar_id": avatar_id,
        "message_type": body.message_type,
        "history_turns": len(body.conversation_history),
        "test_mode": auth.test_mode,
    })

    # precios ocultos + pregunta de precio: respuesta fija, el modelo no se llama
    if should_short_circuit(avatar, price_check_text(body)):
        reply = build_price_escalation_reply(avatar, settings.price_escalation_delimiter)
        await record_api_request(session, api_key_id=auth.api_key_id, user_id=auth.user_id, endpoint=CHAT_ENDPOINT)
        logger.info("Price query escalated", extra={"avatar_id": avatar_id})
        return build_chat_response(
            avatar_id=avatar_id,
            message=reply,
            model=model,
            debug={"price_escalation": True, "model_called": False},
        )

    ctx = await context_service.fetch_context(
        session, avatar, body.message or "", prompt_version_id=body.prompt_version_id,
    )
    api_key = await context_service.get_tenant_openai_key(session, auth.user_id)

    system_prompt = build_system_prompt(avatar, ctx.profile, ctx.rag_chunks, ctx.memories)
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    messages.extend(history_messages(body, settings.history_max_turns))
    messages.append({"role": "user", "content": build_user_content(body)})

    executor = ToolExecutor(session, avatar)
    async with client_factory(api_key) as client:
        loop = await run_tool_loop(
            client,
            messages,
            executor,
            model=model,
            max_tokens=max_tokens_for(model),
            temperature=settings.chat_temperature,
            max_rounds=settings.max_tool_rounds,
        )

    # el fallback no lleva imágenes
    if loop.exhausted:
        reply, injected = loop.reply, []
    else:
        reply, injected = inject_images(loop.reply, executor.images)

    debug: Dict[str, Any] = dict(executor.last_debug)
    debug.update({
        "tool_rounds": loop.rounds,
        "loop_exhausted": loop.exhausted,
        "images_injected": len(injected),
        "prompt_version": ctx.profile.version_number,
        "prompt_fallback": ctx.profile.is_fallback,
    })

    await record_api_request(session, api_key_id=auth.api_key_id, user_id=auth.user_id, endpoint=CHAT_ENDPOINT)
    logger.info("Chat turn completed", extra={
        "avatar_id": avatar_id,
        "model": model,
        "tool_calls": len(executor.calls_log),
        "tool_rounds": loop.rounds,
        "loop_exhausted": loop.exhausted,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
    })
    return build_chat_response(
        avatar_id=avatar_id,
        message=reply,
        model=model,
        knowledge_chunks_used=len(ctx.rag_chunks),
        memories_accessed=len(ctx.memories),
        tool_calls_log=executor.calls_log,
        images_collected=len(executor.images),
        debug=debug,
    )
