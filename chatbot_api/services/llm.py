from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from chatbot_api.core.errors import UpstreamError
from chatbot_api.core.logging_utils import get_logger

logger = get_logger("chatbot_api.llm")


def create_chat_client(api_key: str) -> AsyncOpenAI:
    # un cliente por request: la key es del tenant; quien llama lo cierra con `async with`
    return AsyncOpenAI(api_key=api_key)


def max_tokens_for(model: str) -> int:
    return 2000 if "gpt-4o-mini" in (model or "") else 1000


def normalize_tool_calls(message: Any) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for tc in (getattr(message, "tool_calls", None) or []):
        fn = getattr(tc, "function", None)
        if fn is None:
            continue
        out.append({
            "id": tc.id,
            "type": getattr(tc, "type", None) or "function",
            "function": {"name": fn.name, "arguments": fn.arguments or ""},
        })
    return out


def assistant_message_dict(message: Any) -> Dict[str, Any]:
    """Mensaje del asistente en forma de dict, listo para volver a mandarlo al modelo."""
    data: Dict[str, Any] = {"role": "assistant", "content": getattr(message, "content", None)}
    tool_calls = normalize_tool_calls(message)
    if tool_calls:
        data["tool_calls"] = tool_calls
    return data


async def create_completion(
    client: AsyncOpenAI,
    *,
    model: str,
    messages: List[Dict[str, Any]],
    tools: Optional[List[Dict[str, Any]]] = None,
    max_tokens: int,
    temperature: float,
):
    """Una llamada a chat.completions; los errores del proveedor salen como UpstreamError."""
    kwargs: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    if tools:
        kwargs["tools"] = tools
        kwargs["tool_choice"] = "auto"
    try:
        response = await client.chat.completions.create(**kwargs)
    except openai.APIStatusError as e:
        message = _error_message(e)
        logger.error("OpenAI API error", extra={"status_code": e.status_code, "error": message})
        raise UpstreamError(f"OpenAI API error: {message}")
    except openai.APIError as e:
        logger.error("OpenAI request failed", extra={"error": str(e)})
        raise UpstreamError(f"OpenAI API error: {e}")

    if not response.choices:
        raise UpstreamError("OpenAI API error: empty response")
    return response.choices[0].message


def _error_message(e: "openai.APIStatusError") -> str:
    body = e.body if isinstance(e.body, dict) else {}
    error = body.get("error") if isinstance(body.get("error"), dict) else body
    return (error or {}).get("message") or e.message or "Unknown error"
