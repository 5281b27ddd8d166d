import json

import pytest

from chatbot_api.core.errors import UpstreamError
from chatbot_api.services.orchestrator import LOOP_EXHAUSTED_REPLY, run_tool_loop
from chatbot_api.services.tools import TOOL_NAMES, ToolExecutor


async def _run(llm_client, executor, max_rounds=5):
    messages = [{"role": "system", "content": "sys"}, {"role": "user", "content": "do you have phones?"}]
    result = await run_tool_loop(
        llm_client, messages, executor,
        model="gpt-4o-mini", max_tokens=2000, temperature=0.7, max_rounds=max_rounds,
    )
    return result, messages


def test_all_tools_are_declared():
    assert TOOL_NAMES == [
        "browse_full_catalog", "search_products", "get_product_by_id", "list_product_categories",
        "get_products_by_category", "get_active_promotions", "validate_promo_code",
    ]


async def test_one_tool_call_then_plain_reply(factory, session, llm):
    avatar = await factory.avatar()
    await factory.product(avatar, product_name="iPhone 15", category="Phones", price=3000)
    client = llm.client([
        llm.assistant(tool_calls=[llm.tool_call("browse_full_catalog", '{"include_out_of_stock": false}')]),
        llm.assistant("Yes! We have the iPhone 15."),
    ])
    executor = ToolExecutor(session, avatar)

    result, messages = await _run(client, executor)

    assert result.reply == "Yes! We have the iPhone 15."
    assert result.rounds == 1
    assert result.exhausted is False
    assert len(executor.calls_log) == 1
    assert executor.calls_log[0]["name"] == "browse_full_catalog"
    assert executor.calls_log[0]["success"] is True
    assert len(client.requests) == 2

    # el resultado vuelve como mensaje 'tool' con el mismo tool_call_id
    assistant_msg, tool_msg = messages[2], messages[3]
    assert assistant_msg["tool_calls"][0]["id"] == "call_browse_full_catalog"
    assert tool_msg["role"] == "tool"
    assert tool_msg["tool_call_id"] == "call_browse_full_catalog"
    payload = json.loads(tool_msg["content"])
    [phone] = payload["products_by_category"]["Phones"]
    assert phone["current_price"] == 3000
    assert "price_hidden" not in phone


async def test_loop_is_bounded_with_fallback_reply(factory, session, llm):
    avatar = await factory.avatar()
    client = llm.client([llm.assistant(tool_calls=[llm.tool_call("list_product_categories")])])
    executor = ToolExecutor(session, avatar)

    result, _ = await _run(client, executor, max_rounds=2)

    assert result.exhausted is True
    assert result.reply == LOOP_EXHAUSTED_REPLY
    assert result.rounds == 2
    assert len(executor.calls_log) == 2
    assert len(client.requests) == 3


async def test_unknown_tool_is_reported_back_to_model(factory, session, llm):
    avatar = await factory.avatar()
    client = llm.client([
        llm.assistant(tool_calls=[llm.tool_call("delete_everything")]),
        llm.assistant("Sorry, I can't do that."),
    ])
    executor = ToolExecutor(session, avatar)

    result, messages = await _run(client, executor)

    assert result.reply == "Sorry, I can't do that."
    assert json.loads(messages[3]["content"]) == {"success": False, "error": "Unknown function: delete_everything"}
    assert executor.calls_log[0]["success"] is False


async def test_malformed_arguments_become_tool_error(factory, session, llm):
    avatar = await factory.avatar()
    client = llm.client([
        llm.assistant(tool_calls=[llm.tool_call("search_products", "{not json")]),
        llm.assistant("Could you tell me the product name?"),
    ])
    executor = ToolExecutor(session, avatar)

    result, messages = await _run(client, executor)

    error = json.loads(messages[3]["content"])
    assert error["success"] is False
    assert error["error"].startswith("Invalid tool arguments")
    assert result.reply == "Could you tell me the product name?"


async def test_several_tool_calls_in_one_round(factory, session, llm):
    avatar = await factory.avatar()
    await factory.promotion(avatar, title="Mega Sale", promo_code="MEGA", banner_image_url="https://cdn.example.com/mega.jpg")
    client = llm.client([
        llm.assistant(tool_calls=[
            llm.tool_call("get_active_promotions", "{}", call_id="a"),
            llm.tool_call("validate_promo_code", '{"promo_code": "mega"}', call_id="b"),
        ]),
        llm.assistant("Mega Sale is on!"),
    ])
    executor = ToolExecutor(session, avatar)

    result, messages = await _run(client, executor)

    assert [m["tool_call_id"] for m in messages if m["role"] == "tool"] == ["a", "b"]
    assert json.loads(messages[4]["content"])["valid"] is True
    assert len(executor.images) == 1
    assert executor.last_debug["tool"] == "validate_promo_code"
    assert result.rounds == 1


async def test_upstream_failure_is_raised(factory, session, llm):
    import httpx
    import openai

    avatar = await factory.avatar()
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(401, request=request, json={"error": {"message": "Incorrect API key provided"}})
    failure = openai.AuthenticationError("Incorrect API key provided", response=response, body={"error": {"message": "Incorrect API key provided"}})
    client = llm.client([failure])

    with pytest.raises(UpstreamError) as exc:
        await _run(client, ToolExecutor(session, avatar))
    assert exc.value.message == "OpenAI API error: Incorrect API key provided"
    assert exc.value.status_code == 500
