from typing import Any

import pytest

from dietcoach.services import llm
from dietcoach.services.llm import ToolExchange, ToolInvocation, gemini_schema, parse_llm_json
from dietcoach.services.tools import TOOLS


def test_parse_llm_json_valid() -> None:
    payload = parse_llm_json('{"foods":[{"name":"apple"}],"confidence":"high"}')
    assert payload["confidence"] == "high"


def test_parse_llm_json_embedded_in_prose() -> None:
    payload = parse_llm_json('Sure! Here it is: {"no_food": true} Hope that helps.')
    assert payload == {"no_food": True}


def test_parse_llm_json_malformed_raises() -> None:
    with pytest.raises(ValueError):
        parse_llm_json('{"answer":"bad",}')


def test_unparseable_tool_arguments_are_kept_for_validation() -> None:
    assert llm._parse_arguments('{"weight": 80}') == {"weight": 80}
    assert llm._parse_arguments(None) == {}
    assert "_unparsed" in llm._parse_arguments("weight=80")


def test_gemini_schema_inlines_refs_and_nullables() -> None:
    schema = gemini_schema(TOOLS["confirm_food"].schema()["parameters"])
    assert schema["type"] == "object"
    item = schema["properties"]["items"]["items"]
    assert item["type"] == "object"
    assert "calories" in item["properties"]
    assert schema["properties"]["meal_type"]["nullable"] is True
    assert "$defs" not in str(schema)


def test_openai_generate_parses_tool_calls(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_post(provider, model, url, payload, headers=None):
        captured.update({"url": url, "payload": payload, "headers": headers})
        return {
            "choices": [
                {
                    "message": {
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_abc",
                                "type": "function",
                                "function": {"name": "log_weight", "arguments": '{"weight": 81.2, "unit": "kg"}'},
                            }
                        ],
                    }
                }
            ],
            "usage": {"prompt_tokens": 120, "completion_tokens": 12, "total_tokens": 132},
        }

    monkeypatch.setattr(llm, "post_with_retries", fake_post)
    text, calls, usage = llm._openai_generate(
        "gpt-4.1-mini",
        "sk-test",
        "system",
        [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        "I weigh 81.2kg",
        [TOOLS["log_weight"].schema()],
        None,
    )

    assert text == ""
    assert calls == [ToolInvocation(id="call_abc", name="log_weight", arguments={"weight": 81.2, "unit": "kg"})]
    assert usage["total_tokens"] == 132
    assert captured["url"].endswith("/chat/completions")
    assert captured["headers"] == {"Authorization": "Bearer sk-test"}
    assert [message["role"] for message in captured["payload"]["messages"]] == ["system", "user", "assistant", "user"]
    assert captured["payload"]["tools"][0]["function"]["name"] == "log_weight"


def test_openai_follow_up_replays_tool_results(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_post(provider, model, url, payload, headers=None):
        captured["payload"] = payload
        return {"choices": [{"message": {"content": "Logged 81.2 kg."}}]}

    monkeypatch.setattr(llm, "post_with_retries", fake_post)
    call = ToolInvocation(id="call_abc", name="log_weight", arguments={"weight": 81.2})
    text, calls, _ = llm._openai_generate(
        "gpt-4.1-mini",
        "sk-test",
        "system",
        [],
        "I weigh 81.2kg",
        [],
        ToolExchange(assistant_text="", calls=[call], results={"call_abc": {"status": "committed"}}),
    )

    assert text == "Logged 81.2 kg."
    assert calls == []
    messages = captured["payload"]["messages"]
    assert "tools" not in captured["payload"]
    assert messages[-2]["tool_calls"][0]["id"] == "call_abc"
    assert messages[-1] == {"role": "tool", "tool_call_id": "call_abc", "content": '{"status": "committed"}'}


def test_gemini_generate_collects_text_and_function_calls(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(provider, model, url, payload, headers=None):
        assert url.endswith("/models/gemini-2.0-flash:generateContent")
        assert payload["tools"][0]["functionDeclarations"][0]["name"] == "show_progress"
        return {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "Let me check. "},
                            {"functionCall": {"name": "show_progress", "args": {}}},
                        ]
                    }
                }
            ],
            "usageMetadata": {"promptTokenCount": 40, "candidatesTokenCount": 5},
        }

    monkeypatch.setattr(llm, "post_with_retries", fake_post)
    text, calls, usage = llm._gemini_generate(
        "gemini-2.0-flash", "key", "system", [], "how am I doing", [TOOLS["show_progress"].schema()], None
    )
    assert text == "Let me check."
    assert [call.name for call in calls] == ["show_progress"]
    assert usage == {"prompt_tokens": 40, "completion_tokens": 5, "total_tokens": 45}


def test_real_client_records_usage(create_user, db_session, monkeypatch: pytest.MonkeyPatch) -> None:
    user = create_user()

    def fake_post(provider, model, url, payload, headers=None):
        return {
            "choices": [{"message": {"content": "Hi Sam!"}}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13},
        }

    monkeypatch.setattr(llm, "post_with_retries", fake_post)
    client = llm.RealLLMClient()
    result = client.generate(
        db_session, user.id, thread_id="thr_x", system_prompt="s", user_message="hi", tools=[]
    )

    assert result.text == "Hi Sam!"
    stat = db_session.query(llm.ModelUsageStat).filter(llm.ModelUsageStat.user_id == user.id).one()
    assert stat.request_count == 1
    assert stat.total_tokens == 13
    assert client.create_thread(db_session, user.id).startswith("thr_")
