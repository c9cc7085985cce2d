"""
Tests for prompt token estimation and response usage extraction.
"""

from types import SimpleNamespace

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_core.outputs import Generation, LLMResult

from tokenmeter.metering.estimation import count_tokens, extract_token_usage
from tokenmeter.metering.types import TokenUsage


def test_count_tokens_plain_string():
    assert count_tokens("abcd" * 10) == 10
    assert count_tokens("abcde") == 2
    assert count_tokens("") == 0
    assert count_tokens(None) == 0


def test_count_tokens_message_dicts():
    messages = [
        {"role": "system", "content": "a" * 40},
        {"role": "user", "content": "b" * 8, "name": "alice"},
    ]

    # 3 per message, 1 for the name, 3 priming, plus content
    assert count_tokens(messages) == (3 + 10) + (3 + 2 + 1) + 3


def test_count_tokens_messages_payload():
    payload = {"messages": [{"role": "user", "content": "x" * 12}]}

    assert count_tokens(payload) == 3 + 3 + 3


def test_count_tokens_langchain_messages():
    messages = [SystemMessage(content="s" * 4), HumanMessage(content="h" * 8)]

    assert count_tokens(messages) == (3 + 1) + (3 + 2) + 3


def test_count_tokens_content_parts():
    message = {
        "role": "user",
        "content": [
            {"type": "text", "text": "a" * 8},
            {"type": "text", "text": "b" * 8},
        ],
    }

    assert count_tokens([message]) == 3 + 4 + 3


def test_count_tokens_list_of_strings():
    assert count_tokens(["abcd", "efgh"]) == 2


def test_count_tokens_grows_with_prompt():
    short = count_tokens([{"role": "user", "content": "hi"}])
    long = count_tokens([{"role": "user", "content": "hi " * 100}])

    assert long > short


def test_count_tokens_unknown_object_never_raises():
    class Opaque:
        def __repr__(self):
            return "x" * 40

    assert count_tokens(Opaque()) > 0


def test_extract_from_langchain_usage_metadata():
    message = AIMessage(
        content="hello",
        usage_metadata={"input_tokens": 12, "output_tokens": 3, "total_tokens": 15},
    )

    assert extract_token_usage(message) == TokenUsage(12, 3, 15)


def test_extract_from_openai_usage_object():
    response = SimpleNamespace(usage=SimpleNamespace(prompt_tokens=20, completion_tokens=5, total_tokens=25))

    assert extract_token_usage(response) == TokenUsage(20, 5, 25)


def test_extract_from_usage_dict():
    response = {"usage": {"promptTokens": 7, "completionTokens": 2}}

    assert extract_token_usage(response) == TokenUsage(7, 2, 9)


def test_extract_from_response_metadata():
    message = AIMessage(
        content="hello",
        response_metadata={"token_usage": {"prompt_tokens": 30, "completion_tokens": 10, "total_tokens": 40}},
    )

    assert extract_token_usage(message) == TokenUsage(30, 10, 40)


def test_extract_from_llm_result():
    result = LLMResult(
        generations=[[Generation(text="hi")]],
        llm_output={"token_usage": {"prompt_tokens": 8, "completion_tokens": 4}, "model_name": "gpt-4.1"},
    )

    assert extract_token_usage(result) == TokenUsage(8, 4, 12)


@pytest.mark.parametrize("response", [
    "plain text",
    AIMessage(content="no usage"),
    {"choices": []},
    SimpleNamespace(usage=None),
    None,
])
def test_no_usage_returns_none(response):
    assert extract_token_usage(response) is None


def test_malformed_usage_returns_none():
    assert extract_token_usage({"usage": {"prompt_tokens": -3}}) is None
    assert extract_token_usage({"usage": {"prompt_tokens": "many"}}) is None
