"""Tests for the OpenAI-backed generator's failure path and message mapping."""

import asyncio

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from roundtable.errors import GenerationFailure
from roundtable.llm import OpenAIGenerator, get_openai_chat, to_langchain_messages


def test_role_mapping():
    converted = to_langchain_messages(
        [
            {"role": "system", "content": "rules"},
            {"role": "assistant", "content": "earlier reply"},
            {"role": "user", "content": "question"},
            {"content": "no role"},
        ]
    )
    assert [type(m) for m in converted] == [SystemMessage, AIMessage, HumanMessage, HumanMessage]
    assert converted[0].content == "rules"


def test_missing_api_key_raises_generation_failure(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_openai_chat.cache_clear()
    try:
        with pytest.raises(GenerationFailure):
            asyncio.run(OpenAIGenerator().generate_text("hello"))
    finally:
        get_openai_chat.cache_clear()
