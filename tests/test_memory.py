"""Tests for conversation memory: tracking, summaries and JSON extraction."""

import asyncio

import pytest

from roundtable.errors import MalformedAnalysis
from roundtable.memory import FIRST_SCENE, ConversationMemory, parse_json
from roundtable.messages import Message, system_message
from tests.conftest import FailingGenerator, FakeGenerator, TimeoutGenerator


def feed(memory, texts, sender="A"):
    async def _run():
        for text in texts:
            await memory.add_message(Message(sender=sender, text=text))

    asyncio.run(_run())


class TestJsonExtraction:
    def test_strips_code_fences(self):
        assert parse_json('```json\n{"points": ["a"]}\n```') == {"points": ["a"]}

    def test_falls_back_to_outer_braces(self):
        assert parse_json('Sure! {"points": [], "analogies": ["x"]} Hope that helps.') == {
            "points": [],
            "analogies": ["x"],
        }

    def test_raises_on_prose(self):
        with pytest.raises(MalformedAnalysis):
            parse_json("no structure here")


class TestTracking:
    def test_points_and_analogies_are_recorded(self):
        memory = ConversationMemory(FakeGenerator())
        feed(memory, ["Cities need more trees."])
        assert memory.covered_points == {"city design"}
        assert memory.analogies_used == {"a river"}

    def test_malformed_analysis_records_fallback_tag(self):
        memory = ConversationMemory(FakeGenerator(analysis="I cannot answer in JSON today"))
        feed(memory, ["Parking minimums should be abolished everywhere."])
        assert memory.covered_points == {"Message: Parking minimums should be abo..."}

    def test_generation_failure_leaves_tags_untouched(self):
        memory = ConversationMemory(FailingGenerator())
        feed(memory, ["Anything at all."])
        assert memory.covered_points == set()
        assert len(memory.history) == 1

    def test_unexpected_error_is_contained(self):
        memory = ConversationMemory(TimeoutGenerator(), summary_interval=1)
        feed(memory, ["Anything at all."])
        assert len(memory.history) == 1
        assert memory.summaries[0].summary == "Error generating summary"
        assert asyncio.run(memory.analyze_themes()) == ""


class TestSummaries:
    def test_summary_every_interval(self):
        memory = ConversationMemory(FakeGenerator(), summary_interval=5)
        feed(memory, [f"Message {i}." for i in range(4)])
        assert memory.summaries == []
        feed(memory, ["Message 4."])
        assert len(memory.summaries) == 1
        assert (memory.summaries[0].start_index, memory.summaries[0].end_index) == (0, 4)
        assert memory.last_summary_index == 5

    def test_failed_summary_uses_placeholder(self):
        memory = ConversationMemory(FailingGenerator(), summary_interval=2)
        feed(memory, ["One.", "Two."])
        assert memory.summaries[0].summary == "Error generating summary"

    def test_empty_history_is_first_scene(self):
        memory = ConversationMemory(FakeGenerator())
        history = asyncio.run(memory.get_contextual_history())
        assert history.recent_messages == FIRST_SCENE

    def test_recent_summary_ignores_system_and_backchannels(self):
        memory = ConversationMemory(FailingGenerator())
        memory.load(
            [
                Message(sender="A", text="Hello."),
                system_message("A phase started."),
                Message(sender="B", text="B is nodding", is_backchannel=True),
                Message(sender="B", text="Hi there."),
            ]
        )
        history = asyncio.run(memory.get_contextual_history())
        # generation failed, so the raw lines come back
        assert history.recent_messages == "A: Hello.\nB: Hi there."
