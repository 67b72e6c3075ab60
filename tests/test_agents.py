"""Tests for persona reply generation, derailer settings and proactive cut-ins."""

import asyncio
import random

from roundtable.agents import FALLBACK_REPLY, PersonaAgent, post_process
from roundtable.backchannel import InterruptionDecision
from roundtable.manager import ConversationManager
from roundtable.states import DerailMode, SessionStatus
from tests.conftest import FailingGenerator, FakeGenerator, FixedRandom, TimeoutGenerator


class TestPostProcess:
    def test_drops_name_label_and_caps_sentences(self):
        assert post_process("Ana: One. Two! Three? Four.") == "One. Two! Three?"

    def test_keeps_text_without_sentence_punctuation(self):
        assert post_process("just a fragment") == "just a fragment"


class TestReply:
    def test_interruption_cuts_reply_at_rolled_fraction(self):
        persona = PersonaAgent(name="Ana", generator=FakeGenerator())
        decision = InterruptionDecision(True, "excited")
        result = asyncio.run(persona.reply("Hi", "", "Ben", FixedRandom(0.5), interruption=decision))

        full = "Point 1 about walkable neighborhoods."
        assert result.full_text == full
        assert result.interrupted
        assert result.text == full[: len(full) // 2].rstrip()

    def test_failure_returns_fallback(self):
        persona = PersonaAgent(name="Ana", generator=FailingGenerator())
        result = asyncio.run(persona.reply("Hi", "", "Ben", random.Random(0)))
        assert result.text == FALLBACK_REPLY
        assert not result.interrupted

    def test_human_proxy_requires_input(self):
        generator = FakeGenerator()
        persona = PersonaAgent(name="Sam", is_human_proxy=True, generator=generator)
        result = asyncio.run(persona.reply("Hi", "", "Ben", random.Random(0)))
        assert result.requires_human
        assert generator.prompts == []

    def test_prompt_mentions_next_speaker_and_cut_in(self):
        generator = FakeGenerator()
        persona = PersonaAgent(name="Ana", personality="witty", generator=generator)
        asyncio.run(persona.reply("Hi", "Topic: parks", "Ben", random.Random(0), cut_in_vibe="amused"))
        prompt = generator.prompts[-1]
        assert "You are Ana, a witty person." in prompt
        assert "Ben will respond" in prompt
        assert "interruption with a amused vibe" in prompt


class TestDerailerSettings:
    def test_invalid_mode_falls_back_to_drift(self):
        persona = PersonaAgent(name="Dee")
        persona.set_as_derailer(True, "sideways")
        assert persona.derailer.mode == DerailMode.DRIFT
        assert not persona.derailer.random_mode

    def test_turn_bounds(self):
        persona = PersonaAgent(name="Dee")
        persona.set_as_derailer(True, "question", min_turns=0, max_turns=None)
        assert persona.derailer.min_turns == 1
        assert persona.derailer.max_turns == 5
        persona.set_as_derailer(True, "question", min_turns=4, max_turns=2)
        assert (persona.derailer.min_turns, persona.derailer.max_turns) == (4, 4)

    def test_random_mode_rerolls_concrete_mode(self):
        persona = PersonaAgent(name="Dee")
        persona.set_as_derailer(True, "random")
        rng = random.Random(5)
        modes = {persona.roll_derail_mode(rng) for _ in range(30)}
        assert DerailMode.RANDOM not in modes
        assert len(modes) > 1

    def test_derail_failure_uses_canned_text(self):
        persona = PersonaAgent(name="Dee", generator=FailingGenerator())
        assert asyncio.run(persona.generate_derail("x", DerailMode.DRIFT)) == "That reminds me of something completely different..."
        assert asyncio.run(persona.generate_derail("x", DerailMode.EMOTIONAL)) == "I have an unusual perspective on that..."

    def test_from_dict_accepts_camel_case(self):
        persona = PersonaAgent.from_dict(
            {
                "name": "Dee",
                "isHumanProxy": False,
                "fillerWordsFrequency": "often",
                "derailer": {"enabled": True, "mode": "extend", "minTurns": 2, "maxTurns": 3},
                "proactive": {"triggerWords": ["budget"], "threshold": 1.0},
            }
        )
        assert persona.filler_words_frequency == "often"
        assert persona.derailer.mode == DerailMode.EXTEND
        assert (persona.derailer.min_turns, persona.derailer.max_turns) == (2, 3)
        assert persona.proactive.enabled
        assert persona.should_react_proactively("What about the budget?", "", FixedRandom(0.5))
        assert not persona.should_react_proactively("Nice weather.", "", FixedRandom(0.5))


class TestUnexpectedGeneratorErrors:
    def test_reply_falls_back(self):
        persona = PersonaAgent(name="Ana", generator=TimeoutGenerator())
        result = asyncio.run(persona.reply("Hi", "", "Ben", random.Random(0)))
        assert result.text == FALLBACK_REPLY

    def test_derail_and_proactive_fall_back(self):
        persona = PersonaAgent(name="Dee", generator=TimeoutGenerator())
        assert asyncio.run(persona.generate_derail("x", DerailMode.QUESTION)) == "I have an unusual perspective on that..."
        assert asyncio.run(persona.generate_proactive("x"))

    def test_conversation_keeps_going(self):
        generator = TimeoutGenerator()
        personas = [PersonaAgent(name=n, generator=generator) for n in ("A", "B")]
        manager = ConversationManager(personas, generator, max_turns=3, rng=random.Random(0))
        status = asyncio.run(manager.start(initiator="A", starting_message="Hello."))

        assert status == SessionStatus.COMPLETED
        assert [m.text for m in manager.conversation[1:]] == [FALLBACK_REPLY, FALLBACK_REPLY]
        assert len(manager.memory.history) == 3
