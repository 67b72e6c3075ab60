"""Pytest configuration and fixtures."""

from __future__ import annotations

import random
from typing import Any, Dict, List, Sequence

import pytest

from roundtable.agents import PersonaAgent
from roundtable.errors import GenerationFailure
from roundtable.manager import ConversationManager


class FakeGenerator:
    """Scripted TextGenerator: numbered sentences, canned JSON for analysis calls."""

    def __init__(self, analysis: str = '{"points": ["city design"], "analogies": ["a river"]}') -> None:
        self.analysis = analysis
        self.prompts: List[str] = []
        self.count = 0

    async def generate_text(self, prompt: str, **options: Any) -> str:
        self.prompts.append(prompt)
        if options.get("request_json"):
            return self.analysis
        self.count += 1
        return f"Point {self.count} about walkable neighborhoods."

    async def chat_completion(self, messages: Sequence[Dict[str, str]], **options: Any) -> str:
        return await self.generate_text("\n".join(m["content"] for m in messages), **options)


class FailingGenerator:
    """Every call fails the way an unreachable model would."""

    async def generate_text(self, prompt: str, **options: Any) -> str:
        raise GenerationFailure("model unavailable")

    async def chat_completion(self, messages: Sequence[Dict[str, str]], **options: Any) -> str:
        raise GenerationFailure("model unavailable")


class TimeoutGenerator(FakeGenerator):
    """Raises something other than GenerationFailure, like a dropped socket."""

    async def generate_text(self, prompt: str, **options: Any) -> str:
        raise TimeoutError("read timed out")


class FixedRandom(random.Random):
    """Random whose ``random()`` always returns the same value."""

    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def make_manager(generator, rng):
    """Build a manager over plain personas named in ``names``."""

    def _make(names=("A", "B", "C"), **kwargs) -> ConversationManager:
        personas = [PersonaAgent(name=n, personality="thoughtful", generator=generator) for n in names]
        kwargs.setdefault("rng", rng)
        return ConversationManager(personas, generator, **kwargs)

    return _make
