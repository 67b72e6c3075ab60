from __future__ import annotations

import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from loguru import logger

from .backchannel import InterruptionDecision
from .errors import ConfigurationError
from .memory import FIRST_SCENE
from .states import CONCRETE_DERAIL_MODES, DerailMode, parse_enum


FALLBACK_REPLY = "Sorry, I couldn't generate a response."
FALLBACK_PROACTIVE = "Actually, I have something to add about that..."
FALLBACK_ATTRIBUTES = "This agent has unique qualities that enhance our conversation."

DERAIL_HINTS = {
    DerailMode.DRIFT: "Subtly shift the topic to something tangentially related.",
    DerailMode.EXTEND: "Build on the current topic but add a novel and unexpected perspective.",
    DerailMode.QUESTION: "Respond with a probing question that shifts focus to a different aspect of the topic.",
    DerailMode.EMOTIONAL: "Respond to the emotional subtext rather than the content, changing the conversation's emotional tone.",
}

_DERAIL_BRIEFS = {
    DerailMode.DRIFT: (
        "who likes to shift conversations in new directions",
        "subtly shifts the topic to something tangentially related but different",
        "Introduce a new angle or topic that's somewhat related but changes the direction",
        "Make your topic shift seem natural but noticeable.",
    ),
    DerailMode.EXTEND: (
        "who thinks outside the box",
        "extends the current topic in an unexpected or novel way",
        "Add a surprising perspective or angle to the current topic",
        "Make your extension interesting and somewhat unexpected.",
    ),
    DerailMode.QUESTION: (
        "who likes to ask questions",
        "asks a probing question that shifts focus to a different aspect of the topic",
        "Ask a question that's related to the current topic but not obvious",
        "Make your question interesting and thought-provoking.",
    ),
    DerailMode.EMOTIONAL: (
        "who likes to express emotions",
        "expresses an emotion related to the current topic",
        "Express an emotion that's relevant to the current topic",
        "Make your emotional response feel genuine and natural.",
    ),
}

_NAME_PREFIX = re.compile(r"^[^:.!?\n]{1,40}:\s*")
_SENTENCE = re.compile(r"[^.!?]+[.!?]+")


def post_process(text: str) -> str:
    """Drop a leading ``Name:`` label and keep at most three sentences."""
    out = _NAME_PREFIX.sub("", (text or "").strip(), count=1)
    sentences = [s.strip() for s in _SENTENCE.findall(out)]
    if not sentences:
        return out.strip()
    return " ".join(sentences[:3]).strip()


@dataclass
class ProactiveSettings:
    enabled: bool = False
    trigger_words: set[str] = field(default_factory=set)
    topics: set[str] = field(default_factory=set)
    threshold: float = 0.3


@dataclass
class DerailerSettings:
    enabled: bool = False
    mode: DerailMode = DerailMode.DRIFT
    random_mode: bool = False
    threshold: float = 0.3
    min_turns: int = 3
    max_turns: int = 5


@dataclass
class ImpromptuTracker:
    active: bool = False
    turns_left: int = 0


@dataclass
class ReplyResult:
    text: str
    full_text: str = ""
    interrupted: bool = False
    requires_human: bool = False


class PersonaAgent:
    def __init__(
        self,
        name: str,
        personality: str = "",
        interaction_pattern: str = "Neutral",
        is_human_proxy: bool = False,
        custom_attributes: Optional[Dict[str, Any]] = None,
        role_description: str = "",
        filler_words_frequency: str = "none",
        generator: Any = None,
    ) -> None:
        if not name:
            raise ConfigurationError("persona name is required")
        self.name = name
        self.personality = personality or ""
        self.interaction_pattern = interaction_pattern or "Neutral"
        self.is_human_proxy = bool(is_human_proxy)
        self.custom_attributes = dict(custom_attributes or {})
        self.role_description = role_description or ""
        self.filler_words_frequency = filler_words_frequency or "none"
        self.generator = generator
        self.proactive = ProactiveSettings()
        self.derailer = DerailerSettings()
        self.impromptu = ImpromptuTracker()
        self._attribute_context: Optional[str] = None

    def __repr__(self) -> str:
        return f"PersonaAgent(name={self.name!r}, derailer={self.derailer.enabled}, proxy={self.is_human_proxy})"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], generator: Any = None) -> "PersonaAgent":
        agent = cls(
            name=data.get("name", ""),
            personality=data.get("personality", ""),
            interaction_pattern=data.get("interaction_pattern") or data.get("interactionPattern") or "Neutral",
            is_human_proxy=data.get("is_human_proxy", data.get("isHumanProxy", False)),
            custom_attributes=data.get("custom_attributes") or data.get("customAttributes"),
            role_description=data.get("role_description") or data.get("roleDescription") or "",
            filler_words_frequency=data.get("filler_words_frequency") or data.get("fillerWordsFrequency") or "none",
            generator=generator,
        )
        proactive = data.get("proactive") or {}
        if proactive or data.get("isProactive"):
            agent.set_proactive_settings(
                enabled=proactive.get("enabled", True),
                trigger_words=proactive.get("trigger_words") or proactive.get("triggerWords") or [],
                topics=proactive.get("topics") or proactive.get("proactiveTopics") or [],
                threshold=proactive.get("threshold"),
            )
        derailer = data.get("derailer") or {}
        if derailer or data.get("isDerailer"):
            agent.set_as_derailer(
                enable=derailer.get("enabled", True),
                mode=derailer.get("mode", "drift"),
                threshold=derailer.get("threshold"),
                min_turns=derailer.get("min_turns", derailer.get("minTurns")),
                max_turns=derailer.get("max_turns", derailer.get("maxTurns")),
            )
        return agent

    # -- configuration ----------------------------------------------------

    def set_proactive_settings(
        self,
        enabled: bool = True,
        trigger_words: Iterable[str] = (),
        topics: Iterable[str] = (),
        threshold: Optional[float] = None,
    ) -> None:
        self.proactive.enabled = bool(enabled)
        self.proactive.trigger_words = {w for w in trigger_words if w}
        self.proactive.topics = {t for t in topics if t}
        if threshold is not None:
            self.proactive.threshold = float(threshold)

    def set_as_derailer(
        self,
        enable: bool = True,
        mode: DerailMode | str = DerailMode.DRIFT,
        threshold: Optional[float] = None,
        min_turns: Optional[int] = None,
        max_turns: Optional[int] = None,
    ) -> None:
        settings = self.derailer
        settings.enabled = bool(enable)
        try:
            parsed = parse_enum(DerailMode, mode)
        except ConfigurationError as e:
            logger.warning(f"derail_mode_invalid | persona={self.name} | {e}; using drift")
            parsed = DerailMode.DRIFT
        settings.random_mode = parsed == DerailMode.RANDOM
        settings.mode = DerailMode.DRIFT if settings.random_mode else parsed
        if threshold is not None and 0 <= float(threshold) <= 1:
            settings.threshold = float(threshold)
        settings.min_turns = max(1, int(min_turns)) if min_turns is not None else 3
        default_max = max(5, settings.min_turns)
        settings.max_turns = max(settings.min_turns, int(max_turns)) if max_turns is not None else default_max
        logger.info(
            f"derailer_configured | persona={self.name} enabled={settings.enabled} "
            f"mode={'random' if settings.random_mode else settings.mode.value} threshold={settings.threshold} "
            f"turns={settings.min_turns}-{settings.max_turns}"
        )

    # -- derailing ----------------------------------------------------------

    def roll_derail_mode(self, rng: random.Random) -> DerailMode:
        """Concrete mode for a new phase; random-mode derailers re-roll every time."""
        if self.derailer.random_mode:
            self.derailer.mode = rng.choice(CONCRETE_DERAIL_MODES)
            logger.debug(f"derail_mode_rolled | persona={self.name} mode={self.derailer.mode.value}")
        return self.derailer.mode

    def pick_phase_turns(self, rng: random.Random) -> int:
        return rng.randint(self.derailer.min_turns, self.derailer.max_turns)

    def should_derail(self, rng: random.Random, threshold: Optional[float] = None) -> bool:
        if not self.derailer.enabled:
            return False
        return rng.random() < (self.derailer.threshold if threshold is None else threshold)

    async def generate_derail(self, message: str, mode: DerailMode) -> str:
        mode = mode if mode in _DERAIL_BRIEFS else DerailMode.DRIFT
        who, what, bullet, closing = _DERAIL_BRIEFS[mode]
        prompt = "\n\n".join(
            [
                f"You are {self.name}, a {self.personality} person {who}.",
                f'The current conversation is about: "{message}"',
                (
                    f"Generate a response that {what}. Your response should:\n"
                    "- Be brief (1-2 sentences)\n"
                    "- Sound natural and conversational\n"
                    f"- {bullet}\n"
                    f"- Stay true to your {self.personality} personality"
                ),
                closing,
            ]
        )
        try:
            return post_process(await self.generator.generate_text(prompt, max_tokens=120, temperature=0.9))
        except Exception as e:
            logger.error(f"derail_generation_failed | persona={self.name} mode={mode.value} | {e}")
            if mode == DerailMode.DRIFT:
                return "That reminds me of something completely different..."
            return "I have an unusual perspective on that..."

    def start_impromptu(self, turns: int) -> None:
        self.impromptu.active = True
        self.impromptu.turns_left = turns

    def end_impromptu(self) -> None:
        self.impromptu.active = False
        self.impromptu.turns_left = 0

    # -- proactive cut-ins --------------------------------------------------

    def should_react_proactively(self, message: str, context: str, rng: random.Random) -> bool:
        if not self.proactive.enabled or self.is_human_proxy:
            return False
        low_msg = (message or "").lower()
        low_ctx = (context or "").lower()
        triggered = any(w.lower() in low_msg for w in self.proactive.trigger_words)
        relevant = any(t.lower() in low_ctx for t in self.proactive.topics)
        return (triggered or relevant) and rng.random() < self.proactive.threshold

    async def generate_proactive(self, message: str) -> str:
        prompt = (
            f'You are {self.name}, a {self.personality} person in a casual conversation. You just heard: "{message}"\n\n'
            "Generate a quick, natural reaction - like you're cutting into the conversation because you have "
            "something to add. Your response should:\n"
            "- Be very brief (1-2 short sentences)\n"
            "- Sound like natural speech (use contractions, casual language)\n"
            '- Cut in naturally (e.g. "Wait", "Hey", "Oh", "Actually")\n'
            "- Skip formal acknowledgments of other speakers\n"
            f"- Stay true to your {self.personality} personality"
        )
        try:
            return post_process(await self.generator.generate_text(prompt, max_tokens=80, temperature=0.8))
        except Exception as e:
            logger.error(f"proactive_generation_failed | persona={self.name} | {e}")
            return FALLBACK_PROACTIVE

    # -- replies ------------------------------------------------------------

    async def attribute_context(self) -> str:
        if not self.custom_attributes:
            return ""
        if self._attribute_context is None:
            described = ", ".join(f"{k} is {v}" for k, v in self.custom_attributes.items() if k != "interactionOverride")
            prompt = (
                f"Given these attributes of a person - {described}. Generate a concise sentence that could be "
                "used in a conversation to reflect these attributes contextually, starting from you rather than I."
            )
            try:
                self._attribute_context = await self.generator.generate_text(prompt, max_tokens=75, temperature=0.7)
            except Exception as e:
                logger.error(f"attribute_context_failed | persona={self.name} | {e}")
                return FALLBACK_ATTRIBUTES
        return self._attribute_context

    async def build_prompt(
        self,
        last_message: str,
        context: str,
        next_speaker: str,
        cut_in_vibe: Optional[str] = None,
        is_starting: bool = False,
    ) -> str:
        identity = f"You are {self.name}, a {self.personality} person. {await self.attribute_context()}".strip()
        blocks = [identity]
        if self.role_description:
            blocks.append(f"Role: {self.role_description}")
        if is_starting and last_message and last_message != FIRST_SCENE:
            blocks.append(
                f"What happened in the last scene: {last_message}\n"
                "Briefly summarize what happened in the last scene and transition to the current context (use 1-2 sentences)."
            )
        if self.derailer.enabled and self.derailer.mode in DERAIL_HINTS:
            blocks.append(DERAIL_HINTS[self.derailer.mode])
        if context:
            blocks.append(context)
        if cut_in_vibe:
            blocks.append(
                f"Your response should be an interruption with a {cut_in_vibe} vibe, "
                "reacting to part of the previous incomplete message."
            )
        if not is_starting:
            blocks.append(f"Last message: {last_message}")
        style = (
            "Respond briefly (1-2 sentences), building on previous points without repeating them. "
            "Keep your response conversational and natural."
        )
        if self.filler_words_frequency and self.filler_words_frequency != "none":
            style += f" Use filler words ({self.filler_words_frequency})."
        blocks.append(f"{style} After you speak, {next_speaker} will respond.")
        return "\n\n".join(blocks)

    async def reply(
        self,
        last_message: str,
        context: str,
        next_speaker: str,
        rng: random.Random,
        interruption: Optional[InterruptionDecision] = None,
        cut_in_vibe: Optional[str] = None,
        is_starting: bool = False,
        **options: Any,
    ) -> ReplyResult:
        """Generate this persona's next line.

        ``interruption`` means the next speaker cuts this reply off, so the
        text is truncated between 25% and 75% of its length. ``cut_in_vibe``
        means this reply is itself the interruption.
        """
        if self.is_human_proxy:
            return ReplyResult(text="", requires_human=True)
        prompt = await self.build_prompt(last_message, context, next_speaker, cut_in_vibe, is_starting)
        opts = {"max_tokens": 150, "temperature": 0.8}
        opts.update(options)
        t0 = time.perf_counter()
        try:
            full = post_process(await self.generator.generate_text(prompt, **opts))
        except Exception as e:
            logger.error(f"llm_reply_failed | persona={self.name} | {e}")
            return ReplyResult(text=FALLBACK_REPLY, full_text=FALLBACK_REPLY)
        logger.info(f"llm_call | persona={self.name} dt={time.perf_counter() - t0:.2f}s")
        if not full:
            return ReplyResult(text=FALLBACK_REPLY, full_text=FALLBACK_REPLY)
        if interruption is not None and interruption.interrupt:
            cut = int(rng.uniform(0.25, 0.75) * len(full))
            partial = full[:cut].rstrip() or full[:1]
            return ReplyResult(text=partial, full_text=full, interrupted=True)
        return ReplyResult(text=full, full_text=full)
