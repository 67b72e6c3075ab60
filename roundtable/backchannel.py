from __future__ import annotations

import asyncio
import random
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger


FREQUENCY_PROBABILITY = {"always": 1.0, "sometimes": 0.5, "rarely": 0.2}

VIBE_EXAMPLES = {
    "amused": "smirking, chuckling quietly, eyes twinkling with mirth",
    "skeptical": "raising an eyebrow, crossing arms slightly, tilting head in doubt",
    "excited": "widening eyes, leaning forward eagerly",
    "supportive": "nodding encouragingly, offering a warm smile",
    "curious": "grinning broadly, eyes lighting up, gesturing animatedly",
    "concerned": "furrowing brow, lips pressing together, slight head shake",
    "empathetic": "nodding understanding, softening expression, leaning in slightly",
    "bored": "suppressing a yawn, eyes glazing over, fidgeting slightly",
    "surprised": "eyebrows shooting up, mouth forming an 'O', blinking rapidly",
    "confused": "squinting, tilting head, mouth slightly open in puzzlement",
    "impressed": "nodding approvingly, eyes widening, slight smile forming",
    "agreeable": "nodding thoughtfully, making affirming gestures",
    "neutral": "maintaining attentive posture, slight nod",
    "nodding": "tilting head slightly, giving a small nod",
}
DEFAULT_VIBE_EXAMPLE = "nodding attentively"

PARTY_VIBES = ("Supportive", "Agreeable", "Nodding")

MAX_BACKCHANNEL_WORDS = 10


@dataclass
class InterruptionDecision:
    interrupt: bool
    vibe: str = "neutral"


@dataclass
class BackchannelDecision:
    backchannel: bool
    vibe: str = "neutral"


@dataclass
class InterruptionRule:
    interrupter: str
    interrupted: str
    probability: float = 0.5
    vibe: str = "excited"


@dataclass
class BackchannelRule:
    speaker: str
    listener: str
    frequency: str = "sometimes"
    vibe: str = "neutral"
    probability: float = 1.0


def vibe_examples(vibe: str) -> List[str]:
    text = VIBE_EXAMPLES.get((vibe or "").lower(), DEFAULT_VIBE_EXAMPLE)
    return [e.strip() for e in text.split(",") if e.strip()]


def fallback_backchannel(name: str, vibe: str) -> str:
    return f"{name} is {vibe_examples(vibe)[0]}"


class RuleBook:
    """Interruption and back-channel rule tables.

    Interruptions are keyed by ``(interrupted, interrupter)``; back-channels
    by the reacting listener, each entry naming the speaker it reacts to.
    """

    def __init__(self) -> None:
        self.interruptions: Dict[Tuple[str, str], InterruptionRule] = {}
        self.backchannels: Dict[str, List[BackchannelRule]] = {}

    def set_interruption_rule(self, interrupter: str, interrupted: str, probability: float = 0.5, vibe: str = "excited") -> None:
        self.interruptions[(interrupted, interrupter)] = InterruptionRule(interrupter, interrupted, float(probability), vibe)

    def set_backchannel_rule(
        self,
        speakers: str | Iterable[str],
        listeners: str | Iterable[str],
        frequency: str = "sometimes",
        vibe: str = "neutral",
        probability: float = 1.0,
    ) -> None:
        for speaker in ([speakers] if isinstance(speakers, str) else list(speakers)):
            for listener in ([listeners] if isinstance(listeners, str) else list(listeners)):
                if speaker == listener:
                    continue
                self.backchannels.setdefault(listener, []).append(
                    BackchannelRule(speaker, listener, (frequency or "").lower(), vibe, float(probability))
                )

    def should_interrupt(self, current: str, next_speaker: Optional[str], rng: random.Random) -> InterruptionDecision:
        rule = self.interruptions.get((current, next_speaker or ""))
        if rule is None:
            return InterruptionDecision(False)
        return InterruptionDecision(rng.random() < rule.probability, rule.vibe)

    def should_backchannel(self, speaker: str, listener: str, rng: random.Random) -> BackchannelDecision:
        for rule in self.backchannels.get(listener, []):
            if rule.speaker != speaker:
                continue
            probability = FREQUENCY_PROBABILITY.get(rule.frequency, rule.probability)
            return BackchannelDecision(rng.random() < probability, rule.vibe)
        return BackchannelDecision(False)

    @classmethod
    def from_config(cls, interruption_rules: Sequence[Dict[str, Any]] = (), backchannel_rules: Sequence[Dict[str, Any]] = ()) -> "RuleBook":
        book = cls()
        for r in interruption_rules or []:
            book.set_interruption_rule(
                r.get("interrupter"),
                r.get("interrupted"),
                r.get("probability", 0.5),
                r.get("vibe", "excited"),
            )
        for r in backchannel_rules or []:
            book.set_backchannel_rule(
                r.get("from") or r.get("speaker") or r.get("fromPeople"),
                r.get("to") or r.get("listener") or r.get("toPeople"),
                r.get("frequency", "sometimes"),
                r.get("vibe", "neutral"),
                r.get("probability", 1.0),
            )
        return book


_LEADING_IS = re.compile(r"^\W*(?:\w+\s+)?is\s+", re.IGNORECASE)


def normalize_backchannel(name: str, text: str) -> str:
    out = (text or "").strip().strip('"').strip()
    if not out.startswith(name):
        out = f"{name} is {_LEADING_IS.sub('', out, count=1)}"
    words = out.split()
    if len(words) > MAX_BACKCHANNEL_WORDS:
        out = " ".join(words[:MAX_BACKCHANNEL_WORDS]) + "..."
    return out


async def generate_backchannel(message: str, vibe: str, persona: Any, generator: Any, rng: random.Random) -> str:
    examples = vibe_examples(vibe)
    if persona.is_human_proxy:
        return f"{persona.name} is {rng.choice(examples)}"
    prompt = (
        f"You are {persona.name}, a {persona.personality or ''} person responding to this message "
        f"with a {vibe} non-verbal reaction.\n\n"
        f'Message: "{message}"\n\n'
        f'Generate a brief, non-verbal backchannel response in the format: "{persona.name} is [action]", '
        "where [action] is a short phrase describing your physical reaction.\n\n"
        f"Examples of {vibe} reactions might include: {', '.join(examples)}\n\n"
        "Make your reaction between 3-8 words, believable, and appropriate for your personality. "
        "Don't use dialog or quotes."
    )
    try:
        raw = await generator.chat_completion([{"role": "user", "content": prompt}], max_tokens=20, temperature=0.7)
    except Exception as e:
        logger.error(f"backchannel_failed | persona={persona.name} | {e}")
        return fallback_backchannel(persona.name, vibe)
    return normalize_backchannel(persona.name, raw)


@dataclass
class BackchannelJob:
    listener: str
    vibe: str
    party: Optional[str] = None
    party_pass: bool = False


async def gather_backchannels(
    jobs: Sequence[BackchannelJob],
    message: str,
    personas: Dict[str, Any],
    generator: Any,
    rng: random.Random,
) -> List[Tuple[BackchannelJob, str]]:
    """Generate every reaction concurrently and wait for the whole batch.

    A job that raises is replaced by its fallback reaction; nothing is
    returned until every job has settled.
    """
    if not jobs:
        return []
    results = await asyncio.gather(
        *(generate_backchannel(message, j.vibe, personas[j.listener], generator, rng) for j in jobs),
        return_exceptions=True,
    )
    settled: List[Tuple[BackchannelJob, str]] = []
    for job, res in zip(jobs, results):
        if isinstance(res, BaseException):
            if not isinstance(res, Exception):
                raise res
            logger.error(f"backchannel_task_failed | persona={job.listener} | {res}")
            res = fallback_backchannel(job.listener, job.vibe)
        settled.append((job, res))
    return settled
