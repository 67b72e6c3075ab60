from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from .errors import MalformedAnalysis
from .messages import Message


FIRST_SCENE = "This is the first scene"


def strip_fences(s: str) -> str:
    s = (s or "").strip()
    if s.startswith("```"):
        # remove code fences and optional json hint
        lines = [ln for ln in s.splitlines() if not ln.strip().startswith("```")]
        return "\n".join(lines).strip()
    return s


def parse_json(s: str) -> Dict[str, Any]:
    s = strip_fences(s)
    try:
        data = json.loads(s)
    except ValueError:
        # try the outermost {...}
        start = s.find("{")
        end = s.rfind("}")
        if start == -1 or end <= start:
            raise MalformedAnalysis(f"no JSON object in response: {s[:60]!r}")
        try:
            data = json.loads(s[start : end + 1])
        except ValueError as e:
            raise MalformedAnalysis(f"Failed to parse JSON after fence stripping: {e}") from e
    if not isinstance(data, dict):
        raise MalformedAnalysis(f"expected a JSON object, got {type(data).__name__}")
    return data


@dataclass
class ContextualHistory:
    recent_messages: str
    historical_context: str
    full_context: str


@dataclass
class SummaryWindow:
    start_index: int
    end_index: int
    summary: str
    covered_points: List[str] = field(default_factory=list)
    analogies_used: List[str] = field(default_factory=list)


class ConversationMemory:
    """Rolling history with periodic summaries and repetition tracking.

    Only substantive messages are meant to be added; back-channel and system
    messages are filtered again when building context.
    """

    def __init__(self, generator: Any, short_term_limit: int = 3, summary_interval: int = 5) -> None:
        self.generator = generator
        self.short_term_limit = max(1, int(short_term_limit))
        self.summary_interval = max(1, int(summary_interval))
        self.history: List[Message] = []
        self.summaries: List[SummaryWindow] = []
        self.last_summary_index = 0
        self.covered_points: set[str] = set()
        self.analogies_used: set[str] = set()

    def load(self, messages: Iterable[Message]) -> None:
        """Seed history from an earlier transcript without re-analysing it."""
        for m in messages:
            if not (m.is_backchannel or m.is_system):
                self.history.append(m)
        self.last_summary_index = len(self.history)

    async def add_message(self, message: Message) -> None:
        self.history.append(message)
        await self.update_tracking(message)
        if len(self.history) - self.last_summary_index >= self.summary_interval:
            window = self.history[self.last_summary_index :]
            summary = await self.generate_summary(window)
            self.summaries.append(
                SummaryWindow(
                    start_index=self.last_summary_index,
                    end_index=len(self.history) - 1,
                    summary=summary,
                    covered_points=sorted(self.covered_points),
                    analogies_used=sorted(self.analogies_used),
                )
            )
            logger.info(f"memory_summary | range={self.last_summary_index}-{len(self.history) - 1}")
            self.last_summary_index = len(self.history)

    async def update_tracking(self, message: Message) -> None:
        prompt = (
            "Analyze this message and extract:\n"
            "1. Key points/concepts discussed\n"
            "2. Analogies or metaphors used\n\n"
            f'Message: "{message.text}"\n\n'
            "Respond in JSON format ONLY, without any markdown formatting:\n"
            '{"points": ["point1", "point2"], "analogies": ["analogy1", "analogy2"]}'
        )
        try:
            raw = await self.generator.generate_text(prompt, max_tokens=150, temperature=0.7, request_json=True)
        except Exception as e:
            logger.error(f"memory_tracking_failed | sender={message.sender} | {e}")
            return
        try:
            analysis = parse_json(raw)
        except MalformedAnalysis as e:
            logger.warning(f"memory_tracking_malformed | sender={message.sender} | {e}")
            self.covered_points.add(f"Message: {message.text[:30]}...")
            return
        points = analysis.get("points")
        if isinstance(points, list):
            self.covered_points.update(str(p) for p in points if p)
        else:
            logger.warning("memory_tracking | invalid points array in analysis response")
        analogies = analysis.get("analogies")
        if isinstance(analogies, list):
            self.analogies_used.update(str(a) for a in analogies if a)
        else:
            logger.warning("memory_tracking | invalid analogies array in analysis response")

    async def generate_summary(self, messages: List[Message]) -> str:
        text = "\n".join(m.text for m in messages)
        prompt = (
            "Summarize these messages in 2-3 concise points, focusing on:\n"
            "1. Main topics discussed\n"
            "2. Key decisions or agreements\n"
            "3. New concepts introduced\n\n"
            f"Messages:\n{text}\n\n"
            "Format your response as clear, concise bullet points."
        )
        try:
            return await self.generator.generate_text(prompt, max_tokens=150, temperature=0.7)
        except Exception as e:
            logger.error(f"memory_summary_failed | {e}")
            return "Error generating summary"

    async def summarize_recent_messages(self, messages: List[Message]) -> str:
        filtered = [m for m in messages if not (m.is_backchannel or m.is_system)]
        if not filtered:
            return FIRST_SCENE
        lines = "\n".join(f"{m.sender}: {m.text}" for m in filtered)
        prompt = (
            "Summarize these recent messages in 1-2 concise sentences, capturing the key points "
            f"and flow of conversation:\n\n{lines}\n\n"
            "Your summary should be brief but informative, focusing on the main ideas discussed."
        )
        try:
            return await self.generator.generate_text(prompt, max_tokens=100, temperature=0.7)
        except Exception as e:
            logger.error(f"memory_recent_summary_failed | {e}")
            return lines

    async def get_contextual_history(self) -> ContextualHistory:
        filtered = [m for m in self.history if not (m.is_backchannel or m.is_system)]
        recent = await self.summarize_recent_messages(filtered[-self.short_term_limit :])
        points = ", ".join(sorted(self.covered_points))
        analogies = ", ".join(sorted(self.analogies_used))
        summaries = "\n".join(s.summary for s in self.summaries)
        return ContextualHistory(
            recent_messages=recent,
            historical_context=f"Points already covered: {points}\n\nPrevious discussion summaries:\n{summaries}",
            full_context=(
                f"Key points covered so far:\n- {points}\n\n"
                f"Recent discussion summary:\n{recent}\n\n"
                "Remember to:\n"
                f"- Avoid repeating analogies already used ({analogies})\n"
                "- Build on previous points rather than restating them\n"
                "- Add new information or perspective to the discussion"
            ),
        )

    async def analyze_themes(self) -> str:
        history = await self.get_contextual_history()
        prompt = (
            "Given this conversation history, identify the main themes and recurring topics "
            f"that have been discussed:\n\n{history.historical_context}\n\n"
            "Please provide:\n"
            "1. Key themes (2-3 points)\n"
            "2. Any unresolved questions or points of discussion\n"
            "3. Suggestions for naturally bringing up relevant previous points"
        )
        try:
            result = await self.generator.chat_completion(
                [{"role": "user", "content": prompt}], max_tokens=200, temperature=0.7
            )
        except Exception as e:
            logger.error(f"theme_analysis_failed | {e}")
            return ""
        return result.strip()
