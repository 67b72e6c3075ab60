from __future__ import annotations

import re
from typing import Any, Optional

from .messages import ALL
from .parties import PartyConfig
from .states import SpeakingMode


INTERACTION_PATTERNS = {
    "Critical": "Try to critically analyze and challenge the last statement.",
    "Skeptical": "Express skepticism towards the last statement.",
    "Neutral": "Contribute to the conversation with your own perspective.",
    "Receptive": "Be open to the ideas presented in the last statement.",
    "Agreeable": "Agree with the last statement and expand on it.",
    "disagree": "Try to respectfully disagree with or challenge the last statement.",
    "agree": "Agree with the last statement and expand on it.",
}


def resolve_pattern(pattern: Optional[str]) -> str:
    if not pattern:
        return "Neutral"
    if pattern in INTERACTION_PATTERNS:
        return pattern
    for key in INTERACTION_PATTERNS:
        if key.lower() == pattern.lower():
            return key
    return "Neutral"


def pattern_context(
    last_speaker: Optional[str],
    persona: Any,
    next_speaker: Optional[str],
    interaction_pattern: str,
    topic: str,
    recent_messages: str,
    theme_analysis: str = "",
    conversation_prompt: Optional[str] = None,
) -> str:
    # a persona may override the global pattern through its custom attributes
    attrs = getattr(persona, "custom_attributes", None) or {}
    effective = persona.interaction_pattern if attrs.get("interactionOverride") and persona.interaction_pattern else interaction_pattern
    guidance = INTERACTION_PATTERNS[resolve_pattern(effective)]
    if conversation_prompt:
        context = f"Now, you are in a conversation where you should follow this context: {conversation_prompt}."
    else:
        context = f"Topic: {topic or 'General discussion'}"
    themes = f"Key themes: {' '.join(theme_analysis.splitlines()[:2])}" if theme_analysis else ""
    last = f"The last person who spoke was {last_speaker}." if last_speaker and last_speaker != ALL else ""
    context += f" {themes} {last} Recent discussion summary: {recent_messages} {guidance}"
    if not next_speaker or next_speaker == ALL:
        context += "\n\nAddress your response to all participants."
    elif last_speaker and last_speaker != ALL:
        context += f"\n\nReply to {last_speaker}'s message."
    return re.sub(r" {2,}", " ", context).strip()


def party_context(
    party: Optional[str],
    config: Optional[PartyConfig],
    persona_name: str,
    last_speaker_party: Optional[str],
) -> str:
    if not party:
        return ""
    lines = [f'You are part of the "{party}" group.']
    if config and config.description:
        lines.append(f"Party role: {config.description}")
    if config and config.speaking_mode == SpeakingMode.REPRESENTATIVE and config.representative == persona_name:
        lines.append("You speak as the representative for your group.")
    if last_speaker_party == party:
        lines.append("Build on your group member's point.")
    elif last_speaker_party:
        lines.append(f'Respond to the "{last_speaker_party}" group.')
    else:
        lines.append("Contribute your perspective to the conversation.")
    return " ".join(lines)


def moderator_context(party: str, addressed: Optional[str]) -> str:
    base = f'You are moderating this discussion on behalf of the "{party}" group.'
    if addressed and addressed != ALL:
        return f"{base} Briefly acknowledge the last point, then invite {addressed} to speak next."
    return f"{base} Briefly acknowledge the last point, then open the floor for anyone who wants to respond."


def starting_context(
    topic: str,
    conversation_prompt: Optional[str],
    party: Optional[str],
    config: Optional[PartyConfig],
    content_hint: str = "",
) -> str:
    party_info = f'You are a member of the "{party}" party. {config.description}\n' if party and config and config.description else ""
    if conversation_prompt:
        context = f"{party_info}Now, you are in a conversation where you should follow this context: {conversation_prompt}"
    else:
        context = f"{party_info}The conversation's topic is {topic}."
    if content_hint:
        return f"{context} {content_hint}"
    return f"{context} Start the discussion by introducing the topic and inviting opinions."


def content_context(text_prompt: str, description: str, is_presenter: bool) -> str:
    role = (
        "You are presenting this content. Take initiative to explain key points, answer questions, and guide the discussion."
        if is_presenter
        else "You have access to this content. Refer to it when it helps the discussion."
    )
    return f"SHARED_CONTENT ({description}):\n{text_prompt}\n\n{role}"
