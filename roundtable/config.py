from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import ConfigurationError
from .states import ConversationMode, TurnMode, parse_enum


DEFAULT_MAX_TURNS = 10


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in data and data[k] is not None:
            return data[k]
    return default


def env_max_turns() -> int:
    raw = os.getenv("ROUNDTABLE_MAX_TURNS")
    if not raw:
        return DEFAULT_MAX_TURNS
    try:
        return max(1, int(raw))
    except ValueError:
        logger.warning(f"Invalid ROUNDTABLE_MAX_TURNS={raw!r}; using {DEFAULT_MAX_TURNS}")
        return DEFAULT_MAX_TURNS


def env_conversation_mode() -> ConversationMode:
    raw = os.getenv("ROUNDTABLE_CONVERSATION_MODE", ConversationMode.HUMAN_CONTROL.value)
    try:
        return parse_enum(ConversationMode, raw)
    except ConfigurationError as e:
        logger.warning(f"{e}; using human-control")
        return ConversationMode.HUMAN_CONTROL


@dataclass
class PartyCommand:
    """One entry of ``party_commands``: ``{"command": ..., "params": {...}}``."""

    command: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ContentSettings:
    filename: Optional[str] = None
    text: Optional[str] = None
    content_id: Optional[str] = None
    description: str = ""
    owners: List[str] = field(default_factory=list)
    is_party: bool = False
    presenter: Optional[str] = None
    presenter_is_party: Optional[bool] = None


@dataclass
class ConversationConfig:
    topic: str = ""
    sub_topic: Optional[str] = None
    conversation_prompt: Optional[str] = None
    initiator: Optional[str] = None
    starting_message: Optional[str] = None
    participants: List[str] = field(default_factory=list)
    agents: List[Dict[str, Any]] = field(default_factory=list)
    max_turns: int = DEFAULT_MAX_TURNS
    hard_max_turns: Optional[int] = None
    interaction_pattern: str = "Neutral"
    interruption_rules: List[Dict[str, Any]] = field(default_factory=list)
    backchannel_rules: List[Dict[str, Any]] = field(default_factory=list)
    party_mode: bool = False
    party_turn_mode: TurnMode = TurnMode.FREE
    moderator_party: Optional[str] = None
    party_commands: List[PartyCommand] = field(default_factory=list)
    derailer_commands: List[PartyCommand] = field(default_factory=list)
    conversation_mode: ConversationMode = ConversationMode.HUMAN_CONTROL
    content: Optional[ContentSettings] = None
    conversation_history: List[Dict[str, Any]] = field(default_factory=list)
    seed: Optional[int] = None

    @property
    def full_topic(self) -> str:
        if self.sub_topic:
            return f"main topic of this conversation is {self.topic}, and the subtopic is {self.sub_topic}"
        return self.topic

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationConfig":
        """Build a config from the session payload shape; bad enum values fall back with a warning."""
        data = dict(data or {})
        try:
            turn_mode = parse_enum(TurnMode, _pick(data, "party_turn_mode", "partyTurnMode", default="free"))
        except ConfigurationError as e:
            logger.warning(f"{e}; falling back to free")
            turn_mode = TurnMode.FREE
        try:
            mode = parse_enum(
                ConversationMode,
                _pick(data, "conversation_mode", "conversationMode", default=env_conversation_mode().value),
            )
        except ConfigurationError as e:
            logger.warning(f"{e}; falling back to human-control")
            mode = ConversationMode.HUMAN_CONTROL
        max_turns = _pick(data, "max_turns", "maxTurns", default=None)
        try:
            max_turns = max(1, int(max_turns)) if max_turns is not None else env_max_turns()
        except (TypeError, ValueError):
            logger.warning(f"invalid max_turns={max_turns!r}; using {DEFAULT_MAX_TURNS}")
            max_turns = DEFAULT_MAX_TURNS
        content = _pick(data, "content", default=None)
        return cls(
            topic=_pick(data, "topic", default=""),
            sub_topic=_pick(data, "sub_topic", "subTopic"),
            conversation_prompt=_pick(data, "conversation_prompt", "conversationPrompt"),
            initiator=_pick(data, "initiator"),
            starting_message=_pick(data, "starting_message", "startingMessage"),
            participants=list(_pick(data, "participants", default=[])),
            agents=list(_pick(data, "agents", default=[])),
            max_turns=max_turns,
            hard_max_turns=_pick(data, "hard_max_turns", "hardMaxTurns"),
            interaction_pattern=_pick(data, "interaction_pattern", "interactionPattern", default="Neutral"),
            interruption_rules=list(_pick(data, "interruption_rules", "interruptionRules", default=[])),
            backchannel_rules=list(_pick(data, "backchannel_rules", "backChannelRules", "backchannelRules", default=[])),
            party_mode=bool(_pick(data, "party_mode", "partyMode", default=False)),
            party_turn_mode=turn_mode,
            moderator_party=_pick(data, "moderator_party", "moderatorParty"),
            party_commands=[_command(c) for c in _pick(data, "party_commands", "partyCommands", default=[])],
            derailer_commands=[_command(c) for c in _pick(data, "derailer_commands", "derailerCommands", default=[])],
            conversation_mode=mode,
            content=_content(content) if content else None,
            conversation_history=list(_pick(data, "conversation_history", "conversationHistory", default=[])),
            seed=_pick(data, "seed"),
        )


def _command(raw: Dict[str, Any]) -> PartyCommand:
    return PartyCommand(command=raw.get("command", ""), params=dict(raw.get("params") or {}))


def _content(raw: Dict[str, Any]) -> ContentSettings:
    owners = _pick(raw, "owners", default=[])
    return ContentSettings(
        filename=_pick(raw, "filename", "file"),
        text=_pick(raw, "text"),
        content_id=_pick(raw, "content_id", "id"),
        description=_pick(raw, "description", default=""),
        owners=[owners] if isinstance(owners, str) else list(owners),
        is_party=bool(_pick(raw, "is_party", "isParty", default=False)),
        presenter=_pick(raw, "presenter"),
        presenter_is_party=_pick(raw, "presenter_is_party", "presenterIsParty"),
    )
