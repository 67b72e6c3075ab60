from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from .errors import ConfigurationError
from .messages import Message


class TurnMode(Enum):
    FREE = "free"
    ROUND_ROBIN = "round-robin"
    MODERATED = "moderated"


class SpeakingMode(Enum):
    ALL = "all"
    REPRESENTATIVE = "representative"
    SUBSET = "subset"
    SEQUENTIAL = "sequential"
    RANDOM = "random"


class DerailMode(Enum):
    DRIFT = "drift"
    EXTEND = "extend"
    QUESTION = "question"
    EMOTIONAL = "emotional"
    RANDOM = "random"


CONCRETE_DERAIL_MODES = (
    DerailMode.DRIFT,
    DerailMode.EXTEND,
    DerailMode.QUESTION,
    DerailMode.EMOTIONAL,
)


class ConversationMode(Enum):
    HUMAN_CONTROL = "human-control"
    AUTONOMOUS = "autonomous"
    REACTIVE = "reactive"


class SessionStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_HUMAN = "awaiting_human"
    COMPLETED = "completed"


class PhaseState(Enum):
    NORMAL = "normal"
    PENDING_APPROVAL = "pending_approval"
    IMPROMPTU_ACTIVE = "impromptu_active"


E = TypeVar("E", bound=Enum)


def parse_enum(enum_cls: Type[E], value: Any) -> E:
    """Coerce a config value into ``enum_cls``; raises ConfigurationError."""
    if isinstance(value, enum_cls):
        return value
    raw = str(value or "").strip()
    for member in enum_cls:
        if raw == member.value or raw.lower() == member.value or raw.upper().replace("-", "_") == member.name:
            return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise ConfigurationError(f"invalid {enum_cls.__name__} {value!r}; expected one of: {allowed}")


@dataclass
class ImpromptuState:
    active: bool = False
    derailer: Optional[str] = None
    mode: Optional[DerailMode] = None
    turns_left: int = 0
    total_turns: int = 0
    has_derailer_spoken_first: bool = False
    start_index: int = 0


@dataclass
class PendingApproval:
    derailer: str
    mode: DerailMode
    turns: int
    draft: Message


@dataclass
class TopologySnapshot:
    parties: Any  # PartyRegistry copy
    party_mode: bool
    party_turn_mode: TurnMode
    moderator_party: Optional[str]
    hand_raising_enabled: bool
    current_party: Optional[str]


@dataclass
class OrchestratorState:
    max_turns: int = 10
    turn_index: int = 0
    conversation: List[Message] = field(default_factory=list)
    participants: List[str] = field(default_factory=list)
    topic: str = ""
    conversation_prompt: Optional[str] = None
    interaction_pattern: str = "Neutral"
    party_mode: bool = False
    party_turn_mode: TurnMode = TurnMode.FREE
    moderator_party: Optional[str] = None
    hand_raising_enabled: bool = False
    raised_hands: List[str] = field(default_factory=list)
    approved_speakers: List[str] = field(default_factory=list)
    speaker_queue: List[str] = field(default_factory=list)
    current_party: Optional[str] = None
    impromptu: ImpromptuState = field(default_factory=ImpromptuState)
    pending: Optional[PendingApproval] = None
    snapshot: Optional[TopologySnapshot] = None
    paused: bool = False
    status: SessionStatus = SessionStatus.IDLE
    phase_count: int = 0
    # derailer name -> turn_index at which it may trigger again
    derail_cooldowns: Dict[str, int] = field(default_factory=dict)
    last_speaker_index: int = -1
    forced_next_speaker: Optional[str] = None
    pending_cut_in: Optional[Dict[str, str]] = None
    awaiting_human: Optional[str] = None
    theme_analysis: str = ""
    last_theme_turn: int = 0
    last_derail_check: int = -1

    @property
    def phase(self) -> PhaseState:
        if self.pending is not None:
            return PhaseState.PENDING_APPROVAL
        if self.impromptu.active:
            return PhaseState.IMPROMPTU_ACTIVE
        return PhaseState.NORMAL
