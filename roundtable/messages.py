from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional


SYSTEM_SENDER = "System"
ALL = "All"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# camelCase keys accepted when loading an existing transcript
_ALIASES = {
    "message": "text",
    "content": "text",
    "isSystemMessage": "is_system",
    "isBackchannel": "is_backchannel",
    "isTransition": "is_transition",
    "isDerailing": "is_derailing",
    "isProactive": "is_proactive",
    "isInterrupted": "is_interrupted",
    "needsApproval": "needs_approval",
    "isApproved": "is_approved",
    "impromptuPhase": "impromptu_phase",
    "derailMode": "derail_mode",
    "backchannelVibe": "vibe",
    "nextSpeaker": "next_speaker",
    "isImpromptuPhaseStart": "is_phase_start",
    "isEndingPhase": "is_phase_end",
}


@dataclass
class Message:
    sender: str
    text: str
    recipient: str = ALL
    party: Optional[str] = None
    is_system: bool = False
    is_backchannel: bool = False
    is_transition: bool = False
    is_derailing: bool = False
    is_proactive: bool = False
    is_interrupted: bool = False
    needs_approval: bool = False
    is_approved: bool = False
    impromptu_phase: bool = False
    is_phase_start: bool = False
    is_phase_end: bool = False
    derail_mode: Optional[str] = None
    vibe: Optional[str] = None
    next_speaker: Optional[str] = None
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=_utc_now)

    @property
    def is_substantive(self) -> bool:
        """Counts against the turn budget."""
        return not (self.is_system or self.is_transition or self.is_backchannel or self.is_proactive)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = _ALIASES.get(key, key)
            if name in known:
                kwargs[name] = value
        kwargs.setdefault("sender", SYSTEM_SENDER)
        kwargs.setdefault("text", "")
        if kwargs.get("recipient") is None:
            kwargs["recipient"] = ALL
        return cls(**kwargs)


def system_message(text: str, **flags: Any) -> Message:
    return Message(sender=SYSTEM_SENDER, text=text, is_system=True, **flags)
