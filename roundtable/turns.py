"""Pure turn-selection helpers. Randomness always comes from the caller's rng."""

from __future__ import annotations

import random
from typing import Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from .messages import ALL
from .parties import PartyConfig, PartyRegistry
from .states import SpeakingMode, TurnMode


def next_round_robin_speaker(
    participants: Sequence[str],
    last_speaker: Optional[str],
    last_index: int = -1,
) -> Tuple[str, int]:
    """First participant after ``last_speaker`` in registration order.

    Unknown or missing ``last_speaker`` resumes from ``last_index + 1``
    (wrapping to 0). ``"All"`` restarts at index 0.
    """
    if not participants:
        return (last_speaker or ALL), last_index
    if last_speaker == ALL:
        return participants[0], 0
    if not last_speaker or last_speaker not in participants:
        nxt = last_index + 1 if 0 <= last_index < len(participants) - 1 else 0
        return participants[nxt], nxt
    nxt = (participants.index(last_speaker) + 1) % len(participants)
    attempts = 0
    while participants[nxt] == last_speaker and attempts < len(participants):
        nxt = (nxt + 1) % len(participants)
        attempts += 1
    return participants[nxt], nxt


def speaker_excluding(
    participants: Sequence[str],
    excluded: Iterable[Optional[str]],
    rng: random.Random,
) -> Optional[str]:
    """Random participant not in ``excluded``; any participant if none qualify."""
    if not participants:
        return None
    skip = {e for e in excluded if e}
    pool = [p for p in participants if p not in skip]
    return rng.choice(pool or list(participants))


def eligible_members(
    members: Sequence[str],
    last_speaker: Optional[str],
    first_turn: bool = False,
) -> List[str]:
    if first_turn or last_speaker not in members or len(members) <= 1:
        return list(members)
    return [m for m in members if m != last_speaker]


def build_speaker_queue(
    members: Sequence[str],
    config: PartyConfig,
    last_speaker: Optional[str],
    rng: random.Random,
    first_turn: bool = False,
) -> List[str]:
    eligible = eligible_members(members, last_speaker, first_turn)
    if not eligible:
        return []
    mode = config.speaking_mode
    if mode == SpeakingMode.REPRESENTATIVE:
        rep = config.representative
        if rep in eligible:
            return [rep]
        # representative just spoke or left; someone else holds the floor
        return [eligible[0]]
    if mode == SpeakingMode.SUBSET:
        size = min(config.subset_size or 1, len(eligible))
        return rng.sample(eligible, size)
    if mode == SpeakingMode.RANDOM:
        shuffled = list(eligible)
        rng.shuffle(shuffled)
        return shuffled
    # ALL and SEQUENTIAL both keep registration order
    return list(eligible)


def select_next_party(
    registry: PartyRegistry,
    current_party: Optional[str],
    turn_mode: TurnMode,
    rng: random.Random,
    moderator_party: Optional[str] = None,
    approved_party: Optional[str] = None,
) -> Optional[str]:
    """Choose which party takes the floor next. Has no side effects."""
    names = [n for n in registry.names if registry.members(n)]
    if not names:
        return None
    if turn_mode == TurnMode.ROUND_ROBIN:
        if current_party not in names:
            return names[0]
        return names[(names.index(current_party) + 1) % len(names)]
    if turn_mode == TurnMode.MODERATED and moderator_party in names:
        if current_party != moderator_party:
            return moderator_party
        if approved_party and approved_party in names and approved_party != moderator_party:
            return approved_party
        others = [n for n in names if n != moderator_party]
        if not others:
            return moderator_party
        # no hand pending: the first non-moderator party gets the floor
        return others[0]
    others = [n for n in names if n != current_party]
    if others:
        return rng.choice(others)
    only = names[0]
    if len(registry.members(only)) <= 1:
        logger.debug(f"party_select_single | party={only} single member keeps the floor")
    return only
