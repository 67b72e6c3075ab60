from __future__ import annotations

import copy
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from loguru import logger

from .errors import ConfigurationError
from .states import SpeakingMode, parse_enum


@dataclass
class PartyConfig:
    speaking_mode: SpeakingMode = SpeakingMode.ALL
    representative: Optional[str] = None
    subset_size: Optional[int] = None
    backchannel_probability: float = 0.3
    description: str = ""


class PartyRegistry:
    """Party topology kept as a partition.

    ``_members`` (party -> ordered members) and ``_party_of`` (member -> party)
    are always updated together, so a persona is in at most one party.
    """

    def __init__(self) -> None:
        self._members: Dict[str, List[str]] = {}
        self._party_of: Dict[str, str] = {}
        self._configs: Dict[str, PartyConfig] = {}

    def __contains__(self, party: object) -> bool:
        return party in self._members

    def __len__(self) -> int:
        return len(self._members)

    @property
    def names(self) -> List[str]:
        return list(self._members)

    def party_of(self, member: Optional[str]) -> Optional[str]:
        if member is None:
            return None
        return self._party_of.get(member)

    def members(self, party: str) -> List[str]:
        if party not in self._members:
            raise ConfigurationError(f"unknown party {party!r}")
        return list(self._members[party])

    def config(self, party: str) -> PartyConfig:
        if party not in self._configs:
            raise ConfigurationError(f"unknown party {party!r}")
        return self._configs[party]

    def create_party(
        self,
        name: str,
        members: Iterable[str],
        speaking_mode: SpeakingMode | str = SpeakingMode.ALL,
        representative: Optional[str] = None,
        subset_size: Optional[int] = None,
        backchannel_probability: float = 0.3,
        description: str = "",
    ) -> PartyConfig:
        ordered: List[str] = []
        for m in members:
            if m not in ordered:
                ordered.append(m)
        mode = parse_enum(SpeakingMode, speaking_mode)
        if representative is not None and representative not in ordered:
            raise ConfigurationError(f"representative {representative!r} is not a member of {name!r}")
        if name in self._members:
            self._drop_party(name)
        # Moving a member out of its previous party keeps the partition
        for m in ordered:
            previous = self._party_of.get(m)
            if previous is not None:
                self._members[previous].remove(m)
                logger.info(f"party_member_moved | member={m} from={previous} to={name}")
                if not self._members[previous]:
                    logger.warning(f"party_emptied | party={previous}")
                    self._drop_party(previous)
        self._members[name] = ordered
        for m in ordered:
            self._party_of[m] = name
        cfg = PartyConfig(
            speaking_mode=mode,
            representative=representative or (ordered[0] if ordered else None),
            subset_size=subset_size or max(1, math.ceil(len(ordered) / 2)),
            backchannel_probability=float(backchannel_probability),
            description=description or "",
        )
        self._configs[name] = cfg
        logger.info(f"party_created | party={name} members={ordered} mode={mode.value}")
        return cfg

    def _drop_party(self, name: str) -> None:
        for m in self._members.pop(name, []):
            if self._party_of.get(m) == name:
                del self._party_of[m]
        self._configs.pop(name, None)

    def remove_party(self, name: str) -> None:
        if name not in self._members:
            raise ConfigurationError(f"unknown party {name!r}")
        self._drop_party(name)

    def set_representative(self, party: str, representative: str) -> None:
        if representative not in self.members(party):
            raise ConfigurationError(f"{representative!r} is not a member of {party!r}")
        self._configs[party].representative = representative

    def set_speaking_mode(
        self,
        party: str,
        mode: SpeakingMode | str,
        subset_size: Optional[int] = None,
        representative: Optional[str] = None,
    ) -> None:
        cfg = self.config(party)
        cfg.speaking_mode = parse_enum(SpeakingMode, mode)
        if subset_size is not None:
            cfg.subset_size = max(1, int(subset_size))
        if representative is not None:
            self.set_representative(party, representative)

    def snapshot(self) -> "PartyRegistry":
        return copy.deepcopy(self)

    def as_dict(self) -> Dict[str, List[str]]:
        return {name: list(members) for name, members in self._members.items()}

    def is_partition(self) -> bool:
        seen: Dict[str, str] = {}
        for name, members in self._members.items():
            for m in members:
                if m in seen or self._party_of.get(m) != name:
                    return False
                seen[m] = name
        return len(seen) == len(self._party_of)
