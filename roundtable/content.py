from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from loguru import logger

from .errors import ConfigurationError


MAX_CONTENT_CHARS = 6000


@dataclass
class ContentItem:
    content_id: str
    text: str
    description: str = ""
    filepath: Optional[str] = None
    owners: List[str] = field(default_factory=list)
    owners_are_parties: bool = False
    presenter: Optional[str] = None
    presenter_is_party: bool = False
    is_public: bool = True


@dataclass
class ContentPrompt:
    text_prompt: str
    description: str
    filepath: Optional[str] = None
    is_presenter: bool = False


class ContentRegistry:
    """Ownership and visibility rules for documents attached to a conversation."""

    def __init__(self, content_dir: Optional[Path] = None) -> None:
        self.content_dir = Path(content_dir) if content_dir else Path.cwd() / "content"
        self._items: Dict[str, ContentItem] = {}

    def __contains__(self, content_id: object) -> bool:
        return content_id in self._items

    def get(self, content_id: str) -> ContentItem:
        if content_id not in self._items:
            raise ConfigurationError(f"unknown content {content_id!r}")
        return self._items[content_id]

    def register_content(
        self,
        content_id: str,
        text: str,
        description: str = "",
        filepath: Optional[str] = None,
    ) -> ContentItem:
        item = ContentItem(
            content_id=content_id,
            text=(text or "")[:MAX_CONTENT_CHARS],
            description=description or content_id.replace("_", " "),
            filepath=filepath,
        )
        self._items[content_id] = item
        logger.info(f"content_registered | id={content_id} chars={len(item.text)}")
        return item

    def load_content(self, filename: str, content_id: Optional[str] = None, description: str = "") -> ContentItem:
        path = Path(filename)
        if not path.is_file():
            path = self.content_dir / filename
        if not path.is_file():
            raise ConfigurationError(f"content file not found: {filename}")
        text = path.read_text(encoding="utf-8")
        return self.register_content(
            content_id or path.stem,
            text,
            description or f"Document about {path.stem.replace('_', ' ')}",
            filepath=str(path),
        )

    def assign_ownership(
        self,
        content_id: str,
        owners: str | Iterable[str],
        is_party: bool = False,
        presenter: Optional[str] = None,
        presenter_is_party: Optional[bool] = None,
    ) -> None:
        item = self.get(content_id)
        owner_list = [owners] if isinstance(owners, str) else list(owners or [])
        item.owners = owner_list
        item.owners_are_parties = is_party
        item.is_public = not owner_list
        item.presenter = presenter or (owner_list[0] if owner_list else None)
        item.presenter_is_party = is_party if presenter_is_party is None else presenter_is_party
        logger.info(
            f"content_ownership | id={content_id} owners={owner_list} party={is_party} presenter={item.presenter}"
        )

    def set_public(self, content_id: str, presenter: Optional[str] = None, presenter_is_party: bool = False) -> None:
        item = self.get(content_id)
        item.owners = []
        item.owners_are_parties = False
        item.is_public = True
        item.presenter = presenter
        item.presenter_is_party = presenter_is_party

    def has_access(self, content_id: str, persona: str, party: Optional[str]) -> bool:
        item = self._items.get(content_id)
        if item is None:
            return False
        if item.is_public:
            return True
        if item.owners_are_parties:
            return party is not None and party in item.owners
        return persona in item.owners

    def is_presenter(self, content_id: str, persona: str, party: Optional[str]) -> bool:
        item = self._items.get(content_id)
        if item is None or item.presenter is None:
            return False
        if item.presenter_is_party:
            return party == item.presenter
        return persona == item.presenter

    def get_content_prompt(self, content_id: str, persona: str, party: Optional[str]) -> Optional[ContentPrompt]:
        if not self.has_access(content_id, persona, party):
            return None
        item = self._items[content_id]
        if item.is_public:
            ownership = "This content is public and available to everyone."
        elif item.owners_are_parties:
            ownership = f"This content belongs to the following parties: {', '.join(item.owners)}."
        else:
            ownership = f"This content belongs to the following agents: {', '.join(item.owners)}."
        return ContentPrompt(
            text_prompt=f"{ownership}\n\n{item.text}",
            description=item.description,
            filepath=item.filepath,
            is_presenter=self.is_presenter(content_id, persona, party),
        )
