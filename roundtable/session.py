from __future__ import annotations

import random
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .agents import PersonaAgent
from .backchannel import RuleBook
from .config import ContentSettings, ConversationConfig, PartyCommand
from .content import ContentRegistry
from .errors import ConfigurationError
from .llm import OpenAIGenerator
from .manager import ConversationManager
from .memory import ConversationMemory
from .messages import Message
from .states import SessionStatus


def _param(params: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if params.get(k) is not None:
            return params[k]
    return default


class ConversationSession:
    """Entry point for callers: builds a manager from a config and exposes the
    approval and human-input operations that resume it."""

    def __init__(
        self,
        generator: Any = None,
        rng: Optional[random.Random] = None,
        on_message: Optional[Callable[[Message], None]] = None,
        content_dir: Optional[Path] = None,
    ) -> None:
        self.generator = generator if generator is not None else OpenAIGenerator()
        self.rng = rng
        self.on_message = on_message
        self.content_dir = content_dir
        self.content = ContentRegistry(content_dir)
        self.manager: Optional[ConversationManager] = None
        self.config: Optional[ConversationConfig] = None

    def _require(self) -> ConversationManager:
        if self.manager is None:
            raise ConfigurationError("no conversation has been started")
        return self.manager

    def build_manager(self, config: ConversationConfig) -> ConversationManager:
        rng = self.rng or random.Random(config.seed)
        personas: List[PersonaAgent] = []
        for data in config.agents:
            try:
                personas.append(PersonaAgent.from_dict(data, self.generator))
            except ConfigurationError as e:
                logger.warning(f"persona_skipped | {e}")
        known = {p.name for p in personas}
        for name in config.participants:
            if name not in known:
                personas.append(PersonaAgent(name=name, generator=self.generator))
                known.add(name)
        manager = ConversationManager(
            personas,
            self.generator,
            max_turns=config.max_turns,
            hard_max_turns=config.hard_max_turns,
            rng=rng,
            memory=ConversationMemory(self.generator),
            rules=RuleBook.from_config(config.interruption_rules, config.backchannel_rules),
            content=self.content,
            on_message=self.on_message,
        )
        manager.set_topic(config.full_topic, config.conversation_prompt)
        manager.set_interaction_pattern(config.interaction_pattern)
        for command in config.party_commands:
            self.apply_command(manager, command)
        if config.party_mode and not manager.state.party_mode:
            manager.enable_party_mode(config.party_turn_mode, config.moderator_party)
        for command in config.derailer_commands:
            self.apply_command(manager, command)
        if config.content is not None:
            self.apply_content(manager, config.content)
        return manager

    def apply_command(self, manager: ConversationManager, command: PartyCommand) -> None:
        name = command.command
        p = command.params
        if name == "createParty":
            manager.create_party(
                _param(p, "partyName", "party_name", "name", default=""),
                _param(p, "members", default=[]),
                speaking_mode=_param(p, "speakingMode", "speaking_mode", default="all"),
                representative=_param(p, "representative"),
                subset_size=_param(p, "subsetSize", "subset_size"),
                backchannel_probability=_param(p, "backchannelProbability", "backchannel_probability", default=0.3),
                description=_param(p, "partyDescription", "description", default=""),
            )
        elif name == "enablePartyMode":
            manager.enable_party_mode(
                _param(p, "turnMode", "turn_mode", default="free"),
                _param(p, "moderatorParty", "moderator_party"),
            )
        elif name == "setPartyRepresentative":
            manager.set_party_representative(
                _param(p, "partyName", "party_name", default=""),
                _param(p, "representative", "agentName", default=""),
            )
        elif name == "setPartySpeakingMode":
            manager.set_party_speaking_mode(
                _param(p, "partyName", "party_name", default=""),
                _param(p, "mode", "speakingMode", default="all"),
                _param(p, "subsetSize", "subset_size"),
            )
        elif name == "setAsDerailer":
            manager.set_as_derailer(
                _param(p, "agentName", "agent_name", "name", default=""),
                enable=_param(p, "enable", default=True),
                mode=_param(p, "mode", default="random"),
                threshold=_param(p, "threshold", default=0.5),
                min_turns=_param(p, "minTurns", "min_turns", default=3),
                max_turns=_param(p, "maxTurns", "max_turns", default=6),
            )
        elif name == "setHumanProxy":
            manager.set_human_proxy(_param(p, "agentName", "agent_name", "name", default=""), _param(p, "enable", default=True))
        elif name == "removeParty":
            manager.remove_party(_param(p, "partyName", "party_name", "name", default=""))
        elif name == "disablePartyMode":
            manager.disable_party_mode()
        elif name == "disableContent":
            manager.disable_content()
        else:
            logger.warning(f"unknown command {name!r} ignored")

    def apply_content(self, manager: ConversationManager, settings: ContentSettings) -> None:
        try:
            if settings.text:
                item = self.content.register_content(
                    settings.content_id or "shared_content", settings.text, settings.description
                )
            elif settings.filename:
                item = self.content.load_content(settings.filename, settings.content_id, settings.description)
            else:
                logger.warning("content settings have neither text nor filename; content mode disabled")
                return
            if settings.owners:
                self.content.assign_ownership(
                    item.content_id,
                    settings.owners,
                    is_party=settings.is_party,
                    presenter=settings.presenter,
                    presenter_is_party=settings.presenter_is_party,
                )
            else:
                self.content.set_public(
                    item.content_id, settings.presenter, bool(settings.presenter_is_party)
                )
        except ConfigurationError as e:
            logger.warning(f"content_mode disabled | {e}")
            return
        manager.enable_content(item.content_id)

    # -- conversation lifecycle ----------------------------------------------

    async def start_conversation(self, config: ConversationConfig | Dict[str, Any]) -> Dict[str, Any]:
        cfg = config if isinstance(config, ConversationConfig) else ConversationConfig.from_dict(config)
        self.config = cfg
        self.manager = self.build_manager(cfg)
        await self.manager.set_conversation_mode(cfg.conversation_mode)
        await self.manager.start(
            initiator=cfg.initiator,
            starting_message=cfg.starting_message,
            participants=cfg.participants or None,
            history=cfg.conversation_history or None,
        )
        return self.result()

    async def run_command(self, command: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Apply one party/derailer/content command to the live conversation."""
        self.apply_command(self._require(), PartyCommand(command=command, params=dict(params or {})))
        return self.result()

    async def continue_conversation(self) -> Dict[str, Any]:
        await self._require().run()
        return self.result()

    async def approve_impromptu(self, edited_text: Optional[str] = None, resume: bool = True) -> Dict[str, Any]:
        manager = self._require()
        if await manager.approve_impromptu(edited_text) and resume:
            await manager.run()
        return self.result()

    async def reject_impromptu(self, resume: bool = True) -> Dict[str, Any]:
        manager = self._require()
        if manager.reject_impromptu() and resume:
            await manager.run()
        return self.result()

    async def edit_pending_message(self, text: str) -> Dict[str, Any]:
        self._require().edit_pending_message(text)
        return self.result()

    async def regenerate_pending_message(self, mode: Any = None) -> Dict[str, Any]:
        await self._require().regenerate_pending_message(mode)
        return self.result()

    async def set_conversation_mode(self, mode: Any, resume: bool = False) -> Dict[str, Any]:
        manager = self._require()
        await manager.set_conversation_mode(mode)
        if resume and manager.state.status != SessionStatus.COMPLETED:
            await manager.run()
        return self.result()

    async def submit_human_message(self, text: str) -> Dict[str, Any]:
        await self._require().submit_human_message(text)
        return self.result()

    def transcript(self) -> List[Dict[str, Any]]:
        return self.manager.transcript() if self.manager else []

    def reset(self) -> None:
        if self.manager is not None:
            self.manager.reset()
        self.manager = None
        self.config = None
        self.content = ContentRegistry(self.content_dir)

    def result(self) -> Dict[str, Any]:
        manager = self._require()
        st = manager.state
        pending = None
        if st.pending is not None:
            pending = {
                'derailer': st.pending.derailer,
                'mode': st.pending.mode.value,
                'turns': st.pending.turns,
                'text': st.pending.draft.text,
            }
        return {
            'status': st.status.value,
            'phase': st.phase.value,
            'turn_index': st.turn_index,
            'max_turns': st.max_turns,
            'conversation_mode': manager.conversation_mode.value,
            'pending': pending,
            'awaiting_human': st.awaiting_human,
            'parties': manager.parties.as_dict(),
            'conversation': manager.transcript(),
        }
