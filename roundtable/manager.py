from __future__ import annotations

import random
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from .agents import FALLBACK_REPLY, PersonaAgent
from .backchannel import PARTY_VIBES, BackchannelJob, RuleBook, gather_backchannels
from .content import ContentRegistry
from .errors import ConfigurationError, StateInconsistency
from .memory import FIRST_SCENE, ConversationMemory
from .messages import ALL, Message, system_message
from .parties import PartyRegistry
from .prompts import (
    content_context,
    moderator_context,
    party_context,
    pattern_context,
    resolve_pattern,
    starting_context,
)
from .states import (
    CONCRETE_DERAIL_MODES,
    ConversationMode,
    DerailMode,
    ImpromptuState,
    OrchestratorState,
    PendingApproval,
    SessionStatus,
    SpeakingMode,
    TopologySnapshot,
    TurnMode,
    parse_enum,
)
from .turns import build_speaker_queue, next_round_robin_speaker, select_next_party, speaker_excluding


BOOTSTRAP_PHASES = 2
REJECTION_COOLDOWN_TURNS = 2
THEME_INTERVAL = 5

DERAILER_PARTY = "Derailer"
PARTICIPANTS_PARTY = "Participants"

PHASE_DESCRIPTIONS = {
    DerailMode.DRIFT: "on a different topic",
    DerailMode.QUESTION: "with a thought-provoking question",
    DerailMode.EMOTIONAL: "focusing on emotional aspects",
}
PHASE_END_TEXT = "The impromptu discussion phase has ended. Returning to the regular conversation."

TRANSITION_PHRASES = (
    "That was an interesting tangent! Let's get back to our main discussion.",
    "Interesting points! Now, returning to what we were discussing before...",
    "I appreciate those thoughts. Let's bring it back to our original topic.",
    "Good discussion! Now, where were we with our main conversation?",
    "Thanks for sharing those ideas. Let's refocus on our main topic.",
)
TOPIC_REFERENCES = (
    "Those were some interesting points about {topics}. Let's get back to our main discussion.",
    "I enjoyed hearing about {topics}. Now, returning to our original topic...",
    "Thanks for that tangent about {topics}. Let's refocus on what we were discussing.",
)


class ConversationManager:
    """Drives one multi-persona conversation.

    Owns the turn loop, party topology, the impromptu phase state machine and
    the side channels (back-channels, interruptions, proactive cut-ins). The
    loop returns whenever it needs outside input: a derail draft awaiting
    approval or a human proxy whose turn it is.
    """

    def __init__(
        self,
        personas: Iterable[PersonaAgent],
        generator: Any,
        max_turns: int = 10,
        hard_max_turns: int | None = None,
        rng: Optional[random.Random] = None,
        memory: Optional[ConversationMemory] = None,
        rules: Optional[RuleBook] = None,
        content: Optional[ContentRegistry] = None,
        on_message: Optional[Callable[[Message], None]] = None,
    ) -> None:
        self.generator = generator
        self.personas: Dict[str, PersonaAgent] = {}
        for persona in personas:
            self.register_persona(persona)
        self.rng = rng or random.Random()
        self.memory = memory or ConversationMemory(generator)
        self.rules = rules or RuleBook()
        self.content = content or ContentRegistry()
        self.content_id: Optional[str] = None
        self.parties = PartyRegistry()
        self.state = OrchestratorState(max_turns=max(1, int(max_turns)))
        self.hard_max_turns = hard_max_turns
        self.conversation_mode = ConversationMode.HUMAN_CONTROL
        self.auto_approve = False
        self.derailing_enabled = True
        self.on_message = on_message

    # -- registration and configuration -------------------------------------

    def register_persona(self, persona: PersonaAgent) -> None:
        if persona.generator is None:
            persona.generator = self.generator
        self.personas[persona.name] = persona

    @property
    def conversation(self) -> List[Message]:
        return self.state.conversation

    @property
    def turn_index(self) -> int:
        return self.state.turn_index

    def set_topic(self, topic: str, conversation_prompt: Optional[str] = None) -> None:
        self.state.topic = topic or ""
        if conversation_prompt is not None:
            self.state.conversation_prompt = conversation_prompt or None

    def set_interaction_pattern(self, pattern: Optional[str]) -> None:
        resolved = resolve_pattern(pattern)
        if pattern and resolved.lower() != str(pattern).lower():
            logger.warning(f"Unknown interaction pattern {pattern!r}; using {resolved}")
        self.state.interaction_pattern = resolved

    def create_party(self, name: str, members: Iterable[str], **config: Any) -> bool:
        members = list(members or [])
        unknown = [m for m in members if m not in self.personas]
        if unknown:
            logger.warning(f"party_members_unknown | party={name} unknown={unknown}")
            members = [m for m in members if m in self.personas]
        try:
            self.parties.create_party(name, members, **config)
        except ConfigurationError as e:
            logger.warning(f"party_config_invalid | party={name} | {e}; retrying with defaults")
            try:
                self.parties.create_party(name, members, description=config.get("description", ""))
            except ConfigurationError as e2:
                logger.error(f"party_create_failed | party={name} | {e2}")
                return False
        return True

    def enable_party_mode(self, turn_mode: Any = TurnMode.FREE, moderator_party: Optional[str] = None) -> None:
        st = self.state
        try:
            mode = parse_enum(TurnMode, turn_mode)
        except ConfigurationError as e:
            logger.warning(f"{e}; falling back to free")
            mode = TurnMode.FREE
        if mode == TurnMode.MODERATED and moderator_party not in self.parties:
            if not self.parties.names:
                logger.warning("moderated mode needs at least one party; falling back to free")
                mode = TurnMode.FREE
            else:
                logger.warning(f"moderator party {moderator_party!r} not found; using {self.parties.names[0]}")
                moderator_party = self.parties.names[0]
        st.party_mode = True
        st.party_turn_mode = mode
        st.moderator_party = moderator_party if mode == TurnMode.MODERATED else None
        st.hand_raising_enabled = mode == TurnMode.MODERATED
        st.speaker_queue = []
        st.raised_hands = []
        st.approved_speakers = []
        logger.info(f"party_mode_enabled | turn_mode={mode.value} moderator={st.moderator_party} parties={self.parties.as_dict()}")

    def disable_party_mode(self) -> None:
        st = self.state
        if st.impromptu.active:
            logger.warning("disable_party_mode ignored | impromptu phase owns the topology")
            return
        st.party_mode = False
        st.hand_raising_enabled = False
        st.moderator_party = None
        st.speaker_queue = []
        st.raised_hands = []
        st.approved_speakers = []
        st.current_party = None

    def remove_party(self, name: str) -> bool:
        st = self.state
        if st.impromptu.active:
            logger.warning(f"remove_party ignored | party={name} during an impromptu phase")
            return False
        try:
            self.parties.remove_party(name)
        except ConfigurationError as e:
            logger.warning(f"remove_party ignored | {e}")
            return False
        st.speaker_queue = [m for m in st.speaker_queue if self.parties.party_of(m) is not None]
        st.raised_hands = [m for m in st.raised_hands if self.parties.party_of(m) is not None]
        if st.current_party == name:
            st.current_party = None
        if st.party_mode and not self.parties.names:
            logger.info("party_mode_disabled | last party removed")
            self.disable_party_mode()
        elif st.party_mode and st.moderator_party == name:
            self.enable_party_mode(st.party_turn_mode)
        return True

    def set_party_representative(self, party: str, representative: str) -> None:
        try:
            self.parties.set_representative(party, representative)
        except ConfigurationError as e:
            logger.warning(f"party_representative_invalid | {e}")
            if party in self.parties and self.parties.members(party):
                self.parties.set_representative(party, self.parties.members(party)[0])

    def set_party_speaking_mode(self, party: str, mode: Any, subset_size: Optional[int] = None) -> None:
        try:
            self.parties.set_speaking_mode(party, mode, subset_size=subset_size)
        except ConfigurationError as e:
            logger.warning(f"party_speaking_mode_invalid | {e}; using all")
            if party in self.parties:
                self.parties.set_speaking_mode(party, SpeakingMode.ALL)

    def set_as_derailer(
        self,
        name: str,
        enable: bool = True,
        mode: Any = "random",
        threshold: float = 0.5,
        min_turns: int = 3,
        max_turns: int = 6,
    ) -> bool:
        persona = self.personas.get(name)
        if persona is None:
            logger.warning(f"set_as_derailer ignored | unknown persona {name!r}")
            return False
        persona.set_as_derailer(enable, mode, threshold, min_turns, max_turns)
        return True

    def set_human_proxy(self, name: str, enable: bool = True) -> None:
        persona = self.personas.get(name)
        if persona is None:
            logger.warning(f"set_human_proxy ignored | unknown persona {name!r}")
            return
        persona.is_human_proxy = bool(enable)

    async def set_conversation_mode(self, mode: Any) -> ConversationMode:
        try:
            resolved = parse_enum(ConversationMode, mode)
        except ConfigurationError as e:
            logger.warning(f"{e}; keeping {self.conversation_mode.value}")
            return self.conversation_mode
        self.conversation_mode = resolved
        self.auto_approve = resolved == ConversationMode.AUTONOMOUS
        self.derailing_enabled = resolved != ConversationMode.REACTIVE
        logger.info(f"conversation_mode | mode={resolved.value} auto_approve={self.auto_approve} derailing={self.derailing_enabled}")
        if self.auto_approve and self.state.pending is not None:
            await self.approve_impromptu()
        return resolved

    def enable_content(self, content_id: str) -> bool:
        if content_id not in self.content:
            logger.warning(f"content_mode ignored | unknown content {content_id!r}")
            return False
        self.content_id = content_id
        logger.info(f"content_mode | id={content_id}")
        return True

    def disable_content(self) -> None:
        if self.content_id:
            logger.info(f"content_mode disabled | id={self.content_id}")
        self.content_id = None

    # -- message bookkeeping -------------------------------------------------

    def last_message(self) -> Optional[Message]:
        for m in reversed(self.state.conversation):
            if not (m.is_system or m.is_backchannel or m.needs_approval):
                return m
        return None

    def last_primary_speaker(self) -> Optional[str]:
        for m in reversed(self.state.conversation):
            if m.is_substantive and not m.needs_approval:
                return m.sender
        return None

    def _party_members(self, party: Optional[str]) -> List[str]:
        if not party or party not in self.parties:
            return []
        return [m for m in self.parties.members(party) if m in self.state.participants]

    def _append(self, message: Message) -> bool:
        """Add a message to the transcript; returns True when it counts as a turn."""
        st = self.state
        if st.party_mode and not message.is_system and message.party is None:
            message.party = self.parties.party_of(message.sender)
        if st.impromptu.active and not message.impromptu_phase:
            message.impromptu_phase = True
            if message.derail_mode is None and st.impromptu.mode is not None:
                message.derail_mode = st.impromptu.mode.value
        st.conversation.append(message)
        counted = message.is_substantive and not message.needs_approval
        if counted:
            self._count(message)
        elif message.is_system:
            logger.info(f"system_message | {message.text}")
        if self.on_message is not None:
            self.on_message(message)
        return counted

    def _count(self, message: Message) -> None:
        st = self.state
        st.turn_index += 1
        imp = st.impromptu
        if imp.active:
            imp.turns_left -= 1
            derailer = self.personas.get(imp.derailer or "")
            if derailer is not None:
                derailer.impromptu.turns_left = imp.turns_left
        self._log_turn(message)

    async def _record(self, message: Message) -> None:
        if self._append(message):
            await self.memory.add_message(message)

    def _log_turn(self, message: Message) -> None:
        raw = message.text or ""
        snippet = raw if len(raw) <= 400 else raw[:400] + '...'
        one_line = ' '.join(snippet.split())
        imp = self.state.impromptu
        phase = f"impromptu:{imp.turns_left}" if imp.active else "normal"
        logger.info(
            f"roundtable_turn | spk={message.sender} to={message.recipient} "
            f"t={self.state.turn_index}/{self.state.max_turns} phase={phase} | msg='{one_line}'"
        )

    # -- budget ----------------------------------------------------------------

    def hard_cap(self) -> int:
        if self.hard_max_turns:
            return int(self.hard_max_turns)
        longest = max((p.derailer.max_turns for p in self.personas.values() if p.derailer.enabled), default=0)
        return self.state.max_turns + 2 * longest + 2

    def _has_budget(self) -> bool:
        st = self.state
        if st.turn_index >= self.hard_cap():
            return False
        return st.turn_index < st.max_turns or st.impromptu.active

    # -- lifecycle -----------------------------------------------------------

    async def start(
        self,
        initiator: Optional[str] = None,
        starting_message: Optional[str] = None,
        participants: Optional[Iterable[str]] = None,
        history: Optional[Iterable[Any]] = None,
    ) -> SessionStatus:
        st = self.state
        requested = list(participants or self.personas)
        unknown = [p for p in requested if p not in self.personas]
        if unknown:
            logger.warning(f"participants_unknown | {unknown}")
        st.participants = [p for p in requested if p in self.personas] or list(self.personas)
        if not st.participants:
            raise ConfigurationError("a conversation needs at least one persona")
        logger.info(
            f"roundtable_start | participants={st.participants} topic={st.topic!r} "
            f"max_turns={st.max_turns} mode={self.conversation_mode.value}"
        )

        if history:
            messages = [m if isinstance(m, Message) else Message.from_dict(m) for m in history]
            st.conversation = messages
            st.turn_index = sum(1 for m in messages if m.is_substantive and not m.needs_approval)
            self.memory.load(messages)
            last = self.last_primary_speaker()
            if last in st.participants:
                st.last_speaker_index = st.participants.index(last)
            if st.party_mode:
                st.current_party = self.parties.party_of(last)
            logger.info(f"roundtable_resume | messages={len(messages)} turn_index={st.turn_index}")
            return await self.run()

        if initiator not in st.participants:
            if initiator:
                logger.warning(f"initiator {initiator!r} is not a participant; using {st.participants[0]}")
            initiator = st.participants[0]
        persona = self.personas[initiator]
        st.last_speaker_index = st.participants.index(initiator)
        if st.party_mode:
            st.current_party = self.parties.party_of(initiator)
        if starting_message:
            text = starting_message
        elif persona.is_human_proxy:
            st.awaiting_human = initiator
            st.status = SessionStatus.AWAITING_HUMAN
            return st.status
        else:
            text = await self.generate_starting_message(persona)
        await self._record(Message(sender=initiator, text=text, recipient=ALL))
        return await self.run()

    async def generate_starting_message(self, persona: PersonaAgent) -> str:
        st = self.state
        party = self.parties.party_of(persona.name) if st.party_mode else None
        config = self.parties.config(party) if party else None
        hint = ""
        prompt = None
        if self.content_id:
            prompt = self.content.get_content_prompt(self.content_id, persona.name, party)
            if prompt is not None and prompt.is_presenter:
                hint = "You are presenting the shared content. Introduce it to everyone and highlight its key points."
            elif prompt is not None:
                hint = "The discussion involves shared content. Start by introducing the topic and inviting opinions."
        context = starting_context(st.topic, st.conversation_prompt, party, config, hint)
        if prompt is not None:
            context = f"{context}\n\n{content_context(prompt.text_prompt, prompt.description, prompt.is_presenter)}"
        result = await persona.reply(FIRST_SCENE, context, ALL, self.rng, is_starting=True)
        if result.full_text == FALLBACK_REPLY:
            return f"Let's discuss the topic: {st.topic or 'anything on your minds'}. What are your thoughts?"
        return result.text

    async def run(self) -> SessionStatus:
        """Advance the conversation until it completes or needs outside input."""
        st = self.state
        if st.paused:
            logger.info("roundtable_paused | waiting for impromptu approval")
            st.status = SessionStatus.AWAITING_APPROVAL
            return st.status
        if st.awaiting_human:
            st.status = SessionStatus.AWAITING_HUMAN
            return st.status
        st.status = SessionStatus.RUNNING

        while self._has_budget():
            if st.paused:
                break
            if self._derail_check_due() and await self.check_for_derail_interventions():
                continue
            if self._moderator_transition_due():
                await self._moderator_transition()
                continue
            speaker = self.select_next_primary_speaker()
            if speaker is None:
                if st.impromptu.active:
                    logger.warning("impromptu_no_speaker | ending phase early")
                    await self.end_impromptu_phase(allow_chain=False)
                    continue
                logger.error("roundtable_no_speaker | no eligible participant")
                break
            if self.personas[speaker].is_human_proxy:
                st.awaiting_human = speaker
                st.status = SessionStatus.AWAITING_HUMAN
                logger.info(f"awaiting_human | speaker={speaker}")
                return st.status
            await self._take_turn(speaker)
            await self._maybe_end_phase()

        if st.impromptu.active and not st.paused and not self._has_budget():
            logger.warning(f"hard_cap_reached | t={st.turn_index}; closing impromptu phase")
            await self.end_impromptu_phase(allow_chain=False)

        if st.paused:
            st.status = SessionStatus.AWAITING_APPROVAL
        else:
            st.status = SessionStatus.COMPLETED
            logger.info(f"roundtable_end | turns={st.turn_index} phases={st.phase_count} messages={len(st.conversation)}")
        return st.status

    async def submit_human_message(self, text: str) -> SessionStatus:
        st = self.state
        speaker = st.awaiting_human
        if not speaker:
            logger.warning("human_message ignored | no human proxy is due")
            return st.status
        st.awaiting_human = None
        if not any(m.is_substantive for m in st.conversation):
            await self._record(Message(sender=speaker, text=text.strip(), recipient=ALL))
            return await self.run()
        message = Message(sender=speaker, text=text.strip(), recipient=self.peek_next_speaker(speaker))
        await self._record(message)
        await self._after_primary(speaker, message)
        await self._maybe_end_phase()
        return await self.run()

    def reset(self) -> None:
        self.state = OrchestratorState(max_turns=self.state.max_turns)
        self.parties = PartyRegistry()
        self.memory = ConversationMemory(self.generator, self.memory.short_term_limit, self.memory.summary_interval)
        self.content_id = None
        for persona in self.personas.values():
            persona.end_impromptu()
        logger.info("roundtable_reset")

    def transcript(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.state.conversation]

    # -- speaker selection ---------------------------------------------------

    def select_next_primary_speaker(self) -> Optional[str]:
        st = self.state
        last = self.last_primary_speaker()
        if st.forced_next_speaker:
            forced = st.forced_next_speaker
            st.forced_next_speaker = None
            blocked = st.impromptu.active and forced == st.impromptu.derailer
            if forced in st.participants and not blocked:
                if forced in st.speaker_queue:
                    st.speaker_queue.remove(forced)
                return forced
            logger.warning(f"forced_speaker_dropped | speaker={forced}")
        try:
            if st.impromptu.active:
                return self._select_impromptu_speaker(last)
            if not st.party_mode:
                speaker, st.last_speaker_index = next_round_robin_speaker(st.participants, last, st.last_speaker_index)
                return speaker
            return self._select_party_speaker(last)
        except StateInconsistency as e:
            pool = [p for p in st.participants if not (st.impromptu.active and p == st.impromptu.derailer)]
            alternate = speaker_excluding(pool, [last], self.rng)
            logger.warning(f"speaker_selection_corrected | {e} | alternate={alternate}")
            return alternate

    def _select_impromptu_speaker(self, last: Optional[str]) -> str:
        imp = self.state.impromptu
        members = [m for m in self._party_members(PARTICIPANTS_PARTY) if m != imp.derailer]
        if not members:
            raise StateInconsistency("impromptu phase has no participants besides the derailer")
        return speaker_excluding(members, [last], self.rng)

    def _select_party_speaker(self, last: Optional[str]) -> str:
        st = self.state
        while st.speaker_queue:
            candidate = st.speaker_queue.pop(0)
            if candidate not in st.participants:
                continue
            if candidate == last and st.speaker_queue:
                st.speaker_queue.append(candidate)
                candidate = st.speaker_queue.pop(0)
            return candidate

        if st.party_turn_mode == TurnMode.MODERATED and st.hand_raising_enabled:
            hand = self._next_raised_hand(last)
            if hand is None:
                self.raise_hands_for_all_parties()
                hand = self._next_raised_hand(last)
            if hand is not None and self.approve_raised_hand(hand):
                return st.speaker_queue.pop(0)

        approved_party = self.parties.party_of(st.approved_speakers[0]) if st.approved_speakers else None
        party = select_next_party(
            self.parties, st.current_party, st.party_turn_mode, self.rng, st.moderator_party, approved_party
        )
        if party is None:
            raise StateInconsistency("no party has members")
        queue = build_speaker_queue(
            self._party_members(party), self.parties.config(party), last, self.rng, first_turn=last is None
        )
        if not queue:
            raise StateInconsistency(f"party {party!r} has no eligible speaker")
        st.current_party = party
        st.speaker_queue = queue
        logger.info(f"party_turn | party={party} queue={queue}")
        return st.speaker_queue.pop(0)

    def peek_next_speaker(self, current: str) -> str:
        """Who the current speaker should address; ``"All"`` when undecided."""
        st = self.state
        if st.impromptu.active:
            return ALL
        if not st.party_mode:
            nxt, _ = next_round_robin_speaker(st.participants, current, st.last_speaker_index)
            return nxt if nxt != current else ALL
        if st.speaker_queue:
            return st.speaker_queue[0]
        if st.party_turn_mode == TurnMode.MODERATED and st.hand_raising_enabled:
            if self.parties.party_of(current) != st.moderator_party:
                members = self._party_members(st.moderator_party)
                config = self.parties.config(st.moderator_party) if members else None
                if config and config.speaking_mode == SpeakingMode.REPRESENTATIVE and config.representative in members:
                    return config.representative
                return members[0] if members else ALL
            return st.approved_speakers[0] if st.approved_speakers else ALL
        if st.party_turn_mode != TurnMode.FREE:
            party = select_next_party(self.parties, st.current_party, st.party_turn_mode, self.rng, st.moderator_party)
            members = self._party_members(party)
            if members and members[0] != current:
                return members[0]
        return ALL

    # -- turns ---------------------------------------------------------------

    async def _reply_context(self, persona: PersonaAgent, next_speaker: str, last_speaker: Optional[str]) -> str:
        st = self.state
        history = await self.memory.get_contextual_history()
        blocks = [
            pattern_context(
                last_speaker,
                persona,
                next_speaker,
                st.interaction_pattern,
                st.topic,
                history.recent_messages,
                st.theme_analysis,
                st.conversation_prompt,
            )
        ]
        party = self.parties.party_of(persona.name) if st.party_mode else None
        if party:
            blocks.append(
                party_context(party, self.parties.config(party), persona.name, self.parties.party_of(last_speaker))
            )
        if st.impromptu.active:
            blocks.append(
                f"You are in an impromptu discussion started by {st.impromptu.derailer}. "
                "Engage with the new direction rather than the original topic."
            )
        if self.content_id:
            prompt = self.content.get_content_prompt(self.content_id, persona.name, party)
            if prompt is not None:
                blocks.append(content_context(prompt.text_prompt, prompt.description, prompt.is_presenter))
        blocks.append(history.full_context)
        return "\n\n".join(b for b in blocks if b)

    async def _take_turn(self, speaker: str) -> Message:
        st = self.state
        persona = self.personas[speaker]
        last = self.last_message()
        last_speaker = self.last_primary_speaker()
        next_speaker = self.peek_next_speaker(speaker)

        interruption = None
        if next_speaker not in (ALL, speaker) and next_speaker in self.personas:
            interruption = self.rules.should_interrupt(speaker, next_speaker, self.rng)
        cut_in = None
        if st.pending_cut_in and st.pending_cut_in.get("speaker") == speaker:
            cut_in = st.pending_cut_in.get("vibe")
        st.pending_cut_in = None

        context = await self._reply_context(persona, next_speaker, last_speaker)
        result = await persona.reply(
            last.text if last else FIRST_SCENE,
            context,
            next_speaker,
            self.rng,
            interruption=interruption,
            cut_in_vibe=cut_in,
        )
        message = Message(
            sender=speaker,
            text=result.text,
            recipient=next_speaker,
            is_interrupted=result.interrupted,
            vibe=interruption.vibe if result.interrupted and interruption else cut_in,
        )
        await self._record(message)
        if result.interrupted and interruption is not None:
            st.pending_cut_in = {"speaker": next_speaker, "vibe": interruption.vibe}
            st.forced_next_speaker = next_speaker
            logger.info(f"interruption | speaker={speaker} by={next_speaker} vibe={interruption.vibe}")
        await self._after_primary(speaker, message)
        return message

    async def _after_primary(self, speaker: str, message: Message) -> None:
        st = self.state
        if speaker in st.approved_speakers:
            st.approved_speakers.remove(speaker)
        for reaction in await self.process_backchannels(speaker, message):
            self._append(reaction)
        if not st.impromptu.active:
            cut_in = await self.check_for_proactive_responses(speaker, message)
            if cut_in is not None:
                self._append(cut_in)
        await self._maybe_refresh_themes()

    async def _maybe_refresh_themes(self) -> None:
        st = self.state
        if st.turn_index - st.last_theme_turn >= THEME_INTERVAL:
            st.last_theme_turn = st.turn_index
            st.theme_analysis = await self.memory.analyze_themes()
            logger.debug(f"theme_analysis | t={st.turn_index} chars={len(st.theme_analysis)}")

    async def process_backchannels(self, speaker: str, message: Message) -> List[Message]:
        """Collect reactions to ``message`` from listeners; one concurrent batch."""
        st = self.state
        jobs: Dict[str, BackchannelJob] = {}
        if st.party_mode:
            party = self.parties.party_of(speaker)
            if party is not None:
                probability = self.parties.config(party).backchannel_probability
                for member in self._party_members(party):
                    if member != speaker and self.rng.random() < probability:
                        jobs[member] = BackchannelJob(member, self.rng.choice(PARTY_VIBES), party, party_pass=True)
        for listener in st.participants:
            if listener == speaker or listener in jobs:
                continue
            decision = self.rules.should_backchannel(speaker, listener, self.rng)
            if decision.backchannel:
                party = self.parties.party_of(listener) if st.party_mode else None
                jobs[listener] = BackchannelJob(listener, decision.vibe, party)
        settled = await gather_backchannels(list(jobs.values()), message.text, self.personas, self.generator, self.rng)
        return [
            Message(
                sender=job.listener,
                text=text,
                recipient=speaker,
                party=job.party,
                is_backchannel=True,
                vibe=job.vibe,
            )
            for job, text in settled
        ]

    async def check_for_proactive_responses(self, speaker: str, message: Message) -> Optional[Message]:
        st = self.state
        if st.impromptu.active or st.paused:
            return None
        context = f"{st.topic} {st.theme_analysis}"
        for name in st.participants:
            if name == speaker:
                continue
            persona = self.personas[name]
            if persona.should_react_proactively(message.text, context, self.rng):
                text = await persona.generate_proactive(message.text)
                logger.info(f"proactive_cut_in | speaker={name} after={speaker}")
                return Message(sender=name, text=text, recipient=speaker, is_proactive=True)
        return None

    # -- moderated hand-raising ----------------------------------------------

    def raise_hands_for_party(self, party: str, exclude_last: bool = True) -> List[str]:
        st = self.state
        if st.impromptu.active or not st.hand_raising_enabled:
            return []
        if party == st.moderator_party or party not in self.parties:
            return []
        members = self._party_members(party)
        last = self.last_primary_speaker() if exclude_last else None
        eligible = [m for m in members if m != last] or members
        if not eligible:
            return []
        config = self.parties.config(party)
        if config.speaking_mode == SpeakingMode.REPRESENTATIVE:
            raisers = [config.representative if config.representative in eligible else eligible[0]]
        elif config.speaking_mode == SpeakingMode.SUBSET:
            raisers = self.rng.sample(eligible, min(config.subset_size or 1, len(eligible)))
        else:
            raisers = list(eligible)
        raisers = [r for r in raisers if r not in st.raised_hands]
        st.raised_hands.extend(raisers)
        return raisers

    def raise_hands_for_all_parties(self, exclude_last: bool = True) -> List[str]:
        st = self.state
        st.raised_hands = []
        raised: List[str] = []
        for party in self.parties.names:
            raised.extend(self.raise_hands_for_party(party, exclude_last))
        if raised:
            self._append(system_message(f"{', '.join(raised)} raised their hands to speak."))
        return raised

    def _next_raised_hand(self, last: Optional[str]) -> Optional[str]:
        st = self.state
        hands = [h for h in st.raised_hands if h in st.participants]
        if not hands:
            return None
        pool = [h for h in hands if h != last] or hands
        return self.rng.choice(pool)

    def approve_raised_hand(self, member: str) -> Optional[str]:
        st = self.state
        if member not in st.raised_hands:
            logger.warning(f"approve_raised_hand ignored | {member} has not raised a hand")
            return None
        last = self.last_primary_speaker()
        if member == last:
            alternatives = [h for h in st.raised_hands if h != last]
            if alternatives:
                member = self.rng.choice(alternatives)
        st.raised_hands.remove(member)
        st.approved_speakers = [member]
        st.speaker_queue = [member]
        st.current_party = self.parties.party_of(member)
        self._append(system_message(f"{member}'s hand has been approved. {member} may speak now."))
        return member

    def _moderators(self) -> List[str]:
        return [m for m in self._party_members(self.state.moderator_party) if not self.personas[m].is_human_proxy]

    def _moderator_transition_due(self) -> bool:
        st = self.state
        if not (st.party_mode and st.party_turn_mode == TurnMode.MODERATED and st.hand_raising_enabled):
            return False
        if st.impromptu.active or st.forced_next_speaker or st.speaker_queue:
            return False
        party = self.parties.party_of(self.last_primary_speaker())
        return party is not None and party != st.moderator_party and bool(self._moderators())

    async def _moderator_transition(self) -> None:
        st = self.state
        last = self.last_primary_speaker()
        last_party = self.parties.party_of(last)
        moderators = self._moderators()
        recent = next(
            (m.sender for m in reversed(st.conversation) if m.is_substantive and m.sender in moderators),
            None,
        )
        pool = [m for m in moderators if m != recent] if len(moderators) > 1 else moderators
        moderator = self.rng.choice(pool)
        hands = [h for h in st.raised_hands if h != moderator and h != last and h in st.participants]
        if len(hands) > 1:
            hands = [h for h in hands if self.parties.party_of(h) != last_party] or hands
        addressed = self.rng.choice(hands) if hands else None

        persona = self.personas[moderator]
        recipient = addressed or ALL
        context = moderator_context(st.moderator_party, addressed) + "\n\n" + await self._reply_context(persona, recipient, last)
        previous = self.last_message()
        result = await persona.reply(previous.text if previous else FIRST_SCENE, context, recipient, self.rng)
        text = result.text
        if result.full_text == FALLBACK_REPLY:
            text = (
                f"Thank you for that input. I'd like to hear from {addressed} next."
                if addressed
                else "Thank you for that input. Does anyone else want to respond?"
            )
        await self._record(Message(sender=moderator, text=text, recipient=recipient, party=st.moderator_party))
        st.current_party = st.moderator_party
        st.approved_speakers = []
        if addressed:
            self.approve_raised_hand(addressed)
        else:
            self.raise_hands_for_all_parties()

    # -- impromptu phases ----------------------------------------------------

    def _derail_check_due(self) -> bool:
        st = self.state
        if st.impromptu.active or st.pending is not None or st.paused or not self.derailing_enabled:
            return False
        if st.turn_index >= st.max_turns or st.last_derail_check == st.turn_index:
            return False
        return any(p.derailer.enabled for p in self.personas.values())

    async def check_for_derail_interventions(self, last_speaker: Optional[str] = None) -> bool:
        """Give each derailer a chance to cut in; returns True when one did."""
        st = self.state
        if st.paused or st.impromptu.active or st.pending is not None or not self.derailing_enabled:
            return False
        st.last_derail_check = st.turn_index
        last = self.last_message()
        if last is None:
            return False
        last_speaker = last_speaker or self.last_primary_speaker()
        for name in st.participants:
            persona = self.personas[name]
            if not persona.derailer.enabled or persona.is_human_proxy or name == last_speaker:
                continue
            until = st.derail_cooldowns.get(name)
            if until is not None and st.turn_index < until:
                logger.debug(f"derail_cooldown | persona={name} until={until} t={st.turn_index}")
                continue
            # the first phases are guaranteed so every conversation shows one
            threshold = 1.0 if st.phase_count < BOOTSTRAP_PHASES else None
            if not persona.should_derail(self.rng, threshold):
                continue
            mode = persona.roll_derail_mode(self.rng)
            turns = persona.pick_phase_turns(self.rng)
            text = await persona.generate_derail(last.text, mode)
            draft = Message(
                sender=name,
                text=text,
                recipient=ALL,
                is_derailing=True,
                impromptu_phase=True,
                derail_mode=mode.value,
            )
            logger.info(f"derail_triggered | persona={name} mode={mode.value} turns={turns} auto={self.auto_approve}")
            if self.auto_approve:
                draft.is_approved = True
                await self._record(draft)
                self.start_impromptu_phase(name, mode, turns)
            else:
                draft.needs_approval = True
                self._append(draft)
                st.pending = PendingApproval(derailer=name, mode=mode, turns=turns, draft=draft)
                st.paused = True
                st.status = SessionStatus.AWAITING_APPROVAL
            return True
        return False

    def start_impromptu_phase(self, derailer: str, mode: DerailMode, turns: int) -> None:
        st = self.state
        others = [n for n in st.participants if n != derailer]
        st.snapshot = TopologySnapshot(
            parties=self.parties.snapshot(),
            party_mode=st.party_mode,
            party_turn_mode=st.party_turn_mode,
            moderator_party=st.moderator_party,
            hand_raising_enabled=st.hand_raising_enabled,
            current_party=st.current_party,
        )
        temp = PartyRegistry()
        temp.create_party(DERAILER_PARTY, [derailer])
        if others:
            temp.create_party(PARTICIPANTS_PARTY, others, speaking_mode=SpeakingMode.RANDOM)
        self.parties = temp
        st.party_mode = True
        st.party_turn_mode = TurnMode.MODERATED
        st.moderator_party = DERAILER_PARTY
        st.hand_raising_enabled = False
        st.current_party = PARTICIPANTS_PARTY if others else DERAILER_PARTY
        st.speaker_queue = []
        st.raised_hands = []
        st.approved_speakers = []
        st.impromptu = ImpromptuState(
            active=True,
            derailer=derailer,
            mode=mode,
            turns_left=turns,
            total_turns=turns,
            has_derailer_spoken_first=True,
            start_index=len(st.conversation),
        )
        self.personas[derailer].start_impromptu(turns)
        st.phase_count += 1
        description = PHASE_DESCRIPTIONS.get(mode, "with a new perspective")
        self._append(
            system_message(
                f"{derailer} has started an impromptu discussion phase for {turns} turns {description}.",
                impromptu_phase=True,
                is_phase_start=True,
                derail_mode=mode.value,
            )
        )
        logger.info(f"impromptu_start | derailer={derailer} mode={mode.value} turns={turns} phase={st.phase_count}")

    async def _maybe_end_phase(self) -> None:
        imp = self.state.impromptu
        if imp.active and imp.turns_left <= 0:
            await self.end_impromptu_phase()

    async def end_impromptu_phase(self, allow_chain: bool = True) -> None:
        st = self.state
        imp = st.impromptu
        if not imp.active:
            return
        derailer = imp.derailer
        last = self.last_primary_speaker()
        phase_messages = [m for m in st.conversation[imp.start_index:] if m.is_substantive]
        st.speaker_queue = []
        st.approved_speakers = []
        st.raised_hands = []
        self._append(system_message(PHASE_END_TEXT, impromptu_phase=True, is_phase_end=True))

        snap = st.snapshot
        if snap is not None:
            self.parties = snap.parties
            st.party_mode = snap.party_mode
            st.party_turn_mode = snap.party_turn_mode
            st.moderator_party = snap.moderator_party
            st.hand_raising_enabled = snap.hand_raising_enabled
            st.current_party = snap.current_party
        st.snapshot = None
        if derailer in self.personas:
            self.personas[derailer].end_impromptu()
        st.impromptu = ImpromptuState()
        logger.info(f"impromptu_end | derailer={derailer} t={st.turn_index}")

        # the floor goes back through someone who is neither the derailer nor the last voice
        pool = [n for n in st.participants if n not in (derailer, last)]
        regulars = [n for n in pool if not self.personas[n].derailer.enabled]
        candidates = regulars or pool
        transition_speaker = self.rng.choice(candidates) if candidates else None
        if transition_speaker is None:
            logger.warning("impromptu_transition_generic | no participant besides the derailer and last speaker")
            self._append(system_message(self._transition_line(phase_messages), is_transition=True))
        else:
            followers = [n for n in regulars if n != transition_speaker] or [
                n for n in pool if n != transition_speaker
            ]
            next_speaker = self.rng.choice(followers) if followers else None
            self._append(
                Message(
                    sender=transition_speaker,
                    text=self._transition_line(phase_messages),
                    recipient=next_speaker or ALL,
                    is_transition=True,
                    next_speaker=next_speaker,
                )
            )
            if next_speaker:
                st.forced_next_speaker = next_speaker
        if allow_chain and st.turn_index < st.max_turns:
            await self.check_for_derail_interventions(last_speaker=transition_speaker)

    def _transition_line(self, phase_messages: List[Message]) -> str:
        words = [w.strip(".,!?;:\"'()") for m in phase_messages for w in m.text.split()]
        keywords = list(dict.fromkeys(w for w in words if len(w) > 5))[:3]
        if keywords:
            return self.rng.choice(TOPIC_REFERENCES).format(topics=", ".join(keywords))
        return self.rng.choice(TRANSITION_PHRASES)

    # -- approval gate -------------------------------------------------------

    async def approve_impromptu(self, edited_text: Optional[str] = None) -> bool:
        st = self.state
        pending = st.pending
        if pending is None:
            logger.warning("impromptu_approve ignored | nothing pending")
            return False
        draft = pending.draft
        if edited_text and edited_text.strip():
            draft.text = edited_text.strip()
        draft.needs_approval = False
        draft.is_approved = True
        st.pending = None
        st.paused = False
        st.status = SessionStatus.IDLE
        self._count(draft)
        await self.memory.add_message(draft)
        logger.info(f"impromptu_approved | derailer={pending.derailer} edited={bool(edited_text)}")
        self.start_impromptu_phase(pending.derailer, pending.mode, pending.turns)
        return True

    def reject_impromptu(self) -> bool:
        st = self.state
        pending = st.pending
        if pending is None:
            logger.warning("impromptu_reject ignored | nothing pending")
            return False
        for i, m in enumerate(st.conversation):
            if m is pending.draft:
                del st.conversation[i]
                break
        st.pending = None
        st.paused = False
        st.status = SessionStatus.IDLE
        st.derail_cooldowns[pending.derailer] = st.turn_index + REJECTION_COOLDOWN_TURNS
        logger.info(
            f"impromptu_rejected | derailer={pending.derailer} cooldown_until={st.derail_cooldowns[pending.derailer]}"
        )
        return True

    def edit_pending_message(self, text: str) -> bool:
        pending = self.state.pending
        if pending is None or not (text or "").strip():
            logger.warning("impromptu_edit ignored | nothing pending or empty text")
            return False
        pending.draft.text = text.strip()
        return True

    async def regenerate_pending_message(self, mode: Any = None) -> bool:
        st = self.state
        pending = st.pending
        if pending is None:
            logger.warning("impromptu_regenerate ignored | nothing pending")
            return False
        new_mode = pending.mode
        if mode is not None:
            try:
                new_mode = parse_enum(DerailMode, mode)
            except ConfigurationError as e:
                logger.warning(f"{e}; keeping {pending.mode.value}")
            if new_mode == DerailMode.RANDOM:
                new_mode = self.rng.choice(CONCRETE_DERAIL_MODES)
        source = None
        for m in reversed(st.conversation):
            if m is pending.draft or m.is_system or m.is_backchannel:
                continue
            source = m
            break
        persona = self.personas[pending.derailer]
        pending.draft.text = await persona.generate_derail(source.text if source else st.topic, new_mode)
        pending.draft.derail_mode = new_mode.value
        pending.mode = new_mode
        if not persona.derailer.random_mode:
            persona.derailer.mode = new_mode
        logger.info(f"impromptu_regenerated | derailer={pending.derailer} mode={new_mode.value}")
        return True
