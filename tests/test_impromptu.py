"""Tests for the derailer / impromptu phase state machine and approval gate."""

import asyncio
import random

import pytest

from roundtable.manager import PHASE_END_TEXT
from roundtable.messages import Message
from roundtable.states import ConversationMode, PhaseState, SessionStatus, TurnMode


def build(make_manager, names=("A", "B", "C", "D"), mode="autonomous", **kwargs):
    manager = make_manager(names=names, **kwargs)
    manager.set_as_derailer("D", mode="drift", threshold=0.0, min_turns=3, max_turns=3)
    asyncio.run(manager.set_conversation_mode(mode))
    return manager


def start(manager):
    return asyncio.run(manager.start(initiator="A", starting_message="Let's talk about parks."))


class TestAutonomousPhase:
    def test_phase_runs_exactly_its_turns(self, make_manager):
        manager = build(make_manager, max_turns=5)
        status = start(manager)
        convo = manager.conversation

        assert status == SessionStatus.COMPLETED
        d = next(i for i, m in enumerate(convo) if m.is_derailing)
        assert convo[d].sender == "D"
        assert convo[d].derail_mode == "drift"
        assert convo[d].is_approved and not convo[d].needs_approval

        opener = convo[d + 1]
        assert opener.is_system and opener.is_phase_start
        assert opener.text == "D has started an impromptu discussion phase for 3 turns on a different topic."

        end = next(i for i, m in enumerate(convo) if m.is_phase_end)
        assert convo[end].text == PHASE_END_TEXT
        inside = [m for m in convo[d + 2 : end] if m.is_substantive]
        assert len(inside) == 3
        assert all(m.sender != "D" for m in inside)
        assert all(m.impromptu_phase and m.party == "Participants" for m in inside)

    def test_transition_hands_off_to_a_regular(self, make_manager):
        manager = build(make_manager, max_turns=5)
        start(manager)
        convo = manager.conversation
        end = next(i for i, m in enumerate(convo) if m.is_phase_end)
        transition = next(m for m in convo[end + 1 :] if m.is_transition)

        last_inside = [m for m in convo[:end] if m.is_substantive][-1].sender
        assert transition.sender not in ("D", last_inside)
        assert transition.next_speaker not in ("D", last_inside, transition.sender)
        assert not transition.is_substantive

    def test_turn_accounting(self, make_manager):
        """Opener, derail line and three phase turns make five."""
        manager = build(make_manager, max_turns=5)
        start(manager)
        assert manager.turn_index == 5
        assert manager.state.phase_count == 1
        assert manager.state.impromptu.active is False
        assert manager.personas["D"].impromptu.active is False

    def test_bootstrap_chains_a_second_phase(self, make_manager):
        manager = build(make_manager, max_turns=8)
        start(manager)
        starts = [m for m in manager.conversation if m.is_phase_start]
        ends = [m for m in manager.conversation if m.is_phase_end]
        assert len(starts) == 2
        assert len(ends) == 2
        assert manager.state.phase_count == 2

    def test_topology_is_restored(self, make_manager):
        manager = make_manager(names=("A", "B", "C", "D"), max_turns=4)
        manager.create_party("Red", ["A", "B"], backchannel_probability=0.0)
        manager.create_party("Blue", ["C", "D"], backchannel_probability=0.0)
        manager.enable_party_mode("round-robin")
        manager.set_as_derailer("D", mode="question", min_turns=3, max_turns=3)
        asyncio.run(manager.set_conversation_mode("autonomous"))
        before = manager.parties.as_dict()

        start(manager)

        assert any(m.is_phase_start for m in manager.conversation)
        assert manager.parties.as_dict() == before
        assert manager.state.party_turn_mode == TurnMode.ROUND_ROBIN
        assert manager.state.moderator_party is None
        assert manager.state.hand_raising_enabled is False
        assert manager.state.snapshot is None

    def test_reactive_mode_never_derails(self, make_manager):
        manager = build(make_manager, mode="reactive", max_turns=5)
        start(manager)
        assert not any(m.is_derailing for m in manager.conversation)
        assert manager.state.phase_count == 0


class TestApprovalGate:
    def test_draft_pauses_without_counting(self, make_manager):
        manager = build(make_manager, mode="human-control", max_turns=6)
        status = start(manager)

        assert status == SessionStatus.AWAITING_APPROVAL
        assert manager.state.phase == PhaseState.PENDING_APPROVAL
        assert manager.state.paused
        assert manager.turn_index == 1
        draft = manager.conversation[-1]
        assert draft.needs_approval and draft.sender == "D"
        assert draft not in manager.memory.history

    def test_reject_restores_state_and_cools_down(self, make_manager):
        manager = build(make_manager, mode="human-control", max_turns=6)
        start(manager)
        before = [m.message_id for m in manager.conversation[:-1]]

        assert manager.reject_impromptu()
        assert [m.message_id for m in manager.conversation] == before
        assert manager.turn_index == 1
        assert manager.state.pending is None and not manager.state.paused
        assert manager.state.derail_cooldowns["D"] == 3

        status = asyncio.run(manager.run())
        # the derailer sits out two turns, then the bootstrap tries again
        assert status == SessionStatus.AWAITING_APPROVAL
        counted = [m.sender for m in manager.conversation if m.is_substantive and not m.needs_approval]
        assert counted == ["A", "B", "C"]
        assert manager.conversation[-1].needs_approval
        assert manager.conversation[-1].sender == "D"

    def test_approve_with_edit_starts_phase(self, make_manager):
        manager = build(make_manager, mode="human-control", max_turns=6)
        start(manager)
        draft = manager.state.pending.draft

        assert asyncio.run(manager.approve_impromptu("What if parks were rooftops?"))
        assert draft.text == "What if parks were rooftops?"
        assert draft.is_approved and not draft.needs_approval
        assert manager.turn_index == 2
        assert manager.state.phase == PhaseState.IMPROMPTU_ACTIVE
        assert manager.conversation[-1].is_phase_start
        assert draft in manager.memory.history

    def test_switching_to_autonomous_approves_pending(self, make_manager):
        manager = build(make_manager, mode="human-control", max_turns=6)
        start(manager)
        asyncio.run(manager.set_conversation_mode(ConversationMode.AUTONOMOUS))
        assert manager.state.impromptu.active
        assert manager.state.pending is None

    def test_regenerate_changes_mode_and_text(self, make_manager):
        manager = build(make_manager, mode="human-control", max_turns=6)
        start(manager)
        old_text = manager.state.pending.draft.text

        assert asyncio.run(manager.regenerate_pending_message("emotional"))
        pending = manager.state.pending
        assert pending.draft.derail_mode == "emotional"
        assert pending.draft.text != old_text
        assert manager.turn_index == 1

    def test_edit_pending(self, make_manager):
        manager = build(make_manager, mode="human-control", max_turns=6)
        start(manager)
        assert manager.edit_pending_message("  A new angle.  ")
        assert manager.state.pending.draft.text == "A new angle."

    @pytest.mark.parametrize("action", ["approve", "reject", "edit"])
    def test_operations_without_pending_are_ignored(self, make_manager, action):
        manager = make_manager()
        if action == "approve":
            assert not asyncio.run(manager.approve_impromptu())
        elif action == "reject":
            assert not manager.reject_impromptu()
        else:
            assert not manager.edit_pending_message("x")


class TestHumanProxy:
    def test_loop_waits_for_human_turn(self, make_manager):
        manager = make_manager(names=("A", "B"), max_turns=3)
        manager.set_human_proxy("B")
        status = asyncio.run(manager.start(initiator="A", starting_message="Hi B."))
        assert status == SessionStatus.AWAITING_HUMAN
        assert manager.state.awaiting_human == "B"

        status = asyncio.run(manager.submit_human_message("Hello A, nice to meet you."))
        assert status == SessionStatus.COMPLETED
        speakers = [m.sender for m in manager.conversation if m.is_substantive]
        assert speakers == ["A", "B", "A"]
        assert manager.conversation[1].text == "Hello A, nice to meet you."
        assert manager.conversation[1].recipient == "A"


class TestTransition:
    @pytest.mark.parametrize("seed", range(8))
    def test_transition_speaker_is_never_last_or_derailer(self, make_manager, seed):
        manager = make_manager(names=("A", "D", "E"), max_turns=4, rng=random.Random(seed))
        for name in ("D", "E"):
            manager.set_as_derailer(name, mode="drift", min_turns=2, max_turns=2)
        asyncio.run(manager.set_conversation_mode("autonomous"))
        start(manager)

        convo = manager.conversation
        end = next(i for i, m in enumerate(convo) if m.is_phase_end)
        derailer = [m for m in convo[:end] if m.is_derailing][-1].sender
        last = [m for m in convo[:end] if m.is_substantive][-1].sender
        transition = next(m for m in convo[end + 1 :] if m.is_transition)
        assert transition.sender not in (derailer, last)

    def test_lone_participant_gets_generic_hand_back(self, make_manager):
        manager = make_manager(names=("A", "D"), max_turns=4)
        manager.set_as_derailer("D", mode="drift", min_turns=2, max_turns=2)
        asyncio.run(manager.set_conversation_mode("autonomous"))
        start(manager)

        transition = next(m for m in manager.conversation if m.is_transition)
        assert transition.is_system
        assert transition.recipient == "All"
        assert manager.state.forced_next_speaker is None

    def test_topic_keywords_are_not_repeated(self, make_manager):
        manager = make_manager()
        phase = [
            Message(sender="A", text="Walkable roads."),
            Message(sender="B", text="Walkable neighborhoods help."),
        ]
        line = manager._transition_line(phase)
        assert "Walkable, neighborhoods" in line
        assert line.count("Walkable") == 1


class TestHardCap:
    def test_running_phase_is_closed_at_the_cap(self, make_manager):
        manager = make_manager(names=("A", "B", "C", "D"), max_turns=3, hard_max_turns=4)
        manager.set_as_derailer("D", mode="drift", min_turns=5, max_turns=5)
        asyncio.run(manager.set_conversation_mode("autonomous"))
        status = start(manager)

        assert status == SessionStatus.COMPLETED
        assert manager.turn_index == 4
        assert any(m.is_phase_end for m in manager.conversation)
        assert manager.state.impromptu.active is False
        assert manager.state.snapshot is None
        assert manager.state.party_mode is False
        assert manager.personas["D"].impromptu.active is False
        # no second phase once the cap is hit
        assert manager.state.phase_count == 1


class TestPartyModeReject:
    def test_reject_leaves_party_state_untouched(self, make_manager):
        manager = make_manager(names=("A", "B", "C", "D"), max_turns=6)
        manager.create_party("Red", ["A", "B"], backchannel_probability=0.0)
        manager.create_party("Blue", ["C", "D"], backchannel_probability=0.0)
        manager.enable_party_mode("round-robin")
        manager.set_as_derailer("D", mode="drift", min_turns=3, max_turns=3)
        # hold D back for one turn so the draft lands while Blue still has a queue
        manager.state.derail_cooldowns["D"] = 2
        status = start(manager)

        assert status == SessionStatus.AWAITING_APPROVAL
        st = manager.state
        before = (st.current_party, list(st.speaker_queue), manager.parties.as_dict(), st.party_turn_mode)
        assert before[0] == "Blue" and before[1] == ["D"]

        assert manager.reject_impromptu()
        after = (st.current_party, list(st.speaker_queue), manager.parties.as_dict(), st.party_turn_mode)
        assert after == before
        assert st.party_mode is True
