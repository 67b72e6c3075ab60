"""Tests for session config parsing and env defaults."""

from roundtable.config import DEFAULT_MAX_TURNS, ConversationConfig, env_max_turns
from roundtable.states import ConversationMode, TurnMode


class TestConversationConfig:
    def test_camel_case_payload(self):
        config = ConversationConfig.from_dict(
            {
                "topic": "Urban parks",
                "subTopic": "rooftop gardens",
                "maxTurns": "7",
                "partyMode": True,
                "partyTurnMode": "moderated",
                "moderatorParty": "Chairs",
                "conversationMode": "autonomous",
                "backChannelRules": [{"from": "A", "to": "B", "frequency": "always"}],
                "derailerCommands": [{"command": "setAsDerailer", "params": {"agentName": "D"}}],
            }
        )
        assert config.max_turns == 7
        assert config.party_mode
        assert config.party_turn_mode == TurnMode.MODERATED
        assert config.moderator_party == "Chairs"
        assert config.conversation_mode == ConversationMode.AUTONOMOUS
        assert len(config.backchannel_rules) == 1
        assert config.derailer_commands[0].command == "setAsDerailer"
        assert config.derailer_commands[0].params == {"agentName": "D"}
        assert "subtopic is rooftop gardens" in config.full_topic

    def test_bad_values_fall_back(self):
        config = ConversationConfig.from_dict(
            {"partyTurnMode": "chaotic", "conversationMode": "sleepy", "maxTurns": "many"}
        )
        assert config.party_turn_mode == TurnMode.FREE
        assert config.conversation_mode == ConversationMode.HUMAN_CONTROL
        assert config.max_turns == DEFAULT_MAX_TURNS

    def test_content_owner_string_becomes_list(self):
        config = ConversationConfig.from_dict(
            {"content": {"text": "Budget draft", "owners": "Red", "isParty": True, "id": "budget"}}
        )
        assert config.content.owners == ["Red"]
        assert config.content.is_party
        assert config.content.content_id == "budget"


class TestEnvDefaults:
    def test_env_max_turns(self, monkeypatch):
        monkeypatch.setenv("ROUNDTABLE_MAX_TURNS", "12")
        assert env_max_turns() == 12
        assert ConversationConfig.from_dict({}).max_turns == 12

    def test_invalid_env_max_turns(self, monkeypatch):
        monkeypatch.setenv("ROUNDTABLE_MAX_TURNS", "lots")
        assert env_max_turns() == DEFAULT_MAX_TURNS

    def test_env_conversation_mode(self, monkeypatch):
        monkeypatch.setenv("ROUNDTABLE_CONVERSATION_MODE", "reactive")
        assert ConversationConfig.from_dict({}).conversation_mode == ConversationMode.REACTIVE
