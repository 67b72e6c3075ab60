"""Tests for the party registry partition and per-party configuration."""

import pytest

from roundtable.errors import ConfigurationError
from roundtable.parties import PartyRegistry
from roundtable.states import SpeakingMode


class TestPartition:
    def test_member_moves_to_new_party(self):
        registry = PartyRegistry()
        registry.create_party("Red", ["A", "B"])
        registry.create_party("Blue", ["B", "C"])

        assert registry.members("Red") == ["A"]
        assert registry.members("Blue") == ["B", "C"]
        assert registry.party_of("B") == "Blue"
        assert registry.is_partition()

    def test_emptied_party_is_dropped(self):
        registry = PartyRegistry()
        registry.create_party("Red", ["A"])
        registry.create_party("Blue", ["A", "B"])

        assert "Red" not in registry
        assert registry.names == ["Blue"]

    def test_invalid_speaking_mode_leaves_registry_untouched(self):
        registry = PartyRegistry()
        registry.create_party("Red", ["A", "B"])
        with pytest.raises(ConfigurationError):
            registry.create_party("Blue", ["B"], speaking_mode="shouting")
        assert registry.as_dict() == {"Red": ["A", "B"]}

    def test_representative_must_be_member(self):
        registry = PartyRegistry()
        with pytest.raises(ConfigurationError):
            registry.create_party("Red", ["A", "B"], speaking_mode="representative", representative="Z")
        assert len(registry) == 0

    def test_snapshot_is_independent(self):
        registry = PartyRegistry()
        registry.create_party("Red", ["A", "B"])
        copy = registry.snapshot()
        registry.create_party("Blue", ["B"])

        assert copy.as_dict() == {"Red": ["A", "B"]}
        assert registry.as_dict() == {"Red": ["A"], "Blue": ["B"]}


class TestPartyConfig:
    def test_defaults(self):
        registry = PartyRegistry()
        config = registry.create_party("Red", ["A", "B", "C"])
        assert config.speaking_mode == SpeakingMode.ALL
        assert config.representative == "A"
        assert config.subset_size == 2
        assert config.backchannel_probability == 0.3

    def test_set_speaking_mode_and_representative(self):
        registry = PartyRegistry()
        registry.create_party("Red", ["A", "B"])
        registry.set_speaking_mode("Red", "representative", representative="B")
        assert registry.config("Red").speaking_mode == SpeakingMode.REPRESENTATIVE
        assert registry.config("Red").representative == "B"

    def test_unknown_party_raises(self):
        with pytest.raises(ConfigurationError):
            PartyRegistry().members("Nobody")


class TestManagerFallbacks:
    def test_bad_representative_falls_back_to_first_member(self, make_manager):
        manager = make_manager()
        manager.create_party("Red", ["A", "B"], speaking_mode="representative")
        manager.set_party_representative("Red", "C")
        assert manager.parties.config("Red").representative == "A"

    def test_bad_speaking_mode_falls_back_to_all(self, make_manager):
        manager = make_manager()
        manager.create_party("Red", ["A", "B"], speaking_mode="representative")
        manager.set_party_speaking_mode("Red", "whisper")
        assert manager.parties.config("Red").speaking_mode == SpeakingMode.ALL

    def test_create_party_retries_with_defaults(self, make_manager):
        manager = make_manager()
        assert manager.create_party("Red", ["A", "B"], speaking_mode="shouting")
        assert manager.parties.config("Red").speaking_mode == SpeakingMode.ALL

    def test_unknown_members_are_dropped(self, make_manager):
        manager = make_manager()
        manager.create_party("Red", ["A", "Ghost"])
        assert manager.parties.members("Red") == ["A"]


class TestManagerRemoval:
    def test_removing_moderator_party_picks_another(self, make_manager):
        manager = make_manager(names=("M", "A", "B"))
        manager.create_party("Mods", ["M"])
        manager.create_party("Red", ["A"])
        manager.create_party("Blue", ["B"])
        manager.enable_party_mode("moderated", moderator_party="Mods")

        assert manager.remove_party("Mods")
        assert "Mods" not in manager.parties
        assert manager.state.moderator_party == "Red"
        assert manager.state.party_mode

    def test_removing_last_party_disables_party_mode(self, make_manager):
        manager = make_manager(names=("A", "B"))
        manager.create_party("Red", ["A", "B"])
        manager.enable_party_mode("free")

        assert manager.remove_party("Red")
        assert not manager.state.party_mode
        assert manager.state.current_party is None

    def test_unknown_party_is_ignored(self, make_manager):
        manager = make_manager()
        assert not manager.remove_party("Nobody")
