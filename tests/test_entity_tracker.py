from types import SimpleNamespace

import pytest

from adventure95.services import entity_tracker
from adventure95.services.entity_tracker import (
    apply_identity,
    apply_item_state,
    apply_relationship,
    extract_identity,
    extract_item_state,
    match_entity,
    name_similarity,
    normalize_name,
    strip_markers,
)


# ── Names ────────────────────────────────────────────────────


def test_normalize_name():
    assert normalize_name("The Rusty-Key!") == "rusty key"
    assert normalize_name("  an   Old Map ") == "old map"


def test_similarity():
    assert name_similarity("the Rusty Key", "Rusty key") == 1.0
    assert name_similarity("Rusty Key", "Golden Crown") < 0.5
    assert name_similarity("", "anything") == 0.0


def test_generic_terms():
    assert entity_tracker.is_generic("the thing")
    assert not entity_tracker.is_generic("Silver Dagger")


class TestMatchEntity:
    def test_close_spelling_matches(self):
        key = SimpleNamespace(name="Rusty Key")
        assert match_entity("Rusty Keys", [key]) is key

    def test_unrelated_name_does_not_match(self):
        assert match_entity("Lantern", [SimpleNamespace(name="Rusty Key")]) is None

    def test_alias_matches(self):
        hermit = SimpleNamespace(name="Hermit", aliases=["King Aldric"])
        assert match_entity("king aldric", [hermit]) is hermit

    def test_best_candidate_wins(self):
        a, b = SimpleNamespace(name="Red Gem"), SimpleNamespace(name="Red Gems")
        assert match_entity("Red Gems", [a, b]) is b


# ── Item state ───────────────────────────────────────────────


class TestItemState:
    def test_explicit_marker(self):
        assert extract_item_state("ITEM_UPDATE: Lamp | given away | traded to the monk") == ("GIVEN_AWAY", "traded to the monk")

    def test_marker_without_reason(self):
        assert extract_item_state("ITEM_UPDATE: Lamp | BROKEN") == ("BROKEN", "")

    @pytest.mark.parametrize("text, state", [
        ("The sword shattered against the rock", "BROKEN"),
        ("You gave away the amulet", "GIVEN_AWAY"),
        ("The potion was drunk in one gulp", "CONSUMED"),
        ("The map was stolen by a thief", "LOST"),
        ("You recovered the lantern from the river", "FOUND"),
        ("The blade is enchanted now", "MODIFIED"),
    ])
    def test_keywords(self, text, state):
        assert extract_item_state(text)[0] == state

    def test_no_change(self):
        assert extract_item_state("A plain wooden cup") is None
        assert extract_item_state("") is None

    def test_lost_then_found(self):
        item = SimpleNamespace(current_state="DEFAULT", state_history=[], lost_at=None)
        apply_item_state(item, "LOST", "dropped", turn=3)
        assert item.lost_at == 3
        apply_item_state(item, "FOUND", "picked up", turn=5)
        assert item.lost_at is None
        assert [entry["state"] for entry in item.state_history] == ["LOST", "FOUND"]

    def test_history_is_a_new_list(self):
        history = []
        item = SimpleNamespace(current_state="DEFAULT", state_history=history, lost_at=None)
        apply_item_state(item, "BROKEN", "", turn=1)
        assert history == []
        assert len(item.state_history) == 1


# ── Characters ───────────────────────────────────────────────


class TestCharacterUpdates:
    def test_identity_phrase(self):
        assert extract_identity("The hermit is revealed to be the lost king.") == "the lost king"

    def test_identity_marker(self):
        assert extract_identity("CHARACTER_UPDATE: Hermit | IDENTITY | King Aldric") == "King Aldric"

    def test_no_identity(self):
        assert extract_identity("A quiet old man") is None

    def test_apply_identity_adds_alias_once(self):
        npc = SimpleNamespace(name="Hermit", aliases=[], state_history=[])
        apply_identity(npc, "King Aldric", turn=4)
        apply_identity(npc, "King Aldric", turn=5)
        assert npc.aliases == ["King Aldric"]
        assert npc.state_history[0]["type"] == "IDENTITY_REVEALED"

    def test_relationship_change_is_recorded(self):
        npc = SimpleNamespace(relationship="NEUTRAL", state_history=[])
        apply_relationship(npc, "NEUTRAL", turn=1)
        assert npc.state_history == []
        apply_relationship(npc, "FRIENDLY", turn=2)
        assert npc.relationship == "FRIENDLY"
        assert npc.state_history == [{"turn": 2, "type": "RELATIONSHIP_CHANGED", "from": "NEUTRAL", "to": "FRIENDLY"}]


def test_strip_markers():
    text = "A brass lamp.\nITEM_UPDATE: Lamp | BROKEN | dropped"
    assert strip_markers(text) == "A brass lamp."
