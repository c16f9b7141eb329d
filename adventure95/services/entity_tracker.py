"""
Name matching and state inference for items and NPCs.

Entities are referenced by name across segments, so a later mention of
"the Rusty Key" has to land on the "Rusty key" picked up three turns ago.
"""
import difflib
import re
from typing import Iterable, Optional, Tuple

MATCH_THRESHOLD = 0.85
LOST_STATES = ("LOST", "CONSUMED", "GIVEN_AWAY", "DESTROYED")
GENERIC_TERMS = ("thing", "object", "stuff", "it", "them", "those", "item", "something")

# Checked in order, so "given away" wins over a plain "lost"
STATE_KEYWORDS = (
    ("GIVEN_AWAY", ("given away", "gave away", "handed over")),
    ("DESTROYED", ("destroyed", "obliterated")),
    ("BROKEN", ("broken", "shattered", "snapped")),
    ("CONSUMED", ("consumed", "eaten", "drunk", "used up")),
    ("LOST", ("lost", "dropped", "stolen")),
    ("FOUND", ("found", "recovered", "retrieved")),
    ("MODIFIED", ("modified", "enchanted", "repaired", "upgraded")),
)

_ITEM_UPDATE_RE = re.compile(r"ITEM_UPDATE:\s*(?P<name>[^|]+?)\s*\|\s*(?P<state>[A-Za-z_ ]+?)\s*(?:\|\s*(?P<reason>[^\n]*))?$", re.MULTILINE)
_CHARACTER_UPDATE_RE = re.compile(r"CHARACTER_UPDATE:\s*(?P<name>[^|]+?)\s*\|\s*(?P<kind>[A-Za-z_ ]+?)\s*\|\s*(?P<value>[^\n]+)$", re.MULTILINE)
_IDENTITY_RE = re.compile(r"\b(?:revealed to be|true identity is|secretly is|actually is)\s+(?P<identity>[^.,;!?\n]+)", re.IGNORECASE)
_ARTICLE_RE = re.compile(r"^(?:the|a|an)\s+")
_NON_WORD_RE = re.compile(r"[^a-z0-9 ]+")


def normalize_name(name: str) -> str:
    text = _NON_WORD_RE.sub(" ", (name or "").lower())
    text = " ".join(text.split())
    return _ARTICLE_RE.sub("", text)


def name_similarity(a: str, b: str) -> float:
    left, right = normalize_name(a), normalize_name(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    return difflib.SequenceMatcher(None, left, right).ratio()


def is_generic(name: str) -> bool:
    return normalize_name(name) in GENERIC_TERMS


def match_entity(name: str, entities: Iterable, threshold: float = MATCH_THRESHOLD):
    """Returns the entity whose name (or alias) is most similar to `name`, if any reaches the threshold."""
    best, best_score = None, 0.0
    for entity in entities:
        candidates = [entity.name, *(getattr(entity, "aliases", None) or [])]
        score = max(name_similarity(name, candidate) for candidate in candidates)
        if score > best_score:
            best, best_score = entity, score
    return best if best_score >= threshold else None


def extract_item_state(description: str) -> Optional[Tuple[str, str]]:
    """
    Infers a state change from an item description.

    Returns (STATE, context) or None. An explicit
    "ITEM_UPDATE: name | STATE | reason" marker takes precedence over keywords.
    """
    if not description:
        return None
    marker = _ITEM_UPDATE_RE.search(description)
    if marker:
        state = "_".join(marker.group("state").upper().split())
        return state, (marker.group("reason") or "").strip()

    lower_text = description.lower()
    for state, keywords in STATE_KEYWORDS:
        if any(re.search(rf"\b{re.escape(keyword)}\b", lower_text) for keyword in keywords):
            return state, description.strip()
    return None


def extract_identity(description: str) -> Optional[str]:
    """Finds an identity reveal, e.g. "the hermit is revealed to be the lost king"."""
    if not description:
        return None
    marker = _CHARACTER_UPDATE_RE.search(description)
    if marker and "IDENTITY" in marker.group("kind").upper():
        return marker.group("value").strip()
    match = _IDENTITY_RE.search(description)
    if match:
        return match.group("identity").strip()
    return None


def strip_markers(description: str) -> str:
    text = _ITEM_UPDATE_RE.sub("", description or "")
    text = _CHARACTER_UPDATE_RE.sub("", text)
    return text.strip()


def apply_item_state(item, state: str, context: str, turn: int):
    item.current_state = state
    item.state_history = [*(item.state_history or []), {"turn": turn, "state": state, "context": context}]
    if state in LOST_STATES:
        item.lost_at = turn
    elif state == "FOUND":
        item.lost_at = None


def apply_relationship(character, relationship: str, turn: int):
    if character.relationship == relationship:
        return
    character.state_history = [
        *(character.state_history or []),
        {"turn": turn, "type": "RELATIONSHIP_CHANGED", "from": character.relationship, "to": relationship},
    ]
    character.relationship = relationship


def apply_identity(character, identity: str, turn: int, context: str = ""):
    aliases = list(character.aliases or [])
    if identity not in aliases and normalize_name(identity) != normalize_name(character.name):
        aliases.append(identity)
    character.aliases = aliases
    character.state_history = [
        *(character.state_history or []),
        {"turn": turn, "type": "IDENTITY_REVEALED", "newIdentity": identity, "context": context},
    ]
