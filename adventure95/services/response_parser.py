"""
Turns raw model replies into normalized story segments, title lists and
character suggestions.

The JSON path is tried first. Anything that fails to decode or validate
goes through a line-oriented text parser instead, so a segment is always
produced, even from garbage input.
"""
import json
import logging
import re
from typing import Any, List, Optional, Union

from adventure95.core.exceptions import ParseError
from adventure95.schemas.character import BioSuggestion, TraitSuggestion
from adventure95.schemas.game import Risk
from adventure95.schemas.story import NewCharacter, NewItem, NormalizedSegment, Option, Relationship

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("content", "options", "newItems", "newCharacters", "locationContext")
UNKNOWN_LOCATION = "Unknown location"
MAX_TITLES = 5
MAX_NAMES = 5
MAX_TRAIT_SETS = 5
MAX_BIOS = 3

DEFAULT_OPTIONS = [
    Option(text="Take a cautious approach", risk=Risk.LOW),
    Option(text="Continue forward", risk=Risk.MEDIUM),
    Option(text="Try something bold", risk=Risk.HIGH),
]
SAFE_OPTIONS = [
    Option(text="Continue", risk=Risk.MEDIUM),
    Option(text="Take another approach", risk=Risk.MEDIUM),
]

HIGH_RISK_WORDS = ("danger", "risk", "attack", "confront", "challenge", "fight")
LOW_RISK_WORDS = ("careful", "safe", "cautious", "hide", "wait", "retreat")
FRIENDLY_WORDS = ("friend", "ally", "helpful")
HOSTILE_WORDS = ("enemy", "hostile", "antagonist", "foe")

SECTION_HEADERS = {
    "options": ("choices", "choice", "options", "option"),
    "items": ("items", "item", "inventory"),
    "characters": ("characters", "character", "npcs", "npc"),
    "location": ("location", "setting"),
}
_HEADER_RE = re.compile(
    r"^[#*\s]*(?P<name>%s)\s*\**\s*(?::\s*\**\s*(?P<rest>.*))?$"
    % "|".join(name for names in SECTION_HEADERS.values() for name in names),
    re.IGNORECASE,
)
_ENTRY_RE = re.compile(r"^[\d\-*•]+[.)]*\s*(.+)$")
_LOCATION_RE = re.compile(r"\b(?:in|at|near|inside|outside|within) the ([^,.]+)", re.IGNORECASE)
_NUMBERING_RE = re.compile(r"^\d+\.\s*")


def _extract_json_from_string(text: str) -> Optional[str]:
    """
    Extracts a JSON object string from a larger string, cleaning up markdown.
    """
    if not text:
        return None

    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]

    text = text.strip()
    first_bracket_pos = text.find('{')
    if first_bracket_pos == -1:
        return None
    last_bracket_pos = text.rfind('}')
    if last_bracket_pos == -1 or last_bracket_pos < first_bracket_pos:
        return None

    return text[first_bracket_pos:last_bracket_pos+1]


def _decode(response: Union[str, dict, list]) -> Any:
    if not isinstance(response, str):
        return response
    try:
        return json.loads(response)
    except json.JSONDecodeError:
        json_str = _extract_json_from_string(response)
        if not json_str:
            raise ParseError("Reply contains no JSON object")
        try:
            return json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ParseError(f"Reply is not valid JSON: {e}") from e


def _as_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _normalize_risk(value: Any) -> Risk:
    try:
        return Risk(str(value).strip().upper())
    except ValueError:
        return Risk.MEDIUM


def _normalize_relationship(value: Any) -> Relationship:
    try:
        return Relationship(str(value).strip().upper())
    except ValueError:
        return Relationship.NEUTRAL


def determine_risk_level(option_text: str) -> Risk:
    text = option_text.lower()
    if any(word in text for word in HIGH_RISK_WORDS):
        return Risk.HIGH
    if any(word in text for word in LOW_RISK_WORDS):
        return Risk.LOW
    return Risk.MEDIUM


def extract_relationship(text: str) -> Relationship:
    lower_text = text.lower()
    if any(word in lower_text for word in FRIENDLY_WORDS):
        return Relationship.FRIENDLY
    if any(word in lower_text for word in HOSTILE_WORDS):
        return Relationship.HOSTILE
    return Relationship.NEUTRAL


def extract_location(content: str) -> str:
    """Guesses a short location from the first sentence of the narrative."""
    first_sentence = content.split(".")[0]
    match = _LOCATION_RE.search(first_sentence)
    if match and match.group(1).strip():
        return " ".join(match.group(1).split()[:3])
    return UNKNOWN_LOCATION


def _default_options(is_ending: bool) -> List[Option]:
    return [] if is_ending else [option.model_copy() for option in DEFAULT_OPTIONS]


def _signals_ending(data: dict) -> bool:
    return data.get("ending") is True or str(data.get("status", "")).strip().upper() == "COMPLETED"


def parse_segment_json(response: Union[str, dict], is_ending: bool = False) -> NormalizedSegment:
    """Strict JSON path. Raises ParseError when the reply breaks the contract."""
    data = _decode(response)
    if not isinstance(data, dict):
        raise ParseError("Reply is not a JSON object")
    missing = [key for key in REQUIRED_KEYS if key not in data]
    if missing:
        raise ParseError(f"Reply is missing keys: {', '.join(missing)}")

    content = _as_text(data["content"])
    if not content:
        raise ParseError("Reply has no narrative content")
    for key in ("options", "newItems", "newCharacters"):
        if not isinstance(data[key], list):
            raise ParseError(f"'{key}' must be a list")

    options = []
    if not is_ending:
        for raw in data["options"]:
            if isinstance(raw, str):
                if raw.strip():
                    options.append(Option(text=raw.strip(), risk=determine_risk_level(raw)))
            elif isinstance(raw, dict) and _as_text(raw.get("text")):
                options.append(Option(text=_as_text(raw["text"]), risk=_normalize_risk(raw.get("risk"))))
        if not options:
            options = _default_options(is_ending)

    new_items = [
        NewItem(name=_as_text(item.get("name")), description=_as_text(item.get("description")))
        for item in data["newItems"]
        if isinstance(item, dict) and _as_text(item.get("name"))
    ]
    new_characters = [
        NewCharacter(
            name=_as_text(char.get("name")),
            description=_as_text(char.get("description")),
            relationship=_normalize_relationship(char.get("relationship") or "NEUTRAL"),
        )
        for char in data["newCharacters"]
        if isinstance(char, dict) and _as_text(char.get("name"))
    ]

    return NormalizedSegment(
        content=content,
        options=options,
        new_items=new_items,
        new_characters=new_characters,
        location_context=_as_text(data["locationContext"]) or extract_location(content),
        ending_signaled=_signals_ending(data),
    )


def _split_entry(text: str):
    name, _, description = text.partition(":")
    return name.strip(), description.strip()


def parse_segment_text(response: str, is_ending: bool = False) -> NormalizedSegment:
    """Heuristic parser for free-text replies with CHOICES/ITEMS/CHARACTERS/LOCATION headers."""
    content_lines: List[str] = []
    options: List[Option] = []
    new_items: List[NewItem] = []
    new_characters: List[NewCharacter] = []
    location = ""
    section = "content"

    for line in response.split("\n"):
        line = line.strip()
        if not line:
            continue

        inline = False
        header = _HEADER_RE.match(line)
        if header:
            name = header.group("name").lower()
            section = next(key for key, names in SECTION_HEADERS.items() if name in names)
            # "LOCATION: Old Mill" carries its value on the header line
            line = (header.group("rest") or "").strip().strip("*").strip()
            if not line:
                continue
            inline = True

        if section == "content":
            content_lines.append(line)
            continue
        if section == "location":
            location = location or line
            continue

        entry = _ENTRY_RE.match(line)
        if entry:
            text = entry.group(1).strip()
        elif inline:
            text = line
        else:
            continue
        if section == "options" and not is_ending:
            options.append(Option(text=text, risk=determine_risk_level(text)))
        elif section == "items":
            name, description = _split_entry(text)
            if name:
                new_items.append(NewItem(name=name, description=description))
        elif section == "characters":
            name, description = _split_entry(text)
            if name:
                new_characters.append(
                    NewCharacter(name=name, description=description, relationship=extract_relationship(text))
                )

    content = "\n".join(content_lines) or response.strip()
    if not is_ending and not options:
        options = _default_options(is_ending)

    return NormalizedSegment(
        content=content,
        options=[] if is_ending else options,
        new_items=new_items,
        new_characters=new_characters,
        location_context=location or extract_location(content),
    )


def _safe_segment(response: Any, is_ending: bool) -> NormalizedSegment:
    if isinstance(response, str):
        content = response
    elif isinstance(response, dict) and isinstance(response.get("content"), str):
        content = response["content"]
    else:
        content = json.dumps(response, default=str)
    return NormalizedSegment(
        content=content.strip(),
        options=[] if is_ending else [option.model_copy() for option in SAFE_OPTIONS],
        location_context=UNKNOWN_LOCATION,
    )


def parse_segment(response: Union[str, dict], is_ending: bool = False) -> NormalizedSegment:
    """
    Converts a raw model reply into a normalized segment.

    Never raises: a reply that breaks the JSON contract is re-read as free text,
    and if that fails too a minimal segment is built from the raw reply.
    """
    try:
        return parse_segment_json(response, is_ending)
    except ParseError as e:
        logger.warning(f"JSON segment parsing failed ({e}), falling back to text parser")

    try:
        text = response if isinstance(response, str) else json.dumps(response, default=str)
        return parse_segment_text(text, is_ending)
    except Exception:
        logger.exception("Text segment parsing failed, using a minimal segment")
        return _safe_segment(response, is_ending)


def _clean_title(title: str) -> str:
    return title.strip().replace('"', "").strip()


def parse_titles(response: Union[str, dict, list]) -> List[str]:
    """Reads up to five title suggestions from {"suggestions": [...]} or a numbered list."""
    try:
        data = _decode(response)
        suggestions = data.get("suggestions") if isinstance(data, dict) else data
        if not isinstance(suggestions, list):
            raise ParseError("Invalid title response structure")
        titles = [_clean_title(title) for title in suggestions if isinstance(title, str)]
        return [title for title in titles if title][:MAX_TITLES]
    except ParseError as e:
        logger.warning(f"Title parsing failed ({e}), using line fallback")

    text = response if isinstance(response, str) else json.dumps(response)
    titles = [_clean_title(_NUMBERING_RE.sub("", line.strip())) for line in text.split("\n")]
    return [title for title in titles if title][:MAX_TITLES]


def _suggestion_list(response: Union[str, dict, list], what: str) -> list:
    data = _decode(response)
    suggestions = data.get("suggestions") if isinstance(data, dict) else data
    if not isinstance(suggestions, list):
        raise ParseError(f"Invalid {what} response structure")
    return suggestions


def _fallback_lines(response: Union[str, dict, list]) -> List[str]:
    text = response if isinstance(response, str) else json.dumps(response)
    lines = (_NUMBERING_RE.sub("", line.strip()).lstrip("-*• ").strip() for line in text.split("\n"))
    return [line for line in lines if line and line[0] not in "{}[]"]


def parse_names(response: Union[str, dict, list]) -> List[str]:
    """Reads up to five character names, falling back to one name per line."""
    try:
        names = [_clean_title(name) for name in _suggestion_list(response, "name") if isinstance(name, str)]
        return [name for name in names if name][:MAX_NAMES]
    except ParseError as e:
        logger.warning(f"Name parsing failed ({e}), using line fallback")
    return [_clean_title(line) for line in _fallback_lines(response)][:MAX_NAMES]


def parse_trait_suggestions(response: Union[str, dict, list]) -> List[TraitSuggestion]:
    """
    Reads up to five trait combinations.

    Without JSON, every comma-separated line is taken as one combination.
    """
    try:
        suggestions = []
        for entry in _suggestion_list(response, "traits"):
            if not isinstance(entry, dict) or not isinstance(entry.get("traits"), list):
                continue
            traits = [_as_text(trait) for trait in entry["traits"]]
            traits = [trait for trait in traits if trait]
            if traits:
                suggestions.append(
                    TraitSuggestion(traits=traits, description=_as_text(entry.get("description")))
                )
        return suggestions[:MAX_TRAIT_SETS]
    except ParseError as e:
        logger.warning(f"Traits parsing failed ({e}), using line fallback")

    suggestions = []
    for line in _fallback_lines(response):
        traits = [trait.strip() for trait in line.split(",") if trait.strip()]
        if len(traits) > 1:
            suggestions.append(TraitSuggestion(traits=traits))
    return suggestions[:MAX_TRAIT_SETS]


def parse_bio_suggestions(response: Union[str, dict, list]) -> List[BioSuggestion]:
    """Reads up to three biographies; plain text paragraphs are used as bios without a summary."""
    try:
        suggestions = [
            BioSuggestion(bio=_as_text(entry.get("bio")), summary=_as_text(entry.get("summary")))
            for entry in _suggestion_list(response, "bio")
            if isinstance(entry, dict)
        ]
        return [suggestion for suggestion in suggestions if suggestion.bio][:MAX_BIOS]
    except ParseError as e:
        logger.warning(f"Bio parsing failed ({e}), using paragraph fallback")

    text = response if isinstance(response, str) else ""
    paragraphs = [paragraph.strip() for paragraph in re.split(r"\n\s*\n", text)]
    return [BioSuggestion(bio=paragraph) for paragraph in paragraphs if paragraph][:MAX_BIOS]
