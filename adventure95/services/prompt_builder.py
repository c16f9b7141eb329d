"""
Provider-agnostic prompt templates.

Every builder is a pure function of its inputs: nothing is mutated and the
same inputs always give the same prompt.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

STORY_SYSTEM_PROMPT = """
You are an advanced JSON story generator for text adventures. ALWAYS respond with valid JSON using this exact structure:

{
  "content": "Detailed narrative text...",
  "options": [
    {"text": "Choice 1", "risk": "LOW"},
    {"text": "Choice 2", "risk": "MEDIUM"},
    {"text": "Choice 3", "risk": "HIGH"}
  ],
  "newItems": [
    {"name": "Item Name", "description": "Item details..."}
  ],
  "newCharacters": [
    {"name": "Character Name", "description": "Character details...", "relationship": "NEUTRAL"}
  ],
  "locationContext": "Current location name"
}

Guidelines:
- Risk levels must be: LOW, MEDIUM, or HIGH
- Relationships must be: FRIENDLY, NEUTRAL, or HOSTILE
- Keep options between 2-4 choices
- locationContext should be 1-3 words
- When an item changes state, describe it as "ITEM_UPDATE: name | STATE | reason" in its description
- Escape special JSON characters in text content
- Never include markdown or extra formatting
"""

TITLE_SYSTEM_PROMPT = """
Generate 5 title suggestions as JSON:
{
  "suggestions": ["Title 1", "Title 2", "Title 3", "Title 4", "Title 5"]
}

Guidelines:
- Titles should be 2-6 words
- Match the specified genre
- Be dramatic and thematic
- No quotes in titles
"""

CHARACTER_NAME_SYSTEM_PROMPT = """
Generate 5 character name suggestions as a JSON object:
{
  "suggestions": ["Name 1", "Name 2", "Name 3", "Name 4", "Name 5"]
}

Guidelines:
- Names should fit the specified genre
- Provide a mix of genders unless specified
- Avoid overly common or cliché names
- Each name should be 1-3 words maximum
"""

CHARACTER_TRAITS_SYSTEM_PROMPT = """
Generate 5 possible character trait combinations as a JSON object:
{
  "suggestions": [
    {
      "traits": ["Trait 1", "Trait 2", "Trait 3"],
      "description": "Brief explanation of how these traits combine to form a character"
    }
  ]
}

Guidelines:
- Each suggestion should have 3-4 complementary traits
- Traits should be adjectives like "brave", "cautious", "inventive"
- Ensure traits are appropriate for the genre and name provided
"""

CHARACTER_BIO_SYSTEM_PROMPT = """
Generate 3 possible character backgrounds as a JSON object:
{
  "suggestions": [
    {
      "bio": "Full biography text...",
      "summary": "One-sentence summary of the character's background"
    }
  ]
}

Guidelines:
- Each bio should be 100-150 words
- Bio should incorporate the character's name and traits
- Background should explain the character's motivations and skills
- Bios should fit the specified genre
"""


@dataclass
class StoryContext:
    """Everything a continuation prompt needs, in sequence order."""
    game: Any
    character: Optional[Any] = None
    segments: Sequence[Any] = field(default_factory=list)
    items: Sequence[Any] = field(default_factory=list)
    characters: Sequence[Any] = field(default_factory=list)
    omitted_segments: int = 0


def select_history(segments: Sequence[Any], limit: Optional[int] = None) -> tuple:
    """
    Applies the context-window policy to a segment log.

    Returns (kept_segments, omitted_count). A limit of None keeps the full
    history; a positive limit keeps the most recent `limit` segments.
    """
    ordered = sorted(segments, key=lambda segment: segment.sequence_number)
    if limit is None or limit <= 0 or len(ordered) <= limit:
        return list(ordered), 0
    return ordered[-limit:], len(ordered) - limit


def _character_lines(character) -> List[str]:
    if not character:
        return ["- Character: Anonymous adventurer"]
    lines = [f"- Character: {character.name}"]
    if getattr(character, "gender", None):
        lines.append(f"- Character gender: {character.gender}")
    if character.traits:
        lines.append(f"- Character traits: {', '.join(character.traits)}")
    if character.bio:
        lines.append(f"- Character bio: {character.bio}")
    return lines


def _genre(game) -> str:
    return _enum_value(game.genre)


def build_title_prompt(genre: str) -> str:
    genre = getattr(genre, "value", genre)
    return f"""
Generate 5 title suggestions for a {genre} text adventure game.
The titles should be evocative, memorable, and fit the {genre} genre.
"""


def _gender_line(gender: Optional[str], fallback: str = "") -> str:
    return f"The character is {gender}." if gender else fallback


def build_name_prompt(genre: str, gender: Optional[str] = None) -> str:
    genre = _enum_value(genre)
    return f"""
Generate character name options for a {genre} text adventure game.
{_gender_line(gender, "Include a mix of character genders.")}
Names should feel appropriate for the {genre} genre while remaining original.
"""


def build_traits_prompt(genre: str, name: str, gender: Optional[str] = None) -> str:
    genre = _enum_value(genre)
    return f"""
Generate trait combinations for a character named "{name}" in a {genre} text adventure.
{_gender_line(gender)}
Each set of traits should form a coherent personality that would be fun to role-play in a {genre} setting.
"""


def build_bio_prompt(genre: str, name: str, traits: Sequence[str], gender: Optional[str] = None) -> str:
    genre = _enum_value(genre)
    return f"""
Create character backgrounds for "{name}", a character with the following traits: {', '.join(traits)}.
{_gender_line(gender)}
The background should establish why this character is embarking on adventures in a {genre} setting,
and how the character developed these traits. Leave room for adventure and character growth.
"""


def build_initial_prompt(game, character=None) -> str:
    character_text = "\n".join(_character_lines(character))
    return f"""
Generate the opening scene for a new adventure:
- Title: "{game.title}"
- Genre: "{_genre(game)}"
{character_text}

Write an engaging opening scene that sets up the adventure and presents the player with their first set of choices. Include a location context.
"""


def _segment_block(segment) -> str:
    return (
        f"SEGMENT: {segment.content}\n"
        f"PLAYER CHOICE: {segment.user_choice or 'N/A'}\n"
        f"LOCATION: {segment.location_context or 'Unknown'}\n"
    )


def _enum_value(value) -> str:
    return getattr(value, "value", value)


def build_continuation_prompt(context: StoryContext, chosen_option: str, should_end: bool = False) -> str:
    game = context.game
    ordered = sorted(context.segments, key=lambda segment: segment.sequence_number)
    segments_text = "\n".join(_segment_block(segment) for segment in ordered)
    if context.omitted_segments:
        segments_text = f"({context.omitted_segments} earlier segments omitted)\n\n" + segments_text

    held = [item for item in context.items if getattr(item, "lost_at", None) is None]
    if held:
        items_text = f"Current items: {', '.join(item.name for item in held)}"
    else:
        items_text = "No items in inventory"

    if context.characters:
        npcs = ", ".join(f"{npc.name} ({_enum_value(npc.relationship)})" for npc in context.characters)
        characters_text = f"NPCs encountered: {npcs}"
    else:
        characters_text = "No NPCs encountered yet"

    character_text = "\n".join(_character_lines(context.character))
    ending_text = (
        "IMPORTANT: This is the final segment of the story. Create a satisfying conclusion "
        "that wraps up the adventure. Return an empty options list."
        if should_end else ""
    )
    choices_text = "No choices (this is the end)" if should_end else "2-4 meaningful choices for the player"

    return f"""
GAME CONTEXT:
- Title: "{game.title}"
- Genre: "{_genre(game)}"
- Turn: {game.turn_count}
- Narrative Stage: {_enum_value(game.narrative_stage)}

CHARACTER:
{character_text}

STORY SO FAR:
{segments_text}

INVENTORY:
{items_text}

CHARACTERS:
{characters_text}

PLAYER'S CHOICE:
The player has chosen to: "{chosen_option}"

{ending_text}

Based on this context and the player's choice, continue the story with a new segment. Include:
1. Narrative continuation (200-400 words)
2. {choices_text}
3. Information about any new items or characters
4. Current location
"""
