import datetime
from typing import List, Optional

from pydantic import Field

from adventure95.schemas.game import AIPreferences, CamelModel, Genre


class CharacterCreate(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    gender: Optional[str] = None
    traits: List[str] = []
    bio: str = ""
    genre: Optional[Genre] = None


class CharacterUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    gender: Optional[str] = None
    traits: Optional[List[str]] = None
    bio: Optional[str] = None
    genre: Optional[Genre] = None


class CharacterOut(CamelModel):
    id: int
    name: str
    gender: Optional[str] = None
    traits: List[str] = []
    bio: str = ""
    genre: Optional[Genre] = None
    created_at: Optional[datetime.datetime] = None


# --- Generation ---

class NameRequest(AIPreferences):
    genre: Genre
    gender: Optional[str] = None


class TraitsRequest(NameRequest):
    name: str = Field(min_length=1, max_length=100)


class BioRequest(TraitsRequest):
    traits: List[str] = Field(min_length=1)


class TraitSuggestion(CamelModel):
    traits: List[str]
    description: str = ""


class BioSuggestion(CamelModel):
    bio: str
    summary: str = ""


class NameSuggestions(CamelModel):
    names: List[str]


class TraitSuggestions(CamelModel):
    trait_suggestions: List[TraitSuggestion]


class BioSuggestions(CamelModel):
    bio_suggestions: List[BioSuggestion]


class GeneratedCharacter(CamelModel):
    """A complete character proposal; it is not saved until posted to /characters."""
    name: str
    gender: Optional[str] = None
    traits: List[str]
    bio: str
    genre: Genre


class RandomCharacterResponse(CamelModel):
    character: GeneratedCharacter
