import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# --- Shared Models ---

class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class Genre(str, Enum):
    FANTASY = "fantasy"
    MYSTERY = "mystery"
    SCIFI = "scifi"
    HORROR = "horror"
    ADVENTURE = "adventure"
    WESTERN = "western"


class GameStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class NarrativeStage(str, Enum):
    INTRODUCTION = "INTRODUCTION"
    RISING_ACTION = "RISING_ACTION"
    CLIMAX = "CLIMAX"
    FALLING_ACTION = "FALLING_ACTION"
    RESOLUTION = "RESOLUTION"


class Risk(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class OptionOut(CamelModel):
    id: int  # 1-based position within its segment
    text: str
    risk: Risk = Risk.MEDIUM


class SegmentOut(CamelModel):
    id: int
    game_id: int
    sequence_number: int
    content: str
    location_context: str = "Unknown location"
    user_choice: Optional[str] = None
    options: List[OptionOut] = []
    created_at: Optional[datetime.datetime] = None

    @field_validator("options", mode="before")
    @classmethod
    def _number_options(cls, value):
        # Stored options carry no id; their position is the id
        numbered = []
        for position, option in enumerate(value or [], start=1):
            if isinstance(option, dict) and "id" not in option:
                option = {"id": position, **option}
            numbered.append(option)
        return numbered

    @property
    def is_terminal(self) -> bool:
        return not self.options

# --- Request Models ---

class AIPreferences(CamelModel):
    preferred_provider: Optional[str] = None
    preferred_model: Optional[str] = None


class GameCreate(CamelModel):
    genre: Genre
    total_turns: Optional[int] = Field(default=None, ge=1, le=100)
    title: Optional[str] = Field(default=None, max_length=200)
    character_id: Optional[int] = None


class StartGameRequest(AIPreferences):
    pass


class SegmentCreate(AIPreferences):
    option_id: Optional[int] = None
    custom_text: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _exactly_one_choice(self):
        if self.custom_text is not None:
            self.custom_text = self.custom_text.strip() or None
        if (self.option_id is None) == (self.custom_text is None):
            raise ValueError("Provide exactly one of optionId or a non-empty customText")
        return self

# --- Response Models ---

class GameOut(CamelModel):
    id: int
    title: str
    genre: Genre
    status: GameStatus
    turn_count: int
    total_turns: int
    character_id: Optional[int] = None
    narrative_stage: NarrativeStage = NarrativeStage.INTRODUCTION
    created_at: Optional[datetime.datetime] = None
    last_played_at: Optional[datetime.datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.status == GameStatus.COMPLETED


class GameDetail(GameOut):
    story_segments: List[SegmentOut] = []


class StartGameResponse(CamelModel):
    game: GameOut
    first_segment: SegmentOut


class SegmentResponse(CamelModel):
    segment: SegmentOut
    options: List[OptionOut]
    game: GameOut


class TitleSuggestions(CamelModel):
    suggestions: List[str]


class ModelInfo(CamelModel):
    id: str
    name: str
    provider: str
    created: Optional[int] = None
    context_window: Optional[int] = None


class ModelListResponse(CamelModel):
    provider: str
    models: List[ModelInfo]
    error: Optional[str] = None  # "rejected" | "unavailable" when the catalog could not be fetched


class TitleRequest(AIPreferences):
    genre: Genre
