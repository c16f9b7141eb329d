from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from adventure95.schemas.game import CamelModel, Risk


class Relationship(str, Enum):
    FRIENDLY = "FRIENDLY"
    NEUTRAL = "NEUTRAL"
    HOSTILE = "HOSTILE"

# --- Parsed model reply ---

class Option(BaseModel):
    text: str
    risk: Risk = Risk.MEDIUM


class NewItem(BaseModel):
    name: str
    description: str = ""


class NewCharacter(BaseModel):
    name: str
    description: str = ""
    relationship: Relationship = Relationship.NEUTRAL


class NormalizedSegment(BaseModel):
    content: str
    options: List[Option] = []
    new_items: List[NewItem] = []
    new_characters: List[NewCharacter] = []
    location_context: str = "Unknown location"
    # The model asked to end the story early ("status": "COMPLETED" or "ending": true)
    ending_signaled: bool = False

# --- Tracked entities ---

class ItemOut(CamelModel):
    id: int
    name: str
    description: Optional[str] = None
    current_state: str
    state_history: List[dict] = []
    acquired_at: int
    last_mentioned_at: int
    lost_at: Optional[int] = None


class NpcOut(CamelModel):
    id: int
    name: str
    description: Optional[str] = None
    relationship: Relationship
    aliases: List[str] = []
    state_history: List[dict] = []
    first_appeared_at: int
    last_appeared_at: int
