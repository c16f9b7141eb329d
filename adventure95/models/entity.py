from typing import List, Optional
from sqlmodel import Field, SQLModel
from sqlalchemy import JSON, Column


class GameItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    game_id: int = Field(foreign_key="game.id", index=True)
    name: str
    description: Optional[str] = Field(default=None)
    current_state: str = Field(default="DEFAULT")
    state_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    acquired_at: int = Field(default=0)  # turn numbers
    last_mentioned_at: int = Field(default=0)
    lost_at: Optional[int] = Field(default=None)


class GameCharacter(SQLModel, table=True):
    """A non-player character met during a game."""
    id: Optional[int] = Field(default=None, primary_key=True)
    game_id: int = Field(foreign_key="game.id", index=True)
    name: str
    description: Optional[str] = Field(default=None)
    relationship: str = Field(default="NEUTRAL")
    aliases: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    state_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    first_appeared_at: int = Field(default=0)
    last_appeared_at: int = Field(default=0)
