from typing import List, Optional
import datetime
from sqlmodel import Field, SQLModel
from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlalchemy.sql import func


class Game(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    genre: str
    status: str = Field(default="ACTIVE", index=True)  # ACTIVE | COMPLETED
    turn_count: int = Field(default=0)
    total_turns: int = Field(default=16)
    character_id: Optional[int] = Field(default=None, index=True)  # weak reference to a PlayerCharacter
    narrative_stage: str = Field(default="INTRODUCTION")
    last_played_at: Optional[datetime.datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime.datetime = Field(
        sa_column=Column(
            DateTime(timezone=True),
            server_default=func.now(),
            nullable=False,
        )
    )
    updated_at: datetime.datetime = Field(
        sa_column=Column(
            DateTime(timezone=True),
            server_default=func.now(),
            onupdate=func.now(),
            nullable=False,
        )
    )


class StorySegment(SQLModel, table=True):
    """One entry of a game's append-only story log."""
    __table_args__ = (UniqueConstraint("game_id", "sequence_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    game_id: int = Field(foreign_key="game.id", index=True)
    sequence_number: int
    content: str
    location_context: str = Field(default="Unknown location")
    user_choice: Optional[str] = Field(default=None)  # None for the opening segment
    # Ordered [{"text": ..., "risk": ...}]; option ids are 1-based positions in this list
    options: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime.datetime = Field(
        sa_column=Column(
            DateTime(timezone=True),
            server_default=func.now(),
            nullable=False,
        )
    )
