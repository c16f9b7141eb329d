from typing import List, Optional
import datetime
from sqlmodel import Field, SQLModel
from sqlalchemy import JSON, Column, DateTime
from sqlalchemy.sql import func


class PlayerCharacter(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    gender: Optional[str] = Field(default=None)
    traits: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    bio: str = Field(default="")
    genre: Optional[str] = Field(default=None)
    created_at: datetime.datetime = Field(
        sa_column=Column(
            DateTime(timezone=True),
            server_default=func.now(),
            nullable=False,
        )
    )
