from typing import List, Optional
from sqlalchemy.future import select
from sqlalchemy.ext.asyncio import AsyncSession

from adventure95.models.character import PlayerCharacter
from adventure95.schemas.character import CharacterCreate, CharacterUpdate


async def list_characters(db: AsyncSession) -> List[PlayerCharacter]:
    result = await db.execute(select(PlayerCharacter).order_by(PlayerCharacter.name, PlayerCharacter.id))
    return list(result.scalars().all())


async def get_character(db: AsyncSession, character_id: int) -> Optional[PlayerCharacter]:
    result = await db.execute(select(PlayerCharacter).where(PlayerCharacter.id == character_id))
    return result.scalars().first()


async def create_character(db: AsyncSession, character_in: CharacterCreate) -> PlayerCharacter:
    data = character_in.model_dump(mode="json")
    character = PlayerCharacter(**{**data, "name": data["name"].strip()})
    db.add(character)
    await db.commit()
    await db.refresh(character)
    return character


async def update_character(db: AsyncSession, character: PlayerCharacter, character_in: CharacterUpdate) -> PlayerCharacter:
    """
    Applies the fields that were actually sent.
    """
    update_data = character_in.model_dump(mode="json", exclude_unset=True)
    for key, value in update_data.items():
        if value is None and key in ("name", "traits", "bio"):
            continue
        setattr(character, key, value)
    db.add(character)
    await db.commit()
    await db.refresh(character)
    return character


async def delete_character(db: AsyncSession, character: PlayerCharacter):
    await db.delete(character)
    await db.commit()
