from typing import List

from sqlalchemy.future import select
from sqlalchemy.ext.asyncio import AsyncSession

from adventure95.models.entity import GameCharacter, GameItem
from adventure95.schemas.story import NewCharacter, NewItem
from adventure95.services import entity_tracker


async def list_items(db: AsyncSession, game_id: int) -> List[GameItem]:
    result = await db.execute(
        select(GameItem).where(GameItem.game_id == game_id).order_by(GameItem.acquired_at, GameItem.id)
    )
    return list(result.scalars().all())


async def list_active_items(db: AsyncSession, game_id: int) -> List[GameItem]:
    """Items still in the player's possession, i.e. never lost, consumed or given away."""
    result = await db.execute(
        select(GameItem)
        .where(GameItem.game_id == game_id, GameItem.lost_at.is_(None))
        .order_by(GameItem.acquired_at, GameItem.id)
    )
    return list(result.scalars().all())


async def list_characters(db: AsyncSession, game_id: int) -> List[GameCharacter]:
    result = await db.execute(
        select(GameCharacter)
        .where(GameCharacter.game_id == game_id)
        .order_by(GameCharacter.first_appeared_at, GameCharacter.id)
    )
    return list(result.scalars().all())


def _longer(current, candidate: str):
    return candidate if len(candidate) > len(current or "") else current


async def record_new_items(db: AsyncSession, game_id: int, mentions: List[NewItem], turn: int) -> List[GameItem]:
    """
    Merges reported items into the game's inventory.

    Changes are staged on the session; the caller commits them together with
    the segment that reported them.
    """
    existing = await list_items(db, game_id)
    touched = []
    for mention in mentions:
        if not mention.name.strip() or entity_tracker.is_generic(mention.name):
            continue
        change = entity_tracker.extract_item_state(mention.description)
        description = entity_tracker.strip_markers(mention.description)

        item = entity_tracker.match_entity(mention.name, existing)
        if item:
            item.last_mentioned_at = turn
            item.description = _longer(item.description, description)
        else:
            item = GameItem(
                game_id=game_id,
                name=mention.name.strip(),
                description=description or None,
                acquired_at=turn,
                last_mentioned_at=turn,
            )
            existing.append(item)
        if change:
            entity_tracker.apply_item_state(item, change[0], change[1], turn)
        db.add(item)
        touched.append(item)
    return touched


async def record_new_characters(
    db: AsyncSession, game_id: int, mentions: List[NewCharacter], turn: int
) -> List[GameCharacter]:
    """Merges reported NPCs into the game's cast, staged like record_new_items."""
    existing = await list_characters(db, game_id)
    touched = []
    for mention in mentions:
        if not mention.name.strip():
            continue
        identity = entity_tracker.extract_identity(mention.description)
        description = entity_tracker.strip_markers(mention.description)
        relationship = mention.relationship.value

        npc = entity_tracker.match_entity(mention.name, existing)
        if npc:
            npc.last_appeared_at = turn
            npc.description = _longer(npc.description, description)
            entity_tracker.apply_relationship(npc, relationship, turn)
        else:
            npc = GameCharacter(
                game_id=game_id,
                name=mention.name.strip(),
                description=description or None,
                relationship=relationship,
                first_appeared_at=turn,
                last_appeared_at=turn,
            )
            existing.append(npc)
        if identity:
            entity_tracker.apply_identity(npc, identity, turn, context=description)
        db.add(npc)
        touched.append(npc)
    return touched
