from typing import List, Optional
from sqlalchemy import delete, exists, func, update
from sqlalchemy.future import select
from sqlalchemy.ext.asyncio import AsyncSession

from adventure95.core.config import settings
from adventure95.models.entity import GameCharacter, GameItem
from adventure95.models.game import Game, StorySegment
from adventure95.schemas.game import GameCreate, GameStatus, NarrativeStage
from adventure95.schemas.story import NormalizedSegment
from datetime import datetime, timedelta, timezone

DEFAULT_TITLE = "New {genre} Adventure"

# Upper bound (exclusive) of each stage as a fraction of the total turns
STAGE_BOUNDARIES = (
    (0.2, NarrativeStage.INTRODUCTION),
    (0.5, NarrativeStage.RISING_ACTION),
    (0.8, NarrativeStage.CLIMAX),
    (1.0, NarrativeStage.FALLING_ACTION),
)


def determine_narrative_stage(turn_count: int, total_turns: int) -> NarrativeStage:
    if total_turns <= 0 or turn_count >= total_turns:
        return NarrativeStage.RESOLUTION
    progress = turn_count / total_turns
    for boundary, stage in STAGE_BOUNDARIES:
        if progress < boundary:
            return stage
    return NarrativeStage.RESOLUTION


async def create_game(db: AsyncSession, game_in: GameCreate) -> Game:
    """
    Creates a new, not yet started game.
    """
    genre = game_in.genre.value
    title = (game_in.title or "").strip() or DEFAULT_TITLE.format(genre=genre.capitalize())
    new_game = Game(
        title=title,
        genre=genre,
        total_turns=game_in.total_turns or settings.DEFAULT_TOTAL_TURNS,
        character_id=game_in.character_id,
    )
    db.add(new_game)
    await db.commit()
    await db.refresh(new_game)
    return new_game


async def list_games(db: AsyncSession) -> List[Game]:
    """
    Lists games, most recently played first.
    """
    result = await db.execute(
        select(Game).order_by(func.coalesce(Game.last_played_at, Game.created_at).desc(), Game.id.desc())
    )
    return list(result.scalars().all())


async def get_game(db: AsyncSession, game_id: int) -> Optional[Game]:
    """
    Retrieves a game by its ID.
    """
    result = await db.execute(select(Game).where(Game.id == game_id))
    return result.scalars().first()


async def get_segments(db: AsyncSession, game_id: int) -> List[StorySegment]:
    result = await db.execute(
        select(StorySegment).where(StorySegment.game_id == game_id).order_by(StorySegment.sequence_number)
    )
    return list(result.scalars().all())


async def get_latest_segment(db: AsyncSession, game_id: int) -> Optional[StorySegment]:
    result = await db.execute(
        select(StorySegment)
        .where(StorySegment.game_id == game_id)
        .order_by(StorySegment.sequence_number.desc())
        .limit(1)
    )
    return result.scalars().first()


async def count_active_games_for_character(db: AsyncSession, character_id: int) -> int:
    result = await db.execute(
        select(func.count(Game.id)).where(
            Game.character_id == character_id, Game.status == GameStatus.ACTIVE.value
        )
    )
    return result.scalar_one()


async def append_segment(
    db: AsyncSession,
    game: Game,
    segment: NormalizedSegment,
    user_choice: Optional[str] = None,
    ending: bool = False,
) -> StorySegment:
    """
    Appends a segment to the game's story log and advances the game.

    The opening segment (no user_choice) leaves the turn counter alone; every
    other segment is exactly one turn. An ending segment is stored without
    options and completes the game. Entity changes staged on the session by
    the caller are committed in the same transaction.
    """
    result = await db.execute(
        select(func.max(StorySegment.sequence_number)).where(StorySegment.game_id == game.id)
    )
    sequence_number = (result.scalar_one_or_none() or 0) + 1

    new_segment = StorySegment(
        game_id=game.id,
        sequence_number=sequence_number,
        content=segment.content,
        location_context=segment.location_context,
        user_choice=user_choice,
        options=[] if ending else [option.model_dump(mode="json") for option in segment.options],
    )
    db.add(new_segment)

    if user_choice is not None:
        # Incremented in SQL; the in-memory row may predate the last committed turn
        await db.execute(
            update(Game)
            .where(Game.id == game.id)
            .values(turn_count=Game.turn_count + 1)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(game, attribute_names=["turn_count"])
    game.narrative_stage = determine_narrative_stage(game.turn_count, game.total_turns).value
    game.last_played_at = datetime.now(timezone.utc)
    if ending:
        game.status = GameStatus.COMPLETED.value
        game.narrative_stage = NarrativeStage.RESOLUTION.value
    db.add(game)

    await db.commit()
    await db.refresh(new_segment)
    await db.refresh(game)
    return new_segment


async def delete_game(db: AsyncSession, game_id: int):
    """
    Deletes a game together with everything it owns.
    """
    for model in (StorySegment, GameItem, GameCharacter):
        await db.execute(delete(model).where(model.game_id == game_id))
    await db.execute(delete(Game).where(Game.id == game_id))
    await db.commit()


async def remove_abandoned_games(db: AsyncSession, abandoned_hours: int) -> int:
    """
    Deletes games that were never started and have not been touched for a number of hours.

    Started games are never pruned, so story logs stay append-only.

    :param db: The async database session.
    :param abandoned_hours: The threshold in hours for a game to be considered abandoned.
    :return: The number of games deleted.
    """
    threshold = datetime.now(timezone.utc) - timedelta(hours=abandoned_hours)

    result = await db.execute(
        select(Game.id)
        .where(Game.updated_at < threshold)
        .where(~exists().where(StorySegment.game_id == Game.id))
    )
    abandoned_ids = list(result.scalars().all())

    count = len(abandoned_ids)

    if count > 0:
        for model in (GameItem, GameCharacter):
            await db.execute(delete(model).where(model.game_id.in_(abandoned_ids)))
        await db.execute(delete(Game).where(Game.id.in_(abandoned_ids)))
        await db.commit()

    return count
