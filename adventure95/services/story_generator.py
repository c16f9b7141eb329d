import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from adventure95.core.config import settings
from adventure95.core.exceptions import (
    AdventureError,
    DomainError,
    GameCompletedError,
    GameNotStartedError,
    NotFoundError,
    PreconditionError,
    TurnInProgressError,
)
from adventure95.crud import crud_character, crud_entity, crud_game
from adventure95.models.game import Game, StorySegment
from adventure95.schemas.game import AIPreferences, GameCreate, GameStatus
from adventure95.services import llm_gateway, prompt_builder, response_parser
from adventure95.services.sse_service import game_channel, redis_client

logger = logging.getLogger(__name__)

# Games with a generation running in this process
_games_in_progress: Set[int] = set()


@dataclass
class AIOptions:
    """Provider selection for one request, from the body and the x-llm-api-key header."""
    provider: Optional[str] = None
    model_id: Optional[str] = None
    api_key: Optional[str] = None

    @classmethod
    def from_request(cls, preferences: Optional[AIPreferences], api_key: Optional[str]) -> "AIOptions":
        return cls(
            provider=preferences.preferred_provider if preferences else None,
            model_id=preferences.preferred_model if preferences else None,
            api_key=api_key,
        )


@contextmanager
def _single_flight(game_id: int):
    if game_id in _games_in_progress:
        raise TurnInProgressError(f"A turn is already being generated for game {game_id}")
    _games_in_progress.add(game_id)
    try:
        yield
    finally:
        _games_in_progress.discard(game_id)


def is_generating(game_id: int) -> bool:
    return game_id in _games_in_progress


async def _publish(game_id: int, event: str, **data):
    await redis_client.publish(game_channel(game_id), {"event": event, **data})


async def _complete(prompt: str, system_prompt: str, ai: AIOptions, task: str) -> str:
    return await llm_gateway.complete(
        prompt,
        system_prompt,
        provider=ai.provider,
        model_id=ai.model_id,
        api_key=ai.api_key,
        task=task,
    )


async def _require_game(db: AsyncSession, game_id: int) -> Game:
    game = await crud_game.get_game(db, game_id)
    if not game:
        raise NotFoundError(f"Game {game_id} not found")
    return game


async def _player_character(db: AsyncSession, game: Game):
    if game.character_id is None:
        return None
    # Weak reference: a deleted character just means an anonymous protagonist
    return await crud_character.get_character(db, game.character_id)


async def create_game(db: AsyncSession, game_in: GameCreate) -> Game:
    if game_in.character_id is not None and not await crud_character.get_character(db, game_in.character_id):
        raise NotFoundError(f"Character {game_in.character_id} not found")
    game = await crud_game.create_game(db, game_in)
    logger.info(f"Created game {game.id} ('{game.title}', {game.genre}, {game.total_turns} turns)")
    return game


async def generate_titles(genre: str, ai: AIOptions) -> List[str]:
    raw = await _complete(
        prompt_builder.build_title_prompt(genre), prompt_builder.TITLE_SYSTEM_PROMPT, ai, task="title"
    )
    return response_parser.parse_titles(raw)


async def start_game(db: AsyncSession, game_id: int, ai: AIOptions) -> Tuple[Game, StorySegment]:
    """
    Generates the opening segment of a game.

    Starting an already started game returns its first segment instead of
    generating another one.
    """
    with _single_flight(game_id):
        game = await _require_game(db, game_id)
        segments = await crud_game.get_segments(db, game_id)
        if segments:
            return game, segments[0]

        await _publish(game_id, "generation_started", turn=0)
        character = await _player_character(db, game)
        try:
            raw = await _complete(
                prompt_builder.build_initial_prompt(game, character),
                prompt_builder.STORY_SYSTEM_PROMPT,
                ai,
                task="story",
            )
        except AdventureError as e:
            await _publish(game_id, "error", message=e.message)
            raise

        parsed = response_parser.parse_segment(raw, is_ending=False)
        await crud_entity.record_new_items(db, game_id, parsed.new_items, turn=0)
        await crud_entity.record_new_characters(db, game_id, parsed.new_characters, turn=0)
        segment = await crud_game.append_segment(db, game, parsed)

    logger.info(f"Started game {game_id} at '{segment.location_context}'")
    await _publish(game_id, "segment_ready", segmentId=segment.id, sequenceNumber=segment.sequence_number)
    return game, segment


def _choice_text(latest: StorySegment, option_id: Optional[int], custom_text: Optional[str]) -> str:
    if option_id is not None:
        options = latest.options or []
        if not 1 <= option_id <= len(options):
            raise DomainError(f"Option {option_id} is not available for the current segment")
        return options[option_id - 1]["text"]
    text = (custom_text or "").strip()
    if not text:
        raise PreconditionError("Choose an option or enter your own action")
    return text


async def generate_next_segment(
    db: AsyncSession,
    game_id: int,
    ai: AIOptions,
    option_id: Optional[int] = None,
    custom_text: Optional[str] = None,
) -> Tuple[StorySegment, Game]:
    """
    Advances a game by one turn.

    The choice is validated against the latest segment before any provider
    call. The turn that reaches total_turns, or whose reply signals an
    ending, is stored without options and completes the game.
    """
    # All reads happen inside the guard
    with _single_flight(game_id):
        game = await _require_game(db, game_id)
        if game.status == GameStatus.COMPLETED.value:
            raise GameCompletedError(f"Game {game_id} is already completed")
        latest = await crud_game.get_latest_segment(db, game_id)
        if not latest:
            raise GameNotStartedError(f"Game {game_id} has not been started")
        choice = _choice_text(latest, option_id, custom_text)

        next_turn = game.turn_count + 1
        should_end = next_turn >= game.total_turns
        await _publish(game_id, "generation_started", turn=next_turn)

        kept, omitted = prompt_builder.select_history(
            await crud_game.get_segments(db, game_id), settings.PROMPT_HISTORY_SEGMENTS
        )
        context = prompt_builder.StoryContext(
            game=game,
            character=await _player_character(db, game),
            segments=kept,
            items=await crud_entity.list_active_items(db, game_id),
            characters=await crud_entity.list_characters(db, game_id),
            omitted_segments=omitted,
        )
        try:
            raw = await _complete(
                prompt_builder.build_continuation_prompt(context, choice, should_end),
                prompt_builder.STORY_SYSTEM_PROMPT,
                ai,
                task="story",
            )
        except AdventureError as e:
            await _publish(game_id, "error", message=e.message)
            raise

        parsed = response_parser.parse_segment(raw, is_ending=should_end)
        ending = should_end or parsed.ending_signaled
        await crud_entity.record_new_items(db, game_id, parsed.new_items, turn=next_turn)
        await crud_entity.record_new_characters(db, game_id, parsed.new_characters, turn=next_turn)
        segment = await crud_game.append_segment(db, game, parsed, user_choice=choice, ending=ending)

    logger.info(f"Game {game_id} advanced to turn {game.turn_count}/{game.total_turns}")
    await _publish(game_id, "segment_ready", segmentId=segment.id, sequenceNumber=segment.sequence_number)
    if ending:
        logger.info(f"Game {game_id} completed")
        await _publish(game_id, "game_completed", turnCount=game.turn_count)
    return segment, game
