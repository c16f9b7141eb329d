import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from adventure95.api.deps import get_api_key
from adventure95.core.exceptions import NotFoundError, TurnInProgressError
from adventure95.schemas import game as game_schema
from adventure95.schemas import story as story_schema
from adventure95.services import story_generator
from adventure95.services.story_generator import AIOptions
from adventure95.crud import crud_entity, crud_game
from adventure95.database import get_session

router = APIRouter()


async def _get_game_or_404(db: AsyncSession, game_id: int):
    game = await crud_game.get_game(db, game_id)
    if not game:
        raise NotFoundError(f"Game {game_id} not found")
    return game


@router.post("/games", response_model=game_schema.GameOut, status_code=201)
async def create_game(
    game_in: game_schema.GameCreate,
    db: AsyncSession = Depends(get_session),
    api_key: str = Depends(get_api_key),
):
    """
    Creates a new game. The story itself is generated by the start endpoint.
    """
    return await story_generator.create_game(db, game_in)


@router.get("/games", response_model=List[game_schema.GameOut])
async def list_games(db: AsyncSession = Depends(get_session)):
    return await crud_game.list_games(db)


@router.get("/games/generate-titles", response_model=game_schema.TitleSuggestions)
async def generate_titles(
    genre: game_schema.Genre,
    preferred_provider: Optional[str] = Query(default=None, alias="preferredProvider"),
    preferred_model: Optional[str] = Query(default=None, alias="preferredModel"),
    api_key: str = Depends(get_api_key),
):
    ai = AIOptions(provider=preferred_provider, model_id=preferred_model, api_key=api_key)
    suggestions = await story_generator.generate_titles(genre.value, ai)
    return game_schema.TitleSuggestions(suggestions=suggestions)


@router.post("/games/generate-titles", response_model=game_schema.TitleSuggestions)
async def generate_titles_from_body(
    request_in: game_schema.TitleRequest,
    api_key: str = Depends(get_api_key),
):
    ai = AIOptions.from_request(request_in, api_key)
    suggestions = await story_generator.generate_titles(request_in.genre.value, ai)
    return game_schema.TitleSuggestions(suggestions=suggestions)


@router.get("/games/{game_id}", response_model=game_schema.GameDetail)
async def get_game(game_id: int, db: AsyncSession = Depends(get_session)):
    """
    Retrieves a game with its full story log.
    """
    game = await _get_game_or_404(db, game_id)
    segments = await crud_game.get_segments(db, game_id)
    return game_schema.GameDetail(
        **game_schema.GameOut.model_validate(game).model_dump(),
        story_segments=[game_schema.SegmentOut.model_validate(segment) for segment in segments],
    )


@router.post("/games/{game_id}/start", response_model=game_schema.StartGameResponse)
async def start_game(
    game_id: int,
    request_in: Optional[game_schema.StartGameRequest] = None,
    db: AsyncSession = Depends(get_session),
    api_key: str = Depends(get_api_key),
):
    """
    Generates the opening segment; repeated calls return the existing one.
    """
    game, segment = await story_generator.start_game(db, game_id, AIOptions.from_request(request_in, api_key))
    return game_schema.StartGameResponse(
        game=game_schema.GameOut.model_validate(game),
        first_segment=game_schema.SegmentOut.model_validate(segment),
    )


@router.post("/games/{game_id}/segments", response_model=game_schema.SegmentResponse, status_code=201)
async def create_segment(
    game_id: int,
    segment_in: game_schema.SegmentCreate,
    db: AsyncSession = Depends(get_session),
    api_key: str = Depends(get_api_key),
):
    """
    Processes a player's choice and generates the next segment.
    """
    segment, game = await story_generator.generate_next_segment(
        db,
        game_id,
        AIOptions.from_request(segment_in, api_key),
        option_id=segment_in.option_id,
        custom_text=segment_in.custom_text,
    )
    segment_out = game_schema.SegmentOut.model_validate(segment)
    return game_schema.SegmentResponse(
        segment=segment_out,
        options=segment_out.options,
        game=game_schema.GameOut.model_validate(game),
    )


@router.get("/games/{game_id}/items", response_model=List[story_schema.ItemOut])
async def list_items(game_id: int, db: AsyncSession = Depends(get_session)):
    await _get_game_or_404(db, game_id)
    return await crud_entity.list_items(db, game_id)


@router.get("/games/{game_id}/characters", response_model=List[story_schema.NpcOut])
async def list_characters(game_id: int, db: AsyncSession = Depends(get_session)):
    await _get_game_or_404(db, game_id)
    return await crud_entity.list_characters(db, game_id)


@router.delete("/games/{game_id}", status_code=204)
async def delete_game(game_id: int, db: AsyncSession = Depends(get_session)):
    """
    Deletes a game with its story log and tracked entities.
    """
    await _get_game_or_404(db, game_id)
    if story_generator.is_generating(game_id):
        raise TurnInProgressError(f"Game {game_id} is generating a segment")

    await crud_game.delete_game(db, game_id=game_id)
    logging.info(f"Deleted game {game_id}")
    return Response(status_code=204)
