import logging
from typing import List
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from adventure95.api.deps import get_api_key
from adventure95.core.exceptions import DomainError, NotFoundError
from adventure95.crud import crud_character, crud_game
from adventure95.database import get_session
from adventure95.schemas import character as character_schema
from adventure95.services import character_generator
from adventure95.services.story_generator import AIOptions

router = APIRouter()


async def _get_character_or_404(db: AsyncSession, character_id: int):
    character = await crud_character.get_character(db, character_id)
    if not character:
        raise NotFoundError(f"Character {character_id} not found")
    return character


async def _ensure_not_in_play(db: AsyncSession, character_id: int):
    # A protagonist stays fixed while any of its games is still running
    if await crud_game.count_active_games_for_character(db, character_id):
        raise DomainError(f"Character {character_id} is part of an active game", status_code=409)


# --- LLM-assisted generation ---


@router.post("/characters/generate/names", response_model=character_schema.NameSuggestions)
async def generate_names(request_in: character_schema.NameRequest, api_key: str = Depends(get_api_key)):
    ai = AIOptions.from_request(request_in, api_key)
    names = await character_generator.generate_names(request_in.genre.value, request_in.gender, ai)
    return character_schema.NameSuggestions(names=names)


@router.post("/characters/generate/traits", response_model=character_schema.TraitSuggestions)
async def generate_traits(request_in: character_schema.TraitsRequest, api_key: str = Depends(get_api_key)):
    ai = AIOptions.from_request(request_in, api_key)
    suggestions = await character_generator.generate_traits(
        request_in.genre.value, request_in.name, request_in.gender, ai
    )
    return character_schema.TraitSuggestions(trait_suggestions=suggestions)


@router.post("/characters/generate/bios", response_model=character_schema.BioSuggestions)
async def generate_bios(request_in: character_schema.BioRequest, api_key: str = Depends(get_api_key)):
    ai = AIOptions.from_request(request_in, api_key)
    suggestions = await character_generator.generate_bios(
        request_in.genre.value, request_in.name, request_in.traits, request_in.gender, ai
    )
    return character_schema.BioSuggestions(bio_suggestions=suggestions)


@router.post("/characters/generate/random", response_model=character_schema.RandomCharacterResponse)
async def generate_random_character(request_in: character_schema.NameRequest, api_key: str = Depends(get_api_key)):
    """
    Proposes a complete character. The client saves it with POST /characters if the player keeps it.
    """
    ai = AIOptions.from_request(request_in, api_key)
    character = await character_generator.generate_random_character(request_in.genre.value, request_in.gender, ai)
    return character_schema.RandomCharacterResponse(character=character)


@router.get("/characters", response_model=List[character_schema.CharacterOut])
async def list_characters(db: AsyncSession = Depends(get_session)):
    return await crud_character.list_characters(db)


@router.post("/characters", response_model=character_schema.CharacterOut, status_code=201)
async def create_character(
    character_in: character_schema.CharacterCreate,
    db: AsyncSession = Depends(get_session),
):
    return await crud_character.create_character(db, character_in)


@router.get("/characters/{character_id}", response_model=character_schema.CharacterOut)
async def get_character(character_id: int, db: AsyncSession = Depends(get_session)):
    return await _get_character_or_404(db, character_id)


@router.put("/characters/{character_id}", response_model=character_schema.CharacterOut)
async def update_character(
    character_id: int,
    character_in: character_schema.CharacterUpdate,
    db: AsyncSession = Depends(get_session),
):
    character = await _get_character_or_404(db, character_id)
    await _ensure_not_in_play(db, character_id)
    return await crud_character.update_character(db, character, character_in)


@router.delete("/characters/{character_id}", status_code=204)
async def delete_character(character_id: int, db: AsyncSession = Depends(get_session)):
    character = await _get_character_or_404(db, character_id)
    await _ensure_not_in_play(db, character_id)
    await crud_character.delete_character(db, character)
    logging.info(f"Deleted character {character_id}")
    return Response(status_code=204)
