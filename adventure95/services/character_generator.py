import logging
from typing import List, Optional, Sequence

from adventure95.core.exceptions import ParseError
from adventure95.schemas.character import BioSuggestion, GeneratedCharacter, TraitSuggestion
from adventure95.services import llm_gateway, prompt_builder, response_parser
from adventure95.services.story_generator import AIOptions

logger = logging.getLogger(__name__)


async def _complete(prompt: str, system_prompt: str, ai: AIOptions) -> str:
    return await llm_gateway.complete(
        prompt,
        system_prompt,
        provider=ai.provider,
        model_id=ai.model_id,
        api_key=ai.api_key,
        task="character",
    )


async def generate_names(genre: str, gender: Optional[str], ai: AIOptions) -> List[str]:
    raw = await _complete(
        prompt_builder.build_name_prompt(genre, gender), prompt_builder.CHARACTER_NAME_SYSTEM_PROMPT, ai
    )
    names = response_parser.parse_names(raw)
    if not names:
        raise ParseError("Failed to generate character names")
    return names


async def generate_traits(genre: str, name: str, gender: Optional[str], ai: AIOptions) -> List[TraitSuggestion]:
    raw = await _complete(
        prompt_builder.build_traits_prompt(genre, name, gender), prompt_builder.CHARACTER_TRAITS_SYSTEM_PROMPT, ai
    )
    suggestions = response_parser.parse_trait_suggestions(raw)
    if not suggestions:
        raise ParseError("Failed to generate character traits")
    return suggestions


async def generate_bios(
    genre: str, name: str, traits: Sequence[str], gender: Optional[str], ai: AIOptions
) -> List[BioSuggestion]:
    raw = await _complete(
        prompt_builder.build_bio_prompt(genre, name, traits, gender), prompt_builder.CHARACTER_BIO_SYSTEM_PROMPT, ai
    )
    suggestions = response_parser.parse_bio_suggestions(raw)
    if not suggestions:
        raise ParseError("Failed to generate character biographies")
    return suggestions


async def generate_random_character(genre: str, gender: Optional[str], ai: AIOptions) -> GeneratedCharacter:
    """
    Builds a full character in three model calls: name, then traits, then bio.

    Each step takes the first suggestion of the previous one. Nothing is saved.
    """
    name = (await generate_names(genre, gender, ai))[0]
    traits = (await generate_traits(genre, name, gender, ai))[0].traits
    bio = (await generate_bios(genre, name, traits, gender, ai))[0].bio
    logger.info(f"Generated {genre} character '{name}'")
    return GeneratedCharacter(name=name, gender=gender, traits=traits, bio=bio, genre=genre)
