from typing import Optional
from fastapi import APIRouter, Depends

from adventure95.api.deps import get_optional_api_key
from adventure95.core.exceptions import MissingApiKeyError, UnsupportedProviderError
from adventure95.schemas import game as game_schema
from adventure95.services import llm_gateway

router = APIRouter()


@router.get("/models/{provider}", response_model=game_schema.ModelListResponse)
async def list_models(provider: str, api_key: Optional[str] = Depends(get_optional_api_key)):
    """
    Lists the provider's chat models.

    A key the provider rejects, or a provider outage, gives an empty list
    with an `error` marker rather than a failed request.
    """
    result = await llm_gateway.list_models(provider, api_key)
    if result.error == "unsupported_provider":
        raise UnsupportedProviderError(f"Unsupported AI provider: {provider}")
    if result.error == "missing_api_key":
        raise MissingApiKeyError(f"No API key available for provider '{result.provider}'")
    return game_schema.ModelListResponse(provider=result.provider, models=result.models, error=result.error)
