"""
Async transport for the adventure95 REST API.

Every reply is validated into the shared schemas here, so callers only ever
see typed models or an ApiError; no response-shape sniffing leaks past this
module.
"""
import logging
from typing import Any, List, Optional

import httpx

from adventure95.core.exceptions import AdventureError, MissingApiKeyError
from adventure95.schemas import character as character_schema
from adventure95.schemas import game as game_schema
from adventure95.schemas import story as story_schema

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000/api/v1"


class ApiError(AdventureError):
    """The game server could not complete the request."""

    def __init__(self, message: str = "", status_code: int = 0, retry_after: Optional[float] = None):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after

    def __str__(self):
        return f"{self.message} ({self.status_code})" if self.status_code else self.message


def _error_message(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = None
    if isinstance(detail, list):
        # FastAPI validation errors
        return "; ".join(str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in detail)
    return str(detail) if detail else (response.text or response.reason_phrase)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class GameApiClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        preferred_provider: Optional[str] = None,
        preferred_model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.preferred_provider = preferred_provider
        self.preferred_model = preferred_model
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    def require_api_key(self):
        if not self.has_api_key:
            raise MissingApiKeyError("An API key is required. Add one in the API settings.")

    def _ai_preferences(self) -> dict:
        return game_schema.AIPreferences(
            preferred_provider=self.preferred_provider, preferred_model=self.preferred_model
        ).model_dump(by_alias=True, exclude_none=True)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        requires_key: bool = False,
    ) -> Any:
        if requires_key:
            self.require_api_key()
        headers = {"x-llm-api-key": self.api_key.strip()} if self.has_api_key else {}

        try:
            response = await self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise ApiError("The game server took too long to answer", status_code=408) from e
        except httpx.TransportError as e:
            raise ApiError(f"Could not reach the game server: {e}") from e

        if response.status_code >= 400:
            message = _error_message(response)
            logger.debug(f"{method} {path} failed with {response.status_code}: {message}")
            raise ApiError(message, status_code=response.status_code, retry_after=_retry_after(response))
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # --- Games ---

    async def create_game(
        self,
        genre: str,
        total_turns: Optional[int] = None,
        title: Optional[str] = None,
        character_id: Optional[int] = None,
    ) -> game_schema.GameOut:
        body = game_schema.GameCreate(
            genre=genre, total_turns=total_turns, title=title, character_id=character_id
        ).model_dump(mode="json", by_alias=True, exclude_none=True)
        data = await self._request("POST", "/games", json=body, requires_key=True)
        return game_schema.GameOut.model_validate(data)

    async def list_games(self) -> List[game_schema.GameOut]:
        data = await self._request("GET", "/games")
        return [game_schema.GameOut.model_validate(item) for item in data or []]

    async def get_game(self, game_id: int) -> game_schema.GameDetail:
        data = await self._request("GET", f"/games/{game_id}")
        return game_schema.GameDetail.model_validate(data)

    async def start_game(self, game_id: int) -> game_schema.StartGameResponse:
        data = await self._request("POST", f"/games/{game_id}/start", json=self._ai_preferences(), requires_key=True)
        return game_schema.StartGameResponse.model_validate(data)

    async def submit_segment(
        self, game_id: int, option_id: Optional[int] = None, custom_text: Optional[str] = None
    ) -> game_schema.SegmentResponse:
        body = {**self._ai_preferences(), "optionId": option_id, "customText": custom_text}
        body = {key: value for key, value in body.items() if value is not None}
        data = await self._request("POST", f"/games/{game_id}/segments", json=body, requires_key=True)
        return game_schema.SegmentResponse.model_validate(data)

    async def delete_game(self, game_id: int):
        await self._request("DELETE", f"/games/{game_id}")

    async def generate_titles(self, genre: str) -> List[str]:
        params = {"genre": genre, **self._ai_preferences()}
        data = await self._request("GET", "/games/generate-titles", params=params, requires_key=True)
        return game_schema.TitleSuggestions.model_validate(data).suggestions

    async def list_items(self, game_id: int) -> List[story_schema.ItemOut]:
        data = await self._request("GET", f"/games/{game_id}/items")
        return [story_schema.ItemOut.model_validate(item) for item in data or []]

    async def list_npcs(self, game_id: int) -> List[story_schema.NpcOut]:
        data = await self._request("GET", f"/games/{game_id}/characters")
        return [story_schema.NpcOut.model_validate(item) for item in data or []]

    # --- Models ---

    async def list_models(self, provider: str) -> game_schema.ModelListResponse:
        data = await self._request("GET", f"/models/{provider}", requires_key=True)
        return game_schema.ModelListResponse.model_validate(data)

    # --- Player characters ---

    async def list_characters(self) -> List[character_schema.CharacterOut]:
        data = await self._request("GET", "/characters")
        return [character_schema.CharacterOut.model_validate(item) for item in data or []]

    async def create_character(self, character_in: character_schema.CharacterCreate) -> character_schema.CharacterOut:
        data = await self._request("POST", "/characters", json=character_in.model_dump(mode="json", by_alias=True))
        return character_schema.CharacterOut.model_validate(data)

    async def generate_character_names(self, genre: str, gender: Optional[str] = None) -> List[str]:
        body = {**self._ai_preferences(), "genre": genre, "gender": gender}
        data = await self._request("POST", "/characters/generate/names", json=body, requires_key=True)
        return character_schema.NameSuggestions.model_validate(data).names

    async def generate_random_character(
        self, genre: str, gender: Optional[str] = None
    ) -> character_schema.GeneratedCharacter:
        body = {**self._ai_preferences(), "genre": genre, "gender": gender}
        data = await self._request("POST", "/characters/generate/random", json=body, requires_key=True)
        return character_schema.RandomCharacterResponse.model_validate(data).character
