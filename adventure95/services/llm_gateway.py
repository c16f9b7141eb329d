"""
Uniform access to the LLM providers.

Both supported providers speak the OpenAI chat-completions protocol, so one
`openai.AsyncOpenAI` client pointed at the provider's base URL serves them
all. The gateway never retries: a failed call is mapped onto the error
taxonomy and handed back to the caller.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import openai

from adventure95.core.config import settings
from adventure95.core.exceptions import (
    AdventureError,
    LLMProviderError,
    MissingApiKeyError,
    ProviderAuthError,
    ProviderUnavailableError,
    RateLimitedError,
    UnsupportedProviderError,
)
from adventure95.schemas.game import ModelInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Provider:
    name: str
    base_url_setting: str
    api_key_setting: str

    @property
    def base_url(self) -> str:
        return getattr(settings, self.base_url_setting)

    @property
    def env_api_key(self) -> Optional[str]:
        return getattr(settings, self.api_key_setting)


PROVIDERS: Dict[str, Provider] = {
    "openai": Provider("openai", "OPENAI_BASE_URL", "OPENAI_API_KEY"),
    "groq": Provider("groq", "GROQ_BASE_URL", "GROQ_API_KEY"),
}

RECOMMENDED_MODELS = {
    "openai": {
        "story": "gpt-4-turbo",
        "title": "gpt-3.5-turbo",
        "character": "gpt-3.5-turbo",
        "default": "gpt-3.5-turbo",
    },
    "groq": {
        "story": "llama-3.3-70b-versatile",
        "title": "llama-3.1-8b-instant",
        "character": "llama-3.1-8b-instant",
        "default": "llama-3.1-8b-instant",
    },
}

CONTEXT_WINDOWS = {
    "gpt-3.5-turbo": 16385,
    "gpt-4": 8192,
    "gpt-4-turbo": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "llama-3.1-8b-instant": 131072,
    "llama-3.3-70b-versatile": 131072,
}

# Catalog entries that cannot serve chat completions
NON_CHAT_MARKERS = ("instruct", "audio", "realtime", "tts", "transcribe", "whisper", "embedding", "dall-e", "image", "moderation")
OPENAI_CHAT_PREFIXES = ("gpt-", "chatgpt-", "o1", "o3", "o4")


def get_provider(name: Optional[str]) -> Provider:
    key = (name or settings.DEFAULT_LLM_PROVIDER).strip().lower()
    provider = PROVIDERS.get(key)
    if not provider:
        raise UnsupportedProviderError(f"Unsupported AI provider: {key}")
    return provider


def resolve_api_key(provider: str, api_key: Optional[str] = None) -> Optional[str]:
    """Explicit per-call key first, then the server's environment key."""
    if api_key and api_key.strip():
        return api_key.strip()
    return get_provider(provider).env_api_key or None


def recommended_model(task: str = "default", provider: Optional[str] = None) -> str:
    models = RECOMMENDED_MODELS.get(get_provider(provider).name, RECOMMENDED_MODELS["openai"])
    return models.get(task, models["default"])


def _client_for(provider: Provider, api_key: str) -> openai.AsyncOpenAI:
    return openai.AsyncOpenAI(
        api_key=api_key,
        base_url=provider.base_url,
        max_retries=0,
        timeout=settings.LLM_TIMEOUT_SECONDS,
    )


def _retry_after(error: openai.APIStatusError) -> Optional[float]:
    value = error.response.headers.get("retry-after") if error.response is not None else None
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def _map_error(error: openai.APIError, provider: str) -> AdventureError:
    if isinstance(error, openai.RateLimitError):
        return RateLimitedError(f"{provider} rate limit exceeded", retry_after=_retry_after(error))
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderAuthError(f"{provider} rejected the API key")
    if isinstance(error, openai.APIConnectionError):
        # APITimeoutError is a subclass
        return ProviderUnavailableError(f"Could not reach {provider}: {error}")
    if isinstance(error, openai.InternalServerError):
        return ProviderUnavailableError(f"{provider} is unavailable ({error.status_code})")
    if isinstance(error, openai.APIStatusError):
        return LLMProviderError(f"{provider} request failed ({error.status_code}): {error.message}")
    return LLMProviderError(f"{provider} request failed: {error}")


async def complete(
    prompt: str,
    system_prompt: str,
    provider: Optional[str] = None,
    model_id: Optional[str] = None,
    api_key: Optional[str] = None,
    task: str = "default",
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> str:
    """
    Issues a single JSON-mode chat completion and returns the raw reply text.

    Raises UnsupportedProviderError, MissingApiKeyError or one of the
    LLMProviderError subclasses. Retrying is left to the caller.
    """
    info = get_provider(provider)
    key = resolve_api_key(info.name, api_key)
    if not key:
        raise MissingApiKeyError(f"No API key available for provider '{info.name}'")

    model = model_id or recommended_model(task, info.name)
    logger.info(f"Requesting {task} completion from {info.name} ({model}), prompt length {len(prompt)}")

    client = _client_for(info, key)
    try:
        response = await client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            temperature=settings.LLM_TEMPERATURE if temperature is None else temperature,
            max_tokens=max_tokens or settings.LLM_MAX_TOKENS,
            response_format={"type": "json_object"},
        )
    except openai.APIError as e:
        mapped = _map_error(e, info.name)
        logger.error(f"Completion from {info.name} failed: {mapped.message}")
        raise mapped from e

    content = response.choices[0].message.content if response.choices else None
    if not content:
        raise LLMProviderError(f"{info.name} returned an empty completion")
    return content

# --- Model catalog ---

@dataclass
class ModelListResult:
    """
    Outcome of a catalog fetch.

    `error` is None on success, otherwise one of "missing_api_key",
    "unsupported_provider", "rejected" or "unavailable". A failed fetch
    always comes with an empty model list.
    """
    provider: str
    models: List[ModelInfo] = field(default_factory=list)
    error: Optional[str] = None


class ModelCatalogCache:
    """Per-provider cache for catalogs fetched with the server's own key."""

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, Tuple[float, List[ModelInfo]]] = {}

    def _ttl(self) -> float:
        return settings.MODEL_CACHE_SECONDS if self.ttl_seconds is None else self.ttl_seconds

    def get(self, provider: str) -> Optional[List[ModelInfo]]:
        entry = self._entries.get(provider)
        if not entry:
            return None
        stored_at, models = entry
        if self.clock() - stored_at >= self._ttl():
            del self._entries[provider]
            return None
        return list(models)

    def put(self, provider: str, models: List[ModelInfo]):
        self._entries[provider] = (self.clock(), list(models))

    def clear(self):
        self._entries.clear()


model_cache = ModelCatalogCache()


def _is_chat_model(provider: str, model) -> bool:
    model_id = model.id.lower()
    if any(marker in model_id for marker in NON_CHAT_MARKERS):
        return False
    if provider == "openai":
        return model_id.startswith(OPENAI_CHAT_PREFIXES)
    # Groq flags retired models instead of removing them
    return getattr(model, "active", True) is not False


async def list_models(provider: str, api_key: Optional[str] = None) -> ModelListResult:
    """Fetches the provider's chat-capable models. Never raises."""
    try:
        info = get_provider(provider)
    except UnsupportedProviderError:
        return ModelListResult(provider=provider, error="unsupported_provider")

    explicit_key = bool(api_key and api_key.strip())
    key = resolve_api_key(info.name, api_key)
    if not key:
        return ModelListResult(provider=info.name, error="missing_api_key")

    if not explicit_key:
        cached = model_cache.get(info.name)
        if cached is not None:
            return ModelListResult(provider=info.name, models=cached)

    try:
        page = await _client_for(info, key).models.list()
    except openai.APIError as e:
        mapped = _map_error(e, info.name)
        logger.warning(f"Model listing for {info.name} failed: {mapped.message}")
        error = "rejected" if isinstance(mapped, ProviderAuthError) else "unavailable"
        return ModelListResult(provider=info.name, error=error)

    models = sorted(
        (
            ModelInfo(
                id=model.id,
                name=model.id,
                provider=info.name,
                created=getattr(model, "created", None),
                context_window=getattr(model, "context_window", None) or CONTEXT_WINDOWS.get(model.id),
            )
            for model in page.data
            if _is_chat_model(info.name, model)
        ),
        key=lambda m: m.id,
    )
    if not explicit_key:
        model_cache.put(info.name, models)
    logger.info(f"Fetched {len(models)} models from {info.name}")
    return ModelListResult(provider=info.name, models=models)
