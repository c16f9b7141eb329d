"""
Error taxonomy shared by the server and the client.

Every error carries the HTTP status the API answers with, so the FastAPI
exception handler and the client's error formatting agree on one mapping.
"""
from typing import Optional


class AdventureError(Exception):
    """Base class for every error raised by adventure95."""
    status_code: int = 500

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or "Unexpected error"
        if status_code is not None:
            self.status_code = status_code


# --- Precondition errors: detected before any network call, never retried ---

class PreconditionError(AdventureError):
    """A required input is missing."""
    status_code = 400


class MissingApiKeyError(PreconditionError):
    """An LLM API key is required for this operation."""
    status_code = 401


# --- Domain errors ---

class DomainError(AdventureError):
    """The request conflicts with the current game state."""
    status_code = 400


class NotFoundError(DomainError):
    """The requested resource does not exist."""
    status_code = 404


class GameCompletedError(DomainError):
    """The game is already completed."""
    status_code = 409


class GameNotStartedError(DomainError):
    """The game has no story segments yet."""
    status_code = 409


class TurnInProgressError(DomainError):
    """A turn is already being generated for this game."""
    status_code = 409


class InvalidTransitionError(DomainError):
    """The state machine refused a transition."""
    status_code = 400


# --- Provider errors ---

class UnsupportedProviderError(AdventureError):
    """The requested LLM provider is not supported."""
    status_code = 400


class LLMProviderError(AdventureError):
    """The LLM provider failed to produce a completion."""
    status_code = 502


class ProviderAuthError(LLMProviderError):
    """The LLM provider rejected the API key."""
    status_code = 401


class ProviderUnavailableError(LLMProviderError):
    """The LLM provider could not be reached."""
    status_code = 503


class RateLimitedError(LLMProviderError):
    """The LLM provider is rate limiting requests."""
    status_code = 429

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


# --- Parsing ---

class ParseError(AdventureError):
    """The model reply does not match the segment contract."""
    status_code = 502
