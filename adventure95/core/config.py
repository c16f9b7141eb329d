from typing import Optional

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Database configuration
    DATABASE_URL: str = "sqlite+aiosqlite:///./adventure95.db"

    # Redis configuration (empty disables progress streaming)
    REDIS_URL: str = ""

    # LLM provider configuration
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    GROQ_API_KEY: Optional[str] = None
    GROQ_BASE_URL: str = "https://api.groq.com/openai/v1"
    DEFAULT_LLM_PROVIDER: str = "openai"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 1000
    LLM_TIMEOUT_SECONDS: float = 60.0

    # Story progression
    DEFAULT_TOTAL_TURNS: int = 16
    # Number of prior segments sent with each continuation prompt; unset sends the full history
    PROMPT_HISTORY_SEGMENTS: Optional[int] = None

    # Model catalog cache lifetime (in seconds)
    MODEL_CACHE_SECONDS: int = 3600

    # Never-started game cleanup threshold (in hours)
    ABANDONED_GAME_CLEANUP_HOURS: int = 24

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'

settings = Settings()
