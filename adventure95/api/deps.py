from typing import Optional

from fastapi import Header

from adventure95.core.exceptions import MissingApiKeyError


def get_optional_api_key(x_llm_api_key: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_llm_api_key.strip() if x_llm_api_key and x_llm_api_key.strip() else None


def get_api_key(x_llm_api_key: Optional[str] = Header(default=None)) -> str:
    """
    Requires the x-llm-api-key header on every LLM-consuming endpoint.
    """
    api_key = get_optional_api_key(x_llm_api_key)
    if not api_key:
        raise MissingApiKeyError("The x-llm-api-key header is required")
    return api_key
