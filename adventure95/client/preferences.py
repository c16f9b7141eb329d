"""
Client-local preferences stored as one JSON document.

Top-level keys keep the names the browser client used in local storage, so
settings carry over. Keys this module does not know (the desktop icon
layout, for one) are preserved untouched on save.
"""
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Union

from adventure95.schemas.game import CamelModel

logger = logging.getLogger(__name__)

API_SETTINGS_KEY = "ai_text_adventure_api_settings"
READ_STATE_KEY = "notification_read_state"
DEFAULT_PATH = Path.home() / ".adventure95" / "preferences.json"


class ApiSettings(CamelModel):
    api_key: Optional[str] = None
    preferred_provider: str = "openai"
    preferred_model: Optional[str] = None
    save_api_key: bool = False


class ClientPreferences:
    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path) if path else DEFAULT_PATH
        self._document: Dict = {}
        self.api_settings = ApiSettings()
        self.read_state: Dict[str, bool] = {}

    def load(self) -> "ClientPreferences":
        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            document = {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable preferences file {self.path}: {e}")
            document = {}
        self._document = document if isinstance(document, dict) else {}

        raw_settings = self._document.get(API_SETTINGS_KEY) or {}
        try:
            self.api_settings = ApiSettings.model_validate(raw_settings)
        except ValueError as e:
            logger.warning(f"Ignoring invalid API settings: {e}")
            self.api_settings = ApiSettings()

        raw_read_state = self._document.get(READ_STATE_KEY) or {}
        self.read_state = {str(key): bool(value) for key, value in raw_read_state.items()} if isinstance(raw_read_state, dict) else {}
        return self

    def save(self):
        api_settings = self.api_settings.model_dump(by_alias=True)
        if not self.api_settings.save_api_key:
            # The key only touches disk when the player asked for it
            api_settings["apiKey"] = None
        document = {**self._document, API_SETTINGS_KEY: api_settings, READ_STATE_KEY: dict(self.read_state)}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
        self._document = document
