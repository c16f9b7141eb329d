import json

from adventure95.client.preferences import API_SETTINGS_KEY, READ_STATE_KEY, ClientPreferences


def test_missing_file_gives_defaults(tmp_path):
    preferences = ClientPreferences(tmp_path / "prefs.json").load()
    assert preferences.api_settings.preferred_provider == "openai"
    assert preferences.api_settings.api_key is None
    assert preferences.read_state == {}


def test_corrupt_file_gives_defaults(tmp_path):
    path = tmp_path / "prefs.json"
    path.write_text("{not json", encoding="utf-8")
    assert ClientPreferences(path).load().api_settings.preferred_provider == "openai"


def test_key_is_only_saved_on_request(tmp_path):
    path = tmp_path / "prefs.json"
    preferences = ClientPreferences(path).load()
    preferences.api_settings.api_key = "sk-secret"
    preferences.save()
    assert json.loads(path.read_text())[API_SETTINGS_KEY]["apiKey"] is None

    preferences.api_settings.save_api_key = True
    preferences.save()
    assert ClientPreferences(path).load().api_settings.api_key == "sk-secret"


def test_round_trip_keeps_unknown_keys(tmp_path):
    path = tmp_path / "prefs.json"
    path.write_text(json.dumps({
        "desktop_icon_positions": {"games": [10, 20]},
        API_SETTINGS_KEY: {"preferredProvider": "groq", "preferredModel": "llama-3.1-8b-instant"},
        READ_STATE_KEY: {"abc": True},
    }), encoding="utf-8")

    preferences = ClientPreferences(path).load()
    assert preferences.api_settings.preferred_provider == "groq"
    assert preferences.read_state == {"abc": True}
    preferences.read_state["def"] = True
    preferences.save()

    document = json.loads(path.read_text())
    assert document["desktop_icon_positions"] == {"games": [10, 20]}
    assert document[READ_STATE_KEY] == {"abc": True, "def": True}
    assert document[API_SETTINGS_KEY]["preferredModel"] == "llama-3.1-8b-instant"
