import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from adventure95.core.exceptions import RateLimitedError
from adventure95.crud import crud_game
from adventure95.services import llm_gateway, story_generator
from adventure95.services.llm_gateway import ModelListResult
from adventure95.schemas.game import ModelInfo

from conftest import story_reply

NO_KEY = {"x-llm-api-key": ""}


# ── Helpers ──────────────────────────────────────────────────


async def _create(client, **body):
    response = await client.post("/games", json={"genre": "fantasy", **body})
    assert response.status_code == 201, response.text
    return response.json()


async def _started(client, **body):
    game = await _create(client, **body)
    response = await client.post(f"/games/{game['id']}/start", json={})
    assert response.status_code == 200, response.text
    return response.json()


# ── Create / list / get ──────────────────────────────────────


class TestGames:
    async def test_create_uses_defaults(self, client):
        game = await _create(client)
        assert game["title"] == "New Fantasy Adventure"
        assert game["totalTurns"] == 16
        assert game["turnCount"] == 0
        assert game["status"] == "ACTIVE"
        assert game["narrativeStage"] == "INTRODUCTION"

    async def test_create_requires_key(self, client):
        response = await client.post("/games", json={"genre": "fantasy"}, headers=NO_KEY)
        assert response.status_code == 401
        assert "x-llm-api-key" in response.json()["detail"]

    async def test_create_rejects_unknown_genre(self, client):
        response = await client.post("/games", json={"genre": "romance"})
        assert response.status_code == 422

    async def test_create_with_unknown_character(self, client):
        response = await client.post("/games", json={"genre": "fantasy", "characterId": 99})
        assert response.status_code == 404

    async def test_list_games(self, client):
        await _create(client, title="First")
        await _create(client, title="Second")
        response = await client.get("/games")
        assert response.status_code == 200
        assert {g["title"] for g in response.json()} == {"First", "Second"}

    async def test_get_missing_game(self, client):
        response = await client.get("/games/404")
        assert response.status_code == 404
        assert response.json() == {"detail": "Game 404 not found"}

    async def test_get_includes_story(self, client, story_model):
        started = await _started(client)
        response = await client.get(f"/games/{started['game']['id']}")
        detail = response.json()
        assert len(detail["storySegments"]) == 1
        assert detail["storySegments"][0]["options"][0] == {"id": 1, "text": "Search the cellar", "risk": "LOW"}


# ── Start ────────────────────────────────────────────────────


class TestStart:
    async def test_start_generates_first_segment(self, client, story_model):
        started = await _started(client)
        segment = started["firstSegment"]
        assert segment["sequenceNumber"] == 1
        assert segment["userChoice"] is None
        assert segment["locationContext"] == "Old Mill"
        assert len(segment["options"]) == 3
        assert started["game"]["turnCount"] == 0
        assert started["game"]["lastPlayedAt"] is not None

    async def test_start_is_idempotent(self, client, story_model):
        started = await _started(client)
        game_id = started["game"]["id"]
        again = await client.post(f"/games/{game_id}/start", json={})
        assert again.json()["firstSegment"]["id"] == started["firstSegment"]["id"]
        assert story_model.calls == 1

    async def test_start_passes_preferences_and_key(self, client):
        game = await _create(client)
        with patch.object(llm_gateway, "complete", new=AsyncMock(return_value=story_reply())) as complete:
            await client.post(
                f"/games/{game['id']}/start",
                json={"preferredProvider": "groq", "preferredModel": "llama-3.3-70b-versatile"},
            )
        kwargs = complete.call_args.kwargs
        assert kwargs["provider"] == "groq"
        assert kwargs["model_id"] == "llama-3.3-70b-versatile"
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["task"] == "story"

    async def test_provider_rate_limit_is_forwarded(self, client):
        game = await _create(client)
        error = RateLimitedError("openai rate limit exceeded", retry_after=12)
        with patch.object(llm_gateway, "complete", new=AsyncMock(side_effect=error)):
            response = await client.post(f"/games/{game['id']}/start", json={})
        assert response.status_code == 429
        assert response.headers["retry-after"] == "12"

    async def test_fractional_retry_after_rounds_up(self, client):
        game = await _create(client)
        error = RateLimitedError("groq rate limit exceeded", retry_after=0.5)
        with patch.object(llm_gateway, "complete", new=AsyncMock(side_effect=error)):
            response = await client.post(f"/games/{game['id']}/start", json={})
        assert response.status_code == 429
        assert response.headers["retry-after"] == "1"

    async def test_failed_start_stores_nothing(self, client):
        game = await _create(client)
        with patch.object(llm_gateway, "complete", new=AsyncMock(side_effect=RateLimitedError("busy"))):
            await client.post(f"/games/{game['id']}/start", json={})
        detail = (await client.get(f"/games/{game['id']}")).json()
        assert detail["storySegments"] == []
        assert not story_generator.is_generating(game["id"])


# ── Segments ─────────────────────────────────────────────────


class TestSegments:
    async def test_choose_option(self, client, story_model):
        game_id = (await _started(client))["game"]["id"]
        response = await client.post(f"/games/{game_id}/segments", json={"optionId": 2})
        assert response.status_code == 201
        body = response.json()
        assert body["segment"]["sequenceNumber"] == 2
        assert body["segment"]["userChoice"] == "Follow the footprints"
        assert body["game"]["turnCount"] == 1
        assert body["options"] == body["segment"]["options"]
        assert 'The player has chosen to: "Follow the footprints"' in story_model.prompts[-1]

    async def test_custom_text(self, client, story_model):
        game_id = (await _started(client))["game"]["id"]
        response = await client.post(f"/games/{game_id}/segments", json={"customText": "  Enter the cave  "})
        assert response.json()["segment"]["userChoice"] == "Enter the cave"

    @pytest.mark.parametrize("body", [{}, {"customText": "   "}, {"optionId": 1, "customText": "both"}])
    async def test_needs_exactly_one_choice(self, client, story_model, body):
        game_id = (await _started(client))["game"]["id"]
        response = await client.post(f"/games/{game_id}/segments", json=body)
        assert response.status_code == 422
        assert story_model.calls == 1

    async def test_stale_option_is_rejected_before_generation(self, client, story_model):
        game_id = (await _started(client))["game"]["id"]
        response = await client.post(f"/games/{game_id}/segments", json={"optionId": 7})
        assert response.status_code == 400
        assert "Option 7" in response.json()["detail"]
        assert story_model.calls == 1

    async def test_unstarted_game(self, client, story_model):
        game = await _create(client)
        response = await client.post(f"/games/{game['id']}/segments", json={"optionId": 1})
        assert response.status_code == 409

    async def test_requires_key(self, client, story_model):
        game_id = (await _started(client))["game"]["id"]
        response = await client.post(f"/games/{game_id}/segments", json={"optionId": 1}, headers=NO_KEY)
        assert response.status_code == 401
        assert story_model.calls == 1

    async def test_turn_already_in_progress(self, client, story_model):
        game_id = (await _started(client))["game"]["id"]
        story_generator._games_in_progress.add(game_id)
        response = await client.post(f"/games/{game_id}/segments", json={"optionId": 1})
        assert response.status_code == 409

    async def test_game_runs_to_completion(self, client, story_model):
        game_id = (await _started(client, totalTurns=3))["game"]["id"]
        stages = []
        for _ in range(3):
            body = (await client.post(f"/games/{game_id}/segments", json={"optionId": 1})).json()
            stages.append(body["game"]["narrativeStage"])

        assert body["game"]["status"] == "COMPLETED"
        assert body["game"]["turnCount"] == 3
        assert body["options"] == []
        assert stages[-1] == "RESOLUTION"
        assert "final segment" in story_model.prompts[-1]

        response = await client.post(f"/games/{game_id}/segments", json={"customText": "one more"})
        assert response.status_code == 409
        assert story_model.calls == 4

    async def test_model_can_end_the_story_early(self, client):
        replies = [story_reply(0), story_reply(1, status="COMPLETED")]
        with patch.object(llm_gateway, "complete", new=AsyncMock(side_effect=replies)):
            game_id = (await _started(client))["game"]["id"]
            body = (await client.post(f"/games/{game_id}/segments", json={"optionId": 1})).json()
        assert body["game"]["status"] == "COMPLETED"
        assert body["game"]["turnCount"] == 1
        assert body["options"] == []

    async def test_unparseable_reply_still_advances(self, client):
        replies = [story_reply(0), "The cave swallows you whole. Nothing else."]
        with patch.object(llm_gateway, "complete", new=AsyncMock(side_effect=replies)):
            game_id = (await _started(client))["game"]["id"]
            body = (await client.post(f"/games/{game_id}/segments", json={"optionId": 3})).json()
        assert body["segment"]["content"].startswith("The cave swallows you")
        assert len(body["options"]) == 3


# ── Concurrent generation ────────────────────────────────────


def _blocking_model(first_reply_passes=True):
    """A model that waits to be released, optionally answering the opening scene first."""
    entered, release = asyncio.Event(), asyncio.Event()
    calls = []

    async def complete(prompt, system_prompt, **kwargs):
        calls.append(prompt)
        if first_reply_passes and len(calls) == 1:
            return story_reply(0)
        entered.set()
        await release.wait()
        return story_reply(len(calls))

    return complete, entered, release, calls


class TestConcurrentTurns:
    async def test_second_turn_is_refused_while_one_is_generating(self, client):
        complete, entered, release, calls = _blocking_model()
        with patch.object(llm_gateway, "complete", new=complete):
            game_id = (await _started(client))["game"]["id"]
            first = asyncio.ensure_future(client.post(f"/games/{game_id}/segments", json={"optionId": 1}))
            await asyncio.wait_for(entered.wait(), timeout=5)

            second = await client.post(f"/games/{game_id}/segments", json={"optionId": 2})
            assert second.status_code == 409
            release.set()
            assert (await first).status_code == 201

        game = (await client.get(f"/games/{game_id}")).json()
        assert game["turnCount"] == 1
        assert [s["sequenceNumber"] for s in game["storySegments"]] == [1, 2]
        assert len(calls) == 2

    async def test_late_reader_cannot_roll_back_the_turn_counter(self, client, story_model):
        game_id = (await _started(client))["game"]["id"]
        real_latest = crud_game.get_latest_segment
        reads = []

        async def slow_second_read(db, game_id):
            reads.append(game_id)
            if len(reads) == 2:
                await asyncio.sleep(0.3)
            return await real_latest(db, game_id)

        with patch.object(crud_game, "get_latest_segment", new=slow_second_read):
            responses = await asyncio.gather(
                client.post(f"/games/{game_id}/segments", json={"optionId": 1}),
                client.post(f"/games/{game_id}/segments", json={"optionId": 1}),
            )

        statuses = sorted(response.status_code for response in responses)
        assert statuses in ([201, 201], [201, 409])
        game = (await client.get(f"/games/{game_id}")).json()
        segments = game["storySegments"]
        assert game["turnCount"] == len(segments) - 1
        assert [s["sequenceNumber"] for s in segments] == list(range(1, len(segments) + 1))

    async def test_concurrent_starts_generate_one_opening(self, client):
        complete, entered, release, calls = _blocking_model(first_reply_passes=False)
        with patch.object(llm_gateway, "complete", new=complete):
            game = await _create(client)
            first = asyncio.ensure_future(client.post(f"/games/{game['id']}/start", json={}))
            await asyncio.wait_for(entered.wait(), timeout=5)

            assert (await client.post(f"/games/{game['id']}/start", json={})).status_code == 409
            release.set()
            assert (await first).status_code == 200

            # Once the opening exists, starting again just returns it
            again = await client.post(f"/games/{game['id']}/start", json={})
        assert again.status_code == 200
        assert len((await client.get(f"/games/{game['id']}")).json()["storySegments"]) == 1
        assert len(calls) == 1


# ── Tracked entities ─────────────────────────────────────────


class TestEntities:
    async def test_items_and_npcs_are_tracked(self, client):
        replies = [
            story_reply(
                0,
                newItems=[{"name": "Rusty Key", "description": "Opens the cellar"}],
                newCharacters=[{"name": "Old Miller", "description": "Grumpy", "relationship": "NEUTRAL"}],
            ),
            story_reply(
                1,
                newItems=[{"name": "the rusty key", "description": "ITEM_UPDATE: Rusty Key | LOST | dropped in the well"}],
                newCharacters=[{"name": "Old Miller", "description": "Grumpy", "relationship": "HOSTILE"}],
            ),
        ]
        with patch.object(llm_gateway, "complete", new=AsyncMock(side_effect=replies)):
            game_id = (await _started(client))["game"]["id"]
            await client.post(f"/games/{game_id}/segments", json={"optionId": 1})

        items = (await client.get(f"/games/{game_id}/items")).json()
        assert len(items) == 1
        assert items[0]["currentState"] == "LOST"
        assert items[0]["lostAt"] == 1
        assert items[0]["description"] == "Opens the cellar"

        npcs = (await client.get(f"/games/{game_id}/characters")).json()
        assert len(npcs) == 1
        assert npcs[0]["relationship"] == "HOSTILE"
        assert npcs[0]["stateHistory"][-1]["type"] == "RELATIONSHIP_CHANGED"

    async def test_lost_item_leaves_the_prompt_inventory(self, client):
        replies = [
            story_reply(0, newItems=[{"name": "Rusty Key", "description": "Opens the cellar"}]),
            story_reply(1, newItems=[{"name": "Rusty Key", "description": "ITEM_UPDATE: Rusty Key | LOST | dropped"}]),
            story_reply(2),
        ]
        complete = AsyncMock(side_effect=replies)
        with patch.object(llm_gateway, "complete", new=complete):
            game_id = (await _started(client))["game"]["id"]
            await client.post(f"/games/{game_id}/segments", json={"optionId": 1})
            await client.post(f"/games/{game_id}/segments", json={"optionId": 1})

        before_loss, after_loss = (call.args[0] for call in complete.await_args_list[1:])
        assert "Current items: Rusty Key" in before_loss
        assert "No items in inventory" in after_loss
        assert len((await client.get(f"/games/{game_id}/items")).json()) == 1

    async def test_entities_of_missing_game(self, client):
        assert (await client.get("/games/9/items")).status_code == 404


# ── Delete ───────────────────────────────────────────────────


class TestDelete:
    async def test_delete(self, client, story_model):
        game_id = (await _started(client))["game"]["id"]
        response = await client.delete(f"/games/{game_id}")
        assert response.status_code == 204
        assert (await client.get(f"/games/{game_id}")).status_code == 404

    async def test_delete_while_generating(self, client):
        game = await _create(client)
        story_generator._games_in_progress.add(game["id"])
        assert (await client.delete(f"/games/{game['id']}")).status_code == 409


# ── Titles and models ────────────────────────────────────────


class TestTitlesAndModels:
    async def test_generate_titles(self, client):
        reply = '{"suggestions": ["Ashes of Dawn", "The Last Lantern"]}'
        with patch.object(llm_gateway, "complete", new=AsyncMock(return_value=reply)) as complete:
            response = await client.get("/games/generate-titles", params={"genre": "horror"})
        assert response.json() == {"suggestions": ["Ashes of Dawn", "The Last Lantern"]}
        assert complete.call_args.kwargs["task"] == "title"

    async def test_generate_titles_by_post(self, client):
        reply = '{"suggestions": ["Dust and Iron"]}'
        with patch.object(llm_gateway, "complete", new=AsyncMock(return_value=reply)):
            response = await client.post("/games/generate-titles", json={"genre": "western"})
        assert response.json()["suggestions"] == ["Dust and Iron"]

    async def test_list_models(self, client):
        result = ModelListResult(provider="groq", models=[ModelInfo(id="m1", name="m1", provider="groq")])
        with patch.object(llm_gateway, "list_models", new=AsyncMock(return_value=result)) as list_models:
            response = await client.get("/models/groq")
        assert response.json()["models"][0]["id"] == "m1"
        list_models.assert_awaited_once_with("groq", "sk-test")

    async def test_rejected_key_is_a_marker_not_a_failure(self, client):
        result = ModelListResult(provider="openai", error="rejected")
        with patch.object(llm_gateway, "list_models", new=AsyncMock(return_value=result)):
            response = await client.get("/models/openai")
        assert response.status_code == 200
        assert response.json() == {"provider": "openai", "models": [], "error": "rejected"}

    async def test_unsupported_provider(self, client):
        assert (await client.get("/models/anthropic")).status_code == 400

    async def test_models_without_any_key(self, client, monkeypatch):
        from adventure95.core.config import settings

        monkeypatch.setattr(settings, "OPENAI_API_KEY", None)
        assert (await client.get("/models/openai", headers=NO_KEY)).status_code == 401
