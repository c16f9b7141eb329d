import pytest

from adventure95.crud import crud_entity, crud_game
from adventure95.crud.crud_game import determine_narrative_stage
from adventure95.schemas.game import GameCreate, Genre, NarrativeStage
from adventure95.schemas.story import NewCharacter, NewItem, NormalizedSegment, Option, Relationship


def _segment(text="Scene"):
    return NormalizedSegment(content=text, options=[Option(text="Go on")], location_context="Road")


# ── Narrative stage ──────────────────────────────────────────


@pytest.mark.parametrize("turn, stage", [
    (0, NarrativeStage.INTRODUCTION),
    (3, NarrativeStage.INTRODUCTION),
    (4, NarrativeStage.RISING_ACTION),
    (8, NarrativeStage.CLIMAX),
    (13, NarrativeStage.FALLING_ACTION),
    (16, NarrativeStage.RESOLUTION),
])
def test_narrative_stage_for_sixteen_turns(turn, stage):
    assert determine_narrative_stage(turn, 16) == stage


# ── Story log ────────────────────────────────────────────────


class TestStoryLog:
    async def test_opening_segment_does_not_count_as_a_turn(self, db):
        game = await crud_game.create_game(db, GameCreate(genre=Genre.SCIFI, total_turns=2))
        first = await crud_game.append_segment(db, game, _segment())
        assert first.sequence_number == 1
        assert game.turn_count == 0

    async def test_turns_and_completion(self, db):
        game = await crud_game.create_game(db, GameCreate(genre=Genre.SCIFI, total_turns=2))
        await crud_game.append_segment(db, game, _segment())
        second = await crud_game.append_segment(db, game, _segment(), user_choice="Go on")
        last = await crud_game.append_segment(db, game, _segment(), user_choice="Go on", ending=True)

        assert [second.sequence_number, last.sequence_number] == [2, 3]
        assert last.options == []
        assert second.options == [{"text": "Go on", "risk": "MEDIUM"}]
        assert game.turn_count == 2
        assert game.status == "COMPLETED"
        assert game.narrative_stage == "RESOLUTION"

    async def test_latest_segment(self, db):
        game = await crud_game.create_game(db, GameCreate(genre=Genre.SCIFI))
        assert await crud_game.get_latest_segment(db, game.id) is None
        await crud_game.append_segment(db, game, _segment("one"))
        await crud_game.append_segment(db, game, _segment("two"), user_choice="Go on")
        assert (await crud_game.get_latest_segment(db, game.id)).content == "two"

    async def test_blank_title_gets_default(self, db):
        game = await crud_game.create_game(db, GameCreate(genre=Genre.WESTERN, title="   "))
        assert game.title == "New Western Adventure"


# ── Cleanup ──────────────────────────────────────────────────


class TestAbandonedGames:
    async def test_only_unstarted_stale_games_are_removed(self, db):
        unstarted = await crud_game.create_game(db, GameCreate(genre=Genre.HORROR))
        started = await crud_game.create_game(db, GameCreate(genre=Genre.HORROR))
        await crud_game.append_segment(db, started, _segment())

        # A negative threshold makes every game old enough
        assert await crud_game.remove_abandoned_games(db, abandoned_hours=-1) == 1
        assert await crud_game.get_game(db, unstarted.id) is None
        assert await crud_game.get_game(db, started.id) is not None

    async def test_recent_games_are_kept(self, db):
        await crud_game.create_game(db, GameCreate(genre=Genre.HORROR))
        assert await crud_game.remove_abandoned_games(db, abandoned_hours=24) == 0


# ── Entities ─────────────────────────────────────────────────


class TestEntityRecords:
    async def test_repeated_mentions_merge(self, db):
        game = await crud_game.create_game(db, GameCreate(genre=Genre.FANTASY))
        await crud_entity.record_new_items(db, game.id, [NewItem(name="Silver Dagger", description="Sharp")], turn=1)
        await db.commit()
        await crud_entity.record_new_items(
            db, game.id, [NewItem(name="the silver dagger", description="Sharp and engraved with runes")], turn=4
        )
        await db.commit()

        items = await crud_entity.list_items(db, game.id)
        assert len(items) == 1
        assert items[0].acquired_at == 1
        assert items[0].last_mentioned_at == 4
        assert items[0].description == "Sharp and engraved with runes"

    async def test_generic_names_are_skipped(self, db):
        game = await crud_game.create_game(db, GameCreate(genre=Genre.FANTASY))
        touched = await crud_entity.record_new_items(db, game.id, [NewItem(name="something")], turn=1)
        assert touched == []

    async def test_identity_reveal_adds_alias(self, db):
        game = await crud_game.create_game(db, GameCreate(genre=Genre.FANTASY))
        await crud_entity.record_new_characters(db, game.id, [NewCharacter(name="Hermit")], turn=1)
        await db.commit()
        await crud_entity.record_new_characters(
            db,
            game.id,
            [NewCharacter(name="Hermit", description="He is revealed to be King Aldric", relationship=Relationship.FRIENDLY)],
            turn=5,
        )
        await db.commit()

        (npc,) = await crud_entity.list_characters(db, game.id)
        assert npc.aliases == ["King Aldric"]
        assert npc.relationship == "FRIENDLY"
        assert [entry["type"] for entry in npc.state_history] == ["RELATIONSHIP_CHANGED", "IDENTITY_REVEALED"]

    async def test_active_items_skip_lost_ones(self, db):
        game = await crud_game.create_game(db, GameCreate(genre=Genre.FANTASY))
        await crud_entity.record_new_items(
            db,
            game.id,
            [NewItem(name="Lantern"), NewItem(name="Bread", description="ITEM_UPDATE: Bread | CONSUMED | eaten")],
            turn=1,
        )
        await db.commit()

        assert [item.name for item in await crud_entity.list_items(db, game.id)] == ["Lantern", "Bread"]
        assert [item.name for item in await crud_entity.list_active_items(db, game.id)] == ["Lantern"]


# ── Turn counter ─────────────────────────────────────────────


async def test_stale_game_row_still_advances_the_turn(session_factory):
    async with session_factory() as first, session_factory() as second:
        game = await crud_game.create_game(first, GameCreate(genre=Genre.MYSTERY))
        await crud_game.append_segment(first, game, _segment())

        # Loaded before the next turn commits
        stale = await crud_game.get_game(second, game.id)
        await second.commit()

        await crud_game.append_segment(first, game, _segment(), user_choice="Go on")
        await crud_game.append_segment(second, stale, _segment(), user_choice="Go on")

        assert stale.turn_count == 2
        await first.refresh(game)
        assert game.turn_count == 2
