import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from adventure95.database import get_session, init_db
from adventure95.main import app
from adventure95.services import llm_gateway, story_generator

API_KEY = "sk-test"


# ── Canned model replies ─────────────────────────────────────


def story_reply(turn: int = 0, **overrides) -> str:
    """A well-formed segment reply, as a JSON-mode completion returns it."""
    data = {
        "content": f"Scene {turn}: You stand in the old mill as the wind howls outside.",
        "options": [
            {"text": "Search the cellar", "risk": "LOW"},
            {"text": "Follow the footprints", "risk": "MEDIUM"},
            {"text": "Confront the stranger", "risk": "HIGH"},
        ],
        "newItems": [],
        "newCharacters": [],
        "locationContext": "Old Mill",
    }
    data.update(overrides)
    return json.dumps(data)


class FakeStoryModel:
    """Stands in for llm_gateway.complete; every call returns the next scene."""

    def __init__(self):
        self.calls = 0
        self.prompts = []

    def __call__(self, prompt, system_prompt, **kwargs):
        self.prompts.append(prompt)
        turn = self.calls
        self.calls += 1
        return story_reply(turn)


# ── Database ─────────────────────────────────────────────────


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ── App ──────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _clean_process_state():
    story_generator._games_in_progress.clear()
    llm_gateway.model_cache.clear()
    yield
    story_generator._games_in_progress.clear()
    llm_gateway.model_cache.clear()


@pytest.fixture
def asgi_app(session_factory):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(asgi_app):
    transport = httpx.ASGITransport(app=asgi_app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://test/api/v1", headers={"x-llm-api-key": API_KEY}
    ) as http:
        yield http


@pytest.fixture
def story_model():
    model = FakeStoryModel()
    with patch.object(llm_gateway, "complete", new=AsyncMock(side_effect=model)):
        yield model
