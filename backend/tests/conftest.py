import base64
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine

from app.db import Base, make_session_factory
from app.models import GenerationStatus, Idea, Persona, PolicyRule, Project, PromptTemplate, PromptTemplateKey
from app.services.llm_provider import LLMProvider, LlmJsonResult
from app.settings import Settings, get_settings

TEST_ENCRYPTION_KEY = base64.b64encode(b"creator-flow-test-key-32-bytes!!").decode("ascii")

# Variables that would leak a developer's shell config into the tests
_ISOLATED_ENV = (
    "AI_TEST_MODE",
    "LLM_PROVIDER",
    "LLM_API_KEY",
    "LLM_MODEL",
    "LLM_BASE_URL",
    "LLM_MAX_TOKENS",
    "LLM_RESPONSE_LANGUAGE",
    "OPENAI_API_KEY",
    "OPENROUTER_API_KEY",
    "ADMIN_PASSWORD",
    "QUEUE_BACKOFF_STRATEGY",
)


@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Isolated environment for every test"""
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(f"CREATOR_FLOW_{name}", raising=False)
    monkeypatch.setenv("AI_SETTINGS_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "assets"))
    monkeypatch.setenv("QUEUE_ATTEMPTS", "3")
    monkeypatch.setenv("QUEUE_BACKOFF_MS", "1500")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_settings(monkeypatch):
    def _make(**env: Any) -> Settings:
        for key, value in env.items():
            monkeypatch.setenv(key.upper(), str(value))
        get_settings.cache_clear()
        return Settings(_env_file=None)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'creator_flow.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seeded(session):
    """Project, persona and one global template per key."""
    project = Project(name="Test project")
    session.add(project)
    await session.flush()
    persona = Persona(project_id=project.id, name="Mila", age=27, archetype_tone="warm mentor")
    session.add(persona)
    await session.flush()
    for key in PromptTemplateKey:
        session.add(PromptTemplate(key=key.value, template=f"{key.value}: {{{{topic}}}}"))
    await session.commit()
    return {"project_id": project.id, "persona_id": persona.id}


@pytest.fixture
def add_idea(session, seeded):
    async def _add(**values: Any) -> Idea:
        idea = Idea(
            project_id=seeded["project_id"],
            persona_id=seeded["persona_id"],
            topic=values.pop("topic", "Morning light"),
            hook=values.pop("hook", "Shoot at 7am"),
            format=values.pop("format", "reel"),
            status=values.pop("status", GenerationStatus.succeeded.value),
            **values,
        )
        session.add(idea)
        await session.commit()
        return idea

    return _add


@pytest.fixture
def add_rule(session):
    async def _add(text: str, persona_id: str | None = None, type: str = "DONT", severity: str = "hard") -> PolicyRule:
        rule = PolicyRule(persona_id=persona_id, type=type, text=text, severity=severity)
        session.add(rule)
        await session.commit()
        return rule

    return _add


class FakeLLMProvider(LLMProvider):
    """Returns queued payloads (or raises queued exceptions) in order."""

    name = "fake"

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def generate_json(self, prompt, *, max_tokens, temperature, config=None, response_schema=None):
        self.calls.append({
            "prompt": prompt,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "response_schema": response_schema,
        })
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return LlmJsonResult(provider="fake", model="fake-model", tokens=42, request_id="req-1", data=response)


@pytest.fixture
def fake_llm():
    return FakeLLMProvider
