"""
Tests for app.services.generation_worker
"""

import pytest
from sqlalchemy import delete, select

from app.errors import (
    ConfigurationError,
    EntityNotFoundError,
    GenerationValidationError,
    LlmResponseError,
    UnrecoverableJobError,
)
from app.models import AiProviderSettings, AiRunLog, Asset, Caption, GenerationStatus, Idea, PromptTemplate, Script
from app.services.media_providers import MockImageProvider, MockVideoProvider
from app.services.object_storage import LocalObjectStorage
from app.services.generation_worker import GenerationWorker
from app.services.run_log import MOCK_PROVIDER_NAME

SCENARIO_A = {
    "ideas": [
        {"topic": "a", "hook": "h1", "format": "reel"},
        {"topic": "b", "hook": "h2"},
        {"title": "c", "description": "h3", "type": "short"},
    ]
}


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "assets")


@pytest.fixture
def make_worker(session_factory, settings, storage):
    def _make(llm, worker_settings=None):
        worker_settings = worker_settings or settings
        return GenerationWorker(
            session_factory,
            llm,
            image_provider=MockImageProvider(),
            video_provider=MockVideoProvider(worker_settings),
            storage=storage,
            settings=worker_settings,
        )

    return _make


@pytest.fixture
def fetch(session_factory):
    async def _fetch(model, entity_id):
        async with session_factory() as session:
            return await session.get(model, entity_id)

    return _fetch


@pytest.fixture
def run_logs(session_factory):
    async def _logs():
        async with session_factory() as session:
            return list((await session.scalars(select(AiRunLog).order_by(AiRunLog.created_at))).all())

    return _logs


@pytest.fixture
def add_row(session):
    async def _add(row):
        session.add(row)
        await session.commit()
        return row

    return _add


def _ideas_payload(seeded, count=3):
    return {**seeded, "topic": "Coffee", "count": count, "format": "reel"}


class TestGenerateIdeas:
    """generate-ideas job."""

    async def test_stores_normalized_ideas(self, make_worker, fake_llm, seeded, session_factory, run_logs):
        llm = fake_llm(SCENARIO_A)
        await make_worker(llm).run("generate-ideas", _ideas_payload(seeded))

        async with session_factory() as session:
            ideas = (await session.scalars(select(Idea))).all()
        assert sorted((i.topic, i.hook, i.format) for i in ideas) == [
            ("a", "h1", "reel"),
            ("b", "h2", "reel"),
            ("c", "h3", "short"),
        ]
        assert all(i.status == GenerationStatus.succeeded.value for i in ideas)

        call = llm.calls[0]
        assert "ideas: Coffee" in call["prompt"]
        assert "STRICT OUTPUT CONTRACT" in call["prompt"]
        assert call["temperature"] == 0.7
        assert call["response_schema"]["schema"]["properties"]["ideas"]["minItems"] == 3

        logs = await run_logs()
        assert len(logs) == 1
        assert (logs[0].operation, logs[0].status, logs[0].tokens) == ("ideas", "succeeded", 42)
        assert logs[0].project_id == seeded["project_id"]

    async def test_extra_ideas_are_capped(self, make_worker, fake_llm, seeded, session_factory):
        await make_worker(fake_llm(SCENARIO_A)).handle_generate_ideas(_ideas_payload(seeded, count=2))
        async with session_factory() as session:
            assert len((await session.scalars(select(Idea))).all()) == 2

    async def test_too_few_ideas_is_terminal(self, make_worker, fake_llm, seeded, session_factory, run_logs):
        worker = make_worker(fake_llm({"ideas": [{"topic": "only", "hook": "one"}]}))

        with pytest.raises(UnrecoverableJobError) as exc_info:
            await worker.handle_generate_ideas(_ideas_payload(seeded), attempts_made=0)

        assert isinstance(exc_info.value.cause, GenerationValidationError)
        async with session_factory() as session:
            assert (await session.scalars(select(Idea))).all() == []
        logs = await run_logs()
        assert len(logs) == 1
        assert logs[0].status == "failed"
        assert logs[0].error.startswith("LLM returned 1 ideas, expected at least 3.")

    async def test_intermediate_failure_writes_nothing(self, make_worker, fake_llm, seeded, session_factory, run_logs):
        llm = fake_llm(LlmResponseError("upstream 500", "provider_request_failed"))

        with pytest.raises(LlmResponseError):
            await make_worker(llm).handle_generate_ideas(_ideas_payload(seeded), attempts_made=0)

        async with session_factory() as session:
            assert (await session.scalars(select(Idea))).all() == []
        assert await run_logs() == []

    async def test_missing_template_is_terminal(self, make_worker, fake_llm, session, seeded):
        await session.execute(delete(PromptTemplate).where(PromptTemplate.key == "ideas"))
        await session.commit()
        with pytest.raises(UnrecoverableJobError) as exc_info:
            await make_worker(fake_llm()).handle_generate_ideas(_ideas_payload(seeded))
        assert isinstance(exc_info.value.cause, EntityNotFoundError)


class TestMockFallback:
    """Missing credentials in AI test mode produce mock artifacts."""

    async def test_mock_ideas_in_test_mode(self, make_worker, make_settings, fake_llm, seeded, session_factory, run_logs):
        settings = make_settings(ai_test_mode="true")
        llm = fake_llm(ConfigurationError("OPENAI_API_KEY is not configured for AI generation"))

        await make_worker(llm, settings).handle_generate_ideas(_ideas_payload(seeded, count=2))

        async with session_factory() as session:
            ideas = (await session.scalars(select(Idea))).all()
        assert len(ideas) == 2
        assert all(i.topic.startswith("[mock]") for i in ideas)
        logs = await run_logs()
        assert [(log.provider, log.status) for log in logs] == [(MOCK_PROVIDER_NAME, "succeeded")]

    async def test_no_mock_outside_test_mode(self, make_worker, fake_llm, seeded, run_logs):
        llm = fake_llm(ConfigurationError("OPENAI_API_KEY is not configured for AI generation"))
        with pytest.raises(UnrecoverableJobError):
            await make_worker(llm).handle_generate_ideas(_ideas_payload(seeded))
        logs = await run_logs()
        assert [log.status for log in logs] == ["failed"]

    async def test_stored_setting_overrides_worker_env(self, make_worker, make_settings, fake_llm, seeded, add_row):
        await add_row(AiProviderSettings(provider="openai", ai_test_mode=False, is_enabled=True))
        settings = make_settings(ai_test_mode="true")
        llm = fake_llm(ConfigurationError("OPENAI_API_KEY is not configured for AI generation"))
        with pytest.raises(UnrecoverableJobError):
            await make_worker(llm, settings).handle_generate_ideas(_ideas_payload(seeded))

    async def test_other_errors_are_not_mocked(self, make_worker, make_settings, fake_llm, seeded):
        llm = fake_llm(LlmResponseError("upstream 500", "provider_request_failed"))
        with pytest.raises(LlmResponseError):
            await make_worker(llm, make_settings(ai_test_mode="true")).handle_generate_ideas(_ideas_payload(seeded))

    async def test_mock_script(self, make_worker, make_settings, fake_llm, add_idea, add_row, fetch):
        idea = await add_idea(topic="Latte art")
        script = await add_row(Script(idea_id=idea.id))
        llm = fake_llm(ConfigurationError("OPENAI_API_KEY is not configured for AI generation"))

        await make_worker(llm, make_settings(ai_test_mode="1")).handle_generate_script({"script_id": script.id})

        stored = await fetch(Script, script.id)
        assert stored.status == "succeeded"
        assert "Title: Latte art" in stored.text
        assert len(stored.shot_list) == 4


class TestGenerateScript:
    """generate-script job and retry bookkeeping."""

    async def test_success(self, make_worker, fake_llm, add_idea, add_row, fetch, run_logs):
        idea = await add_idea()
        script = await add_row(Script(idea_id=idea.id))
        data = {"reel": {"reel_title": "X", "structure": [{"time": "0-3s", "visuals": "intro", "audio": "music"}]}}

        await make_worker(fake_llm(data)).run("generate-script", {"script_id": script.id})

        stored = await fetch(Script, script.id)
        assert stored.status == "succeeded"
        assert stored.error is None
        assert "Title: X" in stored.text
        logs = await run_logs()
        assert [(log.operation, log.status, log.idea_id) for log in logs] == [("script", "succeeded", idea.id)]

    async def test_intermediate_failure_marks_failed_without_log(
        self, make_worker, fake_llm, add_idea, add_row, fetch, run_logs
    ):
        idea = await add_idea()
        script = await add_row(Script(idea_id=idea.id))
        llm = fake_llm(LlmResponseError("bad json", "invalid_json_payload", "{oops"))

        with pytest.raises(LlmResponseError):
            await make_worker(llm).handle_generate_script({"script_id": script.id}, attempts_made=0)

        stored = await fetch(Script, script.id)
        assert stored.status == "failed"
        assert stored.error == "bad json"
        assert await run_logs() == []

    async def test_final_attempt_marks_failed(self, make_worker, fake_llm, add_idea, add_row, fetch, run_logs):
        idea = await add_idea()
        script = await add_row(Script(idea_id=idea.id))
        llm = fake_llm(LlmResponseError("bad json", "invalid_json_payload", "{oops"))

        with pytest.raises(LlmResponseError):
            await make_worker(llm).handle_generate_script({"script_id": script.id}, attempts_made=2)

        stored = await fetch(Script, script.id)
        assert stored.status == "failed"
        logs = await run_logs()
        assert len(logs) == 1
        assert (logs[0].status, logs[0].error_code, logs[0].raw_response) == ("failed", "invalid_json_payload", "{oops")

    async def test_retry_after_failure_succeeds(self, make_worker, fake_llm, add_idea, add_row, fetch, run_logs):
        idea = await add_idea()
        script = await add_row(Script(idea_id=idea.id))
        llm = fake_llm(LlmResponseError("timeout", "provider_request_failed"), {"text": "second try"})
        worker = make_worker(llm)

        with pytest.raises(LlmResponseError):
            await worker.handle_generate_script({"script_id": script.id}, attempts_made=0)
        await worker.handle_generate_script({"script_id": script.id}, attempts_made=1)

        stored = await fetch(Script, script.id)
        assert (stored.status, stored.text, stored.error) == ("succeeded", "second try", None)
        assert [log.status for log in await run_logs()] == ["succeeded"]

    async def test_missing_script_is_unrecoverable(self, make_worker, fake_llm, seeded):
        with pytest.raises(UnrecoverableJobError) as exc_info:
            await make_worker(fake_llm()).handle_generate_script({"script_id": "missing"})
        assert isinstance(exc_info.value.cause, EntityNotFoundError)
        assert exc_info.value.cause.message == 'Script "missing" not found'

    async def test_unknown_job(self, make_worker, fake_llm):
        with pytest.raises(UnrecoverableJobError):
            await make_worker(fake_llm()).run("generate-music", {})


class TestGenerateCaption:
    async def test_success(self, make_worker, fake_llm, add_idea, add_row, fetch):
        idea = await add_idea()
        caption = await add_row(Caption(idea_id=idea.id))
        llm = fake_llm({"text": " Morning light hits different ", "hashtags": ["#light", " ", "#coffee"]})

        await make_worker(llm).handle_generate_caption({"caption_id": caption.id})

        stored = await fetch(Caption, caption.id)
        assert stored.status == "succeeded"
        assert stored.text == "Morning light hits different"
        assert stored.hashtags == ["#light", "#coffee"]
        assert llm.calls[0]["temperature"] == 0.8

    async def test_empty_caption_retries(self, make_worker, fake_llm, add_idea, add_row, fetch, run_logs):
        idea = await add_idea()
        caption = await add_row(Caption(idea_id=idea.id))
        with pytest.raises(LlmResponseError):
            await make_worker(fake_llm({"text": ""})).handle_generate_caption(
                {"caption_id": caption.id}, attempts_made=0
            )

        stored = await fetch(Caption, caption.id)
        assert stored.status == "failed"
        assert stored.error
        assert await run_logs() == []


class TestGenerateImage:
    """generate-image job, storage and compensating cleanup."""

    async def test_success(self, make_worker, fake_llm, add_idea, add_row, fetch, storage, run_logs):
        idea = await add_idea(image_prompt="Foggy harbor at dawn")
        asset = await add_row(Asset(idea_id=idea.id, type="image"))

        await make_worker(fake_llm()).handle_generate_image({"asset_id": asset.id})

        stored = await fetch(Asset, asset.id)
        assert stored.status == "succeeded"
        assert stored.mime == "image/svg+xml"
        assert stored.source_prompt == "Foggy harbor at dawn"
        assert storage.resolve_public_url(stored.url).exists()
        assert [(log.operation, log.provider) for log in await run_logs()] == [("image", "mock-image-provider")]

    @pytest.mark.parametrize("attempts_made, failed_logs", [(0, 0), (2, 1)])
    async def test_db_failure_removes_stored_file(
        self, make_worker, fake_llm, add_idea, add_row, fetch, storage, run_logs, monkeypatch, attempts_made, failed_logs
    ):
        idea = await add_idea(image_prompt="Foggy harbor at dawn")
        asset = await add_row(Asset(idea_id=idea.id, type="image"))
        worker = make_worker(fake_llm())
        original_update = worker._update_entity

        async def failing_update(session, model, entity_id, values, run_log=None):
            if values.get("status") == GenerationStatus.succeeded.value:
                raise RuntimeError("database went away")
            await original_update(session, model, entity_id, values, run_log)

        monkeypatch.setattr(worker, "_update_entity", failing_update)

        with pytest.raises(RuntimeError):
            await worker.handle_generate_image({"asset_id": asset.id}, attempts_made=attempts_made)

        stored = await fetch(Asset, asset.id)
        assert stored.status == "failed"
        assert stored.url is None
        assert stored.error == "database went away"
        assert list(storage.root.rglob("*.svg")) == []
        assert [log.status for log in await run_logs()] == ["failed"] * failed_logs

    async def test_empty_prompt_is_terminal(self, make_worker, fake_llm, add_idea, add_row, fetch):
        idea = await add_idea()
        asset = await add_row(Asset(idea_id=idea.id, type="image"))

        with pytest.raises(UnrecoverableJobError):
            await make_worker(fake_llm()).handle_generate_image({"asset_id": asset.id}, attempts_made=0)

        stored = await fetch(Asset, asset.id)
        assert stored.status == "failed"
        assert stored.error == "Image prompt is empty. Generate image prompt first."


class TestGenerateVideo:
    async def test_success(self, make_worker, make_settings, fake_llm, add_idea, add_row, fetch):
        settings = make_settings(video_sample_url="https://cdn.example.com/sample.mp4")
        idea = await add_idea(video_prompt="Slow pan over the harbor")
        asset = await add_row(Asset(idea_id=idea.id, type="video"))

        await make_worker(fake_llm(), settings).handle_generate_video({"asset_id": asset.id})

        stored = await fetch(Asset, asset.id)
        assert (stored.status, stored.url, stored.duration) == ("succeeded", "https://cdn.example.com/sample.mp4", 5)
