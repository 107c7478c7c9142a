import asyncio

import pytest

from conftest import ScriptedGateway, make_engine, make_state_with_blueprint, story_responder
from core.errors import ProjectNotFoundError
from data_access import InMemoryProjectRepository, JsonFileProjectRepository
from models.workflow_models import Stage
from orchestration import session as session_module
from orchestration.session import ProjectSession


def _session(repository=None, **kwargs) -> ProjectSession:
    gateway = ScriptedGateway({"stub": story_responder})
    engine = make_engine(gateway, make_state_with_blueprint(2))
    engine.state.project_name = "Tides"
    return ProjectSession(engine, repository or InMemoryProjectRepository(), **kwargs)


@pytest.mark.asyncio
async def test_autosave_skips_unsaved_project():
    session = _session(autosave_interval=0)
    assert session.state.project_id is None
    assert await session.autosave_once() is False
    assert await session.repository.list_projects() == []


@pytest.mark.asyncio
async def test_autosave_skips_when_disabled():
    session = _session(autosave_interval=0)
    await session.save()
    session.engine.set_editor_settings(auto_save=False)
    session.state.project_name = "Renamed"
    assert await session.autosave_once() is False
    stored = await session.repository.load(session.state.project_id)
    assert stored.name == "Tides"


@pytest.mark.asyncio
async def test_save_adopts_draft_id_and_autosave_updates():
    session = _session(autosave_interval=0)
    stored = await session.save()
    assert stored.project_id == "project-test"
    assert session.state.project_id == "project-test"
    assert "credentials" not in stored.state

    session.state.project_name = "Tides, revised"
    assert await session.autosave_once() is True
    listings = await session.repository.list_projects()
    assert [item.name for item in listings] == ["Tides, revised"]


@pytest.mark.asyncio
async def test_memory_written_before_save_stays_with_project():
    session = _session(autosave_interval=0)
    await session.engine.generate_chapter(1)
    await session.save()
    summaries = await session.engine.memory.repository.list_for_project(
        session.state.project_id
    )
    assert [s.chapter_number for s in summaries] == [1]


@pytest.mark.asyncio
async def test_load_replaces_state_and_keeps_credentials(tmp_path):
    repository = JsonFileProjectRepository(str(tmp_path))
    original = _session(repository, autosave_interval=0)
    original.state.current_stage = Stage.CHAPTER_GENERATION
    await original.save()

    other = _session(repository, autosave_interval=0)
    other.engine.set_credential("stub", "secret")
    state = await other.load("project-test")

    assert other.state is state
    assert state.project_id == "project-test"
    assert state.project_name == "Tides"
    assert state.current_stage is Stage.CHAPTER_GENERATION
    assert state.credentials == {"stub": "secret"}
    assert other.engine.project_key == "project-test"

    with pytest.raises(ProjectNotFoundError):
        await other.load("missing")


@pytest.mark.asyncio
async def test_autosaver_runs_periodically():
    session = _session(autosave_interval=0.01)
    await session.save()
    calls = 0
    original = session.autosave_once

    async def counting() -> bool:
        nonlocal calls
        calls += 1
        return await original()

    session.autosave_once = counting
    async with session:
        assert session.autosaver.running
        await asyncio.sleep(0.05)
    assert not session.autosaver.running
    assert calls >= 1


@pytest.mark.asyncio
async def test_autosaver_disabled_with_zero_interval():
    session = _session(autosave_interval=0)
    session.autosaver.start()
    assert not session.autosaver.running
    await session.close()


@pytest.mark.asyncio
async def test_autosave_failure_is_logged_and_loop_continues(monkeypatch):
    errors: list[str] = []
    monkeypatch.setattr(
        session_module.logger, "error", lambda msg, **_kw: errors.append(msg)
    )
    session = _session(autosave_interval=0.01)

    async def broken() -> bool:
        raise OSError("disk full")

    session.autosave_once = broken
    session.autosaver.start()
    await asyncio.sleep(0.05)
    assert session.autosaver.running
    await session.close()
    assert "Autosave failed" in errors
