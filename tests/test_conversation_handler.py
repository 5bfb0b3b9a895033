"""End-to-end scenarios through ConversationHandler with in-memory fakes."""
from __future__ import annotations

import asyncio
import json

import pytest

from conftest import HOLD, FakeBackend

from chatbridge.engine.config import BridgeConfig
from chatbridge.engine.events import AssistantTurn, QueryResult, SessionInit
from chatbridge.engine.models import ConversationKey, PermissionMode, QueryStatus
from chatbridge.handlers.conversation import BUSY_NOTICE, ConversationHandler
from chatbridge.shared.services.session_files import session_file_path


def _script(session_id: str, turn_id: str, text: str, hold: bool = False):
    events = [SessionInit(session_id=session_id)]
    if hold:
        events.append(HOLD)
    events += [
        AssistantTurn(turn_id=turn_id, text=text),
        QueryResult(session_id=session_id, result=text),
    ]
    return events


@pytest.fixture
def config(tmp_path) -> BridgeConfig:
    return BridgeConfig(
        data_dir=tmp_path / "data",
        agent_projects_dir=tmp_path / "projects",
        default_working_directory="/work/app",
    )


def _handler(chat, config, *scripts) -> tuple[ConversationHandler, FakeBackend]:
    backend = FakeBackend(*scripts)
    return ConversationHandler(chat=chat, backend=backend, config=config), backend


async def _wait_started(backend: FakeBackend, index: int = 0) -> None:
    while len(backend.queries) <= index:
        await asyncio.sleep(0.001)
    await backend.queries[index].started.wait()
    await asyncio.sleep(0.01)


# ── Busy conversations ──


@pytest.mark.asyncio
async def test_lightweight_commands_answer_while_busy(chat, config):
    handler, backend = _handler(chat, config, _script("S1", "msg_1", "done", hold=True))
    task = asyncio.create_task(handler.handle_message("C1", "long job"))
    await asyncio.wait_for(_wait_started(backend), timeout=5)

    await handler.handle_message("C1", "/status")
    assert any("*State:* busy" in t for t in chat.texts())
    assert BUSY_NOTICE not in chat.texts()

    await handler.handle_message("C1", "another request")
    assert chat.texts().count(BUSY_NOTICE) == 1
    assert len(backend.calls) == 1

    backend.queries[0].release.set()
    outcome = await task
    assert outcome.status == QueryStatus.COMPLETE


@pytest.mark.asyncio
async def test_model_change_rejected_while_busy(chat, config):
    handler, backend = _handler(chat, config, _script("S1", "msg_1", "done", hold=True))
    task = asyncio.create_task(handler.handle_message("C1", "long job"))
    await asyncio.wait_for(_wait_started(backend), timeout=5)

    await handler.handle_message("C1", "/model opus")
    assert any("Cannot change the model" in t for t in chat.texts())
    session = await handler.store.get(ConversationKey("C1"))
    assert session.model is None

    backend.queries[0].release.set()
    await task


@pytest.mark.asyncio
async def test_mode_change_applies_to_running_request(chat, config):
    handler, backend = _handler(chat, config, _script("S1", "msg_1", "done", hold=True))
    task = asyncio.create_task(handler.handle_message("C1", "long job"))
    await asyncio.wait_for(_wait_started(backend), timeout=5)

    await handler.handle_message("C1", "<@U123> /mode plan")
    assert backend.queries[0].modes == [PermissionMode.PLAN]
    session = await handler.store.get(ConversationKey("C1"))
    assert session.permission_mode == PermissionMode.PLAN

    backend.queries[0].release.set()
    await task


@pytest.mark.asyncio
async def test_abort_command_stops_request(chat, config):
    handler, backend = _handler(chat, config, _script("S1", "msg_1", "done", hold=True))
    task = asyncio.create_task(handler.handle_message("C1", "long job"))
    await asyncio.wait_for(_wait_started(backend), timeout=5)

    await handler.handle_message("C1", "/abort")
    outcome = await task
    assert outcome.status == QueryStatus.ABORTED
    assert "done" not in chat.texts()
    assert all(count == 0 for count in handler.runtime.counts().values())


@pytest.mark.asyncio
async def test_update_rate_reaches_live_invocation(chat, config):
    handler, backend = _handler(chat, config, _script("S1", "msg_1", "done", hold=True))
    task = asyncio.create_task(handler.handle_message("C1", "long job"))
    await asyncio.wait_for(_wait_started(backend), timeout=5)

    await handler.handle_message("C1", "/update-rate 5")
    active = handler.runtime.get_active(ConversationKey("C1"))
    assert active.live.update_rate_seconds == 5.0

    backend.queries[0].release.set()
    await task


# ── Thread forking ──


@pytest.mark.asyncio
async def test_thread_forks_at_replied_message(chat, config):
    handler, backend = _handler(
        chat, config,
        _script("S1", "msg_1", "first answer"),
        _script("S1", "msg_2", "second answer"),
        _script("S-thread", "msg_3", "thread answer"),
    )
    await handler.handle_message("C1", "one")
    await handler.handle_message("C1", "two")
    first_answer_ts = next(
        ts for ts, record in (await handler.store.get(ConversationKey("C1"))).turn_map.items()
        if record.agent_turn_id == "msg_1"
    )

    await handler.handle_message("C1", "branch here", thread_ts=first_answer_ts)

    options = backend.calls[2][1]
    assert options.fork_session
    assert options.fork_from_session_id == "S1"
    assert options.resume_at_turn_id == "msg_1"
    thread = await handler.store.get(ConversationKey("C1", first_answer_ts))
    assert thread.agent_session_id == "S-thread"
    assert thread.working_directory == "/work/app"
    assert any("Forked" in t for t in chat.texts())


@pytest.mark.asyncio
async def test_thread_on_status_message_uses_earlier_turn(chat, config):
    handler, backend = _handler(
        chat, config,
        _script("S1", "msg_1", "first answer"),
        _script("S1", "msg_2", "second answer"),
        _script("S-thread", "msg_3", "thread answer"),
    )
    await handler.handle_message("C1", "one")
    await handler.handle_message("C1", "two")
    # Third post is the second request's status message, never in the turn map
    status_ts = "1700000100.000003"
    root = await handler.store.get(ConversationKey("C1"))
    assert status_ts not in root.turn_map

    await handler.handle_message("C1", "branch", thread_ts=status_ts)
    assert backend.calls[2][1].resume_at_turn_id == "msg_1"


@pytest.mark.asyncio
async def test_fork_before_clear_resumes_old_session(chat, config):
    handler, backend = _handler(
        chat, config,
        _script("S1", "msg_1", "old answer"),
        _script("S2", "msg_2", "new answer"),
        _script("S-thread", "msg_3", "thread answer"),
    )
    await handler.handle_message("C1", "one")
    await handler.handle_message("C1", "/clear")
    await handler.handle_message("C1", "two")
    root = await handler.store.get(ConversationKey("C1"))
    assert root.agent_session_id == "S2"
    assert root.previous_agent_session_ids == ["S1"]
    old_ts = next(ts for ts, r in root.turn_map.items() if r.agent_turn_id == "msg_1")

    await handler.handle_message("C1", "go back", thread_ts=old_ts)
    options = backend.calls[2][1]
    assert options.fork_from_session_id == "S1"
    assert options.resume_at_turn_id == "msg_1"


@pytest.mark.asyncio
async def test_fork_thread_command(chat, config):
    handler, backend = _handler(chat, config, _script("S-t1", "msg_1", "answer"))
    thread = ConversationKey("C1", "1700000000.000001")
    await handler.handle_message("C1", "start", thread_ts=thread.thread_origin)

    await handler.handle_message("C1", "/fork-thread try another approach", thread_ts=thread.thread_origin)
    threads = await handler.store.list_threads("C1")
    new_origin = next(t for t in threads if t != thread.thread_origin)
    forked = await handler.store.get(ConversationKey("C1", new_origin))
    assert forked.forked_from == "S-t1"
    assert forked.forked_from_thread_origin == thread.thread_origin


# ── Commands ──


@pytest.mark.asyncio
async def test_invalid_argument_rejected(chat, config):
    handler, _ = _handler(chat, config)
    await handler.handle_message("C1", "/message-size 5")
    assert any("Value must be between" in t for t in chat.texts())


@pytest.mark.asyncio
async def test_clear_without_session_rejected(chat, config):
    handler, _ = _handler(chat, config)
    await handler.handle_message("C1", "/clear")
    assert any("No active session to clear" in t for t in chat.texts())


@pytest.mark.asyncio
async def test_unknown_command(chat, config):
    handler, _ = _handler(chat, config)
    await handler.handle_message("C1", "/frobnicate")
    assert any("Unknown command" in t for t in chat.texts())


@pytest.mark.asyncio
async def test_context_after_request(chat, config):
    handler, _ = _handler(chat, config, _script("S1", "msg_1", "answer"))
    await handler.handle_message("C1", "/context")
    assert any("No context data" in t for t in chat.texts())
    await handler.handle_message("C1", "hi")
    await handler.handle_message("C1", "/context")
    assert any(t.startswith("*Context:*") for t in chat.texts())


# ── Working directory and resume ──

RESUMED_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"


@pytest.mark.asyncio
async def test_cd_changes_directory_until_locked(chat, config, tmp_path):
    project = tmp_path / "project"
    (project / "sub").mkdir(parents=True)
    handler, _ = _handler(chat, config)
    key = ConversationKey("C1")

    await handler.handle_message("C1", f"/cd {project}")
    await handler.handle_message("C1", "/cd sub")
    session = await handler.store.get(key)
    assert session.working_directory == str((project / "sub").resolve())

    await handler.handle_message("C1", "/cd missing")
    assert any("Directory does not exist" in t for t in chat.texts())

    await handler.handle_message("C1", "/set-current-path")
    session = await handler.store.get(key)
    assert session.path_locked

    await handler.handle_message("C1", f"/cd {project}")
    assert any("is locked to" in t for t in chat.texts())
    await handler.handle_message("C1", "/cwd")
    assert chat.texts()[-1].endswith("(locked)")
    session = await handler.store.get(key)
    assert session.working_directory == str((project / "sub").resolve())


@pytest.mark.asyncio
async def test_resume_binds_existing_session(chat, config):
    transcript = session_file_path(RESUMED_ID, "/work/app-v2", config.agent_projects_dir)
    transcript.parent.mkdir(parents=True)
    transcript.write_text(
        json.dumps({"type": "user", "sessionId": RESUMED_ID, "cwd": "/work/app-v2"}) + "\n",
        encoding="utf-8",
    )
    handler, backend = _handler(
        chat, config,
        _script("S1", "msg_1", "first"),
        _script(RESUMED_ID, "msg_2", "continued"),
    )
    await handler.handle_message("C1", "hi")
    await handler.handle_message("C1", f"/resume {RESUMED_ID}")

    session = await handler.store.get(ConversationKey("C1"))
    assert session.agent_session_id == RESUMED_ID
    assert session.previous_agent_session_ids == ["S1"]
    assert session.working_directory == "/work/app-v2"
    assert session.path_locked
    assert any("Previous session: `S1`" in t for t in chat.texts())

    await handler.handle_message("C1", "go on")
    options = backend.calls[1][1]
    assert options.session_id == RESUMED_ID
    assert options.working_directory == "/work/app-v2"


@pytest.mark.asyncio
@pytest.mark.parametrize("arg, message", [
    ("", "Usage: `/resume"),
    ("not-a-session", "Invalid session ID format"),
    (RESUMED_ID, "Session file not found"),
])
async def test_resume_rejections(chat, config, arg, message):
    handler, _ = _handler(chat, config)
    await handler.handle_message("C1", f"/resume {arg}".strip())
    assert any(message in t for t in chat.texts())
    assert await handler.store.get(ConversationKey("C1")) is None


# ── Teardown ──


@pytest.mark.asyncio
async def test_teardown_deletes_all_transcripts(chat, config):
    handler, _ = _handler(
        chat, config,
        _script("S-root", "msg_1", "root answer"),
        _script("S-thread", "msg_2", "thread answer"),
    )
    await handler.handle_message("C1", "hi")
    await handler.handle_message("C1", "more", thread_ts="1700000000.000001")

    # The thread ran after a /cd, so its transcript sits in another project dir
    locations = {"S-root": "/work/app", "S-thread": "/work/other"}
    for agent_id, directory in locations.items():
        path = session_file_path(agent_id, directory, config.agent_projects_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{}\n", encoding="utf-8")

    ids = await handler.teardown_channel("C1")
    assert sorted(ids) == ["S-root", "S-thread"]
    for agent_id, directory in locations.items():
        assert not session_file_path(agent_id, directory, config.agent_projects_dir).exists()
    assert await handler.store.get(ConversationKey("C1")) is None
