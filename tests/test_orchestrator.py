"""Tests for the live query orchestrator.

Uses an in-memory chat and a scripted backend so every state transition
can be observed without network access.
"""
from __future__ import annotations

import asyncio

import pytest

from conftest import HOLD, FakeBackend, FakeQuery

from chatbridge.engine.delivery import DeliveryDeduplicator
from chatbridge.engine.errors import ConversationBusyError
from chatbridge.engine.events import (
    AssistantTurn,
    QueryResult,
    SessionInit,
    TextStarted,
    ThinkingStarted,
    ToolCompleted,
    ToolStarted,
)
from chatbridge.engine.fork_resolver import find_fork_point
from chatbridge.engine.models import (
    ConversationKey,
    ForkPoint,
    PermissionMode,
    QueryStatus,
    Session,
    StatusProgress,
    TurnKind,
)
from chatbridge.engine.orchestrator import (
    RATE_LIMIT_NOTICE,
    LiveQueryOrchestrator,
    build_invoke_options,
    render_status,
)
from chatbridge.engine.runtime_state import RuntimeState

KEY = ConversationKey("C1")


def _happy_script(session_id="S1", text="All done."):
    return [
        SessionInit(session_id=session_id, model="opus"),
        ThinkingStarted(),
        ToolStarted(tool_id="t1", tool_name="Bash"),
        ToolCompleted(tool_id="t1"),
        TextStarted(),
        AssistantTurn(turn_id="msg_final", text=text),
        QueryResult(
            session_id=session_id, result=text, duration_ms=1200, num_turns=2,
            total_cost_usd=0.01, usage={"input_tokens": 100, "output_tokens": 20},
        ),
    ]


def _orchestrator(store, chat, backend, runtime=None, events=None):
    runtime = runtime or RuntimeState()

    async def _collect(event):
        events.append(event)

    return LiveQueryOrchestrator(
        store=store,
        backend=backend,
        chat=chat,
        runtime=runtime,
        deduplicator=DeliveryDeduplicator(store),
        event_callback=_collect if events is not None else None,
    ), runtime


# ── Happy path ──


@pytest.mark.asyncio
async def test_run_delivers_and_records_response(store, chat):
    orch, runtime = _orchestrator(store, chat, FakeBackend(_happy_script()))
    outcome = await orch.run(KEY, "hello", origin_message_id="1700000000.000001")

    assert outcome.status == QueryStatus.COMPLETE
    assert outcome.agent_session_id == "S1"
    assert "All done." in chat.texts()
    session = await store.get(KEY)
    assert session.agent_session_id == "S1"
    assert session.last_usage.input_tokens == 100
    agent_records = [r for r in session.turn_map.values() if r.kind == TurnKind.AGENT]
    assert [r.agent_turn_id for r in agent_records] == ["msg_final"]
    assert agent_records[0].parent_message_id == "1700000000.000001"
    assert session.turn_map["1700000000.000001"].kind == TurnKind.USER
    assert "Complete" in chat.updates[-1][2]
    assert all(count == 0 for count in runtime.counts().values())


@pytest.mark.asyncio
async def test_events_forwarded_to_callback(store, chat):
    events = []
    orch, _ = _orchestrator(store, chat, FakeBackend(_happy_script()), events=events)
    await orch.run(KEY, "hello")
    types = [e["event"] for e in events]
    assert types[0] == "session_init"
    assert types[-1] == "query_result"
    assert all(e["conversation"] == "C1" for e in events)


@pytest.mark.asyncio
async def test_previously_delivered_turn_not_reposted(store, chat):
    orch, _ = _orchestrator(store, chat, FakeBackend(_happy_script(), _happy_script()))
    await orch.run(KEY, "first")
    posts_before = chat.texts().count("All done.")
    await orch.run(KEY, "again")
    assert chat.texts().count("All done.") == posts_before == 1


# ── Failure handling ──


@pytest.mark.asyncio
async def test_session_id_persisted_before_failure(store, chat):
    script = [SessionInit(session_id="S-early"), RuntimeError("backend crashed")]
    orch, runtime = _orchestrator(store, chat, FakeBackend(script))
    outcome = await orch.run(KEY, "hello")

    assert outcome.status == QueryStatus.ERROR
    session = await store.get(KEY)
    assert session.agent_session_id == "S-early"
    assert any("backend crashed" in t for t in chat.texts())
    assert all(count == 0 for count in runtime.counts().values())


@pytest.mark.asyncio
async def test_stream_without_result_is_an_error(store, chat):
    orch, _ = _orchestrator(store, chat, FakeBackend([SessionInit(session_id="S1")]))
    outcome = await orch.run(KEY, "hello")
    assert outcome.status == QueryStatus.ERROR
    assert "without a result" in outcome.error


@pytest.mark.asyncio
async def test_error_result_reported(store, chat):
    script = [SessionInit(session_id="S1"), QueryResult(session_id="S1", result="quota", is_error=True)]
    orch, _ = _orchestrator(store, chat, FakeBackend(script))
    outcome = await orch.run(KEY, "hello")
    assert outcome.status == QueryStatus.ERROR
    assert "Error" in chat.updates[-1][2]


@pytest.mark.asyncio
@pytest.mark.parametrize("turns", [[], [AssistantTurn(turn_id=None, text="answer")]])
async def test_response_without_backend_turn_id_is_not_recorded(store, chat, turns):
    script = [SessionInit(session_id="S1"), *turns, QueryResult(session_id="S1", result="answer")]
    orch, _ = _orchestrator(store, chat, FakeBackend(script))
    outcome = await orch.run(KEY, "hello", origin_message_id="1700000000.000001")

    assert outcome.status == QueryStatus.COMPLETE
    assert outcome.turn_id is None
    assert "answer" in chat.texts()
    session = await store.get(KEY)
    assert [r.kind for r in session.turn_map.values()] == [TurnKind.USER]
    assert find_fork_point(session, "1800000000.000000") is None


@pytest.mark.asyncio
async def test_failed_response_post_shows_error_status(store, chat):
    backend = FakeBackend([SessionInit(session_id="S1"), HOLD, *_happy_script()[1:]])
    orch, runtime = _orchestrator(store, chat, backend)
    task = asyncio.create_task(orch.run(KEY, "hello"))
    await asyncio.wait_for(_started(backend), timeout=5)
    chat.fail_posts = 1
    backend.queries[0].release.set()
    outcome = await task

    assert outcome.status == QueryStatus.ERROR
    assert "All done." not in chat.texts()
    assert "Error" in chat.updates[-1][2]
    assert "channel_not_found" in chat.updates[-1][2]
    assert all(count == 0 for count in runtime.counts().values())


# ── Concurrency ──


@pytest.mark.asyncio
async def test_second_start_is_rejected_while_busy(store, chat):
    backend = FakeBackend([SessionInit(session_id="S1"), HOLD, *_happy_script()[1:]])
    orch, runtime = _orchestrator(store, chat, backend)
    first = asyncio.create_task(orch.run(KEY, "one"))
    await asyncio.wait_for(_started(backend), timeout=5)

    with pytest.raises(ConversationBusyError):
        await orch.run(KEY, "two")
    assert len(backend.calls) == 1

    backend.queries[0].release.set()
    outcome = await first
    assert outcome.status == QueryStatus.COMPLETE
    assert all(count == 0 for count in runtime.counts().values())


@pytest.mark.asyncio
async def test_different_conversations_run_in_parallel(store, chat):
    backend = FakeBackend(
        [SessionInit(session_id="S1"), HOLD, *_happy_script("S1")[1:]],
        _happy_script("S2"),
    )
    orch, _ = _orchestrator(store, chat, backend)
    first = asyncio.create_task(orch.run(KEY, "one"))
    await asyncio.wait_for(_started(backend), timeout=5)
    other = await orch.run(ConversationKey("C2"), "two")
    assert other.status == QueryStatus.COMPLETE
    backend.queries[0].release.set()
    await first


# ── Abort ──


@pytest.mark.asyncio
async def test_abort_status_is_final(store, chat):
    backend = FakeBackend([SessionInit(session_id="S1"), ThinkingStarted(), HOLD, TextStarted()])
    orch, runtime = _orchestrator(store, chat, backend)
    task = asyncio.create_task(orch.run(KEY, "long job"))
    await asyncio.wait_for(_started(backend), timeout=5)
    await asyncio.sleep(0.01)

    assert await orch.cancel(KEY)
    outcome = await task

    assert outcome.status == QueryStatus.ABORTED
    assert backend.queries[0].interrupted
    assert "Aborted" in chat.updates[-1][2]
    assert all(count == 0 for count in runtime.counts().values())


class _SlowInterruptQuery(FakeQuery):
    """Interrupt lets the stream finish before it returns to the caller."""

    async def interrupt(self) -> None:
        self.interrupted = True
        self.release.set()
        await asyncio.sleep(0.05)


class _SlowInterruptBackend(FakeBackend):
    query_class = _SlowInterruptQuery


class _LateEventsQuery(FakeQuery):
    """The backend keeps streaming after an interrupt."""

    async def interrupt(self) -> None:
        self.release.set()


class _LateEventsBackend(FakeBackend):
    query_class = _LateEventsQuery


@pytest.mark.asyncio
async def test_cancel_racing_run_end_leaves_no_lock(store, chat):
    backend = _SlowInterruptBackend([SessionInit(session_id="S1"), ThinkingStarted(), HOLD])
    orch, runtime = _orchestrator(store, chat, backend)
    task = asyncio.create_task(orch.run(KEY, "long job"))
    await asyncio.wait_for(_started(backend), timeout=5)

    assert await orch.cancel(KEY)
    outcome = await task

    assert outcome.status == QueryStatus.ABORTED
    assert all(count == 0 for count in runtime.counts().values())
    aborted = [u for u in chat.updates if "Aborted" in u[2]]
    assert len(aborted) == 1
    assert chat.updates[-1] == aborted[0]


@pytest.mark.asyncio
async def test_events_after_abort_end_the_stream(store, chat):
    backend = _LateEventsBackend([
        SessionInit(session_id="S1"), ThinkingStarted(), HOLD,
        ToolStarted(tool_id="t1", tool_name="Bash"),
        *_happy_script()[3:],
    ])
    orch, runtime = _orchestrator(store, chat, backend)
    task = asyncio.create_task(orch.run(KEY, "long job"))
    await asyncio.wait_for(_started(backend), timeout=5)

    assert await orch.cancel(KEY)
    outcome = await task

    assert outcome.status == QueryStatus.ABORTED
    assert outcome.error is None
    assert "All done." not in chat.texts()
    assert "Aborted" in chat.updates[-1][2]
    assert all(count == 0 for count in runtime.counts().values())


@pytest.mark.asyncio
async def test_cancel_without_active_query(store, chat):
    orch, _ = _orchestrator(store, chat, FakeBackend())
    assert not await orch.cancel(KEY)


@pytest.mark.asyncio
async def test_refresh_timer_stopped_after_run(store, chat):
    await store.upsert(KEY, update_rate_seconds=0.01)
    backend = FakeBackend([SessionInit(session_id="S1"), HOLD, *_happy_script()[1:]])
    orch, runtime = _orchestrator(store, chat, backend)
    task = asyncio.create_task(orch.run(KEY, "tick"))
    await asyncio.wait_for(_started(backend), timeout=5)
    await asyncio.sleep(0.05)
    backend.queries[0].release.set()
    await task

    updates_after = len(chat.updates)
    await asyncio.sleep(0.05)
    assert len(chat.updates) == updates_after
    assert runtime.counts()["status_timers"] == 0


# ── Rate limits ──


@pytest.mark.asyncio
async def test_rate_limit_notice_posted_once(store, chat, no_backoff):
    chat.rate_limit_updates = 4
    orch, _ = _orchestrator(store, chat, FakeBackend(_happy_script()))
    outcome = await orch.run(KEY, "hello")
    assert outcome.status == QueryStatus.COMPLETE
    assert chat.texts().count(RATE_LIMIT_NOTICE) == 1


# ── Option building ──


def test_invoke_options_resume_own_session():
    session = Session(agent_session_id="S1", permission_mode=PermissionMode.PLAN, model="opus")
    options = build_invoke_options(session)
    assert options.session_id == "S1"
    assert not options.fork_session
    assert options.permission_mode == PermissionMode.PLAN
    assert options.resume_target == "S1"


def test_invoke_options_fork_thread_at_point():
    session = Session(forked_from="S-root", resume_at_turn_id="msg_a")
    options = build_invoke_options(session)
    assert options.fork_session
    assert options.fork_from_session_id == "S-root"
    assert options.resume_at_turn_id == "msg_a"
    assert options.resume_target == "S-root"


@pytest.mark.asyncio
async def test_first_thread_message_forks(store, chat):
    await store.upsert(KEY, agent_session_id="S-root")
    thread = ConversationKey("C1", "1700000000.000050")
    await store.get_or_create_thread_session(
        "C1", thread.thread_origin, ForkPoint(turn_id="msg_a", agent_session_id="S-root"),
    )
    backend = FakeBackend(_happy_script("S-thread"))
    orch, _ = _orchestrator(store, chat, backend)
    await orch.run(thread, "in thread")

    options = backend.calls[0][1]
    assert options.fork_session and options.resume_at_turn_id == "msg_a"
    session = await store.get(thread)
    assert session.agent_session_id == "S-thread"
    assert session.forked_from == "S-root"
    assert all(post[2] == thread.thread_origin for post in chat.posts)


def test_render_status_mentions_tool():
    progress = StatusProgress(status=QueryStatus.TOOL, current_tool="Bash", tools_used=2)
    line = render_status(progress)
    assert "`Bash`" in line and "2 tools" in line


async def _started(backend: FakeBackend) -> None:
    while not backend.queries:
        await asyncio.sleep(0.001)
    await backend.queries[0].started.wait()
    # Let the orchestrator consume the events before the hold point
    await asyncio.sleep(0.01)
