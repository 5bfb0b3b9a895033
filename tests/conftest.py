from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from chatbridge.adapters.chat_client import ChatClient, PostedMessage
from chatbridge.engine import retry
from chatbridge.engine.errors import RateLimitedError, TransportFailedError
from chatbridge.engine.events import AgentEvent
from chatbridge.engine.models import PermissionMode
from chatbridge.engine.providers.base import AgentBackend, AgentQuery, InvokeOptions
from chatbridge.shared.services.session_store import SessionStore

# Marker inside a scripted event list: block until released or interrupted.
HOLD = object()


class FakeChat(ChatClient):
    """In-memory chat platform with scriptable failures."""

    def __init__(self) -> None:
        self.posts: list[tuple[str, str, str | None]] = []
        self.updates: list[tuple[str, str, str]] = []
        self.deleted: list[tuple[str, str]] = []
        self.uploads: list[tuple[str, str]] = []
        self.rate_limit_updates = 0
        self.rate_limit_posts = 0
        self.fail_posts = 0
        self.posts_without_ts = 0
        self._counter = 0

    def _next_ts(self) -> str:
        self._counter += 1
        return f"1700000100.{self._counter:06d}"

    async def post_message(self, channel, text, *, thread_ts=None):
        if self.rate_limit_posts:
            self.rate_limit_posts -= 1
            raise RateLimitedError("chat.postMessage", retry_after=None)
        if self.fail_posts:
            self.fail_posts -= 1
            raise TransportFailedError("chat.postMessage", "channel_not_found")
        self.posts.append((channel, text, thread_ts))
        if self.posts_without_ts:
            self.posts_without_ts -= 1
            return PostedMessage(channel=channel, ts=None)
        return PostedMessage(channel=channel, ts=self._next_ts())

    async def update_message(self, channel, ts, text):
        if self.rate_limit_updates:
            self.rate_limit_updates -= 1
            raise RateLimitedError("chat.update")
        self.updates.append((channel, ts, text))

    async def delete_message(self, channel, ts):
        self.deleted.append((channel, ts))

    async def upload_file(self, channel, filename, content, *, thread_ts=None, title=None):
        self.uploads.append((channel, filename))

    def texts(self) -> list[str]:
        return [text for _, text, _ in self.posts]


class FakeQuery(AgentQuery):
    def __init__(self, script: list) -> None:
        self._script = script
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.interrupted = False
        self.closed = False
        self.modes: list[PermissionMode] = []
        self.budgets: list[int | None] = []

    async def events(self):
        self.started.set()
        for item in self._script:
            if item is HOLD:
                await self.release.wait()
                if self.interrupted:
                    return
                continue
            if isinstance(item, Exception):
                raise item
            yield item

    async def interrupt(self) -> None:
        self.interrupted = True
        self.release.set()

    async def set_permission_mode(self, mode):
        self.modes.append(mode)
        return True

    async def set_thinking_budget(self, tokens):
        self.budgets.append(tokens)
        return True

    async def close(self) -> None:
        self.closed = True


class FakeBackend(AgentBackend):
    """Replays one scripted event list per invocation."""

    query_class = FakeQuery

    def __init__(self, *scripts: list[AgentEvent]) -> None:
        self._scripts = list(scripts)
        self.calls: list[tuple[str, InvokeOptions]] = []
        self.queries: list[FakeQuery] = []

    @property
    def name(self) -> str:
        return "fake"

    def invoke(self, prompt, options):
        self.calls.append((prompt, options))
        script = self._scripts.pop(0) if self._scripts else []
        query = self.query_class(script)
        self.queries.append(query)
        return query


@pytest.fixture
def chat() -> FakeChat:
    return FakeChat()


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "sessions.json")


@pytest.fixture
def no_backoff(monkeypatch):
    """Make retry delays zero so rate-limit tests run instantly."""
    monkeypatch.setattr(retry, "backoff_delay", lambda *args, **kwargs: 0.0)
