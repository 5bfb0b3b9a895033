"""Process-local registry of in-flight conversation state.

Everything that exists only while an invocation runs lives here, keyed
by conversation identity (or approval id): the busy set, the active
query, the status-update lock, the aborted flag, the status refresh
timer and pending tool approvals. begin() inserts and end() removes, and
the orchestrator calls end() on every exit path so nothing accumulates
per finished conversation.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .models import ConversationKey, PendingApproval, StatusProgress
from .providers.base import AgentQuery

logger = logging.getLogger(__name__)


@dataclass
class LiveSettings:
    """Session tunables an in-flight invocation re-reads on every tick."""
    update_rate_seconds: float
    message_size_limit: int


@dataclass
class ActiveQuery:
    """The single active invocation of one conversation."""
    key: ConversationKey
    live: LiveSettings
    progress: StatusProgress = field(default_factory=StatusProgress)
    query: AgentQuery | None = None
    status_message_ts: str | None = None
    abort_published: bool = False


class RuntimeState:
    """Owned collections of in-flight state with explicit teardown."""

    def __init__(self) -> None:
        self._busy: set[ConversationKey] = set()
        self._active: dict[ConversationKey, ActiveQuery] = {}
        self._locks: dict[ConversationKey, asyncio.Lock] = {}
        self._aborted: set[ConversationKey] = set()
        self._status_timers: dict[ConversationKey, asyncio.Task] = {}
        self._approvals: dict[str, PendingApproval] = {}
        self._approval_timers: dict[str, asyncio.Task] = {}

    # ── Invocation lifecycle ─────────────────────────────────

    def is_busy(self, key: ConversationKey) -> bool:
        return key in self._busy

    def begin(self, active: ActiveQuery) -> bool:
        """Claim the conversation. False if another invocation holds it."""
        key = active.key
        if key in self._busy:
            return False
        self._busy.add(key)
        self._active[key] = active
        self._locks[key] = asyncio.Lock()
        self._aborted.discard(key)
        return True

    def get_active(self, key: ConversationKey) -> ActiveQuery | None:
        return self._active.get(key)

    def end(self, active: ActiveQuery) -> None:
        """Release everything the invocation owned.

        A stale caller (whose invocation was already replaced) releases
        nothing.
        """
        key = active.key
        if self._active.get(key) is not active:
            return
        self.cancel_status_timer(key)
        del self._active[key]
        self._busy.discard(key)
        self._aborted.discard(key)
        self._locks.pop(key, None)
        logger.debug("Released runtime state for %s", key)

    # ── Status update ordering ───────────────────────────────

    def update_lock(self, key: ConversationKey) -> asyncio.Lock:
        """The status lock of the active invocation.

        Without an active invocation there is nothing to order against, so
        a fresh lock is returned and never registered.
        """
        lock = self._locks.get(key)
        if lock is None:
            return asyncio.Lock()
        return lock

    def mark_aborted(self, key: ConversationKey) -> None:
        self._aborted.add(key)

    def is_aborted(self, key: ConversationKey) -> bool:
        return key in self._aborted

    def set_status_timer(self, key: ConversationKey, task: asyncio.Task) -> None:
        self.cancel_status_timer(key)
        self._status_timers[key] = task

    def cancel_status_timer(self, key: ConversationKey) -> None:
        task = self._status_timers.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    # ── Tool approvals ───────────────────────────────────────

    def add_approval(self, approval: PendingApproval, timer: asyncio.Task | None = None) -> None:
        self._approvals[approval.approval_id] = approval
        if timer is not None:
            self._approval_timers[approval.approval_id] = timer

    def get_approval(self, approval_id: str) -> PendingApproval | None:
        return self._approvals.get(approval_id)

    def pop_approval(self, approval_id: str) -> PendingApproval | None:
        """Remove an approval and cancel its reminder timer."""
        timer = self._approval_timers.pop(approval_id, None)
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()
        return self._approvals.pop(approval_id, None)

    def approvals_for(self, key: ConversationKey) -> list[PendingApproval]:
        return [a for a in self._approvals.values() if a.key == key]

    # ── Introspection ────────────────────────────────────────

    def counts(self) -> dict[str, int]:
        """Sizes of every collection; all zero when nothing is running."""
        return {
            "busy": len(self._busy),
            "active": len(self._active),
            "locks": len(self._locks),
            "aborted": len(self._aborted),
            "status_timers": len(self._status_timers),
            "approvals": len(self._approvals),
            "approval_timers": len(self._approval_timers),
        }
