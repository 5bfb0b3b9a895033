"""Passive mirroring of an agent transcript into the chat.

Agent sessions can also be driven from a terminal. MessageSync reads the
session's transcript and posts assistant turns the chat has not shown
yet, using the same DeliveryDeduplicator as live invocations so a turn
is never shown twice whichever path sees it first.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from chatbridge.engine.delivery import DeliveryDeduplicator
from chatbridge.engine.errors import ChatTransportError
from chatbridge.engine.models import ConversationKey
from chatbridge.engine.retry import is_retryable_transport_error, with_infinite_retry
from chatbridge.shared.services.session_files import session_file_path
from chatbridge.shared.services.session_store import SessionStore

from .chat_client import ChatClient
from .transcript import TranscriptTurn, read_new_messages

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one sync pass."""
    new_offset: int
    posted: list[str] = field(default_factory=list)
    already_delivered: list[str] = field(default_factory=list)
    empty: list[str] = field(default_factory=list)
    failed: str | None = None

    @property
    def complete(self) -> bool:
        return self.failed is None


class MessageSync:
    """Posts transcript turns of a conversation's agent session."""

    def __init__(
        self,
        store: SessionStore,
        chat: ChatClient,
        deduplicator: DeliveryDeduplicator,
        *,
        projects_dir: Path | None = None,
    ) -> None:
        self._store = store
        self._chat = chat
        self._dedup = deduplicator
        self._projects_dir = projects_dir

    async def sync(self, key: ConversationKey, offset: int = 0) -> SyncResult:
        """Mirror turns appended to the transcript since ``offset``.

        The returned offset only moves past turns that were handled
        (posted, found already delivered, or empty), so a failed post is
        retried from the same turn on the next pass.
        """
        session = await self._store.get(key)
        if session is None or not session.agent_session_id:
            return SyncResult(new_offset=offset)
        path = session_file_path(
            session.agent_session_id, session.working_directory, self._projects_dir,
        )
        turns, read_offset = read_new_messages(path, offset)
        result = SyncResult(new_offset=read_offset)

        delivered = await self._dedup.delivered_turn_ids(key)
        pending = {t.uuid for t in turns if t.is_assistant and t.uuid not in delivered}
        logger.debug(
            "Sync %s: %d new line turn(s), %d undelivered", key, len(turns), len(pending),
        )

        handled_offset = offset
        for turn in turns:
            if turn.uuid not in pending:
                handled_offset = turn.end_offset
                continue
            try:
                delivery = await self._dedup.deliver_turn(
                    key,
                    turn.uuid,
                    turn.text,
                    lambda chunk: self._post(key, chunk),
                    agent_session_id=session.agent_session_id,
                    message_size_limit=session.message_size_limit,
                )
            except ChatTransportError as exc:
                logger.warning("Sync %s: turn %s failed: %s", key, turn.uuid[:12], exc)
                result.failed = turn.uuid
                result.new_offset = handled_offset
                return result
            _tally(result, turn, delivery.empty, delivery.already_delivered)
            handled_offset = turn.end_offset

        if result.posted:
            logger.info("Mirrored %d turn(s) into %s", len(result.posted), key)
        return result

    async def _post(self, key: ConversationKey, text: str):
        return await with_infinite_retry(
            lambda: self._chat.post_message(key.channel, text, thread_ts=key.thread_origin),
            should_retry=is_retryable_transport_error,
        )


def _tally(result: SyncResult, turn: TranscriptTurn, empty: bool, duplicate: bool) -> None:
    if empty:
        result.empty.append(turn.uuid)
    elif duplicate:
        result.already_delivered.append(turn.uuid)
    else:
        result.posted.append(turn.uuid)
