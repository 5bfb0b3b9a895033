"""Exactly-once delivery of agent turns to the chat.

Two producers post agent output: the live query orchestrator and the
transcript mirror. Both go through DeliveryDeduplicator, whose memory is
the session's turn map. A turn counts as delivered once any external
message is bound to its agent turn id.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from chatbridge.adapters.chat_client import PostedMessage
from chatbridge.shared.services.session_store import SessionStore

from .models import (
    MESSAGE_SIZE_DEFAULT,
    ConversationKey,
    TurnKind,
    TurnRecord,
    USER_TURN_PREFIX,
    synthetic_message_id,
)

logger = logging.getLogger(__name__)

PostFn = Callable[[str], Awaitable[PostedMessage]]


@dataclass
class DeliveryResult:
    """Outcome of delivering one agent turn."""
    turn_id: str
    message_ids: list[str] = field(default_factory=list)
    already_delivered: bool = False
    empty: bool = False

    @property
    def handled(self) -> bool:
        """True when the turn needs no further attempts."""
        return self.already_delivered or self.empty or bool(self.message_ids)


def split_message(text: str, limit: int = MESSAGE_SIZE_DEFAULT) -> list[str]:
    """Split text into chunks of at most limit characters.

    Prefers paragraph, then line, then word boundaries.
    """
    text = text.strip()
    if not text:
        return []
    if limit <= 0 or len(text) <= limit:
        return [text]
    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        window = remaining[:limit]
        cut = -1
        for sep in ("\n\n", "\n", " "):
            cut = window.rfind(sep)
            if cut > limit // 4:
                break
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


class DeliveryDeduplicator:
    """Tracks which agent turns the user has already seen."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    async def already_delivered(self, key: ConversationKey, turn_id: str) -> bool:
        session = await self._store.get(key)
        if session is None:
            return False
        return turn_id in session.delivered_turn_ids()

    async def delivered_turn_ids(self, key: ConversationKey) -> set[str]:
        session = await self._store.get(key)
        return session.delivered_turn_ids() if session is not None else set()

    async def record_delivery(
        self,
        key: ConversationKey,
        external_id: str,
        record: TurnRecord,
    ) -> bool:
        """Bind external_id to the turn; idempotent for the same pair."""
        return await self._store.record_turn(key, external_id, record)

    async def record_user_message(
        self,
        key: ConversationKey,
        message_ts: str,
        agent_session_id: str | None,
    ) -> None:
        await self.record_delivery(
            key,
            message_ts,
            TurnRecord(
                agent_turn_id=f"{USER_TURN_PREFIX}{message_ts}",
                kind=TurnKind.USER,
                agent_session_id=agent_session_id,
            ),
        )

    async def deliver_turn(
        self,
        key: ConversationKey,
        turn_id: str,
        text: str,
        post: PostFn,
        *,
        agent_session_id: str | None,
        parent_message_id: str | None = None,
        message_size_limit: int = MESSAGE_SIZE_DEFAULT,
    ) -> DeliveryResult:
        """Post one agent turn unless it was delivered before.

        Content-free turns are neither posted nor recorded. Each chunk is
        recorded right after its post succeeds. A post that succeeds
        without a message timestamp is recorded under a synthetic id
        derived from the turn id. A post that raises records nothing; if
        it was the first chunk the error propagates so the caller can
        retry the whole turn.
        """
        result = DeliveryResult(turn_id=turn_id)
        chunks = split_message(text, message_size_limit)
        if not chunks:
            logger.debug("Turn %s in %s has no content, skipping", turn_id[:12], key)
            result.empty = True
            return result
        if await self.already_delivered(key, turn_id):
            logger.debug("Turn %s already delivered in %s", turn_id[:12], key)
            result.already_delivered = True
            return result

        for index, chunk in enumerate(chunks):
            try:
                posted = await post(chunk)
            except Exception:
                if index == 0:
                    raise
                logger.warning(
                    "Turn %s: chunk %d/%d failed to post in %s",
                    turn_id[:12], index + 1, len(chunks), key, exc_info=True,
                )
                break
            suffix = turn_id if index == 0 else f"{turn_id}-{index}"
            external_id = posted.ts or synthetic_message_id(suffix)
            if posted.ts is None:
                logger.warning(
                    "Turn %s posted without a message ts, recording %s",
                    turn_id[:12], external_id,
                )
            await self.record_delivery(
                key,
                external_id,
                TurnRecord(
                    agent_turn_id=turn_id,
                    kind=TurnKind.AGENT,
                    agent_session_id=agent_session_id,
                    parent_message_id=parent_message_id if index == 0 else None,
                    is_continuation=index > 0,
                ),
            )
            result.message_ids.append(external_id)
        return result

    async def post_untracked(
        self,
        key: ConversationKey,
        text: str,
        post: PostFn,
        *,
        message_size_limit: int = MESSAGE_SIZE_DEFAULT,
    ) -> list[str]:
        """Post text the backend gave no turn id for.

        Nothing is recorded, so these messages never become fork points.
        Returns the timestamps of the posted chunks.
        """
        chunks = split_message(text, message_size_limit)
        if chunks:
            logger.warning("Response in %s has no backend turn id, posting untracked", key)
        message_ids: list[str] = []
        for chunk in chunks:
            posted = await post(chunk)
            if posted.ts:
                message_ids.append(posted.ts)
        return message_ids
