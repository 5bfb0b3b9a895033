"""Point-in-time fork resolution.

When a user replies in a new thread, the thread's agent session must
start from the conversation state as it was at the replied-to message,
not from whatever the channel has said since. The resolver scans the
channel root's turn map in message-timestamp order and pins the last
real agent turn strictly before the thread origin.

Records keyed by a synthetic external id (the post succeeded but no
message timestamp came back) are never used as anchors. Each record
carries the agent session it was produced in, so a fork anchored before
an explicit clear still resumes the old, now historical, agent session.
"""
from __future__ import annotations

import logging

from chatbridge.shared.services.session_store import SessionStore

from .models import (
    ConversationKey,
    ForkPoint,
    Session,
    TurnKind,
    TurnRecord,
    is_placeholder_message_id,
    message_ts_value,
)

logger = logging.getLogger(__name__)


class ForkPointResolver:
    """Finds the agent turn a new thread should fork from."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    async def resolve(
        self,
        key: ConversationKey,
        origin_ts: str,
    ) -> ForkPoint | None:
        """Return the fork point for a thread started at origin_ts.

        Only the channel of ``key`` matters; the root session's turn map
        is the source of truth. Returns None when there is no real agent
        turn before the origin.
        """
        root = await self._store.get(key.root)
        if root is None:
            logger.debug("No root session for %s, no fork point", key.channel)
            return None
        point = find_fork_point(root, origin_ts)
        if point is None:
            logger.info(
                "No fork point before %s in %s, thread forks from latest",
                origin_ts, key.channel,
            )
        else:
            logger.info(
                "Fork point for %s at %s: turn %s in agent session %s",
                key.channel, origin_ts, point.turn_id[:12],
                point.agent_session_id[:8],
            )
        return point


def find_fork_point(root: Session, origin_ts: str) -> ForkPoint | None:
    """Pure resolution over an already loaded root session."""
    origin = message_ts_value(origin_ts)
    if origin is None:
        return None

    # The user replied directly to an agent message
    exact = root.turn_map.get(origin_ts)
    if exact is not None and exact.kind == TurnKind.AGENT:
        point = _to_fork_point(exact, root)
        if point is not None:
            return point

    anchors = []
    for external_id, record in root.turn_map.items():
        if is_placeholder_message_id(external_id):
            continue
        ts = message_ts_value(external_id)
        if ts is None:
            continue
        anchors.append((ts, external_id, record))
    anchors.sort(key=lambda item: item[0])

    best: ForkPoint | None = None
    for ts, _external_id, record in anchors:
        if ts >= origin:
            break
        if record.kind != TurnKind.AGENT:
            continue
        point = _to_fork_point(record, root)
        if point is not None:
            best = point
    return best


def _to_fork_point(record: TurnRecord, root: Session) -> ForkPoint | None:
    # Records written before per-turn session ids existed belong to the
    # session that was current at the time.
    agent_session_id = record.agent_session_id or root.agent_session_id
    if not agent_session_id:
        return None
    return ForkPoint(turn_id=record.agent_turn_id, agent_session_id=agent_session_id)
