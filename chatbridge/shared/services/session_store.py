"""Session store: save and load conversation sessions to disk.

Storage layout (one JSON document for the whole process):

    {
      "version": 1,
      "channels": {
        "<channel>": {
          ...root session fields...,
          "threads": {"<thread origin ts>": {...thread session fields...}}
        }
      }
    }

Every mutation is a full-file read-modify-write performed under one
asyncio.Lock, re-reading the latest file contents before merging, so
concurrent updates for the same conversation never lose each other's
fields.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from chatbridge.engine.errors import InvalidSessionUpdateError, SessionStoreError
from chatbridge.engine.models import (
    IMMUTABLE_FIELDS,
    INHERITED_FIELDS,
    ConversationKey,
    ForkPoint,
    PermissionMode,
    Session,
    TurnKind,
    TurnRecord,
    UsageStats,
    _utcnow,
)
from chatbridge.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

STORE_VERSION = 1

_T = TypeVar("_T")

_SESSION_FIELDS = frozenset(f.name for f in dataclasses.fields(Session))


class SessionStore:
    """Durable mapping from conversation identity to session state.

    ``defaults`` seeds newly created channel sessions; thread sessions
    inherit their configuration from the channel root instead.
    """

    def __init__(
        self,
        path: Path,
        *,
        defaults: Mapping[str, Any] | None = None,
    ) -> None:
        self._path = Path(path)
        self._defaults = dict(defaults or {})
        unknown = set(self._defaults) - _SESSION_FIELDS
        if unknown:
            raise InvalidSessionUpdateError(sorted(unknown)[0])
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    # ── Reads ────────────────────────────────────────────────

    async def get(self, key: ConversationKey) -> Session | None:
        """Return the session for key, or None if it was never created."""
        async with self._lock:
            data = await asyncio.to_thread(self._load)
        raw = _find_session_dict(data, key)
        return _dict_to_session(raw) if raw is not None else None

    async def list_threads(self, channel: str) -> list[str]:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
        record = data["channels"].get(channel) or {}
        return sorted(record.get("threads", {}))

    # ── Writes ───────────────────────────────────────────────

    async def get_or_create(self, key: ConversationKey) -> Session:
        """Return the session for key, creating defaults when absent."""

        def apply(data: dict) -> tuple[Session, bool]:
            raw = _find_session_dict(data, key)
            if raw is not None:
                return _dict_to_session(raw), False
            session = self._new_session(data, key)
            _store_session(data, key, session)
            logger.info("Created session for %s", key)
            return session, True

        return await self._mutate(apply)

    async def upsert(
        self,
        key: ConversationKey,
        update: Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> Session:
        """Merge the named fields into the session, creating it if needed.

        Only named fields change. ``turn_map`` entries are merged in,
        ``previous_agent_session_ids`` only ever grows, and ancestry
        fields that already hold a value are never overwritten.
        ``last_active_at`` is refreshed on every call.
        """
        changes = dict(update or {})
        changes.update(fields)
        for name in changes:
            if name not in _SESSION_FIELDS:
                raise InvalidSessionUpdateError(name)

        def apply(data: dict) -> tuple[Session, bool]:
            raw = _find_session_dict(data, key)
            session = (
                _dict_to_session(raw) if raw is not None
                else self._new_session(data, key)
            )
            _apply_changes(session, changes, key)
            session.last_active_at = _utcnow()
            _store_session(data, key, session)
            return session, True

        session = await self._mutate(apply)
        if "agent_session_id" in changes:
            logger.info(
                "Session %s now bound to agent session %s",
                key, (session.agent_session_id or "none")[:8],
            )
        return session

    async def record_turn(
        self,
        key: ConversationKey,
        external_id: str,
        record: TurnRecord,
    ) -> bool:
        """Bind an external message to an agent turn.

        Returns False (and writes nothing) when the identical binding is
        already present.
        """

        def apply(data: dict) -> tuple[bool, bool]:
            raw = _find_session_dict(data, key)
            session = (
                _dict_to_session(raw) if raw is not None
                else self._new_session(data, key)
            )
            if session.turn_map.get(external_id) == record:
                return False, False
            session.turn_map[external_id] = record
            session.last_active_at = _utcnow()
            _store_session(data, key, session)
            return True, True

        added = await self._mutate(apply)
        if added:
            logger.debug(
                "Recorded %s turn %s as message %s in %s",
                record.kind.value, record.agent_turn_id[:12], external_id, key,
            )
        return added

    async def clear_session(self, key: ConversationKey) -> Session | None:
        """Detach the current agent session, keeping it in history."""

        def apply(data: dict) -> tuple[Session | None, bool]:
            raw = _find_session_dict(data, key)
            if raw is None:
                return None, False
            session = _dict_to_session(raw)
            old_id = session.agent_session_id
            if old_id and old_id not in session.previous_agent_session_ids:
                session.previous_agent_session_ids.append(old_id)
            session.agent_session_id = None
            session.last_usage = None
            session.last_active_at = _utcnow()
            _store_session(data, key, session)
            return session, True

        session = await self._mutate(apply)
        if session is not None:
            logger.info(
                "Cleared session %s (%d previous agent session(s))",
                key, len(session.previous_agent_session_ids),
            )
        return session

    async def resume_session(
        self,
        key: ConversationKey,
        agent_session_id: str,
        working_directory: str,
    ) -> tuple[Session, str | None]:
        """Bind an existing agent session and lock its working directory.

        The replaced agent session id moves into history. Returns the
        session and the replaced id (None if there was none or it was the
        same session).
        """

        def apply(data: dict) -> tuple[tuple[Session, str | None], bool]:
            raw = _find_session_dict(data, key)
            session = (
                _dict_to_session(raw) if raw is not None
                else self._new_session(data, key)
            )
            old_id = session.agent_session_id
            if old_id == agent_session_id:
                old_id = None
            if old_id and old_id not in session.previous_agent_session_ids:
                session.previous_agent_session_ids.append(old_id)
            session.agent_session_id = agent_session_id
            session.working_directory = working_directory
            session.path_locked = True
            session.last_usage = None
            session.last_active_at = _utcnow()
            _store_session(data, key, session)
            return (session, old_id), True

        session, old_id = await self._mutate(apply)
        logger.info(
            "Session %s resumed agent session %s in %s",
            key, agent_session_id[:8], working_directory,
        )
        return session, old_id

    async def get_or_create_thread_session(
        self,
        channel: str,
        thread_origin: str,
        fork_point: ForkPoint | None = None,
        *,
        source_thread: str | None = None,
    ) -> tuple[Session, bool]:
        """Return the thread's session, forking a new one on first use.

        The new session forks from the fork point's agent session when
        one is given, otherwise from the latest agent session of the
        channel root (or of ``source_thread`` for thread-to-thread forks).
        Returns ``(session, created)``.
        """
        key = ConversationKey(channel, thread_origin)

        def apply(data: dict) -> tuple[tuple[Session, bool], bool]:
            raw = _find_session_dict(data, key)
            if raw is not None:
                return (_dict_to_session(raw), False), False
            session = self._new_session(data, key)
            source: Session | None = None
            if source_thread is not None:
                source_raw = _find_session_dict(
                    data, ConversationKey(channel, source_thread),
                )
                source = _dict_to_session(source_raw) if source_raw else None
                session.forked_from_thread_origin = source_thread
            else:
                root_raw = _find_session_dict(data, key.root)
                source = _dict_to_session(root_raw) if root_raw else None
            if fork_point is not None:
                session.forked_from = fork_point.agent_session_id
                session.resume_at_turn_id = fork_point.turn_id
            elif source is not None:
                session.forked_from = source.agent_session_id
            _store_session(data, key, session)
            return (session, True), True

        session, created = await self._mutate(apply)
        if created:
            logger.info(
                "Forked thread session %s from %s at turn %s",
                key,
                (session.forked_from or "none")[:8],
                session.resume_at_turn_id or "latest",
            )
        return session, created

    async def delete(self, channel: str) -> list[str]:
        """Remove a channel and all its threads.

        Returns every agent session id the channel ever referenced
        (current and previous, root and all threads) for artifact cleanup.
        """

        def apply(data: dict) -> tuple[list[str], bool]:
            record = data["channels"].pop(channel, None)
            if record is None:
                return [], False
            sessions = [_dict_to_session(record)]
            sessions.extend(
                _dict_to_session(raw)
                for raw in record.get("threads", {}).values()
            )
            ids: list[str] = []
            for session in sessions:
                for agent_id in session.all_agent_session_ids():
                    if agent_id not in ids:
                        ids.append(agent_id)
            return ids, True

        ids = await self._mutate(apply)
        logger.info(
            "Deleted channel %s (%d agent session id(s) to clean up)",
            channel, len(ids),
        )
        return ids

    # ── File I/O ─────────────────────────────────────────────

    async def _mutate(self, apply: Callable[[dict], tuple[_T, bool]]) -> _T:
        """Read the latest file, apply a change and write it back.

        A failed write is logged and the in-memory result is still
        returned so chat-visible behaviour does not depend on disk health.
        """
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            result, dirty = apply(data)
            if dirty:
                try:
                    await asyncio.to_thread(self._save, data)
                except (OSError, TypeError, ValueError):
                    logger.warning(
                        "Failed to persist sessions to %s", self._path,
                        exc_info=True,
                    )
        return result

    def _load(self) -> dict:
        if not self._path.exists():
            return _empty_document()
        try:
            raw = self._path.read_bytes()
        except OSError as exc:
            # Not corrupt, so it must never be replaced by an empty document
            raise SessionStoreError(self._path, str(exc)) from exc
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.error("Unreadable session store %s", self._path, exc_info=True)
            self._quarantine()
            return _empty_document()
        if not isinstance(data, dict) or not isinstance(data.get("channels"), dict):
            logger.error("Session store %s has no channels map", self._path)
            self._quarantine()
            return _empty_document()
        return data

    def _save(self, data: dict) -> None:
        data["version"] = STORE_VERSION
        atomic_write_json(self._path, data)

    def _quarantine(self) -> None:
        """Move a corrupt store aside so the next write cannot destroy it."""
        target = self._path.with_name(
            f"{self._path.name}.corrupt-{int(time.time())}"
        )
        try:
            self._path.replace(target)
            logger.warning("Moved corrupt session store to %s", target)
        except OSError:
            logger.warning("Could not move corrupt store %s", self._path, exc_info=True)

    def _new_session(self, data: dict, key: ConversationKey) -> Session:
        session = Session(**self._defaults)
        if key.is_thread:
            root_raw = _find_session_dict(data, key.root)
            root = (
                _dict_to_session(root_raw) if root_raw is not None
                else Session(**self._defaults)
            )
            for name in INHERITED_FIELDS:
                setattr(session, name, getattr(root, name))
        return session


def _empty_document() -> dict:
    return {"version": STORE_VERSION, "channels": {}}


def _find_session_dict(data: dict, key: ConversationKey) -> dict | None:
    record = data["channels"].get(key.channel)
    if record is None:
        return None
    if key.thread_origin is None:
        return record
    return record.get("threads", {}).get(key.thread_origin)


def _store_session(data: dict, key: ConversationKey, session: Session) -> None:
    channels = data["channels"]
    if key.thread_origin is None:
        threads = (channels.get(key.channel) or {}).get("threads", {})
        record = _session_to_dict(session)
        record["threads"] = threads
        channels[key.channel] = record
        return
    root = channels.get(key.channel)
    if root is None:
        # Threads cannot exist without their channel record
        root = _session_to_dict(Session())
        root["threads"] = {}
        channels[key.channel] = root
    root.setdefault("threads", {})[key.thread_origin] = _session_to_dict(session)


def _apply_changes(
    session: Session,
    changes: Mapping[str, Any],
    key: ConversationKey,
) -> None:
    for name, value in changes.items():
        if name in IMMUTABLE_FIELDS:
            current = getattr(session, name)
            if current is not None and value != current:
                logger.warning(
                    "Ignoring change of %s on %s (%s -> %s)",
                    name, key, current, value,
                )
                continue
            setattr(session, name, value)
        elif name == "turn_map":
            session.turn_map.update(value or {})
        elif name == "previous_agent_session_ids":
            for agent_id in value or []:
                if agent_id not in session.previous_agent_session_ids:
                    session.previous_agent_session_ids.append(agent_id)
        elif name == "permission_mode":
            session.permission_mode = PermissionMode(value)
        elif name == "last_usage" and isinstance(value, dict):
            session.last_usage = UsageStats(**value)
        else:
            setattr(session, name, value)


# ── Serialization helpers ────────────────────────────────────


def _ensure_aware(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware (assume UTC if naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return _ensure_aware(datetime.fromisoformat(value))


def _turn_to_dict(record: TurnRecord) -> dict:
    data: dict[str, Any] = {
        "agent_turn_id": record.agent_turn_id,
        "kind": record.kind.value,
    }
    if record.agent_session_id:
        data["agent_session_id"] = record.agent_session_id
    if record.parent_message_id:
        data["parent_message_id"] = record.parent_message_id
    if record.is_continuation:
        data["is_continuation"] = True
    return data


def _dict_to_turn(data: dict) -> TurnRecord:
    return TurnRecord(
        agent_turn_id=data["agent_turn_id"],
        kind=TurnKind(data.get("kind", TurnKind.AGENT.value)),
        agent_session_id=data.get("agent_session_id"),
        parent_message_id=data.get("parent_message_id"),
        is_continuation=bool(data.get("is_continuation", False)),
    )


def _session_to_dict(session: Session) -> dict:
    return {
        "agent_session_id": session.agent_session_id,
        "previous_agent_session_ids": list(session.previous_agent_session_ids),
        "forked_from": session.forked_from,
        "forked_from_thread_origin": session.forked_from_thread_origin,
        "resume_at_turn_id": session.resume_at_turn_id,
        "working_directory": session.working_directory,
        "path_locked": session.path_locked,
        "permission_mode": session.permission_mode.value,
        "model": session.model,
        "update_rate_seconds": session.update_rate_seconds,
        "message_size_limit": session.message_size_limit,
        "max_thinking_tokens": session.max_thinking_tokens,
        "last_usage": (
            dataclasses.asdict(session.last_usage)
            if session.last_usage is not None else None
        ),
        "turn_map": {
            external_id: _turn_to_dict(record)
            for external_id, record in session.turn_map.items()
        },
        "created_at": session.created_at.isoformat(),
        "last_active_at": session.last_active_at.isoformat(),
    }


def _dict_to_session(data: dict) -> Session:
    usage = data.get("last_usage")
    session = Session(
        agent_session_id=data.get("agent_session_id"),
        previous_agent_session_ids=list(data.get("previous_agent_session_ids") or []),
        forked_from=data.get("forked_from"),
        forked_from_thread_origin=data.get("forked_from_thread_origin"),
        resume_at_turn_id=data.get("resume_at_turn_id"),
        working_directory=data.get("working_directory", "."),
        path_locked=bool(data.get("path_locked", False)),
        permission_mode=PermissionMode(
            data.get("permission_mode", PermissionMode.DEFAULT.value)
        ),
        model=data.get("model"),
        max_thinking_tokens=data.get("max_thinking_tokens"),
        last_usage=UsageStats(**usage) if usage else None,
        turn_map={
            external_id: _dict_to_turn(raw)
            for external_id, raw in (data.get("turn_map") or {}).items()
        },
    )
    if data.get("update_rate_seconds") is not None:
        session.update_rate_seconds = float(data["update_rate_seconds"])
    if data.get("message_size_limit") is not None:
        session.message_size_limit = int(data["message_size_limit"])
    created = _parse_timestamp(data.get("created_at"))
    if created is not None:
        session.created_at = created
    last_active = _parse_timestamp(data.get("last_active_at"))
    if last_active is not None:
        session.last_active_at = last_active
    return session
