"""Incremental reader for the agent backend's JSONL session transcript.

The backend appends one JSON object per line. Only ``user`` and
``assistant`` lines that carry message content are turned into
TranscriptTurns; queue operations, progress lines and snapshots are
consumed silently.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class TranscriptTurn:
    """One user or assistant message observed in a transcript."""
    uuid: str
    kind: str
    text: str
    timestamp: str | None = None
    session_id: str | None = None
    # Byte offset just past this turn's line
    end_offset: int = 0

    @property
    def is_assistant(self) -> bool:
        return self.kind == "assistant"


def extract_text(content: Any) -> str:
    """Visible text of a message content field.

    User content may be a plain string. Tool calls show as
    ``[Tool: name]``; thinking and tool results are omitted.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and block.get("text"):
            parts.append(block["text"])
        elif block_type == "tool_use" and block.get("name"):
            parts.append(f"[Tool: {block['name']}]")
    return "\n".join(parts)


def read_new_messages(path: Path, offset: int) -> tuple[list[TranscriptTurn], int]:
    """Read turns appended since ``offset``.

    Returns ``(turns, new_offset)``. A first line that does not parse is
    assumed to be the tail of a line the offset landed inside and is
    skipped. A trailing line without its newline is left for the next
    call, as is a later line that does not parse yet.
    """
    path = Path(path)
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return [], offset
    if size <= offset:
        return [], offset

    with open(path, "rb") as f:
        f.seek(offset)
        data = f.read(size - offset)

    turns: list[TranscriptTurn] = []
    consumed = 0
    first = True
    for raw_line in data.splitlines(keepends=True):
        if not raw_line.endswith(b"\n"):
            break
        line_end = offset + consumed + len(raw_line)
        stripped = raw_line.strip()
        if not stripped:
            consumed += len(raw_line)
            continue
        try:
            entry = json.loads(stripped.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            if first:
                logger.debug("Skipping partial first line at offset %d in %s", offset, path.name)
                consumed += len(raw_line)
                first = False
                continue
            break
        first = False
        consumed += len(raw_line)
        turn = _entry_to_turn(entry, line_end)
        if turn is not None:
            turns.append(turn)

    return turns, offset + consumed


def _entry_to_turn(entry: Any, end_offset: int) -> TranscriptTurn | None:
    if not isinstance(entry, dict):
        return None
    kind = entry.get("type")
    message = entry.get("message") or {}
    if kind not in ("user", "assistant") or not isinstance(message, dict):
        return None
    content = message.get("content")
    if not content or not entry.get("uuid"):
        return None
    return TranscriptTurn(
        uuid=entry["uuid"],
        kind=kind,
        text=extract_text(content),
        timestamp=entry.get("timestamp"),
        session_id=entry.get("sessionId"),
        end_offset=end_offset,
    )
