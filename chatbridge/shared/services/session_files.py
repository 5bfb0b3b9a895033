"""Locate and remove the agent backend's on-disk session transcripts.

The backend keeps one JSONL transcript per agent session under
``~/.claude/projects/<encoded working dir>/<session id>.jsonl`` where the
working directory is encoded by replacing every ``/`` with ``-``. The
encoding is lossy, so the real working directory of a session is read
back from the ``cwd`` field of its transcript lines.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

logger = logging.getLogger(__name__)


def default_projects_dir() -> Path:
    return Path.home() / ".claude" / "projects"


def encode_working_directory(working_directory: str) -> str:
    return working_directory.replace("/", "-")


def session_file_path(
    agent_session_id: str,
    working_directory: str,
    projects_dir: Path | None = None,
) -> Path:
    """Transcript path of one agent session."""
    base = projects_dir if projects_dir is not None else default_projects_dir()
    return base / encode_working_directory(working_directory) / f"{agent_session_id}.jsonl"


def find_session_files(
    agent_session_id: str,
    projects_dir: Path | None = None,
) -> list[Path]:
    """Every transcript of an agent session, whatever directory it ran in."""
    base = projects_dir if projects_dir is not None else default_projects_dir()
    name = f"{agent_session_id}.jsonl"
    try:
        project_dirs = sorted(p for p in base.iterdir() if p.is_dir())
    except FileNotFoundError:
        return []
    return [d / name for d in project_dirs if (d / name).is_file()]


def read_session_cwd(path: Path) -> str | None:
    """Working directory recorded in a transcript, or None."""
    try:
        with path.open(encoding="utf-8") as fh:
            for line in fh:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict) and entry.get("cwd"):
                    return str(entry["cwd"])
    except OSError:
        logger.warning("Could not read transcript %s", path, exc_info=True)
    return None


def delete_session_files(
    agent_session_ids: Iterable[str],
    projects_dir: Path | None = None,
) -> list[str]:
    """Delete every transcript of the given sessions; return the ids removed.

    Sessions are looked up by id in every project directory, so a session
    that ran before a working directory change is found too. A failure on
    one file is logged and does not stop the others.
    """
    removed: list[str] = []
    for agent_session_id in agent_session_ids:
        paths = find_session_files(agent_session_id, projects_dir)
        if not paths:
            logger.debug("No transcript for agent session %s", agent_session_id[:8])
            continue
        deleted = False
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning("Failed to delete transcript %s", path, exc_info=True)
                continue
            deleted = True
        if deleted:
            removed.append(agent_session_id)
            logger.info("Deleted transcript for agent session %s", agent_session_id[:8])
    return removed
