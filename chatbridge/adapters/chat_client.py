"""Abstract chat platform client.

The bridge only needs four calls from the chat platform. Each may raise
RateLimitedError (recoverable, retry with backoff) or
TransportFailedError (hard failure for that call).
"""
from __future__ import annotations

import abc
from dataclasses import dataclass


@dataclass
class PostedMessage:
    """Result of a successful post.

    ``ts`` is the platform's message timestamp, which doubles as the
    message id. It can be None when the platform accepted the post but
    did not report where it landed.
    """
    channel: str
    ts: str | None = None


class ChatClient(abc.ABC):
    """Chat platform surface consumed by the bridge."""

    @abc.abstractmethod
    async def post_message(
        self,
        channel: str,
        text: str,
        *,
        thread_ts: str | None = None,
    ) -> PostedMessage:
        """Post a new message, optionally into a thread."""

    @abc.abstractmethod
    async def update_message(self, channel: str, ts: str, text: str) -> None:
        """Replace the text of an existing message."""

    @abc.abstractmethod
    async def delete_message(self, channel: str, ts: str) -> None:
        """Delete a message."""

    @abc.abstractmethod
    async def upload_file(
        self,
        channel: str,
        filename: str,
        content: bytes,
        *,
        thread_ts: str | None = None,
        title: str | None = None,
    ) -> None:
        """Upload a file into a channel or thread."""
