"""Hash buckets holding outgoing messages and their timeouts."""

from __future__ import annotations

import threading
from typing import Any

from homa.protocol import MessageId
from homa.timeouts import TimeoutManager

__all__ = ["MessageBucket", "MessageBucketMap"]


class MessageBucket:
    """A set of outgoing messages with their message and ping timeouts.

    ``lock`` must be held while the bucket's contents are read or changed.
    """

    def __init__(self, message_timeout_cycles: int, ping_interval_cycles: int) -> None:
        self.lock = threading.Lock()
        self.messages: list[Any] = []
        self.message_timeouts: TimeoutManager[Any] = TimeoutManager(
            message_timeout_cycles
        )
        self.ping_timeouts: TimeoutManager[Any] = TimeoutManager(ping_interval_cycles)

    def find_message(self, msg_id: MessageId) -> Any | None:
        """Return the message with id ``msg_id``, or None if absent."""
        return next((m for m in self.messages if m.id == msg_id), None)


class MessageBucketMap:
    """Maps a message id to the bucket that holds that message."""

    NUM_BUCKETS = 256
    HASH_KEY_MASK = 0xFF

    def __init__(self, message_timeout_cycles: int, ping_interval_cycles: int) -> None:
        self.buckets: tuple[MessageBucket, ...] = tuple(
            MessageBucket(message_timeout_cycles, ping_interval_cycles)
            for _ in range(self.NUM_BUCKETS)
        )

    def get_bucket(self, msg_id: MessageId) -> MessageBucket:
        """Return the bucket in which a message with ``msg_id`` belongs."""
        return self.buckets[hash(msg_id) & self.HASH_KEY_MASK]