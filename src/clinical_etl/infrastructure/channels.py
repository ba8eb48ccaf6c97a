"""In-Memory Message Channel.

At-least-once queue used between pipeline stages when running locally:

    - every message gets a stable id and a receive count
    - a received message is invisible until acked, nacked, or its visibility
      timeout expires (then it is delivered again)
    - a message received ``max_receive_count`` times without an ack moves to
      the dead-letter list
    - ``redrive_dead_letters`` moves dead letters back to the main queue

Thread-safe: all state is guarded by one lock, so producers running in
worker threads and the async batch driver may share a channel.
"""

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from clinical_etl.domain.ports import MessageChannelPort

logger = logging.getLogger(__name__)


@dataclass
class ChannelMessage:
    """One message as held by the channel."""

    message_id: str
    body: dict[str, Any]
    attributes: dict[str, str] = field(default_factory=dict)
    receive_count: int = 0
    invisible_until: float = 0.0


class InMemoryChannel(MessageChannelPort):
    """Queue with visibility timeout and dead-letter escalation.

    Parameters:
        name: Channel name used in log lines
        max_receive_count: Receives without ack before dead-lettering
        visibility_timeout: Seconds a received message stays invisible
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        name: str,
        max_receive_count: int = 5,
        visibility_timeout: float = 60.0,
        clock: Optional[Callable[[], float]] = None
    ):
        if max_receive_count < 1:
            raise ValueError("max_receive_count must be >= 1")
        self.name = name
        self.max_receive_count = max_receive_count
        self.visibility_timeout = visibility_timeout
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._queue: deque[ChannelMessage] = deque()
        self._in_flight: dict[str, ChannelMessage] = {}
        self._dead_letters: list[ChannelMessage] = []

    async def send(self, body: dict[str, Any], attributes: Optional[dict[str, str]] = None) -> str:
        return self.send_nowait(body, attributes)

    def send_nowait(self, body: dict[str, Any], attributes: Optional[dict[str, str]] = None) -> str:
        message = ChannelMessage(message_id=str(uuid.uuid4()), body=body, attributes=dict(attributes or {}))
        with self._lock:
            self._queue.append(message)
        logger.debug(f"{self.name}: enqueued {message.message_id}")
        return message.message_id

    def receive(self, max_messages: int = 10) -> list[ChannelMessage]:
        """Take up to ``max_messages`` visible messages and mark them in flight.

        Messages whose visibility timeout expired are returned to the queue
        first; a message that has already reached the maximum receive count
        is dead-lettered instead of delivered again.
        """
        now = self._clock()
        received = []
        with self._lock:
            self._release_expired(now)
            while self._queue and len(received) < max_messages:
                message = self._queue.popleft()
                if message.receive_count >= self.max_receive_count:
                    self._dead_letter(message)
                    continue
                message.receive_count += 1
                message.invisible_until = now + self.visibility_timeout
                self._in_flight[message.message_id] = message
                received.append(message)
        return received

    def ack(self, message_id: str) -> bool:
        """Delete a received message. Returns False if it is no longer in flight."""
        with self._lock:
            return self._in_flight.pop(message_id, None) is not None

    def nack(self, message_id: str) -> bool:
        """Make a received message visible again, dead-lettering it when exhausted."""
        with self._lock:
            message = self._in_flight.pop(message_id, None)
            if message is None:
                return False
            if message.receive_count >= self.max_receive_count:
                self._dead_letter(message)
            else:
                message.invisible_until = 0.0
                self._queue.append(message)
            return True

    def redrive_dead_letters(self, max_messages: Optional[int] = None) -> int:
        """Move dead letters back to the queue with a fresh receive count."""
        with self._lock:
            count = len(self._dead_letters) if max_messages is None else min(max_messages, len(self._dead_letters))
            for message in self._dead_letters[:count]:
                message.receive_count = 0
                message.invisible_until = 0.0
                self._queue.append(message)
            del self._dead_letters[:count]
        if count:
            logger.info(f"{self.name}: redrove {count} dead-lettered message(s)")
        return count

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    @property
    def dead_letter_count(self) -> int:
        with self._lock:
            return len(self._dead_letters)

    def dead_letters(self) -> list[ChannelMessage]:
        with self._lock:
            return list(self._dead_letters)

    def is_idle(self) -> bool:
        """True when nothing is queued or in flight."""
        with self._lock:
            return not self._queue and not self._in_flight

    def _release_expired(self, now: float) -> None:
        expired = [m for m in self._in_flight.values() if m.invisible_until <= now]
        for message in expired:
            del self._in_flight[message.message_id]
            self._queue.append(message)

    def _dead_letter(self, message: ChannelMessage) -> None:
        self._dead_letters.append(message)
        logger.error(
            f"{self.name}: message {message.message_id} dead-lettered after {message.receive_count} receives",
            extra={"message_id": message.message_id},
        )
