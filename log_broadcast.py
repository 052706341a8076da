"""
Publish/subscribe fan-out of progress messages.

Each subscriber gets its own bounded queue.  Delivery is best effort: a
subscriber whose queue is full or broken misses the event, and nothing is
reported back to the code that published it.
"""

import json
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

CONNECTED_MESSAGE = "Connected to log stream"
DEFAULT_QUEUE_SIZE = 1000


def _iso_utc_now_z() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def make_event(message: str) -> Dict[str, str]:
    return {'message': message, 'timestamp': _iso_utc_now_z()}


def format_sse(event: Dict[str, Any]) -> str:
    """Render an event as a server-sent-events ``data:`` frame."""
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


class LogBroadcaster:
    """Holds the set of active subscriber channels."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self._queue_size = queue_size
        self._subscribers: List[queue.Queue] = []
        self._lock = threading.Lock()

    def subscribe(self) -> queue.Queue:
        """Register a new channel and greet it with a connection event."""
        channel: queue.Queue = queue.Queue(maxsize=self._queue_size)
        channel.put_nowait(make_event(CONNECTED_MESSAGE))
        with self._lock:
            self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: queue.Queue) -> None:
        with self._lock:
            try:
                self._subscribers.remove(channel)
            except ValueError:
                pass

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, message: str) -> Dict[str, str]:
        """Deliver ``message`` to every current subscriber."""
        event = make_event(message)
        with self._lock:
            subscribers = list(self._subscribers)
        for channel in subscribers:
            try:
                channel.put_nowait(event)
            except queue.Full:
                # Slow listener; it misses this line
                continue
            except Exception as e:
                logger.debug("Dropping event for subscriber: %s", e)
        return event


class BroadcastHandler(logging.Handler):
    """logging handler forwarding formatted records to a LogBroadcaster."""

    def __init__(self, broadcaster: LogBroadcaster, level=logging.INFO):
        super().__init__(level)
        self.broadcaster = broadcaster

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.broadcaster.publish(record.getMessage())
        except Exception:
            self.handleError(record)


# Process-wide broadcaster shared by the monitor and any attached listener
broadcaster = LogBroadcaster()
