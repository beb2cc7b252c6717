"""
Forum Sniper - Event Channel
Broadcasts target lifecycle events to any number of observers.

Each observer owns a bounded queue. Publishing never blocks: when an
observer falls behind, its oldest pending event is dropped to make room.
Delivery is best effort, there is no acknowledgement and no retry.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import now_utc

logger = logging.getLogger("ForumSniper.Events")

DEFAULT_BUFFER = 256


@dataclass
class Event:
    target_id: str
    timestamp: Any = field(default_factory=now_utc, compare=False)

    @property
    def kind(self) -> str:
        return self.__class__.__name__


@dataclass
class StatusChanged(Event):
    status: str = ""
    target: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LogAppended(Event):
    line: str = ""


@dataclass
class MetadataChanged(Event):
    forum_type: Optional[str] = None
    robots_info: Dict[str, Any] = field(default_factory=dict)
    invitation_codes: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class TargetDiscovered(Event):
    url: str = ""
    source: str = ""


class Subscription:
    """One observer's bounded buffer"""

    def __init__(self, channel: "EventChannel", maxsize: int = DEFAULT_BUFFER, name: str = ""):
        self._channel = channel
        self._queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        self.name = name or f"sub-{id(self):x}"
        self.dropped = 0

    def offer(self, event: Event) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None when nothing arrived within timeout"""
        try:
            if timeout is None:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Event]:
        events = []
        while True:
            event = self.get()
            if event is None:
                return events
            events.append(event)

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._channel.unsubscribe(self)


class EventChannel:

    def __init__(self):
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, maxsize: int = DEFAULT_BUFFER, name: str = "") -> Subscription:
        sub = Subscription(self, maxsize=maxsize, name=name)
        with self._lock:
            self._subscribers.append(sub)
        logger.debug(f"[EVENTS] Observer subscribed: {sub.name}")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            try:
                sub.offer(event)
            except Exception as e:
                logger.warning(f"[EVENTS] Delivery to {sub.name} failed: {e}")

    # ==================== Convenience ====================

    def status_changed(self, target) -> None:
        self.publish(StatusChanged(target_id=target.id, status=target.status.value,
                                   target=target.to_dict(include_secrets=False)))

    def log_appended(self, target_id: str, line: str) -> None:
        self.publish(LogAppended(target_id=target_id, line=line))

    def metadata_changed(self, target) -> None:
        self.publish(MetadataChanged(
            target_id=target.id,
            forum_type=target.forum_type,
            robots_info=target.robots_info(),
            invitation_codes=[c.to_dict() for c in target.invitation_codes],
        ))
