"""
Forum Sniper - Target Service
Operator and discovery-feed operations on the target collection.
"""

import logging
import threading
from collections import Counter
from typing import Dict, List, Optional
from urllib.parse import urlparse

from .errors import TargetNotFound
from .events import EventChannel, TargetDiscovered
from .models import Target
from .scheduler import Scheduler
from .store import TargetStore

logger = logging.getLogger("ForumSniper.Targets")

DISCOVERY_SOURCE = "REDDIT_AUTO"


def is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class TargetService:

    def __init__(self, store: TargetStore, scheduler: Optional[Scheduler] = None,
                 events: Optional[EventChannel] = None):
        self.store = store
        self.scheduler = scheduler
        self.events = events
        self._add_lock = threading.Lock()

    def list_targets(self) -> List[Target]:
        return self.store.load_all()

    def get(self, target_id: str) -> Target:
        return self.store.get(target_id)

    def add_target(self, url: str, pseudo: str = "", email: str = "", password: str = "") -> Target:
        """New IDLE target; raises ValueError on a non-http(s) URL, StoreError on storage faults"""
        url = (url or "").strip()
        if not is_valid_url(url):
            raise ValueError(f"Invalid URL: {url!r}")
        target = Target.create(url, pseudo, email, password)
        self.store.upsert(target)
        logger.info(f"[TARGETS] Added {target.id}: {url}")
        if self.events:
            self.events.status_changed(target)
        return target

    def delete_target(self, target_id: str) -> None:
        if not self.store.delete(target_id):
            raise TargetNotFound(target_id)
        logger.info(f"[TARGETS] Deleted {target_id}")

    def probe_now(self, target_id: str) -> bool:
        """Returns immediately; False when the check was refused (registered or in flight)"""
        if not self.scheduler:
            raise RuntimeError("No scheduler attached")
        logger.info(f"[TARGETS] Force check requested for {target_id}")
        return self.scheduler.probe_now(target_id)

    def add_discovered(self, url: str, source: str = DISCOVERY_SOURCE) -> bool:
        """
        Discovery callback. False when the URL is already watched, with or
        without a trailing slash.
        """
        with self._add_lock:
            if self.store.find_by_url(url):
                return False
            target = Target.create(url)
            target.logs.appendleft(f"[{source}] Auto-detected from Reddit r/FrancePirate")
            self.store.upsert(target)

        logger.info(f"[REDDIT] Added new target: {url}")
        if self.events:
            self.events.status_changed(target)
            self.events.publish(TargetDiscovered(target_id=target.id, url=url, source=source))
        return True

    def summary(self) -> Dict[str, int]:
        """Target count per status"""
        return dict(Counter(t.status.value for t in self.store.load_all()))
