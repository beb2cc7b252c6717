"""
Forum Sniper - Discovery Monitor
Polls the r/FrancePirate "new" listing and proposes forum URLs found in
relevant posts to the target collection.
"""

import logging
import random
import re
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional
from urllib.parse import urlparse

import requests

from .config import Config
from .models import now_utc

logger = logging.getLogger("ForumSniper.Discovery")

KEYWORDS = re.compile(r"(ouvert|invitation|code|regist|s'inscrire|open|sign\s*up)", re.IGNORECASE)
URL_PATTERN = re.compile(
    r"https?://(?:www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
    r"[-a-zA-Z0-9()@:%_+.~#?&/=]*"
)

# Common non-forum links found on Reddit, plus big trackers that are never "new"
IGNORED_DOMAINS = (
    "reddit.com", "redd.it", "imgur.com", "gyazo.com", "youtube.com", "youtu.be",
    "discord.gg", "discord.com", "t.me", "twitter.com", "x.com", "facebook.com",
    "pinterest.com", "google.com", "yggtorrent.li", "sharewood.tv",
)

PROCESSED_CAP = 1000
PROCESSED_TRIM = 200
HISTORY_SIZE = 100


class DiscoveryStatus(str, Enum):
    ADDED = "ADDED"
    DUPLICATE = "DUPLICATE"
    IGNORED_DOMAIN = "IGNORED_DOMAIN"
    IGNORED_NO_KEYWORD = "IGNORED_NO_KEYWORD"
    ERROR = "ERROR"


@dataclass
class DiscoveryRecord:
    status: DiscoveryStatus
    post_id: str = ""
    title: str = ""
    url: str = ""
    message: str = ""
    timestamp: Any = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, str]:
        return {
            "status": self.status.value,
            "postId": self.post_id,
            "title": self.title,
            "url": self.url,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


def is_ignored_domain(url: str) -> bool:
    hostname = (urlparse(url).hostname or "").lower()
    return any(hostname == domain or hostname.endswith("." + domain) for domain in IGNORED_DOMAINS)


class RedditMonitor(threading.Thread):
    """
    Args:
        add_target: Callback (url, source) -> bool, True when a new target was created
        feed_url: Reddit JSON listing
        interval_minutes / jitter_minutes: Poll cadence
    """

    def __init__(self, add_target: Callable[[str, str], bool],
                 feed_url: Optional[str] = None,
                 interval_minutes: Optional[float] = None,
                 jitter_minutes: Optional[float] = None,
                 http: Optional[requests.Session] = None):
        super().__init__(name="RedditMonitor")
        self.daemon = True
        self.add_target = add_target
        self.feed_url = feed_url or Config.REDDIT_FEED_URL
        self.interval_minutes = Config.REDDIT_INTERVAL_MINUTES if interval_minutes is None else interval_minutes
        self.jitter_minutes = Config.REDDIT_JITTER_MINUTES if jitter_minutes is None else jitter_minutes
        self.http = http or requests.Session()
        self.stop_event = threading.Event()

        self._processed: "OrderedDict[str, None]" = OrderedDict()
        self.history: Deque[DiscoveryRecord] = deque(maxlen=HISTORY_SIZE)
        self._lock = threading.Lock()
        self.checks = 0
        self.added = 0
        self.last_check = None

    def run(self):
        logger.info("[REDDIT] Starting Reddit Monitor for r/FrancePirate...")
        while not self.stop_event.is_set():
            try:
                self.check_once()
            except Exception as e:
                logger.error(f"[REDDIT] Monitor loop error: {e}")
            if self.stop_event.wait(self.next_interval()):
                break

    def stop(self):
        self.stop_event.set()

    def next_interval(self) -> float:
        minutes = self.interval_minutes + random.uniform(-self.jitter_minutes, self.jitter_minutes)
        return max(60.0, minutes * 60)

    # ==================== Polling ====================

    def fetch_posts(self) -> List[Dict[str, Any]]:
        resp = self.http.get(self.feed_url, headers={"User-Agent": Config.REDDIT_USER_AGENT}, timeout=15)
        if not resp.ok:
            raise RuntimeError(f"Reddit API Error: {resp.status_code} {resp.reason}")
        children = ((resp.json() or {}).get("data") or {}).get("children") or []
        return [c.get("data") or {} for c in children]

    def check_once(self) -> int:
        """One poll of the feed; returns the number of targets added"""
        logger.info("[REDDIT] Checking r/FrancePirate for new open forums...")
        self.checks += 1
        self.last_check = now_utc()
        try:
            posts = self.fetch_posts()
        except Exception as e:
            logger.error(f"[REDDIT] Error checking Reddit: {e}")
            self._record(DiscoveryRecord(DiscoveryStatus.ERROR, message=str(e)))
            return 0

        added = 0
        for post in posts:
            added += self.process_post(post)

        self._trim_processed()
        if added:
            logger.info(f"[REDDIT] Reddit Scan Complete. Added {added} new targets.")
        return added

    def process_post(self, post: Dict[str, Any]) -> int:
        post_id = str(post.get("id") or "")
        if not post_id or post_id in self._processed:
            return 0
        self._processed[post_id] = None

        title = post.get("title") or ""
        content = f"{title} {post.get('selftext') or ''} {post.get('url') or ''}"
        if not KEYWORDS.search(content):
            self._record(DiscoveryRecord(DiscoveryStatus.IGNORED_NO_KEYWORD, post_id, title))
            return 0

        added = 0
        for match in URL_PATTERN.finditer(content):
            url = match.group(0)
            if is_ignored_domain(url):
                self._record(DiscoveryRecord(DiscoveryStatus.IGNORED_DOMAIN, post_id, title, url))
                continue

            logger.info(f"[REDDIT] Found potential candidate: {url} in post \"{title}\"")
            try:
                created = self.add_target(url, "REDDIT_AUTO")
            except Exception as e:
                logger.error(f"[REDDIT] Could not add {url}: {e}")
                self._record(DiscoveryRecord(DiscoveryStatus.ERROR, post_id, title, url, str(e)))
                continue

            if created:
                added += 1
                self.added += 1
                logger.info(f"[REDDIT] [AUTO-ADD] Added {url} to targets.")
                self._record(DiscoveryRecord(DiscoveryStatus.ADDED, post_id, title, url))
            else:
                self._record(DiscoveryRecord(DiscoveryStatus.DUPLICATE, post_id, title, url))
        return added

    def _trim_processed(self):
        if len(self._processed) > PROCESSED_CAP:
            for _ in range(PROCESSED_TRIM):
                self._processed.popitem(last=False)

    def _record(self, record: DiscoveryRecord):
        with self._lock:
            self.history.appendleft(record)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            history = [r.to_dict() for r in self.history]
        return {
            "checks": self.checks,
            "added": self.added,
            "lastCheck": self.last_check.isoformat() if self.last_check else None,
            "processed": len(self._processed),
            "history": history,
        }
