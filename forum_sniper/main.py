"""
Forum Sniper - Main Entry Point
Watches forums for open registrations and registers automatically when it can.

Usage:
    forum-sniper
    python -m forum_sniper.main

Features:
    - Jittered polling scheduler with stale-state recovery
    - Fingerprint / heuristic / AI layered registration pipeline
    - Optional FlareSolverr challenge bypass
    - Reddit discovery of newly opened forums
    - Telegram alerts and commands
"""

import logging
import signal
import sys
import threading
import time
from typing import Optional

from .ai_planner import build_planner
from .browser import PlaywrightDriver
from .challenge_bypass import build_bypass_client
from .commander import TelegramCommander
from .config import Config
from .discovery import RedditMonitor
from .events import EventChannel
from .evidence import EvidenceRecorder
from .notifier import AlertObserver, is_configured as telegram_configured
from .probe_engine import ProbeEngine
from .scheduler import Scheduler
from .store import SQLiteTargetStore, TargetStore
from .target_service import TargetService

logger = logging.getLogger("ForumSniper.Main")

shutdown_event = threading.Event()


def setup_logging(level: int = logging.INFO) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if Config.LOG_FILE:
        handlers.append(logging.FileHandler(Config.LOG_FILE, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
        datefmt='%H:%M:%S',
        handlers=handlers,
        force=True
    )
    # Connection pool noise
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class ForumSniper:
    """Wires storage, engine, scheduler and the optional Telegram/Reddit surfaces"""

    def __init__(self, store: Optional[TargetStore] = None):
        self.events = EventChannel()
        self.store = store or SQLiteTargetStore(Config.DB_PATH)
        self.engine = ProbeEngine(
            driver=PlaywrightDriver(),
            bypass=build_bypass_client(),
            planner=build_planner(),
            evidence=EvidenceRecorder(Config.EVIDENCE_DIR) if Config.EVIDENCE_ENABLED else None,
        )
        self.scheduler = Scheduler(self.store, self.engine, self.events)
        self.service = TargetService(self.store, self.scheduler, self.events)
        self.monitor = RedditMonitor(self.service.add_discovered) if Config.REDDIT_ENABLED else None
        self.observer: Optional[AlertObserver] = None
        self.commander: Optional[TelegramCommander] = None
        if telegram_configured():
            self.observer = AlertObserver(self.events)
            self.commander = TelegramCommander(self.service, self.scheduler, self.monitor)

    def start(self) -> None:
        for warning in Config.validate():
            logger.warning(f"[CONFIG] {warning}")
        logger.info(f"[INIT] Loaded {len(self.store.load_all())} targets from {Config.DB_PATH}")
        self.scheduler.start()
        for component in (self.monitor, self.observer, self.commander):
            if component:
                component.start()

    def stop(self) -> None:
        for component in (self.commander, self.observer, self.monitor):
            if component:
                component.stop()
        self.scheduler.stop()

    def healthy(self) -> bool:
        return self.scheduler.is_running


def run_forum_sniper() -> bool:
    """
    Run Forum Sniper with automatic recovery
    Implements supervisor pattern for 24/7 operation
    """
    retry_count = 0
    max_retries = 10

    while retry_count < max_retries and not shutdown_event.is_set():
        app = None
        try:
            logger.info("=" * 60)
            logger.info("   FORUM SNIPER - REGISTRATION WATCH")
            logger.info("=" * 60)

            app = ForumSniper()
            app.start()
            start_time = time.time()

            while not shutdown_event.wait(5):
                if not app.healthy():
                    raise RuntimeError("Scheduler thread died")
                if time.time() - start_time > 600:
                    retry_count = 0

            logger.info("[STOP] Shutdown requested")
            app.stop()
            return True

        except Exception as e:
            retry_count += 1
            logger.error(f"[ERROR] Critical crash: {e}")
            if app:
                app.stop()
            if retry_count < max_retries:
                wait_time = min(30 * retry_count, 300)
                logger.info(f"[RETRY] Restarting in {wait_time}s (attempt {retry_count + 1}/{max_retries})...")
                if shutdown_event.wait(wait_time):
                    return True
            else:
                logger.critical("[FATAL] MAX RETRIES REACHED! Manual intervention required.")
                return False

    return shutdown_event.is_set()


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    logger.info(f"🛑 Received signal {signum} - initiating graceful shutdown")
    shutdown_event.set()


def main() -> int:
    setup_logging()
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    return 0 if run_forum_sniper() else 1


if __name__ == "__main__":
    sys.exit(main())
