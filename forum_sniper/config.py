"""
Forum Sniper - Configuration Module
Browser endpoint, bypass/AI capabilities, scheduler cadence and default credentials
"""

import os
from typing import List
from dotenv import load_dotenv

load_dotenv()
load_dotenv("config.env")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Centralized configuration for Forum Sniper"""

    # ==================== Browser ====================
    # Remote Browserless endpoint; when unset a local Chromium is launched
    BROWSERLESS_HOST = os.getenv("BROWSERLESS_HOST")
    BROWSERLESS_PORT = int(os.getenv("BROWSERLESS_PORT", "3000"))
    HEADLESS = _flag("HEADLESS", "true")
    BROWSER_ARGS = [
        "--disable-blink-features=AutomationControlled",
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--no-first-run",
        "--disable-extensions"
    ]

    # ==================== Challenge Bypass (FlareSolverr) ====================
    FLARESOLVERR_URL = os.getenv("FLARESOLVERR_URL", "").rstrip("/")
    FLARESOLVERR_MAX_TIMEOUT_MS = int(os.getenv("FLARESOLVERR_MAX_TIMEOUT_MS", "60000"))

    # ==================== AI Planner (OpenRouter) ====================
    OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
    DEFAULT_AI_MODEL = "google/gemini-2.0-flash-001"
    AI_MODEL = os.getenv("AI_MODEL", DEFAULT_AI_MODEL)
    AI_BASE_URL = os.getenv("AI_BASE_URL", "https://openrouter.ai/api/v1")
    AI_TIMEOUT = float(os.getenv("AI_TIMEOUT", "60"))
    AI_HTML_LIMIT = int(os.getenv("AI_HTML_LIMIT", "15000"))
    AI_PERSONA = os.getenv(
        "AI_PERSONA",
        "A friendly tech enthusiast who wants to join this community to share "
        "knowledge and learn server administration."
    )

    # ==================== Default Credentials ====================
    DEFAULT_PSEUDO = os.getenv("DEFAULT_PSEUDO", "")
    DEFAULT_EMAIL = os.getenv("DEFAULT_EMAIL", "")
    DEFAULT_PASSWORD = os.getenv("DEFAULT_PASSWORD", "")

    # ==================== Scheduler ====================
    CHECK_INTERVAL_MINUTES = float(os.getenv("CHECK_INTERVAL_MINUTES", "10"))
    CHECK_JITTER_MINUTES = float(os.getenv("CHECK_JITTER_MINUTES", "5"))
    INITIAL_DELAY_SECONDS = float(os.getenv("INITIAL_DELAY_SECONDS", "60"))
    CHECK_TIMEOUT_SECONDS = float(os.getenv("CHECK_TIMEOUT_SECONDS", "300"))   # Hard deadline per probe
    STALE_CHECK_MINUTES = float(os.getenv("STALE_CHECK_MINUTES", "10"))        # CHECKING older than this is abandoned
    INTER_TARGET_PAUSE_SECONDS = float(os.getenv("INTER_TARGET_PAUSE_SECONDS", "1"))

    # ==================== Probe Timeouts ====================
    NAVIGATION_TIMEOUT_MS = 30000
    KNOWN_PATH_TIMEOUT_MS = 15000
    COMMON_PATH_TIMEOUT_MS = 10000
    COMMON_PATH_PREFIX = 5        # Only the first N generic paths are tried
    ROBOTS_TIMEOUT = 5            # seconds
    SUBMIT_SETTLE_MS = 5000
    LINK_SETTLE_MS = 2000

    # ==================== Discovery (Reddit) ====================
    REDDIT_ENABLED = _flag("REDDIT_ENABLED", "true")
    REDDIT_FEED_URL = os.getenv("REDDIT_FEED_URL", "https://www.reddit.com/r/FrancePirate/new.json?limit=25")
    REDDIT_INTERVAL_MINUTES = float(os.getenv("REDDIT_INTERVAL_MINUTES", "15"))
    REDDIT_JITTER_MINUTES = float(os.getenv("REDDIT_JITTER_MINUTES", "3"))
    REDDIT_USER_AGENT = "Mozilla/5.0 (compatible; ForumSniperBot/1.0; +http://localhost)"

    # ==================== Storage ====================
    DB_PATH = os.getenv("DB_PATH", os.path.join("data", "database.sqlite"))

    # ==================== Telegram ====================
    TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN")
    TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")

    # ==================== Evidence Configuration ====================
    EVIDENCE_ENABLED = _flag("EVIDENCE_ENABLED", "false")
    EVIDENCE_DIR = os.getenv("EVIDENCE_DIR", "evidence")

    # ==================== Display ====================
    TIMEZONE = os.getenv("TIMEZONE", "Europe/Paris")
    LOG_FILE = os.getenv("LOG_FILE")

    @classmethod
    def browser_endpoint(cls) -> str:
        """CDP websocket endpoint of the remote browser, empty when running locally"""
        if not cls.BROWSERLESS_HOST:
            return ""
        return f"ws://{cls.BROWSERLESS_HOST}:{cls.BROWSERLESS_PORT}"

    @classmethod
    def ai_model(cls) -> str:
        # Free-tier models are unreliable with JSON mode
        if not cls.AI_MODEL or "free" in cls.AI_MODEL:
            return cls.DEFAULT_AI_MODEL
        return cls.AI_MODEL

    @classmethod
    def validate(cls) -> List[str]:
        """Return warnings for degraded capabilities; never fatal"""
        warnings = []
        if not cls.FLARESOLVERR_URL:
            warnings.append("FLARESOLVERR_URL not set - challenge-protected targets will be reported as blocked")
        if not cls.OPENROUTER_API_KEY:
            warnings.append("OPENROUTER_API_KEY not set - AI fallback planner disabled")
        if not cls.DEFAULT_EMAIL:
            warnings.append("DEFAULT_EMAIL not set - new targets will have no email")
        if not cls.TELEGRAM_TOKEN or not cls.TELEGRAM_CHAT_ID:
            warnings.append("Telegram not configured - alerts and commands disabled")
        return warnings
