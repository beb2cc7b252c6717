"""
Forum Sniper - Telegram Notifier
Alert sender with rate limiting, and the observer thread that turns
lifecycle events into operator alerts.
"""

import html
import logging
import threading
import time
from typing import Optional

import requests

from .config import Config
from .events import Event, EventChannel, StatusChanged, Subscription, TargetDiscovered
from .models import TargetStatus

logger = logging.getLogger("ForumSniper.Notifier")

# Rate limiting
_last_message_time = 0.0
_message_interval = 1.0  # Minimum seconds between messages
_rate_lock = threading.Lock()


def _check_rate_limit(wait: bool = False) -> bool:
    """Check if we can send a message; with wait=True sleep until we can"""
    global _last_message_time
    with _rate_lock:
        now = time.time()
        remaining = _message_interval - (now - _last_message_time)
        if remaining > 0:
            if not wait:
                return False
            time.sleep(remaining)
        _last_message_time = time.time()
        return True


def is_configured() -> bool:
    return bool(Config.TELEGRAM_TOKEN and Config.TELEGRAM_CHAT_ID)


def send_alert(message: str, parse_mode: str = "HTML", wait: bool = False) -> bool:
    """
    Send text message to Telegram

    Args:
        message: Message text
        parse_mode: "HTML" or "Markdown"
        wait: Block for the rate limit instead of dropping the message

    Returns:
        Success status
    """
    if not is_configured():
        logger.debug("Telegram not configured")
        return False

    if not _check_rate_limit(wait):
        logger.debug("Rate limited, skipping message")
        return False

    url = f"https://api.telegram.org/bot{Config.TELEGRAM_TOKEN}/sendMessage"
    data = {
        "chat_id": Config.TELEGRAM_CHAT_ID,
        "text": message,
        "parse_mode": parse_mode
    }

    try:
        response = requests.post(url, data=data, timeout=10)
        if response.status_code == 200:
            logger.debug("📤 Message sent to Telegram")
            return True
        logger.warning(f"⚠️ Telegram error: {response.status_code}")
        return False
    except Exception as e:
        logger.error(f"❌ Telegram send error: {e}")
        return False


# ==================== Message Formatting ====================

def format_event(event: Event) -> Optional[str]:
    """Alert text for the events operators care about, None for the rest"""
    if isinstance(event, StatusChanged):
        url = html.escape(event.target.get("url", ""))
        if event.status == TargetStatus.REGISTERED.value:
            return (
                f"🏆 <b>REGISTERED!</b>\n"
                f"└ {url}\n"
                f"└ Pseudo: <code>{html.escape(event.target.get('pseudo') or '')}</code>\n"
                f"<b>Check your email for the activation link!</b>"
            )
        if event.status == TargetStatus.NEEDS_INVITE.value:
            codes = event.target.get("invitationCodes") or []
            message = f"🎟️ <b>OPEN - invitation required</b>\n└ {url}\n"
            if codes:
                message += "└ Codes found: " + ", ".join(
                    f"<code>{html.escape(c['code'])}</code>" for c in codes) + "\n"
            return message
        return None

    if isinstance(event, TargetDiscovered):
        return (
            f"🔎 <b>New target discovered</b>\n"
            f"└ {html.escape(event.url)}\n"
            f"└ Source: {html.escape(event.source)}"
        )
    return None


# ==================== Observer ====================

class AlertObserver(threading.Thread):
    """Drains its own event subscription and forwards alerts to Telegram"""

    def __init__(self, channel: EventChannel, sender=send_alert, buffer: int = 100):
        super().__init__(name="AlertObserver")
        self.daemon = True
        self.subscription: Subscription = channel.subscribe(maxsize=buffer, name="telegram-alerts")
        self.sender = sender
        self.stop_event = threading.Event()

    def run(self):
        logger.info("[NOTIFIER] Alert observer started")
        while not self.stop_event.is_set():
            event = self.subscription.get(timeout=1.0)
            if event is not None:
                self.handle(event)
        self.subscription.close()

    def handle(self, event: Event) -> bool:
        message = format_event(event)
        if not message:
            return False
        try:
            return bool(self.sender(message, wait=True))
        except Exception as e:
            logger.error(f"[NOTIFIER] Alert failed: {e}")
            return False

    def stop(self):
        self.stop_event.set()
