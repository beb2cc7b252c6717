"""
Forum Sniper - Telegram Commander
Polls Telegram for operator commands and routes them to the target service.

Commands:
- /targets : List watched targets and their status
- /add <url> : Watch a new forum
- /delete <id> : Stop watching a target
- /check <id> : Probe a target now (runs in the background)
- /status : Scheduler and collection summary
- /reddit : Discovery monitor stats
"""

import html
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import Config
from .discovery import RedditMonitor
from .errors import SniperError, TargetNotFound
from .scheduler import Scheduler
from .target_service import TargetService

logger = logging.getLogger("ForumSniper.C2")

HELP_TEXT = (
    "🎯 <b>Forum Sniper</b>\n"
    "/targets - List targets\n"
    "/add &lt;url&gt; - Watch a forum\n"
    "/delete &lt;id&gt; - Remove a target\n"
    "/check &lt;id&gt; - Check now\n"
    "/status - System status\n"
    "/reddit - Discovery stats"
)

STATUS_EMOJI = {
    "IDLE": "💤",
    "CHECKING": "🔄",
    "OPEN": "🟢",
    "NEEDS_INVITE": "🎟️",
    "REGISTERED": "🏆",
    "CLOSED": "🔒",
    "ERROR": "⚠️",
}


class TelegramCommander(threading.Thread):
    """Single consumer of incoming Telegram updates"""

    def __init__(self, service: TargetService, scheduler: Optional[Scheduler] = None,
                 monitor: Optional[RedditMonitor] = None,
                 sender: Optional[Callable[[str], Any]] = None):
        super().__init__(name="TelegramCommander")
        self.daemon = True
        self.service = service
        self.scheduler = scheduler
        self.monitor = monitor
        self.sender = sender or self._send_message
        self.running = False
        self.last_update_id = 0

    def run(self):
        """Main polling loop"""
        if not Config.TELEGRAM_TOKEN:
            logger.warning("[C2] Telegram disabled (no token)")
            return

        logger.info("[C2] Telegram Commander started")
        self.running = True
        self.sender("📡 <b>Forum Sniper Online</b>\n" + HELP_TEXT)

        while self.running:
            try:
                for update in self._get_updates(timeout=10):
                    self.process_update(update)
                time.sleep(1)
            except Exception as e:
                logger.error(f"[C2] Loop error: {e}")
                time.sleep(5)

    def stop(self):
        self.running = False

    def _get_updates(self, timeout: int = 30) -> list:
        url = f"https://api.telegram.org/bot{Config.TELEGRAM_TOKEN}/getUpdates"
        params = {
            "offset": self.last_update_id + 1,
            "timeout": timeout,
            "allowed_updates": ["message"]
        }
        try:
            response = requests.get(url, params=params, timeout=timeout + 5)
            if response.status_code == 200:
                result = response.json()
                if result.get("ok"):
                    updates = result.get("result", [])
                    if updates:
                        self.last_update_id = updates[-1]["update_id"]
                    return updates
        except Exception as e:
            logger.debug(f"[C2] Poll error: {e}")
        return []

    def _send_message(self, text: str):
        try:
            url = f"https://api.telegram.org/bot{Config.TELEGRAM_TOKEN}/sendMessage"
            data = {
                "chat_id": Config.TELEGRAM_CHAT_ID,
                "text": text,
                "parse_mode": "HTML"
            }
            requests.post(url, data=data, timeout=10)
        except Exception as e:
            logger.error(f"[C2] Telegram send error: {e}")

    # ==================== Routing ====================

    def process_update(self, update: Dict[str, Any]) -> Optional[str]:
        """Handle one update; returns the reply sent, if any"""
        message = update.get("message") or {}
        text = (message.get("text") or "").strip()
        chat_id = str((message.get("chat") or {}).get("id", ""))

        # Only the configured chat may command
        if chat_id != str(Config.TELEGRAM_CHAT_ID):
            return None
        if not text.startswith("/"):
            return None

        logger.info(f"[C2] Received: '{text}'")
        reply = self.handle_command(text)
        if reply:
            self.sender(reply)
        return reply

    def handle_command(self, text: str) -> str:
        parts = text.split()
        cmd = parts[0].lower().split("@")[0]
        args = parts[1:]
        handlers = {
            "/targets": self._cmd_targets,
            "/add": self._cmd_add,
            "/delete": self._cmd_delete,
            "/check": self._cmd_check,
            "/status": self._cmd_status,
            "/reddit": self._cmd_reddit,
            "/help": lambda _: HELP_TEXT,
            "/start": lambda _: HELP_TEXT,
        }
        handler = handlers.get(cmd)
        if not handler:
            return f"❓ Unknown command: {html.escape(cmd)}"
        try:
            return handler(args)
        except TargetNotFound as e:
            return f"❌ {html.escape(str(e))}"
        except (SniperError, ValueError) as e:
            logger.error(f"[C2] {cmd} failed: {e}")
            return f"❌ {cmd} failed: {html.escape(str(e))}"

    # ==================== Commands ====================

    def _cmd_targets(self, args: List[str]) -> str:
        targets = self.service.list_targets()
        if not targets:
            return "📭 No targets."
        lines = [f"🎯 <b>{len(targets)} target(s)</b>"]
        for t in targets:
            emoji = STATUS_EMOJI.get(t.status.value, "•")
            forum = f" ({html.escape(t.forum_type)})" if t.forum_type else ""
            lines.append(f"{emoji} <code>{t.id}</code> {html.escape(t.url)}{forum} - {t.status.value}")
        return "\n".join(lines)

    def _cmd_add(self, args: List[str]) -> str:
        if not args:
            return "Usage: /add &lt;url&gt;"
        target = self.service.add_target(args[0])
        return f"✅ Added <code>{target.id}</code>\n└ {html.escape(target.url)}"

    def _cmd_delete(self, args: List[str]) -> str:
        if not args:
            return "Usage: /delete &lt;id&gt;"
        self.service.delete_target(args[0])
        return f"🗑️ Deleted <code>{html.escape(args[0])}</code>"

    def _cmd_check(self, args: List[str]) -> str:
        if not args:
            return "Usage: /check &lt;id&gt;"
        if self.service.probe_now(args[0]):
            return f"🔄 Check initiated for <code>{html.escape(args[0])}</code>"
        return f"⚠️ <code>{html.escape(args[0])}</code> is already registered or being checked"

    def _cmd_status(self, args: List[str]) -> str:
        counts = self.service.summary()
        lines = ["📊 <b>System Status</b>"]
        if self.scheduler:
            state = self.scheduler.status()
            lines.append(f"└ Scheduler: {'RUNNING' if state['running'] else 'STOPPED'}")
            lines.append(f"└ Batches: {state['batches_run']}")
            if state["next_batch_at"]:
                lines.append(f"└ Next batch: {state['next_batch_at'].strftime('%H:%M:%S')} UTC")
            if state["in_flight"]:
                lines.append(f"└ In flight: {', '.join(state['in_flight'])}")
        total = sum(counts.values())
        lines.append(f"└ Targets: {total}")
        for status, count in sorted(counts.items()):
            lines.append(f"   {STATUS_EMOJI.get(status, '•')} {status}: {count}")
        return "\n".join(lines)

    def _cmd_reddit(self, args: List[str]) -> str:
        if not self.monitor:
            return "🔕 Reddit monitor disabled."
        stats = self.monitor.stats()
        lines = [
            "🔎 <b>Reddit Monitor</b>",
            f"└ Checks: {stats['checks']}",
            f"└ Added: {stats['added']}",
            f"└ Last check: {stats['lastCheck'] or 'never'}",
        ]
        for entry in stats["history"][:5]:
            detail = entry["url"] or entry["title"] or entry["message"]
            lines.append(f"   {entry['status']}: {html.escape(detail[:80])}")
        return "\n".join(lines)
