"""
Forum Sniper - Evidence Capture
Saves page HTML, screenshot and a small state file for noteworthy probe outcomes
"""

import json
import logging
import os
import re
import time
from datetime import datetime
from typing import Any, Dict, Optional

from .browser import BrowserSession

logger = logging.getLogger("ForumSniper.Evidence")

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class EvidenceRecorder:
    """
    Evidence directory layout: <base_dir>/<target id>/<stage>_<timestamp>.{html,png,json}
    """

    def __init__(self, base_dir: str = "evidence"):
        self.base_dir = base_dir

    def _target_dir(self, target_id: str) -> str:
        directory = os.path.join(self.base_dir, _UNSAFE.sub("_", target_id))
        os.makedirs(directory, exist_ok=True)
        return directory

    def save_html(self, session: BrowserSession, target_id: str, stage: str) -> Optional[str]:
        try:
            filepath = os.path.join(self._target_dir(target_id), f"{stage}_{int(time.time())}.html")
            with open(filepath, "w", encoding="utf-8") as f:
                f.write(session.content())
            logger.debug(f"📄 Saved HTML: {filepath}")
            return filepath
        except Exception as e:
            logger.error(f"❌ Failed to save HTML: {e}")
            return None

    def save_screenshot(self, session: BrowserSession, target_id: str, stage: str) -> Optional[str]:
        try:
            filepath = os.path.join(self._target_dir(target_id), f"{stage}_{int(time.time())}.png")
            session.screenshot(filepath)
            logger.debug(f"📸 Saved screenshot: {filepath}")
            return filepath
        except Exception as e:
            logger.error(f"❌ Failed to save screenshot: {e}")
            return None

    def capture(self, session: BrowserSession, target_id: str, stage: str,
                extra_data: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """HTML + screenshot + state JSON (url, title, extra data)"""
        evidence = {}
        html_path = self.save_html(session, target_id, stage)
        if html_path:
            evidence["html"] = html_path
        screenshot_path = self.save_screenshot(session, target_id, stage)
        if screenshot_path:
            evidence["screenshot"] = screenshot_path

        try:
            state = {
                "stage": stage,
                "target_id": target_id,
                "datetime": datetime.now().isoformat(),
                "url": session.current_url(),
                "title": session.title(),
                "extra_data": extra_data or {},
            }
            state_path = os.path.join(self._target_dir(target_id), f"{stage}_{int(time.time())}_state.json")
            with open(state_path, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, ensure_ascii=False)
            evidence["state"] = state_path
        except Exception as e:
            logger.warning(f"[EVIDENCE] Save error: {e}")

        return evidence
