"""
Forum Sniper - Challenge Bypass
Pre-solves anti-bot interstitials through an external solver service
(FlareSolverr protocol) so the browsing session can reuse the clearance.
"""

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .config import Config

logger = logging.getLogger("ForumSniper.Bypass")

_SAME_SITE = {"strict": "Strict", "lax": "Lax", "none": "None"}


@dataclass
class BypassResult:
    ok: bool
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    user_agent: Optional[str] = None
    message: str = ""

    @classmethod
    def failure(cls, message: str) -> "BypassResult":
        return cls(ok=False, message=message)

    def playwright_cookies(self) -> List[Dict[str, Any]]:
        """Solver cookies reshaped for BrowserContext.add_cookies"""
        converted = []
        for c in self.cookies:
            if not c.get("name") or not c.get("domain"):
                continue
            cookie = {
                "name": c["name"],
                "value": str(c.get("value", "")),
                "domain": c["domain"],
                "path": c.get("path") or "/",
                "httpOnly": bool(c.get("httpOnly", False)),
                "secure": bool(c.get("secure", False)),
            }
            expiry = c.get("expiry", c.get("expires"))
            if isinstance(expiry, (int, float)) and expiry > 0:
                cookie["expires"] = float(expiry)
            same_site = _SAME_SITE.get(str(c.get("sameSite", "")).lower())
            if same_site:
                cookie["sameSite"] = same_site
            converted.append(cookie)
        return converted


class ChallengeBypassClient(abc.ABC):
    @abc.abstractmethod
    def solve(self, url: str) -> BypassResult:
        """Never raises; failures come back as BypassResult(ok=False)"""

    def name(self) -> str:
        return self.__class__.__name__


class FlareSolverrClient(ChallengeBypassClient):
    """FlareSolverr v1 API ('request.get' command)"""

    def __init__(self, base_url: str, max_timeout_ms: int = 60000, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.max_timeout_ms = max_timeout_ms
        self.http = session or requests.Session()

    def solve(self, url: str) -> BypassResult:
        payload = {
            "cmd": "request.get",
            "url": url,
            "maxTimeout": self.max_timeout_ms,
        }
        try:
            # The solver itself waits up to maxTimeout; give the HTTP call some headroom
            resp = self.http.post(f"{self.base_url}/v1", json=payload,
                                  timeout=self.max_timeout_ms / 1000 + 10)
        except requests.RequestException as e:
            logger.error(f"[BYPASS] Connection failed: {e}")
            return BypassResult.failure(f"connection failed: {e}")

        if resp.status_code != 200:
            logger.warning(f"[BYPASS] HTTP {resp.status_code} from solver")
            return BypassResult.failure(f"error: {resp.status_code} {resp.reason}")

        try:
            data = resp.json()
        except ValueError:
            return BypassResult.failure("invalid JSON from solver")

        solution = data.get("solution") or {}
        if data.get("status") != "ok" or not solution:
            return BypassResult.failure(data.get("message") or "Unknown error")

        return BypassResult(
            ok=True,
            cookies=list(solution.get("cookies") or []),
            user_agent=solution.get("userAgent"),
            message=data.get("message", ""),
        )


def build_bypass_client() -> Optional[ChallengeBypassClient]:
    """Configured bypass capability, or None when FLARESOLVERR_URL is unset"""
    if not Config.FLARESOLVERR_URL:
        return None
    client = FlareSolverrClient(Config.FLARESOLVERR_URL, Config.FLARESOLVERR_MAX_TIMEOUT_MS)
    logger.info(f"[BYPASS] Initialized. Client: {client.name()} | Endpoint: {client.base_url}")
    return client
