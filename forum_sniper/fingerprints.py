"""
Forum Sniper - Forum Fingerprinting
Identifies forum software from page markup and lists its registration paths.

Detection is first-signature / first-rule match over an ordered table;
the order encodes priority, there is no scoring.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence, Tuple
from urllib.parse import urljoin, urlparse


@dataclass(frozen=True)
class FingerprintSignature:
    name: str
    rules: Tuple[Pattern, ...]
    registration_paths: Tuple[str, ...]

    def matches(self, html: str) -> bool:
        return any(rule.search(html) for rule in self.rules)


def _signature(name: str, patterns: Sequence[str], paths: Sequence[str]) -> FingerprintSignature:
    return FingerprintSignature(
        name=name,
        rules=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
        registration_paths=tuple(paths),
    )


FORUM_SIGNATURES: Tuple[FingerprintSignature, ...] = (
    _signature("phpBB", [r"phpBB", r"ucp\.php", r"viewtopic\.php", r"powered by phpBB"],
               ["/ucp.php?mode=register"]),
    _signature("XenForo", [r"data-xf-init", r"XenForo", r"xf-body", r"js/xf/"],
               ["/register/", "/register"]),
    _signature("Discourse", [r"ember-application", r"discourse", r"data-discourse"],
               ["/signup", "/register"]),
    _signature("Invision", [r"ips_", r"invisioncommunity", r"ipsLayout", r"Invision Community"],
               ["/register/", "/register"]),
    _signature("vBulletin", [r"vbulletin", r"vb_", r"register\.php\?do=signup"],
               ["/register.php", "/register.php?do=signup"]),
    _signature("MyBB", [r"mybb", r"member\.php", r"MyBB Group"],
               ["/member.php?action=register"]),
    _signature("SMF", [r"Simple Machines", r"smf_", r"action=register"],
               ["/index.php?action=register"]),
    _signature("FluxBB", [r"FluxBB", r"flux", r"Powered by FluxBB"],
               ["/register.php"]),
    _signature("NodeBB", [r"NodeBB", r"data-widget-area"],
               ["/register"]),
    _signature("Flarum", [r"flarum", r"data-flarum"],
               ["/signup", "/register"]),
)

# Software-agnostic paths tried when no signature matches
COMMON_REGISTRATION_PATHS: Tuple[str, ...] = (
    "/register",
    "/register/",
    "/signup",
    "/signup/",
    "/inscription",
    "/inscription/",
    "/join",
    "/create-account",
    "/ucp.php?mode=register",
    "/register.php",
    "/member.php?action=register",
)


class FingerprintRegistry:
    """Ordered signature table plus the shared fallback path list"""

    def __init__(self, signatures: Sequence[FingerprintSignature] = FORUM_SIGNATURES,
                 common_paths: Sequence[str] = COMMON_REGISTRATION_PATHS):
        self.signatures = tuple(signatures)
        self.common_paths = tuple(common_paths)

    def detect(self, html: str) -> Optional[FingerprintSignature]:
        if not html:
            return None
        for signature in self.signatures:
            if signature.matches(html):
                return signature
        return None

    def get(self, name: str) -> Optional[FingerprintSignature]:
        for signature in self.signatures:
            if signature.name.lower() == name.lower():
                return signature
        return None

    def common_registration_paths(self, limit: Optional[int] = None) -> List[str]:
        paths = list(self.common_paths)
        return paths if limit is None else paths[:limit]

    def candidate_paths(self, html: str, common_limit: int) -> Tuple[Optional[FingerprintSignature], List[str]]:
        """Signature paths when detected, otherwise the common-path prefix"""
        signature = self.detect(html)
        if signature:
            return signature, list(signature.registration_paths)
        return None, self.common_registration_paths(common_limit)

    @staticmethod
    def build_registration_urls(base_url: str, paths: Sequence[str]) -> List[str]:
        """Resolve paths against the origin of base_url"""
        parsed = urlparse(base_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        return [urljoin(origin + "/", path if path.startswith("/") else "/" + path) for path in paths]


registry = FingerprintRegistry()
