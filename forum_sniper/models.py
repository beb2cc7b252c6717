"""
Forum Sniper - Data Model
Targets, probe results and AI fill plans, plus the target status state machine
"""

import datetime
import random
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional

import pytz

from .config import Config
from .errors import InvalidTransition

LOG_CAPACITY = 50

_id_lock = threading.Lock()
_last_id = 0


def now_utc() -> datetime.datetime:
    return datetime.datetime.now(pytz.UTC)


def parse_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = pytz.UTC.localize(parsed)
    return parsed


def new_target_id() -> str:
    """Millisecond timestamp, bumped when two targets are created in the same millisecond"""
    global _last_id
    with _id_lock:
        _last_id = max(int(now_utc().timestamp() * 1000), _last_id + 1)
        return str(_last_id)


class TargetStatus(str, Enum):
    IDLE = "IDLE"
    CHECKING = "CHECKING"
    OPEN = "OPEN"
    NEEDS_INVITE = "NEEDS_INVITE"
    REGISTERED = "REGISTERED"
    CLOSED = "CLOSED"
    ERROR = "ERROR"


# Outcomes a single probe may produce
PROBE_OUTCOMES = (
    TargetStatus.REGISTERED,
    TargetStatus.NEEDS_INVITE,
    TargetStatus.OPEN,
    TargetStatus.CLOSED,
    TargetStatus.ERROR,
)

_RETRYABLE = {TargetStatus.CHECKING}

TRANSITIONS: Dict[TargetStatus, set] = {
    TargetStatus.IDLE: {TargetStatus.CHECKING},
    # CHECKING -> CHECKING is a stale re-probe, CHECKING -> IDLE the startup reset
    TargetStatus.CHECKING: set(PROBE_OUTCOMES) | {TargetStatus.CHECKING, TargetStatus.IDLE},
    TargetStatus.OPEN: _RETRYABLE,
    TargetStatus.NEEDS_INVITE: _RETRYABLE,
    TargetStatus.CLOSED: _RETRYABLE,
    TargetStatus.ERROR: _RETRYABLE,
    TargetStatus.REGISTERED: set(),
}


@dataclass
class InvitationCode:
    code: str
    source: str  # "url" | "page"

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "source": self.source}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InvitationCode":
        return cls(code=str(data.get("code", "")), source=str(data.get("source", "page")))


@dataclass
class Target:
    """A monitored destination with credentials and lifecycle status"""
    id: str
    url: str
    pseudo: str = ""
    email: str = ""
    password: str = ""
    status: TargetStatus = TargetStatus.IDLE
    last_check: Optional[datetime.datetime] = None
    logs: Deque[str] = field(default_factory=lambda: deque(maxlen=LOG_CAPACITY))
    forum_type: Optional[str] = None
    robots_hints: List[str] = field(default_factory=list)
    robots_raw: Optional[str] = None
    invitation_codes: List[InvitationCode] = field(default_factory=list)

    @classmethod
    def create(cls, url: str, pseudo: str = "", email: str = "", password: str = "",
               target_id: Optional[str] = None) -> "Target":
        """New IDLE target; blank credentials fall back to the configured defaults"""
        return cls(
            id=target_id or new_target_id(),
            url=url,
            pseudo=pseudo or Config.DEFAULT_PSEUDO or f"AutoUser_{random.randint(0, 999)}",
            email=email or Config.DEFAULT_EMAIL,
            password=password or Config.DEFAULT_PASSWORD,
        )

    # ==================== Log ====================

    def add_log(self, message: str, now: Optional[datetime.datetime] = None) -> str:
        """Prepend a timestamped line; the oldest line is evicted past capacity"""
        now = now or now_utc()
        local = now.astimezone(pytz.timezone(Config.TIMEZONE))
        entry = f"[{local.strftime('%H:%M:%S')}] {message}"
        self.logs.appendleft(entry)
        return entry

    # ==================== Lifecycle ====================

    def transition(self, status: TargetStatus, now: Optional[datetime.datetime] = None) -> None:
        status = TargetStatus(status)
        if status not in TRANSITIONS[self.status]:
            raise InvalidTransition(self.status.value, status.value)
        self.status = status
        self.last_check = now or now_utc()

    def is_stale(self, now: datetime.datetime, stale_after: datetime.timedelta) -> bool:
        if self.status != TargetStatus.CHECKING:
            return False
        if self.last_check is None:
            return True
        return now - self.last_check > stale_after

    def is_due(self, now: datetime.datetime, stale_after: datetime.timedelta) -> bool:
        """Scheduled loop eligibility: never REGISTERED, CHECKING only when abandoned"""
        if self.status == TargetStatus.REGISTERED:
            return False
        if self.status == TargetStatus.CHECKING:
            return self.is_stale(now, stale_after)
        return True

    def apply_metadata(self, result: "ProbeResult") -> bool:
        """Copy detected metadata onto the target; True when anything was present"""
        present = False
        if result.forum_type:
            self.forum_type = result.forum_type
            present = True
        if result.robots_hints is not None:
            self.robots_hints = list(result.robots_hints)
            self.robots_raw = result.robots_raw
            present = True
        if result.invitation_codes:
            self.invitation_codes = list(result.invitation_codes)
            present = True
        return present

    # ==================== Serialization ====================

    def robots_info(self) -> Dict[str, Any]:
        return {"forumHints": list(self.robots_hints), "raw": self.robots_raw}

    def to_dict(self, include_secrets: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "url": self.url,
            "pseudo": self.pseudo,
            "email": self.email,
            "status": self.status.value,
            "logs": list(self.logs),
            "lastCheck": self.last_check.isoformat() if self.last_check else None,
            "forumType": self.forum_type,
            "robotsInfo": self.robots_info(),
            "invitationCodes": [c.to_dict() for c in self.invitation_codes],
        }
        if include_secrets:
            data["password"] = self.password
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Target":
        robots = data.get("robotsInfo") or {}
        return cls(
            id=str(data["id"]),
            url=data["url"],
            pseudo=data.get("pseudo") or "",
            email=data.get("email") or "",
            password=data.get("password") or "",
            status=TargetStatus(data.get("status") or TargetStatus.IDLE.value),
            last_check=parse_timestamp(data.get("lastCheck")),
            logs=deque((data.get("logs") or [])[:LOG_CAPACITY], maxlen=LOG_CAPACITY),
            forum_type=data.get("forumType"),
            robots_hints=list(robots.get("forumHints") or []),
            robots_raw=robots.get("raw"),
            invitation_codes=[InvitationCode.from_dict(c) for c in data.get("invitationCodes") or []],
        )


@dataclass
class ProbeResult:
    """Outcome of one probe plus the metadata gathered on the way"""
    outcome: TargetStatus
    forum_type: Optional[str] = None
    robots_hints: Optional[List[str]] = None
    robots_raw: Optional[str] = None
    invitation_codes: List[InvitationCode] = field(default_factory=list)
    needs_invite: bool = False
    captcha_detected: bool = False
    blocked_by_challenge: bool = False

    def __post_init__(self):
        self.outcome = TargetStatus(self.outcome)
        if self.outcome not in PROBE_OUTCOMES:
            raise ValueError(f"{self.outcome.value} is not a probe outcome")

    @property
    def has_metadata(self) -> bool:
        return bool(self.forum_type or self.robots_hints is not None or self.invitation_codes)


@dataclass
class FillAction:
    selector: str
    value: str
    action: str = "fill"  # "fill" | "toggle"
    position: int = 0


@dataclass
class FillPlan:
    actions: List[FillAction]
    submit_selector: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.actions and not self.submit_selector

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["FillPlan"]:
        """
        Parse a planner response of the form
        {"fill_actions": [{"selector", "value", "action"}], "submit_selector": "..."}

        Malformed actions are dropped; returns None when nothing usable remains.
        """
        if not isinstance(data, dict):
            return None
        raw_actions = data.get("fill_actions")
        if not isinstance(raw_actions, list):
            return None

        actions = []
        for item in raw_actions:
            if not isinstance(item, dict) or not item.get("selector"):
                continue
            kind = str(item.get("action", "fill")).lower()
            if kind in ("check", "toggle"):
                kind = "toggle"
            elif kind != "fill":
                # "click" and anything else: the plan's submit selector is the only click
                continue
            actions.append(FillAction(
                selector=str(item["selector"]),
                value="" if item.get("value") is None else str(item["value"]),
                action=kind,
                position=len(actions),
            ))

        submit = data.get("submit_selector") or None
        plan = cls(actions=actions, submit_selector=str(submit) if submit else None)
        return None if plan.is_empty else plan


def dedupe_codes(codes: Iterable[InvitationCode]) -> List[InvitationCode]:
    """Keep the first occurrence of each code value, whatever its source"""
    seen = set()
    unique = []
    for code in codes:
        if code.code in seen:
            continue
        seen.add(code.code)
        unique.append(code)
    return unique
