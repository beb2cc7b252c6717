"""
Forum Sniper - Form Heuristics
Pure classification of page markup and detected input fields.

Every vocabulary lives in an ordered rule table (pattern -> label) so new
languages are added by appending rows, not by editing control flow.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from .models import InvitationCode, dedupe_codes


@dataclass(frozen=True)
class Rule:
    label: str
    pattern: Pattern

    def search(self, text: str):
        return self.pattern.search(text or "")


class RuleTable:
    """Ordered predicate -> label table; first match wins"""

    def __init__(self, rows: Sequence[Tuple[str, str]], flags: int = re.IGNORECASE):
        self.rules = tuple(Rule(label, re.compile(pattern, flags)) for pattern, label in rows)

    def first(self, text: str) -> Optional[Rule]:
        for rule in self.rules:
            if rule.search(text):
                return rule
        return None

    def matches(self, text: str) -> bool:
        return self.first(text) is not None

    def labels(self, text: str) -> List[str]:
        """Every matching label, in table order, without duplicates"""
        found = []
        for rule in self.rules:
            if rule.label not in found and rule.search(text):
                found.append(rule.label)
        return found


# ==================== Rule Tables ====================

ROBOTS_HINTS = RuleTable([
    (r"phpbb", "phpBB"),
    (r"xenforo", "XenForo"),
    (r"discourse", "Discourse"),
    (r"invision|ips4", "Invision"),
    (r"vbulletin", "vBulletin"),
    (r"mybb", "MyBB"),
    (r"wp-content", "WordPress"),
    (r"register\.php|signup", "Has Registration"),
])

CHALLENGE_TITLE = RuleTable([
    (r"just a moment", "cloudflare-interstitial"),
    (r"attention required", "cloudflare-block"),
])

CHALLENGE_MARKUP = RuleTable([
    (r"challenge-platform", "cloudflare-challenge"),
    (r"cf-turnstile", "cloudflare-turnstile"),
], flags=0)

REGISTRATION_PAGE = RuleTable([
    (r"password", "password"),
    (r"e-?mail", "email"),
    (r"username", "username"),
    (r"inscription", "inscription"),
    (r"register", "register"),
    (r"mot de passe|courriel", "fr"),
    (r"passwort|benutzername", "de"),
    (r"contraseña|registrarse", "es"),
])

REGISTRATION_LINK = RuleTable([
    (r"register|registration", "register"),
    (r"sign\s*up", "signup"),
    (r"inscription|s'inscrire|s’inscrire", "inscription"),
    (r"créer.*compte|create.*account", "create-account"),
    (r"\bjoin\b", "join"),
])

CLOSED_PHRASES = RuleTable([
    (r"registration.*closed", "en"),
    (r"registrations.*(?:are|is).*disabled", "en-disabled"),
    (r"inscriptions.*fermées", "fr"),
])

SUCCESS_VOCABULARY = RuleTable([
    (r"welcome", "welcome"),
    (r"bienvenue", "bienvenue"),
    (r"success", "success"),
    (r"activat", "activate"),
    (r"confirmation (?:e-?mail|link)", "confirmation"),
])

CAPTCHA_FRAMES = RuleTable([
    (r"recaptcha", "recaptcha"),
    (r"hcaptcha", "hcaptcha"),
    (r"turnstile|challenges\.cloudflare", "turnstile"),
    (r"cloudflare", "cloudflare"),
    (r"captcha", "captcha"),
])

INVITE_FIELD = RuleTable([
    (r"invit", "invite"),
    (r"referr?al|parrain", "referral"),
    (r"code", "code"),
])

# Fields matching these are never invitation fields even if they say "code"
INVITE_FIELD_EXCLUDE = RuleTable([
    (r"captcha", "captcha"),
    (r"zip|post(?:al)?[\s_-]?code|code[\s_-]?postal", "postal"),
    (r"security|sécurité|verification|vérification", "security"),
    (r"country|phone|téléphone", "contact"),
])

# Codes found in the current URL
URL_CODE_PATTERNS = RuleTable([
    (r"[?&]invite[_-]?code=([a-zA-Z0-9_-]{4,})", "invite_code"),
    (r"[?&]ref(?:erral)?=([a-zA-Z0-9_-]{4,})", "ref"),
    (r"[?&]code=([a-zA-Z0-9_-]{6,})", "code"),
    (r"/invite/([a-zA-Z0-9_-]{4,})", "invite_path"),
    (r"/register/([a-zA-Z0-9_-]{6,})", "register_path"),
], flags=re.IGNORECASE)

# Codes found in page markup: invitation links and prose conventions
PAGE_CODE_PATTERNS = RuleTable([
    (r"""href=["'][^"']*invite[_-]?code=([a-zA-Z0-9_-]{4,})""", "invite_link"),
    (r"""href=["'][^"']*/invite/([a-zA-Z0-9_-]{4,})""", "invite_path_link"),
    (r"(?i:invitation\s*code)\s*[:=]?\s*([A-Z0-9]{4,20})\b", "invitation_code"),
    (r"(?i:code\s*d['’]?\s*invitation)\s*[:=]?\s*([A-Z0-9]{4,20})\b", "code_invitation"),
    (r"(?i:use\s*(?:the\s*)?code)\s*[:=]?\s*([A-Z0-9]{4,20})\b", "use_code"),
], flags=0)


# ==================== Page Model ====================

@dataclass
class FieldInfo:
    """An input, textarea or select as reported by the field scan script"""
    tag: str = "input"
    type: str = "text"
    name: str = ""
    id: str = ""
    placeholder: str = ""
    label: str = ""
    hidden: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldInfo":
        tag = str(data.get("tag") or "input").lower()
        default_type = tag if tag in ("textarea", "select") else "text"
        return cls(
            tag=tag,
            type=str(data.get("type") or default_type).lower(),
            name=str(data.get("name") or ""),
            id=str(data.get("id") or ""),
            placeholder=str(data.get("placeholder") or ""),
            label=str(data.get("label") or "").strip(),
            hidden=bool(data.get("hidden")),
        )

    @property
    def descriptor(self) -> str:
        return " ".join(p for p in (self.name, self.id, self.placeholder) if p)


@dataclass
class FormShape:
    """What the heuristic fill path needs to know about a page"""
    password_fields: List[FieldInfo] = field(default_factory=list)
    email_fields: List[FieldInfo] = field(default_factory=list)
    textareas: List[FieldInfo] = field(default_factory=list)
    invite_fields: List[FieldInfo] = field(default_factory=list)
    invite_labels: List[str] = field(default_factory=list)
    username_field: Optional[FieldInfo] = None

    @property
    def needs_invite(self) -> bool:
        return bool(self.invite_fields or self.invite_labels)

    @property
    def has_credential_form(self) -> bool:
        return bool(self.password_fields and self.email_fields)

    @property
    def has_any_form(self) -> bool:
        """Credible form or invitation evidence; gates the closed-phrase check"""
        return self.has_credential_form or self.needs_invite

    @property
    def is_simple_form(self) -> bool:
        """At least one password and one email field, no free-text questions"""
        return self.has_credential_form and not self.textareas


JS_ESCAPE = re.compile(r'(["\\])')


def _quote(value: str) -> str:
    return '"' + JS_ESCAPE.sub(r"\\\1", value) + '"'


class FormHeuristics:
    """Table-driven page classification; holds no browser state"""

    EMAIL_HINT = re.compile(r"mail|courriel", re.IGNORECASE)
    USERNAME_HINT = re.compile(r"user|pseudo|login|utilisateur|username|nickname", re.IGNORECASE)

    def __init__(self,
                 robots_hints: RuleTable = ROBOTS_HINTS,
                 challenge_title: RuleTable = CHALLENGE_TITLE,
                 challenge_markup: RuleTable = CHALLENGE_MARKUP,
                 registration_page: RuleTable = REGISTRATION_PAGE,
                 registration_link: RuleTable = REGISTRATION_LINK,
                 closed_phrases: RuleTable = CLOSED_PHRASES,
                 success_vocabulary: RuleTable = SUCCESS_VOCABULARY,
                 captcha_frames: RuleTable = CAPTCHA_FRAMES,
                 invite_field: RuleTable = INVITE_FIELD,
                 invite_exclude: RuleTable = INVITE_FIELD_EXCLUDE,
                 url_codes: RuleTable = URL_CODE_PATTERNS,
                 page_codes: RuleTable = PAGE_CODE_PATTERNS):
        self.robots_table = robots_hints
        self.challenge_title = challenge_title
        self.challenge_markup = challenge_markup
        self.registration_page = registration_page
        self.registration_link = registration_link
        self.closed_phrases = closed_phrases
        self.success_vocabulary = success_vocabulary
        self.captcha_frames = captcha_frames
        self.invite_field = invite_field
        self.invite_exclude = invite_exclude
        self.url_codes = url_codes
        self.page_codes = page_codes

    # ==================== Page-level signals ====================

    def robots_hints(self, robots_text: str) -> List[str]:
        return self.robots_table.labels(robots_text)

    def is_challenge(self, title: str, html: str) -> bool:
        return self.challenge_title.matches(title) or self.challenge_markup.matches(html)

    def looks_like_registration_page(self, html: str) -> bool:
        return self.registration_page.matches(html)

    def is_registration_link(self, text: str) -> bool:
        return self.registration_link.matches(text)

    def is_closed(self, body_text: str) -> bool:
        return self.closed_phrases.matches(body_text)

    def is_success(self, body_text: str) -> bool:
        return self.success_vocabulary.matches(body_text)

    def has_captcha_frame(self, frame_urls: Iterable[str]) -> bool:
        return any(self.captcha_frames.matches(url) for url in frame_urls if url)

    # ==================== Invitation codes ====================

    def extract_invitation_codes(self, html: str, url: str) -> List[InvitationCode]:
        """URL conventions first, then page markup; deduplicated by code value"""
        codes = []
        for rule in self.url_codes.rules:
            for match in rule.pattern.finditer(url or ""):
                codes.append(InvitationCode(code=match.group(1), source="url"))
        for rule in self.page_codes.rules:
            for match in rule.pattern.finditer(html or ""):
                codes.append(InvitationCode(code=match.group(1), source="page"))
        return dedupe_codes(codes)

    # ==================== Field classification ====================

    def is_email_field(self, f: FieldInfo) -> bool:
        if f.tag != "input" or f.hidden:
            return False
        return f.type == "email" or bool(self.EMAIL_HINT.search(f.name) or self.EMAIL_HINT.search(f.placeholder))

    def is_invite_field(self, f: FieldInfo) -> bool:
        if f.tag != "input" or f.hidden:
            return False
        text = " ".join((f.descriptor, f.label))
        return self.invite_field.matches(text) and not self.invite_exclude.matches(text)

    def is_invite_label(self, text: str) -> bool:
        return self.invite_field.matches(text) and not self.invite_exclude.matches(text)

    def _is_username_field(self, f: FieldInfo) -> bool:
        if f.tag != "input" or f.hidden or f.type in ("password", "email", "checkbox", "radio", "submit"):
            return False
        return bool(self.USERNAME_HINT.search(f.name) or self.USERNAME_HINT.search(f.placeholder))

    def analyze(self, fields: Sequence[FieldInfo], labels: Sequence[str] = ()) -> FormShape:
        visible = [f for f in fields if not f.hidden]
        passwords = [f for f in visible if f.tag == "input" and f.type == "password"]
        emails = [f for f in visible if self.is_email_field(f)]
        username = next(
            (f for f in visible if self._is_username_field(f) and f not in emails),
            None,
        )
        return FormShape(
            password_fields=passwords,
            email_fields=emails,
            textareas=[f for f in visible if f.tag == "textarea"],
            invite_fields=[f for f in visible if self.is_invite_field(f)],
            invite_labels=[text for text in labels if text and self.is_invite_label(text)],
            username_field=username,
        )

    # ==================== Selectors ====================

    @staticmethod
    def selector_for(f: FieldInfo, fallback: str = "") -> str:
        """Stable CSS selector for a field; positional fallback when it has no id, name or placeholder"""
        if f.id:
            return f"[id={_quote(f.id)}]"
        if f.name:
            return f"{f.tag}[name={_quote(f.name)}]"
        if f.placeholder:
            return f"{f.tag}[placeholder={_quote(f.placeholder)}]"
        return fallback


heuristics = FormHeuristics()
