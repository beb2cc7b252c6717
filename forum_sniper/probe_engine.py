"""
Forum Sniper - Probe Engine
Classifies one target's registration surface and attempts the registration.

The pipeline is an ordered list of steps. Each step returns a StepResult;
CONTINUE hands over to the next step, anything else is terminal and maps to
the probe outcome. Short circuits (blocked, needs invite, closed) are
therefore states of the machine, not early returns scattered in one function.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional
from urllib.parse import urljoin

import requests

from .ai_planner import AIFallbackPlanner
from .browser import BrowserDriver, BrowserSession
from .challenge_bypass import ChallengeBypassClient
from .config import Config
from .errors import ProbeCancelled
from .evidence import EvidenceRecorder
from .fingerprints import FingerprintRegistry, registry as default_registry
from .form_heuristics import FieldInfo, FormHeuristics, FormShape, heuristics as default_heuristics
from .models import FillPlan, InvitationCode, ProbeResult, Target, TargetStatus

logger = logging.getLogger("ForumSniper.Probe")

SUBMIT_SELECTOR = 'button[type="submit"], input[type="submit"]'

FIELD_SCAN_SCRIPT = """
() => {
    const labelOf = (el) => {
        if (el.labels && el.labels.length) {
            return Array.from(el.labels).map(l => l.innerText || '').join(' ');
        }
        const wrap = el.closest('label');
        return wrap ? (wrap.innerText || '') : '';
    };
    const fields = Array.from(document.querySelectorAll('input, textarea, select')).map(el => ({
        tag: el.tagName.toLowerCase(),
        type: el.tagName === 'INPUT' ? (el.type || 'text') : el.tagName.toLowerCase(),
        name: el.getAttribute('name') || '',
        id: el.id || '',
        placeholder: el.getAttribute('placeholder') || '',
        label: labelOf(el).trim().slice(0, 120),
        hidden: el.type === 'hidden'
    }));
    const labels = Array.from(document.querySelectorAll('label'))
        .map(l => (l.innerText || '').trim().slice(0, 120));
    return { fields, labels };
}
"""

LINK_SCAN_SCRIPT = """
() => Array.from(document.querySelectorAll('a')).map((a, index) => ({
    index,
    text: (a.innerText || '').trim().slice(0, 80),
    visible: a.offsetParent !== null
})).filter(l => l.visible && l.text)
"""

LARGEST_FORM_SCRIPT = """
() => {
    const forms = document.querySelectorAll('form');
    if (forms.length > 0) {
        let largest = forms[0];
        forms.forEach(f => { if (f.innerHTML.length > largest.innerHTML.length) largest = f; });
        return largest.outerHTML;
    }
    return document.body ? document.body.innerHTML : '';
}
"""


class StepResult(Enum):
    CONTINUE = "continue"
    BLOCKED = "blocked"            # anti-bot challenge and no bypass configured
    CLOSED = "closed"              # explicit closed phrase, no form evidence
    NEEDS_INVITE = "needs_invite"  # invitation field or disabled submit
    CAPTCHA = "captcha"            # form filled but a captcha frame blocks submit
    REGISTERED = "registered"      # post-submit success vocabulary
    UNCONFIRMED = "unconfirmed"    # submitted, success not confirmed
    UNRESOLVED = "unresolved"      # pipeline exhausted without a verdict


STEP_OUTCOMES = {
    StepResult.BLOCKED: TargetStatus.CLOSED,
    StepResult.CLOSED: TargetStatus.CLOSED,
    StepResult.NEEDS_INVITE: TargetStatus.NEEDS_INVITE,
    StepResult.CAPTCHA: TargetStatus.OPEN,
    StepResult.REGISTERED: TargetStatus.REGISTERED,
    StepResult.UNCONFIRMED: TargetStatus.OPEN,
    StepResult.UNRESOLVED: TargetStatus.OPEN,
}


@dataclass
class ProbeContext:
    """Mutable state of one probe call"""
    target: Target
    session: BrowserSession
    log: Callable[[str], None]
    cancel: threading.Event
    forum_type: str = "Unknown"
    robots_hints: Optional[List[str]] = None
    robots_raw: Optional[str] = None
    invitation_codes: List[InvitationCode] = field(default_factory=list)
    shape: Optional[FormShape] = None
    body_text: str = ""
    bypass_applied: bool = False


def _is_ok(status: Optional[int]) -> bool:
    return status is not None and 200 <= status < 300


class ProbeEngine:
    """Runs the layered decision pipeline for one target at a time"""

    def __init__(self,
                 driver: BrowserDriver,
                 bypass: Optional[ChallengeBypassClient] = None,
                 planner: Optional[AIFallbackPlanner] = None,
                 fingerprints: FingerprintRegistry = default_registry,
                 heuristics: FormHeuristics = default_heuristics,
                 evidence: Optional[EvidenceRecorder] = None,
                 http: Optional[requests.Session] = None):
        self.driver = driver
        self.bypass = bypass
        self.planner = planner
        self.fingerprints = fingerprints
        self.heuristics = heuristics
        self.evidence = evidence
        self.http = http or requests.Session()

        self.pipeline = [
            self._gather_passive_signals,
            self._bypass_challenge,
            self._navigate,
            self._detect_challenge,
            self._find_registration_page,
            self._follow_registration_link,
            self._extract_invitation_codes,
            self._check_closed,
            self._check_invitation_required,
            self._heuristic_fill,
            self._ai_fill,
        ]

    # ==================== Entry Point ====================

    def probe(self, target: Target, log: Optional[Callable[[str], None]] = None,
              cancel: Optional[threading.Event] = None) -> ProbeResult:
        """
        Probe one target end to end.

        Args:
            target: Target to classify (read only here)
            log: Per-target log sink; defaults to the module logger
            cancel: Set by the caller when the hard deadline expired

        Returns:
            ProbeResult with outcome REGISTERED, NEEDS_INVITE, OPEN or CLOSED.
            Unexpected faults propagate; the caller maps them to ERROR.
        """
        log = log or (lambda msg: logger.info(f"[PROBE:{target.id}] {msg}"))
        cancel = cancel or threading.Event()

        log("Connecting to browser...")
        with self.driver.session() as session:
            ctx = ProbeContext(target=target, session=session, log=log, cancel=cancel)
            try:
                verdict = self._run(ctx)
            except ProbeCancelled:
                raise
            except Exception:
                self._capture(ctx, "error")
                raise
            if verdict in (StepResult.CAPTCHA, StepResult.UNCONFIRMED):
                self._capture(ctx, verdict.value)
            return self._result(ctx, verdict)

    def _run(self, ctx: ProbeContext) -> StepResult:
        for step in self.pipeline:
            if ctx.cancel.is_set():
                raise ProbeCancelled(f"Probe of {ctx.target.url} cancelled before {step.__name__}")
            verdict = step(ctx)
            if verdict is not StepResult.CONTINUE:
                logger.debug(f"[PROBE] {ctx.target.id}: {step.__name__} -> {verdict.value}")
                return verdict
        return StepResult.UNRESOLVED

    def _result(self, ctx: ProbeContext, verdict: StepResult) -> ProbeResult:
        blocked = verdict is StepResult.BLOCKED
        return ProbeResult(
            outcome=STEP_OUTCOMES[verdict],
            forum_type="Cloudflare" if blocked else ctx.forum_type,
            robots_hints=ctx.robots_hints,
            robots_raw=ctx.robots_raw,
            invitation_codes=list(ctx.invitation_codes),
            needs_invite=verdict is StepResult.NEEDS_INVITE,
            captcha_detected=verdict is StepResult.CAPTCHA,
            blocked_by_challenge=blocked,
        )

    def _capture(self, ctx: ProbeContext, stage: str) -> None:
        if not self.evidence:
            return
        try:
            self.evidence.capture(ctx.session, ctx.target.id, stage,
                                  {"forum_type": ctx.forum_type, "url": ctx.target.url})
        except Exception as e:
            logger.warning(f"[EVIDENCE] Capture failed for {ctx.target.id}: {e}")

    # ==================== 1. Passive Signals ====================

    def _gather_passive_signals(self, ctx: ProbeContext) -> StepResult:
        """robots.txt keyword hints; best effort, never blocks the pipeline"""
        try:
            resp = self.http.get(urljoin(ctx.target.url, "/robots.txt"), timeout=Config.ROBOTS_TIMEOUT)
            if resp.ok:
                text = resp.text
                ctx.robots_hints = self.heuristics.robots_hints(text)
                ctx.robots_raw = text[:500]
                if ctx.robots_hints:
                    ctx.log(f"robots.txt hints: {', '.join(ctx.robots_hints)}")
        except Exception as e:
            logger.debug(f"[PROBE] robots.txt unavailable for {ctx.target.url}: {e}")
        return StepResult.CONTINUE

    # ==================== 2. Challenge Bypass ====================

    def _bypass_challenge(self, ctx: ProbeContext) -> StepResult:
        if not self.bypass:
            ctx.log("Challenge bypass NOT configured. Proceeding with standard navigation.")
            return StepResult.CONTINUE

        ctx.log("Challenge bypass configured. Attempting to pre-solve...")
        try:
            result = self.bypass.solve(ctx.target.url)
            if not result.ok:
                ctx.log(f"Challenge bypass failed: {result.message or 'Unknown error'}")
                return StepResult.CONTINUE
            if result.user_agent:
                ctx.session.set_extra_headers({"User-Agent": result.user_agent})
            cookies = result.playwright_cookies()
            if cookies:
                ctx.session.add_cookies(cookies)
            ctx.bypass_applied = True
            ctx.log(f"Challenge bypass success! Injected {len(cookies)} cookie(s).")
        except Exception as e:
            ctx.log(f"Challenge bypass error: {e}")
        return StepResult.CONTINUE

    # ==================== 3. Navigation ====================

    def _navigate(self, ctx: ProbeContext) -> StepResult:
        ctx.log(f"Navigating to {ctx.target.url}...")
        try:
            ctx.session.navigate(ctx.target.url, Config.NAVIGATION_TIMEOUT_MS)
        except Exception as e:
            ctx.log(f"Navigation warning: {e}")
        return StepResult.CONTINUE

    # ==================== 4. Challenge Detection ====================

    def _detect_challenge(self, ctx: ProbeContext) -> StepResult:
        title = self._safe(ctx.session.title, "")
        html = self._safe(ctx.session.content, "")
        if not self.heuristics.is_challenge(title, html):
            return StepResult.CONTINUE

        ctx.log(f"⚠️ CHALLENGE DETECTED! (Title: \"{title}\")")
        if not self.bypass:
            ctx.log("❌ Challenge bypass is missing! Configure FLARESOLVERR_URL to get past this.")
            return StepResult.BLOCKED
        ctx.log("ℹ️ Bypass was tried. If you see this, the bypass might have failed or needs tuning.")
        return StepResult.CONTINUE

    # ==================== 5. Fingerprinting ====================

    def _find_registration_page(self, ctx: ProbeContext) -> StepResult:
        html = self._safe(ctx.session.content, "")
        signature, paths = self.fingerprints.candidate_paths(html, Config.COMMON_PATH_PREFIX)

        if signature:
            ctx.forum_type = signature.name
            ctx.log(f"Detected forum type: {signature.name}")
            timeout = Config.KNOWN_PATH_TIMEOUT_MS
        else:
            ctx.forum_type = "Unknown"
            ctx.log("Forum type not recognized. Using generic detection...")
            timeout = Config.COMMON_PATH_TIMEOUT_MS

        for url in self.fingerprints.build_registration_urls(ctx.target.url, paths):
            if ctx.cancel.is_set():
                raise ProbeCancelled(f"Probe of {ctx.target.url} cancelled during path search")
            try:
                if signature:
                    ctx.log(f"Trying known path: {url}")
                status = ctx.session.navigate(url, timeout)
                if _is_ok(status) and self.heuristics.looks_like_registration_page(ctx.session.content()):
                    ctx.log(f"Found registration page at {url}")
                    return StepResult.CONTINUE
            except Exception as e:
                if signature:
                    ctx.log(f"Path {url} failed: {e}")

        # Nothing matched: go back to the landing page for link discovery
        if paths:
            try:
                ctx.session.navigate(ctx.target.url, Config.NAVIGATION_TIMEOUT_MS)
            except Exception as e:
                ctx.log(f"Navigation warning: {e}")
        return StepResult.CONTINUE

    # ==================== 6. Link Following ====================

    def _follow_registration_link(self, ctx: ProbeContext) -> StepResult:
        session = ctx.session
        try:
            has_password = session.count('input[type="password"]') > 0
            has_email = session.count('input[type="email"]') > 0
        except Exception as e:
            logger.debug(f"[PROBE] Field count failed: {e}")
            has_password = has_email = False
        if has_password and has_email:
            return StepResult.CONTINUE

        ctx.log("No obvious form found. Searching for 'Register' link...")
        try:
            links = session.evaluate(LINK_SCAN_SCRIPT) or []
            link = next((l for l in links if self.heuristics.is_registration_link(l.get("text", ""))), None)
            if link is None:
                return StepResult.CONTINUE
            ctx.log(f"Found link: \"{link['text']}\". Clicking...")
            session.click(f"a >> nth={int(link['index'])}")
            session.wait_for_load()
            session.wait(Config.LINK_SETTLE_MS)
        except Exception as e:
            ctx.log(f"Link discovery failed: {e}")
        return StepResult.CONTINUE

    # ==================== 7. Invitation Codes ====================

    def _extract_invitation_codes(self, ctx: ProbeContext) -> StepResult:
        html = self._safe(ctx.session.content, "")
        url = self._safe(ctx.session.current_url, ctx.target.url)
        ctx.invitation_codes = self.heuristics.extract_invitation_codes(html, url)
        if ctx.invitation_codes:
            codes = ", ".join(c.code for c in ctx.invitation_codes)
            ctx.log(f"Found {len(ctx.invitation_codes)} invitation code(s): {codes}")
        return StepResult.CONTINUE

    # ==================== 8. Closed Detection ====================

    def _check_closed(self, ctx: ProbeContext) -> StepResult:
        ctx.shape = self._scan_form(ctx.session)
        ctx.body_text = self._safe(ctx.session.body_text, "")
        # The closed phrase is only trusted when nothing on the page contradicts it
        if not ctx.shape.has_any_form and self.heuristics.is_closed(ctx.body_text):
            ctx.log("Found a registration-closed notice and no form on the page.")
            return StepResult.CLOSED
        return StepResult.CONTINUE

    def _scan_form(self, session: BrowserSession) -> FormShape:
        try:
            scan = session.evaluate(FIELD_SCAN_SCRIPT) or {}
        except Exception as e:
            logger.debug(f"[PROBE] Field scan failed: {e}")
            scan = {}
        fields = [FieldInfo.from_dict(f) for f in scan.get("fields") or []]
        return self.heuristics.analyze(fields, scan.get("labels") or [])

    # ==================== 9. Invitation Required ====================

    def _check_invitation_required(self, ctx: ProbeContext) -> StepResult:
        if ctx.shape and ctx.shape.needs_invite:
            ctx.log("Invitation code field detected!")
            return StepResult.NEEDS_INVITE
        return StepResult.CONTINUE

    # ==================== 10. Heuristic Fill ====================

    def _heuristic_fill(self, ctx: ProbeContext) -> StepResult:
        shape = ctx.shape
        if not shape or not shape.is_simple_form:
            return StepResult.CONTINUE

        session, target = ctx.session, ctx.target
        ctx.log(f"Detected registration form! ({len(shape.email_fields)} email fields, "
                f"{len(shape.password_fields)} password fields)")
        ctx.log("Attempting to fill form...")

        selector_for = self.heuristics.selector_for
        session.fill(selector_for(shape.email_fields[0], 'input[type="email"] >> nth=0'), target.email)
        if shape.username_field:
            session.fill(selector_for(shape.username_field), target.pseudo)
        for index, password_field in enumerate(shape.password_fields[:2]):
            # Second password field is the confirmation
            session.fill(selector_for(password_field, f'input[type="password"] >> nth={index}'), target.password)

        ctx.log("Form partially filled. Checking for Captcha...")
        if self.heuristics.has_captcha_frame(self._safe(session.frame_urls, [])):
            ctx.log("CAPTCHA DETECTED! Cannot solve automatically.")
            return StepResult.CAPTCHA

        if session.count(SUBMIT_SELECTOR) == 0:
            ctx.log("No submit button found.")
            return StepResult.UNCONFIRMED

        if session.is_disabled(SUBMIT_SELECTOR):
            ctx.log("Submit button is DISABLED. Likely needs invitation code or additional fields.")
            return StepResult.NEEDS_INVITE

        ctx.log("Clicking submit...")
        session.click(SUBMIT_SELECTOR, timeout_ms=10000)
        return self._post_submit_verdict(ctx)

    # ==================== 11. AI Fallback ====================

    def _ai_fill(self, ctx: ProbeContext) -> StepResult:
        ctx.log("Standard heuristics inconclusive. Engaging AI...")
        if not self.planner:
            ctx.log("AI not configured. Skipping AI analysis.")
            return StepResult.UNRESOLVED

        html = self._safe(lambda: ctx.session.evaluate(LARGEST_FORM_SCRIPT), "") or ""
        try:
            plan = self.planner.plan(html[:Config.AI_HTML_LIMIT], ctx.target)
        except Exception as e:
            ctx.log(f"AI Error: {e}")
            plan = None

        if not plan or plan.is_empty:
            ctx.log("AI could not generate a valid plan.")
            return StepResult.UNRESOLVED

        ctx.log(f"AI Plan received with {len(plan.actions)} actions.")
        self._apply_plan(ctx, plan)

        if not plan.submit_selector:
            ctx.log("AI plan has no submit selector.")
            return StepResult.UNRESOLVED

        ctx.log(f"AI Submitting via {plan.submit_selector}...")
        try:
            ctx.session.click(plan.submit_selector)
        except Exception as e:
            ctx.log(f"AI submit failed: {e}")
            return StepResult.UNCONFIRMED
        return self._post_submit_verdict(ctx)

    def _apply_plan(self, ctx: ProbeContext, plan: FillPlan) -> None:
        """Each action is independent; one failure never aborts the rest"""
        for action in sorted(plan.actions, key=lambda a: a.position):
            try:
                if ctx.session.count(action.selector) == 0:
                    ctx.log(f"AI selector not found: {action.selector[:40]}")
                    continue
                if action.action == "toggle":
                    ctx.session.toggle(action.selector)
                else:
                    ctx.session.fill(action.selector, action.value)
                    ctx.log(f"AI Filled: {action.selector[:20]}...")
            except Exception as e:
                ctx.log(f"AI Action Failed for {action.selector}: {e}")

    # ==================== Helpers ====================

    def _post_submit_verdict(self, ctx: ProbeContext) -> StepResult:
        ctx.session.wait(Config.SUBMIT_SETTLE_MS)
        body = self._safe(ctx.session.body_text, "")
        if self.heuristics.is_success(body):
            return StepResult.REGISTERED
        return StepResult.UNCONFIRMED

    @staticmethod
    def _safe(getter, default):
        try:
            return getter()
        except Exception as e:
            logger.debug(f"[PROBE] Page read failed: {e}")
            return default
