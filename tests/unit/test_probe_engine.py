"""
forum_sniper.probe_engine unit tests
Drive the full pipeline against in-memory pages.
"""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from fakes import FakeDriver, FakePage, field_dict, simple_form_fields
from forum_sniper.challenge_bypass import BypassResult
from forum_sniper.errors import ProbeCancelled
from forum_sniper.evidence import EvidenceRecorder
from forum_sniper.models import FillAction, FillPlan, Target, TargetStatus
from forum_sniper.probe_engine import SUBMIT_SELECTOR, ProbeEngine, StepResult, STEP_OUTCOMES

BASE = "https://forum.example.com/"


def _target(url=BASE):
    return Target.create(url, "sniper", "me@example.com", "s3cret", target_id="t1")


def _http(robots_text=None):
    http = MagicMock()
    if robots_text is None:
        http.get.side_effect = requests.ConnectionError("no robots")
    else:
        http.get.return_value = MagicMock(ok=True, text=robots_text)
    return http


def _engine(pages, **kwargs):
    driver = FakeDriver(pages)
    kwargs.setdefault("http", _http())
    return ProbeEngine(driver, **kwargs), driver


def _probe(engine, target=None, cancel=None):
    lines = []
    result = engine.probe(target or _target(), log=lines.append, cancel=cancel)
    return result, lines


@pytest.mark.unit
class TestStepResults:

    def test_every_terminal_step_maps_to_an_outcome(self):
        terminal = [s for s in StepResult if s is not StepResult.CONTINUE]
        assert set(STEP_OUTCOMES) == set(terminal)

    def test_captcha_and_unresolved_stay_open(self):
        assert STEP_OUTCOMES[StepResult.CAPTCHA] == TargetStatus.OPEN
        assert STEP_OUTCOMES[StepResult.UNRESOLVED] == TargetStatus.OPEN
        assert STEP_OUTCOMES[StepResult.BLOCKED] == TargetStatus.CLOSED


@pytest.mark.unit
class TestHeuristicPath:

    def test_simple_form_registers_without_ai(self):
        planner = MagicMock()
        page = FakePage(html="<form>email password</form>", title="Forum",
                        fields=simple_form_fields(), after_submit_body="Welcome aboard!")
        engine, driver = _engine({BASE: page}, planner=planner)

        result, lines = _probe(engine)

        assert result.outcome == TargetStatus.REGISTERED
        planner.plan.assert_not_called()
        session = driver.last
        assert ("fill", '[id="email"]', "me@example.com") in session.actions
        assert ("fill", '[id="username"]', "sniper") in session.actions
        assert ("fill", '[id="password"]', "s3cret") in session.actions
        assert ("fill", '[id="password_confirm"]', "s3cret") in session.actions
        assert ("click", SUBMIT_SELECTOR) in session.actions
        assert session.closed

    def test_unconfirmed_submit_is_open(self):
        page = FakePage(title="Forum", fields=simple_form_fields(), after_submit_body="Please try again")
        engine, _ = _engine({BASE: page})

        result, _ = _probe(engine)

        assert result.outcome == TargetStatus.OPEN
        assert not result.captcha_detected

    def test_captcha_frame_stops_before_submit(self):
        page = FakePage(title="Forum", fields=simple_form_fields(),
                        frames=["https://www.google.com/recaptcha/api2/anchor?k=abc"])
        engine, driver = _engine({BASE: page})

        result, lines = _probe(engine)

        assert result.outcome == TargetStatus.OPEN
        assert result.captcha_detected
        assert ("click", SUBMIT_SELECTOR) not in driver.last.actions
        assert "CAPTCHA DETECTED! Cannot solve automatically." in lines

    def test_disabled_submit_needs_invite(self):
        page = FakePage(title="Forum", fields=simple_form_fields(), submit_disabled=True)
        engine, driver = _engine({BASE: page})

        result, _ = _probe(engine)

        assert result.outcome == TargetStatus.NEEDS_INVITE
        assert result.needs_invite
        assert not [a for a in driver.last.actions if a[0] == "click"]

    def test_positional_selector_for_anonymous_password_fields(self):
        fields = [
            field_dict(type="email", name="mail"),
            field_dict(type="password"),
            field_dict(type="password"),
        ]
        page = FakePage(title="Forum", fields=fields, after_submit_body="success")
        engine, driver = _engine({BASE: page})

        _probe(engine)

        selectors = [a[1] for a in driver.last.fills]
        assert 'input[name="mail"]' in selectors
        assert 'input[type="password"] >> nth=0' in selectors
        assert 'input[type="password"] >> nth=1' in selectors


@pytest.mark.unit
class TestShortCircuits:

    def test_referral_code_field_needs_invite_without_filling(self):
        fields = simple_form_fields() + [field_dict(name="referral_code")]
        page = FakePage(title="Forum", fields=fields, after_submit_body="Welcome")
        planner = MagicMock()
        engine, driver = _engine({BASE: page}, planner=planner)

        result, lines = _probe(engine)

        assert result.outcome == TargetStatus.NEEDS_INVITE
        assert driver.last.fills == []
        assert not [a for a in driver.last.actions if a[0] == "click"]
        planner.plan.assert_not_called()
        assert "Invitation code field detected!" in lines

    def test_invite_label_needs_invite(self):
        page = FakePage(title="Forum", fields=simple_form_fields(), labels=["Code d'invitation"])
        engine, _ = _engine({BASE: page})

        result, _ = _probe(engine)

        assert result.outcome == TargetStatus.NEEDS_INVITE

    def test_challenge_without_bypass_is_blocked(self):
        page = FakePage(title="Just a moment...", html="<div id='challenge-platform'></div>")
        engine, driver = _engine({BASE: page})

        result, _ = _probe(engine)

        assert result.blocked_by_challenge
        assert result.outcome == TargetStatus.CLOSED
        assert result.forum_type == "Cloudflare"
        assert driver.last.visited == [BASE]
        assert driver.last.closed

    def test_closed_phrase_without_form_is_closed(self):
        page = FakePage(title="Forum", body="Sorry, registration is currently closed.")
        engine, _ = _engine({BASE: page})

        result, _ = _probe(engine)

        assert result.outcome == TargetStatus.CLOSED
        assert not result.blocked_by_challenge

    def test_closed_phrase_ignored_when_form_present(self):
        page = FakePage(title="Forum", body="Registration closed for bots? Not here.",
                        fields=simple_form_fields(), after_submit_body="Bienvenue !")
        engine, _ = _engine({BASE: page})

        result, _ = _probe(engine)

        assert result.outcome == TargetStatus.REGISTERED


@pytest.mark.unit
class TestAIFallback:

    def _question_page(self, **kwargs):
        fields = simple_form_fields() + [field_dict(tag="textarea", type="textarea", name="why_join")]
        return FakePage(title="Forum", html="<form>why join?</form>", fields=fields, **kwargs)

    def test_planner_returning_none_leaves_open(self):
        planner = MagicMock()
        planner.plan.return_value = None
        engine, driver = _engine({BASE: self._question_page()}, planner=planner)

        result, lines = _probe(engine)

        assert result.outcome == TargetStatus.OPEN
        planner.plan.assert_called_once()
        assert "AI could not generate a valid plan." in lines
        assert driver.last.closed

    def test_planner_raising_leaves_open(self):
        planner = MagicMock()
        planner.plan.side_effect = RuntimeError("quota exceeded")
        engine, _ = _engine({BASE: self._question_page()}, planner=planner)

        result, _ = _probe(engine)

        assert result.outcome == TargetStatus.OPEN

    def test_no_planner_configured_leaves_open(self):
        engine, _ = _engine({BASE: self._question_page()})

        result, lines = _probe(engine)

        assert result.outcome == TargetStatus.OPEN
        assert "AI not configured. Skipping AI analysis." in lines

    def test_failed_action_does_not_abort_plan(self):
        plan = FillPlan(actions=[
            FillAction("#email", "me@example.com", position=0),
            FillAction("#why", "I love servers", position=1),
            FillAction("#rules", "true", action="toggle", position=2),
        ], submit_selector="#go")
        planner = MagicMock()
        planner.plan.return_value = plan
        page = self._question_page(failing_selectors=["#why"], after_submit_body="Merci, bienvenue !")
        engine, driver = _engine({BASE: page}, planner=planner)

        result, lines = _probe(engine)

        assert result.outcome == TargetStatus.REGISTERED
        actions = driver.last.actions
        assert ("fill", "#email", "me@example.com") in actions
        assert ("toggle", "#rules") in actions
        assert ("click", "#go") in actions
        assert any(line.startswith("AI Action Failed for #why") for line in lines)

    def test_missing_selector_is_skipped(self):
        plan = FillPlan(actions=[FillAction("#ghost", "x")], submit_selector="#go")
        planner = MagicMock()
        planner.plan.return_value = plan
        page = self._question_page(missing_selectors=["#ghost"], after_submit_body="nope")
        engine, driver = _engine({BASE: page}, planner=planner)

        result, _ = _probe(engine)

        assert result.outcome == TargetStatus.OPEN
        assert driver.last.fills == []


@pytest.mark.unit
class TestDiscoverySteps:

    def test_fingerprinted_forum_uses_known_path(self):
        register_url = "https://forum.example.com/ucp.php?mode=register"
        pages = {
            BASE: FakePage(html="<footer>Powered by phpBB</footer>", title="Board"),
            register_url: FakePage(html="<form>Username Password E-mail</form>", title="Register",
                                   fields=simple_form_fields(), after_submit_body="Welcome"),
        }
        engine, driver = _engine(pages)

        result, lines = _probe(engine)

        assert result.forum_type == "phpBB"
        assert result.outcome == TargetStatus.REGISTERED
        assert register_url in driver.last.visited
        assert "Detected forum type: phpBB" in lines

    def test_unknown_forum_tries_common_prefix_then_returns(self):
        engine, driver = _engine({BASE: FakePage(title="Home", body="Nothing here")})

        result, _ = _probe(engine)

        visited = driver.last.visited
        assert result.forum_type == "Unknown"
        # landing page, five common paths, back to the landing page
        assert len(visited) == 7
        assert visited[1] == "https://forum.example.com/register"
        assert visited[-1] == BASE

    def test_follows_registration_link(self):
        signup = "https://forum.example.com/account/new"
        pages = {
            BASE: FakePage(title="Home", links=[
                {"index": 0, "text": "Accueil", "href": BASE},
                {"index": 4, "text": "S'inscrire", "href": signup},
            ]),
            signup: FakePage(title="Inscription", fields=simple_form_fields(), after_submit_body="Bienvenue"),
        }
        engine, driver = _engine(pages)

        result, lines = _probe(engine)

        assert ("click", "a >> nth=4") in driver.last.actions
        assert result.outcome == TargetStatus.REGISTERED

    def test_invitation_codes_are_deduplicated(self):
        page = FakePage(
            title="Forum",
            html='<a href="/join?invite_code=ZX81QQ">join</a> Invitation code: ZX81QQ',
            fields=simple_form_fields() + [field_dict(name="invite", label="Invitation")],
        )
        engine, _ = _engine({BASE: page})

        result, _ = _probe(engine)

        assert [c.code for c in result.invitation_codes] == ["ZX81QQ"]
        assert result.outcome == TargetStatus.NEEDS_INVITE

    def test_robots_hints_collected(self):
        engine, _ = _engine({BASE: FakePage(title="x")}, http=_http("User-agent: *\nDisallow: /phpbb/ucp.php"))

        result, _ = _probe(engine)

        assert result.robots_hints == ["phpBB"]
        assert result.robots_raw.startswith("User-agent")

    def test_robots_failure_is_silent(self):
        engine, _ = _engine({BASE: FakePage(title="x")})

        result, _ = _probe(engine)

        assert result.robots_hints is None

    def test_navigation_error_is_not_fatal(self):
        driver = FakeDriver({}, navigation_error=TimeoutError("Timeout 30000ms exceeded"))
        engine = ProbeEngine(driver, http=_http())

        result, lines = _probe(engine)

        assert result.outcome == TargetStatus.OPEN
        assert any(line.startswith("Navigation warning") for line in lines)


@pytest.mark.unit
class TestBypass:

    def test_solved_cookies_and_user_agent_are_injected(self):
        bypass = MagicMock()
        bypass.solve.return_value = BypassResult(
            ok=True,
            cookies=[{"name": "cf_clearance", "value": "abc", "domain": ".forum.example.com"}],
            user_agent="Mozilla/5.0 Solver",
        )
        page = FakePage(title="Forum", fields=simple_form_fields(), after_submit_body="Welcome")
        engine, driver = _engine({BASE: page}, bypass=bypass)

        result, _ = _probe(engine)

        session = driver.last
        assert session.cookies[0]["name"] == "cf_clearance"
        assert session.headers["User-Agent"] == "Mozilla/5.0 Solver"
        assert result.outcome == TargetStatus.REGISTERED

    def test_challenge_with_bypass_configured_is_not_blocked(self):
        bypass = MagicMock()
        bypass.solve.return_value = BypassResult.failure("timeout")
        page = FakePage(title="Just a moment...", body="")
        engine, _ = _engine({BASE: page}, bypass=bypass)

        result, lines = _probe(engine)

        assert not result.blocked_by_challenge
        assert "Challenge bypass failed: timeout" in lines


@pytest.mark.unit
class TestSessionLifecycle:

    def test_session_released_on_fault(self):
        page = FakePage(title="Forum", fields=simple_form_fields(), failing_selectors=['[id="email"]'])
        engine, driver = _engine({BASE: page})

        with pytest.raises(RuntimeError):
            _probe(engine)

        assert driver.last.closed

    def test_cancelled_probe_raises_and_releases(self):
        engine, driver = _engine({BASE: FakePage(title="x")})
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(ProbeCancelled):
            _probe(engine, cancel=cancel)

        assert driver.last.closed

    def test_evidence_captured_for_captcha(self, tmp_path):
        page = FakePage(title="Forum", fields=simple_form_fields(),
                        frames=["https://newassets.hcaptcha.com/captcha/v1"])
        engine, _ = _engine({BASE: page}, evidence=EvidenceRecorder(str(tmp_path)))

        _probe(engine)

        files = sorted(p.suffix for p in (tmp_path / "t1").iterdir())
        assert ".html" in files
        assert ".png" in files
        assert ".json" in files
