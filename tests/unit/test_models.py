"""
forum_sniper.models unit tests
"""

import datetime

import pytest

from forum_sniper.errors import InvalidTransition
from forum_sniper.models import (
    LOG_CAPACITY,
    FillPlan,
    InvitationCode,
    ProbeResult,
    Target,
    TargetStatus,
    dedupe_codes,
    parse_timestamp,
)


def _target(**kwargs):
    return Target.create("https://forum.example.com", "sniper", "me@example.com", "pw", target_id="t1", **kwargs)


@pytest.mark.unit
class TestTargetLog:

    def test_newest_first_and_bounded(self, fixed_now):
        target = _target()
        for i in range(LOG_CAPACITY + 25):
            target.add_log(f"msg {i}", fixed_now)

        assert len(target.logs) == LOG_CAPACITY
        assert target.logs[0].endswith("msg 74")
        assert target.logs[-1].endswith("msg 25")

    def test_line_prefixed_with_local_time(self, fixed_now, monkeypatch):
        from forum_sniper.config import Config
        monkeypatch.setattr(Config, "TIMEZONE", "Europe/Paris")

        entry = _target().add_log("hello", fixed_now)

        # 12:00 UTC is 14:00 in Paris during summer time
        assert entry == "[14:00:00] hello"


@pytest.mark.unit
class TestTransitions:

    def test_happy_path(self, fixed_now):
        target = _target()
        target.transition(TargetStatus.CHECKING, fixed_now)
        target.transition(TargetStatus.OPEN, fixed_now)
        target.transition(TargetStatus.CHECKING, fixed_now)

        assert target.status == TargetStatus.CHECKING
        assert target.last_check == fixed_now

    def test_nothing_leaves_registered(self, fixed_now):
        target = _target()
        target.transition(TargetStatus.CHECKING, fixed_now)
        target.transition(TargetStatus.REGISTERED, fixed_now)

        for status in TargetStatus:
            with pytest.raises(InvalidTransition):
                target.transition(status, fixed_now)

    def test_idle_cannot_jump_to_outcome(self):
        with pytest.raises(InvalidTransition):
            _target().transition(TargetStatus.OPEN)

    def test_due_and_stale(self, fixed_now):
        stale_after = datetime.timedelta(minutes=10)
        target = _target()
        target.status = TargetStatus.CHECKING
        target.last_check = fixed_now - datetime.timedelta(minutes=9)
        assert not target.is_due(fixed_now, stale_after)

        target.last_check = fixed_now - datetime.timedelta(minutes=11)
        assert target.is_due(fixed_now, stale_after)

        target.status = TargetStatus.REGISTERED
        assert not target.is_due(fixed_now, stale_after)


@pytest.mark.unit
class TestSerialization:

    def test_wire_shape(self, fixed_now):
        target = _target()
        target.add_log("hi", fixed_now)
        target.transition(TargetStatus.CHECKING, fixed_now)
        target.robots_hints = ["phpBB"]
        target.invitation_codes = [InvitationCode("ABCD1234", "url")]

        data = target.to_dict()
        assert data["status"] == "CHECKING"
        assert data["lastCheck"] == fixed_now.isoformat()
        assert data["robotsInfo"] == {"forumHints": ["phpBB"], "raw": None}
        assert data["invitationCodes"] == [{"code": "ABCD1234", "source": "url"}]
        assert "password" not in target.to_dict(include_secrets=False)

        restored = Target.from_dict(data)
        assert restored.last_check == fixed_now
        assert list(restored.logs) == list(target.logs)
        assert restored.invitation_codes[0].source == "url"

    def test_create_uses_defaults(self, monkeypatch):
        from forum_sniper.config import Config
        monkeypatch.setattr(Config, "DEFAULT_PSEUDO", "")
        monkeypatch.setattr(Config, "DEFAULT_EMAIL", "default@example.com")

        target = Target.create("https://x.example.com")

        assert target.pseudo.startswith("AutoUser_")
        assert target.email == "default@example.com"
        assert target.status == TargetStatus.IDLE

    def test_parse_timestamp_variants(self):
        assert parse_timestamp("2026-10-18T12:00:00.000Z").tzinfo is not None
        assert parse_timestamp("garbage") is None
        assert parse_timestamp(None) is None


@pytest.mark.unit
class TestProbeResult:

    def test_rejects_non_outcome(self):
        with pytest.raises(ValueError):
            ProbeResult(TargetStatus.CHECKING)

    def test_metadata_only_when_present(self):
        target = _target()
        target.forum_type = "XenForo"

        assert not target.apply_metadata(ProbeResult(TargetStatus.OPEN))
        assert target.forum_type == "XenForo"

        assert target.apply_metadata(ProbeResult(TargetStatus.OPEN, robots_hints=[]))
        assert target.robots_hints == []


@pytest.mark.unit
class TestFillPlan:

    def test_parses_and_normalises_actions(self):
        plan = FillPlan.from_dict({
            "fill_actions": [
                {"selector": "#user", "value": "sniper", "action": "fill"},
                {"selector": "#tos", "value": "true", "action": "check"},
                {"value": "no selector"},
                {"selector": "#x", "action": "hover"},
                {"selector": "#continue", "action": "click"},
            ],
            "submit_selector": "button[type=submit]",
        })

        assert [a.selector for a in plan.actions] == ["#user", "#tos"]
        assert plan.actions[1].action == "toggle"
        assert [a.position for a in plan.actions] == [0, 1]
        assert plan.submit_selector == "button[type=submit]"

    def test_empty_or_malformed_is_none(self):
        assert FillPlan.from_dict({"fill_actions": []}) is None
        assert FillPlan.from_dict({"fill_actions": "nope"}) is None
        assert FillPlan.from_dict([]) is None


@pytest.mark.unit
def test_dedupe_codes_regardless_of_source():
    codes = dedupe_codes([
        InvitationCode("ABCD1234", "url"),
        InvitationCode("ABCD1234", "page"),
        InvitationCode("ZZZZ9999", "page"),
    ])
    assert [(c.code, c.source) for c in codes] == [("ABCD1234", "url"), ("ZZZZ9999", "page")]


@pytest.mark.unit
def test_click_actions_are_not_toggles():
    plan = FillPlan.from_dict({
        "fill_actions": [
            {"selector": "#next-step", "action": "click"},
            {"selector": "#tos", "action": "check"},
        ],
        "submit_selector": "#go",
    })

    assert [(a.selector, a.action) for a in plan.actions] == [("#tos", "toggle")]
