"""
forum_sniper.store unit tests
Both implementations run the same contract tests.
"""

import datetime
import json

import pytest

from forum_sniper.errors import InvalidTransition, StoreError, TargetNotFound
from forum_sniper.models import InvitationCode, Target, TargetStatus
from forum_sniper.store import MemoryTargetStore, SQLiteTargetStore


def _target(target_id="t1", url="https://forum.example.com/", status=TargetStatus.IDLE, last_check=None):
    target = Target.create(url, "sniper", "me@example.com", "pw", target_id=target_id)
    target.status = status
    target.last_check = last_check
    return target


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield MemoryTargetStore()
        return
    s = SQLiteTargetStore(str(tmp_path / "data" / "database.sqlite"))
    yield s
    s.close()


@pytest.mark.unit
class TestContract:

    def test_upsert_get_roundtrip(self, store, fixed_now):
        target = _target()
        target.add_log("hello", fixed_now)
        target.forum_type = "phpBB"
        target.invitation_codes = [InvitationCode("ABCD1234", "page")]
        store.upsert(target)

        loaded = store.get("t1")
        assert loaded.url == target.url
        assert list(loaded.logs) == list(target.logs)
        assert loaded.forum_type == "phpBB"
        assert loaded.invitation_codes[0].code == "ABCD1234"

    def test_returned_targets_are_detached(self, store):
        store.upsert(_target())
        loaded = store.get("t1")
        loaded.url = "https://changed.example.com/"

        assert store.get("t1").url == "https://forum.example.com/"

    def test_get_missing_raises(self, store):
        with pytest.raises(TargetNotFound):
            store.get("nope")

    def test_delete(self, store):
        store.upsert(_target())
        assert store.delete("t1") is True
        assert store.delete("t1") is False
        assert store.load_all() == []

    def test_update_only_existing(self, store):
        target = _target()
        assert store.update(target) is False
        store.upsert(target)
        target.forum_type = "MyBB"
        assert store.update(target) is True
        assert store.get("t1").forum_type == "MyBB"

    def test_load_due(self, store, fixed_now):
        stale_after = datetime.timedelta(minutes=10)
        store.upsert(_target("idle"))
        store.upsert(_target("registered", status=TargetStatus.REGISTERED, last_check=fixed_now))
        store.upsert(_target("busy", status=TargetStatus.CHECKING,
                             last_check=fixed_now - datetime.timedelta(minutes=1)))
        store.upsert(_target("stale", status=TargetStatus.CHECKING,
                             last_check=fixed_now - datetime.timedelta(minutes=30)))

        due = sorted(t.id for t in store.load_due(fixed_now, stale_after))
        assert due == ["idle", "stale"]

    def test_update_status_checks_graph(self, store, fixed_now):
        store.upsert(_target())

        updated = store.update_status("t1", TargetStatus.CHECKING, fixed_now)
        assert updated.status == TargetStatus.CHECKING
        assert store.get("t1").last_check == fixed_now

        with pytest.raises(InvalidTransition):
            store.update_status("t1", TargetStatus.IDLE, fixed_now, expected=[TargetStatus.OPEN])
        assert store.get("t1").status == TargetStatus.CHECKING

    def test_update_status_missing(self, store):
        with pytest.raises(TargetNotFound):
            store.update_status("nope", TargetStatus.CHECKING)

    def test_find_by_url_ignores_trailing_slash(self, store):
        store.upsert(_target(url="https://forum.example.com/"))
        assert store.find_by_url("https://forum.example.com").id == "t1"
        assert store.find_by_url("https://other.example.com") is None


@pytest.mark.unit
class TestSQLite:

    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "db.sqlite")
        SQLiteTargetStore(path).upsert(_target())

        assert SQLiteTargetStore(path).get("t1").email == "me@example.com"

    def test_migrates_legacy_json(self, tmp_path):
        legacy = tmp_path / "targets.json"
        legacy.write_text(json.dumps([{
            "id": "123", "url": "https://old.example.com", "pseudo": "p", "email": "e@x.com",
            "password": "pw", "status": "OPEN", "logs": ["[10:00:00] old"], "lastCheck": None,
        }]), encoding="utf-8")

        store = SQLiteTargetStore(str(tmp_path / "database.sqlite"))

        assert store.get("123").status == TargetStatus.OPEN
        assert not legacy.exists()
        assert (tmp_path / "targets.json.bak").exists()

    def test_sqlite_errors_wrapped(self, tmp_path):
        store = SQLiteTargetStore(str(tmp_path / "db.sqlite"))
        store._conn.execute("DROP TABLE targets")

        with pytest.raises(StoreError):
            store.load_all()
