"""
Forum Sniper - Target Store
Repository of targets: load-all, load-due, upsert, atomic status update, delete.

Two implementations share one contract: MemoryTargetStore (tests, ephemeral
runs) and SQLiteTargetStore (durable, one row per target, JSON columns for
the nested fields). Every call is atomic and hands out detached copies, so
a caller mutating a Target never mutates the store behind its back.
"""

import abc
import copy
import datetime
import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from .config import Config
from .errors import InvalidTransition, StoreError, TargetNotFound
from .models import LOG_CAPACITY, Target, TargetStatus, now_utc

logger = logging.getLogger("ForumSniper.Store")


class TargetStore(abc.ABC):

    @abc.abstractmethod
    def load_all(self) -> List[Target]: ...

    @abc.abstractmethod
    def get(self, target_id: str) -> Target:
        """Raises TargetNotFound"""

    @abc.abstractmethod
    def upsert(self, target: Target) -> None: ...

    @abc.abstractmethod
    def update(self, target: Target) -> bool:
        """Overwrite an existing target; False when it was deleted meanwhile"""

    @abc.abstractmethod
    def delete(self, target_id: str) -> bool: ...

    @abc.abstractmethod
    def update_status(self, target_id: str, status: TargetStatus,
                      now: Optional[datetime.datetime] = None,
                      expected: Optional[Iterable[TargetStatus]] = None) -> Target:
        """
        Compare-and-set on the status column.

        Raises InvalidTransition when the stored status is not in `expected`
        or the status graph forbids the move, TargetNotFound when missing.
        Returns the updated target.
        """

    def load_due(self, now: datetime.datetime, stale_after: datetime.timedelta) -> List[Target]:
        """Targets eligible for a scheduled probe: never REGISTERED, CHECKING only when stale"""
        return [t for t in self.load_all() if t.is_due(now, stale_after)]

    def find_by_url(self, url: str) -> Optional[Target]:
        """Match with or without a trailing slash"""
        wanted = url.rstrip("/")
        for target in self.load_all():
            if target.url.rstrip("/") == wanted:
                return target
        return None

    @staticmethod
    def _apply_status(target: Target, status: TargetStatus, now: Optional[datetime.datetime],
                      expected: Optional[Iterable[TargetStatus]]) -> None:
        if expected is not None and target.status not in set(expected):
            raise InvalidTransition(target.status.value, TargetStatus(status).value)
        target.transition(status, now or now_utc())


# ==================== Memory ====================

class MemoryTargetStore(TargetStore):

    def __init__(self, targets: Optional[Iterable[Target]] = None):
        self._targets: Dict[str, Target] = {}
        self._lock = threading.RLock()
        for target in targets or []:
            self.upsert(target)

    def load_all(self) -> List[Target]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._targets.values()]

    def get(self, target_id: str) -> Target:
        with self._lock:
            if target_id not in self._targets:
                raise TargetNotFound(target_id)
            return copy.deepcopy(self._targets[target_id])

    def upsert(self, target: Target) -> None:
        with self._lock:
            self._targets[target.id] = copy.deepcopy(target)

    def update(self, target: Target) -> bool:
        with self._lock:
            if target.id not in self._targets:
                return False
            self._targets[target.id] = copy.deepcopy(target)
            return True

    def delete(self, target_id: str) -> bool:
        with self._lock:
            return self._targets.pop(target_id, None) is not None

    def update_status(self, target_id, status, now=None, expected=None) -> Target:
        with self._lock:
            if target_id not in self._targets:
                raise TargetNotFound(target_id)
            target = copy.deepcopy(self._targets[target_id])
            self._apply_status(target, status, now, expected)
            self._targets[target_id] = target
            return copy.deepcopy(target)


# ==================== SQLite ====================

SCHEMA = """
    CREATE TABLE IF NOT EXISTS targets (
        id TEXT PRIMARY KEY,
        url TEXT NOT NULL,
        pseudo TEXT,
        email TEXT,
        password TEXT,
        status TEXT,
        logs TEXT,
        lastCheck TEXT,
        forumType TEXT,
        robotsInfo TEXT,
        invitationCodes TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_targets_status ON targets(status);
"""

COLUMNS = ("id", "url", "pseudo", "email", "password", "status", "logs",
           "lastCheck", "forumType", "robotsInfo", "invitationCodes")

UPSERT_SQL = f"""
    INSERT INTO targets ({", ".join(COLUMNS)})
    VALUES ({", ".join(":" + c for c in COLUMNS)})
    ON CONFLICT(id) DO UPDATE SET
    {", ".join(f"{c}=excluded.{c}" for c in COLUMNS if c != "id")}
"""

UPDATE_SQL = f"""
    UPDATE targets SET {", ".join(f"{c}=:{c}" for c in COLUMNS if c != "id")}
    WHERE id = :id
"""


def _to_row(target: Target) -> Dict[str, Optional[str]]:
    data = target.to_dict()
    return {
        "id": data["id"],
        "url": data["url"],
        "pseudo": data["pseudo"],
        "email": data["email"],
        "password": data["password"],
        "status": data["status"],
        "logs": json.dumps(data["logs"], ensure_ascii=False),
        "lastCheck": data["lastCheck"],
        "forumType": data["forumType"],
        "robotsInfo": json.dumps(data["robotsInfo"], ensure_ascii=False),
        "invitationCodes": json.dumps(data["invitationCodes"], ensure_ascii=False),
    }


def _from_row(row: sqlite3.Row) -> Target:
    return Target.from_dict({
        "id": row["id"],
        "url": row["url"],
        "pseudo": row["pseudo"],
        "email": row["email"],
        "password": row["password"],
        "status": row["status"],
        "logs": json.loads(row["logs"] or "[]")[:LOG_CAPACITY],
        "lastCheck": row["lastCheck"],
        "forumType": row["forumType"],
        "robotsInfo": json.loads(row["robotsInfo"] or "{}"),
        "invitationCodes": json.loads(row["invitationCodes"] or "[]"),
    })


class SQLiteTargetStore(TargetStore):
    """
    One connection per thread (sqlite3 objects are not shareable across
    threads); a process-wide lock serialises read-modify-write sequences.
    """

    def __init__(self, db_path: Optional[str] = None):
        self._db_path = str(db_path or Config.DB_PATH)
        self._local = threading.local()
        self._lock = threading.RLock()
        self._init_db()

    @property
    def _conn(self) -> sqlite3.Connection:
        if getattr(self._local, "conn", None) is None:
            directory = os.path.dirname(self._db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            conn = sqlite3.connect(self._db_path, timeout=10)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            self._local.conn = conn
        return self._local.conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn as conn:
                    yield conn
            except sqlite3.Error as e:
                logger.error(f"[DB] {e}")
                raise StoreError(str(e)) from e

    def _init_db(self):
        with self._transaction() as conn:
            conn.executescript(SCHEMA)
        self._migrate_json()

    def _migrate_json(self):
        """One-time import of a legacy targets.json sitting next to the database"""
        legacy = os.path.join(os.path.dirname(self._db_path) or ".", "targets.json")
        if not os.path.exists(legacy):
            return
        with self._transaction() as conn:
            count = conn.execute("SELECT count(*) FROM targets").fetchone()[0]
        if count:
            return

        logger.info("[DB] Migrating targets.json to SQLite...")
        try:
            with open(legacy, "r", encoding="utf-8") as f:
                targets = [Target.from_dict(t) for t in json.load(f)]
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"[DB] Migration failed: {e}")
            return
        with self._transaction() as conn:
            conn.executemany(UPSERT_SQL, [_to_row(t) for t in targets])
        os.replace(legacy, legacy + ".bak")
        logger.info(f"[DB] Imported {len(targets)} targets.")

    def load_all(self) -> List[Target]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM targets").fetchall()
        return [_from_row(r) for r in rows]

    def load_due(self, now, stale_after) -> List[Target]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM targets WHERE status != ?",
                                (TargetStatus.REGISTERED.value,)).fetchall()
        return [t for t in map(_from_row, rows) if t.is_due(now, stale_after)]

    def get(self, target_id: str) -> Target:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM targets WHERE id = ?", (target_id,)).fetchone()
        if row is None:
            raise TargetNotFound(target_id)
        return _from_row(row)

    def upsert(self, target: Target) -> None:
        with self._transaction() as conn:
            conn.execute(UPSERT_SQL, _to_row(target))

    def update(self, target: Target) -> bool:
        with self._transaction() as conn:
            return conn.execute(UPDATE_SQL, _to_row(target)).rowcount > 0

    def delete(self, target_id: str) -> bool:
        with self._transaction() as conn:
            return conn.execute("DELETE FROM targets WHERE id = ?", (target_id,)).rowcount > 0

    def update_status(self, target_id, status, now=None, expected=None) -> Target:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM targets WHERE id = ?", (target_id,)).fetchone()
            if row is None:
                raise TargetNotFound(target_id)
            target = _from_row(row)
            self._apply_status(target, status, now, expected)
            conn.execute(
                "UPDATE targets SET status = ?, lastCheck = ? WHERE id = ?",
                (target.status.value, target.last_check.isoformat(), target_id)
            )
        return target

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
