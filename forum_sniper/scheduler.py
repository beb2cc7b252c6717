"""
Forum Sniper - Scheduler
Decides when each target is probed, bounds every probe with a hard deadline,
isolates per-target failures and recovers targets abandoned in CHECKING.
"""

import datetime
import logging
import random
import threading
from typing import Any, Callable, Dict, Optional, Set

from .config import Config
from .errors import InvalidTransition, ProbeTimeout, StoreError, TargetNotFound
from .events import EventChannel
from .models import ProbeResult, Target, TargetStatus, now_utc
from .probe_engine import ProbeEngine
from .store import TargetStore

logger = logging.getLogger("ForumSniper.Scheduler")

STATUS_MESSAGES = {
    TargetStatus.REGISTERED: "SUCCESS: Registration completed!",
    TargetStatus.NEEDS_INVITE: "OPEN but requires invitation code or additional info.",
    TargetStatus.OPEN: "WARNING: Registration seems open but failed to automate.",
    TargetStatus.CLOSED: "Registration appears closed.",
}


class TargetLog:
    """
    Log sink handed to the engine for one probe.

    Every line lands in the target's bounded log, is mirrored to the process
    log and published as a LogAppended event. Once the probe is settled the
    sink is closed, and lines from a worker that outlived its deadline are
    discarded instead of racing the final status update.
    """

    def __init__(self, target: Target, events: Optional[EventChannel]):
        self.target = target
        self.events = events
        self._lock = threading.Lock()
        self._open = True

    def __call__(self, message: str) -> None:
        with self._lock:
            if not self._open:
                logger.debug(f"[LOG:{self.target.id}] (late) {message}")
                return
            self._append(message)

    def write(self, message: str) -> None:
        """Append regardless of the sink being closed (scheduler's own lines)"""
        with self._lock:
            self._append(message)

    def close(self) -> None:
        with self._lock:
            self._open = False

    def _append(self, message: str) -> None:
        line = self.target.add_log(message)
        logger.info(f"[LOG:{self.target.id}] {message}")
        if self.events:
            self.events.log_appended(self.target.id, line)


class Scheduler:

    def __init__(self,
                 store: TargetStore,
                 engine: ProbeEngine,
                 events: Optional[EventChannel] = None,
                 interval_minutes: Optional[float] = None,
                 jitter_minutes: Optional[float] = None,
                 initial_delay: Optional[float] = None,
                 check_timeout: Optional[float] = None,
                 stale_minutes: Optional[float] = None,
                 pause_seconds: Optional[float] = None,
                 clock: Callable[[], datetime.datetime] = now_utc):
        self.store = store
        self.engine = engine
        self.events = events
        self.interval_minutes = Config.CHECK_INTERVAL_MINUTES if interval_minutes is None else interval_minutes
        self.jitter_minutes = Config.CHECK_JITTER_MINUTES if jitter_minutes is None else jitter_minutes
        self.initial_delay = Config.INITIAL_DELAY_SECONDS if initial_delay is None else initial_delay
        self.check_timeout = Config.CHECK_TIMEOUT_SECONDS if check_timeout is None else check_timeout
        self.stale_after = datetime.timedelta(
            minutes=Config.STALE_CHECK_MINUTES if stale_minutes is None else stale_minutes)
        self.pause_seconds = Config.INTER_TARGET_PAUSE_SECONDS if pause_seconds is None else pause_seconds
        self.clock = clock

        self.stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._in_flight: Set[str] = set()
        # Timed-out runs whose worker still holds the claim; the worker releases it on exit
        self._abandoned: Set[str] = set()
        self._in_flight_lock = threading.Lock()

        self.batches_run = 0
        self.last_batch_at: Optional[datetime.datetime] = None
        self.next_batch_at: Optional[datetime.datetime] = None

    # ==================== Lifecycle ====================

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.warning("[SCHEDULER] Already running")
            return
        self.stop_event.clear()
        self.reset_stale()
        self._thread = threading.Thread(target=self._loop, name="Scheduler", daemon=True)
        self._thread.start()
        logger.info(f"[SCHEDULER] Started. First batch in {self.initial_delay:.0f}s")

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        if self._thread:
            self._thread.join(timeout)
        logger.info("[SCHEDULER] Stopped")

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def reset_stale(self) -> int:
        """Startup recovery: nothing can be in flight yet, so every CHECKING target is stuck"""
        reset = 0
        for target in self.store.load_all():
            if target.status != TargetStatus.CHECKING:
                continue
            try:
                updated = self.store.update_status(target.id, TargetStatus.IDLE, self.clock(),
                                                   expected=[TargetStatus.CHECKING])
            except (InvalidTransition, TargetNotFound) as e:
                logger.debug(f"[SCHEDULER] Reset skipped for {target.id}: {e}")
                continue
            reset += 1
            if self.events:
                self.events.status_changed(updated)
        if reset:
            logger.info(f"[SCHEDULER] Reset {reset} stuck target(s) to IDLE")
        return reset

    def next_interval(self) -> float:
        """Seconds until the next batch: base interval +/- jitter, never under a minute"""
        minutes = self.interval_minutes + random.uniform(-self.jitter_minutes, self.jitter_minutes)
        return max(60.0, minutes * 60)

    def _loop(self) -> None:
        if self.stop_event.wait(self.initial_delay):
            return
        while not self.stop_event.is_set():
            try:
                self.run_batch()
            except Exception as e:
                logger.error(f"[SCHEDULER] Batch crashed: {e}", exc_info=True)

            delay = self.next_interval()
            self.next_batch_at = self.clock() + datetime.timedelta(seconds=delay)
            logger.info(f"[SCHEDULER] Next check in {delay / 60:.1f} minutes")
            if self.stop_event.wait(delay):
                break

    # ==================== Batch ====================

    def run_batch(self) -> int:
        """Probe every due target once, sequentially. Returns the number probed."""
        now = self.clock()
        self.last_batch_at = now
        try:
            due = self.store.load_due(now, self.stale_after)
        except StoreError as e:
            logger.error(f"[SCHEDULER] Could not load targets: {e}")
            return 0

        logger.info(f"[SCHEDULER] Starting batch: {len(due)} target(s) due")
        probed = 0
        for target in due:
            if self.stop_event.is_set():
                break
            if target.status == TargetStatus.CHECKING:
                logger.warning(f"[SCHEDULER] Target {target.id} stuck in CHECKING. Re-probing.")
            try:
                if self.run_guarded(target.id) is not None:
                    probed += 1
            except StoreError as e:
                logger.error(f"[SCHEDULER] Storage error on {target.id}: {e}")
            self.stop_event.wait(self.pause_seconds)

        self.batches_run += 1
        logger.info(f"[SCHEDULER] Batch complete: {probed}/{len(due)} probed")
        return probed

    # ==================== Probe Now ====================

    def probe_now(self, target_id: str) -> bool:
        """
        Manual check outside the cadence. Returns at once; the guarded probe
        runs on its own thread.

        Raises TargetNotFound (or StoreError) to the caller.
        """
        target = self.store.get(target_id)
        if target.status == TargetStatus.REGISTERED:
            logger.info(f"[SCHEDULER] {target_id} already REGISTERED, manual check ignored")
            return False
        if self.is_in_flight(target_id):
            logger.warning(f"[SCHEDULER] {target_id} already being probed")
            return False

        def run():
            try:
                self.run_guarded(target_id)
            except Exception as e:
                logger.error(f"[SCHEDULER] Manual check of {target_id} failed: {e}")

        threading.Thread(target=run, name=f"ProbeNow-{target_id}", daemon=True).start()
        return True

    # ==================== Guarded Execution ====================

    def is_in_flight(self, target_id: str) -> bool:
        with self._in_flight_lock:
            return target_id in self._in_flight

    def run_guarded(self, target_id: str) -> Optional[TargetStatus]:
        """
        One probe with the full policy: per-target exclusion, hard deadline,
        catch-all failure boundary. Returns the final status, or None when
        the run was rejected.
        """
        with self._in_flight_lock:
            if target_id in self._in_flight:
                logger.warning(f"[SCHEDULER] Probe of {target_id} already in flight. Rejected.")
                return None
            self._in_flight.add(target_id)
        try:
            return self._run_one(target_id)
        finally:
            with self._in_flight_lock:
                if target_id not in self._abandoned:
                    self._in_flight.discard(target_id)

    def _run_one(self, target_id: str) -> Optional[TargetStatus]:
        try:
            target = self.store.update_status(target_id, TargetStatus.CHECKING, self.clock())
        except (InvalidTransition, TargetNotFound) as e:
            logger.info(f"[SCHEDULER] Skipping {target_id}: {e}")
            return None
        self._emit_status(target)

        log = TargetLog(target, self.events)
        log("Starting check...")
        try:
            result = self._probe_with_deadline(target, log)
        except Exception as e:
            log.close()
            logger.error(f"[SCHEDULER] Probe of {target.url} failed: {e}")
            log.write(f"Error: {e}")
            return self._settle(target, TargetStatus.ERROR)

        log.close()
        if target.apply_metadata(result) and self.events:
            self.events.metadata_changed(target)
        log.write(STATUS_MESSAGES.get(result.outcome, f"Finished with status {result.outcome.value}"))
        return self._settle(target, result.outcome)

    def _probe_with_deadline(self, target: Target, log: TargetLog) -> ProbeResult:
        cancel = threading.Event()
        box: Dict[str, Any] = {}

        def work():
            try:
                box["result"] = self.engine.probe(target, log=log, cancel=cancel)
            except BaseException as e:
                box["error"] = e
            finally:
                with self._in_flight_lock:
                    box["done"] = True
                    if target.id in self._abandoned:
                        self._abandoned.discard(target.id)
                        self._in_flight.discard(target.id)
                        logger.info(f"[SCHEDULER] Timed-out probe of {target.id} has exited")

        worker = threading.Thread(target=work, name=f"Probe-{target.id}", daemon=True)
        worker.start()
        worker.join(self.check_timeout)
        with self._in_flight_lock:
            timed_out = not box.get("done")
            if timed_out:
                # The claim stays held until the worker exits
                self._abandoned.add(target.id)
        if timed_out:
            # The engine stops at its next step boundary and releases the session
            cancel.set()
            raise ProbeTimeout(self.check_timeout)
        if "error" in box:
            raise box["error"]
        return box["result"]

    def _settle(self, target: Target, status: TargetStatus) -> TargetStatus:
        target.transition(status, self.clock())
        if not self.store.update(target):
            logger.warning(f"[SCHEDULER] Target {target.id} was deleted during its probe")
            return status
        self._emit_status(target)
        logger.info(f"[SCHEDULER] {target.url} -> {status.value}")
        return status

    def _emit_status(self, target: Target) -> None:
        if self.events:
            self.events.status_changed(target)

    def status(self) -> Dict[str, Any]:
        with self._in_flight_lock:
            in_flight = sorted(self._in_flight)
        return {
            "running": self.is_running,
            "batches_run": self.batches_run,
            "last_batch_at": self.last_batch_at,
            "next_batch_at": self.next_batch_at,
            "in_flight": in_flight,
        }
