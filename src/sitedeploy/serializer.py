"""Run serializer: admission control per serialization key.

At most one run per (workflow, ref) key deploys at a time. Behind the active
run there is a queue of depth one: a newly enqueued run supersedes the run
already waiting (last enqueued wins), and the superseded run is cancelled
before it performs any external action.

Coordination stores:
- MemoryCoordinationStore: threads within one process
- SQLiteCoordinationStore: separate pipeline processes sharing one runner

Admissions carry a lease sized to the run's stage budgets, so a crashed
holder cannot block its key forever. The holder renews the lease at every
stage boundary and stops if renewal finds the key taken over.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, Optional, Protocol, Set

from sitedeploy.core.implementations import SystemTimeProvider
from sitedeploy.core.protocols import Logger, TimeProvider
from sitedeploy.exceptions import QueueingFailure, RunSuperseded

logger = logging.getLogger(__name__)


class SlotState(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    SUPERSEDED = "superseded"


class CoordinationStore(Protocol):
    """Per-key slot bookkeeping: one active run, at most one waiting run."""

    def enqueue(self, key: str, run_id: str, lease_seconds: float, now: float) -> SlotState:
        """Claim the slot, or wait behind the active run superseding any waiter."""
        ...

    def poll(self, key: str, run_id: str, lease_seconds: float, now: float) -> SlotState:
        """Report the waiting run's state, promoting it once the slot frees."""
        ...

    def renew(self, key: str, run_id: str, lease_seconds: float, now: float) -> bool:
        """Extend the active run's lease; False if run_id no longer holds the key."""
        ...

    def release(self, key: str, run_id: str) -> bool:
        ...

    def withdraw(self, key: str, run_id: str) -> bool:
        ...


def _lease_free(active: Optional[str], expires_at: Optional[float], now: float) -> bool:
    return active is None or expires_at is None or expires_at <= now


class MemoryCoordinationStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, tuple] = {}
        self._pending: Dict[str, str] = {}
        self._superseded: Set[str] = set()

    def enqueue(self, key: str, run_id: str, lease_seconds: float, now: float) -> SlotState:
        with self._lock:
            # A re-run reusing this run_id starts without a stale mark
            self._superseded.discard(run_id)
            previous = self._pending.pop(key, None)
            if previous is not None and previous != run_id:
                self._superseded.add(previous)
            active, expires_at = self._active.get(key, (None, None))
            if _lease_free(active, expires_at, now):
                if active is not None:
                    logger.warning(f"Lease of run {active} on {key} expired; taking over")
                self._active[key] = (run_id, now + lease_seconds)
                return SlotState.ACTIVE
            self._pending[key] = run_id
            return SlotState.WAITING

    def poll(self, key: str, run_id: str, lease_seconds: float, now: float) -> SlotState:
        with self._lock:
            if run_id in self._superseded:
                self._superseded.discard(run_id)
                return SlotState.SUPERSEDED
            active, expires_at = self._active.get(key, (None, None))
            if active == run_id:
                return SlotState.ACTIVE
            if self._pending.get(key) != run_id:
                raise QueueingFailure(f"Run {run_id} is not queued for {key}")
            if _lease_free(active, expires_at, now):
                del self._pending[key]
                self._active[key] = (run_id, now + lease_seconds)
                return SlotState.ACTIVE
            return SlotState.WAITING

    def renew(self, key: str, run_id: str, lease_seconds: float, now: float) -> bool:
        with self._lock:
            active, _ = self._active.get(key, (None, None))
            if active != run_id:
                return False
            self._active[key] = (run_id, now + lease_seconds)
            return True

    def release(self, key: str, run_id: str) -> bool:
        with self._lock:
            active, _ = self._active.get(key, (None, None))
            if active != run_id:
                return False
            del self._active[key]
            return True

    def withdraw(self, key: str, run_id: str) -> bool:
        with self._lock:
            if self._pending.get(key) != run_id:
                return False
            del self._pending[key]
            return True


class SQLiteCoordinationStore:
    """Durable store shared by pipeline processes on one runner.

    Every operation runs in a BEGIN IMMEDIATE transaction, so concurrent
    processes observe slot changes one at a time.
    """

    def __init__(self, db_path: Path, busy_timeout_seconds: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_seconds = busy_timeout_seconds
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise QueueingFailure(f"Cannot create coordination directory {self.db_path.parent}: {e}")
        self._init_schema()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_seconds, isolation_level=None)
        except sqlite3.Error as e:
            raise QueueingFailure(f"Cannot open coordination database {self.db_path}: {e}")
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise QueueingFailure(f"Coordination database {self.db_path} unavailable: {e}")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sd_run_slots (
                    serialization_key TEXT PRIMARY KEY,
                    active_run_id TEXT,
                    lease_expires_at REAL,
                    pending_run_id TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sd_superseded_runs (
                    run_id TEXT PRIMARY KEY,
                    serialization_key TEXT NOT NULL
                )
                """
            )

    @staticmethod
    def _slot(conn: sqlite3.Connection, key: str) -> tuple:
        row = conn.execute(
            "SELECT active_run_id, lease_expires_at, pending_run_id FROM sd_run_slots "
            "WHERE serialization_key = ?",
            (key,),
        ).fetchone()
        if row is None:
            conn.execute("INSERT INTO sd_run_slots (serialization_key) VALUES (?)", (key,))
            return None, None, None
        return row

    def enqueue(self, key: str, run_id: str, lease_seconds: float, now: float) -> SlotState:
        with self._transaction() as conn:
            conn.execute("DELETE FROM sd_superseded_runs WHERE run_id = ?", (run_id,))
            active, expires_at, pending = self._slot(conn, key)
            if pending is not None and pending != run_id:
                conn.execute(
                    "INSERT OR REPLACE INTO sd_superseded_runs (run_id, serialization_key) VALUES (?, ?)",
                    (pending, key),
                )
            if _lease_free(active, expires_at, now):
                if active is not None:
                    logger.warning(f"Lease of run {active} on {key} expired; taking over")
                conn.execute(
                    "UPDATE sd_run_slots SET active_run_id = ?, lease_expires_at = ?, pending_run_id = NULL "
                    "WHERE serialization_key = ?",
                    (run_id, now + lease_seconds, key),
                )
                return SlotState.ACTIVE
            conn.execute(
                "UPDATE sd_run_slots SET pending_run_id = ? WHERE serialization_key = ?",
                (run_id, key),
            )
            return SlotState.WAITING

    def poll(self, key: str, run_id: str, lease_seconds: float, now: float) -> SlotState:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM sd_superseded_runs WHERE run_id = ?", (run_id,))
            if cur.rowcount > 0:
                return SlotState.SUPERSEDED
            active, expires_at, pending = self._slot(conn, key)
            if active == run_id:
                return SlotState.ACTIVE
            if pending != run_id:
                raise QueueingFailure(f"Run {run_id} is not queued for {key}")
            if _lease_free(active, expires_at, now):
                conn.execute(
                    "UPDATE sd_run_slots SET active_run_id = ?, lease_expires_at = ?, pending_run_id = NULL "
                    "WHERE serialization_key = ?",
                    (run_id, now + lease_seconds, key),
                )
                return SlotState.ACTIVE
            return SlotState.WAITING

    def renew(self, key: str, run_id: str, lease_seconds: float, now: float) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE sd_run_slots SET lease_expires_at = ? "
                "WHERE serialization_key = ? AND active_run_id = ?",
                (now + lease_seconds, key, run_id),
            )
            return cur.rowcount > 0

    def release(self, key: str, run_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE sd_run_slots SET active_run_id = NULL, lease_expires_at = NULL "
                "WHERE serialization_key = ? AND active_run_id = ?",
                (key, run_id),
            )
            return cur.rowcount > 0

    def withdraw(self, key: str, run_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE sd_run_slots SET pending_run_id = NULL "
                "WHERE serialization_key = ? AND pending_run_id = ?",
                (key, run_id),
            )
            return cur.rowcount > 0


class RunSerializer:
    """Admits runs one at a time per serialization key.

    Args:
        store: Coordination store shared by every run that may contend
        time_provider: Clock for polling, leases and the queue timeout
        logger: Logging abstraction
        poll_interval_seconds: Delay between admission checks while waiting
        lease_seconds: How long an admission stays valid without release
        queue_timeout_seconds: Give up waiting after this long (None: wait forever)
    """

    def __init__(
        self,
        store: CoordinationStore,
        time_provider: Optional[TimeProvider] = None,
        logger: Optional[Logger] = None,
        poll_interval_seconds: float = 2.0,
        lease_seconds: float = 6 * 3600,
        queue_timeout_seconds: Optional[float] = None
    ):
        self.store = store
        self.time = time_provider or SystemTimeProvider()
        self.log = logger
        self.poll_interval_seconds = poll_interval_seconds
        self.lease_seconds = lease_seconds
        self.queue_timeout_seconds = queue_timeout_seconds

    @contextmanager
    def admit(self, run) -> Iterator[None]:
        """Block until run may proceed; release its key on exit.

        Raises:
            RunSuperseded: A newer run for the same key replaced this one
                while it was waiting
            QueueingFailure: The store could not be consulted, or the
                queue timeout elapsed
        """
        key = run.key_string
        self._wait_for_admission(run, key)
        try:
            yield
        finally:
            try:
                self._call(self.store.release, key, run.run_id)
            except QueueingFailure as e:
                # The lease expires on its own; never mask the run's outcome
                logger.error(f"Failed to release {key} for run {run.run_id}: {e}")

    def renew(self, run) -> None:
        """Extend the run's admission lease; call between stages.

        Raises:
            QueueingFailure: The run no longer holds its key (lease expired
                and was taken over), or the store could not be consulted
        """
        key = run.key_string
        held = self._call(self.store.renew, key, run.run_id, self.lease_seconds, self.time.current_time())
        if not held:
            raise QueueingFailure(f"Run {run.run_id} lost its admission for {key}; lease expired")

    def _wait_for_admission(self, run, key: str) -> None:
        started = self.time.current_time()
        state = self._call(self.store.enqueue, key, run.run_id, self.lease_seconds, started)
        if state == SlotState.WAITING and self.log:
            self.log.info(f"Run {run.run_id} waiting: another run holds {key}")

        try:
            while state == SlotState.WAITING:
                now = self.time.current_time()
                if self.queue_timeout_seconds is not None and now - started >= self.queue_timeout_seconds:
                    raise QueueingFailure(
                        f"Run {run.run_id} waited {self.queue_timeout_seconds}s for {key} without admission"
                    )
                self.time.sleep(self.poll_interval_seconds)
                state = self._call(
                    self.store.poll, key, run.run_id, self.lease_seconds, self.time.current_time()
                )
        except BaseException:
            self._withdraw(key, run.run_id)
            raise

        if state == SlotState.SUPERSEDED:
            if self.log:
                self.log.info(f"Run {run.run_id} superseded by a newer run for {key}")
            raise RunSuperseded(run.run_id, key)

        if self.log:
            self.log.info(f"Run {run.run_id} admitted for {key}")

    def _withdraw(self, key: str, run_id: str) -> None:
        try:
            self._call(self.store.withdraw, key, run_id)
        except QueueingFailure as e:
            logger.error(f"Failed to withdraw run {run_id} from {key}: {e}")

    @staticmethod
    def _call(operation, *args):
        try:
            return operation(*args)
        except QueueingFailure:
            raise
        except Exception as e:
            raise QueueingFailure(f"Admission could not be evaluated: {e}")
