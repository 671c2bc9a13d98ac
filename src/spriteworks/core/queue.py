"""Per-user job queue accounting and the synthesis retry policy.

The queue keeps one row per generation job in the shared sqlite database.
Its purpose is admission control: a user may hold at most ``queue_limit``
pending or active jobs, so one account cannot monopolise the synthesis
backend.  Rows move ``pending -> active -> done | failed`` and are never
deleted, which keeps a small audit trail of failed jobs.  An open row whose
``updated_at`` is older than ``stale_after`` seconds belongs to a process
that died mid-job; it no longer counts against the user and is marked
failed by :meth:`JobQueue.expire_stale` at startup.

:class:`RetryPolicy` is the queue layer's bounded exponential backoff.  It
is applied to synthesis calls only (see
:class:`~spriteworks.core.synthesis.RetryingProvider`); cache and
persistence writes either succeed or fail the job.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

from spriteworks.core.errors import TooManyConcurrentRequests

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
OPEN_STATUSES = (STATUS_PENDING, STATUS_ACTIVE)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attempt ``n`` (1-based) that fails is followed by a delay of
    ``base_delay * 2 ** (n - 1)`` seconds, until ``max_attempts`` attempts
    have been made.
    """

    max_attempts: int = 3
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay after the failed attempt number ``attempt``."""
        return self.base_delay * 2 ** (attempt - 1)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        should_retry: Callable[[BaseException], bool] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """Await ``operation`` until it succeeds or the attempts run out.

        Args:
            operation: Zero-argument coroutine factory.
            retry_on: Exception types that trigger another attempt.
            should_retry: Optional predicate to veto a retry for a caught
                exception (non-transient failures).
            sleep: Injected for tests.

        Raises:
            The last exception once ``max_attempts`` is reached, or the first
            exception that is not retryable.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as exc:
                if attempt >= self.max_attempts or (should_retry and not should_retry(exc)):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Attempt %d/%d failed (%s); retrying in %.1fs.",
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                await sleep(delay)
                attempt += 1


class JobQueue:
    """sqlite-backed queue entries used for per-user admission control.

    Attributes:
        db_path (Path): sqlite database file shared with the record store.
        limit (int): Maximum open (pending + active) entries per user.
        stale_after (float): Seconds after which an open entry that has not
            been updated is treated as abandoned.
    """

    def __init__(self, db_path: Path, limit: int = 3, stale_after: float = 900.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.limit = limit
        self.stale_after = stale_after
        self._initialize_db()

    def _stale_cutoff(self, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        return (now - timedelta(seconds=self.stale_after)).isoformat()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=30)

    def _initialize_db(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS queue_entries (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    payload TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_user_status
                ON queue_entries(user_id, status)
                """)

    def count_open(self, user_id: str, now: datetime | None = None) -> int:
        """Number of the user's live pending and active entries."""
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM queue_entries"
                " WHERE user_id = ? AND status IN (?, ?) AND updated_at >= ?",
                (user_id, *OPEN_STATUSES, self._stale_cutoff(now)),
            ).fetchone()
        return int(row[0])

    def expire_stale(self, now: datetime | None = None) -> int:
        """Mark abandoned open entries failed.

        Returns:
            Number of entries expired.
        """
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                "UPDATE queue_entries SET status = ?, error = ?, updated_at = ?"
                " WHERE status IN (?, ?) AND updated_at < ?",
                (STATUS_FAILED, "abandoned", _now(), *OPEN_STATUSES, self._stale_cutoff(now)),
            )
            expired = cursor.rowcount
        if expired:
            logger.warning("Expired %d abandoned queue entries.", expired)
        return expired

    def enqueue(self, user_id: str, payload: str = "") -> str:
        """Admit a new job for ``user_id``.

        The count and the insert run in one ``IMMEDIATE`` transaction so two
        concurrent requests cannot both take the last free slot.

        Raises:
            TooManyConcurrentRequests: If the user already holds ``limit``
                open entries.
        """
        job_id = uuid.uuid4().hex
        now = _now()
        with closing(self._connect()) as conn:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                (open_count,) = conn.execute(
                    "SELECT COUNT(*) FROM queue_entries"
                    " WHERE user_id = ? AND status IN (?, ?) AND updated_at >= ?",
                    (user_id, *OPEN_STATUSES, self._stale_cutoff()),
                ).fetchone()
                if open_count >= self.limit:
                    conn.execute("ROLLBACK")
                    logger.warning("User %s has %d open jobs; rejecting.", user_id, open_count)
                    raise TooManyConcurrentRequests(
                        f"Queue limit of {self.limit} concurrent generations reached"
                    )
                conn.execute(
                    "INSERT INTO queue_entries (id, user_id, status, payload, created_at, updated_at)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (job_id, user_id, STATUS_PENDING, payload, now, now),
                )
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        return job_id

    def _set_status(self, job_id: str, status: str, error: str | None = None) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "UPDATE queue_entries SET status = ?, error = ?, updated_at = ? WHERE id = ?",
                (status, error, _now(), job_id),
            )

    def mark_active(self, job_id: str) -> None:
        self._set_status(job_id, STATUS_ACTIVE)

    def mark_done(self, job_id: str) -> None:
        self._set_status(job_id, STATUS_DONE)

    def mark_failed(self, job_id: str, error: str) -> None:
        self._set_status(job_id, STATUS_FAILED, error)

    def status(self, job_id: str) -> str | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT status FROM queue_entries WHERE id = ?", (job_id,)
            ).fetchone()
        return row[0] if row else None

    async def run(self, user_id: str, job: Callable[[], Awaitable[T]], payload: str = "") -> T:
        """Admit, run and settle one job.

        Raises:
            TooManyConcurrentRequests: If admission fails.  Any exception
                raised by ``job`` is re-raised after the entry is marked
                failed.
        """
        job_id = await asyncio.to_thread(self.enqueue, user_id, payload)
        await asyncio.to_thread(self.mark_active, job_id)
        try:
            result = await job()
        except BaseException as exc:
            await asyncio.to_thread(self.mark_failed, job_id, str(exc) or exc.__class__.__name__)
            raise
        await asyncio.to_thread(self.mark_done, job_id)
        return result


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
