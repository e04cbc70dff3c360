"""Resilient PostgreSQL access: bounded pool, health monitoring and retry helpers."""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import BoundedSemaphore, Event, Lock, Thread
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

import psycopg2
import psycopg2.pool
from psycopg2.extensions import connection as PgConnection

from .config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEALTH_PROBE_SQL = "SELECT 1"

_BROKEN_CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


class DatabaseError(Exception):
    """Base class for failures surfaced by the data access layer."""


class ConnectionAcquisitionError(DatabaseError, ConnectionError):
    """Raised when no pooled connection can be borrowed within the timeout."""


class RetriesExhaustedError(DatabaseError):
    """Raised when a retried query or transaction failed on every attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {type(last_error).__name__}: {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


def call_with_retry(
    fn: Callable[[], T],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    operation: str = "query",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` up to ``max_retries`` times, doubling the delay after each failure.

    The last error is wrapped in :class:`RetriesExhaustedError` once every
    attempt has failed.
    """

    attempts = max(1, int(max_retries))
    delay = max(0.0, float(base_delay))
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as exc:
            last_error = exc
            if attempt == attempts:
                break
            logger.warning(
                "%s attempt %d/%d failed, retrying in %.2fs: %s",
                operation,
                attempt,
                attempts,
                delay,
                exc,
                extra={"db_operation": operation, "db_attempt": attempt},
            )
            sleep(delay)
            delay *= 2

    assert last_error is not None
    logger.error(
        "%s failed after %d attempt(s): %s",
        operation,
        attempts,
        last_error,
        extra={"db_operation": operation, "db_attempt": attempts},
    )
    raise RetriesExhaustedError(operation, attempts, last_error) from last_error


def _default_pool_factory(minconn: int, maxconn: int, **kwargs: Any) -> psycopg2.pool.ThreadedConnectionPool:
    return psycopg2.pool.ThreadedConnectionPool(minconn, maxconn, **kwargs)


class Database:
    """Owns the process connection pool and hides transient failures from callers."""

    def __init__(
        self,
        settings: Settings,
        *,
        pool_factory: Optional[Callable[..., Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._pool_factory = pool_factory or _default_pool_factory
        self._sleep = sleep
        self._pool: Optional[Any] = None
        self._pool_lock = Lock()
        self._slots = BoundedSemaphore(settings.pool_max)
        self._closed = False
        self._state_lock = Lock()
        self._healthy = True
        self._last_checked_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._monitor: Optional[_HealthMonitor] = None

    # ------------------------------------------------------------------ health
    @property
    def is_healthy(self) -> bool:
        with self._state_lock:
            return self._healthy

    def _mark_healthy(self) -> None:
        with self._state_lock:
            recovered = not self._healthy
            self._healthy = True
            self._last_error = None
        if recovered:
            logger.info("Database connection recovered")

    def _mark_unhealthy(self, error: BaseException) -> None:
        message = f"{type(error).__name__}: {error}"
        with self._state_lock:
            was_healthy = self._healthy
            self._healthy = False
            self._last_error = message
        if was_healthy:
            logger.error("Database marked unhealthy: %s", message)
            monitor = self._monitor
            if monitor is not None:
                monitor.wake()

    def check_health(self) -> bool:
        """Borrow a connection and run the liveness probe. Never raises database errors."""

        checked_at = datetime.now(timezone.utc)
        try:
            with self.connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(HEALTH_PROBE_SQL)
                    cursor.fetchone()
        except (DatabaseError, psycopg2.Error) as exc:
            with self._state_lock:
                self._last_checked_at = checked_at
            self._mark_unhealthy(exc)
            logger.warning("Database health check failed: %s", exc)
            return False
        with self._state_lock:
            self._last_checked_at = checked_at
        self._mark_healthy()
        return True

    def health_snapshot(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                "healthy": self._healthy,
                "last_checked_at": self._last_checked_at,
                "last_error": self._last_error,
                "pool_max": self.settings.pool_max,
                "pool_min": self.settings.pool_min,
            }

    def start_health_monitor(self) -> None:
        if self._monitor is not None:
            return
        self._monitor = _HealthMonitor(
            self,
            interval=self.settings.health_check_interval,
            recovery_attempts=self.settings.recovery_attempts,
            recovery_delay=self.settings.recovery_delay,
        )
        self._monitor.start()
        logger.info(
            "Database health monitor started",
            extra={"interval_seconds": self.settings.health_check_interval},
        )

    def stop_health_monitor(self) -> None:
        monitor = self._monitor
        if monitor is None:
            return
        monitor.stop()
        monitor.join(timeout=1.0)
        self._monitor = None

    # ------------------------------------------------------------------ pool
    def _ensure_pool(self) -> Any:
        with self._pool_lock:
            if self._closed:
                raise ConnectionAcquisitionError("Database pool has been closed")
            if self._pool is None:
                try:
                    self._pool = self._pool_factory(
                        self.settings.pool_min,
                        self.settings.pool_max,
                        **self.settings.connection_kwargs(),
                    )
                except psycopg2.Error as exc:
                    self._mark_unhealthy(exc)
                    raise ConnectionAcquisitionError(f"Unable to open database pool: {exc}") from exc
                logger.info(
                    "Database pool created",
                    extra={"pool_min": self.settings.pool_min, "pool_max": self.settings.pool_max},
                )
                self._mark_healthy()
            return self._pool

    def acquire_connection(self) -> PgConnection:
        """Borrow a connection, waiting at most ``connect_timeout`` seconds."""

        if not self.is_healthy:
            logger.warning("Database flagged unhealthy; attempting to borrow a connection anyway")

        timeout = self.settings.connect_timeout
        if not self._slots.acquire(timeout=timeout):
            raise ConnectionAcquisitionError(f"No database connection available within {timeout:g}s")

        try:
            pool = self._ensure_pool()
            conn = pool.getconn()
            try:
                conn.autocommit = True
            except psycopg2.Error:
                pool.putconn(conn, close=True)
                raise
        except ConnectionAcquisitionError:
            self._slots.release()
            raise
        except psycopg2.Error as exc:
            self._slots.release()
            self._mark_unhealthy(exc)
            raise ConnectionAcquisitionError(f"Failed to obtain database connection: {exc}") from exc
        return conn

    def release_connection(self, conn: PgConnection, *, broken: bool = False) -> None:
        """Return ``conn`` to the pool, discarding it when it is no longer usable."""

        try:
            discard = broken or bool(getattr(conn, "closed", False))
            with self._pool_lock:
                pool = self._pool
            if pool is None:
                conn.close()
                return
            if discard:
                logger.warning("Removing broken connection from the pool")
            pool.putconn(conn, close=discard)
        except psycopg2.Error:
            logger.exception("Failed to return connection to the pool")
        finally:
            self._slots.release()

    @contextmanager
    def connection(self) -> Iterator[PgConnection]:
        conn = self.acquire_connection()
        broken = False
        try:
            yield conn
        except _BROKEN_CONNECTION_ERRORS as exc:
            broken = True
            self._mark_unhealthy(exc)
            raise
        else:
            self._mark_healthy()
        finally:
            self.release_connection(conn, broken=broken)

    # ------------------------------------------------------------------ retries
    def run_query_with_retry(
        self,
        op: Callable[[PgConnection], T],
        *,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        operation: str = "query",
    ) -> T:
        """Run ``op`` against a borrowed connection, retrying with exponential backoff."""

        def _attempt() -> T:
            with self.connection() as conn:
                return op(conn)

        return call_with_retry(
            _attempt,
            max_retries=self.settings.query_max_retries if max_retries is None else max_retries,
            base_delay=self.settings.query_retry_delay if base_delay is None else base_delay,
            operation=operation,
            sleep=self._sleep,
        )

    def run_transaction_with_retry(
        self,
        op: Callable[[PgConnection], T],
        *,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        operation: str = "transaction",
    ) -> T:
        """Run ``op`` inside BEGIN/COMMIT, restarting the whole unit on failure.

        A failed transaction is rolled back and never resumed, so ``op`` must be
        safe to execute again from the top.
        """

        def _attempt() -> T:
            conn = self.acquire_connection()
            broken = False
            try:
                with conn.cursor() as cursor:
                    cursor.execute("BEGIN")
                try:
                    result = op(conn)
                    with conn.cursor() as cursor:
                        cursor.execute("COMMIT")
                except Exception as exc:
                    if isinstance(exc, _BROKEN_CONNECTION_ERRORS):
                        broken = True
                        self._mark_unhealthy(exc)
                    if not self._rollback(conn):
                        broken = True
                    raise
                self._mark_healthy()
                return result
            except _BROKEN_CONNECTION_ERRORS as exc:
                broken = True
                self._mark_unhealthy(exc)
                raise
            finally:
                self.release_connection(conn, broken=broken)

        return call_with_retry(
            _attempt,
            max_retries=self.settings.query_max_retries if max_retries is None else max_retries,
            base_delay=self.settings.query_retry_delay if base_delay is None else base_delay,
            operation=operation,
            sleep=self._sleep,
        )

    @staticmethod
    def _rollback(conn: PgConnection) -> bool:
        try:
            with conn.cursor() as cursor:
                cursor.execute("ROLLBACK")
        except psycopg2.Error:
            logger.warning("Rollback failed; connection will be discarded", exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------ lifecycle
    def close(self) -> None:
        """Stop monitoring and close every pooled connection. Safe to call twice."""

        self.stop_health_monitor()
        with self._pool_lock:
            if self._closed:
                logger.debug("Database pool already closed")
                return
            self._closed = True
            pool, self._pool = self._pool, None
        if pool is None:
            return
        try:
            pool.closeall()
        except psycopg2.Error:
            logger.exception("Error while closing database pool")
        else:
            logger.info("Database pool closed")


class _HealthMonitor(Thread):
    """Background probe that keeps the database health flag current."""

    def __init__(
        self,
        database: Database,
        *,
        interval: float,
        recovery_attempts: int,
        recovery_delay: float,
    ) -> None:
        super().__init__(daemon=True, name="db-health-monitor")
        self._database = database
        self._interval = max(1.0, interval)
        self._recovery_attempts = max(0, recovery_attempts)
        self._recovery_delay = max(0.1, recovery_delay)
        self._recovery_used = 0
        self._stop_event = Event()
        self._wake_event = Event()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()

    def wake(self) -> None:
        """Switch to the recovery cadence after a failure seen outside the monitor."""

        self._wake_event.set()

    def next_delay(self, healthy: bool) -> float:
        """Seconds to wait before the next probe given the outcome of the last one."""

        if healthy:
            self._recovery_used = 0
            return self._interval
        if self._recovery_used < self._recovery_attempts:
            self._recovery_used += 1
            logger.info(
                "Reconnection attempt %d/%d in %.1fs",
                self._recovery_used,
                self._recovery_attempts,
                self._recovery_delay,
            )
            return self._recovery_delay
        if self._recovery_used == self._recovery_attempts:
            self._recovery_used += 1
            logger.error("Maximum reconnection attempts reached; probing at the regular interval")
        return self._interval

    def run(self) -> None:
        delay = self._interval
        while True:
            woken = self._wake_event.wait(delay)
            self._wake_event.clear()
            if self._stop_event.is_set():
                return
            if woken:
                self._recovery_used = 0
                delay = self.next_delay(False)
                continue
            try:
                healthy = self._database.check_health()
            except Exception:
                logger.exception("Database health probe crashed")
                healthy = False
            # A failed probe wakes the monitor too; the outcome below already covers it.
            self._wake_event.clear()
            delay = self.next_delay(healthy)


__all__ = [
    "ConnectionAcquisitionError",
    "Database",
    "DatabaseError",
    "HEALTH_PROBE_SQL",
    "RetriesExhaustedError",
    "call_with_retry",
]
