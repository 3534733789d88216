"""
Connection management for the work queue backing store.

This module implements QueueConnection, which owns the single SQLite
connection a process uses for queue operations and keeps it alive:

- Explicit connection-state machine with every transition logged
- Automatic reconnection with exponential backoff (unbounded by default)
- Commands that fail on a transient error are retried after reconnecting,
  never abandoned
- Status query for health reporting
"""

from __future__ import annotations

import asyncio
import contextlib
import sqlite3
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from resource_status.errors import QueueError, UnavailableError
from resource_status.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# SQLite busy timeout; a lock held longer than this surfaces as a transient
# OperationalError and the command is retried after reconnecting.
BUSY_TIMEOUT_SECONDS = 30.0


class ConnectionState(Enum):
    """Queue connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class QueueConnection:
    """
    Self-healing connection to the queue database.

    All commands are serialized through one lock and executed in the
    default executor. A ``sqlite3.OperationalError`` (locked database,
    I/O error, file removed) marks the connection dead; the command is then
    retried once the connection is re-established. Other ``sqlite3.Error``
    subclasses are programming errors and are raised as QueueError.

    Attributes:
        db_path: Path to the SQLite database file.
        state: Current connection state.

    Example:
        >>> conn = QueueConnection("/var/lib/resource-status/queue.db")
        >>> async with conn:
        ...     rows = await conn.execute(lambda c: c.execute("SELECT 1").fetchall())
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        on_connect: Callable[[sqlite3.Connection], None] | None = None,
        reconnect_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        reconnect_backoff_multiplier: float = 2.0,
        reconnect_max_attempts: int = 0,
    ) -> None:
        """
        Initialize the connection (does not connect).

        Args:
            db_path: Path to the SQLite database file.
            on_connect: Called with every fresh connection (schema setup).
            reconnect_delay: Initial delay before a reconnection attempt.
            reconnect_max_delay: Maximum delay between reconnection attempts.
            reconnect_backoff_multiplier: Multiplier for exponential backoff.
            reconnect_max_attempts: Maximum reconnection attempts (0 = infinite).
        """
        self.db_path = Path(db_path)
        self._on_connect = on_connect
        self.reconnect_delay = reconnect_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.reconnect_backoff_multiplier = reconnect_backoff_multiplier
        self.reconnect_max_attempts = reconnect_max_attempts

        self._state = ConnectionState.DISCONNECTED
        self._conn: sqlite3.Connection | None = None
        self._connect_lock = asyncio.Lock()
        self._command_lock = asyncio.Lock()
        self._closed = asyncio.Event()

        self.connection_attempts = 0
        self.reconnect_count = 0
        self.connected_at: float | None = None
        self.disconnected_at: float | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, new_state: ConnectionState, **extra: Any) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.info(
            "Queue connection state changed",
            extra={
                "from_state": old_state.value,
                "to_state": new_state.value,
                "db_path": str(self.db_path),
                **extra,
            },
        )

    def status(self) -> dict[str, Any]:
        """Return a snapshot of the connection state for health reporting."""
        return {
            "state": self._state.value,
            "db_path": str(self.db_path),
            "connection_attempts": self.connection_attempts,
            "reconnect_count": self.reconnect_count,
            "connected_at": self.connected_at,
            "disconnected_at": self.disconnected_at,
            "last_error": self.last_error,
        }

    def _open(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            if self._on_connect is not None:
                self._on_connect(conn)
        except BaseException:
            conn.close()
            raise
        return conn

    async def connect(self) -> bool:
        """
        Open the connection.

        Returns:
            True if connected successfully, False otherwise.

        Raises:
            UnavailableError: If the connection has been closed.
        """
        async with self._connect_lock:
            if self._state == ConnectionState.CONNECTED:
                return True
            if self._state == ConnectionState.CLOSED:
                raise UnavailableError(
                    "Queue connection is closed",
                    details={"db_path": str(self.db_path)},
                )

            if self._state != ConnectionState.RECONNECTING:
                self._set_state(ConnectionState.CONNECTING)
            self.connection_attempts += 1

            try:
                self._conn = await asyncio.get_running_loop().run_in_executor(
                    None, self._open
                )
            except (sqlite3.Error, OSError) as e:
                self.last_error = str(e)
                logger.error(
                    "Queue connection failed",
                    extra={
                        "error": str(e),
                        "db_path": str(self.db_path),
                        "attempt": self.connection_attempts,
                    },
                )
                if self._state != ConnectionState.RECONNECTING:
                    self._set_state(ConnectionState.DISCONNECTED)
                return False

            self.connected_at = time.time()
            self.connection_attempts = 0
            self._set_state(ConnectionState.CONNECTED)
            return True

    async def ensure_connected(self) -> None:
        """
        Ensure the connection is active, reconnecting if necessary.

        Raises:
            UnavailableError: If the connection is closed or the configured
                maximum number of reconnection attempts is exhausted.
        """
        if self._state == ConnectionState.CONNECTED:
            return
        if self._state == ConnectionState.CLOSED:
            raise UnavailableError(
                "Queue connection is closed",
                details={"db_path": str(self.db_path)},
            )

        if await self.connect():
            return
        if not await self._reconnect_with_backoff():
            raise UnavailableError(
                f"Queue unavailable after {self.connection_attempts} attempts",
                details={"db_path": str(self.db_path)},
            )

    async def _reconnect_with_backoff(self) -> bool:
        """
        Reconnect with exponential backoff.

        Returns:
            True if reconnected, False if closed or max attempts exceeded.
        """
        self._set_state(ConnectionState.RECONNECTING)
        delay = self.reconnect_delay

        while True:
            if (
                self.reconnect_max_attempts > 0
                and self.connection_attempts >= self.reconnect_max_attempts
            ):
                logger.error(
                    "Queue reconnection failed - max attempts exceeded",
                    extra={"max_attempts": self.reconnect_max_attempts},
                )
                self._set_state(ConnectionState.DISCONNECTED)
                return False

            logger.info(
                "Queue reconnecting",
                extra={
                    "delay_seconds": delay,
                    "attempt": self.connection_attempts + 1,
                },
            )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._closed.wait(), timeout=delay)

            if self._state == ConnectionState.CLOSED:
                return False

            if await self.connect():
                self.reconnect_count += 1
                return True

            delay = min(
                delay * self.reconnect_backoff_multiplier,
                self.reconnect_max_delay,
            )

    async def execute(self, func: Callable[[sqlite3.Connection], T]) -> T:
        """
        Run ``func`` against the live connection in the default executor.

        Transient failures (``sqlite3.OperationalError``) drop the
        connection, wait for reconnection and run ``func`` again; ``func``
        must therefore be atomic (one transaction) so a retry never applies
        a half-done command.

        Raises:
            QueueError: On a non-transient database error.
            UnavailableError: If the connection is closed while retrying.
        """
        loop = asyncio.get_running_loop()
        async with self._command_lock:
            while True:
                await self.ensure_connected()
                conn = self._conn
                try:
                    return await loop.run_in_executor(None, func, conn)
                except sqlite3.OperationalError as e:
                    self.last_error = str(e)
                    logger.warning(
                        "Queue command failed, reconnecting",
                        extra={"error": str(e), "db_path": str(self.db_path)},
                    )
                    await self._mark_connection_dead()
                except sqlite3.Error as e:
                    self.last_error = str(e)
                    raise QueueError(
                        f"Queue command failed: {e}",
                        details={"error_type": type(e).__name__},
                    ) from e

    async def _mark_connection_dead(self) -> None:
        """Drop the current connection so the next command reconnects."""
        self.disconnected_at = time.time()
        conn, self._conn = self._conn, None
        if conn is not None:
            with contextlib.suppress(sqlite3.Error):
                conn.close()
        if self._state != ConnectionState.CLOSED:
            self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        """Close the connection; further commands raise UnavailableError."""
        if self._state == ConnectionState.CLOSED:
            return
        # Set first so a command stuck in the reconnect loop gives up.
        self._set_state(ConnectionState.CLOSED)
        self._closed.set()
        async with self._command_lock:
            await self._mark_connection_dead()

    async def __aenter__(self) -> QueueConnection:
        await self.ensure_connected()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: Exception | None,
        exc_tb: Any,
    ) -> None:
        await self.close()
