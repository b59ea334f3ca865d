"""
Controller-side state of one agent's channel.

A session buffers bytes in both directions: inbound bytes posted by the
agent wait for the owner's ``read``; outbound bytes queued by ``write``
wait for the agent's next poll. Both buffers share one condition variable
so pollers and waiters block without spinning.
"""

from __future__ import annotations

import enum
import threading
from typing import Callable, Optional


class NotConnectedError(Exception):
    """Operation on a session that is not (or no longer) connected."""
    pass


class SessionState(enum.Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    CLOSED = "closed"


class WaitOutcome(enum.Enum):
    DATA_RECEIVED = "data_received"
    CLOSED = "closed"
    TIMEOUT = "timeout"


class Session:
    def __init__(self, session_id: str, secret: bytes, request_uri: str = "") -> None:
        self.session_id = session_id
        self.request_uri = request_uri
        self._secret = secret
        self._inbound = bytearray()
        self._outbound = bytearray()
        self._state = SessionState.PENDING
        self._cond = threading.Condition(threading.Lock())
        # Installed by the registry on insertion; removes this session from it.
        self._release: Optional[Callable[["Session"], None]] = None

    def __repr__(self) -> str:
        return f"Session(id={self.session_id!r}, state={self._state.value})"

    def __len__(self) -> int:
        with self._cond:
            return len(self._inbound)

    @property
    def secret(self) -> bytes:
        return self._secret

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    def require_connected(self) -> None:
        if self._state is not SessionState.CONNECTED:
            raise NotConnectedError("client not connected")

    # -- owner API -----------------------------------------------------

    def write(self, data: bytes) -> int:
        """Queue ``data`` for the agent's next poll."""
        with self._cond:
            self.require_connected()
            self._outbound += data
            self._cond.notify_all()
        return len(data)

    def read(self) -> bytes:
        """Take everything the agent has sent so far (b"" when nothing is buffered)."""
        with self._cond:
            self.require_connected()
            data = bytes(self._inbound)
            self._inbound.clear()
        return data

    def wait(self, timeout: float) -> WaitOutcome:
        """Block until inbound data arrives, the session closes, or ``timeout`` seconds pass."""
        with self._cond:
            self.require_connected()
            self._cond.wait_for(
                lambda: bool(self._inbound) or self._state is SessionState.CLOSED,
                timeout=timeout,
            )
            if self._state is SessionState.CLOSED:
                return WaitOutcome.CLOSED
            if self._inbound:
                return WaitOutcome.DATA_RECEIVED
            return WaitOutcome.TIMEOUT

    def close(self) -> None:
        """Unregister from the owning registry and discard both buffers. Idempotent."""
        release = self._release
        if release is not None:
            release(self)
        else:
            self._mark_closed()

    # -- dispatcher/registry API ----------------------------------------

    def _mark_connected(self) -> None:
        with self._cond:
            if self._state is SessionState.PENDING:
                self._state = SessionState.CONNECTED

    def _mark_closed(self) -> bool:
        """Returns True if this call performed the transition."""
        with self._cond:
            if self._state is SessionState.CLOSED:
                return False
            self._state = SessionState.CLOSED
            self._inbound.clear()
            self._outbound.clear()
            self._cond.notify_all()
        return True

    def deliver(self, data: bytes) -> bytes:
        """Append agent ``data`` to the inbound buffer and drain the outbound buffer, atomically."""
        with self._cond:
            self.require_connected()
            self._inbound += data
            outbound = bytes(self._outbound)
            self._outbound.clear()
            self._cond.notify_all()
        return outbound

    def take_outbound(self, timeout: float) -> bytes:
        """Wait up to ``timeout`` seconds for queued outbound data and drain it."""
        with self._cond:
            self.require_connected()
            self._cond.wait_for(
                lambda: bool(self._outbound) or self._state is SessionState.CLOSED,
                timeout=timeout,
            )
            self.require_connected()
            outbound = bytes(self._outbound)
            self._outbound.clear()
        return outbound
