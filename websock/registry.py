"""
Controller-side session registry.

Lookups and removals take the registry lock directly from any request
worker. Insertions go through a single background thread so the
new-session callback never runs concurrently with itself.
"""

from __future__ import annotations

import queue
import threading
from concurrent import futures
from typing import Callable, Dict, List, Optional

from websock.config import CONFIG
from websock.logging_utils import get_logger, mask_session_id
from websock.session import Session, SessionState

logger = get_logger("websock")

NewSessionHandler = Callable[[Session], None]

_STOP = object()


class SessionRegistry:
    def __init__(
        self,
        on_new_session: Optional[NewSessionHandler] = None,
        *,
        log_session_id: Optional[bool] = None,
    ) -> None:
        self._on_new_session = on_new_session
        self._log_session_id = CONFIG["LOG_SESSION_ID"] if log_session_id is None else log_session_id
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._incoming: "queue.Queue[object]" = queue.Queue()
        self._closed = threading.Event()
        self._submit_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def _label(self, session_id: str) -> str:
        return mask_session_id(session_id, self._log_session_id)

    @property
    def accepting(self) -> bool:
        return not self._closed.is_set()

    def start(self) -> "SessionRegistry":
        if self._thread is None:
            self._thread = threading.Thread(target=self._process, name="websock-registry", daemon=True)
            self._thread.start()
        return self

    def register(self, session: Session, timeout: Optional[float] = None) -> bool:
        """Hand ``session`` to the dispatcher thread and wait for the verdict.

        Returns True once the session is registered, connected and accepted by
        the new-session callback; False if the callback failed, the registry is
        closed, or the dispatcher did not answer within ``timeout`` seconds.
        """
        verdict: futures.Future = futures.Future()
        with self._submit_lock:
            if self._closed.is_set():
                return False
            self.start()
            self._incoming.put((session, verdict))
        try:
            return verdict.result(timeout=timeout)
        except futures.TimeoutError:
            # Late verdicts are discarded; make sure the session does not linger.
            verdict.cancel()
            self._release(session)
            logger.warning(
                "Registration timed out",
                extra={"session": self._label(session.session_id)},
            )
            return False

    def _process(self) -> None:
        while True:
            item = self._incoming.get()
            if item is _STOP:
                break
            session, verdict = item
            if not verdict.set_running_or_notify_cancel():
                continue
            if self._closed.is_set():
                session._mark_closed()
                verdict.set_result(False)
                continue
            verdict.set_result(self._insert(session))

    def _insert(self, session: Session) -> bool:
        with self._lock:
            if session.state is SessionState.CLOSED:
                return False
            displaced = self._sessions.get(session.session_id)
            self._sessions[session.session_id] = session
            session._release = self._release
            session._mark_connected()
        if displaced is not None and displaced is not session:
            displaced._mark_closed()
            logger.info(
                "Replaced session after repeated handshake",
                extra={"session": self._label(session.session_id)},
            )

        logger.info(
            "Initial connect from client",
            extra={"session": self._label(session.session_id), "uri": session.request_uri},
        )
        if self._on_new_session is None:
            return True
        try:
            self._on_new_session(session)
        except Exception:
            logger.exception(
                "New-session handler failed; dropping session",
                extra={"session": self._label(session.session_id)},
            )
            self._release(session)
            return False
        return True

    def lookup(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def unregister(self, session_id: str) -> Optional[Session]:
        """Remove and close the session registered under ``session_id``. Idempotent."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None and session._mark_closed():
            logger.info("Closed client", extra={"session": self._label(session_id)})
        return session

    def _release(self, session: Session) -> None:
        # Only remove the mapping if it still points at this very session.
        with self._lock:
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
        if session._mark_closed():
            logger.info("Closed client", extra={"session": self._label(session.session_id)})

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop accepting insertions and stop the dispatcher thread."""
        with self._submit_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._incoming.put(_STOP)
        if self._thread is not None:
            self._thread.join(timeout)

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            if session._mark_closed():
                logger.info("Closed client", extra={"session": self._label(session.session_id)})
