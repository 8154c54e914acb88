from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from txflow.config import DEFAULT_SESSION_IDLE_TIMEOUT_SECONDS
from txflow.errors import FlowError, SessionExpired
from txflow.models import Session, SessionFields
from txflow.state_machine import TERMINAL_STEPS, FlowKind, initial_step

logger = logging.getLogger(__name__)

Mutator = Callable[[Session], Union[None, Awaitable[Any]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """
    In-memory, process-lifetime store holding at most one flow session per user.

    Every write for a user runs under that user's own asyncio.Lock, so two rapid
    messages from one user are applied one after the other while other users
    never wait on each other. Readers get snapshot copies, never live objects.
    """

    def __init__(
        self,
        idle_timeout_seconds: float = DEFAULT_SESSION_IDLE_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.idle_timeout = timedelta(seconds=idle_timeout_seconds)
        self._clock = clock or _utcnow
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Operations holding or waiting on each user's lock.
        self._lock_users: Dict[str, int] = {}
        self._last_token = 0

    def __len__(self) -> int:
        return len(self._sessions)

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[user_id] - 1
            if remaining:
                self._lock_users[user_id] = remaining
            else:
                del self._lock_users[user_id]
                if user_id not in self._sessions:
                    self._locks.pop(user_id, None)

    def _is_idle(self, session: Session, now: datetime) -> bool:
        return now - session.last_activity_at > self.idle_timeout

    def _live(self, user_id: str, now: datetime) -> Optional[Session]:
        session = self._sessions.get(user_id)
        if session is not None and self._is_idle(session, now):
            self._sessions.pop(user_id, None)
            logger.info("[SESSION] expired user=%s flow=%s step=%s", user_id, session.flow_kind.value, session.step.value)
            return None
        return session

    async def get(self, user_id: str) -> Optional[Session]:
        if user_id in self._lock_users:
            session = self._sessions.get(user_id)
        else:
            session = self._live(user_id, self._clock())
        return session.snapshot() if session else None

    async def start(self, user_id: str, flow_kind: FlowKind, signer_address: str) -> Session:
        """Open a fresh session, discarding whatever the user had before."""
        async with self._user_lock(user_id):
            now = self._clock()
            self._last_token += 1
            previous = self._sessions.get(user_id)
            session = Session(
                user_id=user_id,
                flow_kind=flow_kind,
                step=initial_step(flow_kind),
                signer_address=signer_address,
                token=self._last_token,
                created_at=now,
                last_activity_at=now,
                fields=SessionFields(),
            )
            self._sessions[user_id] = session
            if previous is not None:
                logger.info(
                    "[SESSION] replaced user=%s old_flow=%s new_flow=%s",
                    user_id,
                    previous.flow_kind.value,
                    flow_kind.value,
                )
            return session.snapshot()

    async def advance(self, user_id: str, mutator: Mutator, expected_token: int | None = None) -> Session:
        """
        Apply `mutator` to a draft of the user's session and commit it.

        The draft is discarded if the mutator raises, so the stored session
        stays at the step it was in; a non-recoverable FlowError removes the
        session before the lock is released. A draft that reaches a terminal
        step is removed instead of stored. Returns a snapshot of the committed draft.
        """
        async with self._user_lock(user_id):
            current = self._live(user_id, self._clock())
            if current is None:
                raise SessionExpired("No active session. Start a new flow.")
            if expected_token is not None and current.token != expected_token:
                raise SessionExpired("This action belongs to a flow that is no longer active.")

            draft = current.snapshot()
            try:
                outcome = mutator(draft)
                if inspect.isawaitable(outcome):
                    await outcome
            except FlowError as e:
                if not e.recoverable:
                    self._sessions.pop(user_id, None)
                    logger.info("[SESSION] closed user=%s after %s", user_id, e.code)
                raise

            draft.last_activity_at = self._clock()
            if draft.step in TERMINAL_STEPS:
                self._sessions.pop(user_id, None)
            else:
                self._sessions[user_id] = draft
            return draft.snapshot()

    async def end(self, user_id: str, expected_token: int | None = None) -> Optional[Session]:
        async with self._user_lock(user_id):
            current = self._sessions.get(user_id)
            if current is None:
                return None
            if expected_token is not None and current.token != expected_token:
                raise SessionExpired("This action belongs to a flow that is no longer active.")
            return self._sessions.pop(user_id)

    def expire(self, now: datetime | None = None) -> list[str]:
        """Drop idle sessions; sessions with an operation in flight are left alone."""
        now = now or self._clock()
        expired: list[str] = []
        for user_id, session in list(self._sessions.items()):
            if user_id in self._lock_users:
                continue
            if self._is_idle(session, now):
                self._sessions.pop(user_id, None)
                expired.append(user_id)
        for user_id in list(self._locks):
            if user_id not in self._sessions and user_id not in self._lock_users:
                self._locks.pop(user_id, None)
        if expired:
            logger.info("[SESSION] expired %d idle session(s)", len(expired))
        return expired

    async def run_sweeper(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.expire()
