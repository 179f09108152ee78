"""Surplus-over-baseline tracking sessions.

A session records how much energy the machine used above its idle draw
between a start and a stop. The tracker is a small state machine:
Idle -> Active -> Ended, and only one session can be active at a time.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Callable

from ..models import Session, TariffConfig
from ..tariffs import cost

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ENDED = "ended"


class SessionError(Exception):
    """Base class for rejected session commands."""


class SessionAlreadyActive(SessionError):
    """A session is already running; it must be ended first."""


class NoActiveSession(SessionError):
    """There is no running session to act on."""


def compute_surplus_wh(cumulative_wh: float, baseline_watts: float, elapsed_hours: float) -> float:
    """Energy above the baseline draw, clamped at zero."""
    return max(0.0, cumulative_wh - baseline_watts * max(elapsed_hours, 0.0))


class SessionTracker:
    """Owns the active Session. Written only by the scheduler threads.

    ``on_change`` is called with a copy of the active session (or None) while
    the tracker lock is held, so a reader fed by it never sees a session that
    has already ended. Database writes happen after the lock is released.
    """

    def __init__(self, persistence=None, on_change: Callable[[Session | None], None] | None = None) -> None:
        self.persistence = persistence
        self.on_change = on_change
        self._lock = threading.Lock()
        # Serialises database writes so an update never lands after a close
        self._io_lock = threading.Lock()
        self._session: Session | None = None
        self._energy_at_start = 0.0
        self.state = SessionState.IDLE

    def _publish_locked(self) -> None:
        if self.on_change is not None:
            self.on_change(replace(self._session) if self._session else None)

    def _persist(self, action: str, session: Session) -> int | None:
        if self.persistence is None or (action != "create" and session.id is None):
            return None
        try:
            if action == "create":
                return self.persistence.create_session(session)
            elif action == "update":
                self.persistence.update_session(session)
            else:
                self.persistence.close_session(session)
        except Exception as e:
            logger.warning("Could not %s session in database: %s", action, e)
        return None

    def _persist_update(self, session: Session) -> None:
        """Store running figures, unless the session ended in the meantime."""
        with self._io_lock:
            with self._lock:
                current = self._session
                if current is None or current.id != session.id:
                    return
            self._persist("update", session)

    @property
    def active(self) -> Session | None:
        """Copy of the active session, or None."""
        with self._lock:
            return replace(self._session) if self._session else None

    def start(
        self,
        baseline_watts: float,
        cumulative_energy_wh: float,
        now: datetime,
        label: str | None = None,
        category: str | None = None,
    ) -> Session:
        if baseline_watts < 0:
            raise ValueError("Baseline watts must be >= 0")
        with self._lock:
            if self._session is not None:
                raise SessionAlreadyActive(
                    f"Session {self._session.id or ''} started at "
                    f"{self._session.start_time:%H:%M} is still active"
                )
            session = Session(
                id=None,
                start_time=now,
                baseline_watts=baseline_watts,
                label=label,
                category=category,
            )
            self._session = session
            self._energy_at_start = cumulative_energy_wh
            self.state = SessionState.ACTIVE
            self._publish_locked()
            stored = replace(session)
        logger.info("Session started (baseline %.1f W)", baseline_watts)

        with self._io_lock:
            session_id = self._persist("create", stored)
        if session_id is not None:
            with self._lock:
                if self._session is session:
                    session.id = session_id
                    self._publish_locked()
            stored.id = session_id
        return stored

    def _refresh_locked(self, cumulative_energy_wh: float, now: datetime, tariff: TariffConfig) -> None:
        session = self._session
        elapsed_hours = max(0.0, (now - session.start_time).total_seconds() / 3600)
        session.cumulative_wh = max(0.0, cumulative_energy_wh - self._energy_at_start)
        session.surplus_wh = compute_surplus_wh(
            session.cumulative_wh, session.baseline_watts, elapsed_hours
        )
        session.surplus_cost = cost(session.surplus_wh, session.start_time, now, tariff)

    def refresh(self, cumulative_energy_wh: float, now: datetime, tariff: TariffConfig) -> Session | None:
        """Recompute surplus figures of the active session. No-op when idle."""
        with self._lock:
            if self._session is None:
                self._publish_locked()
                return None
            self._refresh_locked(cumulative_energy_wh, now, tariff)
            self._publish_locked()
            session = replace(self._session)
        self._persist_update(session)
        return session

    def end(self, cumulative_energy_wh: float, now: datetime, tariff: TariffConfig) -> Session:
        """Final refresh, freeze and return the session."""
        with self._lock:
            if self._session is None:
                raise NoActiveSession("No session is active")
            self._refresh_locked(cumulative_energy_wh, now, tariff)
            session = self._session
            session.end_time = now
            self._session = None
            self.state = SessionState.ENDED
            self._publish_locked()
        logger.info(
            "Session ended: %.1f Wh total, %.1f Wh surplus",
            session.cumulative_wh,
            session.surplus_wh,
        )
        with self._io_lock:
            self._persist("close", session)
        return replace(session)

    def _edit(self, **changes) -> Session:
        with self._lock:
            if self._session is None:
                raise NoActiveSession("No session is active")
            for name, value in changes.items():
                setattr(self._session, name, value)
            self._publish_locked()
            session = replace(self._session)
        self._persist_update(session)
        return session

    def set_label(self, label: str | None) -> Session:
        return self._edit(label=label)

    def set_category(self, category: str | None) -> Session:
        return self._edit(category=category)

    def history(self, limit: int = 20) -> list[Session]:
        """Stored sessions, most recent first (empty without persistence)."""
        if self.persistence is None:
            return []
        return self.persistence.list_sessions(limit=limit)
