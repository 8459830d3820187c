# Overview: Periodic per-session change detection; background polling via APScheduler.

"""
Sync/Notification Layer

Each logical client session gets an interval job that re-fetches the slice of
orders its role watches and compares it with the previous snapshot.

POLL CONTRACT:
- Overlapping polls for one session never run concurrently; a poll that
  finds another in flight is skipped.
- Unchanged snapshot (deep equality): nothing is stored, nothing is emitted.
- Changed snapshot with a higher monitored count: exactly one "increase"
  event carrying the delta, never one event per new order.
- The first successful poll only establishes the baseline.
- Fetch failures count as "no change this cycle". Only the first poll after
  a user action reports a failure, as a single "error" event.
- Ending a session removes its job; no job outlives its session.
- A session nobody has drained or acted on for SYNC_SESSION_IDLE_SECONDS
  expires: its next scheduled run ends it instead of polling.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from tierflow.time_utils import to_utc_z, utcnow
from .errors import NotFound
from .hierarchy_service import ROLE_ADMIN, ROLE_DISTRIBUTOR, Principal


logger = logging.getLogger(__name__)


EVENT_INCREASE = "increase"
EVENT_ERROR = "error"

POLL_BASELINE = "baseline"
POLL_CHANGED = "changed"
POLL_UNCHANGED = "unchanged"
POLL_SKIPPED = "skipped"
POLL_FAILED = "failed"


@dataclass
class SyncEvent:
    session_id: str
    kind: str
    delta: int = 0
    message: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "kind": self.kind,
            "delta": self.delta,
            "message": self.message,
            "created_at": to_utc_z(self.created_at),
        }


def build_snapshot(principal: Principal) -> dict:
    """
    Current view a principal's session watches.

    admin: open admin notifications; distributor: in-transit orders;
    customer: own orders. Each includes today's rollup total.
    """
    from . import order_service, rollup_service

    if principal.role == ROLE_ADMIN:
        orders = order_service.list_admin_notifications(principal)
    elif principal.role == ROLE_DISTRIBUTOR:
        orders = order_service.list_orders(principal, marked_for_today=True, received=False)
    else:
        orders = order_service.list_orders(principal, include_cancelled=True)

    return {
        "role": principal.role,
        "count": len(orders),
        "orders": [o.to_dict(include_lines=False) for o in orders],
        "today": rollup_service.today_totals(principal),
    }


class SyncSession:
    """One logical client session and its last-seen snapshot."""

    def __init__(
        self,
        principal: Principal,
        fetcher: Callable[[Principal], dict],
        notify: Callable[[SyncEvent], None] | None = None,
        interval: float = 5.0,
        *,
        session_id: str | None = None,
        queue_size: int = 100,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.principal = principal
        self.fetcher = fetcher
        self.notify = notify
        self.interval = interval
        self.created_at = utcnow()
        self.last_polled_at: datetime | None = None
        self.last_seen_at = self.created_at

        self._snapshot: dict | None = None
        self._pending_action = False
        self._poll_lock = threading.Lock()
        self._events: deque[SyncEvent] = deque(maxlen=queue_size)
        self._events_lock = threading.Lock()

    @property
    def has_baseline(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> dict | None:
        return self._snapshot

    def touch(self) -> None:
        """Record that the client is still there."""
        self.last_seen_at = utcnow()

    def is_idle(self, idle_seconds: float, now: datetime | None = None) -> bool:
        if not idle_seconds or idle_seconds <= 0:
            return False
        now = now or utcnow()
        return now - self.last_seen_at > timedelta(seconds=idle_seconds)

    def note_user_action(self) -> None:
        """The next poll reports a fetch failure instead of swallowing it."""
        self._pending_action = True
        self.touch()

    def _emit(self, event: SyncEvent) -> None:
        with self._events_lock:
            self._events.append(event)
        if self.notify is not None:
            self.notify(event)

    def drain_events(self) -> list[SyncEvent]:
        self.touch()
        with self._events_lock:
            events = list(self._events)
            self._events.clear()
        return events

    def poll(self) -> str:
        if not self._poll_lock.acquire(blocking=False):
            logger.debug("Sync session %s: poll already in flight, skipping", self.session_id)
            return POLL_SKIPPED
        try:
            after_action = self._pending_action
            self._pending_action = False
            self.last_polled_at = utcnow()

            try:
                current = self.fetcher(self.principal)
            except Exception as exc:
                logger.warning("Sync session %s: fetch failed: %s", self.session_id, exc, exc_info=True)
                if after_action:
                    self._emit(SyncEvent(session_id=self.session_id, kind=EVENT_ERROR, message=str(exc)))
                return POLL_FAILED

            previous = self._snapshot
            if previous is not None and current == previous:
                return POLL_UNCHANGED

            self._snapshot = current
            if previous is None:
                return POLL_BASELINE

            delta = current.get("count", 0) - previous.get("count", 0)
            if delta > 0:
                self._emit(SyncEvent(session_id=self.session_id, kind=EVENT_INCREASE, delta=delta))
            return POLL_CHANGED
        finally:
            self._poll_lock.release()

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "node_id": self.principal.node_id,
            "role": self.principal.role,
            "interval_seconds": self.interval,
            "created_at": to_utc_z(self.created_at),
            "last_polled_at": to_utc_z(self.last_polled_at),
            "has_baseline": self.has_baseline,
            "last_seen_at": to_utc_z(self.last_seen_at),
        }


class SyncManager:
    """
    Owns the sessions of one application and the scheduler that polls them.

    The scheduler starts lazily with the first session; with
    SYNC_SCHEDULER_ENABLED off, sessions exist but are only polled on demand.
    """

    def __init__(self, app=None):
        self.app = None
        self.scheduler: BackgroundScheduler | None = None
        self.interval = 5.0
        self.queue_size = 100
        self.idle_seconds = 300.0
        self._sessions: dict[str, SyncSession] = {}
        self._lock = threading.Lock()
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self.app = app
        self.interval = float(app.config.get("SYNC_POLL_INTERVAL_SECONDS", 5.0))
        self.queue_size = int(app.config.get("SYNC_EVENT_QUEUE_SIZE", 100))
        self.idle_seconds = float(app.config.get("SYNC_SESSION_IDLE_SECONDS", 300.0))
        if app.config.get("SYNC_SCHEDULER_ENABLED", True):
            self.scheduler = BackgroundScheduler(
                jobstores={"default": MemoryJobStore()},
                executors={"default": ThreadPoolExecutor(10)},
                job_defaults={
                    "coalesce": True,  # Combine missed runs into one
                    "max_instances": 1,  # Never overlap polls of one session
                    "misfire_grace_time": 30,
                },
                timezone="UTC",
            )
        app.extensions["sync_manager"] = self

    def _fetch(self, principal: Principal) -> dict:
        # Scheduler threads have no app context of their own
        with self.app.app_context():
            return build_snapshot(principal)

    def _job_id(self, session_id: str) -> str:
        return f"sync:{session_id}"

    def start_session(self, principal: Principal, *, interval: float | None = None) -> SyncSession:
        self.expire_idle_sessions()
        session = SyncSession(
            principal,
            self._fetch,
            interval=interval or self.interval,
            queue_size=self.queue_size,
        )
        with self._lock:
            self._sessions[session.session_id] = session
            if self.scheduler is not None:
                if not self.scheduler.running:
                    self.scheduler.start()
                    logger.info("Sync scheduler started")
                self.scheduler.add_job(
                    self.run_scheduled_poll,
                    "interval",
                    args=[session.session_id],
                    seconds=session.interval,
                    id=self._job_id(session.session_id),
                    name=f"Sync poll for node {principal.node_id}",
                    next_run_time=datetime.now(timezone.utc),
                    replace_existing=True,
                )
        logger.info(
            "Sync session %s started for node %s (%s), every %.1fs",
            session.session_id, principal.node_id, principal.role, session.interval,
        )
        return session

    def get_session(self, session_id: str, principal: Principal | None = None) -> SyncSession:
        session = self._sessions.get(session_id)
        # Another principal's session is reported as missing
        if session is None or (principal is not None and session.principal.node_id != principal.node_id):
            raise NotFound(f"Sync session {session_id} not found")
        return session

    def end_session(self, session_id: str, principal: Principal | None = None) -> None:
        with self._lock:
            self.get_session(session_id, principal)
            self._sessions.pop(session_id, None)
            if self.scheduler is not None:
                try:
                    self.scheduler.remove_job(self._job_id(session_id))
                except JobLookupError:
                    pass
        logger.info("Sync session %s ended", session_id)

    def note_user_action(self, session_id: str, principal: Principal | None = None) -> SyncSession:
        session = self.get_session(session_id, principal)
        session.note_user_action()
        return session

    def drain_events(self, session_id: str, principal: Principal | None = None) -> list[SyncEvent]:
        return self.get_session(session_id, principal).drain_events()

    def poll_now(self, session_id: str) -> str:
        return self.get_session(session_id).poll()

    def run_scheduled_poll(self, session_id: str) -> str | None:
        """Interval job body: end an idle session, otherwise poll it."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_idle(self.idle_seconds):
            self._expire(session_id)
            return None
        return session.poll()

    def expire_idle_sessions(self, now: datetime | None = None) -> list[str]:
        """End every session idle for longer than idle_seconds."""
        now = now or utcnow()
        with self._lock:
            idle = [sid for sid, s in self._sessions.items() if s.is_idle(self.idle_seconds, now)]
        for session_id in idle:
            self._expire(session_id)
        return idle

    def _expire(self, session_id: str) -> None:
        logger.info("Sync session %s idle for more than %.0fs, expiring", session_id, self.idle_seconds)
        try:
            self.end_session(session_id)
        except NotFound:
            # Ended concurrently
            pass

    def active_session_ids(self) -> list[str]:
        return sorted(self._sessions)

    def has_job(self, session_id: str) -> bool:
        return self.scheduler is not None and self.scheduler.get_job(self._job_id(session_id)) is not None

    def shutdown(self) -> None:
        with self._lock:
            if self.scheduler is not None:
                for session_id in list(self._sessions):
                    try:
                        self.scheduler.remove_job(self._job_id(session_id))
                    except JobLookupError:
                        pass
            self._sessions.clear()
            if self.scheduler is not None and self.scheduler.running:
                self.scheduler.shutdown(wait=False)
                logger.info("Sync scheduler stopped")
