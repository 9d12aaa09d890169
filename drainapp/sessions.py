"""
Per-instance session registry for graceful blue-green draining.

Every attached client session is registered here; sessions in a critical
phase are *pinned*, which sets the proxy's slot-affinity cookie so the
traffic split keeps routing them to this instance. ``pinned_count()`` is
what ``GET /active-users`` reports to the deploy controller, so every
mutation is visible to the very next read.

Session lifecycle:

    UNPINNED --pin--> PINNED --drain requested--> AWAITING_USER_CHOICE
        |                                              |
        |                          user upgrades / deadline push
        |                                              v
        +-------------drain requested-----------> MIGRATING --detach--> gone

Migration is an explicit ``migrate`` event carrying a reason and the
cookie changes the client should apply before reconnecting.
"""

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from drainapp import metrics

logger = logging.getLogger(__name__)

SLOT_COOKIE = "X-Server-Slot"
MIGRATION_COOKIE = "MIGRATION_TYPE"


class MigrationReason(str, Enum):
    NONE = "NONE"
    AUTO = "AUTO"
    USER = "USER"
    FORCED = "FORCED"


class SessionState(str, Enum):
    UNPINNED = "UNPINNED"
    PINNED = "PINNED"
    AWAITING_USER_CHOICE = "AWAITING_USER_CHOICE"
    MIGRATING = "MIGRATING"


GREETINGS = {
    MigrationReason.AUTO: "Hello old user! You were automatically upgraded to a new version.",
    MigrationReason.USER: "Welcome to the new version!",
    MigrationReason.FORCED: "Sorry, we had to migrate you forcefully",
}


class SessionChannel:
    """Outbound events for one client. Collects them in memory."""

    def __init__(self):
        self.events: list[dict] = []

    def send(self, event: dict) -> None:
        self.events.append(event)


class QueueChannel(SessionChannel):
    """Hands events to the websocket handler's queue; safe to call from any thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
        super().__init__()
        self.loop = loop
        self.queue = queue

    def send(self, event: dict) -> None:
        self.loop.call_soon_threadsafe(self.queue.put_nowait, event)


@dataclass
class MigrationEvent:
    session_id: str
    reason: MigrationReason
    cookies: dict[str, str | None]

    def to_dict(self) -> dict:
        return {
            "event": "migrate",
            "session_id": self.session_id,
            "reason": self.reason.value,
            "cookies": self.cookies,
        }


@dataclass(eq=False)
class Session:
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    channel: SessionChannel = field(default_factory=SessionChannel)
    pinned: bool = False
    migration_reason: MigrationReason = MigrationReason.NONE
    state: SessionState = SessionState.UNPINNED
    cookies: dict[str, str | None] = field(default_factory=dict)


class UnknownSessionError(KeyError):
    pass


class SessionRegistry:
    def __init__(
        self,
        slot: str,
        slot_cookie: str = SLOT_COOKIE,
        migration_cookie: str = MIGRATION_COOKIE,
    ):
        self.slot = slot
        self.slot_cookie = slot_cookie
        self.migration_cookie = migration_cookie
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._pinned: set[str] = set()
        self._deadline_timer: threading.Timer | None = None
        self.drain_deadline: datetime | None = None

    # ── Bookkeeping ───────────────────────────────────────────────

    def register(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = session
            self._publish_counts()
        logger.debug("Session attached", extra={"session_id": session.id})

    def unregister(self, session: Session) -> None:
        with self._lock:
            self._sessions.pop(session.id, None)
            self._pinned.discard(session.id)
            session.pinned = False
            self._publish_counts()
        logger.debug("Session detached", extra={"session_id": session.id})

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def pinned_count(self) -> int:
        with self._lock:
            return len(self._pinned)

    def _publish_counts(self) -> None:
        metrics.set_session_counts(len(self._sessions), len(self._pinned))

    # ── Pinning & migration ───────────────────────────────────────

    def pin(self, session: Session) -> bool:
        """Pin ``session`` to this slot; returns False once it has been told to migrate."""
        with self._lock:
            if session.id not in self._sessions:
                raise UnknownSessionError(session.id)
            if session.state is SessionState.MIGRATING:
                return False
            if session.id in self._pinned:
                return True
            self._pinned.add(session.id)
            session.pinned = True
            session.state = SessionState.PINNED
            # "If you leave now, you were pushed" unless the user upgrades.
            session.migration_reason = MigrationReason.FORCED
            cookies = {
                self.slot_cookie: self.slot,
                self.migration_cookie: MigrationReason.FORCED.value,
            }
            session.cookies.update(cookies)
            self._publish_counts()
        session.channel.send({"event": "pinned", "slot": self.slot, "cookies": cookies})
        logger.info("Session pinned", extra={"session_id": session.id, "session_state": session.state.value})
        return True

    def self_migrate(self, session: Session) -> MigrationEvent:
        with self._lock:
            # Leave the pinned set now, not on detach: the drain poll must see it.
            event = self._begin_migration(session, MigrationReason.USER)
            self._publish_counts()
        self._deliver(session, event)
        return event

    def _begin_migration(self, session: Session, reason: MigrationReason) -> MigrationEvent:
        # Caller holds self._lock.
        self._pinned.discard(session.id)
        session.pinned = False
        cookies = {self.slot_cookie: None, self.migration_cookie: reason.value}
        session.state = SessionState.MIGRATING
        session.migration_reason = reason
        session.cookies.update(cookies)
        return MigrationEvent(session.id, reason, cookies)

    def _deliver(self, session: Session, event: MigrationEvent) -> None:
        session.channel.send(event.to_dict())
        metrics.record_migration(event.reason.value)
        logger.info(
            "Session migrating",
            extra={"session_id": session.id, "reason": event.reason.value, "session_state": session.state.value},
        )

    def on_drain_requested(self, deadline: datetime | None = None) -> dict:
        """Offer pinned sessions a choice until ``deadline``; move everyone else now."""
        if deadline is not None and deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)

        notified: list[Session] = []
        migrated: list[tuple[Session, MigrationEvent]] = []
        with self._lock:
            self.drain_deadline = deadline
            for session in self._sessions.values():
                if session.state is SessionState.MIGRATING:
                    continue
                if session.id in self._pinned:
                    session.state = SessionState.AWAITING_USER_CHOICE
                    notified.append(session)
                else:
                    migrated.append((session, self._begin_migration(session, MigrationReason.AUTO)))
            self._publish_counts()
        metrics.record_drain_request()

        notice = {
            "event": "new-version",
            "deadline": deadline.astimezone(timezone.utc).isoformat() if deadline else None,
        }
        for session in notified:
            session.channel.send(dict(notice))
        for session, event in migrated:
            self._deliver(session, event)

        if deadline is not None:
            self._schedule_deadline(deadline)

        logger.info(
            f"New version announced: {len(notified)} pinned session(s) notified, "
            f"{len(migrated)} migrated",
            extra={"pinned": len(notified), "count": len(migrated)},
        )
        return {"notified": len(notified), "migrated": len(migrated)}

    def _schedule_deadline(self, deadline: datetime) -> None:
        delay = max(0.0, (deadline - datetime.now(timezone.utc)).total_seconds())
        if self._deadline_timer is not None:
            self._deadline_timer.cancel()
        self._deadline_timer = threading.Timer(delay, self.expire_drain)
        self._deadline_timer.daemon = True
        self._deadline_timer.start()

    def expire_drain(self) -> int:
        """Push every session still pinned at the deadline to the new slot."""
        with self._lock:
            remaining = [self._sessions[sid] for sid in self._pinned if sid in self._sessions]
            pushed = [(s, self._begin_migration(s, MigrationReason.AUTO)) for s in remaining]
            self._publish_counts()
        for session, event in pushed:
            self._deliver(session, event)
        if pushed:
            logger.warning(f"Drain deadline reached, pushed {len(pushed)} session(s)")
        return len(pushed)

    # ── Arrival ───────────────────────────────────────────────────

    def greet(self, session: Session, migration_cookie: str | None) -> MigrationReason | None:
        """Tell a session that just arrived from the old slot how it got here."""
        if not migration_cookie:
            return None
        try:
            reason = MigrationReason(migration_cookie)
        except ValueError:
            reason = None
        message = GREETINGS.get(reason) or (
            f"Hello user, you were just brought to a new version, type {migration_cookie}"
        )
        session.channel.send(
            {
                "event": "welcome",
                "migration": migration_cookie,
                "message": message,
                "cookies": {self.migration_cookie: None},
            }
        )
        return reason

    def close(self) -> None:
        if self._deadline_timer is not None:
            self._deadline_timer.cancel()
            self._deadline_timer = None
        with self._lock:
            self._sessions.clear()
            self._pinned.clear()
            self._publish_counts()
