"""
Session Manager for RFID Class Attendance
==========================================
Single authority for "is there an active session, and which one".

Lifecycle: NONE -> ACTIVE (start_session) -> NONE (stop_session, explicit
or by duration timeout).

Starting a session deactivates every active session and inserts the new one
in a single transaction. Two terminals starting at the same moment can still
both end up active, because each transaction only sees sessions committed
before it began. resolve_active_session() settles that by keeping the latest
session by start_time and closing the rest.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .models import ClassSession, Course, Lecturer, utc_now
from .db_manager import get_db_manager, DatabaseManager
from .errors import SessionError, StoreError, store_errors

# Configure logging
logger = logging.getLogger(__name__)


class SessionManager:
    """
    Opens, resumes and closes attendance sessions.

    Usage:
        manager = SessionManager(db_manager)
        session = manager.start_session(course_id=1, lecturer_id=1)
        active = manager.resolve_active_session()
        manager.stop_session(session.id)
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize session manager.

        Args:
            db_manager: Optional DatabaseManager instance. Uses global if not provided.
            clock: Returns the current naive UTC time. Defaults to the wall clock.
        """
        self.db = db_manager or get_db_manager()
        self.clock = clock or utc_now
        self._cache_config()

    def _cache_config(self):
        """Cache frequently used configuration values."""
        minutes = self.db.get_config_int("session_duration_minutes", 60)
        self.session_duration = timedelta(minutes=minutes)
        logger.debug(f"Config cached: session_duration={minutes}min")

    def refresh_config(self):
        """Refresh cached configuration from database."""
        self._cache_config()

    # ============== Timing ==============

    def expires_at(self, session: ClassSession) -> datetime:
        return session.start_time + self.session_duration

    def is_expired(self, session: ClassSession, now: Optional[datetime] = None) -> bool:
        """A session is expired once its full duration has elapsed since start_time."""
        now = now or self.clock()
        return now >= self.expires_at(session)

    def remaining_seconds(self, session: ClassSession, now: Optional[datetime] = None) -> int:
        """Seconds left before the timeout closes the session, derived from start_time only."""
        now = now or self.clock()
        if not session.is_active:
            return 0
        return max(0, int((self.expires_at(session) - now).total_seconds()))

    # ============== Lifecycle ==============

    def resolve_active_session(self) -> Optional[ClassSession]:
        """
        Return the active session, or None.

        Overdue sessions are closed first. If several sessions are active
        the one with the latest start_time is kept and the others are
        closed and logged as an inconsistency.
        """
        now = self.clock()

        with store_errors("resolve active session"):
            with self.db.get_session() as session:
                active = session.query(ClassSession).filter(
                    ClassSession.is_active == True  # noqa: E712
                ).order_by(
                    ClassSession.start_time.desc(),
                    ClassSession.id.desc()
                ).all()

                if not active:
                    return None

                changed = False
                live = []
                for candidate in active:
                    if self.is_expired(candidate, now):
                        self._close(candidate, now)
                        logger.info(f"[SESSION] Session {candidate.id} timed out")
                        changed = True
                    else:
                        live.append(candidate)

                chosen = live[0] if live else None

                if len(live) > 1:
                    stale_ids = [s.id for s in live[1:]]
                    logger.warning(
                        f"[SESSION] {len(live)} active sessions found; keeping {chosen.id}, "
                        f"closing {stale_ids}"
                    )
                    for stale in live[1:]:
                        self._close(stale, now)
                    changed = True

                if changed:
                    session.commit()
                    if chosen is not None:
                        session.refresh(chosen)

                return chosen

    def start_session(self, course_id: int, lecturer_id: int) -> ClassSession:
        """
        Deactivate any active session and open a new one for the course.

        Args:
            course_id: Course the session takes attendance for
            lecturer_id: Lecturer opening the session

        Returns:
            The new active session

        Raises:
            SessionError: course or lecturer not found
            StoreError: the store rejected or failed either step
        """
        now = self.clock()

        with store_errors("start session"):
            with self.db.get_session() as session:
                course = session.get(Course, course_id)
                if course is None:
                    raise SessionError(f"Course {course_id} not found")
                if session.get(Lecturer, lecturer_id) is None:
                    raise SessionError(f"Lecturer {lecturer_id} not found")

                previous = session.query(ClassSession).filter(
                    ClassSession.is_active == True  # noqa: E712
                ).all()
                for old in previous:
                    self._close(old, now)

                course_code = course.code
                new_session = ClassSession(
                    course_id=course_id,
                    lecturer_id=lecturer_id,
                    start_time=now,
                    is_active=True
                )
                session.add(new_session)
                session.commit()
                session.refresh(new_session)

                logger.info(
                    f"[SESSION] Started session {new_session.id} for {course_code} "
                    f"(closed {len(previous)} previous)"
                )
                return new_session

    def stop_session(self, session_id: int) -> ClassSession:
        """
        Close a session. Stopping an inactive session is a no-op.

        Raises:
            SessionError: session not found
        """
        now = self.clock()

        with store_errors("stop session"):
            with self.db.get_session() as session:
                class_session = session.get(ClassSession, session_id)
                if class_session is None:
                    raise SessionError(f"Session {session_id} not found")

                if not class_session.is_active:
                    logger.debug(f"[SESSION] Session {session_id} already stopped")
                    return class_session

                self._close(class_session, now)
                session.commit()
                session.refresh(class_session)

                logger.info(f"[SESSION] Stopped session {session_id}")
                return class_session

    def expire_overdue(self) -> List[int]:
        """Close every active session whose duration elapsed. Returns closed ids."""
        now = self.clock()

        with store_errors("expire sessions"):
            with self.db.get_session() as session:
                overdue = [
                    s for s in session.query(ClassSession).filter(
                        ClassSession.is_active == True  # noqa: E712
                    ).all()
                    if self.is_expired(s, now)
                ]
                if not overdue:
                    return []

                for class_session in overdue:
                    self._close(class_session, now)
                closed = [s.id for s in overdue]
                session.commit()

        logger.info(f"[SESSION] Timed out sessions: {closed}")
        return closed

    def get_session(self, session_id: int) -> Optional[ClassSession]:
        with store_errors("load session"):
            with self.db.get_session() as session:
                return session.get(ClassSession, session_id)

    def describe(self, class_session: ClassSession) -> dict:
        """Session dict with course, lecturer and timing, for API responses."""
        with store_errors("describe session"):
            with self.db.get_session() as session:
                course = session.get(Course, class_session.course_id)
                lecturer = session.get(Lecturer, class_session.lecturer_id)

                result = class_session.to_dict()
                result["course"] = course.to_dict() if course else None
                result["lecturer"] = lecturer.to_dict() if lecturer else None
                result["duration_seconds"] = int(self.session_duration.total_seconds())
                result["remaining_seconds"] = self.remaining_seconds(class_session)
                return result

    @staticmethod
    def _close(class_session: ClassSession, now: datetime):
        class_session.is_active = False
        class_session.end_time = now


class SessionExpiryWatcher:
    """
    Background timer that closes sessions once their duration elapses.
    Runs independently of the request path; expiry is recomputed from
    start_time on every check.
    """

    def __init__(self, session_manager: SessionManager, interval_seconds: float = 5.0):
        self.session_manager = session_manager
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.info(f"[SESSION] Expiry watcher started (every {self.interval_seconds}s)")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def check_once(self) -> List[int]:
        try:
            return await asyncio.to_thread(self.session_manager.expire_overdue)
        except StoreError as e:
            logger.error(f"[SESSION] Expiry check failed: {e}")
            return []

    async def _run(self):
        while True:
            await self.check_once()
            await asyncio.sleep(self.interval_seconds)
