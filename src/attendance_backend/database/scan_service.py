"""
Scan Service for RFID Class Attendance
=======================================
Turns a presented identity into exactly one attendance log, or a
classified rejection.

Flow:
1. Re-verify the session is active and not expired
2. Resolve the RFID tag (or student ID) to a student
3. Enrollment gate, for courses that require it
4. Duplicate pre-check (optimisation only)
5. Insert; the (student, session) unique constraint decides duplicates

Expected outcomes are returned as ScanResult values. Only store outages
during validation raise StoreError.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .models import (
    AttendanceLog, AttendanceStatus, ClassSession, Course, Enrollment, Student
)
from .db_manager import get_db_manager, DatabaseManager
from .errors import is_unique_violation, store_errors
from .session_manager import SessionManager

# Configure logging
logger = logging.getLogger(__name__)

ATTENDANCE_CONSTRAINT = "uq_attendance_student_session"
ATTENDANCE_CONSTRAINT_COLUMNS = ("attendance_logs.student_id", "attendance_logs.session_id")


class ScanOutcome(str, Enum):
    """Classification of a submitted scan."""
    RECORDED = "RECORDED"
    DUPLICATE = "DUPLICATE"
    UNKNOWN_TAG = "UNKNOWN_TAG"
    NOT_ENROLLED = "NOT_ENROLLED"
    SESSION_INACTIVE = "SESSION_INACTIVE"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class ScanResult:
    """
    Result of a scan submission.
    Provides a structured response for API endpoints.
    """

    def __init__(
        self,
        outcome: ScanOutcome,
        message: str,
        session_id: Optional[int] = None,
        student: Optional[dict] = None,
        log: Optional[dict] = None,
        detail: Optional[str] = None
    ):
        self.outcome = outcome
        self.message = message
        self.session_id = session_id
        self.student = student
        self.log = log
        self.detail = detail

    @property
    def success(self) -> bool:
        return self.outcome == ScanOutcome.RECORDED

    def __repr__(self):
        return f"<ScanResult(outcome={self.outcome.value}, session={self.session_id})>"

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {
            "success": self.success,
            "result": self.outcome.value,
            "message": self.message,
            "session_id": self.session_id
        }

        if self.student:
            result["student"] = self.student
        if self.log:
            result["log"] = self.log
        if self.detail:
            result["detail"] = self.detail

        return result


class ScanService:
    """
    Validates scans and commits attendance logs.

    Usage:
        service = ScanService(db_manager)
        result = service.submit_scan(session_id=3, rfid_tag="AB12CD")
        if result.outcome == ScanOutcome.RECORDED:
            ...
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        session_manager: Optional[SessionManager] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize scan service.

        Args:
            db_manager: Optional DatabaseManager instance. Uses global if not provided.
            session_manager: Used for expiry checks. Created from db_manager if omitted.
            clock: Returns the current naive UTC time. Defaults to the wall clock.
        """
        self.db = db_manager or get_db_manager()
        self.sessions = session_manager or SessionManager(self.db, clock=clock)
        self.clock = clock or self.sessions.clock
        self.precheck_duplicates = True
        self._cache_config()

    def _cache_config(self):
        """Cache frequently used configuration values."""
        self.late_grace_minutes = self.db.get_config_int("late_grace_minutes", 0)
        logger.debug(f"Config cached: late_grace={self.late_grace_minutes}min")

    def refresh_config(self):
        """Refresh cached configuration from database."""
        self._cache_config()

    def submit_scan(
        self,
        session_id: int,
        rfid_tag: Optional[str] = None,
        student_id: Optional[str] = None
    ) -> ScanResult:
        """
        Record attendance for a presented tag or student ID.

        Args:
            session_id: Session the terminal believes is active
            rfid_tag: Raw RFID card value
            student_id: Human-assigned student ID, when no tag is presented

        Returns:
            ScanResult classifying the outcome

        Raises:
            StoreError: the store failed while validating the scan
        """
        identity = rfid_tag or student_id
        logger.info(f"[SCAN] Processing {identity!r} for session {session_id}")

        with store_errors("validate scan"):
            with self.db.get_session() as session:
                # Step 1: The session may have been stopped since the terminal last looked
                class_session = session.get(ClassSession, session_id)
                if class_session is None or not class_session.is_active \
                        or self.sessions.is_expired(class_session, self.clock()):
                    logger.info(f"[SCAN] Session {session_id} is not active")
                    return self._inactive(session_id)

                # Step 2: Resolve identity
                student = self._resolve_student(session, rfid_tag, student_id)
                if student is None:
                    logger.info(f"[SCAN] Unknown identity {identity!r}")
                    return ScanResult(
                        outcome=ScanOutcome.UNKNOWN_TAG,
                        message=f"Unknown tag {identity}" if identity else "No tag presented",
                        session_id=session_id
                    )

                student_info = student.to_dict()
                course_id = class_session.course_id
                session_start = class_session.start_time

                # Step 3: Enrollment gate
                course = session.get(Course, course_id)
                if course is not None and course.enrollment_required \
                        and not self._is_enrolled(session, student.id, course_id):
                    logger.info(f"[SCAN] {student.student_id} not enrolled in {course.code}")
                    return ScanResult(
                        outcome=ScanOutcome.NOT_ENROLLED,
                        message=f"{student.full_name} is not enrolled in {course.code}",
                        session_id=session_id,
                        student=student_info
                    )

                # Step 4: Pre-check; the insert below is authoritative
                if self.precheck_duplicates and self._find_existing_log(session, student.id, session_id):
                    return self._duplicate(session_id, student_info)

        # Step 5: Commit
        return self._commit_log(
            session_id=session_id,
            course_id=course_id,
            student_info=student_info,
            status=self._classify_status(session_start, self.clock())
        )

    def _resolve_student(self, session, rfid_tag: Optional[str], student_id: Optional[str]) -> Optional[Student]:
        if rfid_tag:
            return session.query(Student).filter_by(rfid_tag=rfid_tag.strip()).first()
        if student_id:
            return session.query(Student).filter_by(student_id=student_id.strip()).first()
        return None

    def _is_enrolled(self, session, student_pk: int, course_id: int) -> bool:
        return session.query(Enrollment).filter_by(
            student_id=student_pk,
            course_id=course_id
        ).first() is not None

    def _find_existing_log(self, session, student_pk: int, session_id: int) -> Optional[AttendanceLog]:
        return session.query(AttendanceLog).filter_by(
            student_id=student_pk,
            session_id=session_id
        ).first()

    def _classify_status(self, session_start: datetime, timestamp: datetime) -> str:
        """
        present, unless a late grace period is configured and has passed.
        A grace period of 0 disables late classification.
        """
        if self.late_grace_minutes > 0 and \
                timestamp > session_start + timedelta(minutes=self.late_grace_minutes):
            return AttendanceStatus.LATE.value
        return AttendanceStatus.PRESENT.value

    def _commit_log(self, session_id: int, course_id: int, student_info: dict, status: str) -> ScanResult:
        """
        Insert the attendance log. The unique constraint decides duplicates.

        The session row is checked again after the insert, inside the same
        transaction, so a stop committed since validation rejects the scan.
        """
        try:
            with self.db.get_session() as session:
                log_entry = AttendanceLog(
                    student_id=student_info["id"],
                    course_id=course_id,
                    session_id=session_id,
                    timestamp=self.clock(),
                    status=status
                )
                session.add(log_entry)
                # Write first so SQLite takes the write lock before the re-check
                session.flush()

                class_session = session.query(ClassSession).filter_by(
                    id=session_id
                ).with_for_update().populate_existing().one_or_none()
                if class_session is None or not class_session.is_active \
                        or self.sessions.is_expired(class_session, self.clock()):
                    session.rollback()
                    logger.info(f"[SCAN] Session {session_id} closed before the log was committed")
                    return self._inactive(session_id, student_info)

                session.commit()
                session.refresh(log_entry)
                log = log_entry.to_dict()

        except IntegrityError as e:
            if is_unique_violation(e, ATTENDANCE_CONSTRAINT, ATTENDANCE_CONSTRAINT_COLUMNS):
                return self._duplicate(session_id, student_info)
            logger.error(f"[SCAN] Insert rejected for session {session_id}: {e}")
            return self._system_error(session_id, student_info, e)

        except SQLAlchemyError as e:
            logger.error(f"[SCAN] Insert failed for session {session_id}: {e}")
            return self._system_error(session_id, student_info, e)

        name = f"{student_info['first_name']} {student_info['last_name']}"
        message = f"Attendance recorded for {name} ({status})"
        logger.info(f"[SCAN] RECORDED: {message}")

        return ScanResult(
            outcome=ScanOutcome.RECORDED,
            message=message,
            session_id=session_id,
            student=student_info,
            log=log
        )

    def _inactive(self, session_id: int, student_info: Optional[dict] = None) -> ScanResult:
        return ScanResult(
            outcome=ScanOutcome.SESSION_INACTIVE,
            message="Session is not active",
            session_id=session_id,
            student=student_info
        )

    def _duplicate(self, session_id: int, student_info: dict) -> ScanResult:
        logger.info(f"[SCAN] DUPLICATE: {student_info['student_id']} already logged for session {session_id}")
        return ScanResult(
            outcome=ScanOutcome.DUPLICATE,
            message=f"{student_info['first_name']} already logged",
            session_id=session_id,
            student=student_info
        )

    def _system_error(self, session_id: int, student_info: dict, error: Exception) -> ScanResult:
        return ScanResult(
            outcome=ScanOutcome.SYSTEM_ERROR,
            message="Could not record attendance",
            session_id=session_id,
            student=student_info,
            detail=str(getattr(error, "orig", None) or error)
        )

    # ============== Query Methods ==============

    def get_session_logs(self, session_id: int) -> list:
        """Logs for a session with student details, newest first."""
        with store_errors("load session logs"):
            with self.db.get_session() as session:
                rows = session.query(AttendanceLog, Student).join(
                    Student, AttendanceLog.student_id == Student.id
                ).filter(
                    AttendanceLog.session_id == session_id
                ).order_by(
                    AttendanceLog.timestamp.desc(),
                    AttendanceLog.id.desc()
                ).all()

                return [self._joined(log, student) for log, student in rows]

    def get_log(self, log_id: int) -> Optional[dict]:
        """One log joined with its student, as pushed to live consoles."""
        with store_errors("load log"):
            with self.db.get_session() as session:
                row = session.query(AttendanceLog, Student).join(
                    Student, AttendanceLog.student_id == Student.id
                ).filter(AttendanceLog.id == log_id).first()

                return self._joined(*row) if row else None

    @staticmethod
    def _joined(log: AttendanceLog, student: Student) -> dict:
        result = log.to_dict()
        result["student"] = student.to_dict()
        return result
