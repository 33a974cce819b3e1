"""
Database Models for RFID Class Attendance
==========================================
SQLAlchemy ORM models for courses, sessions and scan logging.

Tables:
- students: Registered students (identified by RFID tag)
- lecturers: Staff members who own courses and open sessions
- courses: Taught courses, optionally owned by a lecturer
- enrollments: Student <-> course membership
- sessions: Attendance sessions (at most one active)
- attendance_logs: Immutable record of committed scans
- system_config: Configurable system parameters
"""

from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, ForeignKey,
    UniqueConstraint
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now() -> datetime:
    """Naive UTC timestamp, as stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: datetime):
    return value.isoformat() if value else None


class AttendanceStatus(str, Enum):
    """Status recorded on an attendance log."""
    PRESENT = "present"
    LATE = "late"
    ABSENT = "absent"


class Student(Base):
    """
    Registered students.
    The RFID tag stays empty until staff assign a card.
    """
    __tablename__ = 'students'

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(String(50), unique=True, nullable=False, index=True)
    rfid_tag = Column(String(64), unique=True, nullable=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(200), nullable=True)
    photo_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return f"<Student(id={self.id}, student_id={self.student_id}, tag={self.rfid_tag})>"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "student_id": self.student_id,
            "rfid_tag": self.rfid_tag,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "photo_url": self.photo_url,
        }


class Lecturer(Base):
    """
    Staff members. `staff_id` follows the terminal keypad format (SMAF/0001).
    """
    __tablename__ = 'lecturers'

    id = Column(Integer, primary_key=True, autoincrement=True)
    staff_id = Column(String(50), unique=True, nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(200), nullable=True)
    department = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return f"<Lecturer(id={self.id}, staff_id={self.staff_id})>"

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "staff_id": self.staff_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "department": self.department,
        }


class Course(Base):
    """
    Taught courses. A course without a lecturer is "unassigned" and may be
    claimed by any staff member.
    """
    __tablename__ = 'courses'

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    lecturer_id = Column(Integer, ForeignKey('lecturers.id'), nullable=True, index=True)
    description = Column(Text, nullable=True)
    enrollment_required = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return f"<Course(id={self.id}, code={self.code}, lecturer={self.lecturer_id})>"

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "lecturer_id": self.lecturer_id,
            "description": self.description,
            "enrollment_required": self.enrollment_required,
        }


class Enrollment(Base):
    """Student membership of a course."""
    __tablename__ = 'enrollments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(Integer, ForeignKey('students.id'), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey('courses.id'), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint('student_id', 'course_id', name='uq_enrollment_student_course'),
    )

    def __repr__(self):
        return f"<Enrollment(student={self.student_id}, course={self.course_id})>"


class ClassSession(Base):
    """
    Attendance session for one course.
    Only one row is expected to have is_active set at any time.
    Sessions are closed, never deleted.
    """
    __tablename__ = 'sessions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    course_id = Column(Integer, ForeignKey('courses.id'), nullable=False, index=True)
    lecturer_id = Column(Integer, ForeignKey('lecturers.id'), nullable=False)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    def __repr__(self):
        return f"<ClassSession(id={self.id}, course={self.course_id}, active={self.is_active})>"

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "course_id": self.course_id,
            "lecturer_id": self.lecturer_id,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "is_active": self.is_active,
        }


class AttendanceLog(Base):
    """
    Immutable record of one committed scan.
    The (student_id, session_id) constraint is the exactly-once guarantee.
    """
    __tablename__ = 'attendance_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(Integer, ForeignKey('students.id'), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey('courses.id'), nullable=False, index=True)
    session_id = Column(Integer, ForeignKey('sessions.id'), nullable=True, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=AttendanceStatus.PRESENT.value)

    __table_args__ = (
        UniqueConstraint('student_id', 'session_id', name='uq_attendance_student_session'),
    )

    def __repr__(self):
        return f"<AttendanceLog(id={self.id}, student={self.student_id}, session={self.session_id}, status={self.status})>"

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "student_id": self.student_id,
            "course_id": self.course_id,
            "session_id": self.session_id,
            "timestamp": _iso(self.timestamp),
            "status": self.status,
        }


class SystemConfig(Base):
    """
    System configuration parameters.
    Allows runtime configuration without code changes.
    """
    __tablename__ = 'system_config'

    key = Column(String(100), primary_key=True)
    value = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<SystemConfig(key={self.key}, value={self.value})>"


# Default configuration values
DEFAULT_CONFIG = {
    "session_duration_minutes": ("60", "Maximum length of an attendance session"),
    "late_grace_minutes": ("0", "Minutes after session start before scans count as late (0 disables)"),
    "expiry_check_seconds": ("5", "Interval of the background session expiry check"),
    "staff_id_prefix": ("SMAF/", "Fixed prefix of staff IDs typed on the terminal"),
    "staff_id_digits": ("4", "Number of digits typed after the staff ID prefix"),
}
