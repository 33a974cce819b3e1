"""
Directory Service for RFID Class Attendance
============================================
Read and registration operations around the attendance core:
staff lookup by keypad ID, course ownership, rosters, reports and
student history.
"""

import logging
from datetime import date, datetime, time
from typing import List, Optional

import pandas as pd

from .models import (
    AttendanceLog, AttendanceStatus, ClassSession, Course, Enrollment, Lecturer, Student
)
from .db_manager import get_db_manager, DatabaseManager
from .errors import SessionError, store_errors

# Configure logging
logger = logging.getLogger(__name__)

REPORT_COLUMNS = ["Student ID", "Last Name", "First Name", "Sessions Attended", "Total Sessions", "Attendance %"]

# Statuses that count as attended in reports
ATTENDED_STATUSES = (AttendanceStatus.PRESENT.value, AttendanceStatus.LATE.value)


class DirectoryService:
    """
    Students, lecturers, courses and reports.

    Usage:
        directory = DirectoryService(db_manager)
        lecturer = directory.find_lecturer("SMAF/0001")
        courses = directory.list_lecturer_courses(lecturer["id"])
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db = db_manager or get_db_manager()
        self._cache_config()

    def _cache_config(self):
        """Cache frequently used configuration values."""
        self.staff_id_prefix = self.db.get_config("staff_id_prefix", "SMAF/")
        self.staff_id_digits = self.db.get_config_int("staff_id_digits", 4)

    def refresh_config(self):
        """Refresh cached configuration from database."""
        self._cache_config()

    def format_staff_id(self, digits: str) -> str:
        """Keypad digits -> stored staff ID ("0001" -> "SMAF/0001")."""
        return f"{self.staff_id_prefix}{digits}"

    # ============== Registration ==============

    def add_student(
        self,
        student_id: str,
        first_name: str,
        last_name: str,
        email: Optional[str] = None,
        rfid_tag: Optional[str] = None
    ) -> dict:
        with store_errors("add student"):
            with self.db.get_session() as session:
                student = Student(
                    student_id=student_id,
                    first_name=first_name,
                    last_name=last_name,
                    email=email,
                    rfid_tag=rfid_tag
                )
                session.add(student)
                session.commit()
                session.refresh(student)
                logger.info(f"Registered student {student_id} (tag={rfid_tag})")
                return student.to_dict()

    def add_lecturer(
        self,
        staff_id: str,
        first_name: str,
        last_name: str,
        email: Optional[str] = None,
        department: Optional[str] = None
    ) -> dict:
        with store_errors("add lecturer"):
            with self.db.get_session() as session:
                lecturer = Lecturer(
                    staff_id=staff_id,
                    first_name=first_name,
                    last_name=last_name,
                    email=email,
                    department=department
                )
                session.add(lecturer)
                session.commit()
                session.refresh(lecturer)
                logger.info(f"Registered lecturer {staff_id}")
                return lecturer.to_dict()

    def add_course(
        self,
        code: str,
        name: str,
        lecturer_id: Optional[int] = None,
        description: Optional[str] = None,
        enrollment_required: bool = False
    ) -> dict:
        with store_errors("add course"):
            with self.db.get_session() as session:
                course = Course(
                    code=code,
                    name=name,
                    lecturer_id=lecturer_id,
                    description=description,
                    enrollment_required=enrollment_required
                )
                session.add(course)
                session.commit()
                session.refresh(course)
                logger.info(f"Created course {code}")
                return course.to_dict()

    def enroll(self, student_pk: int, course_id: int) -> bool:
        """Enroll a student. Returns False if already enrolled."""
        with store_errors("enroll student"):
            with self.db.get_session() as session:
                existing = session.query(Enrollment).filter_by(
                    student_id=student_pk, course_id=course_id
                ).first()
                if existing:
                    return False
                session.add(Enrollment(student_id=student_pk, course_id=course_id))
                session.commit()
                return True

    # ============== Lookups ==============

    def find_lecturer(self, staff_id: str) -> Optional[dict]:
        with store_errors("find lecturer"):
            with self.db.get_session() as session:
                lecturer = session.query(Lecturer).filter_by(staff_id=staff_id.strip()).first()
                return lecturer.to_dict() if lecturer else None

    def list_lecturer_courses(self, lecturer_id: int) -> List[dict]:
        """Courses owned by a lecturer, ordered by code."""
        with store_errors("list lecturer courses"):
            with self.db.get_session() as session:
                courses = session.query(Course).filter_by(
                    lecturer_id=lecturer_id
                ).order_by(Course.code).all()
                return [c.to_dict() for c in courses]

    def list_students(self) -> List[dict]:
        with store_errors("list students"):
            with self.db.get_session() as session:
                students = session.query(Student).order_by(Student.last_name, Student.first_name).all()
                return [s.to_dict() for s in students]

    def claim_course(self, course_id: int, lecturer_id: int) -> dict:
        """
        Assign an unassigned course to a lecturer.

        Raises:
            SessionError: course or lecturer missing (not_found), or the
                course already belongs to another lecturer
        """
        with store_errors("claim course"):
            with self.db.get_session() as session:
                course = session.get(Course, course_id)
                if course is None:
                    raise SessionError(f"Course {course_id} not found")
                if session.get(Lecturer, lecturer_id) is None:
                    raise SessionError(f"Lecturer {lecturer_id} not found")
                if course.lecturer_id is not None and course.lecturer_id != lecturer_id:
                    raise SessionError(f"Course {course.code} is already assigned", not_found=False)

                course.lecturer_id = lecturer_id
                session.commit()
                session.refresh(course)
                logger.info(f"Course {course.code} claimed by lecturer {lecturer_id}")
                return course.to_dict()

    def get_roster(self, course_id: int) -> List[dict]:
        """Students enrolled in a course, ordered by last name."""
        with store_errors("load roster"):
            with self.db.get_session() as session:
                students = session.query(Student).join(
                    Enrollment, Enrollment.student_id == Student.id
                ).filter(
                    Enrollment.course_id == course_id
                ).order_by(Student.last_name, Student.first_name).all()
                return [s.to_dict() for s in students]

    def get_student_history(self, student_id: str) -> Optional[dict]:
        """A student's own attendance, newest first. None if the student is unknown."""
        with store_errors("load student history"):
            with self.db.get_session() as session:
                student = session.query(Student).filter_by(student_id=student_id).first()
                if student is None:
                    return None

                rows = session.query(AttendanceLog, Course).join(
                    Course, AttendanceLog.course_id == Course.id
                ).filter(
                    AttendanceLog.student_id == student.id
                ).order_by(AttendanceLog.timestamp.desc()).all()

                records = []
                for log, course in rows:
                    record = log.to_dict()
                    record["course_code"] = course.code
                    record["course_name"] = course.name
                    records.append(record)

                return {"student": student.to_dict(), "records": records, "count": len(records)}

    # ============== Reports ==============

    def get_course_report(
        self,
        course_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> dict:
        """
        Attendance per enrolled student over completed sessions.

        Only sessions that have ended count towards the total; present and
        late both count as attended.
        """
        with store_errors("build course report"):
            with self.db.get_session() as session:
                course = session.get(Course, course_id)
                if course is None:
                    raise SessionError(f"Course {course_id} not found")

                students = session.query(Student).join(
                    Enrollment, Enrollment.student_id == Student.id
                ).filter(Enrollment.course_id == course_id).all()

                session_query = session.query(ClassSession.id).filter(
                    ClassSession.course_id == course_id,
                    ClassSession.is_active == False  # noqa: E712
                )
                if start_date:
                    session_query = session_query.filter(
                        ClassSession.start_time >= datetime.combine(start_date, time.min)
                    )
                if end_date:
                    session_query = session_query.filter(
                        ClassSession.start_time <= datetime.combine(end_date, time.max)
                    )
                session_ids = [row.id for row in session_query.all()]
                total_sessions = len(session_ids)

                attended = {}
                if session_ids:
                    logs = session.query(AttendanceLog.student_id).filter(
                        AttendanceLog.course_id == course_id,
                        AttendanceLog.session_id.in_(session_ids),
                        AttendanceLog.status.in_(ATTENDED_STATUSES)
                    ).all()
                    for row in logs:
                        attended[row.student_id] = attended.get(row.student_id, 0) + 1

                rows = []
                for student in sorted(students, key=lambda s: (s.last_name.lower(), s.first_name.lower())):
                    count = attended.get(student.id, 0)
                    rows.append({
                        "student_id": student.student_id,
                        "first_name": student.first_name,
                        "last_name": student.last_name,
                        "attended": count,
                        "total": total_sessions,
                        "percentage": round(count / total_sessions * 100) if total_sessions else 0
                    })

                if not students:
                    message = "No students are enrolled in this course."
                elif not total_sessions:
                    message = "No completed sessions found for this course in the selected timeframe."
                else:
                    message = None

                return {
                    "course": course.to_dict(),
                    "total_sessions": total_sessions,
                    "rows": rows,
                    "message": message
                }

    def report_to_csv(self, report: dict) -> str:
        """Render a course report as CSV text."""
        frame = pd.DataFrame(
            [
                [r["student_id"], r["last_name"], r["first_name"], r["attended"], r["total"], f"{r['percentage']}%"]
                for r in report["rows"]
            ],
            columns=REPORT_COLUMNS
        )
        return frame.to_csv(index=False)
