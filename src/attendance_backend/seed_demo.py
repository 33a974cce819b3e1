"""
Demo Data Seeder
=================
Registers demo lecturers, courses, students and enrollments through the
directory service. Students can also be loaded from a CSV file with the
columns: student_id, first_name, last_name, email, rfid_tag

    python -m attendance_backend.seed_demo
    python -m attendance_backend.seed_demo --students students.csv --course CS101
"""

import argparse
import logging

import pandas as pd

from .database import DatabaseManager, DirectoryService, Lecturer, Course, Student, get_db_manager

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DEMO_LECTURERS = [
    {"staff_id": "SMAF/0001", "first_name": "Ada", "last_name": "Okafor", "department": "Computer Science"},
    {"staff_id": "SMAF/0002", "first_name": "Brian", "last_name": "Mensah", "department": "Mathematics"},
]

DEMO_COURSES = [
    {"code": "CS101", "name": "Introduction to Computing", "lecturer": "SMAF/0001"},
    {"code": "CS205", "name": "Data Structures", "lecturer": "SMAF/0001", "enrollment_required": True},
    {"code": "MTH110", "name": "Calculus I", "lecturer": "SMAF/0002"},
    {"code": "GST101", "name": "Communication Skills", "lecturer": None},
]

DEMO_STUDENTS = [
    {"student_id": "S001", "first_name": "Amina", "last_name": "Bello", "rfid_tag": "AB12CD"},
    {"student_id": "S002", "first_name": "Chidi", "last_name": "Eze", "rfid_tag": "EF34GH"},
    {"student_id": "S003", "first_name": "Grace", "last_name": "Adeyemi", "rfid_tag": "IJ56KL"},
    {"student_id": "S004", "first_name": "Tunde", "last_name": "Lawal", "rfid_tag": "MN78OP"},
]


def load_students_csv(path: str) -> list:
    frame = pd.read_csv(path, dtype=str).fillna("")
    missing = {"student_id", "first_name", "last_name"} - set(frame.columns)
    if missing:
        raise ValueError(f"{path} is missing columns: {', '.join(sorted(missing))}")
    return [
        {key: (value or None) for key, value in row.items()}
        for row in frame.to_dict(orient="records")
    ]


def seed(db: DatabaseManager, students: list, enroll_codes: list) -> dict:
    """Register whatever is missing. Returns counts of created rows."""
    directory = DirectoryService(db)
    created = {"lecturers": 0, "courses": 0, "students": 0, "enrollments": 0}

    with db.get_session() as session:
        existing_staff = {l.staff_id: l.id for l in session.query(Lecturer).all()}
        existing_courses = {c.code: c.id for c in session.query(Course).all()}
        existing_students = {s.student_id: s.id for s in session.query(Student).all()}

    for lecturer in DEMO_LECTURERS:
        if lecturer["staff_id"] not in existing_staff:
            existing_staff[lecturer["staff_id"]] = directory.add_lecturer(**lecturer)["id"]
            created["lecturers"] += 1

    for course in DEMO_COURSES:
        if course["code"] not in existing_courses:
            existing_courses[course["code"]] = directory.add_course(
                code=course["code"],
                name=course["name"],
                lecturer_id=existing_staff.get(course["lecturer"]),
                enrollment_required=course.get("enrollment_required", False)
            )["id"]
            created["courses"] += 1

    for student in students:
        if student["student_id"] not in existing_students:
            existing_students[student["student_id"]] = directory.add_student(
                student_id=student["student_id"],
                first_name=student["first_name"],
                last_name=student["last_name"],
                email=student.get("email"),
                rfid_tag=student.get("rfid_tag")
            )["id"]
            created["students"] += 1

    for code in enroll_codes:
        course_id = existing_courses.get(code)
        if course_id is None:
            logger.warning(f"Unknown course {code}, skipping enrollments")
            continue
        for student in students:
            if directory.enroll(existing_students[student["student_id"]], course_id):
                created["enrollments"] += 1

    return created


def main():
    parser = argparse.ArgumentParser(description="Seed demo attendance data")
    parser.add_argument("--database-url", type=str, help="SQLAlchemy URL (defaults to DATABASE_URL)")
    parser.add_argument("--students", type=str, help="CSV file of students to register")
    parser.add_argument("--course", action="append", dest="courses",
                        help="Course code to enroll the students in (repeatable)")
    args = parser.parse_args()

    if args.database_url:
        db = DatabaseManager(database_url=args.database_url)
        db.initialize()
    else:
        db = get_db_manager()

    students = load_students_csv(args.students) if args.students else DEMO_STUDENTS
    created = seed(db, students, args.courses or ["CS101", "CS205"])

    logger.info(f"Seeded: {created}")
    db.close()


if __name__ == "__main__":
    main()
