from datetime import date

import pytest

from attendance_backend.database import SessionError


def run_session(sessions, scans, course_id, lecturer_id, clock, tags):
    session = sessions.start_session(course_id, lecturer_id)
    for tag in tags:
        clock.advance(seconds=10)
        scans.submit_scan(session.id, rfid_tag=tag)
    clock.advance(minutes=30)
    sessions.stop_session(session.id)
    clock.advance(days=1)
    return session


def test_find_lecturer_by_staff_id(directory, campus):
    assert directory.format_staff_id("0001") == "SMAF/0001"
    assert directory.find_lecturer("SMAF/0001")["first_name"] == "Ada"
    assert directory.find_lecturer("SMAF/9999") is None


def test_lecturer_courses_ordered_by_code(directory, campus):
    directory.add_course("CS100", "Computing Basics", lecturer_id=campus.lecturer["id"])
    courses = directory.list_lecturer_courses(campus.lecturer["id"])
    assert [c["code"] for c in courses] == ["CS100", "CS101", "CS205"]


def test_claim_unassigned_course(directory, campus):
    other = directory.add_lecturer("SMAF/0002", "Brian", "Mensah")
    course = directory.add_course("GST101", "Communication Skills")

    claimed = directory.claim_course(course["id"], other["id"])
    assert claimed["lecturer_id"] == other["id"]

    with pytest.raises(SessionError) as excinfo:
        directory.claim_course(course["id"], campus.lecturer["id"])
    assert not excinfo.value.not_found

    with pytest.raises(SessionError) as excinfo:
        directory.claim_course(999, other["id"])
    assert excinfo.value.not_found


def test_enroll_and_roster(directory, campus):
    assert directory.enroll(campus.chidi["id"], campus.cs205["id"])
    assert directory.enroll(campus.amina["id"], campus.cs205["id"])
    assert not directory.enroll(campus.amina["id"], campus.cs205["id"])

    roster = directory.get_roster(campus.cs205["id"])
    assert [s["student_id"] for s in roster] == ["S001", "S002"]


def test_student_history(directory, sessions, scans, campus, clock):
    run_session(sessions, scans, campus.cs101["id"], campus.lecturer["id"], clock, ["AB12CD"])
    run_session(sessions, scans, campus.cs101["id"], campus.lecturer["id"], clock, ["AB12CD", "EF34GH"])

    history = directory.get_student_history("S001")

    assert history["count"] == 2
    assert history["records"][0]["course_code"] == "CS101"
    assert history["records"][0]["timestamp"] > history["records"][1]["timestamp"]
    assert directory.get_student_history("S404") is None


def test_course_report_counts_completed_sessions(directory, sessions, scans, campus, clock):
    directory.enroll(campus.amina["id"], campus.cs101["id"])
    directory.enroll(campus.chidi["id"], campus.cs101["id"])
    run_session(sessions, scans, campus.cs101["id"], campus.lecturer["id"], clock, ["AB12CD", "EF34GH"])
    run_session(sessions, scans, campus.cs101["id"], campus.lecturer["id"], clock, ["AB12CD"])
    # Still running, so not part of the report
    open_session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    scans.submit_scan(open_session.id, rfid_tag="EF34GH")

    report = directory.get_course_report(campus.cs101["id"])

    assert report["total_sessions"] == 2
    assert report["message"] is None
    assert [(r["student_id"], r["attended"], r["percentage"]) for r in report["rows"]] == [
        ("S001", 2, 100),
        ("S002", 1, 50),
    ]


def test_course_report_date_range(directory, sessions, scans, campus, clock):
    directory.enroll(campus.amina["id"], campus.cs101["id"])
    run_session(sessions, scans, campus.cs101["id"], campus.lecturer["id"], clock, ["AB12CD"])

    report = directory.get_course_report(campus.cs101["id"], start_date=date(2025, 1, 1))

    assert report["total_sessions"] == 0
    assert report["rows"][0]["percentage"] == 0
    assert report["message"].startswith("No completed sessions")


def test_course_report_without_enrollments(directory, campus):
    report = directory.get_course_report(campus.cs101["id"])
    assert report["rows"] == []
    assert report["message"] == "No students are enrolled in this course."


def test_course_report_unknown_course(directory):
    with pytest.raises(SessionError):
        directory.get_course_report(999)


def test_report_csv(directory, sessions, scans, campus, clock):
    directory.enroll(campus.amina["id"], campus.cs101["id"])
    directory.enroll(campus.grace["id"], campus.cs101["id"])
    run_session(sessions, scans, campus.cs101["id"], campus.lecturer["id"], clock, ["AB12CD"])

    lines = directory.report_to_csv(directory.get_course_report(campus.cs101["id"])).splitlines()

    assert lines == [
        "Student ID,Last Name,First Name,Sessions Attended,Total Sessions,Attendance %",
        "S003,Adeyemi,Grace,0,1,0%",
        "S001,Bello,Amina,1,1,100%",
    ]
