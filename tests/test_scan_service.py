import threading
from concurrent.futures import ThreadPoolExecutor

from attendance_backend.database import AttendanceLog, ScanOutcome


def log_count(db, **filters):
    with db.get_session() as session:
        return session.query(AttendanceLog).filter_by(**filters).count()


def test_cs101_scenario(sessions, scans, campus, clock, db):
    clock.set(10, 0, 0)
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])

    clock.set(10, 0, 5)
    first = scans.submit_scan(session.id, rfid_tag="AB12CD")
    assert first.outcome == ScanOutcome.RECORDED
    assert first.success
    assert first.log["status"] == "present"
    assert first.log["timestamp"] == "2024-09-02T10:00:05"
    assert first.student["student_id"] == "S001"

    again = scans.submit_scan(session.id, rfid_tag="AB12CD")
    assert again.outcome == ScanOutcome.DUPLICATE
    assert not again.success

    unknown = scans.submit_scan(session.id, rfid_tag="ZZ99")
    assert unknown.outcome == ScanOutcome.UNKNOWN_TAG

    clock.set(10, 5, 0)
    sessions.stop_session(session.id)

    late = scans.submit_scan(session.id, rfid_tag="AB12CD")
    assert late.outcome == ScanOutcome.SESSION_INACTIVE
    assert late.outcome != ScanOutcome.DUPLICATE
    assert log_count(db, session_id=session.id) == 1


def test_scan_by_student_id(sessions, scans, campus):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])

    result = scans.submit_scan(session.id, student_id="S002")

    assert result.outcome == ScanOutcome.RECORDED
    assert result.student["first_name"] == "Chidi"


def test_scan_without_identity(sessions, scans, campus):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])

    result = scans.submit_scan(session.id)

    assert result.outcome == ScanOutcome.UNKNOWN_TAG
    assert result.message == "No tag presented"


def test_scan_unknown_session(scans, campus):
    assert scans.submit_scan(404, rfid_tag="AB12CD").outcome == ScanOutcome.SESSION_INACTIVE


def test_scan_after_timeout_is_rejected(sessions, scans, campus, clock, db):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    clock.advance(hours=1, seconds=1)

    result = scans.submit_scan(session.id, rfid_tag="AB12CD")

    assert result.outcome == ScanOutcome.SESSION_INACTIVE
    assert log_count(db) == 0


def test_concurrent_scans_record_exactly_once(sessions, scans, campus, db):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    workers = 8
    barrier = threading.Barrier(workers)

    def scan():
        barrier.wait()
        return scans.submit_scan(session.id, rfid_tag="AB12CD")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: scan(), range(workers)))

    outcomes = [r.outcome for r in results]
    assert outcomes.count(ScanOutcome.RECORDED) == 1
    assert outcomes.count(ScanOutcome.DUPLICATE) == workers - 1
    assert log_count(db, session_id=session.id) == 1


def test_unique_constraint_decides_without_precheck(sessions, scans, campus, db):
    scans.precheck_duplicates = False
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])

    assert scans.submit_scan(session.id, rfid_tag="AB12CD").outcome == ScanOutcome.RECORDED
    assert scans.submit_scan(session.id, rfid_tag="AB12CD").outcome == ScanOutcome.DUPLICATE
    assert log_count(db, session_id=session.id) == 1


def test_stale_precheck_still_yields_duplicate(sessions, scans, campus, db, monkeypatch):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    scans.submit_scan(session.id, rfid_tag="AB12CD")

    # A pre-check that read before the first insert committed
    monkeypatch.setattr(scans, "_find_existing_log", lambda *args: None)
    result = scans.submit_scan(session.id, rfid_tag="AB12CD")

    assert result.outcome == ScanOutcome.DUPLICATE
    assert log_count(db, session_id=session.id) == 1


def test_stop_between_validation_and_insert_is_rejected(sessions, scans, campus, db, monkeypatch):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    published = []
    db.change_feed.subscribe("attendance_logs", published.append)

    # The lecturer ends the session while the scan is being validated
    def stopped_meanwhile(*args):
        sessions.stop_session(session.id)
        return None

    monkeypatch.setattr(scans, "_find_existing_log", stopped_meanwhile)
    result = scans.submit_scan(session.id, rfid_tag="AB12CD")

    assert result.outcome == ScanOutcome.SESSION_INACTIVE
    assert result.student["student_id"] == "S001"
    assert log_count(db, session_id=session.id) == 0
    assert published == []


def test_timeout_between_validation_and_insert_is_rejected(sessions, scans, campus, clock, db, monkeypatch):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    clock.advance(minutes=59, seconds=59)

    def expired_meanwhile(*args):
        clock.advance(seconds=2)
        return None

    monkeypatch.setattr(scans, "_find_existing_log", expired_meanwhile)

    assert scans.submit_scan(session.id, rfid_tag="AB12CD").outcome == ScanOutcome.SESSION_INACTIVE
    assert log_count(db, session_id=session.id) == 0


def test_same_student_in_new_session_is_recorded(sessions, scans, campus, clock):
    first = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    scans.submit_scan(first.id, rfid_tag="AB12CD")
    sessions.stop_session(first.id)

    clock.advance(days=2)
    second = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])

    assert scans.submit_scan(second.id, rfid_tag="AB12CD").outcome == ScanOutcome.RECORDED


def test_enrollment_gate(sessions, scans, directory, campus):
    session = sessions.start_session(campus.cs205["id"], campus.lecturer["id"])

    rejected = scans.submit_scan(session.id, rfid_tag="EF34GH")
    assert rejected.outcome == ScanOutcome.NOT_ENROLLED
    assert rejected.student["student_id"] == "S002"

    assert directory.enroll(campus.chidi["id"], campus.cs205["id"])
    assert scans.submit_scan(session.id, rfid_tag="EF34GH").outcome == ScanOutcome.RECORDED


def test_open_course_does_not_require_enrollment(sessions, scans, campus):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    assert scans.submit_scan(session.id, rfid_tag="IJ56KL").outcome == ScanOutcome.RECORDED


def test_late_grace_period(db, sessions, scans, campus, clock):
    db.set_config("late_grace_minutes", "10")
    scans.refresh_config()
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])

    clock.advance(minutes=10)
    on_time = scans.submit_scan(session.id, rfid_tag="AB12CD")
    clock.advance(seconds=1)
    late = scans.submit_scan(session.id, rfid_tag="EF34GH")

    assert on_time.log["status"] == "present"
    assert late.log["status"] == "late"


def test_late_classification_disabled_by_default(sessions, scans, campus, clock):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    clock.advance(minutes=50)

    assert scans.submit_scan(session.id, rfid_tag="AB12CD").log["status"] == "present"


def test_store_failure_on_insert_is_system_error(sessions, scans, campus, db):
    scans.precheck_duplicates = False
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    with db.engine.begin() as conn:
        conn.exec_driver_sql("DROP TABLE attendance_logs")

    result = scans.submit_scan(session.id, rfid_tag="AB12CD")

    assert result.outcome == ScanOutcome.SYSTEM_ERROR
    assert "attendance_logs" in result.detail
    assert result.to_dict()["result"] == "SYSTEM_ERROR"


def test_session_logs_newest_first(sessions, scans, campus, clock):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    for tag in ("AB12CD", "EF34GH", "IJ56KL"):
        clock.advance(seconds=3)
        scans.submit_scan(session.id, rfid_tag=tag)

    logs = scans.get_session_logs(session.id)

    assert [log["student"]["student_id"] for log in logs] == ["S003", "S002", "S001"]
    assert scans.get_log(logs[0]["id"])["student"]["first_name"] == "Grace"
    assert scans.get_log(9999) is None


def test_result_to_dict(sessions, scans, campus):
    session = sessions.start_session(campus.cs101["id"], campus.lecturer["id"])
    payload = scans.submit_scan(session.id, rfid_tag="AB12CD").to_dict()

    assert payload["success"] is True
    assert payload["result"] == "RECORDED"
    assert payload["session_id"] == session.id
    assert payload["log"]["session_id"] == session.id
    assert "detail" not in payload
