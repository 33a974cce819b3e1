import asyncio

import pytest

from attendance_backend.database import ScanService, SessionError, SessionManager, StoreError
from terminal_gateway.terminal import READY, WELCOME, TerminalSimulator, TerminalState


class FakeBackend:
    """Scripted stand-in for AttendanceClient."""

    def __init__(self):
        self.online = True
        self.active = None
        self.lecturers = {"SMAF/0001": {"id": 1, "staff_id": "SMAF/0001", "first_name": "Ada"}}
        self.courses = {1: [{"id": 10, "code": "CS101"}, {"id": 11, "code": "CS205"}]}
        self.scan_results = []
        self.start_failures = 0
        self.calls = []
        self._next_session = 100

    def _offline(self):
        return {"success": False, "message": "Connection failed", "error": "refused"}

    async def get_active_session(self):
        self.calls.append(("active",))
        if not self.online:
            return self._offline()
        return {"active": self.active is not None, "session": self.active}

    async def list_students(self):
        return {"success": True, "students": [{"student_id": "S001", "rfid_tag": "AB12CD"}], "count": 1}

    async def find_staff(self, staff_id):
        self.calls.append(("staff", staff_id))
        if staff_id not in self.lecturers:
            return {"success": False, "status_code": 404, "message": "Backend error: 404"}
        return {"success": True, "lecturer": self.lecturers[staff_id]}

    async def list_lecturer_courses(self, lecturer_id):
        courses = self.courses.get(lecturer_id, [])
        return {"success": True, "courses": courses, "count": len(courses)}

    async def start_session(self, course_id, lecturer_id):
        self.calls.append(("start", course_id))
        if self.start_failures:
            self.start_failures -= 1
            return self._offline()
        self._next_session += 1
        code = next(c["code"] for cs in self.courses.values() for c in cs if c["id"] == course_id)
        self.active = {"id": self._next_session, "course_id": course_id, "course": {"code": code}}
        return {"success": True, "session": self.active}

    async def stop_session(self, session_id):
        self.calls.append(("stop", session_id))
        self.active = None
        return {"success": True, "session": {"id": session_id, "is_active": False}}

    async def submit_scan(self, session_id, rfid_tag=None, student_id=None):
        self.calls.append(("scan", session_id, rfid_tag))
        return self.scan_results.pop(0)


@pytest.fixture
def backend():
    return FakeBackend()


def make_terminal(client):
    return TerminalSimulator(client, terminal_id="test", message_delay=0, result_delay=0, read_delay=0)


async def open_session(terminal, course_key='1'):
    for key in ['#', '0', '0', '0', '1', '#', course_key]:
        await terminal.press_key(key)


def test_boot_without_session_is_idle(backend):
    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        return terminal

    terminal = asyncio.run(scenario())
    assert terminal.state == TerminalState.IDLE
    assert terminal.lines == WELCOME
    assert terminal.leds["net"] is True
    assert terminal.cards[0]["rfid_tag"] == "AB12CD"


def test_boot_resumes_active_session(backend):
    backend.active = {"id": 7, "course": {"code": "CS101"}}

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        return terminal

    terminal = asyncio.run(scenario())
    assert terminal.state == TerminalState.ACTIVE
    assert terminal.session_id == 7
    assert terminal.course_code == "CS101"
    assert terminal.lines == READY


def test_boot_offline_then_retry(backend):
    backend.online = False

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        offline = (terminal.state, list(terminal.lines))
        backend.online = True
        await terminal.press_key('#')
        return terminal, offline

    terminal, offline = asyncio.run(scenario())
    assert offline == (TerminalState.OFFLINE, ['> NETWORK ERROR', '> RETRY LATER'])
    assert terminal.state == TerminalState.IDLE


def test_staff_id_entry(backend):
    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        await terminal.press_key('#')
        prompts = [terminal.lines[1]]
        for key in ['0', '0', '1', 'C', '0', '1', '9']:
            await terminal.press_key(key)
            prompts.append(terminal.lines[1])
        return terminal, prompts

    terminal, prompts = asyncio.run(scenario())
    assert terminal.state == TerminalState.ENTER_STAFF_ID
    assert prompts == [
        'SMAF/____', 'SMAF/0___', 'SMAF/00__', 'SMAF/001_',
        'SMAF/00__', 'SMAF/000_', 'SMAF/0001', 'SMAF/0001'
    ]


def test_incomplete_staff_id_reprompts(backend):
    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        for key in ['#', '0', '1', '#']:
            await terminal.press_key(key)
        shown = list(terminal.lines)
        await terminal.settle()
        return terminal, shown

    terminal, shown = asyncio.run(scenario())
    assert shown == ['INVALID ID LENGTH', 'TRY AGAIN']
    assert terminal.state == TerminalState.ENTER_STAFF_ID
    assert terminal.lines == ['ENTER STAFF ID:', 'SMAF/____']
    assert ("staff", "SMAF/01") not in backend.calls


@pytest.mark.parametrize("staff_digits, courses, expected", [
    ("0404", None, ['ID NOT FOUND']),
    ("0001", [], ['NO COURSES FOUND', 'FOR THIS ID']),
])
def test_staff_without_courses_returns_to_idle(backend, staff_digits, courses, expected):
    if courses is not None:
        backend.courses[1] = courses

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        for key in ['#', *staff_digits, '#']:
            await terminal.press_key(key)
        shown = list(terminal.lines)
        await terminal.settle()
        return terminal, shown

    terminal, shown = asyncio.run(scenario())
    assert shown == expected
    assert terminal.state == TerminalState.IDLE
    assert terminal.lines == WELCOME


def test_course_selection_capped_at_nine(backend):
    backend.courses[1] = [{"id": 200 + i, "code": f"C{i:02d}"} for i in range(1, 13)]

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        for key in ['#', '0', '0', '0', '1', '#']:
            await terminal.press_key(key)
        menu = list(terminal.lines)
        await terminal.press_key('0')
        still_selecting = terminal.state
        await terminal.press_key('9')
        return terminal, menu, still_selecting

    terminal, menu, still_selecting = asyncio.run(scenario())
    assert menu[0] == 'SELECT COURSE (1-9):'
    assert menu[1:] == [f"{i}. C{i:02d}" for i in range(1, 10)]
    assert still_selecting == TerminalState.SELECT_COURSE
    assert terminal.state == TerminalState.ACTIVE
    assert ("start", 209) in backend.calls


def test_start_session(backend):
    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        await open_session(terminal, '2')
        return terminal

    terminal = asyncio.run(scenario())
    assert terminal.state == TerminalState.ACTIVE
    assert terminal.course_code == "CS205"
    assert terminal.lines == ['> SESSION STARTED', '> READY TO SCAN', '> PRESS * TO END']


def test_start_retries_then_falls_back_to_idle(backend):
    backend.start_failures = 5

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        await open_session(terminal)
        shown = list(terminal.lines)
        await terminal.settle()
        return terminal, shown

    terminal, shown = asyncio.run(scenario())
    assert [c for c in backend.calls if c[0] == "start"] == [("start", 10), ("start", 10)]
    assert shown == ['> ERROR STARTING', '> TRY AGAIN LATER']
    assert terminal.state == TerminalState.IDLE


def test_start_retry_recovers(backend):
    backend.start_failures = 1

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        await open_session(terminal)
        return terminal

    terminal = asyncio.run(scenario())
    assert terminal.state == TerminalState.ACTIVE


def test_end_session(backend):
    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        await open_session(terminal)
        session_id = terminal.session_id
        await terminal.press_key('*')
        return terminal, session_id

    terminal, session_id = asyncio.run(scenario())
    assert ("stop", session_id) in backend.calls
    assert terminal.state == TerminalState.IDLE
    assert terminal.session_id is None
    assert terminal.lines == ['> SESSION ENDED', '> PRESS # TO START']


@pytest.mark.parametrize("result, shown, overlay", [
    ({"result": "RECORDED", "student": {"first_name": "Amina"}}, ['> ACCESS GRANTED', '> Amina'], False),
    ({"result": "DUPLICATE"}, ['> ERROR: DUPLICATE', '> ALREADY LOGGED'], True),
    ({"result": "UNKNOWN_TAG"}, ['> ERROR: UNKNOWN TAG', '> TRY AGAIN'], True),
    ({"result": "NOT_ENROLLED"}, ['> ERROR: NOT ENROLLED', '> SEE LECTURER'], True),
    ({"result": "SYSTEM_ERROR", "detail": "timeout"}, ['> SYS ERROR', '> TIMEOUT'], True),
])
def test_scan_results_recover_to_ready(backend, result, shown, overlay):
    backend.active = {"id": 7, "course": {"code": "CS101"}}
    backend.scan_results = [result]

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        returned = await terminal.tap_card("AB12CD")
        during = (list(terminal.lines), terminal.error_overlay)
        await terminal.settle()
        return terminal, returned, during

    terminal, returned, during = asyncio.run(scenario())
    assert returned == result
    assert during == (shown, overlay)
    assert terminal.state == TerminalState.ACTIVE
    assert terminal.lines == READY
    assert terminal.error_overlay is False


def test_inactive_session_returns_to_idle(backend):
    backend.active = {"id": 7, "course": {"code": "CS101"}}
    backend.scan_results = [{"result": "SESSION_INACTIVE"}]

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        backend.active = None
        await terminal.tap_card("AB12CD")
        return terminal

    terminal = asyncio.run(scenario())
    assert terminal.state == TerminalState.IDLE
    assert terminal.lines == ['> SESSION ENDED', '> PRESS # TO START']


def test_inactive_session_follows_new_session(backend):
    backend.active = {"id": 7, "course": {"code": "CS101"}}
    backend.scan_results = [{"result": "SESSION_INACTIVE"}]

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        backend.active = {"id": 8, "course": {"code": "CS205"}}
        await terminal.tap_card("AB12CD")
        shown = list(terminal.lines)
        await terminal.settle()
        return terminal, shown

    terminal, shown = asyncio.run(scenario())
    assert shown == ['> SESSION CHANGED', '> CS205']
    assert terminal.state == TerminalState.ACTIVE
    assert terminal.session_id == 8


def test_same_card_is_not_submitted_twice_in_flight(backend):
    backend.active = {"id": 7, "course": {"code": "CS101"}}
    release = None

    async def slow_scan(session_id, rfid_tag=None, student_id=None):
        backend.calls.append(("scan", session_id, rfid_tag))
        await release.wait()
        return {"result": "RECORDED", "student": {"first_name": "Amina"}}

    backend.submit_scan = slow_scan

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        terminal = make_terminal(backend)
        await terminal.boot()
        first = asyncio.create_task(terminal.tap_card("AB12CD"))
        for _ in range(5):
            await asyncio.sleep(0)
        second = await terminal.tap_card("AB12CD")
        release.set()
        return await first, second

    first, second = asyncio.run(scenario())
    assert first["result"] == "RECORDED"
    assert second is None
    assert [c for c in backend.calls if c[0] == "scan"] == [("scan", 7, "AB12CD")]


def test_tap_ignored_when_idle(backend):
    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        return await terminal.tap_card("AB12CD")

    assert asyncio.run(scenario()) is None
    assert not [c for c in backend.calls if c[0] == "scan"]


def test_unexpected_failure_shows_connection_lost(backend):
    backend.active = {"id": 7, "course": {"code": "CS101"}}

    async def broken_scan(session_id, rfid_tag=None, student_id=None):
        raise RuntimeError("socket closed")

    backend.submit_scan = broken_scan

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        result = await terminal.tap_card("AB12CD")
        shown = list(terminal.lines)
        await terminal.settle()
        return terminal, result, shown

    terminal, result, shown = asyncio.run(scenario())
    assert result["result"] == "SYSTEM_ERROR"
    assert shown == ['> CONNECTION LOST']
    assert terminal.state == TerminalState.ACTIVE
    assert terminal.lines == READY


def test_keypad_failure_recovers_to_idle(backend):
    async def broken_lookup(staff_id):
        raise RuntimeError("socket closed")

    backend.find_staff = broken_lookup

    async def scenario():
        terminal = make_terminal(backend)
        await terminal.boot()
        for key in ['#', '0', '0', '0', '1', '#']:
            await terminal.press_key(key)
        shown = list(terminal.lines)
        await terminal.settle()
        return terminal, shown

    terminal, shown = asyncio.run(scenario())
    assert shown == ['> CONNECTION LOST']
    assert terminal.state == TerminalState.IDLE


def test_listeners_receive_snapshots(backend):
    snapshots = []

    async def scenario():
        terminal = make_terminal(backend)
        terminal.add_listener(snapshots.append)
        await terminal.boot()
        await terminal.press_key('#')

    asyncio.run(scenario())
    assert snapshots[-1]["state"] == "enter_staff_id"
    assert snapshots[-1]["lines"] == ['ENTER STAFF ID:', 'SMAF/____']
    assert snapshots[0]["lines"] == ['> SYSTEM BOOT...']


class InProcessClient:
    """Calls the backend services directly, shaped like the HTTP client."""

    def __init__(self, directory, sessions, scans):
        self.directory = directory
        self.sessions = sessions
        self.scans = scans

    async def get_active_session(self):
        active = self.sessions.resolve_active_session()
        return {"active": active is not None, "session": self.sessions.describe(active) if active else None}

    async def list_students(self):
        students = self.directory.list_students()
        return {"success": True, "students": students, "count": len(students)}

    async def find_staff(self, staff_id):
        lecturer = self.directory.find_lecturer(staff_id)
        if lecturer is None:
            return {"success": False, "status_code": 404}
        return {"success": True, "lecturer": lecturer}

    async def list_lecturer_courses(self, lecturer_id):
        return {"success": True, "courses": self.directory.list_lecturer_courses(lecturer_id)}

    async def start_session(self, course_id, lecturer_id):
        try:
            started = self.sessions.start_session(course_id, lecturer_id)
        except (SessionError, StoreError) as e:
            return {"success": False, "message": str(e)}
        return {"success": True, "session": self.sessions.describe(started)}

    async def stop_session(self, session_id):
        return {"success": True, "session": self.sessions.stop_session(session_id).to_dict()}

    async def submit_scan(self, session_id, rfid_tag=None, student_id=None):
        return self.scans.submit_scan(session_id, rfid_tag=rfid_tag, student_id=student_id).to_dict()


def test_terminal_drives_backend(db, directory, campus, clock):
    sessions = SessionManager(db, clock=clock)
    scans = ScanService(db, session_manager=sessions, clock=clock)
    client = InProcessClient(directory, sessions, scans)

    async def scenario():
        terminal = make_terminal(client)
        await terminal.boot()
        await open_session(terminal, '1')
        outcomes = [
            (await terminal.tap_card(tag))["result"]
            for tag in ("AB12CD", "AB12CD", "ZZ99")
        ]
        session_id = terminal.session_id

        rebooted = make_terminal(client)
        await rebooted.boot()
        resumed = (rebooted.state, rebooted.session_id)

        await terminal.press_key('*')
        await terminal.settle()
        return terminal, outcomes, session_id, resumed

    terminal, outcomes, session_id, resumed = asyncio.run(scenario())
    assert outcomes == ["RECORDED", "DUPLICATE", "UNKNOWN_TAG"]
    assert resumed == (TerminalState.ACTIVE, session_id)
    assert terminal.state == TerminalState.IDLE
    assert sessions.resolve_active_session() is None
    assert len(scans.get_session_logs(session_id)) == 1
