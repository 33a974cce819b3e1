"""
RFID Terminal Simulator
========================
Emulates the attended classroom terminal: OLED display, keypad and card
reader. Keypad input opens and closes sessions; card taps submit scans.

States:
- BOOTING: resolving the active session
- IDLE: waiting for '#'
- ENTER_STAFF_ID: collecting the staff ID digits after the prefix
- SELECT_COURSE: choosing one of the lecturer's courses (1-9)
- ACTIVE: accepting card taps; '*' ends the session
- OFFLINE: backend unreachable at boot; '#' retries

Rejected scans show a transient error overlay on ACTIVE that clears
itself after `result_delay`.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .backend_client import AttendanceClient, SYSTEM_ERROR

logger = logging.getLogger(__name__)

# ============== Terminal Config ==============
MAX_SELECTABLE_COURSES = 9   # Single-digit keypad selection
MESSAGE_DELAY_SECONDS = 2.0  # Prompts before returning to IDLE
RESULT_DELAY_SECONDS = 1.5   # Scan result display time
READ_DELAY_SECONDS = 0.6     # Simulated card read time
START_RETRIES = 1
# =============================================

WELCOME = ['> WELCOME', '> PRESS # TO START']
READY = ['> SESSION ACTIVE', '> READY TO SCAN']

SCAN_MESSAGES = {
    "DUPLICATE": ['> ERROR: DUPLICATE', '> ALREADY LOGGED'],
    "UNKNOWN_TAG": ['> ERROR: UNKNOWN TAG', '> TRY AGAIN'],
    "NOT_ENROLLED": ['> ERROR: NOT ENROLLED', '> SEE LECTURER'],
}


class TerminalState(str, Enum):
    BOOTING = "booting"
    IDLE = "idle"
    ENTER_STAFF_ID = "enter_staff_id"
    SELECT_COURSE = "select_course"
    ACTIVE = "active"
    OFFLINE = "offline"


class TerminalSimulator:
    """
    Keypad and card reader state machine driving the attendance backend.

    Usage:
        terminal = TerminalSimulator(client, terminal_id="room-101")
        await terminal.boot()
        await terminal.press_key('#')
        await terminal.tap_card("AB12CD")
    """

    def __init__(
        self,
        client: AttendanceClient,
        terminal_id: str = "terminal-1",
        message_delay: float = MESSAGE_DELAY_SECONDS,
        result_delay: float = RESULT_DELAY_SECONDS,
        read_delay: float = READ_DELAY_SECONDS,
        start_retries: int = START_RETRIES,
        staff_id_prefix: str = "SMAF/",
        staff_id_digits: int = 4
    ):
        self.client = client
        self.terminal_id = terminal_id
        self.message_delay = message_delay
        self.result_delay = result_delay
        self.read_delay = read_delay
        self.start_retries = start_retries
        self.staff_id_prefix = staff_id_prefix
        self.staff_id_digits = staff_id_digits

        self.state = TerminalState.BOOTING
        self.lines: List[str] = ['> SYSTEM BOOT...']
        self.leds = {"pwr": True, "net": False, "read": False}
        self.input_buffer = ''
        self.staff: Optional[Dict[str, Any]] = None
        self.courses: List[Dict[str, Any]] = []
        self.session: Optional[Dict[str, Any]] = None
        self.cards: List[Dict[str, Any]] = []
        self.error_overlay = False

        self._busy = False
        self._tags_in_flight = set()
        self._timers = set()
        self._listeners: List[Callable[[dict], None]] = []

    # ============== Display ==============

    def add_listener(self, callback: Callable[[dict], None]):
        """Call `callback(snapshot)` on every display or state change."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[dict], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def show(self, lines: List[str]):
        self.lines = list(lines)
        logger.debug(f"[{self.terminal_id}] OLED: {' | '.join(self.lines)}")
        self._notify()

    def _notify(self):
        snapshot = self.to_dict()
        for callback in list(self._listeners):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"[{self.terminal_id}] Display listener failed: {e}")

    def _set_state(self, state: TerminalState):
        if state != self.state:
            logger.info(f"[{self.terminal_id}] {self.state.value} -> {state.value}")
        self.state = state
        self.error_overlay = False

    @property
    def session_id(self) -> Optional[int]:
        return self.session["id"] if self.session else None

    @property
    def course_code(self) -> Optional[str]:
        course = (self.session or {}).get("course") or {}
        return course.get("code")

    @property
    def selectable_courses(self) -> List[Dict[str, Any]]:
        return self.courses[:MAX_SELECTABLE_COURSES]

    def staff_prompt(self) -> str:
        blanks = '_' * (self.staff_id_digits - len(self.input_buffer))
        return f"{self.staff_id_prefix}{self.input_buffer}{blanks}"

    def to_dict(self) -> dict:
        return {
            "terminal_id": self.terminal_id,
            "state": self.state.value,
            "lines": list(self.lines),
            "leds": dict(self.leds),
            "input": self.input_buffer,
            "error_overlay": self.error_overlay,
            "session_id": self.session_id,
            "course_code": self.course_code,
            "courses": [c["code"] for c in self.selectable_courses],
        }

    # ============== Timers ==============

    def _schedule(self, delay: float, callback: Callable[[], None]):
        """Run `callback` after `delay` seconds unless cancelled by a newer transition."""
        async def fire():
            await asyncio.sleep(delay)
            callback()

        task = asyncio.get_running_loop().create_task(fire())
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    def _cancel_timers(self):
        for task in list(self._timers):
            task.cancel()

    async def settle(self):
        """Wait until every pending display timer has fired."""
        while True:
            pending = [t for t in self._timers if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ============== Boot ==============

    async def boot(self):
        """Resolve the active session; resume straight into ACTIVE if there is one."""
        self._cancel_timers()
        self._set_state(TerminalState.BOOTING)
        self.show(['> SYSTEM BOOT...'])

        result = await self.client.get_active_session()
        if result.get("success") is False:
            logger.error(f"[{self.terminal_id}] Boot failed: {result.get('error')}")
            self.leds["net"] = False
            self._set_state(TerminalState.OFFLINE)
            self.show(['> NETWORK ERROR', '> RETRY LATER'])
            return

        self.leds["net"] = True
        cards = await self.client.list_students()
        self.cards = cards.get("students", [])

        if result.get("active") and result.get("session"):
            self._enter_active(result["session"], READY)
            logger.info(f"[{self.terminal_id}] Resumed session {self.session_id} ({self.course_code})")
        else:
            self._go_idle()

    def _go_idle(self, lines: List[str] = WELCOME):
        self._cancel_timers()
        self.session = None
        self.staff = None
        self.courses = []
        self.input_buffer = ''
        self._set_state(TerminalState.IDLE)
        self.show(lines)

    def _enter_active(self, session: Dict[str, Any], lines: List[str]):
        self._cancel_timers()
        self.session = session
        self.input_buffer = ''
        self._set_state(TerminalState.ACTIVE)
        self.show(lines)

    # ============== Keypad ==============

    async def press_key(self, key: str):
        """
        Handle one keypad press: digits 0-9, '#' (enter), '*' (end), 'C' (backspace).
        Keys pressed while a request is in flight are ignored.
        """
        key = str(key).strip().upper()
        if self._busy:
            logger.debug(f"[{self.terminal_id}] Busy, ignoring key {key!r}")
            return

        self._busy = True
        try:
            await self._handle_key(key)
        except Exception as e:
            logger.exception(f"[{self.terminal_id}] Key {key!r} failed: {e}")
            self._connection_lost()
        finally:
            self._busy = False

    async def _handle_key(self, key: str):
        if self.state == TerminalState.OFFLINE:
            if key == '#':
                await self.boot()
        elif self.state == TerminalState.IDLE:
            if key == '#':
                self._cancel_timers()
                self.input_buffer = ''
                self._set_state(TerminalState.ENTER_STAFF_ID)
                self.show(['ENTER STAFF ID:', self.staff_prompt()])
        elif self.state == TerminalState.ENTER_STAFF_ID:
            await self._handle_staff_key(key)
        elif self.state == TerminalState.SELECT_COURSE:
            await self._handle_course_key(key)
        elif self.state == TerminalState.ACTIVE:
            if key == '*':
                await self.stop_session()

    async def _handle_staff_key(self, key: str):
        if key == 'C':
            self.input_buffer = self.input_buffer[:-1]
            self.show(['ENTER STAFF ID:', self.staff_prompt()])
        elif key.isdigit() and len(key) == 1:
            if len(self.input_buffer) < self.staff_id_digits:
                self.input_buffer += key
                self.show(['ENTER STAFF ID:', self.staff_prompt()])
        elif key == '#':
            if len(self.input_buffer) != self.staff_id_digits:
                self.show(['INVALID ID LENGTH', 'TRY AGAIN'])
                self._schedule(self.message_delay, self._reprompt_staff_id)
                return
            await self._verify_staff()

    def _reprompt_staff_id(self):
        if self.state == TerminalState.ENTER_STAFF_ID:
            self.input_buffer = ''
            self.show(['ENTER STAFF ID:', self.staff_prompt()])

    async def _verify_staff(self):
        staff_id = f"{self.staff_id_prefix}{self.input_buffer}"
        self.show(['VERIFYING ID...'])

        result = await self.client.find_staff(staff_id)
        if not result.get("success"):
            if result.get("status_code") == 404:
                logger.info(f"[{self.terminal_id}] Unknown staff ID {staff_id}")
                self._idle_after(['ID NOT FOUND'])
            else:
                self._idle_after(['> NET ERROR'])
            return

        self.staff = result["lecturer"]
        courses = await self.client.list_lecturer_courses(self.staff["id"])
        if not courses.get("success"):
            self._idle_after(['> NET ERROR'])
            return

        self.courses = courses.get("courses", [])
        if not self.courses:
            self._idle_after(['NO COURSES FOUND', 'FOR THIS ID'])
            return

        if len(self.courses) > MAX_SELECTABLE_COURSES:
            logger.warning(f"[{self.terminal_id}] {staff_id} owns {len(self.courses)} courses; "
                           f"only the first {MAX_SELECTABLE_COURSES} are selectable")

        self._set_state(TerminalState.SELECT_COURSE)
        self.show(['SELECT COURSE (1-9):'] +
                  [f"{i}. {c['code']}" for i, c in enumerate(self.selectable_courses, start=1)])

    def _idle_after(self, lines: List[str]):
        """Show `lines`, then fall back to IDLE after message_delay."""
        self.show(lines)
        self._schedule(self.message_delay, self._go_idle)

    async def _handle_course_key(self, key: str):
        if key == 'C':
            self._go_idle()
            return
        if not key.isdigit() or len(key) != 1:
            return

        index = int(key) - 1
        if 0 <= index < len(self.selectable_courses):
            await self.start_session(self.selectable_courses[index])

    # ============== Sessions ==============

    async def start_session(self, course: Dict[str, Any]):
        """Open a session for `course`, retrying start_retries times before giving up."""
        self.show(['> INITIALIZING...', '> CONTACTING DB'])

        for attempt in range(self.start_retries + 1):
            result = await self.client.start_session(course["id"], self.staff["id"])
            if result.get("success"):
                self._enter_active(result["session"], ['> SESSION STARTED', '> READY TO SCAN', '> PRESS * TO END'])
                logger.info(f"[{self.terminal_id}] Session {self.session_id} started for {course['code']}")
                return

            logger.warning(f"[{self.terminal_id}] Start attempt {attempt + 1} failed: {result.get('message')}")
            # Rejected by the backend: retrying cannot help
            if result.get("status_code") in (404, 409):
                break
            if attempt < self.start_retries:
                self.show(['> ERROR STARTING', '> RETRYING...'])
                await asyncio.sleep(self.message_delay)

        self._idle_after(['> ERROR STARTING', '> TRY AGAIN LATER'])

    async def stop_session(self):
        """End the active session and return to IDLE."""
        if self.session_id is None:
            self._go_idle()
            return

        self._cancel_timers()
        self.show(['> TERMINATING...'])
        result = await self.client.stop_session(self.session_id)

        if result.get("success") or result.get("status_code") == 404:
            logger.info(f"[{self.terminal_id}] Session {self.session_id} ended")
            self._go_idle(['> SESSION ENDED', '> PRESS # TO START'])
        else:
            self._show_overlay(['> SYS ERROR', '> STOP FAILED'])

    # ============== Card Reader ==============

    async def tap_card(self, rfid_tag: str) -> Optional[Dict[str, Any]]:
        """
        Submit a card tap against the active session.

        Returns the backend scan result, or None if the tap was ignored
        (no active session, or the same card is already being read).
        """
        if self.state != TerminalState.ACTIVE or self.session_id is None:
            logger.info(f"[{self.terminal_id}] Tap ignored in state {self.state.value}")
            return None
        if rfid_tag in self._tags_in_flight:
            logger.info(f"[{self.terminal_id}] Tap ignored, {rfid_tag} already in flight")
            return None

        self._tags_in_flight.add(rfid_tag)
        self._cancel_timers()
        self.leds["read"] = True
        self.show(['> READING TAG...', f"> ID: {rfid_tag[:6] or 'UNK'}"])

        try:
            await asyncio.sleep(self.read_delay)
            result = await self.client.submit_scan(self.session_id, rfid_tag=rfid_tag)
            await self._show_scan_result(result)
            return result
        except Exception as e:
            logger.exception(f"[{self.terminal_id}] Scan of {rfid_tag} failed: {e}")
            self._connection_lost()
            return {"success": False, "result": SYSTEM_ERROR, "message": str(e)}
        finally:
            self._tags_in_flight.discard(rfid_tag)
            self.leds["read"] = False
            self._notify()

    async def _show_scan_result(self, result: Dict[str, Any]):
        outcome = result.get("result", SYSTEM_ERROR)
        student = result.get("student") or {}
        self.leds["net"] = outcome != SYSTEM_ERROR

        if outcome == "RECORDED":
            self.error_overlay = False
            self.show(['> ACCESS GRANTED', f"> {student.get('first_name', '')}"])
            self._schedule(self.result_delay, self._restore_ready)
        elif outcome == "SESSION_INACTIVE":
            await self._session_closed_elsewhere()
        elif outcome in SCAN_MESSAGES:
            self._show_overlay(SCAN_MESSAGES[outcome])
        else:
            detail = result.get("detail") or result.get("message") or "UNKNOWN"
            self._show_overlay(['> SYS ERROR', f"> {str(detail)[:16].upper()}"])

    async def _session_closed_elsewhere(self):
        """The session was stopped or timed out; follow whatever is active now."""
        logger.info(f"[{self.terminal_id}] Session {self.session_id} no longer active")
        current = await self.client.get_active_session()

        if current.get("success") is False:
            self._show_overlay(['> SYS ERROR', '> SESSION CHECK'])
        elif current.get("active") and current.get("session"):
            self._enter_active(current["session"], READY)
            self._show_overlay(['> SESSION CHANGED', f"> {self.course_code}"])
        else:
            self._go_idle(['> SESSION ENDED', '> PRESS # TO START'])

    def _show_overlay(self, lines: List[str]):
        self.error_overlay = True
        self.show(lines)
        self._schedule(self.result_delay, self._restore_ready)

    def _restore_ready(self):
        if self.state == TerminalState.ACTIVE:
            self.error_overlay = False
            self.show(READY)

    def _connection_lost(self):
        self.leds["net"] = False
        if self.state == TerminalState.ACTIVE:
            self._show_overlay(['> CONNECTION LOST'])
        elif self.state in (TerminalState.BOOTING, TerminalState.OFFLINE):
            self._set_state(TerminalState.OFFLINE)
            self.show(['> CONNECTION LOST', '> PRESS # TO RETRY'])
        else:
            self._idle_after(['> CONNECTION LOST'])
