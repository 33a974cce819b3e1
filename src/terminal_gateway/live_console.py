"""
Live Attendance Console
========================
Follows the active session and lists its attendance logs as they commit.

Flow:
1. Resolve the active session (none -> standby, sessions feed only)
2. Subscribe to /ws/live for that session
3. On the "subscribed" message, bulk fetch the session's logs
4. Merge each notified log into the board in commit order
5. Reveal new rows one at a time through the presentation queue
6. Session stopped -> standby; feed dropped -> full re-fetch
"""

import asyncio
import bisect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from .backend_client import AttendanceClient

logger = logging.getLogger(__name__)

# ============== Console Config ==============
PRESENTATION_DELAY_SECONDS = 0.8  # Gap between revealed rows
RECONNECT_DELAY_SECONDS = 2.0
# ============================================


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.min
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class AttendeeBoard:
    """
    Attendance rows of one session in commit order (timestamp, then id).
    Merging is idempotent; delivery order does not matter.
    """

    def __init__(self):
        self._keys = []
        self._rows = []
        self._ids = set()

    def __len__(self):
        return len(self._rows)

    def __contains__(self, log_id):
        return log_id in self._ids

    def merge(self, row: Dict[str, Any]) -> bool:
        """Insert `row` at its commit position. Returns False if already present."""
        if row["id"] in self._ids:
            return False
        key = (_parse_timestamp(row.get("timestamp")), row["id"])
        index = bisect.bisect(self._keys, key)
        self._keys.insert(index, key)
        self._rows.insert(index, row)
        self._ids.add(row["id"])
        return True

    def clear(self):
        self._keys.clear()
        self._rows.clear()
        self._ids.clear()

    @property
    def rows(self) -> List[Dict[str, Any]]:
        return list(self._rows)

    def newest_first(self) -> List[Dict[str, Any]]:
        return list(reversed(self._rows))


class LiveConsole:
    """
    Real-time view of the active session.

    Usage:
        console = LiveConsole(client)
        asyncio.create_task(console.run())
        ...
        console.stats()
    """

    def __init__(
        self,
        client: AttendanceClient,
        presentation_delay: float = PRESENTATION_DELAY_SECONDS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.client = client
        self.presentation_delay = presentation_delay
        self.reconnect_delay = reconnect_delay
        self.clock = clock or _utc_now

        self.session: Optional[Dict[str, Any]] = None
        self.board = AttendeeBoard()
        self.revealed = set()
        self.connections = 0

        self._presentation: asyncio.Queue = asyncio.Queue()
        self._listeners: List[Callable[[str, dict], None]] = []
        self._stopped = False

    @property
    def session_id(self) -> Optional[int]:
        return self.session["id"] if self.session else None

    @property
    def standby(self) -> bool:
        return self.session is None

    def add_listener(self, callback: Callable[[str, dict], None]):
        """Call `callback(kind, payload)` on "session", "row" and "reveal" changes."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[str, dict], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _emit(self, kind: str, payload: dict):
        for callback in list(self._listeners):
            try:
                callback(kind, payload)
            except Exception as e:
                logger.error(f"[LIVE] Console listener failed: {e}")

    # ============== Session Tracking ==============

    async def resolve(self) -> bool:
        """
        Resolve the active session. Returns False if the backend could not be reached.
        Switching sessions clears the board.
        """
        result = await self.client.get_active_session()
        if result.get("success") is False:
            logger.error(f"[LIVE] Could not resolve active session: {result.get('error')}")
            return False

        session = result.get("session") if result.get("active") else None
        new_id = session["id"] if session else None
        if new_id != self.session_id:
            self._reset()
        self.session = session

        if session:
            logger.info(f"[LIVE] Watching session {new_id}")
        else:
            logger.info("[LIVE] No active session, standby")
        self._emit("session", {"session": session})
        return True

    async def load_history(self):
        """Bulk fetch the watched session's logs. History is revealed at once."""
        if self.session_id is None:
            return
        result = await self.client.get_session_logs(self.session_id)
        if not result.get("success"):
            logger.error(f"[LIVE] History fetch failed for session {self.session_id}")
            return

        for row in result.get("logs", []):
            if self.board.merge(row):
                self.revealed.add(row["id"])
                self._emit("row", row)
        logger.info(f"[LIVE] Loaded {len(self.board)} logs for session {self.session_id}")

    async def refresh(self) -> bool:
        """Resolve and re-fetch everything."""
        if not await self.resolve():
            return False
        await self.load_history()
        return True

    def _reset(self):
        self.board.clear()
        self.revealed.clear()
        while not self._presentation.empty():
            self._presentation.get_nowait()

    def _enter_standby(self):
        logger.info(f"[LIVE] Session {self.session_id} ended, standby")
        self.session = None
        self._reset()
        self._emit("session", {"session": None})

    # ============== Feed ==============

    async def handle_event(self, event: Dict[str, Any]) -> bool:
        """
        Apply one feed message.

        Returns True when the subscription has to be re-scoped (the watched
        session ended or another session started).
        """
        if event.get("type") == "subscribed":
            # A start or stop committed before the feed registered sends no event
            watched = self.session_id
            if not await self.resolve():
                return True
            if self.session_id != watched:
                logger.info(f"[LIVE] Active session changed to {self.session_id} while subscribing")
                return True
            await self.load_history()
            return False

        table = event.get("table")
        row = event.get("row") or {}

        if table == "attendance_logs":
            if self.session_id is not None and row.get("session_id") == self.session_id:
                await self._merge_log(row)
            return False

        if table == "sessions":
            if row.get("id") == self.session_id and not row.get("is_active"):
                self._enter_standby()
                return True
            if row.get("is_active") and row.get("id") != self.session_id:
                logger.info(f"[LIVE] Session {row.get('id')} started")
                return True
        return False

    async def _merge_log(self, row: Dict[str, Any]):
        if row["id"] in self.board:
            return
        joined = await self.client.get_log(row["id"])
        if joined.get("success"):
            row = joined["log"]
        else:
            logger.warning(f"[LIVE] Could not load log {row['id']}, showing it without student details")

        if self.board.merge(row):
            self._emit("row", row)
            self._presentation.put_nowait(row)

    async def present(self):
        """Reveal queued rows one at a time. Runs until cancelled."""
        while True:
            row = await self._presentation.get()
            if row["id"] in self.board:
                self.revealed.add(row["id"])
                self._emit("reveal", row)
            await asyncio.sleep(self.presentation_delay)

    def visible_rows(self) -> List[Dict[str, Any]]:
        """Revealed rows in commit order."""
        return [row for row in self.board.rows if row["id"] in self.revealed]

    async def run(self):
        """Follow the active session until stop() is called."""
        presenter = asyncio.get_running_loop().create_task(self.present())
        try:
            while not self._stopped:
                if not await self.resolve():
                    await asyncio.sleep(self.reconnect_delay)
                    continue

                rescope = False
                try:
                    self.connections += 1
                    async for event in self.client.live_events(self.session_id):
                        if await self.handle_event(event):
                            rescope = True
                            break
                        if self._stopped:
                            break
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logger.warning(f"[LIVE] Feed error: {e!r}")

                if not rescope and not self._stopped:
                    logger.info(f"[LIVE] Feed dropped, re-fetching in {self.reconnect_delay}s")
                    await asyncio.sleep(self.reconnect_delay)
        finally:
            presenter.cancel()

    def stop(self):
        self._stopped = True

    # ============== Derived View ==============

    def stats(self) -> Dict[str, Any]:
        """Attendee count, scans per minute since start, remaining seconds."""
        count = len(self.board)
        if self.session is None:
            return {"session_id": None, "count": count, "rate_per_minute": 0.0, "remaining_seconds": 0}

        start = _parse_timestamp(self.session.get("start_time"))
        elapsed = max((self.clock() - start).total_seconds(), 0.0)
        minutes = elapsed / 60
        duration = self.session.get("duration_seconds") or 0

        return {
            "session_id": self.session_id,
            "count": count,
            "rate_per_minute": round(count / minutes, 2) if minutes > 0 else float(count),
            "remaining_seconds": max(0, int(duration - elapsed)),
        }
