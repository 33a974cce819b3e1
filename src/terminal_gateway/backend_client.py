"""
Backend Client for the RFID Attendance API
===========================================
Client module to connect the terminal and live consoles to the backend.

Connection failures never raise: session and lookup calls return
{"success": False, ...} and scans return result="SYSTEM_ERROR", so callers
can show an error and carry on.
"""

import aiohttp
import asyncio
import logging
from typing import Optional, Dict, Any, AsyncIterator

logger = logging.getLogger(__name__)

SYSTEM_ERROR = "SYSTEM_ERROR"


class AttendanceClient:
    """
    Async client for communicating with the attendance backend.
    """

    def __init__(self, backend_url: str = "http://localhost:8000", timeout: float = 10):
        self.backend_url = backend_url.rstrip('/')
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    async def close(self):
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()

    @property
    def live_url(self) -> str:
        """Websocket URL of the live change feed."""
        if self.backend_url.startswith("https://"):
            return "wss://" + self.backend_url[len("https://"):] + "/ws/live"
        return "ws://" + self.backend_url.split("://", 1)[-1] + "/ws/live"

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """
        Send a request and decode the JSON body.
        Non-2xx responses and connection errors come back as success=False.
        """
        try:
            session = await self._get_session()
            async with session.request(method, f"{self.backend_url}{path}", **kwargs) as response:
                if response.status == 200:
                    return await response.json()

                error_text = await response.text()
                logger.error(f"{method} {path} failed: {response.status} - {error_text}")
                return {
                    "success": False,
                    "status_code": response.status,
                    "message": f"Backend error: {response.status}",
                    "error": error_text
                }

        except asyncio.TimeoutError:
            logger.error(f"{method} {path} timed out")
            return {"success": False, "message": "Request timed out", "error": "Timeout"}
        except aiohttp.ClientError as e:
            logger.error(f"Connection error: {e}")
            return {"success": False, "message": "Connection failed", "error": str(e)}

    async def health_check(self) -> Dict[str, Any]:
        """Check backend health status."""
        result = await self._request("GET", "/")
        if result.get("status") == "online":
            return result
        return {"status": "offline", "error": result.get("error", result.get("message"))}

    # ============== Sessions ==============

    async def get_active_session(self) -> Dict[str, Any]:
        """
        Resolve the active session.

        Returns:
            {"active": bool, "session": dict | None}, or success=False on failure
        """
        return await self._request("GET", "/sessions/active")

    async def start_session(self, course_id: int, lecturer_id: int) -> Dict[str, Any]:
        return await self._request(
            "POST", "/sessions", json={"course_id": course_id, "lecturer_id": lecturer_id}
        )

    async def stop_session(self, session_id: int) -> Dict[str, Any]:
        return await self._request("POST", f"/sessions/{session_id}/stop")

    async def get_session_logs(self, session_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/sessions/{session_id}/logs")

    async def get_log(self, log_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/logs/{log_id}")

    async def live_events(self, session_id: Optional[int] = None) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield change events from the live feed until the connection drops.

        Without a session_id only session start/stop events are delivered.
        Raises aiohttp.ClientError if the feed cannot be opened.
        """
        session = await self._get_session()
        params = {"session_id": session_id} if session_id is not None else None

        async with session.ws_connect(self.live_url, params=params, heartbeat=30) as ws:
            logger.info(f"Live feed connected (session={session_id})")
            async for message in ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    yield message.json()
                elif message.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        logger.info(f"Live feed closed (session={session_id})")

    # ============== Scans ==============

    async def submit_scan(
        self,
        session_id: int,
        rfid_tag: Optional[str] = None,
        student_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Submit a tag scan.

        Returns:
            Scan result from backend; result="SYSTEM_ERROR" if it could not be reached
        """
        result = await self._request(
            "POST", "/scans",
            json={"session_id": session_id, "rfid_tag": rfid_tag, "student_id": student_id}
        )
        if "result" not in result:
            result = {
                "success": False,
                "result": SYSTEM_ERROR,
                "message": result.get("message", "Unknown error"),
                "detail": result.get("error")
            }
        logger.info(f"Scan result: {result['result']} - {result.get('message')}")
        return result

    # ============== Directory ==============

    async def find_staff(self, staff_id: str) -> Dict[str, Any]:
        return await self._request("GET", "/staff", params={"staff_id": staff_id})

    async def list_lecturer_courses(self, lecturer_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/lecturers/{lecturer_id}/courses")

    async def list_students(self) -> Dict[str, Any]:
        result = await self._request("GET", "/students")
        if not result.get("success"):
            return {"students": [], "count": 0, "error": result.get("error")}
        return result


# Global client instance
_client: Optional[AttendanceClient] = None


def get_client(backend_url: str = "http://localhost:8000") -> AttendanceClient:
    """Get or create global client instance."""
    global _client
    if _client is None:
        _client = AttendanceClient(backend_url)
    return _client


async def close_client():
    """Close global client instance."""
    global _client
    if _client:
        await _client.close()
        _client = None
