"""
RFID Class Attendance Backend
==============================
Flow:
1. Terminal resolves or starts the active session
2. Terminal submits tag scans against that session
3. Scan service commits at most one log per (student, session)
4. Committed rows go out on the change feed
5. Live consoles receive them over /ws/live
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .database import (
    DatabaseManager, get_db_manager, SessionManager, SessionExpiryWatcher,
    ScanService, DirectoryService, StoreError, SessionError
)
from .database.change_feed import INSERT

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============== Configuration ==============
LIVE_QUEUE_SIZE = 1000      # Pending change events per websocket client
LIVE_OVERFLOW_CLOSE_CODE = 1013  # Try Again Later
# ==========================================


# ============== Request / Response Models ==============
class StartSessionRequest(BaseModel):
    course_id: int
    lecturer_id: int


class ScanRequest(BaseModel):
    session_id: int
    rfid_tag: Optional[str] = Field(None, description="Raw RFID card value")
    student_id: Optional[str] = Field(None, description="Student ID when no card is presented")


class ClaimCourseRequest(BaseModel):
    lecturer_id: int


class ScanResponse(BaseModel):
    """Scan outcome. Expected rejections are 200 responses with success=False."""
    success: bool
    result: str = Field(..., description="RECORDED, DUPLICATE, UNKNOWN_TAG, NOT_ENROLLED, SESSION_INACTIVE or SYSTEM_ERROR")
    message: str
    session_id: Optional[int] = None
    student: Optional[Dict[str, Any]] = None
    log: Optional[Dict[str, Any]] = None
    detail: Optional[str] = None


class ActiveSessionResponse(BaseModel):
    active: bool
    session: Optional[Dict[str, Any]] = None


class Services:
    """Services shared by the routes of one app instance."""

    def __init__(self, db_manager: DatabaseManager, clock=None):
        self.db = db_manager
        self.sessions = SessionManager(db_manager, clock=clock)
        self.scans = ScanService(db_manager, session_manager=self.sessions)
        self.directory = DirectoryService(db_manager)
        self.watcher = SessionExpiryWatcher(
            self.sessions,
            interval_seconds=db_manager.get_config_int("expiry_check_seconds", 5)
        )


def create_app(
    db_manager: Optional[DatabaseManager] = None,
    clock=None,
    run_expiry_watcher: bool = True
) -> FastAPI:
    """
    Build the API.

    Args:
        db_manager: Database to serve. Uses the global manager (DATABASE_URL) if omitted.
        clock: Optional clock shared by the session and scan services
        run_expiry_watcher: Start the background session timeout task
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info("Starting RFID Attendance Backend")
        logger.info("=" * 60)

        db = db_manager or get_db_manager()
        services = Services(db, clock=clock)
        app.state.services = services

        stats = db.get_stats()
        logger.info(f"Database: {stats['total_students']} students, {stats['total_courses']} courses, "
                    f"{stats['total_logs']} logs")
        logger.info(f"Session duration: {services.sessions.session_duration}")

        if run_expiry_watcher:
            services.watcher.start()
        try:
            yield
        finally:
            await services.watcher.stop()
            logger.info("Backend stopped")

    app = FastAPI(
        title="RFID Attendance API",
        description="Attendance sessions, RFID scan commits and live scan feed",
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS middleware for terminal and console clients
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Store unavailable on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Attendance store unavailable"})

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError):
        return JSONResponse(status_code=404 if exc.not_found else 409, content={"detail": str(exc)})

    def services(request: Request) -> Services:
        return request.app.state.services

    # ============== Health ==============

    @app.get("/")
    def root(request: Request):
        """Health check endpoint."""
        svc = services(request)
        return {
            "status": "online",
            "service": "RFID Attendance API",
            "expiry_watcher": svc.watcher.running,
            "live_subscribers": svc.db.change_feed.subscriber_count
        }

    # ============== Sessions ==============

    @app.get("/sessions/active", response_model=ActiveSessionResponse)
    def get_active_session(request: Request):
        """Resolve the active session (resume path for terminals and consoles)."""
        svc = services(request)
        active = svc.sessions.resolve_active_session()
        if active is None:
            return ActiveSessionResponse(active=False)
        return ActiveSessionResponse(active=True, session=svc.sessions.describe(active))

    @app.post("/sessions")
    def start_session(payload: StartSessionRequest, request: Request):
        svc = services(request)
        new_session = svc.sessions.start_session(payload.course_id, payload.lecturer_id)
        return {"success": True, "session": svc.sessions.describe(new_session)}

    @app.post("/sessions/{session_id}/stop")
    def stop_session(session_id: int, request: Request):
        svc = services(request)
        stopped = svc.sessions.stop_session(session_id)
        return {"success": True, "session": stopped.to_dict()}

    @app.get("/sessions/{session_id}/logs")
    def get_session_logs(session_id: int, request: Request):
        """Logs for a session with student details, newest first."""
        logs = services(request).scans.get_session_logs(session_id)
        return {"success": True, "session_id": session_id, "logs": logs, "count": len(logs)}

    @app.get("/logs/{log_id}")
    def get_log(log_id: int, request: Request):
        log = services(request).scans.get_log(log_id)
        if log is None:
            raise HTTPException(status_code=404, detail="Log not found")
        return {"success": True, "log": log}

    # ============== Scans ==============

    @app.post("/scans", response_model=ScanResponse)
    def submit_scan(payload: ScanRequest, request: Request):
        """Submit a tag scan. Duplicates and unknown tags are normal results."""
        result = services(request).scans.submit_scan(
            session_id=payload.session_id,
            rfid_tag=payload.rfid_tag,
            student_id=payload.student_id
        )
        return ScanResponse(**result.to_dict())

    # ============== Directory ==============

    @app.get("/staff")
    def find_staff(request: Request, staff_id: str = Query(..., description="Formatted staff ID, e.g. SMAF/0001")):
        lecturer = services(request).directory.find_lecturer(staff_id)
        if lecturer is None:
            raise HTTPException(status_code=404, detail="Staff ID not found")
        return {"success": True, "lecturer": lecturer}

    @app.get("/lecturers/{lecturer_id}/courses")
    def list_lecturer_courses(lecturer_id: int, request: Request):
        courses = services(request).directory.list_lecturer_courses(lecturer_id)
        return {"success": True, "courses": courses, "count": len(courses)}

    @app.post("/courses/{course_id}/claim")
    def claim_course(course_id: int, payload: ClaimCourseRequest, request: Request):
        course = services(request).directory.claim_course(course_id, payload.lecturer_id)
        return {"success": True, "course": course}

    @app.get("/courses/{course_id}/roster")
    def get_roster(course_id: int, request: Request):
        students = services(request).directory.get_roster(course_id)
        return {"success": True, "students": students, "count": len(students)}

    @app.get("/courses/{course_id}/report")
    def get_course_report(
        course_id: int,
        request: Request,
        start_date: Optional[date] = Query(None, description="YYYY-MM-DD"),
        end_date: Optional[date] = Query(None, description="YYYY-MM-DD"),
        format: str = Query("json", pattern="^(json|csv)$")
    ):
        directory = services(request).directory
        report = directory.get_course_report(course_id, start_date, end_date)

        if format == "csv":
            filename = f"attendance_report_{course_id}_{date.today().isoformat()}.csv"
            return Response(
                content=directory.report_to_csv(report),
                media_type="text/csv",
                headers={"Content-Disposition": f'attachment; filename="{filename}"'}
            )
        return {"success": True, "report": report}

    @app.get("/students")
    def list_students(request: Request):
        students = services(request).directory.list_students()
        return {"success": True, "students": students, "count": len(students)}

    @app.get("/students/{student_id}/attendance")
    def get_student_attendance(student_id: str, request: Request):
        """A student's own attendance history."""
        history = services(request).directory.get_student_history(student_id)
        if history is None:
            raise HTTPException(status_code=404, detail="Student not found")
        return {"success": True, **history}

    @app.get("/attendance/stats")
    def get_attendance_stats(request: Request):
        """Dashboard counts."""
        return {"success": True, "stats": services(request).db.get_stats()}

    # ============== Live Feed ==============

    @app.websocket("/ws/live")
    async def live_feed(websocket: WebSocket, session_id: Optional[int] = None):
        """
        Push committed changes to a live console.

        Sends {"type": "subscribed"} once the subscriptions are registered,
        then {"table", "operation", "row"} messages for every sessions
        insert/update and, when `session_id` is given, for attendance_logs
        inserts of that session. A console in standby passes no session_id.
        """
        svc: Services = websocket.app.state.services
        feed = svc.db.change_feed
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        overflowed = False

        def offer(change):
            nonlocal overflowed
            if overflowed:
                return
            if queue.qsize() >= LIVE_QUEUE_SIZE:
                # None tells the sender to close; the console re-fetches on reconnect
                overflowed = True
                logger.warning(f"[LIVE] Queue full at {change.table} event, closing feed (session={session_id})")
                queue.put_nowait(None)
                return
            queue.put_nowait(change)

        def forward(change):
            # Runs on the committing thread
            try:
                loop.call_soon_threadsafe(offer, change)
            except RuntimeError:
                pass  # loop closed; the finally block below unsubscribes

        await websocket.accept()

        subscriptions = [feed.subscribe("sessions", forward)]
        if session_id is not None:
            subscriptions.append(
                feed.subscribe("attendance_logs", forward, operations=(INSERT,), session_id=session_id)
            )
        logger.info(f"[LIVE] Console connected (session={session_id})")
        # History fetched after this message cannot miss a commit
        await websocket.send_json({"type": "subscribed", "session_id": session_id})

        async def pump():
            while True:
                change = await queue.get()
                if change is None:
                    await websocket.close(code=LIVE_OVERFLOW_CLOSE_CODE)
                    return
                await websocket.send_json(change.to_dict())

        async def listen():
            # receive() surfaces the disconnect; client messages are ignored
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"[LIVE] Console disconnected (session={session_id})")

        sender = asyncio.create_task(pump())
        receiver = asyncio.create_task(listen())
        try:
            await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for subscription in subscriptions:
                subscription.close()
            for task in (sender, receiver):
                task.cancel()
            for task in (sender, receiver):
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except (WebSocketDisconnect, RuntimeError, OSError) as e:
                    # The console went away mid-send
                    logger.info(f"[LIVE] Feed closed while sending (session={session_id}): {e!r}")

    return app


# Uses the global database manager (DATABASE_URL or the bundled SQLite file)
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
