"""
Database Module for RFID Class Attendance
==========================================
Provides SQLAlchemy-backed session and scan tracking with:
- One active session at a time, closed by stop or timeout
- Exactly-once attendance logs per (student, session)
- A change feed of committed log and session rows
"""

from .models import (
    Student, Lecturer, Course, Enrollment, ClassSession, AttendanceLog,
    AttendanceStatus, SystemConfig
)
from .db_manager import DatabaseManager, get_db_manager
from .change_feed import ChangeFeed, ChangeEvent, Subscription
from .errors import AttendanceError, StoreError, SessionError
from .session_manager import SessionManager, SessionExpiryWatcher
from .scan_service import ScanService, ScanResult, ScanOutcome
from .directory_service import DirectoryService

__all__ = [
    'Student',
    'Lecturer',
    'Course',
    'Enrollment',
    'ClassSession',
    'AttendanceLog',
    'AttendanceStatus',
    'SystemConfig',
    'DatabaseManager',
    'get_db_manager',
    'ChangeFeed',
    'ChangeEvent',
    'Subscription',
    'AttendanceError',
    'StoreError',
    'SessionError',
    'SessionManager',
    'SessionExpiryWatcher',
    'ScanService',
    'ScanResult',
    'ScanOutcome',
    'DirectoryService'
]
