"""
Terminal gateway: backend client, terminal simulator and live console.
"""

from .backend_client import AttendanceClient, get_client, close_client
from .terminal import TerminalSimulator, TerminalState
from .live_console import LiveConsole, AttendeeBoard

__all__ = [
    'AttendanceClient',
    'get_client',
    'close_client',
    'TerminalSimulator',
    'TerminalState',
    'LiveConsole',
    'AttendeeBoard'
]
