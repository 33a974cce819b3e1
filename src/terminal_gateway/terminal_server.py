"""
Terminal Device Server
=======================
Serves the simulated terminal and the live console over HTTP:

- POST /keypad        key=<0-9 # * C>
- POST /tap           rfid_tag=<card value>
- GET  /state         terminal snapshot
- GET  /cards         test cards (registered students)
- GET  /console       live console rows and stats
- WS   /ws/display    pushes terminal snapshots on every change
- WS   /ws/console    pushes console rows as they are revealed
"""

import asyncio
import json
import logging
import os

import tornado.web
import tornado.websocket

from .backend_client import get_client, close_client
from .live_console import LiveConsole
from .terminal import TerminalSimulator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============== SERVER CONFIG ==============
BACKEND_URL = os.environ.get("BACKEND_URL", "http://localhost:8000")
TERMINAL_PORT = int(os.environ.get("TERMINAL_PORT", "3000"))
TERMINAL_ID = os.environ.get("TERMINAL_ID", "terminal-1")
# ===========================================


class DisplaySocket(tornado.websocket.WebSocketHandler):
    """Pushes the terminal display. Clients may send {"key": ...} or {"tap": ...}."""

    def initialize(self, terminal: TerminalSimulator):
        self.terminal = terminal

    def open(self):
        logger.info("Display connected")
        self.terminal.add_listener(self.push)
        self.push(self.terminal.to_dict())

    def push(self, snapshot: dict):
        try:
            self.write_message(json.dumps(snapshot))
        except tornado.websocket.WebSocketClosedError:
            self.terminal.remove_listener(self.push)

    async def on_message(self, message):
        try:
            data = json.loads(message)
        except ValueError:
            logger.warning(f"Ignoring malformed display message: {message!r}")
            return
        if "key" in data:
            await self.terminal.press_key(data["key"])
        elif "tap" in data:
            await self.terminal.tap_card(data["tap"])

    def on_close(self):
        logger.info("Display disconnected")
        self.terminal.remove_listener(self.push)

    def check_origin(self, origin):
        return True


class ConsoleSocket(tornado.websocket.WebSocketHandler):
    """Pushes live console changes as {"kind", "payload", "stats"}."""

    def initialize(self, console: LiveConsole):
        self.console = console

    def open(self):
        self.console.add_listener(self.push)
        self.write_message(json.dumps({
            "kind": "snapshot",
            "payload": {"session": self.console.session, "rows": self.console.visible_rows()},
            "stats": self.console.stats()
        }))

    def push(self, kind: str, payload: dict):
        if self.ws_connection is None:
            return
        try:
            self.write_message(json.dumps({"kind": kind, "payload": payload, "stats": self.console.stats()}))
        except tornado.websocket.WebSocketClosedError:
            pass

    def on_close(self):
        self.console.remove_listener(self.push)

    def check_origin(self, origin):
        return True


class KeypadHandler(tornado.web.RequestHandler):
    def initialize(self, terminal: TerminalSimulator):
        self.terminal = terminal

    async def post(self):
        key = self.get_argument("key")
        await self.terminal.press_key(key)
        self.write(self.terminal.to_dict())

    def get(self):
        self.write("This is a POST-only endpoint.")


class TapHandler(tornado.web.RequestHandler):
    def initialize(self, terminal: TerminalSimulator):
        self.terminal = terminal

    async def post(self):
        rfid_tag = self.get_argument("rfid_tag")
        result = await self.terminal.tap_card(rfid_tag)
        self.write({"scan": result, "terminal": self.terminal.to_dict()})


class StateHandler(tornado.web.RequestHandler):
    def initialize(self, terminal: TerminalSimulator):
        self.terminal = terminal

    def get(self):
        self.write(self.terminal.to_dict())


class CardsHandler(tornado.web.RequestHandler):
    def initialize(self, terminal: TerminalSimulator):
        self.terminal = terminal

    def get(self):
        cards = [
            {"rfid_tag": s.get("rfid_tag"), "student_id": s.get("student_id"),
             "name": f"{s.get('first_name', '')} {s.get('last_name', '')}".strip()}
            for s in self.terminal.cards if s.get("rfid_tag")
        ]
        self.write({"cards": cards, "count": len(cards)})


class ConsoleHandler(tornado.web.RequestHandler):
    def initialize(self, console: LiveConsole):
        self.console = console

    def get(self):
        rows = self.console.visible_rows()
        rows.reverse()
        self.write({
            "standby": self.console.standby,
            "session": self.console.session,
            "rows": rows,
            "stats": self.console.stats()
        })


def make_app(terminal: TerminalSimulator, console: LiveConsole) -> tornado.web.Application:
    return tornado.web.Application([
        (r"/ws/display", DisplaySocket, dict(terminal=terminal)),
        (r"/ws/console", ConsoleSocket, dict(console=console)),
        (r"/keypad", KeypadHandler, dict(terminal=terminal)),
        (r"/tap", TapHandler, dict(terminal=terminal)),
        (r"/state", StateHandler, dict(terminal=terminal)),
        (r"/cards", CardsHandler, dict(terminal=terminal)),
        (r"/console", ConsoleHandler, dict(console=console)),
    ])


async def main():
    client = get_client(BACKEND_URL)

    health = await client.health_check()
    if health.get('status') == 'online':
        logger.info(f"Backend connected: {BACKEND_URL}")
    else:
        logger.warning(f"Backend not available: {health.get('error', 'Unknown error')}")

    terminal = TerminalSimulator(client, terminal_id=TERMINAL_ID)
    console = LiveConsole(client)

    app = make_app(terminal, console)
    app.listen(TERMINAL_PORT, address="0.0.0.0")

    logger.info("=" * 60)
    logger.info(f"RFID Terminal Server on port {TERMINAL_PORT} ({TERMINAL_ID})")
    logger.info(f"Backend: {BACKEND_URL}")
    logger.info("=" * 60)

    await terminal.boot()
    console_task = asyncio.create_task(console.run())
    try:
        await asyncio.Event().wait()
    finally:
        console.stop()
        console_task.cancel()
        await close_client()


if __name__ == "__main__":
    asyncio.run(main())
