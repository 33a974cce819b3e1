"""
Change Feed for RFID Class Attendance
======================================
Row-level change notifications for committed inserts and updates.

Changes are collected while a SQLAlchemy session flushes and published only
after the transaction commits, so subscribers never see rolled-back rows.

Usage:
    feed = ChangeFeed()
    feed.attach(session_factory)
    sub = feed.subscribe("attendance_logs", on_change, operations=("INSERT",), session_id=7)
    ...
    sub.close()
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import event

from .models import AttendanceLog, ClassSession

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"

# Tables published on the feed
WATCHED_MODELS = (AttendanceLog, ClassSession)

_PENDING_KEY = "change_feed_pending"


@dataclass
class ChangeEvent:
    """One committed row change."""
    table: str
    operation: str
    row: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"table": self.table, "operation": self.operation, "row": self.row}


class Subscription:
    """Handle returned by ChangeFeed.subscribe; close() stops delivery."""

    def __init__(
        self,
        feed: 'ChangeFeed',
        table: str,
        callback: Callable[[ChangeEvent], None],
        operations: Optional[Tuple[str, ...]] = None,
        filters: Optional[Dict[str, Any]] = None
    ):
        self.feed = feed
        self.table = table
        self.callback = callback
        self.operations = operations
        self.filters = filters or {}
        self.closed = False

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if self.operations and change.operation not in self.operations:
            return False
        return all(change.row.get(column) == value for column, value in self.filters.items())

    def close(self):
        if not self.closed:
            self.closed = True
            self.feed.unsubscribe(self)


class ChangeFeed:
    """
    In-process publisher of committed row changes.
    Callbacks run on the committing thread and must not block.
    """

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def attach(self, session_factory):
        """Hook the feed into every session created by `session_factory`."""
        event.listen(session_factory, "after_flush", self._collect)
        event.listen(session_factory, "after_commit", self._publish)
        event.listen(session_factory, "after_rollback", self._discard)

    def subscribe(
        self,
        table: str,
        callback: Callable[[ChangeEvent], None],
        operations: Optional[Tuple[str, ...]] = None,
        **filters
    ) -> Subscription:
        """
        Register a callback for changes on `table`.

        Args:
            table: Table name (e.g. "attendance_logs", "sessions")
            callback: Called with each matching ChangeEvent
            operations: Optional subset of (INSERT, UPDATE)
            **filters: Column equality filters applied to the changed row

        Returns:
            Subscription handle
        """
        subscription = Subscription(self, table, callback, operations, filters)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug(f"[FEED] Subscribed to {table} {filters or ''}")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, change: ChangeEvent):
        """Deliver a change to every matching subscription."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(change)]

        for subscription in targets:
            try:
                subscription.callback(change)
            except Exception as e:
                logger.error(f"[FEED] Subscriber callback failed for {change.table}: {e}", exc_info=True)

    # ============== Session Hooks ==============

    def _collect(self, session, flush_context):
        pending = session.info.setdefault(_PENDING_KEY, [])

        for obj in session.new:
            if isinstance(obj, WATCHED_MODELS):
                pending.append(ChangeEvent(obj.__tablename__, INSERT, obj.to_dict()))

        for obj in session.dirty:
            if isinstance(obj, WATCHED_MODELS) and session.is_modified(obj):
                pending.append(ChangeEvent(obj.__tablename__, UPDATE, obj.to_dict()))

    def _publish(self, session):
        pending = session.info.pop(_PENDING_KEY, [])
        for change in pending:
            self.publish(change)

    def _discard(self, session):
        session.info.pop(_PENDING_KEY, None)
