"""Row-level change feed over the SQLAlchemy session.

Inserts are captured from mapper events and status changes from
``conditional_update``. Nothing is delivered until the surrounding
transaction commits; a rollback drops whatever was pending. Changes are
delivered in the order they were written, so successive states of the
same row always arrive in order.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Optional

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, object_session

from glossed import db

logger = logging.getLogger(__name__)

PENDING_KEY = 'glossed_pending_changes'


class ChangeKind:
    INSERT = 'insert'
    UPDATE = 'update'


@dataclass(frozen=True)
class ChangeEvent:
    """A committed write: the table, the kind of write and the new row."""
    table: str
    kind: str
    row: dict
    
    @property
    def row_id(self):
        return self.row.get('id')
    
    def identity(self):
        """Key identifying one delivered state of one row."""
        return (
            self.table,
            self.kind,
            self.row.get('id'),
            self.row.get('status'),
            self.row.get('updated_at'),
        )
    
    def to_dict(self):
        return {'table': self.table, 'event': self.kind, 'new': self.row}


@dataclass(eq=False)
class Subscription:
    table: str
    kind: str
    callback: Callable[[ChangeEvent], None]
    column: Optional[str] = None
    value: Any = None
    active: bool = True
    
    def matches(self, change: ChangeEvent) -> bool:
        if not self.active:
            return False
        if change.table != self.table or change.kind != self.kind:
            return False
        return self.column is None or change.row.get(self.column) == self.value


class ChangeFeed:
    """Per-table, per-filter subscriptions to committed row changes."""
    
    def __init__(self):
        self._lock = threading.RLock()
        self._subscriptions = []
    
    def subscribe(self, table, kind, callback, column=None, value=None) -> Subscription:
        subscription = Subscription(table, kind, callback, column, value)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription
    
    def unsubscribe(self, subscription: Subscription):
        subscription.active = False
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
    
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
    
    def publish(self, change: ChangeEvent):
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(change)]
        
        for subscription in targets:
            try:
                subscription.callback(change)
            except Exception as e:
                logger.error(f'Change feed subscriber failed on {change.table}/{change.kind}: {e}')
    
    def reset(self):
        with self._lock:
            for subscription in self._subscriptions:
                subscription.active = False
            self._subscriptions = []


change_feed = ChangeFeed()


def _jsonable(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def snapshot(row) -> dict:
    """Plain column snapshot of a model instance."""
    mapper = inspect(row).mapper
    return {attr.key: _jsonable(getattr(row, attr.key)) for attr in mapper.column_attrs}


def record_change(session, table, kind, row_snapshot):
    session.info.setdefault(PENDING_KEY, []).append(ChangeEvent(table, kind, row_snapshot))


def conditional_update(model, row_id, expected_statuses, values, *criteria):
    """Update one row only while its status is still one of ``expected_statuses``.
    
    Returns the refreshed row, or None when no row matched (someone else
    moved it first). The change is queued for the feed and delivered on
    commit.
    """
    if isinstance(expected_statuses, str):
        expected_statuses = (expected_statuses,)
    
    values = dict(values)
    if hasattr(model, 'updated_at'):
        values.setdefault('updated_at', datetime.utcnow())
    
    query = db.session.query(model).filter(model.id == row_id)
    if expected_statuses is not None:
        query = query.filter(model.status.in_(expected_statuses))
    for criterion in criteria:
        query = query.filter(criterion)
    
    rows = query.update(values, synchronize_session=False)
    if rows == 0:
        return None
    
    row = db.session.get(model, row_id, populate_existing=True)
    record_change(db.session(), model.__tablename__, ChangeKind.UPDATE, snapshot(row))
    return row


def _after_insert(mapper, connection, target):
    session = object_session(target)
    if session is not None:
        record_change(session, mapper.local_table.name, ChangeKind.INSERT, snapshot(target))


def _after_commit(session):
    pending = session.info.pop(PENDING_KEY, None)
    if not pending:
        return
    for change in pending:
        change_feed.publish(change)


def _after_rollback(session):
    session.info.pop(PENDING_KEY, None)


def install_change_feed():
    """Hook the feed into the ORM. Safe to call more than once."""
    if not event.contains(db.Model, 'after_insert', _after_insert):
        event.listen(db.Model, 'after_insert', _after_insert, propagate=True)
    if not event.contains(Session, 'after_commit', _after_commit):
        event.listen(Session, 'after_commit', _after_commit)
    if not event.contains(Session, 'after_rollback', _after_rollback):
        event.listen(Session, 'after_rollback', _after_rollback)
