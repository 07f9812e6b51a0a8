"""Change-notification fan-out.

Each authenticated user gets one ``NotificationSession`` holding the change
feed subscriptions filtered to rows where the user is the client or the
professional. Sessions are reference counted by ``NotificationHub``, so a
second socket or a repeated subscribe reuses the same subscription set
instead of counting every event twice.

Feed callbacks only classify and re-broadcast. Counter writes, lookups and
socket emits are handed to ``spawn`` so a callback never waits on I/O.
"""

import logging
import threading
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional

from flask import has_app_context
from sqlalchemy.orm import Session

from glossed import db, socketio
from glossed.errors import SubscriptionLeak, ValidationError
from glossed.models import OfferStatus, PaymentStatus, ServiceRequest
from glossed.services import redis_client
from glossed.services.change_feed import ChangeEvent, ChangeKind, change_feed

logger = logging.getLogger(__name__)

SEEN_LIMIT = 512


class NotificationCategory:
    CLIENT_OFFERS = 'client_offers'  # Offers received by a client
    PRO_REQUESTS = 'pro_requests'  # New nearby requests for a professional
    PAYMENTS = 'payments'  # Confirmed payments of a client
    
    ALL = (CLIENT_OFFERS, PRO_REQUESTS, PAYMENTS)


class Perspective:
    CLIENT = 'client'
    PROFESSIONAL = 'professional'


# (table, event, perspective, filter column)
SUBSCRIPTIONS = (
    ('offers', ChangeKind.INSERT, Perspective.CLIENT, 'client_id'),
    ('offers', ChangeKind.UPDATE, Perspective.CLIENT, 'client_id'),
    ('offers', ChangeKind.UPDATE, Perspective.PROFESSIONAL, 'professional_id'),
    ('payments', ChangeKind.INSERT, Perspective.CLIENT, 'client_id'),
    ('payments', ChangeKind.INSERT, Perspective.PROFESSIONAL, 'professional_id'),
    ('payments', ChangeKind.UPDATE, Perspective.CLIENT, 'client_id'),
    ('payments', ChangeKind.UPDATE, Perspective.PROFESSIONAL, 'professional_id'),
    ('request_notifications', ChangeKind.INSERT, Perspective.PROFESSIONAL, 'professional_id'),
)

WATCHED_TABLES = tuple(sorted({table for table, _, _, _ in SUBSCRIPTIONS}))

GENERIC_REQUEST_MESSAGE = 'New booking request'


def user_room(user_id):
    return f'user_{user_id}'


@dataclass(frozen=True)
class Notification:
    """User-facing effect of one change: an optional counter bump and a toast."""
    user_id: int
    category: Optional[str]
    message: str
    change: ChangeEvent
    lookup_request_id: Optional[int] = None
    
    def to_dict(self, message=None, counters=None):
        return {
            'category': self.category,
            'message': message or self.message,
            'table': self.change.table,
            'event': self.change.kind,
            'row_id': self.change.row_id,
            'counters': counters,
        }


def _money(cents, currency):
    return f'{(cents or 0) / 100:.2f} {currency or "EUR"}'


def classify(change: ChangeEvent, perspective, user_id) -> Optional[Notification]:
    """Translate a change seen from one side of the booking into a notification."""
    row = change.row
    status = row.get('status')
    
    if change.table == 'offers':
        service = row.get('service') or 'your booking'
        if perspective == Perspective.CLIENT:
            if change.kind == ChangeKind.INSERT and status == OfferStatus.PROPOSED:
                return Notification(user_id, NotificationCategory.CLIENT_OFFERS,
                                    f'New offer received for "{service}"', change)
            if change.kind == ChangeKind.UPDATE and status == OfferStatus.CONFIRMED:
                if row.get('cancel_requested_at'):
                    return Notification(user_id, None,
                                        f'Your cancellation request for "{service}" was declined', change)
                return Notification(user_id, None, f'Your booking for "{service}" is confirmed', change)
            if change.kind == ChangeKind.UPDATE and status == OfferStatus.CANCELLED:
                return Notification(user_id, None, f'Your booking for "{service}" was cancelled', change)
        else:
            if change.kind == ChangeKind.UPDATE and status == OfferStatus.CONFIRMED and not row.get('cancel_requested_at'):
                return Notification(user_id, None,
                                    f'Your offer for "{service}" has been confirmed and paid!', change)
            if change.kind == ChangeKind.UPDATE and status == OfferStatus.CANCEL_REQUESTED:
                return Notification(user_id, None,
                                    f'The client requested a cancellation for "{service}"', change)
        return None
    
    if change.table == 'payments':
        currency = row.get('currency')
        if change.kind == ChangeKind.INSERT:
            if row.get('is_surplus'):
                return None  # The refund update speaks for it
            if perspective == Perspective.CLIENT:
                return Notification(user_id, NotificationCategory.PAYMENTS,
                                    f'Payment of {_money(row.get("amount"), currency)} confirmed', change)
            return Notification(user_id, None,
                                f'Payment received: {_money(row.get("net_amount"), currency)}', change)
        if (change.kind == ChangeKind.UPDATE and perspective == Perspective.CLIENT
                and status in PaymentStatus.TERMINAL):
            return Notification(user_id, None,
                                f'Refund of {_money(row.get("refund_amount"), currency)} issued', change)
        return None
    
    if change.table == 'request_notifications' and change.kind == ChangeKind.INSERT:
        return Notification(user_id, NotificationCategory.PRO_REQUESTS, GENERIC_REQUEST_MESSAGE,
                            change, lookup_request_id=row.get('request_id'))
    
    return None


class EventBus:
    """Process-local re-broadcast of raw changes, keyed by table."""
    
    def __init__(self):
        self._lock = threading.Lock()
        self._listeners = defaultdict(list)
    
    def subscribe(self, table, listener: Callable[[ChangeEvent], None]):
        """Register a listener; returns a function that removes it."""
        with self._lock:
            self._listeners[table].append(listener)
        
        def unsubscribe():
            with self._lock:
                if listener in self._listeners[table]:
                    self._listeners[table].remove(listener)
        return unsubscribe
    
    def publish(self, change: ChangeEvent):
        with self._lock:
            listeners = list(self._listeners.get(change.table, ()))
        for listener in listeners:
            try:
                listener(change)
            except Exception as e:
                logger.error(f'Event bus listener failed on {change.table}: {e}')
    
    def listener_count(self, table=None):
        with self._lock:
            if table is not None:
                return len(self._listeners.get(table, ()))
            return sum(len(listeners) for listeners in self._listeners.values())
    
    def clear(self):
        with self._lock:
            self._listeners.clear()


class NotificationCounters:
    """Per-user category counters. Redis when available, memory otherwise."""
    
    def __init__(self):
        self._lock = threading.Lock()
        self._memory = defaultdict(lambda: dict.fromkeys(NotificationCategory.ALL, 0))
    
    def get(self, user_id):
        stored = redis_client.get_counters(user_id)
        if stored is not None:
            return {c: int(stored.get(c, 0)) for c in NotificationCategory.ALL}
        with self._lock:
            return dict(self._memory[user_id])
    
    def increment(self, user_id, category):
        value = redis_client.increment_counter(user_id, category)
        if value is not None:
            return value
        with self._lock:
            self._memory[user_id][category] += 1
            return self._memory[user_id][category]
    
    def reset(self, user_id, category):
        if not redis_client.reset_counter(user_id, category):
            with self._lock:
                self._memory[user_id][category] = 0
        return self.get(user_id)
    
    def clear(self):
        with self._lock:
            self._memory.clear()


def lookup_request_service(request_id):
    """Service label of a request, read outside the committing session."""
    with Session(db.engine) as session:
        service_request = session.get(ServiceRequest, request_id)
        return service_request.service if service_request else None


def run_inline(fn, *args, **kwargs):
    return fn(*args, **kwargs)


class NotificationSession:
    """Subscriptions, dedup state and event bus of one user."""
    
    def __init__(self, hub, user_id):
        self.hub = hub
        self.user_id = user_id
        self.events = EventBus()
        self.refcount = 0
        self._subscriptions = []
        self._lock = threading.Lock()
        self._seen = deque(maxlen=SEEN_LIMIT)
        self._seen_keys = set()
    
    @property
    def active(self):
        return bool(self._subscriptions)
    
    @property
    def notifications(self):
        return self.hub.counters.get(self.user_id)
    
    def reset_notification(self, category):
        return self.hub.reset_notification(self.user_id, category)
    
    def open(self):
        if self._subscriptions:
            raise SubscriptionLeak(
                f'Session of user {self.user_id} still holds {len(self._subscriptions)} subscriptions'
            )
        for table, kind, perspective, column in SUBSCRIPTIONS:
            self._subscriptions.append(self.hub.feed.subscribe(
                table, kind, partial(self._on_change, perspective),
                column=column, value=self.user_id
            ))
        for table in WATCHED_TABLES:
            self.events.subscribe(table, self._forward)
        logger.info(f'Notification session opened for user {self.user_id}')
    
    def close(self):
        for subscription in self._subscriptions:
            self.hub.feed.unsubscribe(subscription)
        self._subscriptions = []
        self.events.clear()
        logger.info(f'Notification session closed for user {self.user_id}')
    
    def _first_delivery(self, key):
        with self._lock:
            if key in self._seen_keys:
                return False
            if len(self._seen) == self._seen.maxlen:
                self._seen_keys.discard(self._seen[0])
            self._seen.append(key)
            self._seen_keys.add(key)
            return True
    
    def _on_change(self, perspective, change: ChangeEvent):
        if not self._first_delivery(change.identity() + (perspective,)):
            return
        
        try:
            notification = classify(change, perspective, self.user_id)
        except Exception as e:
            logger.error(f'Could not classify {change.table}/{change.kind} for user {self.user_id}: {e}')
            notification = None
        
        if notification is not None:
            self.hub.spawn(self.hub.deliver, notification)
        
        self.events.publish(change)
    
    def _forward(self, change: ChangeEvent):
        self.hub.spawn(self.hub.emit, 'change', change.to_dict(), user_room(self.user_id))


class NotificationHub:
    """Registry of notification sessions keyed by user, and socket bindings."""
    
    def __init__(self, feed=None, counters=None, emit=None, spawn=None):
        self.feed = feed or change_feed
        self.counters = counters or NotificationCounters()
        self.app = None
        self._emit = emit
        self._spawn = spawn
        self._lock = threading.RLock()
        self._sessions = {}
        self._bindings = {}
    
    def init_app(self, app):
        self.app = app
        if app.config.get('NOTIFICATIONS_INLINE_DELIVERY') and self._spawn is None:
            self._spawn = run_inline
    
    # -- session scope -------------------------------------------------
    
    def acquire(self, user_id) -> NotificationSession:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = NotificationSession(self, user_id)
                session.open()
                self._sessions[user_id] = session
            session.refcount += 1
            return session
    
    def release(self, user_id):
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return
            session.refcount -= 1
            if session.refcount <= 0:
                session.close()
                del self._sessions[user_id]
    
    @contextmanager
    def session(self, user_id):
        """Scope a notification session: subscribed on entry, released on exit."""
        notification_session = self.acquire(user_id)
        try:
            yield notification_session
        finally:
            self.release(user_id)
    
    def get_session(self, user_id) -> Optional[NotificationSession]:
        with self._lock:
            return self._sessions.get(user_id)
    
    def bind(self, sid, user_id) -> NotificationSession:
        """Attach a socket to a user's session, releasing its previous one first."""
        with self._lock:
            previous = self._bindings.get(sid)
            if previous == user_id:
                return self._sessions[user_id]
            
            if previous is not None:
                previous_session = self._sessions.get(previous)
                self.release(previous)
                del self._bindings[sid]
                if previous_session is not None and previous_session.refcount <= 0 and previous_session.active:
                    raise SubscriptionLeak(f'Session of user {previous} kept its subscriptions after release')
            
            session = self.acquire(user_id)
            self._bindings[sid] = user_id
            return session
    
    def unbind(self, sid):
        with self._lock:
            user_id = self._bindings.pop(sid, None)
            if user_id is not None:
                self.release(user_id)
            return user_id
    
    def bound_user(self, sid):
        with self._lock:
            return self._bindings.get(sid)
    
    def active_session_count(self):
        with self._lock:
            return len(self._sessions)
    
    def close_all(self):
        with self._lock:
            for session in self._sessions.values():
                session.close()
            self._sessions = {}
            self._bindings = {}
    
    # -- counters ------------------------------------------------------
    
    def notifications(self, user_id):
        return self.counters.get(user_id)
    
    def reset_notification(self, user_id, category):
        if category not in NotificationCategory.ALL:
            raise ValidationError(f'Unknown notification category: {category}')
        return self.counters.reset(user_id, category)
    
    # -- effects -------------------------------------------------------
    
    def spawn(self, fn, *args):
        spawn = self._spawn or socketio.start_background_task
        spawn(fn, *args)
    
    def emit(self, event, payload, room):
        try:
            (self._emit or socketio.emit)(event, payload, room=room)
        except Exception as e:
            logger.error(f'Socket emit {event} to {room} failed: {e}')
    
    def deliver(self, notification: Notification):
        if self.app is not None and not has_app_context():
            with self.app.app_context():
                return self._deliver(notification)
        return self._deliver(notification)
    
    def _deliver(self, notification: Notification):
        counters = None
        if notification.category:
            try:
                self.counters.increment(notification.user_id, notification.category)
                counters = self.counters.get(notification.user_id)
            except Exception as e:
                logger.error(f'Counter increment failed for user {notification.user_id}: {e}')
        
        message = notification.message
        if notification.lookup_request_id is not None:
            try:
                service = lookup_request_service(notification.lookup_request_id)
                if service:
                    message = f'{GENERIC_REQUEST_MESSAGE}: {service}'
            except Exception as e:
                logger.warning(f'Request {notification.lookup_request_id} lookup failed, using generic toast: {e}')
        
        self.emit('notification', notification.to_dict(message, counters), user_room(notification.user_id))


notification_hub = NotificationHub()
