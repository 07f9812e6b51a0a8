"""
Pytest configuration and fixtures for testing the booking API.
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta
from types import SimpleNamespace

import jwt
import pytest
import stripe
from faker import Faker

# Add the parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from glossed import create_app, db
from glossed.models import User, ServiceRequest
from glossed.services.change_feed import PENDING_KEY, change_feed
from glossed.services.lifecycle import LifecycleService
from glossed.services.notifications import notification_hub
from glossed.services.settlement import SettlementService

fake = Faker()

JWT_SECRET = 'test-secret-key-for-testing'

RIGA = (56.9496, 24.1052)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    os.environ.pop('REDIS_URL', None)
    tmp_dir = tempfile.mkdtemp()

    app = create_app('testing', {
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{os.path.join(tmp_dir, "test.db")}',
        # Writers from concurrent sessions queue on the file lock instead of failing
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'JWT_SECRET_KEY': JWT_SECRET,
    })

    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client for each test function."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh tables, feed and notification state for each test."""
    with app.app_context():
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        yield db.session
        db.session.rollback()
        db.session().info.pop(PENDING_KEY, None)
        notification_hub.close_all()
        notification_hub.counters.clear()
        change_feed.reset()


@pytest.fixture
def emitted(monkeypatch):
    """Capture socket emits instead of sending them."""
    sent = []
    monkeypatch.setattr(
        notification_hub, '_emit',
        lambda event, payload, room=None: sent.append((event, payload, room))
    )
    return sent


@pytest.fixture
def fake_stripe(monkeypatch):
    """Stand-in for the Stripe refund API that records every call."""
    state = SimpleNamespace(calls=[], refunds=[], error=None, status='succeeded')

    def create(**params):
        state.calls.append(params)
        if state.error is not None:
            raise state.error
        refund = SimpleNamespace(
            id=f're_test_{len(state.calls)}',
            status=state.status,
            amount=params.get('amount'),
        )
        state.refunds.append(refund)
        return refund

    def list_refunds(**params):
        return SimpleNamespace(data=list(state.refunds))

    monkeypatch.setattr(stripe.Refund, 'create', staticmethod(create))
    monkeypatch.setattr(stripe.Refund, 'list', staticmethod(list_refunds))
    return state


def make_user(**overrides):
    """Create a user with sensible defaults and return it."""
    data = {
        'username': fake.user_name() + fake.pystr(min_chars=4, max_chars=6),
        'email': fake.unique.email(),
        'first_name': fake.first_name(),
        'last_name': fake.last_name(),
    }
    data.update(overrides)
    user = User(**data)
    db.session.add(user)
    db.session.commit()
    return user


def make_pro(**overrides):
    data = {
        'is_pro': True,
        'stripe_account_id': 'acct_' + fake.pystr(min_chars=10, max_chars=10),
        'latitude': RIGA[0],
        'longitude': RIGA[1],
        'radius_km': 15,
        'services': ['Nails', 'Hair'],
    }
    data.update(overrides)
    return make_user(**data)


def make_token(user_id, expires_in=3600):
    return jwt.encode(
        {'user_id': user_id, 'exp': datetime.utcnow() + timedelta(seconds=expires_in)},
        JWT_SECRET,
        algorithm='HS256',
    )


def auth(user_id):
    return {'Authorization': f'Bearer {make_token(user_id)}'}


def request_data(**overrides):
    data = {
        'services': ['Gel nails'],
        'date': '2026-11-02',
        'time_slot': 'Afternoon (13-18)',
        'address': fake.street_address(),
        'latitude': RIGA[0] + 0.01,
        'longitude': RIGA[1] + 0.01,
        'notes': 'Second floor',
    }
    data.update(overrides)
    return data


def make_request(client_user, **overrides):
    service_request, _ = LifecycleService.create_request(client_user.id, request_data(**overrides))
    return service_request


def make_offer(service_request, pro, service_price='40.00', travel_fee='5.00'):
    fresh = db.session.get(ServiceRequest, service_request.id, populate_existing=True)
    return LifecycleService.create_offer(fresh, pro.id, {
        'service_price': service_price,
        'travel_fee': travel_fee,
    })


def pay(offer, reference=None):
    payment, _ = SettlementService.record_payment(offer.id, reference or f'pi_{offer.id}')
    return payment


@pytest.fixture
def client_user(db_session):
    return make_user()


@pytest.fixture
def pro_user(db_session):
    return make_pro()


@pytest.fixture
def booking(client_user, pro_user):
    """A paid and confirmed 45.00 booking (40.00 service + 5.00 travel)."""
    service_request = make_request(client_user)
    offer = make_offer(service_request, pro_user)
    payment = pay(offer)
    return SimpleNamespace(
        client=client_user,
        pro=pro_user,
        request_id=service_request.id,
        offer_id=offer.id,
        payment_id=payment.id,
    )
