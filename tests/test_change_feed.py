"""
Tests for the committed-change feed.
"""

from glossed import db
from glossed.models import Offer, OfferStatus, ServiceRequest, RequestStatus
from glossed.services.change_feed import (
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    change_feed,
    conditional_update,
)
from glossed.services.lifecycle import LifecycleService

from conftest import make_offer, make_request, make_user


def _collect(table, kind, **filters):
    received = []
    change_feed.subscribe(table, kind, received.append, **filters)
    return received


def test_insert_is_published_on_commit(db_session):
    received = _collect('users', ChangeKind.INSERT)

    user = make_user()

    assert len(received) == 1
    assert received[0].row_id == user.id
    assert received[0].to_dict()['event'] == 'insert'


def test_rollback_drops_pending_changes(client_user):
    received = _collect('requests', ChangeKind.UPDATE)
    service_request = make_request(client_user)

    conditional_update(ServiceRequest, service_request.id, RequestStatus.PENDING,
                       {'status': RequestStatus.CANCELLED})
    db.session.rollback()

    assert received == []
    refreshed = db.session.get(ServiceRequest, service_request.id, populate_existing=True)
    assert refreshed.status == RequestStatus.PENDING


def test_conditional_update_matches_expected_status_only(client_user):
    service_request = make_request(client_user)

    assert conditional_update(ServiceRequest, service_request.id, RequestStatus.PROPOSED,
                              {'status': RequestStatus.CONFIRMED}) is None

    updated = conditional_update(ServiceRequest, service_request.id, RequestStatus.PENDING,
                                 {'status': RequestStatus.CANCELLED})
    db.session.commit()
    assert updated.status == RequestStatus.CANCELLED


def test_column_filter(client_user, pro_user):
    other = make_user()
    mine = _collect('offers', ChangeKind.INSERT, column='client_id', value=client_user.id)
    theirs = _collect('offers', ChangeKind.INSERT, column='client_id', value=other.id)

    make_offer(make_request(client_user), pro_user)

    assert len(mine) == 1
    assert theirs == []


def test_successive_states_arrive_in_order(booking):
    received = _collect('offers', ChangeKind.UPDATE)

    LifecycleService.request_cancellation(booking.offer_id, booking.client.id)
    LifecycleService.decline_cancellation(booking.offer_id, booking.pro.id)

    assert [c.row['status'] for c in received] == [OfferStatus.CANCEL_REQUESTED, OfferStatus.CONFIRMED]
    assert all(c.row_id == booking.offer_id for c in received)


def test_failing_subscriber_does_not_block_others():
    feed = ChangeFeed()
    received = []

    def broken(change):
        raise RuntimeError('boom')

    feed.subscribe('offers', ChangeKind.INSERT, broken)
    feed.subscribe('offers', ChangeKind.INSERT, received.append)
    feed.publish(ChangeEvent('offers', ChangeKind.INSERT, {'id': 1}))

    assert len(received) == 1


def test_unsubscribed_callback_is_not_called():
    feed = ChangeFeed()
    received = []
    subscription = feed.subscribe('offers', ChangeKind.UPDATE, received.append)
    feed.unsubscribe(subscription)

    feed.publish(ChangeEvent('offers', ChangeKind.UPDATE, {'id': 1, 'status': 'confirmed'}))

    assert received == []
    assert feed.subscription_count() == 0


def test_snapshot_is_json_friendly(booking):
    received = _collect('offers', ChangeKind.UPDATE)
    LifecycleService.complete_offer(booking.offer_id)

    row = received[0].row
    assert row['status'] == OfferStatus.COMPLETED
    assert isinstance(row['completed_at'], str)
    assert db.session.get(Offer, booking.offer_id).status == OfferStatus.COMPLETED
