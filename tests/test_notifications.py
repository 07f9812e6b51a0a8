"""
Tests for notification sessions, counters and toasts.
"""

import pytest

from glossed.errors import SubscriptionLeak, ValidationError
from glossed.models import OfferStatus, PaymentStatus
from glossed.services import notifications
from glossed.services.change_feed import ChangeEvent, ChangeKind, change_feed
from glossed.services.lifecycle import LifecycleService
from glossed.services.notifications import (
    GENERIC_REQUEST_MESSAGE,
    SUBSCRIPTIONS,
    NotificationCategory,
    Perspective,
    classify,
    notification_hub,
    user_room,
)
from glossed.services.settlement import SettlementMode, SettlementService

from conftest import make_offer, make_request, pay


def _toasts(emitted, user_id):
    return [p['message'] for event, p, room in emitted
            if event == 'notification' and room == user_room(user_id)]


class TestClassify:

    def _offer_update(self, status, **row):
        return ChangeEvent('offers', ChangeKind.UPDATE, dict(id=1, status=status, service='Hair', **row))

    def test_new_offer_counts_for_client(self):
        change = ChangeEvent('offers', ChangeKind.INSERT, {'id': 1, 'status': OfferStatus.PROPOSED, 'service': 'Hair'})
        notification = classify(change, Perspective.CLIENT, 7)
        assert notification.category == NotificationCategory.CLIENT_OFFERS
        assert notification.user_id == 7

    def test_declined_cancellation_toast(self):
        change = self._offer_update(OfferStatus.CONFIRMED, cancel_requested_at='2026-10-01T10:00:00')
        assert 'declined' in classify(change, Perspective.CLIENT, 7).message
        # Professional is not told their own decline was confirmed and paid
        assert classify(change, Perspective.PROFESSIONAL, 8) is None

    def test_cancel_request_toast_for_professional(self):
        change = self._offer_update(OfferStatus.CANCEL_REQUESTED)
        notification = classify(change, Perspective.PROFESSIONAL, 8)
        assert notification.category is None
        assert 'cancellation' in notification.message

    def test_refund_toast_only_for_client(self):
        change = ChangeEvent('payments', ChangeKind.UPDATE, {
            'id': 3, 'status': PaymentStatus.PARTIALLY_REFUNDED, 'refund_amount': 4050, 'currency': 'EUR',
        })
        assert classify(change, Perspective.CLIENT, 7).message == 'Refund of 40.50 EUR issued'
        assert classify(change, Perspective.PROFESSIONAL, 8) is None

    def test_surplus_payment_insert_is_silent(self):
        change = ChangeEvent('payments', ChangeKind.INSERT, {
            'id': 4, 'status': PaymentStatus.PAID, 'is_surplus': True, 'amount': 4500, 'net_amount': 4050,
        })
        assert classify(change, Perspective.CLIENT, 7) is None
        assert classify(change, Perspective.PROFESSIONAL, 8) is None

    def test_claim_update_is_silent(self):
        change = ChangeEvent('payments', ChangeKind.UPDATE, {'id': 3, 'status': PaymentStatus.PAID})
        assert classify(change, Perspective.CLIENT, 7) is None

    def test_request_notification_needs_lookup(self):
        change = ChangeEvent('request_notifications', ChangeKind.INSERT, {'id': 5, 'request_id': 11})
        notification = classify(change, Perspective.PROFESSIONAL, 8)
        assert notification.category == NotificationCategory.PRO_REQUESTS
        assert notification.lookup_request_id == 11


class TestSessionScope:

    def test_sessions_are_reference_counted(self, client_user):
        with notification_hub.session(client_user.id) as first:
            with notification_hub.session(client_user.id) as second:
                assert first is second
                assert change_feed.subscription_count() == len(SUBSCRIPTIONS)
            assert change_feed.subscription_count() == len(SUBSCRIPTIONS)
        assert change_feed.subscription_count() == 0
        assert notification_hub.active_session_count() == 0

    def test_reopening_a_live_session_is_a_leak(self, client_user):
        with notification_hub.session(client_user.id) as session:
            with pytest.raises(SubscriptionLeak):
                session.open()

    def test_rebinding_a_socket_releases_the_previous_user(self, client_user, pro_user):
        notification_hub.bind('sid-1', client_user.id)
        notification_hub.bind('sid-1', pro_user.id)

        assert notification_hub.get_session(client_user.id) is None
        assert notification_hub.bound_user('sid-1') == pro_user.id
        assert change_feed.subscription_count() == len(SUBSCRIPTIONS)

        assert notification_hub.unbind('sid-1') == pro_user.id
        assert change_feed.subscription_count() == 0

    def test_binding_the_same_user_twice_is_a_no_op(self, client_user):
        notification_hub.bind('sid-1', client_user.id)
        notification_hub.bind('sid-1', client_user.id)
        assert notification_hub.get_session(client_user.id).refcount == 1


class TestDelivery:

    def test_new_offer_bumps_client_counter(self, client_user, pro_user, emitted):
        service_request = make_request(client_user)
        with notification_hub.session(client_user.id):
            make_offer(service_request, pro_user)

        counters = notification_hub.notifications(client_user.id)
        assert counters[NotificationCategory.CLIENT_OFFERS] == 1
        assert _toasts(emitted, client_user.id) == ['New offer received for "Gel nails"']

    def test_new_request_toast_names_the_service(self, client_user, pro_user, emitted):
        with notification_hub.session(pro_user.id):
            make_request(client_user)

        assert notification_hub.notifications(pro_user.id)[NotificationCategory.PRO_REQUESTS] == 1
        assert _toasts(emitted, pro_user.id) == [f'{GENERIC_REQUEST_MESSAGE}: Gel nails']

    def test_failed_lookup_falls_back_to_generic_toast(self, client_user, pro_user, emitted, monkeypatch):
        def broken_lookup(request_id):
            raise RuntimeError('connection reset')

        monkeypatch.setattr(notifications, 'lookup_request_service', broken_lookup)
        with notification_hub.session(pro_user.id):
            make_request(client_user)

        assert _toasts(emitted, pro_user.id) == [GENERIC_REQUEST_MESSAGE]
        assert notification_hub.notifications(pro_user.id)[NotificationCategory.PRO_REQUESTS] == 1

    def test_payment_confirmation_reaches_both_sides(self, client_user, pro_user, emitted):
        offer = make_offer(make_request(client_user), pro_user)
        with notification_hub.session(client_user.id), notification_hub.session(pro_user.id):
            pay(offer)

        assert notification_hub.notifications(client_user.id)[NotificationCategory.PAYMENTS] == 1
        assert notification_hub.notifications(pro_user.id)[NotificationCategory.PAYMENTS] == 0
        assert 'Your offer for "Gel nails" has been confirmed and paid!' in _toasts(emitted, pro_user.id)
        assert 'Your booking for "Gel nails" is confirmed' in _toasts(emitted, client_user.id)

    def test_refund_toast(self, booking, emitted, fake_stripe):
        with notification_hub.session(booking.client.id):
            SettlementService.settle_cancellation(booking.offer_id, SettlementMode.PROFESSIONAL_CANCEL)

        toasts = _toasts(emitted, booking.client.id)
        assert 'Refund of 45.00 EUR issued' in toasts
        assert 'Your booking for "Gel nails" was cancelled' in toasts

    def test_cancellation_request_toast(self, booking, emitted):
        with notification_hub.session(booking.pro.id):
            LifecycleService.request_cancellation(booking.offer_id, booking.client.id)

        assert _toasts(emitted, booking.pro.id) == ['The client requested a cancellation for "Gel nails"']

    def test_redelivered_change_counts_once(self, client_user, emitted):
        change = ChangeEvent('offers', ChangeKind.INSERT, {
            'id': 42, 'status': OfferStatus.PROPOSED, 'client_id': client_user.id,
            'service': 'Hair', 'updated_at': '2026-10-01T10:00:00',
        })
        with notification_hub.session(client_user.id):
            change_feed.publish(change)
            change_feed.publish(change)

        assert notification_hub.notifications(client_user.id)[NotificationCategory.CLIENT_OFFERS] == 1

    def test_raw_changes_are_forwarded(self, client_user, pro_user, emitted):
        service_request = make_request(client_user)
        with notification_hub.session(client_user.id):
            make_offer(service_request, pro_user)

        forwarded = [p for event, p, room in emitted if event == 'change' and room == user_room(client_user.id)]
        assert forwarded[0]['table'] == 'offers'
        assert forwarded[0]['event'] == ChangeKind.INSERT

    def test_nothing_is_delivered_after_release(self, client_user, pro_user, emitted):
        service_request = make_request(client_user)
        with notification_hub.session(client_user.id):
            pass
        make_offer(service_request, pro_user)

        assert emitted == []
        assert notification_hub.notifications(client_user.id)[NotificationCategory.CLIENT_OFFERS] == 0


class TestCounters:

    def test_reset_one_category(self, client_user, pro_user, emitted):
        service_request = make_request(client_user)
        with notification_hub.session(client_user.id):
            make_offer(service_request, pro_user)

        counters = notification_hub.reset_notification(client_user.id, NotificationCategory.CLIENT_OFFERS)

        assert counters[NotificationCategory.CLIENT_OFFERS] == 0

    def test_unknown_category(self, client_user):
        with pytest.raises(ValidationError):
            notification_hub.reset_notification(client_user.id, 'messages')

    def test_fresh_user_has_zero_counters(self, client_user):
        assert notification_hub.notifications(client_user.id) == {
            category: 0 for category in NotificationCategory.ALL
        }
