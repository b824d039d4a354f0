import logging
from decimal import Decimal
from unittest import mock

import pytest
from django.db import DatabaseError

from coupons.models import Coupon
from orders.models import Cart, Order
from orders.services import (
    FinalizationErrorKind,
    OrderFinalizer,
    from_minor_units,
    normalize_line_item,
    to_minor_units,
)

pytestmark = pytest.mark.django_db


def test_minor_unit_conversions():
    assert from_minor_units(4999, 'usd') == Decimal('49.99')
    assert from_minor_units(5000, 'JPY') == Decimal('5000.00')
    assert to_minor_units(Decimal('49.99'), 'usd') == 4999
    assert to_minor_units('10.005', 'usd') == 1001
    assert to_minor_units(500, 'jpy') == 500


def test_finalize_creates_order_from_settled_payment(gateway, user, address):
    gateway.add('pi_1', amount=4999)
    items = [{'productId': 'p1', 'name': 'Tee', 'image': 'tee.jpg', 'price': 49.99,
              'size': 'M', 'color': 'Black', 'quantity': 1}]

    result = OrderFinalizer(gateway).finalize(user, 'pi_1', address, items)

    assert result.ok
    assert not result.duplicate
    order = Order.objects.get(pk=result.order.pk)
    assert order.user == user
    assert order.total_price == Decimal('49.99')
    assert order.payment_method == 'card'
    assert order.payment_status == Order.PaymentStatus.COMPLETED
    assert order.status == Order.Status.PROCESSING
    assert order.is_paid
    assert order.paid_at is not None
    assert order.payment_intent_id == 'pi_1'
    assert order.shipping_address == address
    assert order.order_items == [{'productId': 'p1', 'name': 'Tee', 'image': 'tee.jpg', 'price': 49.99,
                                  'size': 'M', 'color': 'Black', 'quantity': 1}]


def test_second_finalize_returns_existing_order(gateway, user, address):
    gateway.add('pi_1')
    finalizer = OrderFinalizer(gateway)

    first = finalizer.finalize(user, 'pi_1', address)
    second = finalizer.finalize(user, 'pi_1', address)

    assert first.ok and second.ok
    assert second.duplicate
    assert second.order.pk == first.order.pk
    assert Order.objects.filter(payment_intent_id='pi_1').count() == 1


@pytest.mark.parametrize('status', [
    'requires_payment_method', 'requires_confirmation', 'processing', 'failed', 'canceled',
])
def test_unsettled_payment_is_rejected(gateway, user, address, status):
    gateway.add('pi_1', status=status)

    result = OrderFinalizer(gateway).finalize(user, 'pi_1', address)

    assert not result.ok
    assert result.error.kind is FinalizationErrorKind.PAYMENT_NOT_SETTLED
    assert result.error.kind.http_status == 400
    assert not Order.objects.exists()


@pytest.mark.parametrize('payment_intent_id', [None, ''])
def test_missing_payment_id_is_rejected_before_gateway_call(gateway, user, address, payment_intent_id):
    result = OrderFinalizer(gateway).finalize(user, payment_intent_id, address)

    assert result.error.kind is FinalizationErrorKind.MISSING_PAYMENT_ID
    assert gateway.retrieved == []


def test_unknown_payment_is_not_found(gateway, user, address):
    result = OrderFinalizer(gateway).finalize(user, 'pi_missing', address)

    assert result.error.kind is FinalizationErrorKind.AUTHORIZATION_NOT_FOUND
    assert result.error.kind.http_status == 404


def test_unreachable_gateway(gateway, user, address):
    gateway.unreachable = True

    result = OrderFinalizer(gateway).finalize(user, 'pi_1', address)

    assert result.error.kind is FinalizationErrorKind.GATEWAY_UNAVAILABLE
    assert not Order.objects.exists()


def test_zero_amount_is_rejected(gateway, user, address):
    gateway.add('pi_1', amount=0)

    result = OrderFinalizer(gateway).finalize(user, 'pi_1', address)

    assert result.error.kind is FinalizationErrorKind.INVALID_TOTAL
    assert not Order.objects.exists()


def test_total_comes_from_gateway_not_items(gateway, user, address, caplog):
    gateway.add('pi_1', amount=4999)
    items = [{'name': 'Tee', 'price': 5.00, 'quantity': 2}]

    with caplog.at_level(logging.WARNING, logger='orders.services'):
        result = OrderFinalizer(gateway).finalize(user, 'pi_1', address, items)

    assert result.ok
    assert result.order.total_price == Decimal('49.99')
    assert 'Amount mismatch' in caplog.text


@pytest.mark.parametrize('price', ['49.98', '49.99', '50.00'])
def test_rounding_slack_is_not_a_mismatch(gateway, user, address, caplog, price):
    gateway.add('pi_1', amount=4999)

    with caplog.at_level(logging.WARNING, logger='orders.services'):
        result = OrderFinalizer(gateway).finalize(user, 'pi_1', address, [{'price': price, 'quantity': 1}])

    assert result.ok
    assert 'Amount mismatch' not in caplog.text


@pytest.mark.parametrize('missing', ['street', 'city', 'postalCode', 'country'])
def test_incomplete_address_is_rejected(gateway, user, address, missing):
    gateway.add('pi_1')
    address[missing] = ''

    result = OrderFinalizer(gateway).finalize(user, 'pi_1', address)

    assert result.error.kind is FinalizationErrorKind.INVALID_SHIPPING_ADDRESS
    assert result.error.kind.http_status == 400
    assert not Order.objects.exists()


def test_missing_address_is_rejected(gateway, user):
    gateway.add('pi_1')

    result = OrderFinalizer(gateway).finalize(user, 'pi_1', None)

    assert result.error.kind is FinalizationErrorKind.INVALID_SHIPPING_ADDRESS


def test_address_key_is_accepted_for_street(gateway, user):
    gateway.add('pi_1')
    address = {'address': '1 Main St', 'city': 'Springfield', 'postalCode': '12345', 'country': 'US'}

    result = OrderFinalizer(gateway).finalize(user, 'pi_1', address)

    assert result.ok
    assert result.order.shipping_address['street'] == '1 Main St'


def test_line_items_are_normalized():
    assert normalize_line_item({}) == {
        'productId': None,
        'name': 'Unknown Product',
        'image': '',
        'price': 0.0,
        'size': '',
        'color': '',
        'quantity': 1,
    }
    assert normalize_line_item({'_id': 'p9', 'price': 'abc', 'quantity': 0})['productId'] == 'p9'
    assert normalize_line_item({'price': 'abc', 'quantity': '3'})['quantity'] == 3


def test_payment_method_comes_from_gateway(gateway, user, address):
    gateway.add('pi_1', payment_method_types=('link', 'card'))
    gateway.add('pi_2', payment_method_types=())
    finalizer = OrderFinalizer(gateway)

    assert finalizer.finalize(user, 'pi_1', address).order.payment_method == 'link'
    assert finalizer.finalize(user, 'pi_2', address).order.payment_method == 'card'


def test_cart_is_cleared_after_order(gateway, user, other_user, address):
    Cart.objects.create(user=user, products=[{'productId': 'p1', 'quantity': 1}])
    Cart.objects.create(user=other_user, products=[{'productId': 'p2', 'quantity': 1}])
    gateway.add('pi_1')

    result = OrderFinalizer(gateway).finalize(user, 'pi_1', address)

    assert result.ok
    assert not Cart.objects.filter(user=user).exists()
    assert Cart.objects.filter(user=other_user).exists()


def test_concurrent_insert_is_reported_as_duplicate(gateway, user, address, make_order):
    gateway.add('pi_1')
    existing = make_order(user, 'pi_1')
    finalizer = OrderFinalizer(gateway)
    lookups = []
    real_lookup = finalizer._existing_order

    def stale_then_real(payment_intent_id):
        lookups.append(payment_intent_id)
        # The first lookup misses, as if the other request had not committed yet.
        return None if len(lookups) == 1 else real_lookup(payment_intent_id)

    finalizer._existing_order = stale_then_real
    result = finalizer.finalize(user, 'pi_1', address)

    assert result.ok
    assert result.duplicate
    assert result.order.pk == existing.pk
    assert Order.objects.count() == 1


def test_persistence_failure_keeps_cart_and_reports_reference(gateway, user, address, caplog):
    Cart.objects.create(user=user, products=[{'productId': 'p1', 'quantity': 1}])
    gateway.add('pi_1')

    with mock.patch.object(Order.objects, 'create', side_effect=DatabaseError('disk full')):
        with caplog.at_level(logging.CRITICAL, logger='orders.services'):
            result = OrderFinalizer(gateway).finalize(user, 'pi_1', address)

    assert result.error.kind is FinalizationErrorKind.PERSISTENCE_FAILED
    assert result.error.kind.http_status == 500
    assert 'pi_1' in result.error.message
    assert 'pi_1' in caplog.text
    assert Cart.objects.filter(user=user).exists()


def test_coupon_from_metadata_is_redeemed_once(gateway, user, address, make_coupon):
    coupon = make_coupon(code='SAVE10', usage_limit=5)
    gateway.add('pi_1', amount=4500, metadata={'couponCode': 'save10', 'discount': '5.00'})
    finalizer = OrderFinalizer(gateway)

    first = finalizer.finalize(user, 'pi_1', address)
    finalizer.finalize(user, 'pi_1', address)

    assert first.order.coupon_code == 'SAVE10'
    assert first.order.discount == Decimal('5.00')
    assert first.order.total_price == Decimal('45.00')
    coupon.refresh_from_db()
    assert coupon.usage_count == 1


def test_exhausted_coupon_does_not_block_order(gateway, user, address, make_coupon):
    coupon = make_coupon(code='ONCE', usage_limit=1, usage_count=1)
    gateway.add('pi_1', metadata={'couponCode': 'ONCE', 'discount': '1.00'})

    result = OrderFinalizer(gateway).finalize(user, 'pi_1', address)

    assert result.ok
    coupon.refresh_from_db()
    assert coupon.usage_count == 1
    assert Coupon.objects.count() == 1
