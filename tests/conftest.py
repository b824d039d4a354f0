from datetime import timedelta
from decimal import Decimal

import pytest
from django.apps import apps
from django.contrib.auth import get_user_model
from django.test import Client
from django.utils import timezone

from coupons.models import Coupon
from orders.gateway import PaymentAuthorization, PaymentGatewayError
from orders.models import Order


class FakeGateway:
    """
    In-memory stand-in for StripeGateway.
    """
    def __init__(self):
        self.authorizations = {}
        self.created = []
        self.retrieved = []
        self.unreachable = False

    def add(self, payment_intent_id, status='succeeded', amount=4999, currency='usd',
            payment_method_types=('card',), metadata=None):
        authorization = PaymentAuthorization(
            id=payment_intent_id,
            status=status,
            amount=amount,
            currency=currency,
            payment_method_types=tuple(payment_method_types),
            metadata=dict(metadata or {}),
        )
        self.authorizations[payment_intent_id] = authorization
        return authorization

    def create_authorization(self, amount_minor_units, currency, metadata=None):
        if self.unreachable:
            raise PaymentGatewayError("The payment processor could not be reached.", code='gateway_unreachable')
        payment_intent_id = f"pi_test_{len(self.created) + 1}"
        authorization = PaymentAuthorization(
            id=payment_intent_id,
            status='requires_payment_method',
            amount=amount_minor_units,
            currency=currency,
            payment_method_types=('card',),
            metadata=dict(metadata or {}),
            client_secret=f"{payment_intent_id}_secret_abc",
        )
        self.created.append(authorization)
        self.authorizations[payment_intent_id] = authorization
        return authorization

    def retrieve_authorization(self, payment_intent_id):
        self.retrieved.append(payment_intent_id)
        if self.unreachable:
            raise PaymentGatewayError("The payment processor could not be reached.", code='gateway_unreachable')
        if payment_intent_id not in self.authorizations:
            raise PaymentGatewayError(
                f"No such payment_intent: '{payment_intent_id}'",
                code='resource_missing',
                status_code=404,
            )
        return self.authorizations[payment_intent_id]


@pytest.fixture
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(apps.get_app_config('orders'), 'payment_gateway', fake)
    return fake


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(
        username='alice', email='alice@example.com', password='secret', first_name='Alice'
    )


@pytest.fixture
def other_user(db):
    return get_user_model().objects.create_user(username='bob', email='bob@example.com', password='secret')


@pytest.fixture
def staff_user(db):
    return get_user_model().objects.create_user(
        username='admin', email='admin@example.com', password='secret', is_staff=True
    )


@pytest.fixture
def user_client(user):
    client = Client()
    client.force_login(user)
    return client


@pytest.fixture
def staff_client(staff_user):
    client = Client()
    client.force_login(staff_user)
    return client


@pytest.fixture
def address():
    return {
        'street': '12 Market Street',
        'city': 'Springfield',
        'postalCode': '12345',
        'country': 'US',
    }


@pytest.fixture
def make_coupon(db):
    def _make(**overrides):
        now = timezone.now()
        fields = {
            'code': 'SAVE10',
            'description': '10% off',
            'discount_type': Coupon.DiscountType.PERCENTAGE,
            'discount_value': Decimal('10'),
            'min_purchase': Decimal('0'),
            'valid_from': now - timedelta(days=1),
            'valid_until': now + timedelta(days=30),
        }
        fields.update(overrides)
        return Coupon.objects.create(**fields)
    return _make


@pytest.fixture
def make_order(db):
    def _make(user, payment_intent_id=None, **overrides):
        fields = {
            'user': user,
            'order_items': [],
            'total_price': Decimal('49.99'),
            'shipping_address': {'street': 'x', 'city': 'y', 'postalCode': 'z', 'country': 'US'},
            'payment_status': Order.PaymentStatus.COMPLETED,
            'is_paid': True,
            'paid_at': timezone.now(),
            'payment_intent_id': payment_intent_id,
        }
        fields.update(overrides)
        return Order.objects.create(**fields)
    return _make
