import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from coupons.services import redeem_coupon
from .gateway import PaymentGatewayError
from .models import Cart, Order

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')

# Currencies Stripe charges in whole units (no minor unit).
ZERO_DECIMAL_CURRENCIES = frozenset({
    'bif', 'clp', 'djf', 'gnf', 'jpy', 'kmf', 'krw', 'mga',
    'pyg', 'rwf', 'ugx', 'vnd', 'vuv', 'xaf', 'xof', 'xpf',
})

DEFAULT_PAYMENT_METHOD = 'card'
UNKNOWN_PRODUCT_NAME = 'Unknown Product'
SHIPPING_FIELDS = ('street', 'city', 'postalCode', 'country')


def _minor_unit_factor(currency):
    return Decimal(1) if (currency or '').lower() in ZERO_DECIMAL_CURRENCIES else Decimal(100)


def to_minor_units(amount, currency) -> int:
    """49.99 usd -> 4999; 500 jpy -> 500."""
    value = Decimal(str(amount)) * _minor_unit_factor(currency)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(amount, currency) -> Decimal:
    """4999 usd -> Decimal('49.99')."""
    value = Decimal(int(amount)) / _minor_unit_factor(currency)
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_decimal(value, default=None):
    if value is None or value == '':
        return default
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default
    return result if result.is_finite() else default


def _to_quantity(value):
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        return 1
    return quantity if quantity > 0 else 1


def normalize_line_item(item: dict) -> dict:
    """
    Snapshots a client-submitted cart line for storage on the order, filling
    in defaults for anything the client left out.
    """
    price = to_decimal(item.get('price'), Decimal('0'))
    return {
        'productId': item.get('productId') or item.get('_id') or item.get('product'),
        'name': item.get('name') or UNKNOWN_PRODUCT_NAME,
        'image': item.get('image') or '',
        'price': float(price),
        'size': item.get('size') or '',
        'color': item.get('color') or '',
        'quantity': _to_quantity(item.get('quantity')),
    }


def normalize_shipping_address(address) -> Optional[dict]:
    """
    Returns the four mandatory address fields, or None if any is missing.
    `address` is accepted as an alias for `street`.
    """
    if not isinstance(address, dict):
        return None
    street = address.get('street') or address.get('address')
    normalized = {
        'street': street,
        'city': address.get('city'),
        'postalCode': address.get('postalCode'),
        'country': address.get('country'),
    }
    for key in SHIPPING_FIELDS:
        value = normalized[key]
        if value is None or not str(value).strip():
            return None
        normalized[key] = str(value).strip()
    return normalized


def items_total(items) -> Decimal:
    total = Decimal('0')
    for item in items:
        price = to_decimal(item.get('price'), Decimal('0'))
        total += price * _to_quantity(item.get('quantity'))
    return total


class FinalizationErrorKind(Enum):
    MISSING_PAYMENT_ID = 'missing_payment_id'
    AUTHORIZATION_NOT_FOUND = 'authorization_not_found'
    GATEWAY_UNAVAILABLE = 'gateway_unavailable'
    PAYMENT_NOT_SETTLED = 'payment_not_settled'
    INVALID_TOTAL = 'invalid_total'
    INVALID_SHIPPING_ADDRESS = 'invalid_shipping_address'
    PERSISTENCE_FAILED = 'persistence_failed'

    @property
    def http_status(self):
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    FinalizationErrorKind.MISSING_PAYMENT_ID: 400,
    FinalizationErrorKind.AUTHORIZATION_NOT_FOUND: 404,
    FinalizationErrorKind.GATEWAY_UNAVAILABLE: 502,
    FinalizationErrorKind.PAYMENT_NOT_SETTLED: 400,
    FinalizationErrorKind.INVALID_TOTAL: 400,
    FinalizationErrorKind.INVALID_SHIPPING_ADDRESS: 400,
    FinalizationErrorKind.PERSISTENCE_FAILED: 500,
}


@dataclass(frozen=True)
class FinalizationError:
    kind: FinalizationErrorKind
    message: str


@dataclass(frozen=True)
class FinalizationResult:
    """
    Outcome of OrderFinalizer.finalize: either an order (possibly one that
    already existed for the same payment) or an error.
    """
    order: Optional[Order] = None
    duplicate: bool = False
    error: Optional[FinalizationError] = None

    @property
    def ok(self):
        return self.error is None

    @classmethod
    def created(cls, order):
        return cls(order=order)

    @classmethod
    def duplicate_of(cls, order):
        return cls(order=order, duplicate=True)

    @classmethod
    def failed(cls, kind, message):
        return cls(error=FinalizationError(kind, message))


class OrderFinalizer:
    """
    Turns a settled Stripe PaymentIntent into exactly one Order.

    The PaymentIntent retrieved from the gateway is the only source for the
    amount, currency and payment method. Client line items are stored as a
    snapshot and compared against the settled amount, but never priced from.
    """

    def __init__(self, gateway, amount_tolerance=CENTS):
        self.gateway = gateway
        self.amount_tolerance = Decimal(str(amount_tolerance))

    def finalize(self, user, payment_intent_id, shipping_address=None, items=None) -> FinalizationResult:
        if not payment_intent_id:
            return FinalizationResult.failed(
                FinalizationErrorKind.MISSING_PAYMENT_ID,
                "Payment intent ID is required"
            )

        try:
            authorization = self.gateway.retrieve_authorization(payment_intent_id)
        except PaymentGatewayError as e:
            if e.is_not_found:
                return FinalizationResult.failed(
                    FinalizationErrorKind.AUTHORIZATION_NOT_FOUND,
                    f"Payment {payment_intent_id} was not found"
                )
            logger.error(f"Could not retrieve PaymentIntent {payment_intent_id}: {e.message}")
            return FinalizationResult.failed(
                FinalizationErrorKind.GATEWAY_UNAVAILABLE,
                "The payment processor is unavailable. Please try again."
            )

        if not authorization.is_settled:
            logger.info(f"PaymentIntent {payment_intent_id} is '{authorization.status}', not finalizing.")
            return FinalizationResult.failed(
                FinalizationErrorKind.PAYMENT_NOT_SETTLED,
                "Payment was not successful"
            )

        existing = self._existing_order(payment_intent_id)
        if existing is not None:
            logger.info(f"Order {existing.id} already exists for PaymentIntent {payment_intent_id}.")
            return FinalizationResult.duplicate_of(existing)

        total_price = from_minor_units(authorization.amount, authorization.currency)
        payment_method = next(iter(authorization.payment_method_types), None) or DEFAULT_PAYMENT_METHOD
        if total_price <= 0:
            logger.error(f"PaymentIntent {payment_intent_id} settled with a zero amount.")
            return FinalizationResult.failed(
                FinalizationErrorKind.INVALID_TOTAL,
                "Total price cannot be zero"
            )

        client_items = [item for item in (items if isinstance(items, list) else []) if isinstance(item, dict)]
        if client_items:
            self._check_items_total(client_items, total_price, payment_intent_id)

        owner = authorization.metadata.get('userId')
        if owner and owner != str(user.pk):
            logger.warning(f"PaymentIntent {payment_intent_id} was created for user {owner} but confirmed by user {user.pk}.")

        address = normalize_shipping_address(shipping_address)
        if address is None:
            logger.warning(f"Incomplete shipping address for PaymentIntent {payment_intent_id}: {shipping_address}")
            return FinalizationResult.failed(
                FinalizationErrorKind.INVALID_SHIPPING_ADDRESS,
                "Complete shipping address is required (street, city, postalCode, country)"
            )

        order_items = [normalize_line_item(item) for item in client_items]
        coupon_code = (authorization.metadata.get('couponCode') or '').strip().upper()
        discount = to_decimal(authorization.metadata.get('discount'), Decimal('0')).quantize(CENTS)

        try:
            with transaction.atomic():
                order = Order.objects.create(
                    user=user,
                    order_items=order_items,
                    total_price=total_price,
                    currency=authorization.currency or 'usd',
                    payment_method=payment_method,
                    shipping_address=address,
                    payment_status=Order.PaymentStatus.COMPLETED,
                    status=Order.Status.PROCESSING,
                    is_paid=True,
                    paid_at=timezone.now(),
                    payment_intent_id=payment_intent_id,
                    coupon_code=coupon_code,
                    discount=discount if coupon_code else Decimal('0.00'),
                )
                if coupon_code:
                    redeem_coupon(coupon_code)
        except IntegrityError:
            # Lost a race with a concurrent finalization of the same payment.
            existing = self._existing_order(payment_intent_id)
            if existing is not None:
                logger.info(f"Concurrent finalization detected for PaymentIntent {payment_intent_id}; returning order {existing.id}.")
                return FinalizationResult.duplicate_of(existing)
            return self._persistence_failed(user, payment_intent_id, total_price)
        except DatabaseError:
            return self._persistence_failed(user, payment_intent_id, total_price)

        logger.info(f"Order {order.id} created for PaymentIntent {payment_intent_id} ({total_price} {order.currency}).")
        self._clear_cart(user)
        return FinalizationResult.created(order)

    def _existing_order(self, payment_intent_id):
        return Order.objects.filter(payment_intent_id=payment_intent_id).first()

    def _check_items_total(self, items, total_price, payment_intent_id):
        computed = items_total(items)
        if abs(computed - total_price) > self.amount_tolerance:
            logger.warning(
                f"Amount mismatch detected for PaymentIntent {payment_intent_id}: "
                f"computed from items {computed}, settled amount {total_price}"
            )

    def _persistence_failed(self, user, payment_intent_id, total_price):
        logger.critical(
            f"CRITICAL: PaymentIntent {payment_intent_id} settled ({total_price}) for user {user.pk} "
            f"but the order could not be saved. Manual reconciliation required.",
            exc_info=True
        )
        return FinalizationResult.failed(
            FinalizationErrorKind.PERSISTENCE_FAILED,
            f"Your payment succeeded but we could not save your order. "
            f"Please contact support with payment reference {payment_intent_id}."
        )

    def _clear_cart(self, user):
        try:
            Cart.objects.filter(user=user).delete()
        except DatabaseError as e:
            logger.error(f"Failed to clear cart for user {user.pk} after order creation: {e}")
