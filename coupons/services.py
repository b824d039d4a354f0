import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from django.db.models import F, Q
from django.utils import timezone

from .models import Coupon

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')


class CouponRejection(Enum):
    NOT_FOUND = 'not_found'
    INACTIVE = 'inactive'
    OUTSIDE_WINDOW = 'outside_window'
    BELOW_MINIMUM = 'below_minimum'
    USAGE_EXHAUSTED = 'usage_exhausted'

    @property
    def http_status(self):
        return 404 if self is CouponRejection.NOT_FOUND else 400


@dataclass(frozen=True)
class CouponCheck:
    coupon: Optional[Coupon] = None
    rejection: Optional[CouponRejection] = None
    message: str = ''

    @property
    def is_valid(self):
        return self.rejection is None

    @classmethod
    def valid(cls, coupon):
        return cls(coupon=coupon)

    @classmethod
    def rejected(cls, rejection, message):
        return cls(rejection=rejection, message=message)


def validate_coupon(code, total_amount=None, now=None) -> CouponCheck:
    """
    Checks whether `code` is redeemable right now against `total_amount`.

    Rules are checked in a fixed order: existence, active flag, validity
    window, minimum purchase, usage limit. Usage count is never modified here.
    """
    normalized = (code or '').strip().upper()
    coupon = Coupon.objects.filter(code=normalized).first() if normalized else None
    if coupon is None:
        return CouponCheck.rejected(CouponRejection.NOT_FOUND, "Invalid coupon code")

    if not coupon.is_active:
        return CouponCheck.rejected(CouponRejection.INACTIVE, "Coupon is no longer active")

    now = now or timezone.now()
    if now < coupon.valid_from or now > coupon.valid_until:
        return CouponCheck.rejected(CouponRejection.OUTSIDE_WINDOW, "Coupon is not valid at this time")

    if total_amount is not None and Decimal(str(total_amount)) < coupon.min_purchase:
        return CouponCheck.rejected(
            CouponRejection.BELOW_MINIMUM,
            f"Minimum purchase of ${coupon.min_purchase} required"
        )

    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return CouponCheck.rejected(CouponRejection.USAGE_EXHAUSTED, "Coupon has reached its usage limit")

    return CouponCheck.valid(coupon)


def compute_discount(coupon, total_amount) -> Decimal:
    """
    Discount for `total_amount`: a percentage capped by max_discount, or a
    fixed amount that never exceeds the total.
    """
    total = Decimal(str(total_amount))
    if total <= 0:
        return Decimal('0.00')

    if coupon.discount_type == Coupon.DiscountType.PERCENTAGE:
        discount = total * Decimal(str(coupon.discount_value)) / Decimal('100')
        if coupon.max_discount is not None:
            discount = min(discount, Decimal(str(coupon.max_discount)))
    else:
        discount = Decimal(str(coupon.discount_value))

    discount = min(discount, total)
    return discount.quantize(CENTS, rounding=ROUND_HALF_UP)


def increment_usage(coupon_id) -> bool:
    """
    Unconditionally adds one use to the coupon. Returns False if it does not exist.
    """
    updated = Coupon.objects.filter(pk=coupon_id).update(usage_count=F('usage_count') + 1)
    return updated == 1


def redeem_coupon(code) -> bool:
    """
    Adds one use to the coupon only while it is still under its usage limit.
    The check and the increment are a single UPDATE, so concurrent
    redemptions cannot push the counter past the limit.
    """
    normalized = (code or '').strip().upper()
    updated = (
        Coupon.objects
        .filter(code=normalized)
        .filter(Q(usage_limit__isnull=True) | Q(usage_count__lt=F('usage_limit')))
        .update(usage_count=F('usage_count') + 1)
    )
    if updated != 1:
        logger.warning(f"Coupon {normalized} could not be redeemed (missing or usage limit reached).")
        return False
    logger.info(f"Coupon {normalized} redeemed.")
    return True
