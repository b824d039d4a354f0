import logging
from datetime import datetime, time, timezone as dt_timezone

from django.core.exceptions import ValidationError
from django.db import IntegrityError
from django.http import JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods

from orders.services import to_decimal
from storefront_backend.http import (
    InvalidJSONBody,
    api_login_required,
    api_staff_required,
    parse_json_body,
)
from .models import Coupon
from .services import increment_usage, validate_coupon

logger = logging.getLogger(__name__)


def _parse_when(value):
    value = str(value)
    when = parse_datetime(value)
    if when is None:
        day = parse_date(value)
        if day is None:
            return None
        when = datetime.combine(day, time.min)
    if timezone.is_naive(when):
        when = timezone.make_aware(when, dt_timezone.utc)
    return when


def _as_list(value):
    if not isinstance(value, list):
        raise ValueError("expected a list")
    return value


def _as_bool(value):
    if not isinstance(value, bool):
        raise ValueError("expected true or false")
    return value


def _as_count(value):
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError("expected a non-negative integer")
    return value


# JSON key -> (model field, parser)
EDITABLE_FIELDS = {
    'code': ('code', lambda v: str(v).strip().upper()),
    'description': ('description', str),
    'discountType': ('discount_type', str),
    'discountValue': ('discount_value', to_decimal),
    'minPurchase': ('min_purchase', to_decimal),
    'maxDiscount': ('max_discount', to_decimal),
    'validFrom': ('valid_from', _parse_when),
    'validUntil': ('valid_until', _parse_when),
    'usageLimit': ('usage_limit', _as_count),
    'isActive': ('is_active', _as_bool),
    'applicableCategories': ('applicable_categories', _as_list),
}
REQUIRED_ON_CREATE = ('code', 'discountType', 'discountValue', 'validFrom', 'validUntil')


class CouponPayloadError(ValueError):
    pass


def _apply_payload(coupon, data):
    for key, (field, parse) in EDITABLE_FIELDS.items():
        if key not in data:
            continue
        value = data[key]
        if value is None:
            setattr(coupon, field, None)
            continue
        try:
            parsed = parse(value)
        except (TypeError, ValueError):
            raise CouponPayloadError(f"Invalid value for {key}")
        if parsed is None:
            raise CouponPayloadError(f"Invalid value for {key}")
        setattr(coupon, field, parsed)


def _validation_message(error):
    if hasattr(error, 'message_dict'):
        return '; '.join(f"{field}: {' '.join(msgs)}" for field, msgs in error.message_dict.items())
    return ' '.join(error.messages)


def _save(coupon, data, status):
    try:
        _apply_payload(coupon, data)
        coupon.full_clean()
    except CouponPayloadError as e:
        return JsonResponse({'message': str(e)}, status=400)
    except ValidationError as e:
        return JsonResponse({'message': _validation_message(e)}, status=400)

    try:
        coupon.save()
    except IntegrityError:
        return JsonResponse({'message': 'Coupon code already exists'}, status=400)
    return JsonResponse(coupon.to_dict(), status=status)


@require_GET
def validate(request, code):
    """
    Public check of a coupon against an optional ?totalAmount=.
    Returns the coupon on success.
    """
    raw_total = request.GET.get('totalAmount')
    total_amount = None
    if raw_total not in (None, ''):
        total_amount = to_decimal(raw_total)
        if total_amount is None:
            return JsonResponse({'message': 'totalAmount must be a number'}, status=400)

    check = validate_coupon(code, total_amount=total_amount)
    if not check.is_valid:
        return JsonResponse({'message': check.message}, status=check.rejection.http_status)
    return JsonResponse(check.coupon.to_dict())


@csrf_exempt
@require_http_methods(['GET', 'POST'])
@api_staff_required
def coupon_list(request):
    if request.method == 'GET':
        return JsonResponse([c.to_dict() for c in Coupon.objects.all()], safe=False)

    try:
        data = parse_json_body(request)
    except InvalidJSONBody as e:
        return JsonResponse({'message': str(e)}, status=400)

    missing = [key for key in REQUIRED_ON_CREATE if data.get(key) in (None, '')]
    if missing:
        return JsonResponse({'message': f"Missing required fields: {', '.join(missing)}"}, status=400)

    response = _save(Coupon(), data, status=201)
    if response.status_code == 201:
        logger.info(f"Coupon {str(data['code']).strip().upper()} created by {request.user.pk}")
    return response


@csrf_exempt
@require_http_methods(['PUT', 'DELETE'])
@api_staff_required
def coupon_detail(request, coupon_id):
    coupon = Coupon.objects.filter(pk=coupon_id).first()
    if coupon is None:
        return JsonResponse({'message': 'Coupon not found'}, status=404)

    if request.method == 'DELETE':
        coupon.delete()
        logger.info(f"Coupon {coupon.code} deleted by {request.user.pk}")
        return JsonResponse({'message': 'Coupon deleted'})

    try:
        data = parse_json_body(request)
    except InvalidJSONBody as e:
        return JsonResponse({'message': str(e)}, status=400)
    return _save(coupon, data, status=200)


@csrf_exempt
@require_http_methods(['PUT'])
@api_login_required
def use(request, coupon_id):
    if not increment_usage(coupon_id):
        return JsonResponse({'message': 'Coupon not found'}, status=404)
    coupon = Coupon.objects.get(pk=coupon_id)
    return JsonResponse(coupon.to_dict())
