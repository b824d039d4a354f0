from decimal import Decimal

from django.apps import apps
from django.conf import settings
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST, require_http_methods
import logging

from coupons.services import compute_discount, validate_coupon
from storefront_backend.http import (
    InvalidJSONBody,
    api_login_required,
    api_staff_required,
    error_response,
    parse_json_body,
)
from .gateway import PaymentGatewayError
from .models import Cart, Order
from .services import FinalizationErrorKind, OrderFinalizer, to_decimal, to_minor_units

logger = logging.getLogger(__name__)


def _payment_gateway():
    return apps.get_app_config('orders').payment_gateway


def _gateway_unavailable():
    return error_response('gateway_unavailable', "Payments are not available right now.", 503)


@csrf_exempt
@require_POST
@api_login_required
def create_payment_intent(request):
    """
    Starts a card payment for the checkout total. An optional coupon is
    validated and discounted here, server-side, and travels to the
    confirmation step in the PaymentIntent's metadata.
    """
    try:
        data = parse_json_body(request)
    except InvalidJSONBody as e:
        return error_response('invalid_json', str(e), 400)

    amount = to_decimal(data.get('amount'))
    if amount is None or amount <= 0:
        return error_response('invalid_amount', "Amount must be greater than 0", 400)
    currency = data.get('currency') or settings.DEFAULT_CURRENCY
    if not isinstance(currency, str):
        return error_response('invalid_currency', "Currency must be a string", 400)
    currency = currency.lower()
    coupon_code = data.get('couponCode') or ''
    if not isinstance(coupon_code, str):
        return error_response('invalid_coupon', "Coupon code must be a string", 400)
    coupon_code = coupon_code.strip()

    gateway = _payment_gateway()
    if gateway is None:
        return _gateway_unavailable()

    user = request.user
    metadata = {
        'userId': str(user.pk),
        'userEmail': user.email or '',
        'userName': user.get_full_name() or user.get_username(),
    }

    discount = Decimal('0.00')
    if coupon_code:
        check = validate_coupon(coupon_code, total_amount=amount)
        if not check.is_valid:
            return error_response(check.rejection.value, check.message, check.rejection.http_status)
        discount = compute_discount(check.coupon, amount)
        metadata['couponCode'] = check.coupon.code
        metadata['discount'] = str(discount)

    charge = amount - discount
    if charge <= 0:
        return error_response('invalid_amount', "Discounted total must be greater than 0", 400)

    try:
        authorization = gateway.create_authorization(
            to_minor_units(charge, currency),
            currency,
            metadata=metadata,
        )
    except PaymentGatewayError as e:
        logger.error(f"Stripe payment intent creation failed for user {user.pk}: {e.message} (code={e.code})")
        return error_response('payment_intent_failed', e.message, 502)

    return JsonResponse({
        'clientSecret': authorization.client_secret,
        'paymentIntentId': authorization.id,
        'livemode': authorization.livemode,
        'amount': authorization.amount,
        'discount': float(discount),
    })


@csrf_exempt
@require_POST
@api_login_required
def confirm_payment(request, payment_intent_id=None):
    """
    Creates the order for a settled payment. Safe to call more than once for
    the same payment: later calls return the original order with duplicate=true.
    """
    try:
        data = parse_json_body(request)
    except InvalidJSONBody as e:
        return error_response('invalid_json', str(e), 400)

    payment_intent_id = payment_intent_id or data.get('paymentIntentId')
    if payment_intent_id is not None:
        payment_intent_id = str(payment_intent_id).strip()
    items = data.get('items')
    logger.info(
        f"confirm-payment received: paymentIntentId={'set' if payment_intent_id else 'NOT_SET'}, "
        f"items={len(items) if isinstance(items, list) else 0}, shippingAddress={'set' if data.get('shippingAddress') else 'NOT_SET'}"
    )

    if not payment_intent_id:
        kind = FinalizationErrorKind.MISSING_PAYMENT_ID
        return error_response(kind.value, "Payment intent ID is required", kind.http_status)

    gateway = _payment_gateway()
    if gateway is None:
        return _gateway_unavailable()

    finalizer = OrderFinalizer(gateway, amount_tolerance=settings.PAYMENT_AMOUNT_TOLERANCE)
    try:
        result = finalizer.finalize(
            request.user,
            payment_intent_id,
            shipping_address=data.get('shippingAddress'),
            items=items,
        )
    except Exception as e:
        logger.exception(f"Unexpected error confirming PaymentIntent {payment_intent_id}: {e}")
        return error_response(
            'server_error',
            f"Failed to confirm payment. If you were charged, contact support with payment reference {payment_intent_id}.",
            500
        )

    if not result.ok:
        return error_response(result.error.kind.value, result.error.message, result.error.kind.http_status)

    body = {'success': True, 'orderId': str(result.order.id)}
    if result.duplicate:
        body['duplicate'] = True
        body['message'] = "Order already exists for this payment"
    else:
        body['message'] = "Payment confirmed and order created successfully"
    return JsonResponse(body)


@require_GET
def stripe_key_status(request):
    return JsonResponse({
        'publishableKey': 'Configured' if settings.STRIPE_PUBLISHABLE_KEY else 'Not configured',
        'secretKey': 'Configured' if settings.STRIPE_SECRET_KEY else 'Not configured',
        'gateway': 'Ready' if _payment_gateway() is not None else 'Unavailable',
    })


@require_GET
@api_login_required
def my_orders(request):
    orders = Order.objects.filter(user=request.user)
    return JsonResponse([order.to_dict() for order in orders], safe=False)


@require_GET
@api_login_required
def order_detail(request, order_id):
    order = Order.objects.filter(id=order_id).first()
    if order is None or (order.user_id != request.user.pk and not request.user.is_staff):
        return JsonResponse({'message': 'Order not found'}, status=404)
    return JsonResponse(order.to_dict())


@require_GET
@api_staff_required
def admin_orders(request):
    orders = Order.objects.select_related('user')
    status = request.GET.get('status')
    if status:
        if status not in Order.Status.values:
            return JsonResponse({'message': f"Unknown order status '{status}'"}, status=400)
        orders = orders.filter(status=status)

    payload = []
    for order in orders:
        data = order.to_dict()
        data['user'] = {'id': order.user_id, 'name': order.user.get_full_name() or order.user.get_username(), 'email': order.user.email}
        payload.append(data)
    return JsonResponse(payload, safe=False)


@csrf_exempt
@require_http_methods(['PUT'])
@api_staff_required
def admin_update_order(request, order_id):
    try:
        data = parse_json_body(request)
    except InvalidJSONBody as e:
        return error_response('invalid_json', str(e), 400)

    order = Order.objects.filter(id=order_id).first()
    if order is None:
        return JsonResponse({'message': 'Order not found'}, status=404)

    status = data.get('status')
    if status not in Order.Status.values:
        return JsonResponse({'message': f"Status must be one of {', '.join(Order.Status.values)}"}, status=400)

    order.status = status
    if status == Order.Status.DELIVERED:
        order.is_delivered = True
        order.delivered_at = timezone.now()
    order.save()

    logger.info(f"Order {order.id} status set to {status} by {request.user.pk}")
    return JsonResponse(order.to_dict())


@require_GET
@api_login_required
def my_cart(request):
    cart = Cart.objects.filter(user=request.user).first()
    if cart is None:
        return JsonResponse({'products': [], 'totalPrice': 0})
    return JsonResponse(cart.to_dict())
