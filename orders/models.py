import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models


class Order(models.Model):
    class PaymentStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'

    class Status(models.TextChoices):
        PROCESSING = 'Processing', 'Processing'
        SHIPPED = 'Shipped', 'Shipped'
        DELIVERED = 'Delivered', 'Delivered'
        CANCELLED = 'Cancelled', 'Cancelled'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='orders')

    # Snapshot of each line item at order time: productId, name, image,
    # price, size, color, quantity.
    order_items = models.JSONField(default=list)
    total_price = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default='usd')
    payment_method = models.CharField(max_length=50, default='card')
    shipping_address = models.JSONField(default=dict)

    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PROCESSING,
        db_index=True
    )
    is_paid = models.BooleanField(default=False)
    paid_at = models.DateTimeField(null=True, blank=True)
    is_delivered = models.BooleanField(default=False)
    delivered_at = models.DateTimeField(null=True, blank=True)

    # Dedup key: at most one order per Stripe PaymentIntent.
    payment_intent_id = models.CharField(max_length=255, unique=True, null=True, blank=True)

    coupon_code = models.CharField(max_length=64, blank=True, default='')
    discount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.payment_intent_id or self.id} ({self.total_price} {self.currency.upper()}, {self.status})"

    def to_dict(self):
        return {
            'id': str(self.id),
            'user': self.user_id,
            'orderItems': self.order_items,
            'totalPrice': float(self.total_price),
            'currency': self.currency,
            'paymentMethod': self.payment_method,
            'shippingAddress': self.shipping_address,
            'paymentStatus': self.payment_status,
            'status': self.status,
            'isPaid': self.is_paid,
            'paidAt': self.paid_at.isoformat() if self.paid_at else None,
            'isDelivered': self.is_delivered,
            'deliveredAt': self.delivered_at.isoformat() if self.delivered_at else None,
            'paymentIntentId': self.payment_intent_id,
            'couponCode': self.coupon_code or None,
            'discount': float(self.discount),
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }

    class Meta:
        ordering = ['-created_at']
        indexes = [models.Index(fields=['user', '-created_at'], name='order_user_recent_idx')]


class Cart(models.Model):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='carts'
    )
    # Carts created before login are keyed by a client-generated guest id.
    guest_id = models.CharField(max_length=255, blank=True, default='', db_index=True)
    products = models.JSONField(default=list)
    total_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        owner = self.user_id or self.guest_id
        return f"Cart {self.pk} for {owner}"

    def to_dict(self):
        return {
            'id': self.pk,
            'user': self.user_id,
            'guestId': self.guest_id or None,
            'products': self.products,
            'totalPrice': float(self.total_price),
        }
