import logging

from django.apps import AppConfig
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)


class OrdersConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'orders'

    payment_gateway = None

    def ready(self):
        from .gateway import StripeGateway

        try:
            self.payment_gateway = StripeGateway.from_settings()
            logger.info("Stripe gateway initialized.")
        except ImproperlyConfigured as e:
            logger.warning(f"Payment gateway disabled: {e}")
            self.payment_gateway = None
