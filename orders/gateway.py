import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import requests
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """
    Raised for any failed call to the payment processor. `code` is the
    processor's machine-readable error code when it sent one.
    """
    def __init__(self, message, code=None, status_code=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    @property
    def is_not_found(self):
        return self.status_code == 404 or self.code == 'resource_missing'

    @property
    def is_unreachable(self):
        return self.code == 'gateway_unreachable'


@dataclass(frozen=True)
class PaymentAuthorization:
    """
    Read-only view of a Stripe PaymentIntent.
    """
    id: str
    status: str
    amount: int
    currency: str
    payment_method_types: Tuple[str, ...] = ()
    metadata: Dict[str, str] = field(default_factory=dict)
    client_secret: Optional[str] = None
    livemode: bool = False

    SUCCEEDED = 'succeeded'

    @classmethod
    def from_api(cls, payload: dict) -> "PaymentAuthorization":
        return cls(
            id=payload.get('id', ''),
            status=payload.get('status', ''),
            amount=int(payload.get('amount') or 0),
            currency=(payload.get('currency') or '').lower(),
            payment_method_types=tuple(payload.get('payment_method_types') or ()),
            metadata=dict(payload.get('metadata') or {}),
            client_secret=payload.get('client_secret'),
            livemode=bool(payload.get('livemode', False)),
        )

    @property
    def is_settled(self) -> bool:
        return self.status == self.SUCCEEDED


# --- Stripe Service ---

class StripeGateway:
    """
    A thin client for the Stripe PaymentIntents REST API.
    """
    def __init__(self, secret_key, api_base='https://api.stripe.com', timeout=10):
        if not secret_key:
            raise ImproperlyConfigured("Stripe settings are not configured properly.")
        self.secret_key = secret_key
        self.base_url = api_base.rstrip('/')
        self.timeout = timeout

    @classmethod
    def from_settings(cls):
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            api_base=settings.STRIPE_API_BASE,
            timeout=settings.STRIPE_TIMEOUT,
        )

    def _request(self, method, path, data=None):
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(
                method,
                url,
                auth=(self.secret_key, ''),
                data=data,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            error = _error_body(e.response)
            logger.error(f"Stripe API Error: {e.response.status_code} - {error.get('message')}")
            raise PaymentGatewayError(
                error.get('message') or str(e),
                code=error.get('code'),
                status_code=e.response.status_code,
            ) from e
        except requests.exceptions.JSONDecodeError as e:
            raise PaymentGatewayError("The payment processor returned an invalid response.") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Could not reach Stripe at {url}: {e}")
            raise PaymentGatewayError(
                "The payment processor could not be reached.",
                code='gateway_unreachable',
            ) from e

    def create_authorization(self, amount_minor_units, currency, metadata=None):
        """
        Creates a PaymentIntent with automatic payment methods enabled.
        Metadata values must be strings.
        """
        data = {
            'amount': int(amount_minor_units),
            'currency': currency,
            'automatic_payment_methods[enabled]': 'true',
        }
        for key, value in (metadata or {}).items():
            data[f'metadata[{key}]'] = '' if value is None else str(value)

        logger.info(f"Creating PaymentIntent for {amount_minor_units} {currency}")
        payload = self._request('POST', '/v1/payment_intents', data=data)
        authorization = PaymentAuthorization.from_api(payload)
        logger.info(f"PaymentIntent {authorization.id} created with status {authorization.status}")
        return authorization

    def retrieve_authorization(self, payment_intent_id):
        """
        Retrieves the current state of a PaymentIntent.
        """
        logger.info(f"Retrieving PaymentIntent {payment_intent_id}")
        payload = self._request('GET', f'/v1/payment_intents/{payment_intent_id}')
        return PaymentAuthorization.from_api(payload)


def _error_body(response):
    try:
        return response.json().get('error') or {}
    except ValueError:
        return {}
