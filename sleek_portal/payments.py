"""
Stripe payments: payment intents over the REST API and webhook handling.
"""

import os
import time
import hmac
import hashlib
from typing import Any, Dict, Optional
import requests
from requests.adapters import HTTPAdapter
from requests.utils import quote
from urllib3.util.retry import Retry
import structlog
from .errors import ApiError, NotFound
from .models import AuthUser, PaymentRecord
from .utils import exponential_backoff, to_cents, utcnow_iso

logger = structlog.get_logger()

STRIPE_API_BASE = "https://api.stripe.com/v1"
SIGNATURE_TOLERANCE_SECONDS = 300

class StripeAPIError(Exception):
    """Raised when Stripe rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class StripeClient:
    """Minimal Stripe REST client for payment intents."""

    def __init__(self):
        self.secret_key = os.getenv('STRIPE_SECRET_KEY')
        if not self.secret_key:
            raise ValueError("STRIPE_SECRET_KEY environment variable is required")

        self.base_url = os.getenv('STRIPE_API_BASE', STRIPE_API_BASE).rstrip('/')
        self.headers = {"Authorization": f"Bearer {self.secret_key}"}
        self.timeout = float(os.getenv('STRIPE_TIMEOUT', '15'))

        # GET retries only; urllib3 leaves POST alone by default
        self.session = requests.Session()
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

    @exponential_backoff(max_retries=2, base_delay=0.5,
                         retry_on=(requests.exceptions.ConnectionError, requests.exceptions.Timeout))
    def _make_request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = self.session.request(method, f"{self.base_url}{path}", headers=self.headers,
                                        timeout=self.timeout, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = {}

        if not response.ok:
            message = (body.get("error") or {}).get("message") or f"Stripe request failed ({response.status_code})"
            logger.error(f"Stripe API error: {response.status_code} - {message}")
            raise StripeAPIError(message, response.status_code)
        return body

    def create_payment_intent(self, amount: float, order_id: str, currency: str = "usd",
                              receipt_email: Optional[str] = None) -> Dict[str, Any]:
        """Create a PaymentIntent; `amount` is in major units and sent as cents."""
        data = {
            "amount": str(to_cents(amount)),
            "currency": currency,
            "metadata[order_id]": order_id,
        }
        if receipt_email:
            data["receipt_email"] = receipt_email
        return self._make_request("POST", "/payment_intents", data=data)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._make_request("GET", f"/payment_intents/{quote(str(payment_intent_id), safe='')}")

def verify_stripe_signature(payload: bytes, signature_header: str, secret: str,
                            tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
                            now: Optional[float] = None) -> bool:
    """
    Verify a Stripe-Signature header ("t=<unix>,v1=<hex>[,v1=...]").

    The expected signature is HMAC-SHA256 of "<t>.<payload>" keyed by the
    endpoint secret; timestamps older than `tolerance` seconds are rejected.
    """
    timestamp = None
    signatures = []
    for item in signature_header.split(','):
        key, _, value = item.strip().partition('=')
        if key == 't':
            timestamp = value
        elif key == 'v1':
            signatures.append(value)

    if not timestamp or not signatures:
        return False
    try:
        signed_at = int(timestamp)
    except ValueError:
        return False

    current = time.time() if now is None else now
    if tolerance and abs(current - signed_at) > tolerance:
        return False

    signed_payload = timestamp.encode('utf-8') + b'.' + payload
    expected = hmac.new(secret.encode('utf-8'), signed_payload, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, sig) for sig in signatures)

def _parse_amount(value: Any) -> float:
    if isinstance(value, bool):
        raise ApiError("amount must be a positive number")
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ApiError("amount must be a positive number")
    if amount <= 0:
        raise ApiError("amount must be a positive number")
    return amount

class PaymentService:
    """Order payment flows tying Stripe intents to order rows."""

    def __init__(self, repo, stripe: StripeClient):
        self.repo = repo
        self.stripe = stripe

    def create_intent(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get('amount') or not payload.get('order_id'):
            raise ApiError("Missing required fields: amount, order_id")

        intent = self.stripe.create_payment_intent(
            _parse_amount(payload['amount']),
            payload['order_id'],
            currency=payload.get('currency') or 'usd',
            receipt_email=payload.get('customer_email'),
        )
        logger.info("Created payment intent", order_id=payload['order_id'], payment_intent=intent.get('id'))
        return {
            "client_secret": intent.get('client_secret'),
            "payment_intent_id": intent.get('id'),
        }

    def process(self, user: AuthUser, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Sync the caller's order with the current state of its payment intent."""
        payment_intent_id = payload.get('payment_intent_id')
        order_id = payload.get('order_id')
        if not payment_intent_id or not order_id:
            raise ApiError("Missing required fields: payment_intent_id, order_id")

        intent = self.stripe.retrieve_payment_intent(payment_intent_id)
        if (intent.get('metadata') or {}).get('order_id') != order_id:
            logger.warning("Payment intent does not match order", order_id=order_id,
                           payment_intent=payment_intent_id)
            raise ApiError("Payment intent does not belong to this order")
        status = intent.get('status')

        updated = self.repo.update_order(order_id, {
            "stripe_payment_intent_id": payment_intent_id,
            "payment_status": 'paid' if status == 'succeeded' else 'pending',
            "updated_at": utcnow_iso(),
        }, extra_filters={"buyer_id": user.id})
        if not updated:
            raise NotFound("Order not found")

        return {
            "payment_status": status,
            "amount_received": (intent.get('amount_received') or 0) / 100,
        }

    def handle_event(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Apply a Stripe webhook event to the matching order.

        Returns the order id that was touched, or None when the event was
        only acknowledged.
        """
        event_type = event.get('type')
        intent = ((event.get('data') or {}).get('object')) or {}
        order_id = (intent.get('metadata') or {}).get('order_id')

        if event_type not in ('payment_intent.succeeded', 'payment_intent.payment_failed',
                              'payment_intent.canceled'):
            logger.info(f"Unhandled webhook event type: {event_type}")
            return None
        if not order_id:
            logger.warning(f"Stripe event {event_type} without order_id metadata")
            return None

        if event_type == 'payment_intent.succeeded':
            self._mark_paid(order_id, intent)
        elif event_type == 'payment_intent.payment_failed':
            self.repo.update_order(order_id, {"payment_status": 'failed', "updated_at": utcnow_iso()})
            logger.info("Payment failed", order_id=order_id)
        else:
            self.repo.update_order(order_id, {"payment_status": 'canceled', "updated_at": utcnow_iso()})
            logger.info("Payment canceled", order_id=order_id)
        return order_id

    def _mark_paid(self, order_id: str, intent: Dict[str, Any]) -> None:
        intent_id = intent.get('id')
        order = self.repo.get_order(order_id)
        # process() may already have marked the order paid from the client side
        if not (order and order.is_paid and order.stripe_payment_intent_id == intent_id):
            self.repo.update_order(order_id, {
                "payment_status": 'paid',
                "stripe_payment_intent_id": intent_id,
                "updated_at": utcnow_iso(),
            })

        # Stripe redelivers events; one history row per intent
        if intent_id and self.repo.find_payment_record(intent_id):
            logger.info("Payment already recorded", order_id=order_id)
            return

        self.repo.add_payment_record(PaymentRecord(
            order_id=order_id,
            amount=(intent.get('amount_received') or 0) / 100,
            payment_type='stripe',
            status='completed',
            transaction_id=intent_id,
        ))
        logger.info("Payment succeeded", order_id=order_id)
