"""
Stripe Checkout integration for invoice payments

Creates hosted checkout sessions over the Stripe REST API. The invoice id
travels in the session metadata so the payment webhook can find the invoice
again; nothing here marks an invoice paid.

Stripe webhook deliveries are checked against the Stripe-Signature header
(t=<unix time>,v1=<hex HMAC-SHA256 of "<t>.<raw body>">) and reduced to the
(event id, invoice id, outcome) triple the payment coordinator understands.
"""

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx

from models import CheckoutSession, Invoice
from performance_monitor import monitor_performance
from pricing_utils import to_minor_units
from utils.environment import get_checkout_return_urls
from workflow_errors import PermanentProviderError, ProviderTimeoutError, TransientProviderError

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"

# Maximum age of a signed webhook delivery, in seconds
STRIPE_SIGNATURE_TOLERANCE = 300

PAID_SESSION_STATUSES = ('paid', 'no_payment_required')


class StripeCheckoutService:
    """Stripe Checkout session client"""

    def __init__(self, secret_key: Optional[str], timeout: float = 12.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.secret_key = secret_key
        self._timeout = httpx.Timeout(connect=3.0, read=timeout, write=5.0, pool=5.0)
        self._client = client

        if self.secret_key:
            logger.info("🔧 Stripe checkout service initialized")
        else:
            logger.info("🔧 Stripe checkout service initialized (missing STRIPE_SECRET_KEY)")

    def is_available(self) -> bool:
        return bool(self.secret_key)

    @staticmethod
    def idempotency_key(invoice: Invoice) -> str:
        """Same key for double clicks, a fresh one once a session has been stored"""
        return f"invoice-{invoice.id}-checkout-{invoice.checkout_session_id or 'first'}"

    @monitor_performance("stripe.create_checkout_session")
    async def create_checkout_session(self, invoice: Invoice, description: str,
                                      customer_email: Optional[str] = None) -> CheckoutSession:
        """
        Create a hosted checkout session for an invoice

        Returns:
            CheckoutSession with the Stripe session id and the redirect URL
        """
        if not self.is_available():
            raise TransientProviderError("Card payments are not configured")

        urls = get_checkout_return_urls(invoice.id)
        data: Dict[str, Any] = {
            'mode': 'payment',
            'line_items[0][quantity]': 1,
            'line_items[0][price_data][currency]': invoice.currency.lower(),
            'line_items[0][price_data][unit_amount]': to_minor_units(invoice.amount),
            'line_items[0][price_data][product_data][name]': f"Invoice {invoice.id}",
            'line_items[0][price_data][product_data][description]': description,
            'success_url': urls['success_url'],
            'cancel_url': urls['cancel_url'],
            'client_reference_id': str(invoice.id),
            'metadata[invoice_id]': str(invoice.id),
            'metadata[order_id]': str(invoice.order_id),
            'payment_intent_data[metadata][invoice_id]': str(invoice.id),
        }
        if customer_email:
            data['customer_email'] = customer_email

        headers = {
            'Authorization': f'Bearer {self.secret_key}',
            'Idempotency-Key': self.idempotency_key(invoice),
        }
        url = f"{STRIPE_API_BASE}/checkout/sessions"

        try:
            if self._client is not None:
                response = await self._client.post(url, data=data, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, data=data, headers=headers)
        except httpx.ConnectTimeout as e:
            raise TransientProviderError(f"Stripe connect timeout: {e}")
        except httpx.TimeoutException:
            raise ProviderTimeoutError("Stripe checkout session request timed out")
        except httpx.TransportError as e:
            raise TransientProviderError(f"Stripe transport error: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(f"Stripe HTTP {response.status_code}")

        try:
            result = response.json()
        except ValueError:
            raise TransientProviderError(f"Stripe returned non-JSON response (HTTP {response.status_code})")

        if response.status_code != 200:
            message = result.get('error', {}).get('message', 'Unknown error')
            logger.error(f"❌ Stripe refused checkout session for invoice #{invoice.id}: {message}")
            raise PermanentProviderError(f"Stripe error: {message}", {'http_status': response.status_code})

        session = CheckoutSession(session_id=result['id'], url=result['url'])
        logger.info(f"✅ Stripe checkout session {session.session_id} created for invoice #{invoice.id}")
        return session


_stripe_service: Optional[StripeCheckoutService] = None

def get_stripe_checkout_service(config) -> StripeCheckoutService:
    global _stripe_service
    if _stripe_service is None:
        _stripe_service = StripeCheckoutService(config.stripe_secret_key, timeout=config.provider_timeout)
    return _stripe_service

# ====================================================================
# WEBHOOK EVENTS
# ====================================================================

def verify_stripe_signature(payload: bytes, header: Optional[str], secret: Optional[str],
                            tolerance: int = STRIPE_SIGNATURE_TOLERANCE, now: Optional[float] = None,
                            allow_unsigned: bool = False) -> bool:
    """Check a Stripe-Signature header against the raw request body"""
    if not secret:
        if allow_unsigned:
            logger.warning("⚠️ STRIPE_WEBHOOK_SECRET not set - accepting unsigned Stripe event (test mode)")
            return True
        logger.error("🛡️ WEBHOOK AUTH FAILURE: STRIPE_WEBHOOK_SECRET not set in environment")
        return False
    if not header:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Missing Stripe-Signature header")
        return False

    timestamp = None
    signatures = []
    for item in header.split(','):
        key, _, value = item.strip().partition('=')
        if key == 't':
            timestamp = value
        elif key == 'v1':
            signatures.append(value)

    try:
        signed_at = int(timestamp) if timestamp is not None else None
    except ValueError:
        signed_at = None
    if signed_at is None or not signatures:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Malformed Stripe-Signature header")
        return False

    current = time.time() if now is None else now
    if abs(current - signed_at) > tolerance:
        logger.error(f"🛡️ WEBHOOK AUTH FAILURE: Stripe event timestamp outside {tolerance}s tolerance")
        return False

    signed_payload = f"{signed_at}.".encode() + payload
    expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, signature) for signature in signatures):
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Stripe signature mismatch")
        return False
    return True


def _invoice_id(obj: Dict[str, Any]) -> Optional[int]:
    metadata = obj.get('metadata') or {}
    raw = metadata.get('invoice_id') or obj.get('client_reference_id')
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def stripe_payment_event(event: Dict[str, Any]) -> Optional[Tuple[str, int, str]]:
    """
    Reduce a Stripe event to (event id, invoice id, outcome)

    Returns None for event types that do not settle an invoice, for checkout
    sessions that are still awaiting an asynchronous payment, and for
    objects that carry no invoice id.
    """
    event_id = event.get('id')
    event_type = event.get('type')
    obj = (event.get('data') or {}).get('object') or {}

    if event_type == 'checkout.session.completed':
        if obj.get('payment_status') not in PAID_SESSION_STATUSES:
            logger.info(f"⏳ Stripe session {obj.get('id')} completed with payment {obj.get('payment_status')}")
            return None
        outcome = 'succeeded'
    elif event_type == 'checkout.session.async_payment_succeeded':
        outcome = 'succeeded'
    elif event_type in ('checkout.session.async_payment_failed', 'payment_intent.payment_failed'):
        outcome = 'failed'
    else:
        logger.debug(f"Ignoring Stripe event type {event_type}")
        return None

    invoice_id = _invoice_id(obj)
    if not event_id or invoice_id is None:
        logger.warning(f"⚠️ Stripe event {event_id} ({event_type}) carries no invoice id")
        return None
    return event_id, invoice_id, outcome
