"""
HTTP surface for the order workflow
aiohttp server with the customer/admin JSON API, the generic payment webhook
and the Stripe webhook
"""

import hmac
import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from admin_alerts import send_critical_alert
from config import WorkflowConfig
from models import OrderStatus
from services.order_workflow import OrderWorkflow
from services.stripe_checkout import stripe_payment_event, verify_stripe_signature
from workflow_errors import OrderValidationError, OrderWorkflowError

logger = logging.getLogger(__name__)

logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

WORKFLOW_KEY = web.AppKey("workflow", OrderWorkflow)
CONFIG_KEY = web.AppKey("config", WorkflowConfig)

SIGNATURE_HEADER = 'X-Payment-Signature'
STRIPE_SIGNATURE_HEADER = 'Stripe-Signature'
ADMIN_TOKEN_HEADER = 'X-Admin-Token'

# Webhook signature failure tracking for alerting
_webhook_failure_count = 0
_last_successful_webhook = 0.0
_webhook_failure_threshold = 5

_webhook_server: Optional[web.AppRunner] = None

# ====================================================================
# AUTHENTICATION
# ====================================================================

def verify_payment_signature(raw_body: bytes, received_signature: Optional[str], secret: Optional[str],
                             allow_unsigned: bool = False) -> bool:
    """
    Check the hex HMAC-SHA256 of the raw body

    Without a configured secret every event is refused, unless allow_unsigned
    is set (TEST_MODE only).
    """
    if not secret:
        if allow_unsigned:
            logger.warning("⚠️ PAYMENT_WEBHOOK_SECRET not set - accepting unsigned payment event (test mode)")
            return True
        logger.error("🛡️ WEBHOOK AUTH FAILURE: PAYMENT_WEBHOOK_SECRET not set in environment")
        logger.error("🔧 FIX: Set PAYMENT_WEBHOOK_SECRET to the payment processor's signing secret")
        return False
    if not received_signature:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Missing X-Payment-Signature header")
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(received_signature.strip().lower(), expected):
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Payment signature mismatch")
        return False
    return True

async def alert_webhook_authentication_failure():
    """Alert administrators once signature failures pile up"""
    global _webhook_failure_count
    _webhook_failure_count += 1

    if _webhook_failure_count >= _webhook_failure_threshold:
        logger.error(f"🚨 CRITICAL: Payment webhook signature failures: {_webhook_failure_count}")
        await send_critical_alert(
            "PaymentWebhook",
            f"Payment webhook failed signature verification {_webhook_failure_count} times in a row. "
            f"Check PAYMENT_WEBHOOK_SECRET and STRIPE_WEBHOOK_SECRET.",
            "webhook",
        )
    elif _webhook_failure_count % 2 == 0:
        logger.warning(f"⚠️ Webhook authentication failures: {_webhook_failure_count} "
                       f"(threshold: {_webhook_failure_threshold})")

def record_successful_webhook():
    global _webhook_failure_count, _last_successful_webhook
    if _webhook_failure_count > 0:
        logger.info(f"✅ Webhook authentication recovered after {_webhook_failure_count} failures")
        _webhook_failure_count = 0
    _last_successful_webhook = time.time()

def require_admin(request: Request):
    token = request.app[CONFIG_KEY].admin_api_token
    if not token:
        return
    received = request.headers.get(ADMIN_TOKEN_HEADER, '')
    if not hmac.compare_digest(received, token):
        raise web.HTTPUnauthorized(text=json.dumps({'error': 'unauthorized', 'message': 'Admin token required'}),
                                   content_type='application/json')

# ====================================================================
# REQUEST PARSING
# ====================================================================

async def _json_body(request: Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise OrderValidationError("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise OrderValidationError("Request body must be a JSON object")
    return data

def _int_field(value: Any, name: str, required: bool = True) -> Optional[int]:
    if value is None or value == '':
        if required:
            raise OrderValidationError(f"{name} is required")
        return None
    if isinstance(value, bool):
        raise OrderValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise OrderValidationError(f"{name} must be an integer")

def _path_id(request: Request, name: str = 'id') -> int:
    return _int_field(request.match_info.get(name), name)  # type: ignore[return-value]

@web.middleware
async def error_middleware(request: Request, handler) -> Response:
    """Map workflow errors to {error, message} bodies"""
    try:
        return await handler(request)
    except OrderWorkflowError as e:
        body = e.to_dict()
        if getattr(e, 'retriable', False):
            body['retriable'] = True
        if e.http_status >= 500:
            logger.warning(f"⚠️ {request.method} {request.path}: {e.code} - {e.reason}")
        return web.json_response(body, status=e.http_status)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return web.json_response({'error': 'internal_error', 'message': 'Internal server error'}, status=500)

# ====================================================================
# HANDLERS
# ====================================================================

async def health_handler(request: Request) -> Response:
    health = await request.app[WORKFLOW_KEY].health()
    health['timestamp'] = time.time()
    health['last_payment_webhook'] = _last_successful_webhook or None
    status_code = 200 if health['status'] == 'healthy' else 503
    return web.json_response(health, status=status_code)

async def search_domains_handler(request: Request) -> Response:
    data = await _json_body(request)
    query = data.get('query')
    if not isinstance(query, str):
        raise OrderValidationError("query is required")
    tlds = data.get('tlds')
    if tlds is not None and (not isinstance(tlds, list) or not all(isinstance(t, str) for t in tlds)):
        raise OrderValidationError("tlds must be a list of strings")

    results = await request.app[WORKFLOW_KEY].search_domains(query, tlds or None)
    return web.json_response({'results': [result.to_dict() for result in results]})

async def submit_order_handler(request: Request) -> Response:
    data = await _json_body(request)
    domain = data.get('domain')
    tld = data.get('tld')
    if not isinstance(domain, str) or not isinstance(tld, str):
        raise OrderValidationError("domain and tld are required")

    order = await request.app[WORKFLOW_KEY].submit_order(
        customer_id=_int_field(data.get('customerId'), 'customerId'),
        domain=domain,
        tld=tld,
        years=_int_field(data.get('years', 1), 'years'),
        hosting_package_id=_int_field(data.get('hostingPackageId'), 'hostingPackageId', required=False),
    )
    return web.json_response(order.to_dict(), status=201)

async def get_order_handler(request: Request) -> Response:
    status = await request.app[WORKFLOW_KEY].get_order_status(_path_id(request))
    return web.json_response(status)

async def list_orders_handler(request: Request) -> Response:
    raw_status = request.query.get('status')
    status = None
    if raw_status:
        try:
            status = OrderStatus(raw_status.lower())
        except ValueError:
            raise OrderValidationError(f"Unknown order status: {raw_status}")
    customer_id = _int_field(request.query.get('customerId'), 'customerId', required=False)

    orders = await request.app[WORKFLOW_KEY].list_orders(status=status, customer_id=customer_id)
    return web.json_response({'orders': [order.to_dict() for order in orders]})

async def approve_order_handler(request: Request) -> Response:
    require_admin(request)
    invoice = await request.app[WORKFLOW_KEY].approve_order(_path_id(request))
    return web.json_response({'invoiceId': invoice.id, 'invoice': invoice.to_dict()})

async def reject_order_handler(request: Request) -> Response:
    require_admin(request)
    data = await _json_body(request)
    notes = data.get('notes')
    await request.app[WORKFLOW_KEY].reject_order(_path_id(request), notes if isinstance(notes, str) else '')
    return web.json_response({})

async def checkout_handler(request: Request) -> Response:
    session = await request.app[WORKFLOW_KEY].create_checkout_session(_path_id(request))
    return web.json_response({'checkoutUrl': session.url, 'sessionId': session.session_id})

async def mark_paid_handler(request: Request) -> Response:
    require_admin(request)
    data = await _json_body(request)
    reference = data.get('reference')
    result = await request.app[WORKFLOW_KEY].mark_invoice_paid(
        _path_id(request), reference if isinstance(reference, str) else None
    )
    return web.json_response({'status': result.value})

async def payment_event_handler(request: Request) -> Response:
    """Payment processor callback; 200 on first delivery and on replays"""
    raw_body = await request.read()
    config = request.app[CONFIG_KEY]
    if not verify_payment_signature(raw_body, request.headers.get(SIGNATURE_HEADER),
                                    config.payment_webhook_secret, allow_unsigned=config.test_mode):
        await alert_webhook_authentication_failure()
        return web.json_response({'error': 'unauthorized', 'message': 'Invalid payment signature'}, status=401)
    record_successful_webhook()

    try:
        data = json.loads(raw_body or b'{}')
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise OrderValidationError("Payment event body must be valid JSON")
    if not isinstance(data, dict):
        raise OrderValidationError("Payment event body must be a JSON object")

    event_id = data.get('eventId')
    if not isinstance(event_id, str) or not event_id:
        raise OrderValidationError("eventId is required")

    result = await request.app[WORKFLOW_KEY].handle_payment_event(
        event_id, _int_field(data.get('invoiceId'), 'invoiceId'), str(data.get('outcome', ''))
    )
    logger.info(f"💳 Payment event {event_id}: {result.value}")
    return web.json_response({'status': result.value})

async def stripe_webhook_handler(request: Request) -> Response:
    """Stripe event delivery; unhandled event types are acknowledged and ignored"""
    raw_body = await request.read()
    config = request.app[CONFIG_KEY]
    if not verify_stripe_signature(raw_body, request.headers.get(STRIPE_SIGNATURE_HEADER),
                                   config.stripe_webhook_secret, allow_unsigned=config.test_mode):
        await alert_webhook_authentication_failure()
        return web.json_response({'error': 'unauthorized', 'message': 'Invalid Stripe signature'}, status=401)
    record_successful_webhook()

    try:
        event = json.loads(raw_body or b'{}')
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise OrderValidationError("Stripe event body must be valid JSON")
    if not isinstance(event, dict):
        raise OrderValidationError("Stripe event body must be a JSON object")

    logger.info(f"📡 Stripe event {event.get('id')}: {event.get('type')}")
    payment = stripe_payment_event(event)
    if payment is None:
        return web.json_response({'status': 'ignored'})

    event_id, invoice_id, outcome = payment
    result = await request.app[WORKFLOW_KEY].handle_payment_event(event_id, invoice_id, outcome)
    logger.info(f"💳 Stripe event {event_id} for invoice #{invoice_id}: {result.value}")
    return web.json_response({'status': result.value})

# ====================================================================
# APPLICATION
# ====================================================================

def create_app(workflow: OrderWorkflow, config: WorkflowConfig) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[WORKFLOW_KEY] = workflow
    app[CONFIG_KEY] = config

    # Health
    app.router.add_get('/health', health_handler)
    app.router.add_get('/healthz', health_handler)

    # Customer API
    app.router.add_post('/api/domains/search', search_domains_handler)
    app.router.add_post('/api/orders', submit_order_handler)
    app.router.add_get('/api/orders', list_orders_handler)
    app.router.add_get('/api/orders/{id}', get_order_handler)
    app.router.add_post('/api/invoices/{id}/checkout', checkout_handler)

    # Admin API
    app.router.add_post('/api/orders/{id}/approve', approve_order_handler)
    app.router.add_post('/api/orders/{id}/reject', reject_order_handler)
    app.router.add_post('/api/invoices/{id}/mark-paid', mark_paid_handler)

    # Payment processor webhook
    app.router.add_post('/payment-events', payment_event_handler)
    app.router.add_post('/stripe-webhook', stripe_webhook_handler)

    if not config.admin_api_token:
        logger.warning("⚠️ ADMIN_API_TOKEN not set - admin routes are unauthenticated")
    if not config.payment_webhook_secret:
        logger.warning("⚠️ PAYMENT_WEBHOOK_SECRET not set - payment events will be "
                       + ("accepted unsigned (test mode)" if config.test_mode else "refused"))
    if not config.stripe_webhook_secret:
        logger.warning("⚠️ STRIPE_WEBHOOK_SECRET not set - Stripe events will be "
                       + ("accepted unsigned (test mode)" if config.test_mode else "refused"))
    return app

async def start_webhook_server(workflow: OrderWorkflow, config: WorkflowConfig,
                               port: Optional[int] = None) -> web.AppRunner:
    """Start the aiohttp server in the running event loop"""
    global _webhook_server
    port = port or config.webhook_port

    try:
        runner = web.AppRunner(create_app(workflow, config))
        await runner.setup()

        site = web.TCPSite(runner, '0.0.0.0', port)
        await site.start()

        _webhook_server = runner
        logger.info(f"✅ Webhook server started on http://0.0.0.0:{port}")
        logger.info("🔗 Health check endpoint: /health, /healthz")
        return runner

    except OSError as e:
        logger.error(f"❌ Failed to start webhook server: {e}")
        raise

async def stop_webhook_server():
    global _webhook_server
    if _webhook_server:
        await _webhook_server.cleanup()
        _webhook_server = None
    logger.info("✅ Webhook server stopped")
