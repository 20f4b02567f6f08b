"""
Order workflow facade

Single entry point used by the HTTP layer: search, submit, review, pay and
poll. build_order_workflow() wires the components and picks the real or
static collaborators once, from configuration.
"""

import inspect
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from config import WorkflowConfig
from models import CheckoutSession, Invoice, OrderStatus, PendingOrder, QuoteResult
from performance_monitor import get_performance_stats
from services.admin_review import AdminReviewGate
from services.availability_oracle import (
    AvailabilityOracle, RegistrarAvailabilityOracle, StaticAvailabilityOracle, parse_domain_query,
)
from services.cpanel import get_cpanel_service
from services.email_service import EmailService
from services.notification_dispatcher import NotificationDispatcher
from services.openprovider import get_openprovider_service
from services.order_intake import OrderIntake
from services.payment_coordinator import PaymentCoordinator, PaymentEventResult
from services.pricing_snapshot import PricingSnapshotStore, normalize_tld
from services.provisioning_worker import ProvisioningWorker
from services.registration_provisioner import RegistrationProvisioner
from services.stripe_checkout import get_stripe_checkout_service
from workflow_errors import OrderNotFoundError, OrderValidationError

logger = logging.getLogger(__name__)


class OrderWorkflow:
    """Domain and hosting order operations"""

    def __init__(self, store, oracle: AvailabilityOracle, pricing: PricingSnapshotStore,
                 intake: OrderIntake, review: AdminReviewGate, payments: PaymentCoordinator,
                 provisioner: RegistrationProvisioner, worker: ProvisioningWorker,
                 dispatcher: NotificationDispatcher, providers: Sequence[Any] = ()):
        self.store = store
        self.oracle = oracle
        self.pricing = pricing
        self.intake = intake
        self.review = review
        self.payments = payments
        self.provisioner = provisioner
        self.worker = worker
        self.dispatcher = dispatcher
        self.providers = list(providers)

    # ---------------- customer ----------------

    async def search_domains(self, query: str, tlds: Optional[Iterable[str]] = None) -> List[QuoteResult]:
        return await self.oracle.search(query, tlds)

    async def submit_order(self, customer_id: int, domain: str, tld: str, years: int,
                           hosting_package_id: Optional[int] = None) -> PendingOrder:
        """Re-quote the chosen domain and create a PENDING_REVIEW order from it"""
        if not tld:
            raise OrderValidationError("A TLD is required")
        tld = normalize_tld(tld)
        label, _ = parse_domain_query(domain, [tld])
        quote = await self.oracle.quote(label, tld)
        return await self.intake.submit(customer_id, quote, years, hosting_package_id)

    async def create_checkout_session(self, invoice_id: int) -> CheckoutSession:
        return await self.payments.create_checkout(invoice_id)

    # ---------------- admin ----------------

    async def approve_order(self, order_id: int) -> Invoice:
        return await self.review.approve(order_id)

    async def reject_order(self, order_id: int, notes: str) -> None:
        await self.review.reject(order_id, notes)

    async def mark_invoice_paid(self, invoice_id: int, reference: Optional[str] = None) -> PaymentEventResult:
        return await self.payments.mark_invoice_paid(invoice_id, reference)

    # ---------------- payment processor ----------------

    async def handle_payment_event(self, event_id: str, invoice_id: int, outcome: str) -> PaymentEventResult:
        return await self.payments.on_payment_event(event_id, invoice_id, outcome)

    # ---------------- support ----------------

    async def notify_ticket_reply(self, reply_id: Any, customer_id: int, author: str, ticket_number: str,
                                  subject: Optional[str] = None, message: Optional[str] = None) -> int:
        """Email the side of a support conversation that did not write the reply"""
        return await self.dispatcher.dispatch('ticket_reply', reply_id, {
            'customer_id': customer_id,
            'author': author,
            'ticket_number': ticket_number,
            'subject': subject,
            'message': message,
        })

    # ---------------- read models ----------------

    async def get_order(self, order_id: int) -> PendingOrder:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def list_orders(self, status: Optional[OrderStatus] = None,
                          customer_id: Optional[int] = None) -> List[PendingOrder]:
        return await self.store.list_orders(status=status, customer_id=customer_id)

    async def get_order_status(self, order_id: int) -> Dict[str, Any]:
        """Order plus everything hanging off it, for polling clients"""
        order = await self.get_order(order_id)
        invoice = await self.store.get_invoice_for_order(order.id)
        domain = await self.store.get_domain_for_order(order.id)
        hosting = await self.store.get_hosting_for_order(order.id)
        requests = await self.store.list_provisioning_requests(order.id)
        return {
            'order': order.to_dict(),
            'invoice': invoice.to_dict() if invoice else None,
            'domain': domain.to_dict() if domain else None,
            'hosting': hosting.to_dict() if hosting else None,
            'provisioning': [request.to_dict() for request in requests],
        }

    # ---------------- lifecycle ----------------

    async def start(self):
        await self.worker.start()

    async def stop(self):
        """Stop the worker, then release provider HTTP clients"""
        await self.worker.stop()
        for provider in self.providers:
            close = getattr(provider, 'close', None)
            if close is None:
                continue
            try:
                result = close()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"⚠️ Failed to close {type(provider).__name__}: {e}")
        logger.info("🛑 Order workflow stopped")

    async def health(self) -> Dict[str, Any]:
        try:
            database_ok = await self.store.health_check()
        except Exception as e:
            logger.error(f"❌ Database health check failed: {e}")
            database_ok = False
        return {
            'status': 'healthy' if database_ok else 'degraded',
            'database': database_ok,
            'provisioning_worker': {'running': self.worker.running, **self.worker.stats},
            'providers': get_performance_stats(),
        }


def build_order_workflow(config: WorkflowConfig, store, *, oracle: Optional[AvailabilityOracle] = None,
                         registrar=None, hosting=None, checkout=None,
                         email: Optional[EmailService] = None) -> OrderWorkflow:
    """Wire the order workflow; collaborators not passed in are built from config"""
    pricing = PricingSnapshotStore.from_store(store, config.pricing_cache_ttl)
    registrar = registrar or get_openprovider_service(config)
    hosting = hosting or get_cpanel_service(config)
    checkout = checkout or get_stripe_checkout_service(config)
    email = email or EmailService(config.resend_api_key, config.email_from)

    if oracle is None:
        if config.registrar_configured and not config.test_mode:
            oracle = RegistrarAvailabilityOracle(registrar, pricing, config.default_tlds,
                                                 config.domain_markup_percentage)
        else:
            logger.warning("⚠️ Registrar not configured - using static availability answers")
            oracle = StaticAvailabilityOracle(pricing, config.default_tlds)

    dispatcher = NotificationDispatcher(store, email, config.admin_emails, config.currency)
    provisioner = RegistrationProvisioner(
        store, oracle, registrar, hosting, pricing, dispatcher,
        price_tolerance_percent=config.price_tolerance_percent,
        max_attempts=config.provider_max_attempts,
        backoff_base=config.provider_backoff_base,
        claim_timeout=config.provisioning_claim_timeout,
    )
    worker = ProvisioningWorker(provisioner, store, config.provisioning_sweep_interval)

    return OrderWorkflow(
        store=store,
        oracle=oracle,
        pricing=pricing,
        intake=OrderIntake(store, pricing, dispatcher),
        review=AdminReviewGate(store, dispatcher, config.currency, config.invoice_due_days),
        payments=PaymentCoordinator(store, checkout, dispatcher, worker),
        provisioner=provisioner,
        worker=worker,
        dispatcher=dispatcher,
        providers=[registrar, hosting, checkout, email],
    )
