"""
Invoice and payment coordinator

Creates checkout sessions for approved orders and applies payment events.
Events arrive at least once, so every successful payment goes through
settle_invoice_payment, which records the event id, marks the invoice paid,
moves the order to PAID and queues provisioning in one transaction.
"""

import logging
from enum import Enum
from typing import List, Optional

from admin_alerts import send_critical_alert, send_warning_alert
from models import (
    CheckoutSession, InvoiceStatus, PaymentOutcome, PendingOrder, ProvisioningRequest,
    ProvisioningType, SettlementResult, provisioning_key,
)
from workflow_errors import OrderConflictError, OrderNotFoundError, OrderValidationError

logger = logging.getLogger(__name__)

MANUAL_EVENT_PREFIX = "manual:"


class PaymentEventResult(Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    PAYMENT_FAILED = "payment_failed"


def provisioning_requests_for(order: PendingOrder) -> List[ProvisioningRequest]:
    """Queued provisioning work created when an order is paid"""
    requests = [ProvisioningRequest(
        order_id=order.id,
        request_type=ProvisioningType.DOMAIN_REGISTRATION,
        idempotency_key=provisioning_key(order, ProvisioningType.DOMAIN_REGISTRATION),
        priority=1,
    )]
    if order.has_hosting:
        requests.append(ProvisioningRequest(
            order_id=order.id,
            request_type=ProvisioningType.HOSTING_SETUP,
            idempotency_key=provisioning_key(order, ProvisioningType.HOSTING_SETUP),
        ))
    return requests


class PaymentCoordinator:
    """Checkout creation and idempotent payment event handling"""

    def __init__(self, store, checkout, dispatcher, worker=None):
        self.store = store
        self.checkout = checkout
        self.dispatcher = dispatcher
        self.worker = worker

    async def create_checkout(self, invoice_id: int) -> CheckoutSession:
        """
        Start (or restart) card payment for a pending invoice

        Raises:
            OrderNotFoundError: unknown invoice
            OrderConflictError: the invoice is not pending
            TransientProviderError / PermanentProviderError: from the processor
        """
        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None:
            raise OrderNotFoundError(f"Invoice {invoice_id} not found")
        if invoice.status != InvoiceStatus.PENDING:
            raise OrderConflictError(f"Invoice {invoice_id} is {invoice.status.value}")

        order = await self.store.get_order(invoice.order_id)
        customer = await self.store.get_customer(invoice.customer_id)
        description = f"{order.fqdn} ({order.years} year(s))" if order else f"Invoice {invoice.id}"

        session = await self.checkout.create_checkout_session(
            invoice, description, customer.email if customer else None
        )
        await self.store.set_invoice_checkout_session(invoice.id, session.session_id)
        return session

    async def on_payment_event(self, event_id: str, invoice_id: int, outcome: str) -> PaymentEventResult:
        """
        Apply a payment processor event

        Safe to call any number of times with the same event id.

        Raises:
            OrderValidationError: missing event id or unknown outcome
            OrderNotFoundError: unknown invoice
            OrderConflictError: the order cannot accept a payment in its current state
        """
        if not event_id:
            raise OrderValidationError("Payment event id is required")
        try:
            parsed_outcome = PaymentOutcome(str(outcome).lower())
        except ValueError:
            raise OrderValidationError(f"Unknown payment outcome: {outcome}")

        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None:
            raise OrderNotFoundError(f"Invoice {invoice_id} not found")

        if parsed_outcome == PaymentOutcome.FAILED:
            return await self._on_payment_failed(event_id, invoice.id, invoice.order_id)

        order = await self.store.get_order(invoice.order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {invoice.order_id} not found")

        try:
            result = await self.store.settle_invoice_payment(
                invoice.id, order.id, event_id, provisioning_requests_for(order)
            )
        except OrderConflictError as e:
            logger.error(f"❌ Payment {event_id} for invoice #{invoice.id} could not be applied: {e.reason}")
            await send_critical_alert(
                "PaymentCoordinator",
                f"Payment received for invoice #{invoice.id} but order #{order.id} is {order.status.value}",
                "payment_processing",
                {'event_id': event_id, 'invoice_id': invoice.id, 'order_id': order.id},
            )
            raise

        if result == SettlementResult.DUPLICATE_EVENT:
            logger.info(f"🔁 Payment event {event_id} already processed")
            return PaymentEventResult.DUPLICATE

        if result == SettlementResult.ALREADY_PAID:
            logger.warning(f"⚠️ Invoice #{invoice.id} already paid, ignoring payment event {event_id}")
            if not event_id.startswith(MANUAL_EVENT_PREFIX):
                await send_warning_alert(
                    "PaymentCoordinator",
                    f"Second successful payment for already paid invoice #{invoice.id} - check for a double charge",
                    "payment_processing",
                    {'event_id': event_id, 'invoice_id': invoice.id},
                )
            return PaymentEventResult.DUPLICATE

        logger.info(f"💰 Invoice #{invoice.id} paid (event {event_id}), order #{order.id} queued for provisioning")
        await self.dispatcher.dispatch('payment_received', order.id)
        if self.worker is not None:
            self.worker.enqueue(order.id)
        return PaymentEventResult.PROCESSED

    async def _on_payment_failed(self, event_id: str, invoice_id: int, order_id: int) -> PaymentEventResult:
        if not await self.store.record_payment_event(event_id, invoice_id, PaymentOutcome.FAILED.value):
            logger.info(f"🔁 Failed-payment event {event_id} already recorded")
            return PaymentEventResult.DUPLICATE

        logger.info(f"💳 Payment failed for invoice #{invoice_id} (event {event_id}), invoice stays pending")
        await self.dispatcher.dispatch('payment_failed', order_id, dedupe_key=f"{order_id}:{event_id}")
        return PaymentEventResult.PAYMENT_FAILED

    async def mark_invoice_paid(self, invoice_id: int, reference: Optional[str] = None) -> PaymentEventResult:
        """Admin settlement for payments taken outside the processor (bank transfer, cash)"""
        logger.info(f"🧾 Manual payment for invoice #{invoice_id}" + (f" (ref {reference})" if reference else ""))
        return await self.on_payment_event(f"{MANUAL_EVENT_PREFIX}{invoice_id}", invoice_id,
                                           PaymentOutcome.SUCCEEDED.value)
