"""
Admin review gate

Approve or reject orders waiting in PENDING_REVIEW. Both decisions are
compare-and-swap transitions; approval creates the order's single invoice
in the same database transaction.
"""

import logging
from datetime import timedelta
from typing import Optional

from models import Invoice, InvoiceStatus, OrderStatus, PendingOrder, RejectionReason, utcnow
from workflow_errors import OrderConflictError, OrderNotFoundError, OrderValidationError

logger = logging.getLogger(__name__)


class AdminReviewGate:
    """Admin decisions on submitted orders"""

    def __init__(self, store, dispatcher, currency: str = "GBP", invoice_due_days: int = 14):
        self.store = store
        self.dispatcher = dispatcher
        self.currency = currency
        self.invoice_due_days = invoice_due_days

    async def _load(self, order_id: int) -> PendingOrder:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def approve(self, order_id: int) -> Invoice:
        """
        Approve an order and issue its invoice

        Raises:
            OrderNotFoundError: unknown order
            OrderConflictError: the order is no longer PENDING_REVIEW; no invoice created
        """
        order = await self._load(order_id)
        if order.status != OrderStatus.PENDING_REVIEW:
            raise OrderConflictError(f"Order {order_id} is {order.status.value}, not pending review")

        draft = Invoice(
            customer_id=order.customer_id,
            order_id=order.id,
            amount=order.total_estimate,
            currency=self.currency,
            due_date=utcnow() + timedelta(days=self.invoice_due_days),
            status=InvoiceStatus.PENDING,
        )
        invoice: Optional[Invoice] = await self.store.approve_order_with_invoice(order.id, draft)
        if invoice is None:
            logger.warning(f"⚠️ Approval of order #{order_id} lost a race, no invoice created")
            raise OrderConflictError(f"Order {order_id} was already reviewed")

        logger.info(f"✅ Order #{order_id} approved, invoice #{invoice.id} for {invoice.amount} {invoice.currency}")
        await self.dispatcher.dispatch('order_approved', order.id)
        return invoice

    async def reject(self, order_id: int, notes: str) -> None:
        """
        Reject an order with a reason shown to the customer

        Raises:
            OrderValidationError: notes are blank
            OrderNotFoundError: unknown order
            OrderConflictError: the order is no longer PENDING_REVIEW
        """
        if not notes or not notes.strip():
            raise OrderValidationError("A rejection reason is required")

        order = await self._load(order_id)
        rejected = await self.store.transition_order(
            order.id, OrderStatus.PENDING_REVIEW, OrderStatus.REJECTED,
            admin_notes=RejectionReason(notes.strip()), reviewed=True,
        )
        if not rejected:
            raise OrderConflictError(f"Order {order_id} was already reviewed")

        logger.info(f"🚫 Order #{order_id} rejected")
        await self.dispatcher.dispatch('order_rejected', order.id)
