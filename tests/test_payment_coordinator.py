"""
Payment coordinator tests
P0 Critical: at-least-once payment events must settle an invoice exactly once
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from models import (
    CheckoutSession, InvoiceStatus, OrderStatus, ProvisioningStatus, ProvisioningType,
)
from services.payment_coordinator import PaymentEventResult, provisioning_requests_for
from workflow_errors import (
    OrderConflictError, OrderNotFoundError, OrderValidationError, TransientProviderError,
)

from conftest import PendingOrderFactory


class TestCheckout:
    """Checkout sessions for approved invoices"""

    async def test_checkout_for_pending_invoice(self, workflow, order_flow, checkout, store, customer):
        order, invoice = await order_flow.approved()

        session = await workflow.create_checkout_session(invoice.id)

        assert session == CheckoutSession('cs_test_123', 'https://checkout.stripe.com/c/pay/cs_test_123')
        passed_invoice, description, customer_email = checkout.create_checkout_session.await_args.args
        assert passed_invoice.id == invoice.id
        assert order.fqdn in description
        assert customer_email == customer.email
        assert store.invoices[invoice.id].checkout_session_id == 'cs_test_123'

    async def test_checkout_for_paid_invoice_conflicts(self, workflow, order_flow, checkout):
        _, invoice = await order_flow.paid()

        with pytest.raises(OrderConflictError):
            await workflow.create_checkout_session(invoice.id)

        checkout.create_checkout_session.assert_not_awaited()

    async def test_checkout_unknown_invoice(self, workflow):
        with pytest.raises(OrderNotFoundError):
            await workflow.create_checkout_session(777)

    async def test_processor_outage_leaves_invoice_untouched(self, workflow, order_flow, checkout, store):
        _, invoice = await order_flow.approved()
        checkout.create_checkout_session.side_effect = TransientProviderError("Stripe unavailable")

        with pytest.raises(TransientProviderError):
            await workflow.create_checkout_session(invoice.id)

        assert store.invoices[invoice.id].checkout_session_id is None
        assert store.invoices[invoice.id].status == InvoiceStatus.PENDING


class TestPaymentEvents:
    """P0 Critical: idempotent settlement"""

    async def test_successful_payment_settles_everything(self, workflow, order_flow, store):
        order, invoice = await order_flow.approved(hosting_package_id=1)

        result = await workflow.handle_payment_event('evt_1', invoice.id, 'succeeded')

        assert result == PaymentEventResult.PROCESSED
        assert store.invoices[invoice.id].status == InvoiceStatus.PAID
        assert store.invoices[invoice.id].paid_at is not None
        assert store.invoices[invoice.id].payment_event_id == 'evt_1'
        assert store.orders[order.id].status == OrderStatus.PAID
        assert 'evt_1' in store.payment_events

        requests = await store.list_provisioning_requests(order.id)
        assert [r.request_type for r in requests] == [ProvisioningType.DOMAIN_REGISTRATION,
                                                      ProvisioningType.HOSTING_SETUP]
        assert all(r.status == ProvisioningStatus.QUEUED for r in requests)
        assert requests[0].idempotency_key == f"{order.idempotency_token}:domain_registration"

    async def test_successful_payment_queues_provisioning(self, workflow, order_flow):
        order, invoice = await order_flow.approved()

        with patch.object(workflow.worker, 'enqueue') as enqueue:
            await workflow.handle_payment_event('evt_1', invoice.id, 'SUCCEEDED')

        enqueue.assert_called_once_with(order.id)

    async def test_replayed_event_is_a_duplicate(self, workflow, order_flow, store, email):
        order, invoice = await order_flow.approved()
        await workflow.handle_payment_event('evt_1', invoice.id, 'succeeded')
        sent_before = email.send_email.await_count

        result = await workflow.handle_payment_event('evt_1', invoice.id, 'succeeded')

        assert result == PaymentEventResult.DUPLICATE
        assert len(await store.list_provisioning_requests(order.id)) == 1
        assert email.send_email.await_count == sent_before

    async def test_concurrent_replays_settle_once(self, workflow, order_flow, store):
        order, invoice = await order_flow.approved()

        results = await asyncio.gather(
            *(workflow.handle_payment_event('evt_1', invoice.id, 'succeeded') for _ in range(4))
        )

        assert results.count(PaymentEventResult.PROCESSED) == 1
        assert results.count(PaymentEventResult.DUPLICATE) == 3
        assert len(await store.list_provisioning_requests(order.id)) == 1

    async def test_second_event_for_paid_invoice_warns_about_double_charge(self, workflow, order_flow, store):
        _, invoice = await order_flow.approved()
        await workflow.handle_payment_event('evt_1', invoice.id, 'succeeded')

        with patch('services.payment_coordinator.send_warning_alert', new_callable=AsyncMock) as alert:
            result = await workflow.handle_payment_event('evt_2', invoice.id, 'succeeded')

        assert result == PaymentEventResult.DUPLICATE
        alert.assert_awaited_once()
        assert 'double charge' in alert.await_args.args[1]
        assert store.invoices[invoice.id].payment_event_id == 'evt_1'

    async def test_failed_payment_keeps_invoice_pending(self, workflow, order_flow, store, email, customer):
        order, invoice = await order_flow.approved()
        email.send_email.reset_mock()

        result = await workflow.handle_payment_event('evt_fail_1', invoice.id, 'failed')

        assert result == PaymentEventResult.PAYMENT_FAILED
        assert store.invoices[invoice.id].status == InvoiceStatus.PENDING
        assert store.orders[order.id].status == OrderStatus.APPROVED
        email.send_email.assert_awaited_once()
        assert email.send_email.await_args.args[0] == customer.email
        assert 'Payment failed' in email.send_email.await_args.args[1]

    async def test_failed_payment_replay_sends_one_email(self, workflow, order_flow, email):
        _, invoice = await order_flow.approved()
        email.send_email.reset_mock()

        await workflow.handle_payment_event('evt_fail_1', invoice.id, 'failed')
        result = await workflow.handle_payment_event('evt_fail_1', invoice.id, 'failed')

        assert result == PaymentEventResult.DUPLICATE
        assert email.send_email.await_count == 1

    async def test_distinct_failures_each_notify(self, workflow, order_flow, email):
        _, invoice = await order_flow.approved()
        email.send_email.reset_mock()

        await workflow.handle_payment_event('evt_fail_1', invoice.id, 'failed')
        await workflow.handle_payment_event('evt_fail_2', invoice.id, 'failed')

        assert email.send_email.await_count == 2

    async def test_retry_after_failure_can_still_pay(self, workflow, order_flow, store):
        order, invoice = await order_flow.approved()
        await workflow.handle_payment_event('evt_fail_1', invoice.id, 'failed')

        result = await workflow.handle_payment_event('evt_ok', invoice.id, 'succeeded')

        assert result == PaymentEventResult.PROCESSED
        assert store.orders[order.id].status == OrderStatus.PAID

    @pytest.mark.parametrize("event_id,outcome", [('', 'succeeded'), ('evt_x', 'refunded')])
    async def test_malformed_events_are_rejected(self, workflow, order_flow, event_id, outcome):
        _, invoice = await order_flow.approved()

        with pytest.raises(OrderValidationError):
            await workflow.handle_payment_event(event_id, invoice.id, outcome)

    async def test_unknown_invoice(self, workflow):
        with pytest.raises(OrderNotFoundError):
            await workflow.handle_payment_event('evt_1', 999, 'succeeded')

    async def test_payment_for_order_not_awaiting_payment_alerts(self, workflow, order_flow, store):
        order, invoice = await order_flow.approved()
        store.orders[order.id].status = OrderStatus.REJECTED

        with patch('services.payment_coordinator.send_critical_alert', new_callable=AsyncMock) as alert:
            with pytest.raises(OrderConflictError):
                await workflow.handle_payment_event('evt_1', invoice.id, 'succeeded')

        alert.assert_awaited_once()
        assert store.invoices[invoice.id].status == InvoiceStatus.PENDING
        assert 'evt_1' not in store.payment_events


class TestManualSettlement:
    """Admin mark-paid for offline payments"""

    async def test_mark_invoice_paid(self, workflow, order_flow, store):
        order, invoice = await order_flow.approved()

        result = await workflow.mark_invoice_paid(invoice.id, reference="BACS 1234")

        assert result == PaymentEventResult.PROCESSED
        assert store.orders[order.id].status == OrderStatus.PAID
        assert store.invoices[invoice.id].payment_event_id == f"manual:{invoice.id}"

    async def test_mark_paid_twice_is_duplicate(self, workflow, order_flow):
        _, invoice = await order_flow.approved()
        await workflow.mark_invoice_paid(invoice.id)

        assert await workflow.mark_invoice_paid(invoice.id) == PaymentEventResult.DUPLICATE

    async def test_mark_paid_after_card_payment_does_not_alert(self, workflow, order_flow):
        _, invoice = await order_flow.paid()

        with patch('services.payment_coordinator.send_warning_alert', new_callable=AsyncMock) as alert:
            result = await workflow.mark_invoice_paid(invoice.id)

        assert result == PaymentEventResult.DUPLICATE
        alert.assert_not_awaited()


class TestProvisioningRequestsFor:
    def test_domain_only(self, store):
        order = PendingOrderFactory(id=5)

        requests = provisioning_requests_for(order)

        assert len(requests) == 1
        assert requests[0].priority == 1
        assert requests[0].idempotency_key == f"{order.idempotency_token}:domain_registration"

    def test_with_hosting(self):
        order = PendingOrderFactory(id=5, hosting_package_id=1)

        keys = [r.idempotency_key for r in provisioning_requests_for(order)]

        assert keys == [f"{order.idempotency_token}:domain_registration",
                        f"{order.idempotency_token}:hosting_setup"]
