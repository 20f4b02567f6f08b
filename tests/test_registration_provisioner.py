"""
Registration provisioner tests
P0 Critical: a paid order reaches the registrar at most once and never at a drifted price
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from models import (
    DomainStatus, FollowUpNote, HostingStatus, OrderStatus, ProvisionFailureCode,
    ProvisionFailureReason, ProvisioningStatus, ProvisioningType, utcnow,
)
from services.registration_provisioner import ProvisioningOutcome
from workflow_errors import (
    OrderConflictError, OrderNotFoundError, PermanentProviderError, ProviderTimeoutError,
    TransientProviderError,
)


@pytest.fixture
def critical_alert():
    with patch('services.registration_provisioner.send_critical_alert', new_callable=AsyncMock) as alert:
        yield alert


@pytest.fixture
def warning_alert():
    with patch('services.registration_provisioner.send_warning_alert', new_callable=AsyncMock) as alert:
        yield alert


async def _request(store, order_id, request_type=ProvisioningType.DOMAIN_REGISTRATION):
    return await store.get_provisioning_request(order_id, request_type)


class TestDomainRegistration:
    """Happy path and idempotent re-runs"""

    async def test_paid_order_is_registered(self, workflow, order_flow, store, registrar):
        order, _ = await order_flow.paid(years=2)

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        assert store.orders[order.id].status == OrderStatus.PROVISIONED
        assert store.orders[order.id].admin_notes is None
        assert registrar.register_calls == [('example.com', 2, order.idempotency_token)]

        domain = store.domains[order.id]
        assert domain.name == 'example.com'
        assert domain.status == DomainStatus.ACTIVE
        assert domain.price_paid == Decimal('21.98')
        assert domain.registrar_reference == '5000'
        assert domain.expiry_date - domain.registration_date == timedelta(days=730)

        request = await _request(store, order.id)
        assert request.status == ProvisioningStatus.COMPLETED
        assert request.attempts == 1
        assert request.external_reference == '5000'

    async def test_provisioned_email_sent_to_customer(self, workflow, order_flow, email, customer):
        order, _ = await order_flow.paid()
        email.send_email.reset_mock()

        await workflow.provisioner.provision(order.id)

        subjects = [call.args[1] for call in email.send_email.await_args_list]
        assert f"Domain registration confirmed for {order.fqdn}!" in subjects
        assert email.send_email.await_args.args[0] == customer.email

    async def test_second_run_is_a_no_op(self, workflow, order_flow, registrar, email):
        order, _ = await order_flow.paid()
        await workflow.provisioner.provision(order.id)
        sent = email.send_email.await_count

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.ALREADY_PROVISIONED
        assert len(registrar.register_calls) == 1
        assert email.send_email.await_count == sent

    async def test_concurrent_runs_register_once(self, workflow, order_flow, store, registrar):
        order, _ = await order_flow.paid()
        registrar.register_delay = 0.01

        outcomes = await asyncio.gather(*(workflow.provisioner.provision(order.id) for _ in range(3)))

        assert len(registrar.register_calls) == 1
        assert outcomes.count(ProvisioningOutcome.PROVISIONED) == 1
        assert outcomes.count(ProvisioningOutcome.IN_PROGRESS) == 2
        assert store.orders[order.id].status == OrderStatus.PROVISIONED

    async def test_unpaid_order_conflicts(self, workflow, order_flow, registrar):
        order, _ = await order_flow.approved()

        with pytest.raises(OrderConflictError):
            await workflow.provisioner.provision(order.id)

        assert registrar.register_calls == []

    async def test_unknown_order(self, workflow):
        with pytest.raises(OrderNotFoundError):
            await workflow.provisioner.provision(31337)

    async def test_missing_request_row_is_recreated(self, workflow, order_flow, store, registrar):
        order, _ = await order_flow.paid()
        store.requests.clear()

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        request = await _request(store, order.id)
        assert request.idempotency_key == f"{order.idempotency_token}:domain_registration"


class TestPriceAndAvailabilityRecheck:
    """Re-validation against the locked price before charging the registrar"""

    async def test_price_increase_fails_order(self, workflow, order_flow, store, pricing, registrar,
                                              email, critical_alert):
        order, _ = await order_flow.paid()
        store.tld_prices['.com'] = Decimal('12.99')
        pricing.invalidate()
        email.send_email.reset_mock()

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.FAILED
        assert registrar.register_calls == []
        stored = store.orders[order.id]
        assert stored.status == OrderStatus.PROVISION_FAILED
        assert isinstance(stored.admin_notes, ProvisionFailureReason)
        assert stored.admin_notes.code == ProvisionFailureCode.PRICE_MISMATCH
        assert '£10.99' in stored.admin_notes.text and '£12.99' in stored.admin_notes.text

        request = await _request(store, order.id)
        assert request.status == ProvisioningStatus.FAILED
        assert request.notes.startswith('PRICE_MISMATCH:')

        critical_alert.assert_awaited_once()
        recipients = sorted(call.args[0] for call in email.send_email.await_args_list)
        assert recipients == ['admin@example.test', 'alice@example.test']

    async def test_price_drift_within_tolerance_registers(self, workflow, order_flow, store, pricing, registrar):
        order, _ = await order_flow.paid()
        store.tld_prices['.com'] = Decimal('11.05')
        pricing.invalidate()

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        assert store.domains[order.id].price_paid == Decimal('10.99')

    async def test_recheck_ignores_cached_price_list(self, workflow, order_flow, store, pricing, registrar,
                                                     critical_alert):
        order, _ = await order_flow.paid()
        assert await pricing.tld_price('.com') == Decimal('10.99')
        store.tld_prices['.com'] = Decimal('12.99')

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.FAILED
        assert registrar.register_calls == []
        assert store.orders[order.id].admin_notes.code == ProvisionFailureCode.PRICE_MISMATCH

    async def test_domain_taken_since_payment_fails_order(self, workflow, order_flow, store, oracle,
                                                          registrar, critical_alert):
        order, _ = await order_flow.paid()
        oracle.mark_taken('example.com')

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.FAILED
        assert registrar.register_calls == []
        assert store.orders[order.id].admin_notes.code == ProvisionFailureCode.DOMAIN_UNAVAILABLE

    async def test_failed_order_stays_failed(self, workflow, order_flow, oracle, registrar, critical_alert):
        order, _ = await order_flow.paid()
        oracle.mark_taken('example.com')
        await workflow.provisioner.provision(order.id)

        assert await workflow.provisioner.provision(order.id) == ProvisioningOutcome.FAILED
        critical_alert.assert_awaited_once()

    async def test_registrar_rejection_fails_order(self, workflow, order_flow, store, registrar, critical_alert):
        order, _ = await order_flow.paid()
        registrar.register_errors = [PermanentProviderError("Registrar refused: invalid contact handle")]

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.FAILED
        assert len(registrar.register_calls) == 1
        assert store.orders[order.id].admin_notes.code == ProvisionFailureCode.REGISTRAR_REJECTED


class TestUnknownOutcomes:
    """Timeouts never cause a second registration"""

    async def test_timeout_after_registrar_committed(self, workflow, order_flow, store, registrar):
        order, _ = await order_flow.paid()
        registrar.register_errors = [ProviderTimeoutError("read timeout")]
        registrar.register_on_timeout = True

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        assert len(registrar.register_calls) == 1
        assert registrar.lookup_calls == ['example.com']
        assert store.domains[order.id].registrar_reference == '5000'

    async def test_timeout_without_commit_retries(self, workflow, order_flow, registrar):
        order, _ = await order_flow.paid()
        registrar.register_errors = [ProviderTimeoutError("read timeout")]

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        assert len(registrar.register_calls) == 2
        assert registrar.lookup_calls == ['example.com']

    async def test_exhausted_transient_errors_defer(self, workflow, order_flow, store, registrar, warning_alert):
        order, _ = await order_flow.paid()
        registrar.register_errors = [TransientProviderError("HTTP 503")] * 3

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.RETRY_LATER
        assert store.orders[order.id].status == OrderStatus.PAID
        request = await _request(store, order.id)
        assert request.status == ProvisioningStatus.QUEUED
        assert request.notes.startswith('Retry pending')
        warning_alert.assert_awaited_once()

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        assert len(registrar.register_calls) == 4
        assert registrar.lookup_calls == ['example.com']

    async def test_stale_claim_is_recovered_via_ownership_check(self, workflow, order_flow, store, registrar):
        order, _ = await order_flow.paid()
        request = await _request(store, order.id)
        # Worker died after the registrar accepted the order
        stored_request = store.requests[request.id]
        stored_request.status = ProvisioningStatus.PROCESSING
        stored_request.claimed_at = utcnow() - timedelta(hours=1)
        stored_request.attempts = 1
        registrar.registered['example.com'] = {'domain_id': 4242, 'status': 'ACT',
                                               'reference': order.idempotency_token}

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        assert registrar.register_calls == []
        assert store.domains[order.id].registrar_reference == '4242'

    async def test_fresh_claim_is_left_alone(self, workflow, order_flow, store, registrar):
        order, _ = await order_flow.paid()
        request = await _request(store, order.id)
        store.requests[request.id].status = ProvisioningStatus.PROCESSING
        store.requests[request.id].claimed_at = utcnow()

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.IN_PROGRESS
        assert registrar.register_calls == []
        assert store.orders[order.id].status == OrderStatus.PAID


class TestRegistrationOwnership:
    """A registration is only adopted by the order whose token it carries"""

    async def test_deferred_order_does_not_adopt_other_orders_registration(self, workflow, order_flow, store,
                                                                             registrar, critical_alert,
                                                                             warning_alert):
        first, _ = await order_flow.paid()
        second, _ = await order_flow.paid()
        registrar.register_errors = [TransientProviderError("HTTP 503")] * 3
        assert await workflow.provisioner.provision(second.id) == ProvisioningOutcome.RETRY_LATER

        assert await workflow.provisioner.provision(first.id) == ProvisioningOutcome.PROVISIONED
        outcome = await workflow.provisioner.provision(second.id)

        assert outcome == ProvisioningOutcome.FAILED
        assert store.orders[second.id].status == OrderStatus.PROVISION_FAILED
        assert store.orders[second.id].admin_notes.code == ProvisionFailureCode.REGISTRAR_REJECTED
        assert second.id not in store.domains
        assert store.domains[first.id].registrar_reference == str(registrar.registered['example.com']['domain_id'])
        assert registrar.registered['example.com']['reference'] == first.idempotency_token

    async def test_timeout_lookup_ignores_foreign_registration(self, workflow, order_flow, store, registrar):
        order, _ = await order_flow.paid()
        registrar.register_errors = [ProviderTimeoutError("read timeout")]
        registrar.find_registered_domain = AsyncMock(return_value={
            'domain_id': 4242, 'status': 'ACT', 'reference': 'token-of-another-order',
        })

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        assert len(registrar.register_calls) == 2
        registrar.find_registered_domain.assert_awaited_once_with('example.com')
        assert store.domains[order.id].registrar_reference == '5000'

class TestHostingSetup:
    """Hosting trouble never undoes a registered domain"""

    async def test_bundle_creates_hosting_account(self, workflow, order_flow, store, hosting, customer):
        order, _ = await order_flow.paid(hosting_package_id=1)

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        assert hosting.create_calls == [('example.com', 'starter', customer.email)]
        subscription = store.hosting[order.id]
        assert subscription.status == HostingStatus.ACTIVE
        assert subscription.domain_id == store.domains[order.id].id
        assert subscription.provider_username == 'u0000000'
        request = await _request(store, order.id, ProvisioningType.HOSTING_SETUP)
        assert request.status == ProvisioningStatus.COMPLETED

    async def test_hosting_timeout_flags_follow_up(self, workflow, order_flow, store, hosting, email,
                                                   critical_alert):
        order, _ = await order_flow.paid(hosting_package_id=1)
        hosting.create_errors = [ProviderTimeoutError("WHM timed out")] * 3
        email.send_email.reset_mock()

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        stored = store.orders[order.id]
        assert stored.status == OrderStatus.PROVISIONED
        assert isinstance(stored.admin_notes, FollowUpNote)
        assert stored.admin_notes.code == ProvisionFailureCode.HOSTING_OUTCOME_UNKNOWN
        assert store.domains[order.id].status == DomainStatus.ACTIVE
        assert order.id not in store.hosting

        request = await _request(store, order.id, ProvisioningType.HOSTING_SETUP)
        assert request.status == ProvisioningStatus.FAILED

        critical_alert.assert_awaited_once()
        assert critical_alert.await_args.args[2] == 'hosting'
        sent = {(call.args[0], call.args[1]) for call in email.send_email.await_args_list}
        assert ('admin@example.test', f"[ADMIN] Hosting follow-up needed for {order.fqdn}") in sent
        assert ('alice@example.test', f"Domain registration confirmed for {order.fqdn}!") in sent

    async def test_hosting_timeout_recovered_by_account_check(self, workflow, order_flow, store, hosting):
        order, _ = await order_flow.paid(hosting_package_id=1)
        hosting.create_errors = [ProviderTimeoutError("WHM timed out")]
        hosting.accounts['example.com'] = {'username': 'exampleco', 'domain': 'example.com',
                                           'server_ip': '203.0.113.10'}

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.PROVISIONED
        assert store.orders[order.id].admin_notes is None
        assert store.hosting[order.id].provider_username == 'exampleco'
        assert len(hosting.create_calls) == 1

    async def test_hosting_rejection_flags_follow_up(self, workflow, order_flow, store, hosting, critical_alert):
        order, _ = await order_flow.paid(hosting_package_id=1)
        hosting.create_errors = [PermanentProviderError("Package starter does not exist")]

        await workflow.provisioner.provision(order.id)

        note = store.orders[order.id].admin_notes
        assert note.code == ProvisionFailureCode.HOSTING_FAILED
        assert 'Package starter does not exist' in note.text

    async def test_rerun_after_hosting_failure_does_not_retry_hosting(self, workflow, order_flow, store,
                                                                      hosting, registrar, critical_alert):
        order, _ = await order_flow.paid(hosting_package_id=1)
        hosting.create_errors = [PermanentProviderError("WHM refused")]
        await workflow.provisioner.provision(order.id)

        outcome = await workflow.provisioner.provision(order.id)

        assert outcome == ProvisioningOutcome.ALREADY_PROVISIONED
        assert len(hosting.create_calls) == 1
        assert len(registrar.register_calls) == 1
