"""
Registration provisioner

Performs the billable side effects for a PAID order: registering the domain
with the registrar and, when a package was bought, creating the hosting
account. Each side effect is guarded by its provisioning_requests row:

- the row is claimed with a compare-and-swap before any provider call, so
  concurrent or repeated runs reach the registrar at most once per token
- a claim whose earlier attempt ended without a known outcome first asks
  the registrar whether it holds the domain under this order's token; a
  registration made for a different order is never adopted
- the live price is re-checked against the locked price, using a freshly
  loaded price list, before charging

Hosting trouble never undoes a registered domain; the order is still
PROVISIONED and carries a FollowUpNote for the admins.
"""

import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional, Union

from admin_alerts import send_critical_alert, send_warning_alert
from models import (
    Domain, DomainStatus, FollowUpNote, HostingStatus, HostingSubscription, OrderStatus,
    PendingOrder, ProvisionFailureCode, ProvisionFailureReason, ProvisioningRequest,
    ProvisioningStatus, ProvisioningType, provisioning_key, utcnow,
)
from pricing_utils import format_money, prices_within_tolerance, to_money
from services.availability_oracle import AvailabilityOracle
from services.provider_retry import call_with_backoff
from workflow_errors import (
    OrderConflictError, OrderNotFoundError, PermanentProviderError, ProviderTimeoutError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365


class ProvisioningOutcome(Enum):
    PROVISIONED = "provisioned"
    ALREADY_PROVISIONED = "already_provisioned"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    RETRY_LATER = "retry_later"


class _DomainStepFailed(Exception):
    """Permanent domain failure: the order moves to PROVISION_FAILED"""

    def __init__(self, code: ProvisionFailureCode, text: str):
        super().__init__(text)
        self.code = code
        self.text = text


class _DomainStepDeferred(Exception):
    """Transient failure after all retries: the request goes back to the queue"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RegistrationProvisioner:
    """Runs domain registration and hosting setup for paid orders"""

    def __init__(self, store, oracle: AvailabilityOracle, registrar, hosting, pricing, dispatcher,
                 price_tolerance_percent=1, max_attempts: int = 3, backoff_base: float = 2.0,
                 claim_timeout: int = 900):
        self.store = store
        self.oracle = oracle
        self.registrar = registrar
        self.hosting = hosting
        self.pricing = pricing
        self.dispatcher = dispatcher
        self.price_tolerance_percent = price_tolerance_percent
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.claim_timeout = claim_timeout

    async def provision(self, order_id: int) -> ProvisioningOutcome:
        """
        Provision a paid order

        Safe to call repeatedly and concurrently for the same order.

        Raises:
            OrderNotFoundError: unknown order
            OrderConflictError: the order has not been paid
        """
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        if order.status == OrderStatus.PROVISIONED:
            return ProvisioningOutcome.ALREADY_PROVISIONED
        if order.status == OrderStatus.PROVISION_FAILED:
            return ProvisioningOutcome.FAILED
        if order.status != OrderStatus.PAID:
            raise OrderConflictError(f"Order {order_id} is {order.status.value}, not paid")

        logger.info(f"🎯 PROVISIONER: Starting provisioning for order #{order.id} ({order.fqdn})")

        request = await self._ensure_request(order, ProvisioningType.DOMAIN_REGISTRATION)
        already_registered = request.status == ProvisioningStatus.COMPLETED

        if already_registered:
            domain = await self.store.get_domain_for_order(order.id)
        else:
            claimed = await self.store.claim_provisioning_request(request.id, self.claim_timeout)
            if claimed is None:
                logger.info(f"⏳ PROVISIONER: Domain registration for order #{order.id} is already being processed")
                return ProvisioningOutcome.IN_PROGRESS
            await self.store.record_provisioning_attempt(claimed.id)

            try:
                domain = await self._register_domain(order, claimed)
            except _DomainStepFailed as e:
                return await self._fail_order(order, claimed, e.code, e.text)
            except _DomainStepDeferred as e:
                return await self._defer(order, claimed, e.reason)

        follow_up: Optional[FollowUpNote] = None
        if order.has_hosting:
            hosting_result = await self._setup_hosting(order, domain)
            if hosting_result is ProvisioningOutcome.IN_PROGRESS:
                return ProvisioningOutcome.IN_PROGRESS
            if isinstance(hosting_result, FollowUpNote):
                follow_up = hosting_result

        return await self._complete_order(order, follow_up, already_registered)

    # ---------------- requests ----------------

    async def _ensure_request(self, order: PendingOrder, request_type: ProvisioningType) -> ProvisioningRequest:
        request = await self.store.get_provisioning_request(order.id, request_type)
        if request is None:
            logger.info(f"📋 PROVISIONER: Creating missing {request_type.value} request for order #{order.id}")
            request = await self.store.create_provisioning_request(ProvisioningRequest(
                order_id=order.id,
                request_type=request_type,
                idempotency_key=provisioning_key(order, request_type),
            ))
        return request

    @staticmethod
    def _is_own_registration(registration: Optional[Dict[str, Any]], order: PendingOrder) -> bool:
        """A registration belongs to the order only when it carries the order's token"""
        return bool(registration) and registration.get('reference') == order.idempotency_token

    async def _find_own_registration(self, order: PendingOrder) -> Optional[Dict[str, Any]]:
        try:
            registration = await self.registrar.find_registered_domain(order.fqdn)
        except TransientProviderError as e:
            logger.warning(f"⚠️ PROVISIONER: Ownership check for {order.fqdn} failed: {e.reason}")
            return None
        return registration if self._is_own_registration(registration, order) else None

    async def _find_hosting_account(self, fqdn: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.hosting.find_account(fqdn)
        except TransientProviderError as e:
            logger.warning(f"⚠️ PROVISIONER: Hosting account check for {fqdn} failed: {e.reason}")
            return None

    # ---------------- domain ----------------

    async def _register_domain(self, order: PendingOrder, request: ProvisioningRequest) -> Domain:
        fqdn = order.fqdn

        registration = None
        if request.attempts > 0 or request.external_reference:
            logger.info(f"🔄 Phase 1: Checking whether {fqdn} was registered by an earlier attempt")
            try:
                registration = await call_with_backoff(
                    lambda: self.registrar.find_registered_domain(fqdn),
                    f"Ownership check for {fqdn}", self.max_attempts, self.backoff_base,
                )
            except TransientProviderError as e:
                raise _DomainStepDeferred(f"ownership check failed: {e.reason}")
            except PermanentProviderError as e:
                raise _DomainStepFailed(ProvisionFailureCode.REGISTRAR_REJECTED, e.reason)

            if registration is not None and not self._is_own_registration(registration, order):
                logger.warning(f"⚠️ PROVISIONER: {fqdn} is in the registrar account under another order, "
                               f"not adopting it for order #{order.id}")
                registration = None

        if registration is None:
            logger.info(f"🔄 Phase 2: Re-validating availability and price for {fqdn}")
            try:
                quote = await call_with_backoff(
                    lambda: self.oracle.quote(order.domain_name, order.tld, fresh_prices=True),
                    f"Availability re-check for {fqdn}", self.max_attempts, self.backoff_base,
                )
            except TransientProviderError as e:
                raise _DomainStepDeferred(f"availability re-check failed: {e.reason}")
            except PermanentProviderError as e:
                raise _DomainStepFailed(ProvisionFailureCode.REGISTRAR_REJECTED, e.reason)

            if not quote.available:
                raise _DomainStepFailed(ProvisionFailureCode.DOMAIN_UNAVAILABLE,
                                        f"{fqdn} is no longer available for registration")
            if quote.price is None or not prices_within_tolerance(order.domain_price, quote.price,
                                                                  self.price_tolerance_percent):
                live = format_money(quote.price) if quote.price is not None else "unknown"
                raise _DomainStepFailed(
                    ProvisionFailureCode.PRICE_MISMATCH,
                    f"Price for {fqdn} changed from {format_money(order.domain_price)} to {live} per year",
                )

            logger.info(f"🔄 Phase 3: Registering {fqdn} with the registrar")
            try:
                registration = await call_with_backoff(
                    lambda: self.registrar.register_domain(order.domain_name, order.tld, order.years,
                                                           order.idempotency_token),
                    f"Registration of {fqdn}", self.max_attempts, self.backoff_base,
                    before_retry=lambda: self._find_own_registration(order),
                )
            except TransientProviderError as e:
                outcome = "unknown" if isinstance(e, ProviderTimeoutError) else "not registered"
                raise _DomainStepDeferred(f"registrar unavailable, outcome {outcome}: {e.reason}")
            except PermanentProviderError as e:
                raise _DomainStepFailed(ProvisionFailureCode.REGISTRAR_REJECTED, e.reason)

        now = utcnow()
        reference = registration.get('domain_id')
        domain = await self.store.complete_domain_registration(request.id, Domain(
            customer_id=order.customer_id,
            order_id=order.id,
            name=fqdn,
            tld=order.tld,
            status=DomainStatus.ACTIVE,
            registration_date=now,
            expiry_date=now + timedelta(days=DAYS_PER_YEAR * order.years),
            price_paid=to_money(order.domain_price * order.years),
            registrar_reference=str(reference) if reference is not None else order.idempotency_token,
        ))
        logger.info(f"✅ PROVISIONER: {fqdn} registered (reference {domain.registrar_reference})")
        return domain

    # ---------------- hosting ----------------

    async def _setup_hosting(self, order: PendingOrder,
                             domain: Optional[Domain]) -> Union[HostingSubscription, FollowUpNote,
                                                                ProvisioningOutcome, None]:
        request = await self._ensure_request(order, ProvisioningType.HOSTING_SETUP)
        if request.status == ProvisioningStatus.COMPLETED:
            return await self.store.get_hosting_for_order(order.id)
        if request.status == ProvisioningStatus.FAILED:
            return FollowUpNote(ProvisionFailureCode.HOSTING_FAILED, request.notes or "Hosting setup failed")

        claimed = await self.store.claim_provisioning_request(request.id, self.claim_timeout)
        if claimed is None:
            logger.info(f"⏳ PROVISIONER: Hosting setup for order #{order.id} is already being processed")
            return ProvisioningOutcome.IN_PROGRESS
        await self.store.record_provisioning_attempt(claimed.id)

        fqdn = order.fqdn
        logger.info(f"🔄 Phase 4: Creating hosting account for {fqdn}")
        package = await self.pricing.hosting_package(order.hosting_package_id)
        customer = await self.store.get_customer(order.customer_id)

        try:
            if package is None:
                raise PermanentProviderError(f"Hosting package {order.hosting_package_id} no longer exists")
            account = await call_with_backoff(
                lambda: self.hosting.create_hosting_account(fqdn, package.whm_plan,
                                                            customer.email if customer else ''),
                f"Hosting setup for {fqdn}", self.max_attempts, self.backoff_base,
                before_retry=lambda: self._find_hosting_account(fqdn),
            )
        except ProviderTimeoutError as e:
            return await self._flag_hosting(order, claimed, ProvisionFailureCode.HOSTING_OUTCOME_UNKNOWN,
                                            f"Hosting setup for {fqdn} timed out, account state unknown: {e.reason}")
        except (TransientProviderError, PermanentProviderError) as e:
            return await self._flag_hosting(order, claimed, ProvisionFailureCode.HOSTING_FAILED,
                                            f"Hosting setup for {fqdn} failed: {e.reason}")

        subscription = await self.store.complete_hosting_setup(claimed.id, HostingSubscription(
            customer_id=order.customer_id,
            order_id=order.id,
            domain_id=domain.id if domain else None,
            hosting_package_id=order.hosting_package_id,
            status=HostingStatus.ACTIVE,
            provider_username=account.get('username'),
            provider_account_id=account.get('username'),
            server_ip=account.get('server_ip'),
            billing_cycle='yearly',
            next_billing_date=utcnow() + timedelta(days=DAYS_PER_YEAR * order.years),
        ))
        logger.info(f"✅ PROVISIONER: Hosting account {subscription.provider_username} active for {fqdn}")
        return subscription

    async def _flag_hosting(self, order: PendingOrder, request: ProvisioningRequest,
                            code: ProvisionFailureCode, text: str) -> FollowUpNote:
        logger.error(f"❌ PROVISIONER: {text}")
        await self.store.update_provisioning_request(request.id, ProvisioningStatus.FAILED, notes=text)
        await send_critical_alert(
            "RegistrationProvisioner",
            f"Domain {order.fqdn} registered but hosting needs manual follow-up: {text}",
            "hosting",
            {'order_id': order.id, 'code': code.value},
        )
        return FollowUpNote(code, text)

    # ---------------- order outcome ----------------

    async def _complete_order(self, order: PendingOrder, follow_up: Optional[FollowUpNote],
                              already_registered: bool) -> ProvisioningOutcome:
        moved = await self.store.transition_order(order.id, OrderStatus.PAID, OrderStatus.PROVISIONED,
                                                  admin_notes=follow_up)
        if not moved:
            current = await self.store.get_order(order.id)
            if current is not None and current.status == OrderStatus.PROVISIONED:
                return ProvisioningOutcome.ALREADY_PROVISIONED
            raise OrderConflictError(f"Order {order.id} left PAID while it was being provisioned")

        logger.info(f"🎉 PROVISIONER: Order #{order.id} provisioned"
                    + (" with hosting follow-up" if follow_up else ""))
        if follow_up is not None:
            await self.dispatcher.dispatch('provisioning_follow_up', order.id)
        await self.dispatcher.dispatch('order_provisioned', order.id)
        return ProvisioningOutcome.ALREADY_PROVISIONED if already_registered else ProvisioningOutcome.PROVISIONED

    async def _fail_order(self, order: PendingOrder, request: ProvisioningRequest,
                          code: ProvisionFailureCode, text: str) -> ProvisioningOutcome:
        logger.error(f"❌ PROVISIONER: Order #{order.id} failed ({code.value}): {text}")
        moved = await self.store.transition_order(order.id, OrderStatus.PAID, OrderStatus.PROVISION_FAILED,
                                                  admin_notes=ProvisionFailureReason(code, text))
        await self.store.update_provisioning_request(request.id, ProvisioningStatus.FAILED,
                                                     notes=f"{code.value}: {text}")
        if not moved:
            logger.warning(f"⚠️ PROVISIONER: Order #{order.id} was no longer PAID when marking it failed")
            return ProvisioningOutcome.FAILED

        await send_critical_alert(
            "RegistrationProvisioner",
            f"Paid order #{order.id} for {order.fqdn} could not be provisioned: {text}",
            "domain_registration",
            {'order_id': order.id, 'code': code.value, 'locked_price': str(order.domain_price)},
        )
        await self.dispatcher.dispatch('provisioning_failed', order.id)
        return ProvisioningOutcome.FAILED

    async def _defer(self, order: PendingOrder, request: ProvisioningRequest, reason: str) -> ProvisioningOutcome:
        logger.warning(f"⚠️ PROVISIONER: Order #{order.id} will be retried later: {reason}")
        await self.store.update_provisioning_request(request.id, ProvisioningStatus.QUEUED,
                                                     notes=f"Retry pending: {reason}")
        await send_warning_alert(
            "RegistrationProvisioner",
            f"Provisioning for order #{order.id} ({order.fqdn}) deferred: {reason}",
            "external_api",
            {'order_id': order.id},
        )
        return ProvisioningOutcome.RETRY_LATER
