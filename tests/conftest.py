"""
Shared test fixtures for the domain & hosting order workflow test suite
Provides an in-memory workflow store, provider fakes and data factories
"""

import os
import asyncio
import copy
import itertools
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import factory
import pytest
from factory.declarations import LazyFunction, Sequence
from factory.faker import Faker

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

# Test environment configuration
test_env_vars = {
    'TEST_MODE': '1',
    'ADMIN_ALERTS_ENABLED': 'false',
    'PROVIDER_BACKOFF_BASE': '0',
    'PROVIDER_MAX_ATTEMPTS': '3',
    'PAYMENT_CURRENCY': 'GBP',
    'PUBLIC_DOMAIN': 'orders.example.test',
    'ADMIN_NOTIFICATION_EMAILS': 'admin@example.test',
}
for key, value in test_env_vars.items():
    os.environ[key] = value
for key in ('DATABASE_URL', 'ADMIN_API_TOKEN', 'PAYMENT_WEBHOOK_SECRET', 'STRIPE_WEBHOOK_SECRET',
            'OPENPROVIDER_USERNAME', 'OPENPROVIDER_PASSWORD', 'STRIPE_SECRET_KEY', 'RESEND_API_KEY'):
    os.environ.pop(key, None)

from admin_alerts import reset_admin_alert_system
from config import WorkflowConfig
from models import (
    CheckoutSession, CustomerContact, Domain, HostingPackage, HostingSubscription, Invoice,
    InvoiceStatus, OrderNote, OrderStatus, PendingOrder, ProvisioningRequest, ProvisioningStatus,
    ProvisioningType, QuoteResult, SettlementResult, can_transition, utcnow,
)
from performance_monitor import reset_performance_stats
from services.availability_oracle import StaticAvailabilityOracle
from services.email_service import EmailService
from services.order_workflow import build_order_workflow
from services.pricing_snapshot import PricingSnapshotStore
from workflow_errors import OrderConflictError, PermanentProviderError, ProviderTimeoutError

# ====================================================================
# IN-MEMORY WORKFLOW STORE
# ====================================================================

class InMemoryWorkflowStore:
    """
    Store contract double with the same compare-and-swap semantics as
    PostgresWorkflowStore. Every mutation runs under one asyncio.Lock;
    returned records are copies so callers never alias stored state.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self.orders: Dict[int, PendingOrder] = {}
        self.invoices: Dict[int, Invoice] = {}
        self.payment_events: Dict[str, Dict[str, Any]] = {}
        self.requests: Dict[int, ProvisioningRequest] = {}
        self.domains: Dict[int, Domain] = {}
        self.hosting: Dict[int, HostingSubscription] = {}
        self.tld_prices: Dict[str, Decimal] = {}
        self.packages: Dict[int, HostingPackage] = {}
        self.customers: Dict[int, CustomerContact] = {}
        self.notifications: set = set()

    def _next_id(self) -> int:
        return next(self._ids)

    @staticmethod
    def _copy(record):
        return copy.deepcopy(record)

    # ---------------- orders ----------------

    async def create_order(self, order: PendingOrder) -> PendingOrder:
        async with self._lock:
            stored = self._copy(order)
            stored.id = self._next_id()
            stored.created_at = stored.updated_at = utcnow()
            self.orders[stored.id] = stored
            return self._copy(stored)

    async def get_order(self, order_id: int) -> Optional[PendingOrder]:
        order = self.orders.get(order_id)
        return self._copy(order) if order else None

    async def list_orders(self, status: Optional[OrderStatus] = None,
                          customer_id: Optional[int] = None) -> List[PendingOrder]:
        orders = [
            o for o in self.orders.values()
            if (status is None or o.status == status) and (customer_id is None or o.customer_id == customer_id)
        ]
        orders.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        return [self._copy(o) for o in orders]

    async def transition_order(self, order_id: int, expected: OrderStatus, new: OrderStatus,
                               admin_notes: Optional[OrderNote] = None, reviewed: bool = False) -> bool:
        if not can_transition(expected, new):
            raise OrderConflictError(f"Order cannot move from {expected.value} to {new.value}")
        await asyncio.sleep(0)
        async with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.status != expected:
                return False
            order.status = new
            if admin_notes is not None:
                order.admin_notes = admin_notes
            if reviewed:
                order.reviewed_at = utcnow()
            order.updated_at = utcnow()
            return True

    async def set_order_notes(self, order_id: int, note: OrderNote) -> None:
        async with self._lock:
            self.orders[order_id].admin_notes = note

    async def approve_order_with_invoice(self, order_id: int, invoice: Invoice) -> Optional[Invoice]:
        await asyncio.sleep(0)
        async with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.status != OrderStatus.PENDING_REVIEW:
                return None
            if any(i.order_id == order_id for i in self.invoices.values()):
                return None
            order.status = OrderStatus.APPROVED
            order.reviewed_at = order.updated_at = utcnow()
            stored = self._copy(invoice)
            stored.id = self._next_id()
            stored.status = InvoiceStatus.PENDING
            stored.created_at = utcnow()
            self.invoices[stored.id] = stored
            return self._copy(stored)

    # ---------------- invoices & payments ----------------

    async def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        invoice = self.invoices.get(invoice_id)
        return self._copy(invoice) if invoice else None

    async def get_invoice_for_order(self, order_id: int) -> Optional[Invoice]:
        for invoice in self.invoices.values():
            if invoice.order_id == order_id:
                return self._copy(invoice)
        return None

    async def set_invoice_checkout_session(self, invoice_id: int, session_id: str) -> None:
        async with self._lock:
            invoice = self.invoices[invoice_id]
            if invoice.status == InvoiceStatus.PENDING:
                invoice.checkout_session_id = session_id

    async def record_payment_event(self, event_id: str, invoice_id: int, outcome: str) -> bool:
        async with self._lock:
            if event_id in self.payment_events:
                return False
            self.payment_events[event_id] = {'invoice_id': invoice_id, 'outcome': outcome,
                                              'received_at': utcnow()}
            return True

    async def settle_invoice_payment(self, invoice_id: int, order_id: int, event_id: str,
                                     requests: List[ProvisioningRequest]) -> SettlementResult:
        await asyncio.sleep(0)
        async with self._lock:
            if event_id in self.payment_events:
                return SettlementResult.DUPLICATE_EVENT
            invoice = self.invoices[invoice_id]
            if invoice.status == InvoiceStatus.PAID:
                self.payment_events[event_id] = {'invoice_id': invoice_id, 'outcome': 'succeeded',
                                                  'received_at': utcnow()}
                return SettlementResult.ALREADY_PAID
            if invoice.status != InvoiceStatus.PENDING:
                raise OrderConflictError(f"Invoice {invoice_id} cannot be paid in its current state")
            order = self.orders[order_id]
            if order.status != OrderStatus.APPROVED:
                raise OrderConflictError(f"Order {order_id} is not awaiting payment")

            self.payment_events[event_id] = {'invoice_id': invoice_id, 'outcome': 'succeeded',
                                              'received_at': utcnow()}
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = utcnow()
            invoice.payment_event_id = event_id
            order.status = OrderStatus.PAID
            order.updated_at = utcnow()
            for request in requests:
                self._insert_request(request)
            return SettlementResult.SETTLED

    # ---------------- provisioning ----------------

    def _insert_request(self, request: ProvisioningRequest) -> ProvisioningRequest:
        for existing in self.requests.values():
            if existing.idempotency_key == request.idempotency_key:
                return existing
        stored = self._copy(request)
        stored.id = self._next_id()
        stored.created_at = utcnow()
        self.requests[stored.id] = stored
        return stored

    async def create_provisioning_request(self, request: ProvisioningRequest) -> ProvisioningRequest:
        async with self._lock:
            return self._copy(self._insert_request(request))

    async def get_provisioning_request(self, order_id: int,
                                       request_type: ProvisioningType) -> Optional[ProvisioningRequest]:
        for request in self.requests.values():
            if request.order_id == order_id and request.request_type == request_type:
                return self._copy(request)
        return None

    async def list_provisioning_requests(self, order_id: int) -> List[ProvisioningRequest]:
        return [self._copy(r) for r in sorted(self.requests.values(), key=lambda r: r.id)
                if r.order_id == order_id]

    async def claim_provisioning_request(self, request_id: int,
                                         stale_after_seconds: int) -> Optional[ProvisioningRequest]:
        await asyncio.sleep(0)
        async with self._lock:
            request = self.requests.get(request_id)
            if request is None:
                return None
            stale_before = utcnow() - timedelta(seconds=stale_after_seconds)
            stale = (request.status == ProvisioningStatus.PROCESSING
                     and request.claimed_at is not None and request.claimed_at < stale_before)
            if request.status != ProvisioningStatus.QUEUED and not stale:
                return None
            request.status = ProvisioningStatus.PROCESSING
            request.claimed_at = utcnow()
            return self._copy(request)

    async def record_provisioning_attempt(self, request_id: int) -> None:
        async with self._lock:
            self.requests[request_id].attempts += 1

    async def update_provisioning_request(self, request_id: int, status: ProvisioningStatus,
                                          notes: Optional[str] = None,
                                          external_reference: Optional[str] = None) -> None:
        async with self._lock:
            request = self.requests[request_id]
            request.status = status
            if notes is not None:
                request.notes = notes
            if external_reference is not None:
                request.external_reference = external_reference
            if status in (ProvisioningStatus.COMPLETED, ProvisioningStatus.FAILED):
                request.processed_at = utcnow()

    async def complete_domain_registration(self, request_id: int, domain: Domain) -> Domain:
        async with self._lock:
            if domain.order_id not in self.domains:
                stored = self._copy(domain)
                stored.id = self._next_id()
                self.domains[domain.order_id] = stored
            request = self.requests[request_id]
            request.status = ProvisioningStatus.COMPLETED
            request.processed_at = utcnow()
            if domain.registrar_reference:
                request.external_reference = domain.registrar_reference
            return self._copy(self.domains[domain.order_id])

    async def complete_hosting_setup(self, request_id: int,
                                     subscription: HostingSubscription) -> HostingSubscription:
        async with self._lock:
            if subscription.order_id not in self.hosting:
                stored = self._copy(subscription)
                stored.id = self._next_id()
                self.hosting[subscription.order_id] = stored
            request = self.requests[request_id]
            request.status = ProvisioningStatus.COMPLETED
            request.processed_at = utcnow()
            if subscription.provider_username:
                request.external_reference = subscription.provider_username
            return self._copy(self.hosting[subscription.order_id])

    async def get_domain_for_order(self, order_id: int) -> Optional[Domain]:
        domain = self.domains.get(order_id)
        return self._copy(domain) if domain else None

    async def get_hosting_for_order(self, order_id: int) -> Optional[HostingSubscription]:
        subscription = self.hosting.get(order_id)
        return self._copy(subscription) if subscription else None

    # ---------------- catalog & contacts ----------------

    async def load_tld_prices(self) -> Dict[str, Decimal]:
        return dict(self.tld_prices)

    async def load_hosting_packages(self) -> Dict[int, HostingPackage]:
        return self._copy(self.packages)

    async def get_customer(self, customer_id: int) -> Optional[CustomerContact]:
        customer = self.customers.get(customer_id)
        return self._copy(customer) if customer else None

    # ---------------- notifications ----------------

    async def record_notification(self, event_type: str, entity_id: str, recipient: str) -> bool:
        async with self._lock:
            key = (event_type, str(entity_id), recipient)
            if key in self.notifications:
                return False
            self.notifications.add(key)
            return True

    async def release_notification(self, event_type: str, entity_id: str, recipient: str) -> None:
        async with self._lock:
            self.notifications.discard((event_type, str(entity_id), recipient))

    async def health_check(self) -> bool:
        return True

# ====================================================================
# PROVIDER FAKES
# ====================================================================

class FakeRegistrar:
    """Registrar double that remembers what it registered"""

    def __init__(self):
        self.registered: Dict[str, Dict[str, Any]] = {}
        self.register_calls: List[Tuple[str, int, str]] = []
        self.lookup_calls: List[str] = []
        self.register_errors: List[Exception] = []
        self.register_on_timeout = False
        self.register_delay = 0.0

    async def check_domain(self, domain_name: str, tld: str) -> Dict[str, Any]:
        fqdn = f"{domain_name}{tld}"
        return {'available': fqdn not in self.registered, 'premium': False, 'price': Decimal('8.00')}

    async def find_registered_domain(self, fqdn: str) -> Optional[Dict[str, Any]]:
        self.lookup_calls.append(fqdn)
        return self.registered.get(fqdn)

    async def register_domain(self, domain_name: str, tld: str, years: int, reference: str) -> Dict[str, Any]:
        fqdn = f"{domain_name}{tld}"
        self.register_calls.append((fqdn, years, reference))
        if self.register_delay:
            await asyncio.sleep(self.register_delay)
        existing = self.registered.get(fqdn)
        if existing is not None:
            if existing.get('reference') != reference:
                raise PermanentProviderError("OpenProvider error: Duplicate domain", {'api_code': 346})
            return dict(existing)
        if self.register_errors:
            error = self.register_errors.pop(0)
            if isinstance(error, ProviderTimeoutError) and self.register_on_timeout:
                self._store(fqdn, reference)
            raise error
        return dict(self._store(fqdn, reference))

    def _store(self, fqdn: str, reference: str) -> Dict[str, Any]:
        self.registered[fqdn] = {'domain_id': 5000 + len(self.registered), 'status': 'ACT', 'reference': reference}
        return self.registered[fqdn]


class FakeHosting:
    """WHM double keyed by domain"""

    def __init__(self):
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.create_calls: List[Tuple[str, str, str]] = []
        self.create_errors: List[Exception] = []

    async def find_account(self, domain: str) -> Optional[Dict[str, Any]]:
        account = self.accounts.get(domain)
        return dict(account, existing=True) if account else None

    async def create_hosting_account(self, domain: str, plan: str, email: str) -> Dict[str, Any]:
        self.create_calls.append((domain, plan, email))
        if self.create_errors:
            raise self.create_errors.pop(0)
        account = {'username': f"u{len(self.accounts):07d}", 'domain': domain,
                   'server_ip': '203.0.113.10', 'existing': False}
        self.accounts[domain] = account
        return dict(account)

# ====================================================================
# DATA FACTORIES
# ====================================================================

class CustomerContactFactory(factory.Factory):  # type: ignore[misc]
    """Factory for customer contact records"""
    class Meta:  # type: ignore[misc]
        model = CustomerContact

    id = Sequence(lambda n: 100 + n)
    email = Faker('email')
    name = Faker('first_name')

class HostingPackageFactory(factory.Factory):  # type: ignore[misc]
    class Meta:  # type: ignore[misc]
        model = HostingPackage

    id = Sequence(lambda n: n + 1)
    name = Faker('random_element', elements=('Starter', 'Business', 'Pro'))
    monthly_price = Decimal('4.99')
    whm_plan = 'starter'
    active = True

class QuoteResultFactory(factory.Factory):  # type: ignore[misc]
    """Factory for fresh availability quotes"""
    class Meta:  # type: ignore[misc]
        model = QuoteResult

    tld = '.com'
    domain = factory.LazyAttribute(lambda o: f"example{o.tld}")
    available = True
    price = Decimal('10.99')
    premium = False
    quoted_at = LazyFunction(utcnow)

class PendingOrderFactory(factory.Factory):  # type: ignore[misc]
    """Factory for detached order records (not persisted)"""
    class Meta:  # type: ignore[misc]
        model = PendingOrder

    customer_id = 7
    domain_name = Sequence(lambda n: f"order{n}")
    tld = '.com'
    years = 1
    domain_price = Decimal('10.99')
    hosting_price = Decimal('0.00')
    total_estimate = Decimal('10.99')
    idempotency_token = Faker('pystr', min_chars=32, max_chars=32)
    status = OrderStatus.PENDING_REVIEW

# ====================================================================
# FIXTURES
# ====================================================================

DEFAULT_TLD_PRICES = {
    '.com': Decimal('10.99'),
    '.co.uk': Decimal('9.99'),
    '.org': Decimal('14.99'),
    '.net': Decimal('13.99'),
}

@pytest.fixture(autouse=True)
def reset_global_state():
    reset_admin_alert_system()
    reset_performance_stats()
    yield
    reset_admin_alert_system()

@pytest.fixture
def customer():
    return CustomerContactFactory(id=7, email='alice@example.test', name='Alice')

@pytest.fixture
def hosting_package():
    return HostingPackageFactory(id=1, name='Starter', monthly_price=Decimal('4.99'), whm_plan='starter')

@pytest.fixture
def store(customer, hosting_package):
    """In-memory store seeded with prices, one hosting package and one customer"""
    memory_store = InMemoryWorkflowStore()
    memory_store.tld_prices = dict(DEFAULT_TLD_PRICES)
    memory_store.packages = {
        hosting_package.id: hosting_package,
        99: HostingPackageFactory(id=99, name='Legacy', monthly_price=Decimal('2.99'), active=False),
    }
    memory_store.customers = {customer.id: customer}
    return memory_store

@pytest.fixture
def pricing(store):
    return PricingSnapshotStore.from_store(store, ttl_seconds=300)

@pytest.fixture
def oracle(pricing):
    return StaticAvailabilityOracle(pricing, ['.com', '.co.uk'], taken=['example.co.uk'])

@pytest.fixture
def registrar():
    return FakeRegistrar()

@pytest.fixture
def hosting():
    return FakeHosting()

@pytest.fixture
def checkout():
    mock_checkout = MagicMock()
    mock_checkout.create_checkout_session = AsyncMock(
        return_value=CheckoutSession(session_id='cs_test_123', url='https://checkout.stripe.com/c/pay/cs_test_123')
    )
    return mock_checkout

@pytest.fixture
def email():
    mock_email = MagicMock(spec=EmailService)
    mock_email.send_email = AsyncMock(return_value='email_1')
    return mock_email

@pytest.fixture
def workflow_config():
    return WorkflowConfig()

@pytest.fixture
def workflow(workflow_config, store, oracle, registrar, hosting, checkout, email):
    """Fully wired workflow with provider fakes; the worker is not started"""
    return build_order_workflow(workflow_config, store, oracle=oracle, registrar=registrar,
                                hosting=hosting, checkout=checkout, email=email)

class OrderFlow:
    """Drives an order through the lifecycle for tests that start mid-way"""

    def __init__(self, workflow, customer):
        self.workflow = workflow
        self.customer = customer

    async def submitted(self, domain: str = 'example', tld: str = '.com', years: int = 1,
                        hosting_package_id: Optional[int] = None) -> PendingOrder:
        return await self.workflow.submit_order(self.customer.id, domain, tld, years, hosting_package_id)

    async def approved(self, **kwargs) -> Tuple[PendingOrder, Invoice]:
        order = await self.submitted(**kwargs)
        invoice = await self.workflow.approve_order(order.id)
        return order, invoice

    async def paid(self, **kwargs) -> Tuple[PendingOrder, Invoice]:
        order, invoice = await self.approved(**kwargs)
        await self.workflow.handle_payment_event(f"evt_{invoice.id}", invoice.id, 'succeeded')
        return order, invoice

@pytest.fixture
def order_flow(workflow, customer):
    return OrderFlow(workflow, customer)
