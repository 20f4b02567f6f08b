"""
Domain and hosting order data model

Statuses, records and the tagged admin note variants shared by every
component of the order workflow. Money fields are Decimal, quantized to
two places by pricing_utils.to_money.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ====================================================================
# STATUS ENUMS
# ====================================================================

class OrderStatus(Enum):
    """Lifecycle of a pending domain order"""
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    PROVISIONED = "provisioned"
    PROVISION_FAILED = "provision_failed"

class InvoiceStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"

class DomainStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    EXPIRED = "expired"

class HostingStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    SUSPENDED = "suspended"

class ProvisioningStatus(Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

class ProvisioningType(Enum):
    DOMAIN_REGISTRATION = "domain_registration"
    HOSTING_SETUP = "hosting_setup"

class PaymentOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"

class ProvisionFailureCode(Enum):
    """Why provisioning could not complete"""
    PRICE_MISMATCH = "PRICE_MISMATCH"
    DOMAIN_UNAVAILABLE = "DOMAIN_UNAVAILABLE"
    REGISTRAR_REJECTED = "REGISTRAR_REJECTED"
    HOSTING_FAILED = "HOSTING_FAILED"
    HOSTING_OUTCOME_UNKNOWN = "HOSTING_OUTCOME_UNKNOWN"

# Allowed order transitions; anything not listed is refused
ORDER_TRANSITIONS = {
    OrderStatus.PENDING_REVIEW: {OrderStatus.APPROVED, OrderStatus.REJECTED},
    OrderStatus.APPROVED: {OrderStatus.PAID},
    OrderStatus.PAID: {OrderStatus.PROVISIONED, OrderStatus.PROVISION_FAILED},
    OrderStatus.REJECTED: set(),
    OrderStatus.PROVISIONED: set(),
    OrderStatus.PROVISION_FAILED: set(),
}

def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Check whether an order may move from current to target"""
    return target in ORDER_TRANSITIONS.get(current, set())

# ====================================================================
# ADMIN NOTES - TAGGED VARIANT
# ====================================================================

@dataclass(frozen=True)
class RejectionReason:
    """Admin's explanation for rejecting an order"""
    text: str
    kind: str = field(default="rejection", init=False)

@dataclass(frozen=True)
class ProvisionFailureReason:
    """Machine-readable cause for a PROVISION_FAILED order"""
    code: ProvisionFailureCode
    text: str
    kind: str = field(default="provision_failure", init=False)

@dataclass(frozen=True)
class FollowUpNote:
    """Flag on a provisioned order that still needs admin attention"""
    code: ProvisionFailureCode
    text: str
    kind: str = field(default="follow_up", init=False)

OrderNote = Union[RejectionReason, ProvisionFailureReason, FollowUpNote]

def note_to_dict(note: Optional[OrderNote]) -> Optional[Dict[str, Any]]:
    if note is None:
        return None
    data: Dict[str, Any] = {'kind': note.kind, 'text': note.text}
    code = getattr(note, 'code', None)
    if code is not None:
        data['code'] = code.value
    return data

def note_to_json(note: Optional[OrderNote]) -> Optional[str]:
    data = note_to_dict(note)
    return json.dumps(data) if data is not None else None

def note_from_json(raw: Union[str, Dict[str, Any], None]) -> Optional[OrderNote]:
    """Rebuild a tagged note from its stored JSON form"""
    if not raw:
        return None
    data = json.loads(raw) if isinstance(raw, str) else raw
    kind = data.get('kind')
    if kind == 'rejection':
        return RejectionReason(text=data['text'])
    if kind == 'provision_failure':
        return ProvisionFailureReason(code=ProvisionFailureCode(data['code']), text=data['text'])
    if kind == 'follow_up':
        return FollowUpNote(code=ProvisionFailureCode(data['code']), text=data['text'])
    raise ValueError(f"Unknown order note kind: {kind}")

# ====================================================================
# RECORDS
# ====================================================================

@dataclass
class QuoteResult:
    """Availability and price for one candidate domain, never trusted after quoting"""
    domain: str
    tld: str
    available: bool
    price: Optional[Decimal] = None
    premium: bool = False
    quoted_at: Optional[datetime] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.quoted_at is None:
            self.quoted_at = utcnow()

    @property
    def label(self) -> str:
        return self.domain[:-len(self.tld)] if self.domain.endswith(self.tld) else self.domain

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'tld': self.tld,
            'available': self.available,
            'price': str(self.price) if self.price is not None else None,
            'premium': self.premium,
            'quotedAt': self.quoted_at.isoformat() if self.quoted_at else None,
            'error': self.error,
        }

@dataclass
class HostingPackage:
    id: int
    name: str
    monthly_price: Decimal
    whm_plan: str = "default"
    active: bool = True

@dataclass
class CustomerContact:
    id: int
    email: str
    name: Optional[str] = None

@dataclass
class PendingOrder:
    """A customer's purchase intent with prices frozen at submission"""
    customer_id: int
    domain_name: str
    tld: str
    years: int
    domain_price: Decimal
    hosting_price: Decimal
    total_estimate: Decimal
    idempotency_token: str
    status: OrderStatus = OrderStatus.PENDING_REVIEW
    hosting_package_id: Optional[int] = None
    admin_notes: Optional[OrderNote] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def fqdn(self) -> str:
        return f"{self.domain_name}{self.tld}"

    @property
    def has_hosting(self) -> bool:
        return self.hosting_package_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'customerId': self.customer_id,
            'domain': self.fqdn,
            'domainName': self.domain_name,
            'tld': self.tld,
            'years': self.years,
            'domainPrice': str(self.domain_price),
            'hostingPackageId': self.hosting_package_id,
            'hostingPrice': str(self.hosting_price),
            'totalEstimate': str(self.total_estimate),
            'status': self.status.value,
            'adminNotes': note_to_dict(self.admin_notes),
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'reviewedAt': self.reviewed_at.isoformat() if self.reviewed_at else None,
        }

@dataclass
class Invoice:
    customer_id: int
    order_id: int
    amount: Decimal
    currency: str
    due_date: datetime
    status: InvoiceStatus = InvoiceStatus.PENDING
    id: Optional[int] = None
    paid_at: Optional[datetime] = None
    checkout_session_id: Optional[str] = None
    payment_event_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'customerId': self.customer_id,
            'orderId': self.order_id,
            'amount': str(self.amount),
            'currency': self.currency,
            'status': self.status.value,
            'dueDate': self.due_date.isoformat() if self.due_date else None,
            'paidAt': self.paid_at.isoformat() if self.paid_at else None,
        }

@dataclass
class Domain:
    customer_id: int
    order_id: int
    name: str
    tld: str
    status: DomainStatus
    registration_date: datetime
    expiry_date: datetime
    price_paid: Decimal
    registrar_reference: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        data['registration_date'] = self.registration_date.isoformat()
        data['expiry_date'] = self.expiry_date.isoformat()
        data['price_paid'] = str(self.price_paid)
        return data

@dataclass
class HostingSubscription:
    customer_id: int
    order_id: int
    hosting_package_id: int
    status: HostingStatus
    domain_id: Optional[int] = None
    provider_username: Optional[str] = None
    provider_account_id: Optional[str] = None
    server_ip: Optional[str] = None
    billing_cycle: str = "yearly"
    next_billing_date: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        data['next_billing_date'] = self.next_billing_date.isoformat() if self.next_billing_date else None
        return data

@dataclass
class ProvisioningRequest:
    """Ledger row written before each external side effect"""
    order_id: int
    request_type: ProvisioningType
    idempotency_key: str
    status: ProvisioningStatus = ProvisioningStatus.QUEUED
    priority: int = 0
    attempts: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    notes: Optional[str] = None
    external_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.request_type.value,
            'status': self.status.value,
            'attempts': self.attempts,
            'notes': self.notes,
            'processedAt': self.processed_at.isoformat() if self.processed_at else None,
        }

def provisioning_key(order: PendingOrder, request_type: ProvisioningType) -> str:
    """Idempotency key for one external side effect of an order"""
    return f"{order.idempotency_token}:{request_type.value}"

@dataclass
class CheckoutSession:
    session_id: str
    url: str

class SettlementResult(Enum):
    """Outcome of applying a successful payment event"""
    SETTLED = "settled"
    DUPLICATE_EVENT = "duplicate_event"
    ALREADY_PAID = "already_paid"
