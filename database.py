"""
PostgreSQL persistence for the domain and hosting order workflow
Direct database connections with raw SQL queries; every status change is a
compare-and-swap UPDATE guarded by the expected current status
"""

import os
import asyncio
import logging
import threading
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import psycopg2
import psycopg2.errors
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from models import (
    CustomerContact, Domain, DomainStatus, HostingPackage, HostingStatus,
    HostingSubscription, Invoice, InvoiceStatus, OrderNote, OrderStatus,
    PendingOrder, ProvisioningRequest, ProvisioningStatus, ProvisioningType,
    SettlementResult, can_transition, note_from_json, note_to_json, utcnow,
)
from workflow_errors import OrderConflictError

logger = logging.getLogger(__name__)

_connection_pool = None
_pool_lock = threading.Lock()

# ====================================================================
# CONNECTION POOL
# ====================================================================

def get_connection_pool():
    """Get or create the database connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                database_url = os.getenv('DATABASE_URL')
                if not database_url:
                    raise ValueError("DATABASE_URL environment variable not found")

                _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=int(os.getenv('DB_POOL_MIN', '2')),
                    maxconn=int(os.getenv('DB_POOL_MAX', '20')),
                    dsn=database_url,
                    cursor_factory=RealDictCursor,
                    connect_timeout=5,
                    keepalives_idle=600,
                    keepalives_interval=30,
                    keepalives_count=3,
                )
                logger.info("✅ Database connection pool created")
    return _connection_pool

def close_connection_pool():
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔄 Database connection pool closed")

def get_connection():
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn

def return_connection(conn, is_broken=False):
    """Return a connection to the pool, closing it if it is broken"""
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except psycopg2.pool.PoolError as e:
        logger.warning(f"⚠️ Could not return connection to pool: {e}")
        conn.close()

async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a query returning rows, retrying on dropped connections"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            broken = False
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    if cursor.description is None:
                        return []
                    return [dict(row) for row in cursor.fetchall()]
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                broken = True
                if attempt < max_retries - 1:
                    logger.warning(f"🔄 Database connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + (attempt * 0.5))
                    continue
                logger.error(f"💥 All database connection attempts failed after {max_retries} retries: {e}")
                raise
            finally:
                if conn:
                    return_connection(conn, is_broken=broken)
        return []

    return await asyncio.to_thread(_execute)

async def execute_update(query: str, params: Optional[tuple] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE and return affected rows (no retries to prevent duplicates)"""

    def _execute() -> int:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            logger.error(f"💥 Database update connection failed: {e}")
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)

async def run_in_transaction(func: Callable, *args, **kwargs):
    """Run func(conn, *args) inside a single transaction, committing on success"""

    def _execute_in_transaction():
        conn = get_connection()
        broken = False
        try:
            conn.autocommit = False
            try:
                result = func(conn, *args, **kwargs)
                conn.commit()
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                broken = True
                raise
            except Exception:
                conn.rollback()
                raise
            finally:
                if not broken:
                    conn.autocommit = True
        finally:
            return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute_in_transaction)

# ====================================================================
# SCHEMA
# ====================================================================

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS customers (
        id SERIAL PRIMARY KEY,
        email VARCHAR(320) NOT NULL,
        name VARCHAR(255),
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hosting_packages (
        id SERIAL PRIMARY KEY,
        name VARCHAR(100) NOT NULL,
        whm_plan VARCHAR(100) NOT NULL DEFAULT 'default',
        monthly_price NUMERIC(10,2) NOT NULL CHECK (monthly_price >= 0),
        active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS domain_tld_pricing (
        tld VARCHAR(63) PRIMARY KEY,
        price NUMERIC(10,2) NOT NULL CHECK (price > 0),
        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_domain_orders (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL,
        domain_name VARCHAR(63) NOT NULL,
        tld VARCHAR(63) NOT NULL,
        years INTEGER NOT NULL CHECK (years BETWEEN 1 AND 10),
        domain_price NUMERIC(10,2) NOT NULL,
        hosting_package_id INTEGER REFERENCES hosting_packages(id),
        hosting_price NUMERIC(10,2) NOT NULL DEFAULT 0,
        total_estimate NUMERIC(10,2) NOT NULL,
        status VARCHAR(32) NOT NULL DEFAULT 'pending_review',
        admin_notes JSONB,
        idempotency_token VARCHAR(64) NOT NULL UNIQUE,
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
        reviewed_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pending_orders_status ON pending_domain_orders(status)",
    "CREATE INDEX IF NOT EXISTS idx_pending_orders_customer ON pending_domain_orders(customer_id)",
    """
    CREATE TABLE IF NOT EXISTS invoices (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL,
        order_id INTEGER NOT NULL UNIQUE REFERENCES pending_domain_orders(id),
        amount NUMERIC(10,2) NOT NULL CHECK (amount >= 0),
        currency VARCHAR(3) NOT NULL,
        status VARCHAR(16) NOT NULL DEFAULT 'pending',
        due_date TIMESTAMPTZ NOT NULL,
        paid_at TIMESTAMPTZ,
        checkout_session_id VARCHAR(255),
        payment_event_id VARCHAR(255),
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_events (
        event_id VARCHAR(255) PRIMARY KEY,
        invoice_id INTEGER NOT NULL REFERENCES invoices(id),
        outcome VARCHAR(16) NOT NULL,
        received_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provisioning_requests (
        id SERIAL PRIMARY KEY,
        order_id INTEGER NOT NULL REFERENCES pending_domain_orders(id),
        request_type VARCHAR(32) NOT NULL,
        idempotency_key VARCHAR(128) NOT NULL UNIQUE,
        status VARCHAR(16) NOT NULL DEFAULT 'queued',
        priority INTEGER NOT NULL DEFAULT 0,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
        claimed_at TIMESTAMPTZ,
        processed_at TIMESTAMPTZ,
        notes TEXT,
        external_reference VARCHAR(255)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_provisioning_requests_order ON provisioning_requests(order_id)",
    """
    CREATE TABLE IF NOT EXISTS domains (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL,
        order_id INTEGER NOT NULL UNIQUE REFERENCES pending_domain_orders(id),
        name VARCHAR(255) NOT NULL,
        tld VARCHAR(63) NOT NULL,
        status VARCHAR(16) NOT NULL,
        registration_date TIMESTAMPTZ NOT NULL,
        expiry_date TIMESTAMPTZ NOT NULL,
        price_paid NUMERIC(10,2) NOT NULL,
        registrar_reference VARCHAR(255)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hosting_subscriptions (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL,
        order_id INTEGER NOT NULL UNIQUE REFERENCES pending_domain_orders(id),
        domain_id INTEGER REFERENCES domains(id),
        hosting_package_id INTEGER NOT NULL REFERENCES hosting_packages(id),
        status VARCHAR(16) NOT NULL,
        provider_username VARCHAR(64),
        provider_account_id VARCHAR(255),
        server_ip VARCHAR(64),
        billing_cycle VARCHAR(16) NOT NULL DEFAULT 'yearly',
        next_billing_date TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_log (
        id SERIAL PRIMARY KEY,
        event_type VARCHAR(64) NOT NULL,
        entity_id VARCHAR(64) NOT NULL,
        recipient VARCHAR(320) NOT NULL,
        sent_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(event_type, entity_id, recipient)
    )
    """,
]

async def init_database():
    """Initialize database tables if they don't exist"""

    def _init(conn):
        with conn.cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

    await run_in_transaction(_init)
    logger.info("✅ Database schema initialized")

# ====================================================================
# ROW MAPPING
# ====================================================================

def _order_from_row(row: Dict[str, Any]) -> PendingOrder:
    return PendingOrder(
        id=row['id'],
        customer_id=row['customer_id'],
        domain_name=row['domain_name'],
        tld=row['tld'],
        years=row['years'],
        domain_price=Decimal(row['domain_price']),
        hosting_package_id=row.get('hosting_package_id'),
        hosting_price=Decimal(row['hosting_price']),
        total_estimate=Decimal(row['total_estimate']),
        status=OrderStatus(row['status']),
        admin_notes=note_from_json(row.get('admin_notes')),
        idempotency_token=row['idempotency_token'],
        created_at=row.get('created_at'),
        reviewed_at=row.get('reviewed_at'),
        updated_at=row.get('updated_at'),
    )

def _invoice_from_row(row: Dict[str, Any]) -> Invoice:
    return Invoice(
        id=row['id'],
        customer_id=row['customer_id'],
        order_id=row['order_id'],
        amount=Decimal(row['amount']),
        currency=row['currency'],
        status=InvoiceStatus(row['status']),
        due_date=row['due_date'],
        paid_at=row.get('paid_at'),
        checkout_session_id=row.get('checkout_session_id'),
        payment_event_id=row.get('payment_event_id'),
        created_at=row.get('created_at'),
    )

def _request_from_row(row: Dict[str, Any]) -> ProvisioningRequest:
    return ProvisioningRequest(
        id=row['id'],
        order_id=row['order_id'],
        request_type=ProvisioningType(row['request_type']),
        idempotency_key=row['idempotency_key'],
        status=ProvisioningStatus(row['status']),
        priority=row['priority'],
        attempts=row['attempts'],
        created_at=row.get('created_at'),
        claimed_at=row.get('claimed_at'),
        processed_at=row.get('processed_at'),
        notes=row.get('notes'),
        external_reference=row.get('external_reference'),
    )

def _domain_from_row(row: Dict[str, Any]) -> Domain:
    return Domain(
        id=row['id'],
        customer_id=row['customer_id'],
        order_id=row['order_id'],
        name=row['name'],
        tld=row['tld'],
        status=DomainStatus(row['status']),
        registration_date=row['registration_date'],
        expiry_date=row['expiry_date'],
        price_paid=Decimal(row['price_paid']),
        registrar_reference=row.get('registrar_reference'),
    )

def _hosting_from_row(row: Dict[str, Any]) -> HostingSubscription:
    return HostingSubscription(
        id=row['id'],
        customer_id=row['customer_id'],
        order_id=row['order_id'],
        domain_id=row.get('domain_id'),
        hosting_package_id=row['hosting_package_id'],
        status=HostingStatus(row['status']),
        provider_username=row.get('provider_username'),
        provider_account_id=row.get('provider_account_id'),
        server_ip=row.get('server_ip'),
        billing_cycle=row.get('billing_cycle') or 'yearly',
        next_billing_date=row.get('next_billing_date'),
    )

def _insert_provisioning_request(cursor, request: ProvisioningRequest) -> None:
    cursor.execute(
        """INSERT INTO provisioning_requests
           (order_id, request_type, idempotency_key, status, priority)
           VALUES (%s, %s, %s, %s, %s)
           ON CONFLICT (idempotency_key) DO NOTHING""",
        (request.order_id, request.request_type.value, request.idempotency_key,
         request.status.value, request.priority)
    )

# ====================================================================
# WORKFLOW STORE
# ====================================================================

class PostgresWorkflowStore:
    """
    Order workflow persistence backed by PostgreSQL

    Transition methods return False (or None) when the row was not in the
    expected state; callers turn that into a conflict. Multi-row changes
    run inside run_in_transaction so they commit or roll back together.
    """

    # ---------------- orders ----------------

    async def create_order(self, order: PendingOrder) -> PendingOrder:
        rows = await execute_query(
            """INSERT INTO pending_domain_orders
               (customer_id, domain_name, tld, years, domain_price, hosting_package_id,
                hosting_price, total_estimate, status, idempotency_token)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
               RETURNING *""",
            (order.customer_id, order.domain_name, order.tld, order.years, order.domain_price,
             order.hosting_package_id, order.hosting_price, order.total_estimate,
             order.status.value, order.idempotency_token)
        )
        return _order_from_row(rows[0])

    async def get_order(self, order_id: int) -> Optional[PendingOrder]:
        rows = await execute_query("SELECT * FROM pending_domain_orders WHERE id = %s", (order_id,))
        return _order_from_row(rows[0]) if rows else None

    async def list_orders(self, status: Optional[OrderStatus] = None,
                          customer_id: Optional[int] = None) -> List[PendingOrder]:
        clauses = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if customer_id is not None:
            clauses.append("customer_id = %s")
            params.append(customer_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await execute_query(
            f"SELECT * FROM pending_domain_orders {where} ORDER BY created_at DESC, id DESC",
            tuple(params)
        )
        return [_order_from_row(row) for row in rows]

    async def transition_order(self, order_id: int, expected: OrderStatus, new: OrderStatus,
                               admin_notes: Optional[OrderNote] = None, reviewed: bool = False) -> bool:
        """
        Compare-and-swap an order's status

        Raises:
            OrderConflictError: expected -> new is not an allowed transition
        """
        if not can_transition(expected, new):
            raise OrderConflictError(f"Order cannot move from {expected.value} to {new.value}")
        rowcount = await execute_update(
            """UPDATE pending_domain_orders
               SET status = %s,
                   admin_notes = COALESCE(%s::jsonb, admin_notes),
                   reviewed_at = CASE WHEN %s THEN CURRENT_TIMESTAMP ELSE reviewed_at END,
                   updated_at = CURRENT_TIMESTAMP
               WHERE id = %s AND status = %s""",
            (new.value, note_to_json(admin_notes), reviewed, order_id, expected.value)
        )
        return rowcount == 1

    async def set_order_notes(self, order_id: int, note: OrderNote) -> None:
        await execute_update(
            """UPDATE pending_domain_orders SET admin_notes = %s::jsonb, updated_at = CURRENT_TIMESTAMP
               WHERE id = %s""",
            (note_to_json(note), order_id)
        )

    async def approve_order_with_invoice(self, order_id: int, invoice: Invoice) -> Optional[Invoice]:
        """Move PENDING_REVIEW -> APPROVED and create the order's single invoice atomically"""

        def _approve(conn) -> Optional[Invoice]:
            with conn.cursor() as cursor:
                cursor.execute(
                    """UPDATE pending_domain_orders
                       SET status = %s, reviewed_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
                       WHERE id = %s AND status = %s""",
                    (OrderStatus.APPROVED.value, order_id, OrderStatus.PENDING_REVIEW.value)
                )
                if cursor.rowcount != 1:
                    return None
                cursor.execute(
                    """INSERT INTO invoices (customer_id, order_id, amount, currency, status, due_date)
                       VALUES (%s, %s, %s, %s, %s, %s)
                       RETURNING *""",
                    (invoice.customer_id, order_id, invoice.amount, invoice.currency,
                     InvoiceStatus.PENDING.value, invoice.due_date)
                )
                return _invoice_from_row(dict(cursor.fetchone()))

        try:
            return await run_in_transaction(_approve)
        except psycopg2.errors.UniqueViolation:
            logger.warning(f"⚠️ Invoice already exists for order {order_id}")
            return None

    # ---------------- invoices & payments ----------------

    async def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        rows = await execute_query("SELECT * FROM invoices WHERE id = %s", (invoice_id,))
        return _invoice_from_row(rows[0]) if rows else None

    async def get_invoice_for_order(self, order_id: int) -> Optional[Invoice]:
        rows = await execute_query("SELECT * FROM invoices WHERE order_id = %s", (order_id,))
        return _invoice_from_row(rows[0]) if rows else None

    async def set_invoice_checkout_session(self, invoice_id: int, session_id: str) -> None:
        await execute_update(
            "UPDATE invoices SET checkout_session_id = %s WHERE id = %s AND status = %s",
            (session_id, invoice_id, InvoiceStatus.PENDING.value)
        )

    async def record_payment_event(self, event_id: str, invoice_id: int, outcome: str) -> bool:
        """Insert into the dedupe ledger; False when the event was already seen"""
        rowcount = await execute_update(
            """INSERT INTO payment_events (event_id, invoice_id, outcome)
               VALUES (%s, %s, %s) ON CONFLICT (event_id) DO NOTHING""",
            (event_id, invoice_id, outcome)
        )
        return rowcount == 1

    async def settle_invoice_payment(self, invoice_id: int, order_id: int, event_id: str,
                                     requests: List[ProvisioningRequest]) -> SettlementResult:
        """Apply a successful payment once: ledger, invoice, order and provisioning queue together"""

        def _settle(conn) -> SettlementResult:
            with conn.cursor() as cursor:
                cursor.execute(
                    """INSERT INTO payment_events (event_id, invoice_id, outcome)
                       VALUES (%s, %s, 'succeeded') ON CONFLICT (event_id) DO NOTHING""",
                    (event_id, invoice_id)
                )
                if cursor.rowcount != 1:
                    return SettlementResult.DUPLICATE_EVENT

                cursor.execute(
                    """UPDATE invoices
                       SET status = %s, paid_at = CURRENT_TIMESTAMP, payment_event_id = %s
                       WHERE id = %s AND status = %s""",
                    (InvoiceStatus.PAID.value, event_id, invoice_id, InvoiceStatus.PENDING.value)
                )
                if cursor.rowcount != 1:
                    cursor.execute("SELECT status FROM invoices WHERE id = %s", (invoice_id,))
                    row = cursor.fetchone()
                    if row and row['status'] == InvoiceStatus.PAID.value:
                        return SettlementResult.ALREADY_PAID
                    raise OrderConflictError(f"Invoice {invoice_id} cannot be paid in its current state")

                cursor.execute(
                    """UPDATE pending_domain_orders SET status = %s, updated_at = CURRENT_TIMESTAMP
                       WHERE id = %s AND status = %s""",
                    (OrderStatus.PAID.value, order_id, OrderStatus.APPROVED.value)
                )
                if cursor.rowcount != 1:
                    raise OrderConflictError(f"Order {order_id} is not awaiting payment")

                for request in requests:
                    _insert_provisioning_request(cursor, request)
                return SettlementResult.SETTLED

        return await run_in_transaction(_settle)

    # ---------------- provisioning ----------------

    async def create_provisioning_request(self, request: ProvisioningRequest) -> ProvisioningRequest:
        def _create(conn) -> ProvisioningRequest:
            with conn.cursor() as cursor:
                _insert_provisioning_request(cursor, request)
                cursor.execute("SELECT * FROM provisioning_requests WHERE idempotency_key = %s",
                               (request.idempotency_key,))
                return _request_from_row(dict(cursor.fetchone()))

        return await run_in_transaction(_create)

    async def get_provisioning_request(self, order_id: int,
                                       request_type: ProvisioningType) -> Optional[ProvisioningRequest]:
        rows = await execute_query(
            "SELECT * FROM provisioning_requests WHERE order_id = %s AND request_type = %s",
            (order_id, request_type.value)
        )
        return _request_from_row(rows[0]) if rows else None

    async def list_provisioning_requests(self, order_id: int) -> List[ProvisioningRequest]:
        rows = await execute_query(
            "SELECT * FROM provisioning_requests WHERE order_id = %s ORDER BY id", (order_id,)
        )
        return [_request_from_row(row) for row in rows]

    async def claim_provisioning_request(self, request_id: int,
                                         stale_after_seconds: int) -> Optional[ProvisioningRequest]:
        """Take exclusive ownership of a queued request, or of one whose worker went quiet"""
        stale_before = utcnow() - timedelta(seconds=stale_after_seconds)
        rows = await execute_query(
            """UPDATE provisioning_requests
               SET status = %s, claimed_at = CURRENT_TIMESTAMP
               WHERE id = %s
                 AND (status = %s OR (status = %s AND claimed_at < %s))
               RETURNING *""",
            (ProvisioningStatus.PROCESSING.value, request_id, ProvisioningStatus.QUEUED.value,
             ProvisioningStatus.PROCESSING.value, stale_before)
        )
        return _request_from_row(rows[0]) if rows else None

    async def record_provisioning_attempt(self, request_id: int) -> None:
        await execute_update(
            "UPDATE provisioning_requests SET attempts = attempts + 1 WHERE id = %s", (request_id,)
        )

    async def update_provisioning_request(self, request_id: int, status: ProvisioningStatus,
                                          notes: Optional[str] = None,
                                          external_reference: Optional[str] = None) -> None:
        finished = status in (ProvisioningStatus.COMPLETED, ProvisioningStatus.FAILED)
        await execute_update(
            """UPDATE provisioning_requests
               SET status = %s,
                   notes = COALESCE(%s, notes),
                   external_reference = COALESCE(%s, external_reference),
                   processed_at = CASE WHEN %s THEN CURRENT_TIMESTAMP ELSE processed_at END
               WHERE id = %s""",
            (status.value, notes, external_reference, finished, request_id)
        )

    async def complete_domain_registration(self, request_id: int, domain: Domain) -> Domain:
        """Record the registered domain and close its request in one transaction"""

        def _complete(conn) -> Domain:
            with conn.cursor() as cursor:
                cursor.execute(
                    """INSERT INTO domains
                       (customer_id, order_id, name, tld, status, registration_date, expiry_date,
                        price_paid, registrar_reference)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                       ON CONFLICT (order_id) DO NOTHING""",
                    (domain.customer_id, domain.order_id, domain.name, domain.tld, domain.status.value,
                     domain.registration_date, domain.expiry_date, domain.price_paid,
                     domain.registrar_reference)
                )
                cursor.execute(
                    """UPDATE provisioning_requests
                       SET status = %s, processed_at = CURRENT_TIMESTAMP,
                           external_reference = COALESCE(%s, external_reference)
                       WHERE id = %s""",
                    (ProvisioningStatus.COMPLETED.value, domain.registrar_reference, request_id)
                )
                cursor.execute("SELECT * FROM domains WHERE order_id = %s", (domain.order_id,))
                return _domain_from_row(dict(cursor.fetchone()))

        return await run_in_transaction(_complete)

    async def complete_hosting_setup(self, request_id: int,
                                     subscription: HostingSubscription) -> HostingSubscription:
        def _complete(conn) -> HostingSubscription:
            with conn.cursor() as cursor:
                cursor.execute(
                    """INSERT INTO hosting_subscriptions
                       (customer_id, order_id, domain_id, hosting_package_id, status, provider_username,
                        provider_account_id, server_ip, billing_cycle, next_billing_date)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                       ON CONFLICT (order_id) DO NOTHING""",
                    (subscription.customer_id, subscription.order_id, subscription.domain_id,
                     subscription.hosting_package_id, subscription.status.value,
                     subscription.provider_username, subscription.provider_account_id,
                     subscription.server_ip, subscription.billing_cycle, subscription.next_billing_date)
                )
                cursor.execute(
                    """UPDATE provisioning_requests
                       SET status = %s, processed_at = CURRENT_TIMESTAMP,
                           external_reference = COALESCE(%s, external_reference)
                       WHERE id = %s""",
                    (ProvisioningStatus.COMPLETED.value, subscription.provider_username, request_id)
                )
                cursor.execute("SELECT * FROM hosting_subscriptions WHERE order_id = %s",
                               (subscription.order_id,))
                return _hosting_from_row(dict(cursor.fetchone()))

        return await run_in_transaction(_complete)

    async def get_domain_for_order(self, order_id: int) -> Optional[Domain]:
        rows = await execute_query("SELECT * FROM domains WHERE order_id = %s", (order_id,))
        return _domain_from_row(rows[0]) if rows else None

    async def get_hosting_for_order(self, order_id: int) -> Optional[HostingSubscription]:
        rows = await execute_query("SELECT * FROM hosting_subscriptions WHERE order_id = %s", (order_id,))
        return _hosting_from_row(rows[0]) if rows else None

    # ---------------- catalog & contacts ----------------

    async def load_tld_prices(self) -> Dict[str, Decimal]:
        rows = await execute_query("SELECT tld, price FROM domain_tld_pricing")
        return {row['tld']: Decimal(row['price']) for row in rows}

    async def load_hosting_packages(self) -> Dict[int, HostingPackage]:
        rows = await execute_query("SELECT * FROM hosting_packages")
        return {
            row['id']: HostingPackage(
                id=row['id'],
                name=row['name'],
                whm_plan=row['whm_plan'],
                monthly_price=Decimal(row['monthly_price']),
                active=row['active'],
            )
            for row in rows
        }

    async def get_customer(self, customer_id: int) -> Optional[CustomerContact]:
        rows = await execute_query("SELECT id, email, name FROM customers WHERE id = %s", (customer_id,))
        if not rows:
            return None
        return CustomerContact(id=rows[0]['id'], email=rows[0]['email'], name=rows[0].get('name'))

    # ---------------- notifications ----------------

    async def record_notification(self, event_type: str, entity_id: str, recipient: str) -> bool:
        """Claim a (event, entity, recipient) slot; False if it was already sent"""
        rowcount = await execute_update(
            """INSERT INTO notification_log (event_type, entity_id, recipient)
               VALUES (%s, %s, %s) ON CONFLICT (event_type, entity_id, recipient) DO NOTHING""",
            (event_type, entity_id, recipient)
        )
        return rowcount == 1

    async def release_notification(self, event_type: str, entity_id: str, recipient: str) -> None:
        """Forget a claimed slot after a failed send so a replay can retry it"""
        await execute_update(
            "DELETE FROM notification_log WHERE event_type = %s AND entity_id = %s AND recipient = %s",
            (event_type, entity_id, recipient)
        )

    async def health_check(self) -> bool:
        rows = await execute_query("SELECT 1 AS ok")
        return bool(rows)
