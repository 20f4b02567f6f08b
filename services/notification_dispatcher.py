"""
Notification dispatcher

Every customer and admin email in the order workflow goes through one
event-routed entry point. A route says which entity to load, who receives
the message and how to render it. The notification_log ledger makes each
(event, entity, recipient) send happen once even when the triggering event
is replayed.

dispatch() never raises: notification trouble must not fail the
transition that triggered it.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from message_utils import (
    create_info_message, create_success_message, create_warning_message,
    escape_html, format_bold, format_detail_rows, format_link, wrap_email_html,
)
from models import note_to_dict
from pricing_utils import format_money
from services.email_service import EmailService
from utils.environment import get_public_url
from workflow_errors import NotificationError

logger = logging.getLogger(__name__)

CUSTOMER = 'customer'
ADMIN = 'admin'
COUNTERPARTY = 'counterparty'

FOOTER = "You are receiving this email because of activity on your account."

Rendered = Tuple[str, str]


@dataclass(frozen=True)
class NotificationRoute:
    """How one event type is delivered"""
    entity: str
    recipients: Tuple[str, ...]
    template: Callable[[Dict[str, Any], str], Rendered]
    includes: Tuple[str, ...] = ()


# ====================================================================
# TEMPLATES
# ====================================================================

def _order_rows(ctx: Dict[str, Any]) -> str:
    order = ctx['order']
    rows = [
        ("Order", f"#{order.id}"),
        ("Domain", order.fqdn),
        ("Term", f"{order.years} year(s)"),
        ("Hosting", "Included" if order.has_hosting else None),
        ("Total", format_money(order.total_estimate, ctx['currency'])),
    ]
    return format_detail_rows(rows)


def _customer_name(ctx: Dict[str, Any]) -> str:
    customer = ctx.get('customer')
    return (customer.name if customer and customer.name else "there")


def render_order_submitted(ctx: Dict[str, Any], audience: str) -> Rendered:
    order = ctx['order']
    body = create_info_message("New order awaiting review") + _order_rows(ctx)
    body += f"<p>{format_link('Review order', get_public_url(f'/admin/orders/{order.id}'))}</p>"
    return f"[ADMIN] New order #{order.id} for {order.fqdn}", wrap_email_html("Order submitted", body)


def render_order_approved(ctx: Dict[str, Any], audience: str) -> Rendered:
    order, invoice = ctx['order'], ctx.get('invoice')
    body = f"<p>Hi {escape_html(_customer_name(ctx))},</p>"
    body += create_success_message(f"Your order for {order.fqdn} has been approved")
    body += _order_rows(ctx)
    if invoice is not None:
        body += format_detail_rows([
            ("Invoice", f"#{invoice.id}"),
            ("Due", invoice.due_date.strftime('%d %B %Y')),
        ])
        body += f"<p>{format_link('Pay invoice', get_public_url(f'/billing/invoices/{invoice.id}'))}</p>"
    return f"Your order for {order.fqdn} is approved", wrap_email_html("Order approved", body, FOOTER)


def render_order_rejected(ctx: Dict[str, Any], audience: str) -> Rendered:
    order = ctx['order']
    note = note_to_dict(order.admin_notes)
    body = f"<p>Hi {escape_html(_customer_name(ctx))},</p>"
    body += create_warning_message(f"We could not accept your order for {order.fqdn}",
                                   note['text'] if note else None)
    body += "<p>You have not been charged.</p>"
    return f"Update on your order for {order.fqdn}", wrap_email_html("Order not approved", body, FOOTER)


def render_payment_received(ctx: Dict[str, Any], audience: str) -> Rendered:
    order, invoice = ctx['order'], ctx.get('invoice')
    amount = format_money(invoice.amount if invoice else order.total_estimate, ctx['currency'])
    if audience == ADMIN:
        body = create_info_message(f"Payment of {amount} received for order #{order.id}") + _order_rows(ctx)
        return f"[ADMIN] Payment received for {order.fqdn}", wrap_email_html("Payment received", body)

    body = f"<p>Hi {escape_html(_customer_name(ctx))},</p>"
    body += create_success_message(f"Payment of {amount} received",
                                   f"We are now registering {order.fqdn}. You will hear from us when it is ready.")
    invoice_label = f"#{invoice.id}" if invoice else ""
    return f"Payment received - Invoice {invoice_label}".strip(), wrap_email_html("Payment received", body, FOOTER)


def render_payment_failed(ctx: Dict[str, Any], audience: str) -> Rendered:
    order, invoice = ctx['order'], ctx.get('invoice')
    body = f"<p>Hi {escape_html(_customer_name(ctx))},</p>"
    body += create_warning_message("Your payment did not go through",
                                   f"Your order for {order.fqdn} is still reserved. Please try again.")
    if invoice is not None:
        body += f"<p>{format_link('Retry payment', get_public_url(f'/billing/invoices/{invoice.id}'))}</p>"
    invoice_label = f"#{invoice.id}" if invoice else ""
    return (f"Payment failed - Please retry for invoice {invoice_label}".strip(),
            wrap_email_html("Payment failed", body, FOOTER))


def render_order_provisioned(ctx: Dict[str, Any], audience: str) -> Rendered:
    order, domain, hosting = ctx['order'], ctx.get('domain'), ctx.get('hosting')
    body = f"<p>Hi {escape_html(_customer_name(ctx))},</p>"
    body += create_success_message(f"{order.fqdn} is registered to you")
    rows = [("Domain", order.fqdn)]
    if domain is not None:
        rows.append(("Expires", domain.expiry_date.strftime('%d %B %Y')))
    if hosting is not None:
        rows.append(("Hosting username", hosting.provider_username))
        rows.append(("Server IP", hosting.server_ip))
    body += format_detail_rows(rows)
    if order.has_hosting and hosting is None:
        body += "<p>Your hosting account is still being set up. We will email you once it is ready.</p>"
    return f"Domain registration confirmed for {order.fqdn}!", wrap_email_html("Domain registered", body, FOOTER)


def render_provisioning_failed(ctx: Dict[str, Any], audience: str) -> Rendered:
    order = ctx['order']
    note = note_to_dict(order.admin_notes) or {}
    if audience == ADMIN:
        body = create_warning_message(f"Provisioning failed for order #{order.id}", note.get('text'))
        body += format_detail_rows([("Code", note.get('code'))]) + _order_rows(ctx)
        return f"[ADMIN] Provisioning failed for {order.fqdn}", wrap_email_html("Provisioning failed", body)

    body = f"<p>Hi {escape_html(_customer_name(ctx))},</p>"
    body += create_warning_message(f"We could not register {order.fqdn}",
                                   "Our team has been notified and will contact you about a refund or an alternative.")
    return f"Problem with your order for {order.fqdn}", wrap_email_html("Registration problem", body, FOOTER)


def render_provisioning_follow_up(ctx: Dict[str, Any], audience: str) -> Rendered:
    order = ctx['order']
    note = note_to_dict(order.admin_notes) or {}
    body = create_warning_message(f"Order #{order.id} needs follow-up", note.get('text'))
    body += format_detail_rows([("Code", note.get('code'))]) + _order_rows(ctx)
    body += "<p>The domain is registered. Hosting must be completed by hand.</p>"
    return f"[ADMIN] Hosting follow-up needed for {order.fqdn}", wrap_email_html("Follow-up required", body)


def render_ticket_reply(ctx: Dict[str, Any], audience: str) -> Rendered:
    data = ctx['data']
    ticket = data.get('ticket_number', '')
    body = f"<p>New reply on support ticket {format_bold('#' + str(ticket))}"
    if data.get('subject'):
        body += f": {escape_html(data['subject'])}"
    body += "</p>"
    if data.get('message'):
        body += f"<blockquote>{escape_html(data['message'])}</blockquote>"
    prefix = "[ADMIN] " if audience == ADMIN else ""
    return f"{prefix}Support ticket #{ticket} updated", wrap_email_html("Ticket updated", body, FOOTER)


DEFAULT_ROUTES: Dict[str, NotificationRoute] = {
    'order_submitted': NotificationRoute('order', (ADMIN,), render_order_submitted),
    'order_approved': NotificationRoute('order', (CUSTOMER,), render_order_approved, ('invoice',)),
    'order_rejected': NotificationRoute('order', (CUSTOMER,), render_order_rejected),
    'payment_received': NotificationRoute('order', (CUSTOMER, ADMIN), render_payment_received, ('invoice',)),
    'payment_failed': NotificationRoute('order', (CUSTOMER,), render_payment_failed, ('invoice',)),
    'order_provisioned': NotificationRoute('order', (CUSTOMER,), render_order_provisioned, ('domain', 'hosting')),
    'provisioning_failed': NotificationRoute('order', (CUSTOMER, ADMIN), render_provisioning_failed),
    'provisioning_follow_up': NotificationRoute('order', (ADMIN,), render_provisioning_follow_up),
    'ticket_reply': NotificationRoute('ticket', (COUNTERPARTY,), render_ticket_reply),
}


# ====================================================================
# DISPATCHER
# ====================================================================

class NotificationDispatcher:
    """Routes workflow events to templated emails"""

    def __init__(self, store, email: EmailService, admin_emails: Iterable[str],
                 currency: str = "GBP", routes: Optional[Dict[str, NotificationRoute]] = None):
        self.store = store
        self.email = email
        self.admin_emails = list(admin_emails)
        self.currency = currency
        self.routes = routes if routes is not None else DEFAULT_ROUTES

    async def dispatch(self, event_type: str, entity_id: Any, data: Optional[Dict[str, Any]] = None,
                       dedupe_key: Optional[str] = None) -> int:
        """
        Send the notifications for one event

        Args:
            event_type: Key into the routing table
            entity_id: Order id, or ticket reply id for ticket events
            data: Extra template data (ticket events carry everything here)
            dedupe_key: Ledger key when one entity can raise the same event more than once

        Returns:
            Number of emails sent; never raises
        """
        try:
            return await self._dispatch(event_type, entity_id, data or {}, dedupe_key)
        except Exception as e:
            logger.error(f"❌ Notification {event_type} for {entity_id} failed: {e}")
            return 0

    async def _dispatch(self, event_type: str, entity_id: Any, data: Dict[str, Any],
                        dedupe_key: Optional[str]) -> int:
        route = self.routes.get(event_type)
        if route is None:
            logger.warning(f"⚠️ No notification route for event {event_type}")
            return 0

        ctx = await self._load_context(route, entity_id, data)
        if ctx is None:
            return 0

        ledger_key = dedupe_key or str(entity_id)
        sent = 0
        for audience, address in self._resolve_recipients(route, ctx):
            if not await self.store.record_notification(event_type, ledger_key, address):
                logger.info(f"🔁 {event_type} for {ledger_key} already sent to {address}, skipping")
                continue

            subject, html = route.template(ctx, audience)
            try:
                await self.email.send_email(address, subject, html)
                sent += 1
            except NotificationError as e:
                logger.error(f"❌ {event_type} email to {address} failed: {e.reason}")
                await self.store.release_notification(event_type, ledger_key, address)

        return sent

    async def _load_context(self, route: NotificationRoute, entity_id: Any,
                            data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ctx: Dict[str, Any] = {'data': data, 'currency': self.currency}

        if route.entity == 'ticket':
            customer_id = data.get('customer_id')
            ctx['customer'] = await self.store.get_customer(customer_id) if customer_id is not None else None
            return ctx

        order = await self.store.get_order(int(entity_id))
        if order is None:
            logger.warning(f"⚠️ Order {entity_id} not found for notification")
            return None
        ctx['order'] = order
        ctx['customer'] = await self.store.get_customer(order.customer_id)

        if 'invoice' in route.includes:
            ctx['invoice'] = await self.store.get_invoice_for_order(order.id)
            if ctx['invoice'] is not None:
                ctx['currency'] = ctx['invoice'].currency
        if 'domain' in route.includes:
            ctx['domain'] = await self.store.get_domain_for_order(order.id)
        if 'hosting' in route.includes:
            ctx['hosting'] = await self.store.get_hosting_for_order(order.id)
        return ctx

    def _resolve_recipients(self, route: NotificationRoute, ctx: Dict[str, Any]) -> List[Tuple[str, str]]:
        audiences: List[str] = []
        for policy in route.recipients:
            if policy == COUNTERPARTY:
                author = ctx['data'].get('author')
                audiences.append(ADMIN if author == CUSTOMER else CUSTOMER)
            else:
                audiences.append(policy)

        recipients: List[Tuple[str, str]] = []
        for audience in audiences:
            if audience == CUSTOMER:
                customer = ctx.get('customer')
                if customer is None or not customer.email:
                    logger.warning("⚠️ No customer email on file, skipping customer notification")
                    continue
                recipients.append((CUSTOMER, customer.email))
            elif audience == ADMIN:
                if not self.admin_emails:
                    logger.debug("ADMIN_NOTIFICATION_EMAILS not set, skipping admin notification")
                recipients.extend((ADMIN, address) for address in self.admin_emails)
        return recipients
