"""
Order intake

Turns a fresh availability quote into a PENDING_REVIEW order with its
prices frozen. All validation happens before anything is written.
"""

import logging
import secrets
from typing import Optional

from models import OrderStatus, PendingOrder, QuoteResult
from pricing_utils import annual_hosting_price, calculate_order_total, to_money
from services.pricing_snapshot import PricingSnapshotStore
from workflow_errors import OrderValidationError

logger = logging.getLogger(__name__)

MIN_YEARS = 1
MAX_YEARS = 10


class OrderIntake:
    """Validates quotes and persists new orders"""

    def __init__(self, store, pricing: PricingSnapshotStore, dispatcher):
        self.store = store
        self.pricing = pricing
        self.dispatcher = dispatcher

    async def submit(self, customer_id: int, quote: QuoteResult, years: int,
                     hosting_package_id: Optional[int] = None) -> PendingOrder:
        """
        Create a PENDING_REVIEW order from a quote

        Args:
            customer_id: Ordering customer
            quote: Availability result for the chosen domain
            years: Registration term, 1-10
            hosting_package_id: Optional hosting bundle

        Returns:
            The persisted order

        Raises:
            OrderValidationError: nothing was persisted
        """
        if quote.error or quote.price is None:
            raise OrderValidationError(f"{quote.domain} could not be priced, please search again")
        if not quote.available:
            raise OrderValidationError(f"{quote.domain} is not available for registration")
        if not isinstance(years, int) or isinstance(years, bool) or not MIN_YEARS <= years <= MAX_YEARS:
            raise OrderValidationError(f"Registration term must be between {MIN_YEARS} and {MAX_YEARS} years")

        hosting_price = to_money(0)
        if hosting_package_id is not None:
            package = await self.pricing.hosting_package(hosting_package_id)
            if package is None or not package.active:
                raise OrderValidationError(f"Hosting package {hosting_package_id} is not available")
            hosting_price = annual_hosting_price(package.monthly_price)

        domain_price = to_money(quote.price)
        order = PendingOrder(
            customer_id=customer_id,
            domain_name=quote.label,
            tld=quote.tld,
            years=years,
            domain_price=domain_price,
            hosting_package_id=hosting_package_id,
            hosting_price=hosting_price,
            total_estimate=calculate_order_total(domain_price, hosting_price, years),
            idempotency_token=secrets.token_urlsafe(24),
            status=OrderStatus.PENDING_REVIEW,
        )

        order = await self.store.create_order(order)
        logger.info(f"📝 Order #{order.id} submitted: {order.fqdn} x{years}y, "
                    f"total {order.total_estimate} (customer {customer_id})")

        await self.dispatcher.dispatch('order_submitted', order.id)
        return order
