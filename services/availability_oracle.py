"""
Availability oracle

Answers "is this domain free and what does it cost" for a batch of TLDs.
Two implementations share the query parsing and per-TLD error isolation:
RegistrarAvailabilityOracle asks OpenProvider, StaticAvailabilityOracle
answers from a fixed table for development and tests. The choice is made
once, when the workflow is built.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

from models import QuoteResult
from pricing_utils import calculate_marked_up_price
from services.pricing_snapshot import PricingSnapshotStore, normalize_tld
from workflow_errors import OrderValidationError, OrderWorkflowError, TransientProviderError

logger = logging.getLogger(__name__)

COMMON_TLDS = {
    '.com', '.net', '.org', '.co.uk', '.uk', '.org.uk', '.me.uk', '.io', '.co',
    '.info', '.biz', '.dev', '.app', '.eu', '.de', '.fr', '.nl', '.online', '.store',
}

_INVALID_LABEL_CHARS = re.compile(r'[^a-z0-9-]')
MAX_LABEL_LENGTH = 63


def parse_domain_query(query: str, tlds: Iterable[str],
                       known_tlds: Optional[Set[str]] = None) -> Tuple[str, List[str]]:
    """
    Split a typed search string into a label and the candidate TLD list

    If the string already ends in a TLD, that TLD is stripped from the label
    and moved to the front of the candidates (without duplicating it). The
    longest known suffix wins, so "mysite.co.uk" yields ".co.uk".

    Raises:
        OrderValidationError: the remaining label is empty or not a valid DNS label
    """
    text = (query or '').strip().lower()
    text = re.sub(r'^[a-z]+://', '', text).split('/')[0].rstrip('.')
    if text.startswith('www.'):
        text = text[4:]

    candidates: List[str] = []
    for tld in tlds:
        normalized = normalize_tld(tld)
        if normalized not in candidates:
            candidates.append(normalized)

    known = set(COMMON_TLDS) | set(candidates) | {normalize_tld(t) for t in (known_tlds or set())}

    typed_tld = None
    if '.' in text:
        for tld in sorted(known, key=len, reverse=True):
            if text.endswith(tld) and len(text) > len(tld):
                typed_tld = tld
                break
        if typed_tld is None:
            typed_tld = '.' + text.rsplit('.', 1)[1]
        text = text[:-len(typed_tld)]

    label = _INVALID_LABEL_CHARS.sub('', text)
    if not label:
        raise OrderValidationError("Enter a domain name to search for")
    if len(label) > MAX_LABEL_LENGTH:
        raise OrderValidationError(f"Domain names can be at most {MAX_LABEL_LENGTH} characters")
    if label.startswith('-') or label.endswith('-'):
        raise OrderValidationError("Domain names cannot start or end with a hyphen")

    if typed_tld:
        candidates = [typed_tld] + [tld for tld in candidates if tld != typed_tld]
    if not candidates:
        raise OrderValidationError("No TLDs selected for the search")

    return label, candidates


class AvailabilityOracle(ABC):
    """Batch availability and price lookup with per-TLD failure isolation"""

    def __init__(self, pricing: PricingSnapshotStore, default_tlds: Iterable[str]):
        self.pricing = pricing
        self.default_tlds = [normalize_tld(t) for t in default_tlds]

    @abstractmethod
    async def _check(self, label: str, tld: str) -> QuoteResult:
        """Quote one candidate; raise a workflow error when the provider fails"""

    async def _quote_one(self, label: str, tld: str) -> QuoteResult:
        try:
            return await self._check(label, tld)
        except OrderWorkflowError as e:
            logger.warning(f"⚠️ Availability check failed for {label}{tld}: {e.reason}")
            return QuoteResult(domain=f"{label}{tld}", tld=tld, available=False, price=None, error=e.reason)

    async def search(self, query: str, tlds: Optional[Iterable[str]] = None) -> List[QuoteResult]:
        """
        Quote every candidate TLD for a typed query

        Returns:
            One QuoteResult per candidate, in candidate order; failed TLDs carry an error

        Raises:
            OrderValidationError: the query is not a usable domain label
            TransientProviderError: every TLD failed, so availability is unknown
        """
        known = set((await self.pricing.tld_prices()).keys())
        label, candidates = parse_domain_query(query, tlds or self.default_tlds, known)

        results = list(await asyncio.gather(*(self._quote_one(label, tld) for tld in candidates)))

        failed = [r for r in results if r.error]
        if len(failed) == len(results):
            logger.error(f"❌ Availability search for '{label}' failed for every TLD")
            raise TransientProviderError(
                "Domain availability is temporarily unavailable, please try again",
                {'tlds': candidates}
            )
        if failed:
            logger.info(f"⚠️ Partial availability results for '{label}': "
                        f"{len(failed)}/{len(results)} TLDs failed")
        return results

    async def quote(self, domain_name: str, tld: str, fresh_prices: bool = False) -> QuoteResult:
        """
        Quote a single domain, raising instead of returning an error result

        With fresh_prices the TLD price list is reloaded first instead of
        being served from the cache.

        Raises:
            TransientProviderError or PermanentProviderError from the provider
        """
        if fresh_prices:
            await self.pricing.refresh_tld_prices()
        return await self._check(domain_name, normalize_tld(tld))

    async def _retail_price(self, tld: str, registrar_price: Optional[Decimal],
                            premium: bool, markup_percentage: float) -> Optional[Decimal]:
        if premium and registrar_price is not None:
            return calculate_marked_up_price(registrar_price, markup_percentage)
        listed = await self.pricing.tld_price(tld)
        if listed is not None:
            return listed
        if registrar_price is not None:
            return calculate_marked_up_price(registrar_price, markup_percentage)
        return None


class RegistrarAvailabilityOracle(AvailabilityOracle):
    """Live availability from the registrar, priced from the snapshot store"""

    def __init__(self, registrar, pricing: PricingSnapshotStore, default_tlds: Iterable[str],
                 markup_percentage: float = 15.0):
        super().__init__(pricing, default_tlds)
        self.registrar = registrar
        self.markup_percentage = markup_percentage

    async def _check(self, label: str, tld: str) -> QuoteResult:
        result = await self.registrar.check_domain(label, tld)
        price = await self._retail_price(tld, result.get('price'), result.get('premium', False),
                                         self.markup_percentage)
        if price is None:
            raise TransientProviderError(f"No price available for {tld}")
        return QuoteResult(
            domain=f"{label}{tld}",
            tld=tld,
            available=bool(result.get('available')),
            price=price,
            premium=bool(result.get('premium', False)),
        )


class StaticAvailabilityOracle(AvailabilityOracle):
    """
    Deterministic availability from a fixed table

    Every domain is available unless listed in `taken`; TLDs in
    `failing_tlds` behave like a provider outage.
    """

    def __init__(self, pricing: PricingSnapshotStore, default_tlds: Iterable[str],
                 taken: Optional[Iterable[str]] = None, failing_tlds: Optional[Iterable[str]] = None,
                 premium_prices: Optional[Dict[str, Decimal]] = None):
        super().__init__(pricing, default_tlds)
        self.taken: Set[str] = {d.lower() for d in (taken or [])}
        self.failing_tlds: Set[str] = {normalize_tld(t) for t in (failing_tlds or [])}
        self.premium_prices = {d.lower(): p for d, p in (premium_prices or {}).items()}

    def mark_taken(self, fqdn: str) -> None:
        self.taken.add(fqdn.lower())

    async def _check(self, label: str, tld: str) -> QuoteResult:
        if tld in self.failing_tlds:
            raise TransientProviderError(f"Availability lookup for {tld} is unavailable")

        fqdn = f"{label}{tld}"
        premium_price = self.premium_prices.get(fqdn)
        price = premium_price if premium_price is not None else await self.pricing.tld_price(tld)
        if price is None:
            raise TransientProviderError(f"No price available for {tld}")
        return QuoteResult(
            domain=fqdn,
            tld=tld,
            available=fqdn not in self.taken,
            price=price,
            premium=premium_price is not None,
        )
