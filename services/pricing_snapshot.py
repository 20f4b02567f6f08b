"""
Pricing snapshot store

Read-only view of the TLD price list and the hosting package catalog,
loaded from the database and cached for a short TTL. Prices can change
underneath it at any time; orders freeze their own copy at submission.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional

from models import HostingPackage
from performance_cache import SimpleCache
from pricing_utils import to_money

logger = logging.getLogger(__name__)

# Used when the domain_tld_pricing table is empty
FALLBACK_TLD_PRICES = {
    '.com': Decimal('12.99'),
    '.co.uk': Decimal('9.99'),
    '.org': Decimal('14.99'),
    '.net': Decimal('13.99'),
}

TLD_PRICES_KEY = 'tld_prices'
HOSTING_PACKAGES_KEY = 'hosting_packages'


def normalize_tld(tld: str) -> str:
    tld = tld.strip().lower()
    return tld if tld.startswith('.') else f'.{tld}'


class PricingSnapshotStore:
    """TTL-cached TLD prices and hosting packages"""

    def __init__(self,
                 tld_loader: Callable[[], Awaitable[Dict[str, Decimal]]],
                 package_loader: Callable[[], Awaitable[Dict[int, HostingPackage]]],
                 ttl_seconds: int = 300,
                 cache: Optional[SimpleCache] = None):
        self._tld_loader = tld_loader
        self._package_loader = package_loader
        self._ttl = ttl_seconds
        self._cache = cache or SimpleCache(default_ttl=ttl_seconds)
        self._lock = asyncio.Lock()

    @classmethod
    def from_store(cls, store, ttl_seconds: int = 300) -> 'PricingSnapshotStore':
        return cls(store.load_tld_prices, store.load_hosting_packages, ttl_seconds)

    async def tld_prices(self) -> Dict[str, Decimal]:
        prices = self._cache.get(TLD_PRICES_KEY)
        if prices is not None:
            return prices

        async with self._lock:
            prices = self._cache.get(TLD_PRICES_KEY)
            if prices is None:
                loaded = await self._tld_loader()
                prices = {normalize_tld(tld): to_money(price) for tld, price in loaded.items()}
                if not prices:
                    logger.warning("⚠️ TLD price list is empty, using built-in fallback prices")
                    prices = dict(FALLBACK_TLD_PRICES)
                self._cache.set(TLD_PRICES_KEY, prices, self._ttl)
                logger.debug(f"💾 Cached {len(prices)} TLD prices")
        return prices

    async def refresh_tld_prices(self) -> Dict[str, Decimal]:
        """Drop the cached TLD price list and load it again"""
        self._cache.delete(TLD_PRICES_KEY)
        return await self.tld_prices()

    async def tld_price(self, tld: str) -> Optional[Decimal]:
        """Retail price per year for a TLD, None if the TLD is not in the price list"""
        return (await self.tld_prices()).get(normalize_tld(tld))

    async def hosting_packages(self) -> Dict[int, HostingPackage]:
        packages = self._cache.get(HOSTING_PACKAGES_KEY)
        if packages is not None:
            return packages

        async with self._lock:
            packages = self._cache.get(HOSTING_PACKAGES_KEY)
            if packages is None:
                packages = await self._package_loader()
                self._cache.set(HOSTING_PACKAGES_KEY, packages, self._ttl)
                logger.debug(f"💾 Cached {len(packages)} hosting packages")
        return packages

    async def hosting_package(self, package_id: int) -> Optional[HostingPackage]:
        return (await self.hosting_packages()).get(package_id)

    def invalidate(self) -> None:
        self._cache.clear()
        logger.info("🗑️ Pricing snapshot cache cleared")
