"""
OpenProvider domain registration API integration
Handles domain availability checks, ownership lookups and registration

Transport and API failures are translated into the workflow error types:
timeouts after the request was sent become ProviderTimeoutError (outcome
unknown), connection problems and 5xx/429 responses become
TransientProviderError, and refusals become PermanentProviderError.
"""

import time
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from performance_monitor import monitor_performance
from pricing_utils import parse_price
from workflow_errors import PermanentProviderError, ProviderTimeoutError, TransientProviderError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openprovider.eu"

# OpenProvider responds with this code when the domain already sits in our account
DOMAIN_ALREADY_IN_ACCOUNT_CODES = {346}


class OpenProviderService:
    """OpenProvider API client with bearer token caching"""

    _token_ttl = 3600

    def __init__(self, username: Optional[str], password: Optional[str],
                 owner_handle: Optional[str] = None, base_url: str = DEFAULT_BASE_URL,
                 timeout: float = 12.0, client: Optional[httpx.AsyncClient] = None):
        self.username = username
        self.password = password
        self.owner_handle = owner_handle
        self.base_url = base_url.rstrip('/')
        self.bearer_token: Optional[str] = None
        self._token_cache_time = 0.0
        self._timeout = httpx.Timeout(connect=3.0, read=timeout, write=6.0, pool=3.0)
        self._client = client
        self._owns_client = client is None

    @property
    def configured(self) -> bool:
        return bool(self.username and self.password)

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=30.0),
                timeout=self._timeout,
                headers={'User-Agent': 'DomainOrders/1.0'},
                follow_redirects=True,
            )
            self._owns_client = True
            logger.info("🚀 Initialized OpenProvider HTTP client")
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _is_token_valid(self) -> bool:
        if not self.bearer_token:
            return False
        return (time.time() - self._token_cache_time) < self._token_ttl

    def _cache_token(self, token: str) -> None:
        self.bearer_token = token
        self._token_cache_time = time.time()
        logger.debug("🔐 Cached authentication token")

    async def authenticate(self, force: bool = False) -> str:
        """Get a bearer token from the OpenProvider API, reusing the cached one"""
        if not self.configured:
            raise PermanentProviderError("OpenProvider credentials not configured")
        if not force and self._is_token_valid():
            return self.bearer_token  # type: ignore[return-value]

        logger.info("🔐 Authenticating with OpenProvider API...")
        data = await self._send('POST', '/v1beta/auth/login', authenticated=False,
                                json={'username': self.username, 'password': self.password})
        token = data.get('data', {}).get('token')
        if not token:
            raise TransientProviderError("OpenProvider authentication returned no token")
        self._cache_token(token)
        logger.info("✅ OpenProvider authentication successful")
        return token

    async def _send(self, method: str, path: str, authenticated: bool = True, **kwargs) -> Dict[str, Any]:
        """Issue one API request and return the decoded body, raising workflow errors"""
        client = self._ensure_client()
        headers = {'Content-Type': 'application/json'}
        if authenticated:
            headers['Authorization'] = f'Bearer {await self.authenticate()}'

        try:
            response = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.ConnectTimeout as e:
            raise TransientProviderError(f"OpenProvider connect timeout: {e}")
        except httpx.TimeoutException:
            raise ProviderTimeoutError(f"OpenProvider request timed out: {path}")
        except httpx.TransportError as e:
            raise TransientProviderError(f"OpenProvider transport error: {e}")

        if response.status_code == 401 and authenticated:
            logger.warning("🔄 OpenProvider token rejected, re-authenticating")
            self.bearer_token = None
            headers['Authorization'] = f'Bearer {await self.authenticate(force=True)}'
            try:
                response = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
            except httpx.TimeoutException:
                raise ProviderTimeoutError(f"OpenProvider request timed out: {path}")
            except httpx.TransportError as e:
                raise TransientProviderError(f"OpenProvider transport error: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(f"OpenProvider HTTP {response.status_code}",
                                         {'http_status': response.status_code})

        try:
            data = response.json()
        except ValueError:
            raise TransientProviderError(f"OpenProvider returned non-JSON response (HTTP {response.status_code})")

        if response.status_code >= 400 or data.get('code', 0) != 0:
            raise PermanentProviderError(
                f"OpenProvider error: {data.get('desc', 'Unknown API error')}",
                {'http_status': response.status_code, 'api_code': data.get('code')}
            )
        return data

    @staticmethod
    def _split(domain_name: str, tld: str) -> Dict[str, str]:
        return {'name': domain_name, 'extension': tld.lstrip('.')}

    @staticmethod
    def _extract_price(domain_info: Dict[str, Any]) -> Optional[Decimal]:
        """Reseller price from a domains/check result, falling back to product price"""
        price_data = domain_info.get('price')
        if not isinstance(price_data, dict):
            return None
        for key in ('reseller', 'product'):
            section = price_data.get(key)
            if isinstance(section, dict) and section.get('price') is not None:
                return parse_price(section['price'])
        return None

    @monitor_performance("openprovider.check_domain")
    async def check_domain(self, domain_name: str, tld: str) -> Dict[str, Any]:
        """
        Check if a domain is available for registration

        Returns:
            Dict with available, premium and price (registrar cost, may be None)
        """
        logger.info(f"🔍 Checking domain availability for: {domain_name}{tld}")
        data = await self._send('POST', '/v1beta/domains/check', json={
            'domains': [self._split(domain_name, tld)],
            'with_price': True,
        })
        results = data.get('data', {}).get('results', [])
        if not results:
            raise TransientProviderError(f"No availability result returned for {domain_name}{tld}")

        domain_info = results[0]
        result = {
            'available': domain_info.get('status') == 'free',
            'premium': bool(domain_info.get('is_premium', domain_info.get('premium', False))),
            'price': self._extract_price(domain_info),
        }
        logger.info(f"✅ Domain {domain_name}{tld} - Available: {result['available']}, "
                    f"Premium: {result['premium']}, Price: {result['price']}")
        return result

    @monitor_performance("openprovider.find_domain")
    async def find_registered_domain(self, fqdn: str) -> Optional[Dict[str, Any]]:
        """Look the domain up in our OpenProvider account; None when we do not hold it"""
        data = await self._send('GET', '/v1beta/domains', params={'full_name': fqdn, 'limit': 1})
        results = data.get('data', {}).get('results', [])
        if not results:
            return None
        domain_info = results[0]
        logger.info(f"✅ Found {fqdn} in OpenProvider account: ID={domain_info.get('id')}")
        return {
            'domain_id': domain_info.get('id'),
            'status': domain_info.get('status'),
            'reference': domain_info.get('comments'),
        }

    @monitor_performance("openprovider.register_domain")
    async def register_domain(self, domain_name: str, tld: str, years: int, reference: str) -> Dict[str, Any]:
        """
        Register a domain

        Args:
            domain_name: Second-level label
            tld: Extension with leading dot
            years: Registration period
            reference: Order idempotency token, stored with the registration

        Returns:
            Dict with domain_id, status and the stored reference
        """
        if not self.owner_handle:
            raise PermanentProviderError("OPENPROVIDER_OWNER_HANDLE is not configured")

        fqdn = f"{domain_name}{tld}"
        registration_data = {
            'domain': self._split(domain_name, tld),
            'period': years,
            'unit': 'y',
            'autorenew': 'off',
            'owner_handle': self.owner_handle,
            'admin_handle': self.owner_handle,
            'tech_handle': self.owner_handle,
            'billing_handle': self.owner_handle,
            'comments': reference,
        }
        logger.info(f"🌐 Registering {fqdn} for {years} year(s) (reference {reference[:8]}...)")

        try:
            data = await self._send('POST', '/v1beta/domains', json=registration_data)
        except PermanentProviderError as e:
            if e.details.get('api_code') in DOMAIN_ALREADY_IN_ACCOUNT_CODES:
                existing = await self.find_registered_domain(fqdn)
                if existing and existing.get('reference') == reference:
                    logger.info(f"✅ {fqdn} was already registered to our account for this order")
                    return existing
                if existing:
                    logger.warning(f"⚠️ {fqdn} is in our account under another order reference")
            raise

        domain_data = data.get('data', {})
        logger.info(f"✅ Domain registered successfully: {fqdn} (ID {domain_data.get('id')})")
        return {'domain_id': domain_data.get('id'), 'status': domain_data.get('status'), 'reference': reference}


_openprovider_service: Optional[OpenProviderService] = None

def get_openprovider_service(config) -> OpenProviderService:
    """Get the shared OpenProvider client built from configuration"""
    global _openprovider_service
    if _openprovider_service is None:
        _openprovider_service = OpenProviderService(
            username=config.openprovider_username,
            password=config.openprovider_password,
            owner_handle=config.openprovider_owner_handle,
            timeout=config.provider_timeout,
        )
    return _openprovider_service
