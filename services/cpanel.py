"""
cPanel/WHM hosting integration service
Handles hosting account creation for provisioned orders

Usernames are derived deterministically from the domain so a repeated
create for the same domain finds the existing account instead of making a
second one.
"""

import hashlib
import logging
import secrets
import string
from typing import Any, Dict, Optional

import httpx

from performance_monitor import monitor_performance
from workflow_errors import PermanentProviderError, ProviderTimeoutError, TransientProviderError

logger = logging.getLogger(__name__)


class CPanelService:
    """cPanel/WHM API service for hosting management"""

    def __init__(self, whm_host: Optional[str], whm_username: str, whm_api_token: Optional[str],
                 timeout: float = 12.0, client: Optional[httpx.AsyncClient] = None):
        self.whm_host = whm_host
        self.whm_username = whm_username
        self.whm_api_token = whm_api_token
        self._timeout = httpx.Timeout(connect=3.0, read=timeout, write=5.0, pool=10.0)
        self._client = client

        logger.info("🔧 cPanel Service initialized:")
        logger.info(f"   • WHM Host: {self.whm_host or '❌ NOT SET'}")
        logger.info(f"   • API Token: {'✅ SET' if self.whm_api_token else '❌ NOT SET'}")

    @property
    def configured(self) -> bool:
        return bool(self.whm_host and self.whm_api_token)

    def generate_username(self, domain: str) -> str:
        """
        Generate a deterministic cPanel username from domain

        Two leading alphanumerics of the label plus six hex chars of the
        domain hash, limited to cPanel's 8 character maximum.
        """
        prefix = ''.join(c for c in domain.split('.')[0][:2] if c.isalnum()) or 'u'
        suffix = hashlib.sha256(domain.lower().encode()).hexdigest()[:6]
        return f"{prefix}{suffix}".lower()[:8]

    def generate_password(self, length: int = 16) -> str:
        characters = string.ascii_letters + string.digits + "!@#$%^&*"
        return ''.join(secrets.choice(characters) for _ in range(length))

    async def _call(self, function: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Call a WHM json-api function and return the decoded response"""
        if not self.configured:
            raise PermanentProviderError("WHM credentials not configured")

        url = f"https://{self.whm_host}:2087/json-api/{function}"
        headers = {'Authorization': f'WHM {self.whm_username}:{self.whm_api_token}'}
        data = {'api.version': '1', **params}

        try:
            if self._client is not None:
                response = await self._client.post(url, data=data, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(verify=True, timeout=self._timeout) as client:
                    response = await client.post(url, data=data, headers=headers)
        except httpx.ConnectTimeout as e:
            raise TransientProviderError(f"WHM connect timeout: {e}")
        except httpx.TimeoutException:
            raise ProviderTimeoutError(f"WHM {function} timed out")
        except httpx.TransportError as e:
            raise TransientProviderError(f"WHM transport error: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(f"WHM HTTP {response.status_code}")
        if response.status_code != 200:
            raise PermanentProviderError(f"WHM {function} rejected: HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError:
            raise TransientProviderError(f"WHM {function} returned non-JSON response")

    @staticmethod
    def _result_ok(data: Dict[str, Any]) -> bool:
        return data.get('metadata', {}).get('result', data.get('result', 0)) == 1

    @monitor_performance("whm.accountsummary")
    async def find_account(self, domain: str) -> Optional[Dict[str, Any]]:
        """Existing account for the domain's deterministic username, if it belongs to that domain"""
        username = self.generate_username(domain)
        data = await self._call('accountsummary', {'user': username})
        if not self._result_ok(data):
            return None

        accounts = data.get('data', {}).get('acct', [])
        if not accounts:
            return None

        account = accounts[0]
        existing_domain = account.get('domain', '')
        if existing_domain.lower() != domain.lower():
            logger.warning(f"⚠️ USERNAME COLLISION: {username} exists for domain {existing_domain}, not {domain}")
            raise PermanentProviderError(f"cPanel username {username} is taken by another domain")

        logger.info(f"✅ Found existing cPanel account {username} for domain {domain}")
        return {
            'username': username,
            'domain': existing_domain,
            'server_ip': account.get('ip'),
            'existing': True,
        }

    @monitor_performance("whm.createacct")
    async def create_hosting_account(self, domain: str, plan: str, email: str) -> Dict[str, Any]:
        """Create a cPanel hosting account, returning the existing one if already created"""
        existing_account = await self.find_account(domain)
        if existing_account:
            return existing_account

        username = self.generate_username(domain)
        data = await self._call('createacct', {
            'username': username,
            'domain': domain,
            'password': self.generate_password(),
            'contactemail': email,
            'plan': plan,
            'featurelist': 'default',
        })

        if not self._result_ok(data):
            reason = data.get('metadata', {}).get('reason', 'Unknown error')
            logger.error(f"❌ cPanel account creation failed for {username}@{domain}: {reason}")
            raise PermanentProviderError(f"WHM createacct failed: {reason}")

        server_ip = data.get('data', {}).get('ip', data.get('metadata', {}).get('ip'))
        logger.info(f"✅ cPanel account created: {username}@{domain}")
        return {
            'username': username,
            'domain': domain,
            'server_ip': server_ip,
            'existing': False,
        }


_cpanel_service: Optional[CPanelService] = None

def get_cpanel_service(config) -> CPanelService:
    global _cpanel_service
    if _cpanel_service is None:
        _cpanel_service = CPanelService(
            whm_host=config.whm_host,
            whm_username=config.whm_username,
            whm_api_token=config.whm_api_token,
            timeout=config.provider_timeout,
        )
    return _cpanel_service
