"""
Transactional email delivery through the Resend HTTP API
"""

import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from performance_monitor import monitor_performance
from workflow_errors import NotificationError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailService:
    """Resend API client"""

    def __init__(self, api_key: Optional[str], sender: str, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.sender = sender
        self._timeout = httpx.Timeout(connect=3.0, read=timeout, write=5.0, pool=5.0)
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @monitor_performance("resend.send_email")
    async def send_email(self, to: Union[str, List[str]], subject: str, html: str,
                         reply_to: Optional[str] = None) -> Optional[str]:
        """
        Send one email

        Returns:
            Resend message id, or None when email is not configured

        Raises:
            NotificationError: the API refused the message or could not be reached
        """
        recipients = [to] if isinstance(to, str) else list(to)
        if not self.configured:
            logger.warning(f"⚠️ RESEND_API_KEY not set - not sending '{subject}' to {', '.join(recipients)}")
            return None

        payload: Dict[str, Any] = {
            'from': self.sender,
            'to': recipients,
            'subject': subject,
            'html': html,
        }
        if reply_to:
            payload['reply_to'] = reply_to
        headers = {'Authorization': f'Bearer {self.api_key}'}

        try:
            if self._client is not None:
                response = await self._client.post(RESEND_API_URL, json=payload, headers=headers,
                                                   timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(RESEND_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise NotificationError(f"Email delivery failed: {e}")

        if response.status_code >= 400:
            raise NotificationError(f"Resend rejected email: HTTP {response.status_code}",
                                    {'http_status': response.status_code, 'body': response.text[:200]})

        try:
            message_id = response.json().get('id')
        except ValueError:
            message_id = None
        logger.info(f"📧 Email '{subject}' sent to {', '.join(recipients)} (id {message_id})")
        return message_id
