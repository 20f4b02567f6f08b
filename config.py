"""
Runtime configuration for the order workflow

All settings come from environment variables, read once when the
configuration object is built.
"""

import os
import logging
from decimal import Decimal
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TLDS = ['.com', '.co.uk', '.org', '.net']


def _env_list(name: str, default: Optional[List[str]] = None) -> List[str]:
    raw = os.getenv(name, '')
    values = [item.strip() for item in raw.split(',') if item.strip()]
    return values or list(default or [])


class WorkflowConfig:
    """Configuration for the domain and hosting order workflow"""

    def __init__(self):
        self.test_mode = os.getenv('TEST_MODE') == '1'
        self.database_url = os.getenv('DATABASE_URL')

        # Search
        self.default_tlds = [t if t.startswith('.') else f'.{t}' for t in _env_list('DEFAULT_TLDS', DEFAULT_TLDS)]
        self.domain_markup_percentage = float(os.getenv('DOMAIN_PRICE_MARKUP_PERCENT', '15.0'))
        self.pricing_cache_ttl = int(os.getenv('PRICING_CACHE_TTL', '300'))

        # Billing
        self.currency = os.getenv('PAYMENT_CURRENCY', 'GBP').upper()
        self.invoice_due_days = int(os.getenv('INVOICE_DUE_DAYS', '14'))
        self.price_tolerance_percent = Decimal(os.getenv('PRICE_TOLERANCE_PERCENT', '1.0'))
        self.stripe_secret_key = os.getenv('STRIPE_SECRET_KEY')
        self.payment_webhook_secret = os.getenv('PAYMENT_WEBHOOK_SECRET')
        self.stripe_webhook_secret = os.getenv('STRIPE_WEBHOOK_SECRET')

        # Provider calls
        self.provider_max_attempts = int(os.getenv('PROVIDER_MAX_ATTEMPTS', '3'))
        self.provider_backoff_base = float(os.getenv('PROVIDER_BACKOFF_BASE', '2.0'))
        self.provider_timeout = float(os.getenv('PROVIDER_TIMEOUT', '12.0'))
        self.provisioning_claim_timeout = int(os.getenv('PROVISIONING_CLAIM_TIMEOUT', '900'))
        self.provisioning_sweep_interval = int(os.getenv('PROVISIONING_SWEEP_INTERVAL', '300'))

        # Registrar and hosting
        self.openprovider_username = os.getenv('OPENPROVIDER_USERNAME') or os.getenv('OPENPROVIDER_EMAIL')
        self.openprovider_password = os.getenv('OPENPROVIDER_PASSWORD')
        self.openprovider_owner_handle = os.getenv('OPENPROVIDER_OWNER_HANDLE')
        self.whm_host = os.getenv('WHM_HOST')
        self.whm_username = os.getenv('WHM_USERNAME', 'root')
        self.whm_api_token = os.getenv('WHM_API_TOKEN')

        # Notifications
        self.resend_api_key = os.getenv('RESEND_API_KEY')
        self.email_from = os.getenv('EMAIL_FROM', 'orders@localhost')
        self.admin_emails = _env_list('ADMIN_NOTIFICATION_EMAILS')

        # HTTP surface
        self.webhook_port = int(os.getenv('WEBHOOK_PORT', os.getenv('PORT', '5000')))
        self.admin_api_token = os.getenv('ADMIN_API_TOKEN')

    @property
    def registrar_configured(self) -> bool:
        return bool(self.openprovider_username and self.openprovider_password)

    @property
    def hosting_configured(self) -> bool:
        return bool(self.whm_host and self.whm_api_token)

    def log_summary(self):
        logger.info("🔧 Order workflow configuration:")
        logger.info(f"   • Registrar: {'✅ OpenProvider' if self.registrar_configured else '⚠️ static availability'}")
        logger.info(f"   • Hosting: {'✅ WHM ' + str(self.whm_host) if self.hosting_configured else '❌ NOT SET'}")
        logger.info(f"   • Payments: {'✅ Stripe' if self.stripe_secret_key else '❌ NOT SET'} ({self.currency})")
        logger.info(f"   • Payment webhooks: {'✅ signed' if self.payment_webhook_secret else '❌ NO SECRET'}, "
                    f"Stripe {'✅ signed' if self.stripe_webhook_secret else '❌ NO SECRET'}"
                    + (" (unsigned accepted in test mode)" if self.test_mode else ""))
        logger.info(f"   • Email: {'✅ Resend' if self.resend_api_key else '⚠️ log only'}")
        logger.info(f"   • Price tolerance: {self.price_tolerance_percent}%")
