"""
Admin alerts for the order workflow

Conditions that need a human (price drift at provisioning, exhausted provider
retries, hosting failures after a domain was registered, payment conflicts,
webhook signature failures) are pushed to admin chats over Telegram.

Alerts below ALERT_MIN_SEVERITY are dropped, the same alert is sent at most
once per suppression window, and at most ALERT_MAX_PER_WINDOW alerts go out
per rate limit window.
"""

import os
import logging
import hashlib
import json
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Union
from enum import Enum

from telegram import Bot
from telegram.error import TelegramError

from message_utils import escape_html

logger = logging.getLogger(__name__)

# ====================================================================
# SEVERITIES AND CATEGORIES
# ====================================================================

class AlertSeverity(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return list(AlertSeverity).index(self)

class AlertCategory(Enum):
    ORDER_REVIEW = "order_review"
    PAYMENT_PROCESSING = "payment_processing"
    DOMAIN_REGISTRATION = "domain_registration"
    HOSTING = "hosting"
    EXTERNAL_API = "external_api"
    DATABASE = "database"
    WEBHOOK = "webhook"
    SYSTEM_HEALTH = "system_health"

SEVERITY_ICONS = {
    AlertSeverity.CRITICAL: "🔴",
    AlertSeverity.ERROR: "🟠",
    AlertSeverity.WARNING: "🟡",
    AlertSeverity.INFO: "🔵",
}

CATEGORY_ICONS = {
    AlertCategory.ORDER_REVIEW: "📋",
    AlertCategory.PAYMENT_PROCESSING: "💰",
    AlertCategory.DOMAIN_REGISTRATION: "🌐",
    AlertCategory.HOSTING: "🖥️",
    AlertCategory.EXTERNAL_API: "🔗",
    AlertCategory.DATABASE: "🗄️",
    AlertCategory.WEBHOOK: "📡",
    AlertCategory.SYSTEM_HEALTH: "🏥",
}

def alert_fingerprint(severity: AlertSeverity, category: AlertCategory, component: str, message: str) -> str:
    content = f"{severity.value}:{category.value}:{component}:{message}"
    return hashlib.sha1(content.encode()).hexdigest()

def format_alert(severity: AlertSeverity, category: AlertCategory, component: str, message: str,
                 details: Optional[Dict[str, Any]] = None) -> str:
    """Render an alert as Telegram HTML"""
    lines = [
        f"{SEVERITY_ICONS[severity]} <b>ORDER WORKFLOW ALERT - {severity.value}</b>",
        f"{CATEGORY_ICONS[category]} <b>Area:</b> {category.value.replace('_', ' ').title()}",
        f"🔧 <b>Component:</b> {escape_html(component)}",
        f"📝 {escape_html(message)}",
        f"🕐 {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}",
    ]
    for key, value in (details or {}).items():
        if isinstance(value, dict):
            value = json.dumps(value, default=str)
        lines.append(f"   • <b>{escape_html(str(key))}:</b> {escape_html(str(value))}")
    return "\n".join(lines)

# ====================================================================
# CONFIGURATION
# ====================================================================

class AdminAlertConfig:
    """Alert settings read from the environment"""

    def __init__(self):
        self.alerts_enabled = os.getenv('ADMIN_ALERTS_ENABLED', 'true').lower() == 'true'
        self.bot_token = os.getenv('ADMIN_ALERT_BOT_TOKEN') or os.getenv('TELEGRAM_BOT_TOKEN')
        self.admin_user_ids = self._parse_admin_ids(
            [os.getenv('ADMIN_USER_ID', '')] + os.getenv('ADDITIONAL_ADMIN_USER_IDS', '').split(',')
        )
        self.min_severity = AlertSeverity(os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper())
        self.rate_limit_window = int(os.getenv('ALERT_RATE_LIMIT_WINDOW', '300'))
        self.max_alerts_per_window = int(os.getenv('ALERT_MAX_PER_WINDOW', '10'))
        self.suppression_window = int(os.getenv('ALERT_SUPPRESSION_WINDOW', '3600'))

    @staticmethod
    def _parse_admin_ids(raw_ids: List[str]) -> List[int]:
        admin_ids = []
        for raw in raw_ids:
            raw = raw.strip()
            if not raw:
                continue
            try:
                admin_ids.append(int(raw))
            except ValueError:
                logger.warning(f"⚠️ Ignoring invalid admin chat id: {raw}")
        return admin_ids

# ====================================================================
# ALERT SYSTEM
# ====================================================================

class AdminAlertSystem:
    """Delivers alerts to every configured admin chat"""

    def __init__(self, config: Optional[AdminAlertConfig] = None, bot: Optional[Bot] = None):
        self.config = config or AdminAlertConfig()
        self._bot = bot
        if self._bot is None and self.config.bot_token:
            self._bot = Bot(token=self.config.bot_token)
        self._suppressed_until: Dict[str, float] = {}
        self._sent_times: Deque[float] = deque()

        logger.info(f"✅ Admin alerts: enabled={self.config.alerts_enabled}, "
                    f"admins={len(self.config.admin_user_ids)}, min_severity={self.config.min_severity.value}")

    def _prune(self, now: float):
        while self._sent_times and self._sent_times[0] <= now - self.config.rate_limit_window:
            self._sent_times.popleft()
        for fingerprint in [f for f, until in self._suppressed_until.items() if until <= now]:
            del self._suppressed_until[fingerprint]

    async def _deliver(self, text: str) -> int:
        delivered = 0
        for admin_id in self.config.admin_user_ids:
            try:
                await self._bot.send_message(chat_id=admin_id, text=text, parse_mode='HTML')
                delivered += 1
            except TelegramError as e:
                logger.error(f"❌ Failed to send admin alert to {admin_id}: {e}")
        return delivered

    async def send_alert(self, severity: Union[AlertSeverity, str], category: Union[AlertCategory, str],
                         component: str, message: str, details: Optional[Dict[str, Any]] = None) -> bool:
        """
        Send an alert to the admins

        Returns True when at least one admin received it. Never raises.
        """
        try:
            if not self.config.alerts_enabled:
                logger.debug(f"Admin alerts disabled - skipping: [{component}] {message}")
                return False

            severity = AlertSeverity(severity.upper()) if isinstance(severity, str) else severity
            category = AlertCategory(category.lower()) if isinstance(category, str) else category
            if severity.rank < self.config.min_severity.rank:
                return False

            now = time.monotonic()
            self._prune(now)
            fingerprint = alert_fingerprint(severity, category, component, message)
            if fingerprint in self._suppressed_until:
                logger.debug(f"Duplicate admin alert suppressed: [{component}] {message}")
                return False
            if len(self._sent_times) >= self.config.max_alerts_per_window:
                logger.warning(f"⚠️ Admin alerts rate limited - dropping: [{component}] {message}")
                return False

            logger.log(getattr(logging, severity.value), f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message}")

            if self._bot is None:
                logger.warning("⚠️ Telegram bot not configured for admin alerts")
                return False

            if await self._deliver(format_alert(severity, category, component, message, details)) == 0:
                return False

            self._sent_times.append(now)
            self._suppressed_until[fingerprint] = now + self.config.suppression_window
            return True

        except Exception as e:
            logger.error(f"❌ Admin alert failed: {e} - [{component}] {message}")
            return False

    def get_alert_stats(self) -> Dict[str, Any]:
        return {
            'enabled': self.config.alerts_enabled,
            'admin_count': len(self.config.admin_user_ids),
            'min_severity': self.config.min_severity.value,
            'currently_suppressed': len(self._suppressed_until),
            'sent_in_window': len(self._sent_times),
        }

# ====================================================================
# SHARED INSTANCE
# ====================================================================

_admin_alert_system = None

def get_admin_alert_system() -> AdminAlertSystem:
    global _admin_alert_system
    if _admin_alert_system is None:
        _admin_alert_system = AdminAlertSystem()
    return _admin_alert_system

def reset_admin_alert_system():
    global _admin_alert_system
    _admin_alert_system = None

async def send_critical_alert(component: str, message: str, category: str = "system_health",
                              details: Optional[Dict[str, Any]] = None) -> bool:
    return await get_admin_alert_system().send_alert(AlertSeverity.CRITICAL, category, component, message, details)

async def send_error_alert(component: str, message: str, category: str = "system_health",
                           details: Optional[Dict[str, Any]] = None) -> bool:
    return await get_admin_alert_system().send_alert(AlertSeverity.ERROR, category, component, message, details)

async def send_warning_alert(component: str, message: str, category: str = "system_health",
                             details: Optional[Dict[str, Any]] = None) -> bool:
    return await get_admin_alert_system().send_alert(AlertSeverity.WARNING, category, component, message, details)
