"""Environment detection utilities for production vs development"""

import os
import logging

logger = logging.getLogger(__name__)

def get_public_domain() -> str:
    """
    Get the public domain the service is reachable on

    Returns:
        str: The domain used in checkout return links and webhook URLs
    """
    domain = os.getenv('PUBLIC_DOMAIN')
    if domain:
        return domain.rstrip('/')

    port = os.getenv('WEBHOOK_PORT', os.getenv('PORT', '5000'))
    logger.warning(f"⚠️ PUBLIC_DOMAIN not set, using localhost:{port} fallback")
    return f'localhost:{port}'

def get_public_url(path: str) -> str:
    """
    Get the complete public URL for a path

    Args:
        path: Path on the public site (e.g. '/billing/success')

    Returns:
        str: Complete URL
    """
    domain = get_public_domain()
    protocol = 'http' if domain.startswith('localhost') else 'https'
    return f"{protocol}://{domain}/{path.lstrip('/')}"

def get_checkout_return_urls(invoice_id: int) -> dict:
    """Success and cancel URLs handed to the payment processor for an invoice"""
    return {
        'success_url': get_public_url(f"/billing/invoices/{invoice_id}?checkout=success"),
        'cancel_url': get_public_url(f"/billing/invoices/{invoice_id}?checkout=cancelled"),
    }
