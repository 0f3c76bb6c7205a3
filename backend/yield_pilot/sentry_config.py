"""
Sentry Error Monitoring Configuration
Error tracking for the Yield Pilot agent and the paid APY server
"""
import logging
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from yield_pilot import __version__

logger = logging.getLogger("Sentry")

SENSITIVE_KEYS = ['private_key', 'signature', 'password', 'api_key', 'secret', 'mnemonic', 'seed', 'x-payment']


def filter_sensitive_data(event, hint):
    """Remove keys and payment proofs from Sentry events."""
    # Filter request body
    if 'request' in event and 'data' in event['request']:
        data = event['request']['data']
        if isinstance(data, dict):
            for key in list(data):
                if key.lower() in SENSITIVE_KEYS:
                    data[key] = '[FILTERED]'

    # Payment proofs travel in headers
    if 'request' in event and isinstance(event['request'].get('headers'), dict):
        headers = event['request']['headers']
        for key in list(headers):
            if key.lower() in ('x-payment', 'authorization'):
                headers[key] = '[FILTERED]'

    # Filter exception values that might contain keys
    if 'exception' in event and 'values' in event['exception']:
        for exc in event['exception']['values']:
            if 'value' in exc:
                for key in SENSITIVE_KEYS:
                    if key in exc['value'].lower():
                        exc['value'] = '[FILTERED - sensitive data]'
                        break

    return event


def init_sentry(dsn: str = None, environment: str = "development", component: str = "agent") -> bool:
    """Initialize Sentry. Returns False when no DSN is configured."""
    if not dsn:
        logger.info("[Sentry] No SENTRY_DSN found - error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,

        traces_sample_rate=0.2,

        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR
            ),
        ],

        before_send=filter_sensitive_data,
        send_default_pii=False,

        release=f"yield-pilot@{__version__}",
    )
    sentry_sdk.set_tag("component", component)

    logger.info(f"[Sentry] ✓ Initialized for {environment} ({component})")
    return True


def capture_cycle_breadcrumb(stage: str, details: dict = None):
    """Add breadcrumb for a reconciliation stage."""
    sentry_sdk.add_breadcrumb(
        category="reconciliation",
        message=stage,
        level="info",
        data=details or {}
    )


def capture_payment_breadcrumb(action: str, details: dict = None):
    """Add breadcrumb for x402 payments."""
    sentry_sdk.add_breadcrumb(
        category="payment",
        message=action,
        level="info",
        data=details or {}
    )
