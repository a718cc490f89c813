"""
Tally Sync Core - Sentry Integration

Error tracking for failed sync cycles and reconciliation runs.
Reporting is active only when a DSN is configured.
"""

import os
import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    sample_rate: float = 1.0,
    tally_endpoint: Optional[str] = None,
    company: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN (from environment if not provided)
        environment: Environment name (production, staging, development)
        release: Release version
        sample_rate: Error sampling rate (0.0 to 1.0)
        tally_endpoint: Tally XML server URL, tagged on every event
        company: Tally company the worker mirrors

    Returns:
        True if Sentry was initialized, False otherwise
    """
    global _initialized

    dsn = dsn or os.environ.get("SENTRY_DSN", "")

    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release or os.environ.get("GIT_SHA", "unknown"),
            sample_rate=sample_rate,
            integrations=[
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR
                ),
            ],
            send_default_pii=False,
            before_send=filter_sensitive_data,
            ignore_errors=[
                "ConnectionResetError",
                "BrokenPipeError",
            ],
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False

    if tally_endpoint:
        sentry_sdk.set_tag("tally_endpoint", tally_endpoint)
    if company:
        sentry_sdk.set_tag("tally_company", company)

    _initialized = True
    logger.info(f"Sentry initialized for environment: {environment}")
    return True


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Redact connection strings and credentials from Sentry events.
    """
    sensitive_keys = ["password", "secret", "dsn", "database_url", "authorization"]

    def redact_dict(d: Dict[str, Any]) -> Dict[str, Any]:
        result = {}
        for key, value in d.items():
            if any(s in key.lower() for s in sensitive_keys):
                result[key] = "[REDACTED]"
            elif isinstance(value, dict):
                result[key] = redact_dict(value)
            else:
                result[key] = value
        return result

    if isinstance(event.get("extra"), dict):
        event["extra"] = redact_dict(event["extra"])

    return event


def capture_sync_failure(domain: str, error: Exception, **context) -> Optional[str]:
    """
    Report a failed sync cycle or reconciliation run.

    Args:
        domain: Sync domain or reconciliation type that failed
        error: The exception raised by the cycle
        **context: Extra diagnostic values (cursor, counts, ...)

    Returns:
        Event ID if captured, None otherwise
    """
    if not _initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("sync_domain", domain)
            for key, value in context.items():
                scope.set_extra(key, value)
            return sentry_sdk.capture_exception(error)
    except Exception as e:
        logger.error(f"Failed to capture exception to Sentry: {e}")
        return None
