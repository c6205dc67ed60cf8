"""Sentry integration."""

import logging
from typing import TYPE_CHECKING

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

if TYPE_CHECKING:
    from parley.config import SentryConfig

logger = logging.getLogger(__name__)


def init_sentry(config: "SentryConfig | None", server_mode: bool = False) -> bool:
    """Initialize Sentry if a DSN is configured.

    Args:
        config: Sentry configuration, or None when the section is absent.
        server_mode: Whether running in server mode (enables FastAPI integration).

    Returns:
        True if Sentry was initialized, False otherwise.
    """
    if config is None or not config.dsn:
        logger.debug("sentry_not_configured")
        return False

    integrations = [
        AsyncioIntegration(),
        LoggingIntegration(
            level=logging.INFO,  # breadcrumbs
            event_level=logging.ERROR,
        ),
    ]

    if server_mode:
        from sentry_sdk.integrations.fastapi import FastApiIntegration

        integrations.append(FastApiIntegration())

    sentry_sdk.init(
        dsn=config.dsn.get_secret_value(),
        environment=config.environment,
        release=config.release,
        traces_sample_rate=config.traces_sample_rate,
        profiles_sample_rate=config.profiles_sample_rate,
        send_default_pii=config.send_default_pii,
        debug=config.debug,
        integrations=integrations,
    )

    logger.info("sentry_initialized", extra={"sentry.environment": config.environment})
    return True
