"""
Provider selection from configuration.
"""

import logging

from .base import Provider
from .local import LocalProvider
from .offline import OfflineProvider
from .remote import RemoteProvider
from ..config.loader import BrokerConfig, ProviderKind

logger = logging.getLogger(__name__)


def create_provider(config: BrokerConfig) -> Provider:
    """Build the configured backend.

    A remote selection without a credential falls through to the local
    backend when an endpoint is configured, and to offline otherwise.
    """
    if config.provider == ProviderKind.REMOTE:
        if config.remote.has_credential:
            logger.info("Using remote provider (model=%s)", config.remote.model)
            return RemoteProvider(
                api_key=config.remote.api_key,
                model=config.remote.model,
                base_url=config.remote.base_url,
            )
        logger.warning("Remote provider selected but no credential configured")
        if not config.local.endpoint:
            logger.info("Using offline provider")
            return OfflineProvider()

    if config.provider in (ProviderKind.REMOTE, ProviderKind.LOCAL):
        logger.info("Using local provider at %s (model=%s)", config.local.endpoint, config.local.model)
        return LocalProvider(
            endpoint=config.local.endpoint,
            model=config.local.model,
            health_timeout=config.local.health_timeout,
        )

    logger.info("Using offline provider")
    return OfflineProvider()
