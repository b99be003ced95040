"""Provider registry.

Builds the three provider clients around one shared RetryOrchestrator, so
every upload in the process is paced against the same RateLimitStore.
"""

from typing import Optional

import httpx

from relay.app.core.config import settings
from relay.app.core.logging import get_logger
from relay.app.providers.catbox import CatboxProvider
from relay.app.providers.imgchest import ImgchestProvider
from relay.app.providers.sxcu import SxcuProvider
from relay.app.ratelimit.models import RetryConfig
from relay.app.ratelimit.store import RateLimitStore
from relay.app.services.orchestrator import RetryOrchestrator

logger = get_logger(__name__)


class ProviderRegistry:
    """Holds the configured provider clients.

    Usage:
        registry = ProviderRegistry(store, http_client=client)
        result = await registry.sxcu.upload_file(fields, files)
    """

    def __init__(
        self,
        store: RateLimitStore,
        http_client: Optional[httpx.AsyncClient] = None,
        orchestrator: Optional[RetryOrchestrator] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator or RetryOrchestrator(store)
        retry_config = retry_config or RetryConfig.from_settings()

        self.catbox = CatboxProvider(
            settings.catbox_api_url,
            self.orchestrator,
            http_client=http_client,
            user_agent=settings.upstream_user_agent,
            retry_config=retry_config,
        )
        self.sxcu = SxcuProvider(
            settings.sxcu_api_base_url,
            self.orchestrator,
            http_client=http_client,
            user_agent=settings.upstream_user_agent,
            retry_config=retry_config,
        )
        self.imgchest = ImgchestProvider(
            settings.imgchest_api_base_url,
            self.orchestrator,
            http_client=http_client,
            user_agent=settings.upstream_user_agent,
            retry_config=retry_config,
            default_token=settings.imgchest_api_token,
            max_images_per_request=settings.imgchest_max_images_per_request,
        )


# Global registry instance
_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    """Get or create the application's provider registry.

    Uses the shared HTTP client when the application lifespan is active.
    """
    global _registry
    if _registry is None:
        from relay.app.core.http_client import get_http_client
        from relay.app.ratelimit.store import get_store

        try:
            client: Optional[httpx.AsyncClient] = get_http_client()
        except RuntimeError:
            logger.warning("Shared HTTP client not initialized; providers will use per-request clients")
            client = None
        _registry = ProviderRegistry(get_store(), http_client=client)
    return _registry


def reset_provider_registry() -> None:
    """Reset the global registry.

    This is useful for testing or when configuration changes.
    """
    global _registry
    _registry = None
