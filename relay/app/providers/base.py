from abc import ABC
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from relay.app.core.http_client import create_http_client
from relay.app.ratelimit.models import Provider, RetryConfig
from relay.app.services.orchestrator import RetryOrchestrator

# (filename, content, content_type) as accepted by httpx multipart uploads
FormFile = Tuple[str, bytes, str]
FormFields = Sequence[Tuple[str, str]]
FormFiles = Sequence[Tuple[str, FormFile]]


def build_form_data(fields: FormFields) -> Dict[str, Union[str, List[str]]]:
    """Group repeated form fields the way httpx expects them."""
    data: Dict[str, Union[str, List[str]]] = {}
    for key, value in fields:
        existing = data.get(key)
        if existing is None:
            data[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            data[key] = [existing, value]
    return data


def build_multipart_parts(fields: FormFields, files: FormFiles = ()) -> List[Tuple[str, tuple]]:
    """Flatten text fields and file parts into one multipart body.

    Text fields become parts without a filename, so the request stays
    multipart even when no file is attached.
    """
    parts: List[Tuple[str, tuple]] = [(key, (None, value)) for key, value in fields]
    parts.extend(files)
    return parts


class BaseProvider(ABC):
    """Base class for upstream upload providers.

    Subclasses can accept an external httpx.AsyncClient for connection pooling,
    or create their own per request if not provided. Every upstream attempt
    runs through the shared RetryOrchestrator.
    """

    provider: Provider

    def __init__(
        self,
        base_url: str,
        orchestrator: RetryOrchestrator,
        http_client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "CatboxUploader/2.0",
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 120.0,
    ):
        """Initialize the provider.

        Args:
            base_url: The API base URL
            orchestrator: Rate limit aware retry loop
            http_client: Optional shared HTTP client for connection pooling
            user_agent: User-Agent sent upstream
            retry_config: Retry parameters (defaults to settings)
            timeout: Request timeout in seconds for per-request clients
        """
        self._http_client = http_client
        self.base_url = base_url.rstrip('/')
        self.orchestrator = orchestrator
        self.user_agent = user_agent
        self.retry_config = retry_config or RetryConfig.from_settings()
        self.timeout = timeout

    @property
    def http_client(self) -> Optional[httpx.AsyncClient]:
        """Get the HTTP client, if one was provided."""
        return self._http_client

    def _build_headers(self) -> Dict[str, str]:
        return {"User-Agent": self.user_agent}

    @asynccontextmanager
    async def _client_context(self) -> AsyncGenerator[httpx.AsyncClient, None]:
        """Yield the shared client, or a per-request client that is closed after use."""
        if self._http_client is not None:
            yield self._http_client
            return
        client = create_http_client(timeout=self.timeout)
        try:
            yield client
        finally:
            await client.aclose()

    def _get_endpoint_url(self, endpoint: str) -> str:
        """Build full URL for an API endpoint."""
        if not endpoint:
            return self.base_url
        return f"{self.base_url}{endpoint}"
