"""Sxcu upload provider.

Sxcu throttles per bucket and globally. Local denials and upstream 429s are
returned to the client immediately with rate limit headers so the client
can pace its own burst of uploads.
"""

from typing import Dict, Optional

import httpx

from relay.app.core.logging import get_log_context, get_logger
from relay.app.providers.base import BaseProvider, FormFields, FormFiles, build_multipart_parts
from relay.app.ratelimit.interpreter import UpstreamResult, decode_upstream_response
from relay.app.ratelimit.models import Provider, RetryConfig
from relay.app.services.orchestrator import RetryOrchestrator

logger = get_logger(__name__)

COLLECTIONS_ENDPOINT = "/collections/create"
FILES_ENDPOINT = "/files/create"


class SxcuProvider(BaseProvider):
    """Client for the sxcu collections and files endpoints.

    The bucket each endpoint belongs to is only revealed by a response; it is
    remembered so the next call to the same endpoint is checked against that
    bucket before going out.
    """

    provider = Provider.SXCU

    def __init__(
        self,
        base_url: str,
        orchestrator: RetryOrchestrator,
        http_client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "CatboxUploader/2.0",
        retry_config: Optional[RetryConfig] = None,
    ):
        super().__init__(base_url, orchestrator, http_client, user_agent, retry_config)
        self._known_buckets: Dict[str, str] = {}

    def known_bucket(self, endpoint: str) -> Optional[str]:
        return self._known_buckets.get(endpoint)

    async def create_collection(self, fields: FormFields, files: FormFiles = ()) -> UpstreamResult:
        """Create a collection; returns the upstream (or synthesized) result."""
        return await self._forward(COLLECTIONS_ENDPOINT, fields, files)

    async def upload_file(self, fields: FormFields, files: FormFiles = ()) -> UpstreamResult:
        """Upload one file; returns the upstream (or synthesized) result."""
        return await self._forward(FILES_ENDPOINT, fields, files)

    async def _forward(self, endpoint: str, fields: FormFields, files: FormFiles) -> UpstreamResult:
        url = self._get_endpoint_url(endpoint)
        parts = build_multipart_parts(fields, files)

        async def operation() -> UpstreamResult:
            async with self._client_context() as client:
                resp = await client.post(
                    url,
                    files=parts,
                    headers=self._build_headers(),
                )
            result = decode_upstream_response(self.provider, resp)
            if result.rate_limit.bucket:
                self._known_buckets[endpoint] = result.rate_limit.bucket
            return result

        result = await self.orchestrator.execute_with_retry(
            self.provider,
            operation,
            self.retry_config,
            bucket=self._known_buckets.get(endpoint),
        )
        if result.is_rate_limited:
            logger.info(
                f"Returning 429 for {endpoint} to the client",
                extra=get_log_context(provider=self.provider.value, bucket=result.rate_limit.bucket),
            )
        return result
