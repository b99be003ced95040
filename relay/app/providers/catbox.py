"""Catbox upload provider.

Catbox publishes no rate limit headers, so nothing is tracked; throttles and
transient errors are retried with plain exponential backoff.
"""

from typing import Optional

import httpx

from relay.app.exceptions import InvalidUploadError
from relay.app.providers.base import BaseProvider, FormFields, FormFiles, build_multipart_parts
from relay.app.ratelimit.interpreter import UpstreamResult, decode_upstream_response
from relay.app.ratelimit.models import Provider, RetryConfig
from relay.app.services.orchestrator import RetryOrchestrator

VALID_REQUEST_TYPES = ("fileupload", "urlupload", "createalbum")


class CatboxProvider(BaseProvider):
    """Passthrough to the catbox user API with bounded retry."""

    provider = Provider.CATBOX

    def __init__(
        self,
        api_url: str,
        orchestrator: RetryOrchestrator,
        http_client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "CatboxUploader/2.0",
        retry_config: Optional[RetryConfig] = None,
    ):
        super().__init__(api_url, orchestrator, http_client, user_agent, retry_config)

    async def upload(self, fields: FormFields, files: FormFiles = ()) -> UpstreamResult:
        """Forward one catbox API call.

        Args:
            fields: Form fields; must include a valid ``reqtype``
            files: Multipart file parts, forwarded as-is

        Returns:
            The first upstream result that is not a 429

        Raises:
            InvalidUploadError: If reqtype is missing or unknown
            RetriesExhaustedError: If catbox kept throttling
        """
        reqtype = next((value for key, value in fields if key == "reqtype"), None)
        if reqtype not in VALID_REQUEST_TYPES:
            raise InvalidUploadError("Unknown request type")

        url = self._get_endpoint_url("")
        parts = build_multipart_parts(fields, files)

        async def operation() -> UpstreamResult:
            async with self._client_context() as client:
                resp = await client.post(
                    url,
                    files=parts,
                    headers=self._build_headers(),
                )
            return decode_upstream_response(self.provider, resp)

        return await self.orchestrator.execute_with_retry(
            self.provider, operation, self.retry_config
        )
