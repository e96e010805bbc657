"""
Upstream completion service client for Gateway.
"""

from typing import Any, Dict, Optional

import httpx

from shared.errors import ConfigurationError
from shared.logging import get_logger


COMPLETIONS_PATH = "/v1/chat/completions"


def response_json(response: httpx.Response) -> Any:
    """Decoded body, or ``{}`` when the upstream did not answer with JSON."""
    try:
        return response.json()
    except ValueError:
        return {}


class UpstreamClient:
    """Client for the OpenAI-compatible chat completions endpoint."""

    def __init__(self, base_url: str, api_key: Optional[str], timeout: float = 60.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.logger = get_logger("gateway.upstream_client")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def complete(self, payload: Dict[str, Any]) -> httpx.Response:
        """POST one completion request; the response is returned whatever its status."""
        if not self.configured:
            raise ConfigurationError(
                "Upstream not configured.",
                details={"missing": "GATEWAY_UPSTREAM_API_KEY"},
            )

        response = await self._client.post(
            f"{self.base_url}{COMPLETIONS_PATH}",
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

        if response.status_code >= 400:
            self.logger.warning(
                "Upstream returned error status",
                status_code=response.status_code,
            )
        return response

    async def close(self):
        await self._client.aclose()
