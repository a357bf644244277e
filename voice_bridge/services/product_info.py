"""Pricing and interface-description lookups used by the agent's tools."""

import httpx

from voice_bridge.errors import CollaboratorError
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)

PRICING_UNAVAILABLE = (
    "Unable to retrieve pricing details. Please contact sales for current pricing."
)
SCREENSHOTS_UNAVAILABLE = (
    "Unable to retrieve interface screenshots. Please visit our website for demos."
)


class ProductInfoClient:
    """Async HTTP client for the product information endpoints."""

    def __init__(
        self,
        pricing_url: str,
        screenshots_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._pricing_url = pricing_url
        self._screenshots_url = screenshots_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def get_pricing(self, property_type: str) -> dict:
        """Fetch current plans and rates.

        Raises:
            CollaboratorError: on transport errors, non-2xx responses or bad JSON.
        """
        logger.info("pricing_fetch", property_type=property_type)
        return await self._get_json(
            self._pricing_url,
            params={"property_type": property_type},
            caller_message=PRICING_UNAVAILABLE,
        )

    async def get_interface_screenshots(self, feature: str) -> dict:
        """Fetch descriptions of the interface for one feature area."""
        logger.info("screenshots_fetch", feature=feature)
        return await self._get_json(
            self._screenshots_url,
            params={"feature": feature},
            caller_message=SCREENSHOTS_UNAVAILABLE,
        )

    async def _get_json(self, url: str, params: dict, caller_message: str) -> dict:
        try:
            response = await self._client.get(url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise CollaboratorError(
                f"HTTP {e.response.status_code}: {e.response.reason_phrase}",
                caller_message=caller_message,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise CollaboratorError(str(e) or type(e).__name__, caller_message=caller_message) from e

        if not isinstance(data, dict):
            data = {"data": data}
        return data

    async def close(self) -> None:
        await self._client.aclose()
