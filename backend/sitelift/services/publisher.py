"""
Variant Publisher - client for the site generation service.

The site generator owns the website artifacts. This client asks it to
materialize a variant from a change prompt, promote a variant to the live
site, or delete a variant's artifacts.
"""
import httpx
import structlog
from typing import Optional, Dict

from sitelift.services.errors import VariantPublishError

logger = structlog.get_logger()


class VariantPublisher:
    """
    HTTP client for the site generation service.

    Every failure (transport error or non-2xx response) is raised as
    ``VariantPublishError`` so the optimizer can roll back cleanly.
    """

    def __init__(self, base_url: str, timeout: float = 120.0):
        """
        Args:
            base_url: URL of the site generation service
            timeout: Request timeout in seconds (variant generation is slow)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            client = await self._get_client()
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.warning("variant_publish_failed", operation=operation, url=url, error=str(e))
            raise VariantPublishError(f"{operation} failed: {e}") from e

    async def generate_variant(self, restaurant_id: str, variant_id: str, change_prompt: str) -> Dict:
        """
        Materialize a variant's site from a change prompt.

        Raises:
            VariantPublishError: If the generator fails
        """
        response = await self._request(
            "generate_variant",
            "POST",
            f"/restaurants/{restaurant_id}/variants",
            json={"variant_id": variant_id, "prompt": change_prompt}
        )
        try:
            body = response.json() if response.content else {}
        except ValueError as e:
            logger.warning("variant_publish_failed", operation="generate_variant", error="invalid JSON body")
            raise VariantPublishError(f"generate_variant returned an invalid body: {e}") from e

        logger.info("variant_generated", restaurant_id=restaurant_id, variant_id=variant_id)
        return body

    async def promote_variant(self, restaurant_id: str, variant_id: str) -> None:
        """Replace the live site with the variant's artifacts."""
        await self._request(
            "promote_variant",
            "POST",
            f"/restaurants/{restaurant_id}/variants/{variant_id}/promote"
        )
        logger.info("variant_promoted", restaurant_id=restaurant_id, variant_id=variant_id)

    async def delete_variant(self, restaurant_id: str, variant_id: str) -> None:
        """Delete a variant's artifacts. Already-deleted variants are not an error."""
        try:
            await self._request(
                "delete_variant",
                "DELETE",
                f"/restaurants/{restaurant_id}/variants/{variant_id}"
            )
        except VariantPublishError as e:
            cause = e.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code == 404:
                return
            raise
        logger.info("variant_deleted", restaurant_id=restaurant_id, variant_id=variant_id)

    async def health_check(self) -> bool:
        """Check if the site generation service is healthy."""
        try:
            client = await self._get_client()
            response = await client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False


# Singleton instance management
_publisher: Optional[VariantPublisher] = None


def get_publisher(
    base_url: str = "http://localhost:3002",
    timeout: float = 120.0
) -> VariantPublisher:
    """Get or create the global publisher so connections are reused."""
    global _publisher
    if _publisher is None:
        _publisher = VariantPublisher(base_url=base_url, timeout=timeout)
    return _publisher


async def close_publisher():
    """Close the global publisher."""
    global _publisher
    if _publisher is not None:
        await _publisher.close()
        _publisher = None
