from typing import Optional

import httpx
from loguru import logger

# Cursor value that asks the information server for a complete snapshot
FULL_SNAPSHOT_CURSOR = "zero"


class FeedError(Exception):
    """Base exception for feed fetch, parse and validation errors."""

    pass


class FeedTransportError(FeedError):
    """Exception raised when the feed could not be fetched."""

    pass


class FeedClient:
    """Fetches raw feed documents from a MeOS information server.

    No retries: a failed fetch is reported to the caller, which resyncs on its
    next scheduled cycle.
    """

    def __init__(
        self,
        host: str,
        path: str = "meos",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        base_url = host.rstrip("/")
        if "://" not in base_url:
            base_url = f"http://{base_url}"
        self.url = f"{base_url}/{path.lstrip('/')}"
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
        )

    async def fetch(self, cursor: str) -> str:
        """Fetches the raw document following ``cursor``.

        Raises:
            FeedTransportError: on connection errors, timeouts and non-2xx responses.
        """
        logger.debug(f"Fetching {self.url} with difference={cursor}")
        try:
            response = await self.client.get(self.url, params={"difference": cursor})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FeedTransportError(
                f"Feed responded with HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise FeedTransportError(f"Request to {self.url} failed: {e!r}") from e
        return response.text

    async def close(self):
        """Closes the underlying HTTP client."""
        await self.client.aclose()
        logger.info(f"Closed HTTP client for {self.url}")
