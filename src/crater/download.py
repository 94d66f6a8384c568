# Copyright (c) Syntropy Systems
"""HTTP downloads from the registry mirror."""
from __future__ import annotations

import logging
from types import TracebackType

import httpx
from typing_extensions import Self

from crater.errors import NetworkError

logger = logging.getLogger(__name__)


class Downloader:
    """Fetches whole files over HTTP.

    Downloads are not retried here; a failed crate is counted by the
    acquisition batch instead.
    """

    timeout: float
    _client: httpx.Client

    def __init__(self, client: httpx.Client | None = None, timeout: float = 60.0) -> None:
        """Initialize the downloader.

        Args:
            client: Preconfigured httpx client (tests pass one with a mock transport)
            timeout: Request timeout in seconds when creating our own client

        """
        self.timeout = timeout
        self._client = client if client is not None else httpx.Client(
            timeout=timeout,
            follow_redirects=True,
        )

    def download(self, url: str) -> bytes:
        """Fetch url and return the response body.

        Raises:
            NetworkError: on transport failure or a non-2xx status

        """
        logger.debug("GET %s", url)
        try:
            response = self._client.get(url)
            _ = response.raise_for_status()
        except httpx.HTTPStatusError as e:
            msg = f"unable to download {url}: HTTP {e.response.status_code}"
            raise NetworkError(msg) from e
        except httpx.RequestError as e:
            msg = f"unable to download {url}: {e}"
            raise NetworkError(msg) from e
        return response.content

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> Self:
        """Enter the downloader context and return self."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit the downloader context and close the HTTP client."""
        self.close()
