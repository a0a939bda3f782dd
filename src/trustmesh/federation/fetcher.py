"""
Bundle Fetchers

How a trust domain pulls a peer's current bundle. Each configured peer has
its own fetcher so one slow peer never stalls the others.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Union

import httpx

from trustmesh.exceptions import FederationUnavailable
from trustmesh.identity.bundle import TrustBundle

logger = logging.getLogger(__name__)

BundleSource = Callable[[], Union[TrustBundle, Awaitable[TrustBundle]]]


class BundleFetcher(ABC):
    """Fetches the current trust bundle of one peer."""

    @abstractmethod
    async def fetch(self, timeout: float) -> TrustBundle:
        """Fetch the peer's bundle.

        Raises:
            FederationUnavailable: If the peer cannot be reached in time.
            VerificationError: If the peer answered with a malformed bundle.
        """

    async def close(self) -> None:
        """Release any resources held by the fetcher."""


class HttpBundleFetcher(BundleFetcher):
    """
    Fetches a SPIFFE-style bundle document over HTTPS.

    Args:
        endpoint_url: The peer's bundle endpoint.
        client: Optional shared ``httpx.AsyncClient``. When omitted, the
            fetcher creates and owns one.
        trust_domain: Local trust domain, sent as a request header.
    """

    def __init__(
        self,
        endpoint_url: str,
        client: Optional[httpx.AsyncClient] = None,
        trust_domain: Optional[str] = None,
    ):
        self.endpoint_url = endpoint_url
        self._owns_client = client is None
        headers = {"Accept": "application/json"}
        if trust_domain:
            headers["X-TrustMesh-Trust-Domain"] = trust_domain
        self._client = client or httpx.AsyncClient(headers=headers)

    async def fetch(self, timeout: float) -> TrustBundle:
        try:
            response = await self._client.get(self.endpoint_url, timeout=timeout)
        except httpx.TimeoutException as e:
            raise FederationUnavailable(
                f"Bundle endpoint {self.endpoint_url} timed out after {timeout}s"
            ) from e
        except httpx.HTTPError as e:
            raise FederationUnavailable(f"Bundle endpoint {self.endpoint_url} unreachable: {e}") from e

        if response.status_code != 200:
            raise FederationUnavailable(
                f"Bundle endpoint {self.endpoint_url} returned HTTP {response.status_code}"
            )
        return TrustBundle.from_json(response.text)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class InProcessFetcher(BundleFetcher):
    """Reads a peer bundle from a callable, e.g. another domain's ``export``."""

    def __init__(self, source: BundleSource):
        self._source = source

    async def fetch(self, timeout: float) -> TrustBundle:
        async def call() -> TrustBundle:
            result = self._source()
            if inspect.isawaitable(result):
                result = await result
            return result

        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise FederationUnavailable(f"In-process bundle source timed out after {timeout}s") from e
