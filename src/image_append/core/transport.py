"""HTTP transport used for every registry request."""

import asyncio
import logging
from typing import Mapping, Optional, Protocol

import aiohttp

from ..exceptions import RegistryConnectionError
from .types import RegistryConfig, RequestResult

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Performs one HTTP request and returns the complete response."""

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        data: Optional[bytes] = None,
    ) -> RequestResult: ...

    async def close(self) -> None: ...


async def create_session(config: Optional[RegistryConfig] = None) -> aiohttp.ClientSession:
    """Create an aiohttp session configured for registry traffic."""
    config = config or RegistryConfig()
    return aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=config.timeout),
        headers={"User-Agent": config.user_agent},
    )


class AiohttpTransport:
    """Transport backed by a single ``aiohttp.ClientSession``.

    Timeouts come from :class:`RegistryConfig`; nothing above this layer
    times out or retries on its own.
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config or RegistryConfig()
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "AiohttpTransport":
        """Enter async context manager."""
        if not self.session:
            self.session = await create_session(self.config)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the session if this transport created it."""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        data: Optional[bytes] = None,
    ) -> RequestResult:
        if not self.session:
            self.session = await create_session(self.config)

        logger.debug("%s %s", method, url)
        try:
            async with self.session.request(
                method, url, headers=dict(headers or {}), data=data
            ) as resp:
                body = await resp.read()
                return RequestResult(
                    status_code=resp.status,
                    headers=dict(resp.headers),
                    data=body,
                )
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(f"{method} {url} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise RegistryConnectionError(
                f"{method} {url} timed out after {self.config.timeout}s"
            ) from e
