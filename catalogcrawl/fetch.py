"""
HTTP page fetching over a shared aiohttp session.

Every failure leaves this module as a ``FetchError`` carrying the status code
(if any), whether a response was received at all, and the ``Retry-After``
hint, so callers can classify it without parsing messages.
"""

from __future__ import annotations

import asyncio
import logging
from http import HTTPStatus
from typing import Optional, Protocol

import aiohttp

from .errors import FetchError

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    async def fetch_page(self, url: str) -> str: ...


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a ``Retry-After`` header; HTTP-date values are ignored."""
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def build_session(
    user_agent: str,
    timeout_sec: float = 10.0,
    pool_size: int = 50,
) -> aiohttp.ClientSession:
    """ClientSession with keep-alive pooling and DNS caching."""
    connector = aiohttp.TCPConnector(
        limit=max(10, pool_size),
        ttl_dns_cache=300,
        use_dns_cache=True,
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=max(1, timeout_sec * 2)),
        headers={
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        },
    )


class PageFetcher:
    """
    Fetches documents as text.

    Args:
        session: Shared ClientSession (the caller owns its lifecycle)
        timeout_sec: Per-request timeout
    """

    def __init__(self, session: aiohttp.ClientSession, timeout_sec: float = 10.0):
        self.session = session
        self.timeout_sec = timeout_sec

    async def fetch_page(self, url: str) -> str:
        try:
            async with self.session.get(
                url, timeout=aiohttp.ClientTimeout(total=self.timeout_sec)
            ) as response:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))

                if response.status == 200:
                    return await response.text()

                try:
                    status_name = HTTPStatus(response.status).phrase
                except ValueError:
                    status_name = "Unknown"
                raise FetchError(
                    f"HTTP {response.status}: {status_name}",
                    status=response.status,
                    retry_after=retry_after,
                )

        except FetchError:
            raise
        except asyncio.TimeoutError as e:
            raise FetchError(f"Request timeout after {self.timeout_sec:.0f}s", no_response=True) from e
        except aiohttp.ClientResponseError as e:
            raise FetchError(f"HTTP {e.status}: {e.message}", status=e.status) from e
        except aiohttp.ClientError as e:
            raise FetchError(f"Connection Error: {e}", no_response=True) from e
