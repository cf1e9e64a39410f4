"""Resolve Gemini grounding redirect links to the pages they point at.

Grounding chunks cite ``vertexaisearch.cloud.google.com/grounding-api-redirect``
links that are useless to end users. Each one is followed (headers only) to
its destination; when that fails or lands on a Google search page, the page
title is used to guess the site, and as a last resort the citation keeps an
``unresolved://<title>`` marker.
"""
from __future__ import annotations

import asyncio
from typing import Iterable
from urllib.parse import urlparse

import httpx
from loguru import logger

from brandpulse.config import settings
from brandpulse.services.citations import guess_url_from_title, unresolved_marker

REDIRECT_HOST = "vertexaisearch.cloud.google.com"
REDIRECT_MARKER = f"{REDIRECT_HOST}/grounding-api-redirect/"


def is_indirection_url(url: str | None) -> bool:
    return bool(url) and REDIRECT_MARKER in url


def is_search_results_page(url: str) -> bool:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if "google." not in host:
        return False
    return parsed.path.startswith("/search") or parsed.path.startswith("/url")


def title_fallback(title: str | None) -> str:
    return guess_url_from_title(title) or unresolved_marker(title)


class RedirectResolver:
    """Follows indirection links concurrently, one task per link."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        max_hops: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = float(timeout if timeout is not None else settings.redirect_timeout_seconds)
        self.max_hops = int(max_hops if max_hops is not None else settings.redirect_max_hops)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            max_redirects=self.max_hops,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def resolve(self, url: str, title: str | None = None) -> str:
        resolved = await self.resolve_many([(url, title)])
        return resolved.get(url, url)

    async def resolve_many(self, links: Iterable[tuple[str, str | None]]) -> dict[str, str]:
        """Map every indirection URL in ``links`` to its final URL or a fallback.

        Links that are not indirection URLs are returned unchanged.
        """
        pending: dict[str, str | None] = {}
        resolved: dict[str, str] = {}
        for url, title in links:
            if not url:
                continue
            if is_indirection_url(url):
                pending.setdefault(url, title)
            else:
                resolved[url] = url

        if not pending:
            return resolved

        async with self._client() as client:
            urls = list(pending)
            finals = await asyncio.gather(
                *(self._follow(client, url) for url in urls),
            )

        fallbacks = 0
        for url, final_url in zip(urls, finals):
            title = pending[url]
            if final_url and REDIRECT_HOST not in final_url and not is_search_results_page(final_url):
                resolved[url] = final_url
                continue
            fallbacks += 1
            resolved[url] = title_fallback(title)
            logger.debug(
                f"Redirect {url[:60]}... -> {final_url or 'failed'} (using {resolved[url]})"
            )

        logger.info(f"Resolved {len(urls) - fallbacks}/{len(urls)} redirect URLs ({fallbacks} via title fallback)")
        return resolved

    async def _follow(self, client: httpx.AsyncClient, url: str) -> str | None:
        """Final URL after following redirects, without reading the body."""
        try:
            return await asyncio.wait_for(self._final_url(client, url), timeout=self.timeout)
        except asyncio.TimeoutError:
            return None
        except httpx.TooManyRedirects:
            return None
        except Exception as exc:  # httpx.InvalidURL is not an HTTPError
            logger.debug(f"Redirect resolution failed for {url[:60]}...: {exc}")
            return None

    @staticmethod
    async def _final_url(client: httpx.AsyncClient, url: str) -> str:
        async with client.stream("GET", url) as response:
            return str(response.url)
