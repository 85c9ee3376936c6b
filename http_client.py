"""
http_client.py
==============
Shared aiohttp plumbing for the resolver, fetcher and build fallback.

  - Every request carries the fixed ``User-Agent`` header.
  - A bearer token is attached only for requests to the GitHub API host.
  - Sessions use connect/read timeouts with no overall deadline.
  - File downloads stream in 8 KiB chunks and retry on 403/429/5xx.
"""

from __future__ import annotations

import asyncio
import logging
import random
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import aiohttp

logger = logging.getLogger(__name__)

USER_AGENT = "PluginAutoUpdater/1.0"
GITHUB_API_HOST = "api.github.com"
ACCEPT_JSON = "application/vnd.github+json, application/json;q=0.9, */*;q=0.1"

RETRY_STATUSES = frozenset({403, 429})
CHUNK_SIZE = 8192


class HttpStatusError(Exception):
    """A request completed with a status the caller cannot use."""

    def __init__(self, url: str, status: int) -> None:
        super().__init__(f"HTTP {status} for {url}")
        self.url = url
        self.status = status


def requires_auth(url: str, token: Optional[str]) -> bool:
    """True when a token is configured and the URL targets the GitHub API."""
    if not token or not token.strip():
        return False
    return (urlparse(url).hostname or "").lower() == GITHUB_API_HOST


def build_headers(url: str, token: Optional[str] = None, *, accept: Optional[str] = None) -> Dict[str, str]:
    headers = {"User-Agent": USER_AGENT}
    if accept:
        headers["Accept"] = accept
    if requires_auth(url, token):
        headers["Authorization"] = f"Bearer {token.strip()}"
    return headers


def create_session(connect_timeout: float = 10, read_timeout: float = 30) -> aiohttp.ClientSession:
    """Open a session with per-phase timeouts and the fixed user-agent."""
    timeout = aiohttp.ClientTimeout(
        total=None, sock_connect=connect_timeout, sock_read=read_timeout,
    )
    return aiohttp.ClientSession(timeout=timeout, headers={"User-Agent": USER_AGENT})


def _should_retry(status: int) -> bool:
    return status in RETRY_STATUSES or 500 <= status < 600


# ──────────────────────────────────────────────
#  Requests
# ──────────────────────────────────────────────

async def fetch_json(
    session: aiohttp.ClientSession,
    url: str,
    *,
    token: Optional[str] = None,
) -> Any:
    """
    GET a JSON document.

    Raises HttpStatusError for a non-200 response. Network errors and
    malformed bodies propagate as aiohttp.ClientError / ValueError.
    """
    async with session.get(url, headers=build_headers(url, token, accept=ACCEPT_JSON)) as resp:
        if resp.status != 200:
            raise HttpStatusError(url, resp.status)
        return await resp.json(content_type=None)


async def fetch_text(
    session: aiohttp.ClientSession,
    url: str,
    *,
    token: Optional[str] = None,
) -> str:
    async with session.get(url, headers=build_headers(url, token)) as resp:
        if resp.status != 200:
            raise HttpStatusError(url, resp.status)
        return await resp.text()


async def download_file(
    session: aiohttp.ClientSession,
    url: str,
    dest: Path,
    *,
    token: Optional[str] = None,
    max_retries: int = 0,
    backoff_base: float = 0.5,
    backoff_max: float = 8.0,
) -> int:
    """
    Stream a URL to ``dest`` and return the number of bytes written.

    Redirects are followed. Statuses 403, 429 and 5xx are retried up to
    ``max_retries`` times with exponential backoff plus jitter; any other
    status of 400 or above raises HttpStatusError straight away.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    attempt = 0
    while True:
        async with session.get(url, headers=build_headers(url, token)) as resp:
            if resp.status < 400:
                written = 0
                with open(dest, "wb") as fh:
                    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                        fh.write(chunk)
                        written += len(chunk)
                logger.debug("Downloaded %d bytes from %s", written, url)
                return written

            status = resp.status

        if not _should_retry(status) or attempt >= max_retries:
            raise HttpStatusError(url, status)

        delay = min(backoff_max, backoff_base * (2 ** attempt)) + random.uniform(0, 0.25)
        attempt += 1
        logger.debug(
            "HTTP %d for %s, retry %d/%d in %.1fs",
            status, url, attempt, max_retries, delay,
        )
        await asyncio.sleep(delay)
