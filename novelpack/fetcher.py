"""Network access to the fiction platforms.

``RemoteFetcher`` issues one HTTP request per logical resource with
``httpx`` and hands the body to the pure parsers in ``extractor``.
Retrying is delegated to ``retry.retry_async`` with one policy per kind
of request:

* work detail: 3 attempts, ``attempt * 2s`` between them; exhausting
  the attempts or hitting a terminal condition yields a degraded stub
  instead of an exception;
* listing pages: 3 attempts with linear backoff, errors are raised;
* unit content: 3 attempts with a short 12 second timeout, timeouts are
  retried after half a second and other failures back off linearly;
  errors are raised to the coordinator.

A client is created per request, so the fetcher holds no connection
state. Tests pass an ``httpx.MockTransport`` and a
recording ``sleep`` function.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from . import config
from .errors import FetchError, PackagingAssetError, TerminalFetchError, TransientFetchError, WorkParseError
from .extractor import DETAIL_PARSERS, is_login_wall, parse_unit_content, parse_unit_listing
from .models import Platform, Unit, UnitContent, Work
from .retry import RetryPolicy, linear_backoff, retry_async, timeout_aware_backoff

logger = logging.getLogger(__name__)

DETAIL_POLICY = RetryPolicy(max_attempts=3, backoff=linear_backoff(2.0))
LISTING_POLICY = RetryPolicy(max_attempts=3, backoff=linear_backoff(1.0))
UNIT_POLICY = RetryPolicy(max_attempts=3, backoff=timeout_aware_backoff(0.5, 1.0))


def validate_id(value: str, what: str = "work") -> str:
    """Return ``value`` stripped, or raise ``TerminalFetchError``."""
    cleaned = (value or "").strip() if isinstance(value, str) else ""
    if not cleaned or not cleaned.isdigit():
        raise TerminalFetchError(f"Invalid {what} id: {value!r}")
    return cleaned


def degraded_work(platform: Platform, work_id: str, note: str, base_url: str = "") -> Work:
    """Build the minimal ``Work`` returned when the detail page is unusable."""
    return Work(
        platform=platform,
        work_id=work_id,
        title=f"Work {work_id}",
        full_title=f"Work {work_id}",
        author="Unknown",
        description=f"Failed to fetch details: {note}",
        detail_url=f"{base_url}/books/{work_id}" if base_url else "",
        error=note,
    )


class RemoteFetcher:
    """Fetch work details, listing pages, unit bodies and images."""

    def __init__(
        self,
        platform: Platform = Platform.PO18,
        cookie: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.platform = Platform(platform)
        self.base_url = config.BASE_URLS[self.platform.value]
        # Session cookies copied from a browser often carry stray newlines.
        self.cookie = " ".join(cookie.split()) if cookie else None
        self._transport = transport
        self._sleep = sleep

    def _headers(self, referer: Optional[str] = None, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = dict(config.DEFAULT_HEADERS)
        headers["Referer"] = referer or f"{self.base_url}/"
        if self.cookie:
            headers["Cookie"] = self.cookie
        if extra:
            headers.update(extra)
        return headers

    async def _get(self, url: str, *, timeout: float, referer: Optional[str] = None,
                   extra_headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        """GET ``url`` and translate httpx failures into fetch errors.

        A malformed URL is terminal; every other ``httpx.HTTPError``
        (connection, redirect loop, decoding) is transient, as is any
        status of 500 or above. Lower error statuses are returned so each caller can decide what
        they mean for its resource.
        """
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=timeout,
                                         follow_redirects=True) as client:
                response = await client.get(url, headers=self._headers(referer, extra_headers))
        except httpx.TimeoutException as exc:
            raise TransientFetchError(f"Timed out fetching {url}", timeout=True) from exc
        except httpx.InvalidURL as exc:
            raise TerminalFetchError(f"Invalid URL {url!r}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"Request to {url} failed: {exc}") from exc
        if response.status_code >= 500:
            raise TransientFetchError(f"HTTP {response.status_code} from {url}")
        return response

    # -- work detail ---------------------------------------------------

    async def _fetch_work_detail_once(self, work_id: str) -> Work:
        url = f"{self.base_url}/books/{work_id}"
        response = await self._get(url, timeout=config.DETAIL_TIMEOUT)
        if response.status_code == 404:
            raise TerminalFetchError(f"Work {work_id} does not exist (404)")
        if response.status_code >= 400:
            raise TransientFetchError(f"HTTP {response.status_code} from {url}")
        html_doc = response.text
        if is_login_wall(html_doc):
            raise TerminalFetchError("Login required to view this work")
        work = DETAIL_PARSERS[self.platform](html_doc, work_id)
        if not work.title or not work.author:
            raise WorkParseError(f"Could not parse title/author of work {work_id}")
        work.detail_url = url
        return work

    async def fetch_work_detail(self, work_id: str) -> Work:
        """Return the work's metadata, or a degraded stub.

        Never raises: the stub's ``error`` attribute carries the reason.
        """
        try:
            work_id = validate_id(work_id)
            work = await retry_async(DETAIL_POLICY, self._fetch_work_detail_once, work_id,
                                     sleep=self._sleep, label=f"work detail {work_id}")
        except FetchError as exc:
            logger.warning("Returning degraded work %s: %s", work_id, exc)
            return degraded_work(self.platform, str(work_id), str(exc), self.base_url)
        logger.info("Fetched work %s: %s by %s (%d units)", work_id, work.title, work.author, work.unit_count)
        return work

    # -- listing -------------------------------------------------------

    async def _fetch_listing_page_once(self, work_id: str, page: int) -> List[Unit]:
        url = f"{self.base_url}/books/{work_id}/articles?page={page}"
        response = await self._get(url, timeout=config.LISTING_TIMEOUT,
                                   referer=f"{self.base_url}/books/{work_id}")
        if response.status_code == 404:
            raise TerminalFetchError(f"Listing page {page} of work {work_id} does not exist")
        if response.status_code != 200:
            raise TransientFetchError(f"HTTP {response.status_code} from {url}")
        if is_login_wall(response.text):
            raise TerminalFetchError("Login required to view the unit listing")
        return parse_unit_listing(response.text, work_id, page)

    async def fetch_unit_listing_page(self, work_id: str, page: int) -> List[Unit]:
        work_id = validate_id(work_id)
        units = await retry_async(LISTING_POLICY, self._fetch_listing_page_once, work_id, page,
                                  sleep=self._sleep, label=f"listing {work_id} page {page}")
        logger.debug("Listing page %d of work %s has %d units", page, work_id, len(units))
        return units

    # -- unit content --------------------------------------------------

    async def _fetch_unit_content_once(self, work_id: str, unit_id: str) -> UnitContent:
        url = f"{self.base_url}/books/{work_id}/articlescontent/{unit_id}"
        response = await self._get(
            url,
            timeout=config.UNIT_TIMEOUT,
            referer=f"{self.base_url}/books/{work_id}/articles/{unit_id}",
            extra_headers={"X-Requested-With": "XMLHttpRequest"},
        )
        if response.status_code != 200:
            raise TransientFetchError(f"HTTP {response.status_code} from {url}")
        return parse_unit_content(response.text)

    async def fetch_unit_content(self, work_id: str, unit_id: str) -> UnitContent:
        """Return one unit's body; raises once every attempt failed."""
        return await retry_async(UNIT_POLICY, self._fetch_unit_content_once, work_id, unit_id,
                                 sleep=self._sleep, label=f"unit {work_id}/{unit_id}")

    # -- images --------------------------------------------------------

    async def fetch_image(self, url: str) -> bytes:
        """Download one embedded image, raising ``PackagingAssetError``."""
        try:
            response = await self._get(url, timeout=config.IMAGE_TIMEOUT)
        except FetchError as exc:
            raise PackagingAssetError(str(exc)) from exc
        if response.status_code != 200:
            raise PackagingAssetError(f"HTTP {response.status_code} from {url}")
        return response.content
