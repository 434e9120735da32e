"""Listing retrieval and bounded-concurrency unit acquisition.

``fetch_unit_listing`` fetches every page of a work's unit index at
once and renumbers the merged result. ``acquire_units`` resolves each
unit through the cache or the fetcher with a fixed pool of workers and
reports progress after every unit.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Callable, List, Optional, Protocol

from .errors import CacheError
from .models import AcquiredUnit, CacheEntry, Unit, UnitContent, UnitOutcome

logger = logging.getLogger(__name__)

NOT_SUBSCRIBED_TEXT = "Not subscribed"
NOT_SUBSCRIBED_MARKUP = "<p>Not subscribed</p>"
FAILED_TEXT = "Download failed"
FAILED_MARKUP = "<p>Download failed</p>"

ProgressCallback = Callable[[int, int], None]


class UnitSource(Protocol):
    async def fetch_unit_listing_page(self, work_id: str, page: int) -> List[Unit]: ...

    async def fetch_unit_content(self, work_id: str, unit_id: str) -> UnitContent: ...


class UnitStore(Protocol):
    def get(self, work_id: str, unit_id: str) -> Optional[CacheEntry]: ...

    def put(self, entry: CacheEntry) -> None: ...


def page_count(unit_count: int, page_size: int) -> int:
    return max(1, math.ceil(unit_count / page_size))


async def fetch_unit_listing(fetcher: UnitSource, work_id: str, unit_count: int,
                             page_size: int = 100) -> List[Unit]:
    """Fetch all listing pages concurrently and return one ordered list.

    Pages are merged in page order whatever order their responses
    arrive in, and units are renumbered ``0..N-1``. Any page failure
    propagates: a partial listing would silently drop units.
    """
    pages = page_count(unit_count, page_size)
    results = await asyncio.gather(
        *(fetcher.fetch_unit_listing_page(work_id, page) for page in range(1, pages + 1))
    )
    units: List[Unit] = []
    for page_units in results:
        for unit in page_units:
            unit.index = len(units)
            units.append(unit)
    logger.info("Work %s: %d units across %d listing pages", work_id, len(units), pages)
    return units


def _from_content(unit: Unit, content: UnitContent, outcome: UnitOutcome) -> AcquiredUnit:
    return AcquiredUnit(
        index=unit.index,
        unit_id=unit.unit_id,
        title=content.title or unit.title,
        markup=content.markup,
        text=content.text,
        outcome=outcome,
    )


async def acquire_unit(unit: Unit, fetcher: UnitSource, cache: Optional[UnitStore]) -> AcquiredUnit:
    """Resolve one unit. Never raises for fetch or cache problems.

    Units the user is not entitled to get the not-subscribed sentinel
    without any lookup. Otherwise the cache is consulted first and a
    miss is fetched and written back.
    """
    if not unit.is_entitled:
        return AcquiredUnit(
            index=unit.index,
            unit_id=unit.unit_id,
            title=unit.title,
            markup=NOT_SUBSCRIBED_MARKUP,
            text=NOT_SUBSCRIBED_TEXT,
            outcome=UnitOutcome.NOT_SUBSCRIBED,
        )

    if cache is not None:
        try:
            cached = cache.get(unit.work_id, unit.unit_id)
        except CacheError as exc:
            logger.warning("Cache read failed, fetching instead: %s", exc)
            cached = None
        if cached is not None:
            logger.debug("Unit %s/%s served from cache", unit.work_id, unit.unit_id)
            return _from_content(unit, UnitContent(cached.title, cached.markup, cached.text),
                                 UnitOutcome.CACHED)

    try:
        content = await fetcher.fetch_unit_content(unit.work_id, unit.unit_id)
    except Exception as exc:
        logger.warning("Unit %s/%s failed: %s", unit.work_id, unit.unit_id, exc)
        return AcquiredUnit(
            index=unit.index,
            unit_id=unit.unit_id,
            title=unit.title,
            markup=FAILED_MARKUP,
            text=FAILED_TEXT,
            outcome=UnitOutcome.FAILED,
            error=str(exc) or exc.__class__.__name__,
        )

    if cache is not None:
        try:
            cache.put(
                CacheEntry(
                    work_id=unit.work_id,
                    unit_id=unit.unit_id,
                    title=content.title,
                    markup=content.markup,
                    text=content.text,
                    unit_order=unit.index,
                )
            )
        except CacheError as exc:
            logger.warning("Cache write failed for %s/%s: %s", unit.work_id, unit.unit_id, exc)
    return _from_content(unit, content, UnitOutcome.FETCHED)


async def acquire_units(units: List[Unit], fetcher: UnitSource, cache: Optional[UnitStore] = None,
                        *, concurrency: int = 8,
                        on_progress: Optional[ProgressCallback] = None) -> List[AcquiredUnit]:
    """Resolve every unit with at most ``concurrency`` fetches in flight.

    Workers pull units from a shared queue, so they finish out of
    order; the returned list is nonetheless in the order of ``units``.
    ``on_progress(completed, total)`` runs once per unit, right after
    the counter is incremented, so ``completed`` is strictly increasing
    from 1 to ``len(units)``.
    """
    total = len(units)
    results: List[Optional[AcquiredUnit]] = [None] * total
    queue: asyncio.Queue = asyncio.Queue()
    for position, unit in enumerate(units):
        queue.put_nowait((position, unit))
    completed = 0

    async def worker() -> None:
        nonlocal completed
        while True:
            try:
                position, unit = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            results[position] = await acquire_unit(unit, fetcher, cache)
            completed += 1
            if on_progress is not None:
                on_progress(completed, total)

    await asyncio.gather(*(worker() for _ in range(min(max(concurrency, 1), total))))

    counts = {outcome: 0 for outcome in UnitOutcome}
    for result in results:
        counts[result.outcome] += 1
    logger.info(
        "Acquired %d units: %d fetched, %d cached, %d not subscribed, %d failed",
        total, counts[UnitOutcome.FETCHED], counts[UnitOutcome.CACHED],
        counts[UnitOutcome.NOT_SUBSCRIBED], counts[UnitOutcome.FAILED],
    )
    return results  # type: ignore[return-value]
