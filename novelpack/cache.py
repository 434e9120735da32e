"""The cross-user unit cache.

Fetching a unit costs one request against a rate limited site, so the
first successful fetch of any ``(work_id, unit_id)`` is stored here and
every later job, whoever owns it, reads the stored copy instead. The
cache has no owner: any job may read or upsert any entry, and an upsert
of an existing key simply replaces its content.

Storage errors surface as ``CacheError``; the coordinator treats them
as a miss so a broken cache slows a job down but never fails it.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional

from . import db
from .errors import CacheError
from .models import CacheEntry


def _entry_from_row(row: Dict[str, Any]) -> CacheEntry:
    return CacheEntry(
        work_id=row["work_id"],
        unit_id=row["unit_id"],
        title=row.get("title") or "",
        markup=row.get("markup") or "",
        text=row.get("text") or "",
        unit_order=row.get("unit_order") or 0,
        updated_at=row.get("updated_at"),
    )


class UnitCache:
    """Read-through/write-through store of unit bodies backed by ``db``."""

    def get(self, work_id: str, unit_id: str) -> Optional[CacheEntry]:
        try:
            row = db.get_cached_unit(work_id, unit_id)
        except sqlite3.Error as exc:
            raise CacheError(f"Reading unit {work_id}/{unit_id} failed: {exc}") from exc
        return _entry_from_row(row) if row else None

    def put(self, entry: CacheEntry) -> None:
        try:
            db.save_cached_unit(
                {
                    "work_id": entry.work_id,
                    "unit_id": entry.unit_id,
                    "title": entry.title,
                    "markup": entry.markup,
                    "text": entry.text,
                    "unit_order": entry.unit_order,
                }
            )
        except sqlite3.Error as exc:
            raise CacheError(f"Writing unit {entry.work_id}/{entry.unit_id} failed: {exc}") from exc

    def exists(self, work_id: str, unit_id: str) -> bool:
        try:
            return db.cached_unit_exists(work_id, unit_id)
        except sqlite3.Error as exc:
            raise CacheError(f"Checking unit {work_id}/{unit_id} failed: {exc}") from exc

    def get_all_for_work(self, work_id: str) -> List[CacheEntry]:
        try:
            rows = db.get_cached_units(work_id)
        except sqlite3.Error as exc:
            raise CacheError(f"Reading units of work {work_id} failed: {exc}") from exc
        return [_entry_from_row(row) for row in rows]

    def count_for_work(self, work_id: str) -> int:
        try:
            return db.count_cached_units(work_id)
        except sqlite3.Error as exc:
            raise CacheError(f"Counting units of work {work_id} failed: {exc}") from exc

    def delete_work(self, work_id: str) -> int:
        try:
            return db.delete_cached_units(work_id)
        except sqlite3.Error as exc:
            raise CacheError(f"Deleting units of work {work_id} failed: {exc}") from exc
