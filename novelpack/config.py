"""Runtime configuration for the novelpack service.

Every setting is a module level constant read once from the
environment when the module is imported. Modules that need a value
import this module and read the attribute at call time so tests can
``monkeypatch`` individual settings without reloading anything.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional

DB_PATH = os.environ.get("NOVELPACK_DB", str(Path("data") / "novelpack.db"))

# Finished artifacts are written here before being handed to the sink.
OUTPUT_DIR = os.environ.get("NOVELPACK_OUTPUT_DIR", str(Path("downloads")))

# When set, finished artifacts are also copied into this directory.
SINK_DIR: Optional[str] = os.environ.get("NOVELPACK_SINK_DIR") or None

LOG_LEVEL = os.environ.get("NOVELPACK_LOG_LEVEL", "INFO").upper()

# Address used by ``python -m novelpack``.
HOST = os.environ.get("NOVELPACK_HOST", "127.0.0.1")
PORT = int(os.environ.get("NOVELPACK_PORT", "8000"))

# Number of unit fetches a single job may have outstanding at once.
CONCURRENCY = int(os.environ.get("NOVELPACK_CONCURRENCY", "8"))

# Units per listing page on the remote site.
PAGE_SIZE = int(os.environ.get("NOVELPACK_PAGE_SIZE", "100"))

# Per-request timeouts in seconds.
DETAIL_TIMEOUT = float(os.environ.get("NOVELPACK_DETAIL_TIMEOUT", "20"))
LISTING_TIMEOUT = float(os.environ.get("NOVELPACK_LISTING_TIMEOUT", "20"))
UNIT_TIMEOUT = float(os.environ.get("NOVELPACK_UNIT_TIMEOUT", "12"))
IMAGE_TIMEOUT = float(os.environ.get("NOVELPACK_IMAGE_TIMEOUT", "10"))

BASE_URLS: Dict[str, str] = {
    "po18": "https://www.po18.tw",
    "popo": "https://www.popo.tw",
}

# The site serves truncated pages to clients that do not look like a
# desktop browser.
DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
    ),
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "image/avif,image/webp,*/*;q=0.8"
    ),
    "Accept-Language": "zh-TW,zh;q=0.9,en;q=0.8",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}
