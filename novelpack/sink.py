"""Destinations for finished artifacts.

A sink receives the path of a finished file and returns where it ended
up remotely, or ``None`` when it kept nothing. Remote storage clients
(WebDAV and the like) plug in by implementing ``ArtifactSink``.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional, Protocol

from .models import Work

logger = logging.getLogger(__name__)


class ArtifactSink(Protocol):
    async def store(self, path: str, work: Work) -> Optional[str]: ...


class NullSink:
    """Keeps artifacts only where the packager wrote them."""

    async def store(self, path: str, work: Work) -> Optional[str]:
        return None


class DirectorySink:
    """Copies finished artifacts into ``directory``."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)

    async def store(self, path: str, work: Work) -> Optional[str]:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.directory / Path(path).name
        await asyncio.to_thread(shutil.copyfile, path, target)
        logger.info("Stored %s for work %s at %s", Path(path).name, work.work_id, target)
        return str(target)
