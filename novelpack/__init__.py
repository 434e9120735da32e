"""Serialized fiction downloader and e-book packager.

This package fetches works from paginated, partly paywalled fiction
platforms (PO18 and POPO), caches every fetched chapter for all users,
and packages the result as plain text, HTML or EPUB. A FastAPI service
exposes download jobs with pollable and streamed progress.

The modules in this package are:

* ``config.py`` – Settings read from ``NOVELPACK_*`` environment
  variables: database path, output directory, concurrency, timeouts.

* ``models.py`` – Dataclasses and enums for works, units, cache
  entries, acquired units and jobs.

* ``extractor.py`` – Pure HTML parsers built on ``BeautifulSoup``. Work
  detail extraction is selected per platform through a lookup table.

* ``retry.py`` – ``RetryPolicy`` value objects and the single
  ``retry_async`` coroutine that applies them.

* ``fetcher.py`` – ``RemoteFetcher``, which issues ``httpx`` requests for
  work details, listing pages, unit bodies and images.

* ``db.py`` – SQLite helpers for jobs, job events and the unit cache.

* ``cache.py`` – ``UnitCache``, the shared store of fetched units.

* ``coordinator.py`` – Concurrent listing retrieval and the worker pool
  that acquires units with progress reporting.

* ``packager.py`` – TXT, HTML and EPUB output, including the EPUB image
  pipeline.

* ``progress.py`` – In-process relay of job progress.

* ``sink.py`` – Destinations that receive finished files.

* ``jobs.py`` – ``JobRunner``: job submission, execution and queries.

* ``main.py`` – The FastAPI application; ``python -m novelpack`` serves
  it with ``uvicorn``.
"""

__version__ = "0.1.0"
