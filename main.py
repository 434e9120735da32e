"""
Entry point for Vercel.

This module exposes the FastAPI application instance defined in
`novelpack.main`. Vercel's Python runtime imports this file and looks
for an object called `app`, which it mounts as the ASGI application.
Locally the same object can be served with
`uvicorn main:app --reload`.
"""

from novelpack.main import app as app  # noqa: F401  re-export FastAPI instance
