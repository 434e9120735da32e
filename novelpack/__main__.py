"""Serve the novelpack API locally: ``python -m novelpack``."""

import uvicorn

from . import config


def main() -> None:
    uvicorn.run("novelpack.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
