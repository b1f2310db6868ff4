"""Serve the HTTP surface with uvicorn: ``python -m setlist_sync``."""

from __future__ import annotations

import uvicorn

from setlist_sync.api import create_app
from setlist_sync.config import get_env


def main() -> None:
    host = get_env("APP_HOST", "127.0.0.1") or "127.0.0.1"
    try:
        port = int(get_env("APP_PORT", "8080") or 8080)
    except ValueError:
        port = 8080
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
