"""HTTP surface for queue control, orchestration and vote recording."""

from setlist_sync.api.app import create_app

__all__ = ["create_app"]
