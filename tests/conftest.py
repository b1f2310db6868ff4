from __future__ import annotations

import asyncio
from collections.abc import Iterator
import inspect
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from setlist_sync.config import override_runtime_env  # noqa: E402
from setlist_sync.db import reset_engine_for_tests  # noqa: E402

_PROVIDER_CREDENTIALS = {
    "TICKETMASTER_API_KEY": "tm-test-key",
    "SPOTIFY_CLIENT_ID": "test-client",
    "SPOTIFY_CLIENT_SECRET": "test-secret",
    "SETLISTFM_API_KEY": "sfm-test-key",
}


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    if pyfuncitem.get_closest_marker("asyncio") is None:
        return None
    if not inspect.iscoroutinefunction(pyfuncitem.obj):
        return None
    argnames = pyfuncitem._fixtureinfo.argnames
    asyncio.run(pyfuncitem.obj(**{name: pyfuncitem.funcargs[name] for name in argnames}))
    return True


@pytest.fixture(autouse=True)
def _isolated_store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Point every test at its own sqlite file with provider credentials set."""

    db_path = tmp_path / "data" / "setlist_sync.db"
    db_path.parent.mkdir(parents=True)
    for name, value in _PROVIDER_CREDENTIALS.items():
        monkeypatch.setenv(name, value)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")

    override_runtime_env(None)
    reset_engine_for_tests()
    yield db_path
    reset_engine_for_tests()
    override_runtime_env(None)
