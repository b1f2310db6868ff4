"""Application configuration utilities for the setlist sync engine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import json
import os
from pathlib import Path
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from setlist_sync.logging import get_logger

logger = get_logger(__name__)

ENTITY_TYPES: tuple[str, ...] = ("artist", "venue", "show", "setlist", "song")

DEFAULT_DB_URL = "sqlite+aiosqlite:///./setlist_sync.db"
DEFAULT_LOG_LEVEL = "INFO"

DEFAULT_EXTERNAL_TIMEOUT_MS = 10_000
DEFAULT_EXTERNAL_RETRY_MAX = 3
DEFAULT_EXTERNAL_BACKOFF_BASE_MS = 250
DEFAULT_EXTERNAL_JITTER_PCT = 20

DEFAULT_TICKETMASTER_BASE_URL = "https://app.ticketmaster.com/discovery/v2"
DEFAULT_TICKETMASTER_MIN_INTERVAL_MS = 200
DEFAULT_SPOTIFY_BASE_URL = "https://api.spotify.com/v1"
DEFAULT_SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
DEFAULT_SPOTIFY_MIN_INTERVAL_MS = 100
DEFAULT_SPOTIFY_TOKEN_REFRESH_MARGIN_S = 60
DEFAULT_SPOTIFY_MARKET = "US"
DEFAULT_SETLISTFM_BASE_URL = "https://api.setlist.fm/rest/1.0"
DEFAULT_SETLISTFM_MIN_INTERVAL_MS = 500

DEFAULT_JOB_PRIORITY = 3
DEFAULT_JOB_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_S = 300
DEFAULT_STALE_AFTER_S = 1_800
DEFAULT_BATCH_MAX_ITEMS = 5
DEFAULT_BATCH_DELAY_MS = 500
DEFAULT_WORKER_CONCURRENCY = 2
DEFAULT_POLL_INTERVAL_MS = 1_000
DEFAULT_ERROR_MAX_LENGTH = 500

DEFAULT_FRESHNESS_S: Mapping[str, int] = {
    "artist": 24 * 3600,
    "venue": 7 * 24 * 3600,
    "show": 6 * 3600,
    "setlist": 24 * 3600,
    "song": 7 * 24 * 3600,
}
DEFAULT_PAST_SETLIST_LIMIT = 10
DEFAULT_UPCOMING_SHOW_LIMIT = 20
DEFAULT_CATALOG_BATCH_SIZE = 500
DEFAULT_TOP_TRACKS_LIMIT = 10

# Sources listed first win. "existing" refers to the stored row.
DEFAULT_MERGE_PRECEDENCE: Mapping[str, tuple[str, ...]] = {
    "artist.name": ("spotify", "ticketmaster", "existing"),
    "artist.image_url": ("spotify", "ticketmaster", "existing"),
    "artist.url": ("ticketmaster", "existing"),
    "artist.genres": ("spotify", "ticketmaster", "existing"),
    "artist.popularity": ("spotify", "existing"),
    "venue.name": ("ticketmaster", "setlistfm", "existing"),
    "venue.city": ("ticketmaster", "setlistfm", "existing"),
    "show.name": ("ticketmaster", "existing"),
    "show.image_url": ("ticketmaster", "existing"),
    "song.name": ("spotify", "existing"),
}

DEFAULT_ORCH_PARALLEL_LIMIT = 5


ENV_FILE_VAR = "SETLIST_SYNC_ENV_FILE"


def _read_env_file(path: Path) -> dict[str, str]:
    """Parse ``KEY=value`` lines; ``export`` prefixes and surrounding quotes are dropped."""

    values: dict[str, str] = {}
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return values
    for raw in lines:
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Merge the env file (``.env`` or ``$SETLIST_SYNC_ENV_FILE``) under ``base_env``.

    ``base_env`` defaults to ``os.environ`` and always wins over the file.
    """

    process_env = {
        key: str(value)
        for key, value in (base_env if base_env is not None else os.environ).items()
        if value is not None
    }
    path = Path(env_file or process_env.get(ENV_FILE_VAR) or ".env")
    merged = _read_env_file(path) if path.is_file() else {}
    merged.update(process_env)
    return merged


class _RuntimeEnv:
    values: dict[str, str] | None = None


def get_runtime_env() -> Mapping[str, str]:
    if _RuntimeEnv.values is None:
        _RuntimeEnv.values = load_runtime_env()
    return _RuntimeEnv.values


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Pin the runtime env to ``runtime_env``; ``None`` re-reads it on next access."""

    _RuntimeEnv.values = None if runtime_env is None else dict(runtime_env)


def get_env(name: str, default: str | None = None) -> str | None:
    return get_runtime_env().get(name, default)


def _as_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_sources(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, (list, tuple)):
        items = [str(item) for item in raw]
    else:
        items = str(raw).split(">")
    return tuple(item.strip().lower() for item in items if item and item.strip())


def parse_merge_precedence(
    env_val: str | None, default: Mapping[str, tuple[str, ...]]
) -> dict[str, tuple[str, ...]]:
    """Parse field precedence overrides from JSON or ``field:a>b;field:c`` text.

    Overrides are layered on top of ``default``; unknown fields are kept so
    handlers can opt into them.
    """

    merged = {key: tuple(value) for key, value in default.items()}
    if not env_val or not env_val.strip():
        return merged
    raw = env_val.strip()
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None
    entries: list[tuple[str, Any]] = []
    if isinstance(parsed, Mapping):
        entries = [(str(key), value) for key, value in parsed.items()]
    else:
        for item in raw.split(";"):
            name, sep, sources = item.partition(":")
            if sep:
                entries.append((name, sources))
    for name, sources in entries:
        key = name.strip().lower()
        resolved = _parse_sources(sources)
        if key and resolved:
            merged[key] = resolved
    return merged


def _normalise_database_url(candidate: str) -> str:
    try:
        url = make_url(candidate)
    except ArgumentError:
        logger.warning(
            "Invalid DATABASE_URL; falling back to default",
            extra={"event": "config.database_url_invalid"},
        )
        return DEFAULT_DB_URL
    if url.drivername.startswith("sqlite") and url.database not in {None, "", ":memory:"}:
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return url.render_as_string(hide_password=False)


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> LoggingConfig:
        level = _optional_str(env.get("LOG_LEVEL")) or DEFAULT_LOG_LEVEL
        return cls(level=level.upper())


@dataclass(slots=True, frozen=True)
class DatabaseConfig:
    url: str

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> DatabaseConfig:
        candidate = _optional_str(env.get("DATABASE_URL")) or DEFAULT_DB_URL
        return cls(url=_normalise_database_url(candidate))


@dataclass(slots=True, frozen=True)
class ExternalCallPolicy:
    timeout_ms: int
    retry_max: int
    backoff_base_ms: int
    jitter_pct: int

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> ExternalCallPolicy:
        return cls(
            timeout_ms=_bounded_int(
                env.get("EXTERNAL_TIMEOUT_MS"),
                default=DEFAULT_EXTERNAL_TIMEOUT_MS,
                minimum=100,
            ),
            retry_max=_bounded_int(
                env.get("EXTERNAL_RETRY_MAX"),
                default=DEFAULT_EXTERNAL_RETRY_MAX,
                minimum=0,
            ),
            backoff_base_ms=_bounded_int(
                env.get("EXTERNAL_BACKOFF_BASE_MS"),
                default=DEFAULT_EXTERNAL_BACKOFF_BASE_MS,
                minimum=1,
            ),
            jitter_pct=_bounded_int(
                env.get("EXTERNAL_JITTER_PCT"),
                default=DEFAULT_EXTERNAL_JITTER_PCT,
                minimum=0,
                maximum=100,
            ),
        )


@dataclass(slots=True, frozen=True)
class TicketmasterConfig:
    api_key: str | None
    base_url: str
    min_interval_ms: int

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> TicketmasterConfig:
        return cls(
            api_key=_optional_str(env.get("TICKETMASTER_API_KEY")),
            base_url=_optional_str(env.get("TICKETMASTER_BASE_URL"))
            or DEFAULT_TICKETMASTER_BASE_URL,
            min_interval_ms=_bounded_int(
                env.get("TICKETMASTER_MIN_INTERVAL_MS"),
                default=DEFAULT_TICKETMASTER_MIN_INTERVAL_MS,
                minimum=0,
            ),
        )


@dataclass(slots=True, frozen=True)
class SpotifyConfig:
    client_id: str | None
    client_secret: str | None
    base_url: str
    token_url: str
    min_interval_ms: int
    token_refresh_margin_s: int
    market: str

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> SpotifyConfig:
        return cls(
            client_id=_optional_str(env.get("SPOTIFY_CLIENT_ID")),
            client_secret=_optional_str(env.get("SPOTIFY_CLIENT_SECRET")),
            base_url=_optional_str(env.get("SPOTIFY_BASE_URL")) or DEFAULT_SPOTIFY_BASE_URL,
            token_url=_optional_str(env.get("SPOTIFY_TOKEN_URL")) or DEFAULT_SPOTIFY_TOKEN_URL,
            min_interval_ms=_bounded_int(
                env.get("SPOTIFY_MIN_INTERVAL_MS"),
                default=DEFAULT_SPOTIFY_MIN_INTERVAL_MS,
                minimum=0,
            ),
            token_refresh_margin_s=_bounded_int(
                env.get("SPOTIFY_TOKEN_REFRESH_MARGIN_S"),
                default=DEFAULT_SPOTIFY_TOKEN_REFRESH_MARGIN_S,
                minimum=0,
            ),
            market=_optional_str(env.get("SPOTIFY_MARKET")) or DEFAULT_SPOTIFY_MARKET,
        )


@dataclass(slots=True, frozen=True)
class SetlistFmConfig:
    api_key: str | None
    base_url: str
    min_interval_ms: int

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> SetlistFmConfig:
        return cls(
            api_key=_optional_str(env.get("SETLISTFM_API_KEY")),
            base_url=_optional_str(env.get("SETLISTFM_BASE_URL"))
            or DEFAULT_SETLISTFM_BASE_URL,
            min_interval_ms=_bounded_int(
                env.get("SETLISTFM_MIN_INTERVAL_MS"),
                default=DEFAULT_SETLISTFM_MIN_INTERVAL_MS,
                minimum=0,
            ),
        )


@dataclass(slots=True, frozen=True)
class QueueConfig:
    default_priority: int
    default_max_attempts: int
    retry_backoff_s: int
    stale_after_s: int
    batch_max_items: int
    batch_delay_ms: int
    worker_concurrency: int
    poll_interval_ms: int
    error_max_length: int

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> QueueConfig:
        return cls(
            default_priority=_bounded_int(
                env.get("SYNC_JOB_PRIORITY"), default=DEFAULT_JOB_PRIORITY, minimum=0
            ),
            default_max_attempts=_bounded_int(
                env.get("SYNC_JOB_MAX_ATTEMPTS"),
                default=DEFAULT_JOB_MAX_ATTEMPTS,
                minimum=1,
            ),
            retry_backoff_s=_bounded_int(
                env.get("SYNC_RETRY_BACKOFF_S"), default=DEFAULT_RETRY_BACKOFF_S, minimum=0
            ),
            stale_after_s=_bounded_int(
                env.get("SYNC_STALE_AFTER_S"), default=DEFAULT_STALE_AFTER_S, minimum=1
            ),
            batch_max_items=_bounded_int(
                env.get("SYNC_BATCH_MAX_ITEMS"),
                default=DEFAULT_BATCH_MAX_ITEMS,
                minimum=1,
                maximum=100,
            ),
            batch_delay_ms=_bounded_int(
                env.get("SYNC_BATCH_DELAY_MS"), default=DEFAULT_BATCH_DELAY_MS, minimum=0
            ),
            worker_concurrency=_bounded_int(
                env.get("SYNC_WORKER_CONCURRENCY"),
                default=DEFAULT_WORKER_CONCURRENCY,
                minimum=1,
            ),
            poll_interval_ms=_bounded_int(
                env.get("SYNC_POLL_INTERVAL_MS"),
                default=DEFAULT_POLL_INTERVAL_MS,
                minimum=10,
            ),
            error_max_length=_bounded_int(
                env.get("SYNC_ERROR_MAX_LENGTH"),
                default=DEFAULT_ERROR_MAX_LENGTH,
                minimum=50,
            ),
        )


@dataclass(slots=True, frozen=True)
class SyncConfig:
    freshness_s: Mapping[str, int]
    past_setlist_limit: int
    upcoming_show_limit: int
    catalog_batch_size: int
    top_tracks_limit: int
    merge_precedence: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_MERGE_PRECEDENCE)
    )

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> SyncConfig:
        freshness: dict[str, int] = {}
        for entity_type in ENTITY_TYPES:
            freshness[entity_type] = _bounded_int(
                env.get(f"SYNC_FRESHNESS_{entity_type.upper()}_S"),
                default=DEFAULT_FRESHNESS_S[entity_type],
                minimum=0,
            )
        return cls(
            freshness_s=freshness,
            past_setlist_limit=_bounded_int(
                env.get("SYNC_PAST_SETLIST_LIMIT"),
                default=DEFAULT_PAST_SETLIST_LIMIT,
                minimum=0,
            ),
            upcoming_show_limit=_bounded_int(
                env.get("SYNC_UPCOMING_SHOW_LIMIT"),
                default=DEFAULT_UPCOMING_SHOW_LIMIT,
                minimum=0,
                maximum=200,
            ),
            catalog_batch_size=_bounded_int(
                env.get("SYNC_CATALOG_BATCH_SIZE"),
                default=DEFAULT_CATALOG_BATCH_SIZE,
                minimum=1,
            ),
            top_tracks_limit=_bounded_int(
                env.get("SYNC_TOP_TRACKS_LIMIT"),
                default=DEFAULT_TOP_TRACKS_LIMIT,
                minimum=1,
                maximum=50,
            ),
            merge_precedence=parse_merge_precedence(
                _optional_str(env.get("SYNC_MERGE_PRECEDENCE")),
                DEFAULT_MERGE_PRECEDENCE,
            ),
        )

    def freshness_for(self, entity_type: str) -> int:
        return int(self.freshness_s.get(entity_type, 0))

    def precedence_for(self, field_name: str) -> tuple[str, ...]:
        return tuple(self.merge_precedence.get(field_name, ("existing",)))


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    parallel_limit: int
    retry_failed: bool
    track_in_database: bool

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> OrchestratorConfig:
        return cls(
            parallel_limit=_bounded_int(
                env.get("ORCH_PARALLEL_LIMIT"),
                default=DEFAULT_ORCH_PARALLEL_LIMIT,
                minimum=1,
                maximum=50,
            ),
            retry_failed=_as_bool(env.get("ORCH_RETRY_FAILED"), default=True),
            track_in_database=_as_bool(env.get("ORCH_TRACK_IN_DATABASE"), default=True),
        )


@dataclass(slots=True, frozen=True)
class AppConfig:
    logging: LoggingConfig
    database: DatabaseConfig
    external: ExternalCallPolicy
    ticketmaster: TicketmasterConfig
    spotify: SpotifyConfig
    setlistfm: SetlistFmConfig
    queue: QueueConfig
    sync: SyncConfig
    orchestrator: OrchestratorConfig


def load_config(runtime_env: Mapping[str, Any] | None = None) -> AppConfig:
    """Build the application configuration from the runtime environment."""

    env = runtime_env if runtime_env is not None else get_runtime_env()
    return AppConfig(
        logging=LoggingConfig.from_env(env),
        database=DatabaseConfig.from_env(env),
        external=ExternalCallPolicy.from_env(env),
        ticketmaster=TicketmasterConfig.from_env(env),
        spotify=SpotifyConfig.from_env(env),
        setlistfm=SetlistFmConfig.from_env(env),
        queue=QueueConfig.from_env(env),
        sync=SyncConfig.from_env(env),
        orchestrator=OrchestratorConfig.from_env(env),
    )


__all__ = [
    "AppConfig",
    "DatabaseConfig",
    "ENTITY_TYPES",
    "ExternalCallPolicy",
    "LoggingConfig",
    "OrchestratorConfig",
    "QueueConfig",
    "SetlistFmConfig",
    "SpotifyConfig",
    "SyncConfig",
    "TicketmasterConfig",
    "get_env",
    "get_runtime_env",
    "load_config",
    "load_runtime_env",
    "override_runtime_env",
    "parse_merge_precedence",
]
