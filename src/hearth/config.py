"""hearth configuration loading and validation.

Reads ``hearth.toml``, resolves ``${VAR}`` references from the environment,
parses every section, and returns a validated HearthConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from croniter import croniter

DEFAULT_CONFIG_FILENAME = "hearth.toml"

# Matches ${VAR_NAME}; names are alphanumeric plus underscore.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Job names understood by the periodic runner (hearth.core.jobs).
KNOWN_JOBS: tuple[str, ...] = (
    "calendar-sync",
    "defer-tasks",
    "auto-schedule",
)


class ConfigError(Exception):
    """Raised when hearth configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Database configuration from the [database] section.

    When ``url`` is unset the connection parameters come from ``DATABASE_URL``
    or the ``POSTGRES_*`` environment variables (see :mod:`hearth.db`).
    """

    url: str | None = None
    name: str = "hearth"
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class OAuthClientConfig:
    """OAuth client registration for one provider family."""

    client_id: str = ""
    client_secret: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class ProvidersConfig:
    """OAuth client registrations from [providers.*]."""

    google: OAuthClientConfig = field(default_factory=OAuthClientConfig)
    microsoft: OAuthClientConfig = field(default_factory=OAuthClientConfig)


@dataclass
class SyncConfig:
    """Calendar sync tuning from the [sync] section."""

    full_sync_past_days: int = 30
    full_sync_future_days: int = 90
    page_size: int = 250
    http_timeout_s: float = 30.0


@dataclass
class SchedulerConfig:
    """Auto-scheduler tuning from the [scheduler] section."""

    buffer_minutes: int = 10
    lookahead_days: int = 7


@dataclass
class JobConfig:
    """A single periodic job entry from [[jobs]]."""

    name: str
    cron: str
    job: str


def default_jobs() -> list[JobConfig]:
    return [
        JobConfig(name="calendar-sync", cron="*/15 * * * *", job="calendar-sync"),
        JobConfig(name="defer-tasks", cron="15 0 * * *", job="defer-tasks"),
        JobConfig(name="auto-schedule", cron="20 0 * * *", job="auto-schedule"),
    ]


@dataclass
class HearthConfig:
    """Parsed and validated hearth configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    jobs: list[JobConfig] = field(default_factory=default_jobs)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=section.get("log_root"),
    )


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    url = section.get("url")
    if url is not None and (not isinstance(url, str) or not url.strip()):
        raise ConfigError("database.url must be a non-empty string when set")
    name = str(section.get("name", "hearth")).strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")
    min_size = _positive_int(section, "min_pool_size", 2, "database")
    max_size = _positive_int(section, "max_pool_size", 10, "database")
    if min_size > max_size:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    return DatabaseConfig(
        url=url.strip() if isinstance(url, str) else None,
        name=name,
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_oauth_client(section: Any, path: str) -> OAuthClientConfig:
    if section is None:
        return OAuthClientConfig()
    if not isinstance(section, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return OAuthClientConfig(
        client_id=str(section.get("client_id", "")).strip(),
        client_secret=str(section.get("client_secret", "")).strip(),
    )


def _parse_providers(data: dict[str, Any]) -> ProvidersConfig:
    section = _section(data, "providers")
    return ProvidersConfig(
        google=_parse_oauth_client(section.get("google"), "providers.google"),
        microsoft=_parse_oauth_client(section.get("microsoft"), "providers.microsoft"),
    )


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    page_size = _positive_int(section, "page_size", 250, "sync")
    if page_size > 2500:
        raise ConfigError(f"Invalid sync.page_size: {page_size!r}. Must be at most 2500.")
    timeout = float(section.get("http_timeout_s", 30.0))
    if timeout <= 0:
        raise ConfigError(f"Invalid sync.http_timeout_s: {timeout!r}. Must be positive.")
    return SyncConfig(
        full_sync_past_days=_positive_int(section, "full_sync_past_days", 30, "sync"),
        full_sync_future_days=_positive_int(section, "full_sync_future_days", 90, "sync"),
        page_size=page_size,
        http_timeout_s=timeout,
    )


def _parse_scheduler(data: dict[str, Any]) -> SchedulerConfig:
    section = _section(data, "scheduler")
    raw_buffer = section.get("buffer_minutes", 10)
    try:
        buffer_minutes = int(raw_buffer)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid scheduler.buffer_minutes: {raw_buffer!r}") from exc
    if buffer_minutes < 0:
        raise ConfigError(
            f"Invalid scheduler.buffer_minutes: {buffer_minutes!r}. Must not be negative."
        )
    return SchedulerConfig(
        buffer_minutes=buffer_minutes,
        lookahead_days=_positive_int(section, "lookahead_days", 7, "scheduler"),
    )


def _parse_job_entry(entry: Any, index: int) -> JobConfig:
    """Parse and validate one ``[[jobs]]`` entry."""
    entry_path = f"jobs[{index}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"{entry_path} must be a TOML table")

    name = entry.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"{entry_path}.name must be a non-empty string")

    cron = entry.get("cron")
    if not isinstance(cron, str) or not cron.strip():
        raise ConfigError(f"{entry_path}.cron must be a non-empty string")
    if not croniter.is_valid(cron.strip()):
        raise ConfigError(f"{entry_path}.cron is not a valid cron expression: {cron!r}")

    job = entry.get("job", name)
    if not isinstance(job, str) or job.strip() not in KNOWN_JOBS:
        known = ", ".join(KNOWN_JOBS)
        raise ConfigError(f"{entry_path}.job must be one of: {known} (got {job!r})")

    return JobConfig(name=name.strip(), cron=cron.strip(), job=job.strip())


def _parse_jobs(data: dict[str, Any]) -> list[JobConfig]:
    if "jobs" not in data:
        return default_jobs()
    raw = data["jobs"]
    if not isinstance(raw, list):
        raise ConfigError("jobs must be an array of tables ([[jobs]])")
    jobs = [_parse_job_entry(entry, index) for index, entry in enumerate(raw)]
    names = [job.name for job in jobs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate job name(s): {', '.join(duplicates)}")
    return jobs


def parse_config(data: dict[str, Any]) -> HearthConfig:
    """Build a :class:`HearthConfig` from an already-decoded TOML mapping."""
    data = resolve_env_vars(data)
    return HearthConfig(
        database=_parse_database(data),
        logging=_parse_logging(data),
        providers=_parse_providers(data),
        sync=_parse_sync(data),
        scheduler=_parse_scheduler(data),
        jobs=_parse_jobs(data),
    )


def load_config(path: Path | None = None) -> HearthConfig:
    """Load and validate ``hearth.toml``.

    Parameters
    ----------
    path:
        Either the TOML file itself or a directory containing ``hearth.toml``.
        ``None`` returns the defaults.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    if path is None:
        return HearthConfig()

    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
