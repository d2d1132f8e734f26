"""Tests for hearth configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from hearth.config import (
    ConfigError,
    HearthConfig,
    JobConfig,
    default_jobs,
    load_config,
    parse_config,
)

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[database]
url = "postgresql://hearth:pw@db.internal:5433/family"
min_pool_size = 1
max_pool_size = 4

[logging]
level = "debug"
format = "json"
log_root = "/var/log/hearth"

[providers.google]
client_id = "google-id"
client_secret = "${GOOGLE_SECRET}"

[providers.microsoft]
client_id = "ms-id"
client_secret = "ms-secret"

[sync]
full_sync_past_days = 14
full_sync_future_days = 60
page_size = 100
http_timeout_s = 12.5

[scheduler]
buffer_minutes = 0
lookahead_days = 14

[[jobs]]
name = "calendar-sync"
cron = "*/5 * * * *"

[[jobs]]
name = "nightly-schedule"
cron = "0 1 * * *"
job = "auto-schedule"
"""


def _write_toml(tmp_path: Path, content: str, filename: str = "hearth.toml") -> Path:
    """Write *content* to a TOML file inside *tmp_path* and return the directory."""
    (tmp_path / filename).write_text(content)
    return tmp_path


# ---------------------------------------------------------------------------
# Happy-path tests
# ---------------------------------------------------------------------------


def test_load_full_config(tmp_path: Path, monkeypatch):
    """Every field is parsed when all sections are present."""
    monkeypatch.setenv("GOOGLE_SECRET", "from-env")
    cfg = load_config(_write_toml(tmp_path, FULL_TOML))

    assert cfg.database.url == "postgresql://hearth:pw@db.internal:5433/family"
    assert (cfg.database.min_pool_size, cfg.database.max_pool_size) == (1, 4)
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.format == "json"
    assert cfg.logging.log_root == "/var/log/hearth"
    assert cfg.providers.google.client_secret == "from-env"
    assert cfg.providers.google.configured
    assert cfg.providers.microsoft.client_id == "ms-id"
    assert cfg.sync.full_sync_past_days == 14
    assert cfg.sync.page_size == 100
    assert cfg.sync.http_timeout_s == 12.5
    assert cfg.scheduler.buffer_minutes == 0
    assert cfg.scheduler.lookahead_days == 14
    assert cfg.jobs == [
        JobConfig(name="calendar-sync", cron="*/5 * * * *", job="calendar-sync"),
        JobConfig(name="nightly-schedule", cron="0 1 * * *", job="auto-schedule"),
    ]


def test_load_config_accepts_file_path(tmp_path: Path):
    path = tmp_path / "custom.toml"
    path.write_text("[scheduler]\nbuffer_minutes = 5\n")
    assert load_config(path).scheduler.buffer_minutes == 5


def test_defaults():
    cfg = load_config(None)
    assert cfg == HearthConfig()
    assert cfg.scheduler.buffer_minutes == 10
    assert cfg.scheduler.lookahead_days == 7
    assert cfg.sync.full_sync_past_days == 30
    assert cfg.sync.full_sync_future_days == 90
    assert not cfg.providers.google.configured
    assert [job.job for job in cfg.jobs] == ["calendar-sync", "defer-tasks", "auto-schedule"]


def test_empty_jobs_array_disables_jobs():
    assert parse_config({"jobs": []}).jobs == []


def test_default_jobs_are_fresh_lists():
    assert default_jobs() is not default_jobs()


# ---------------------------------------------------------------------------
# Error cases
# ---------------------------------------------------------------------------


def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path)


def test_invalid_toml(tmp_path: Path):
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write_toml(tmp_path, "[scheduler\n"))


def test_unset_env_var(monkeypatch):
    monkeypatch.delenv("HEARTH_TEST_UNSET", raising=False)
    with pytest.raises(ConfigError, match="HEARTH_TEST_UNSET"):
        parse_config({"providers": {"google": {"client_secret": "${HEARTH_TEST_UNSET}"}}})


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ({"logging": {"format": "xml"}}, "logging.format"),
        ({"database": {"min_pool_size": 5, "max_pool_size": 2}}, "min_pool_size"),
        ({"database": {"url": "  "}}, "database.url"),
        ({"sync": {"page_size": 0}}, "sync.page_size"),
        ({"sync": {"page_size": 5000}}, "at most 2500"),
        ({"sync": {"http_timeout_s": 0}}, "http_timeout_s"),
        ({"scheduler": {"buffer_minutes": -1}}, "buffer_minutes"),
        ({"scheduler": {"buffer_minutes": "ten"}}, "buffer_minutes"),
        ({"scheduler": {"lookahead_days": 0}}, "lookahead_days"),
        ({"scheduler": "fast"}, r"\[scheduler\]"),
        ({"jobs": {"name": "x"}}, "array of tables"),
        ({"jobs": [{"name": "x", "cron": "not cron"}]}, "valid cron"),
        ({"jobs": [{"name": "x", "cron": "* * * * *"}]}, "jobs\\[0\\].job"),
        ({"jobs": [{"cron": "* * * * *", "job": "defer-tasks"}]}, "jobs\\[0\\].name"),
        (
            {
                "jobs": [
                    {"name": "a", "cron": "* * * * *", "job": "defer-tasks"},
                    {"name": "a", "cron": "0 * * * *", "job": "auto-schedule"},
                ]
            },
            "Duplicate job name",
        ),
    ],
)
def test_invalid_values(data, message):
    with pytest.raises(ConfigError, match=message):
        parse_config(data)
