import re

import pytest

from datashift import env
from datashift.config import ShifterConfig, get_config
from datashift.errors import ShiftConfigurationError


CONFIG_VARS = (
    "DATABASE_URL",
    "LOG_LEVEL",
    "DATASHIFT_ALLOW_EXTERNAL_REQUESTS",
    "DATASHIFT_SUPPRESS_REPEATED_LOGS",
    "DATASHIFT_REPEATED_LOG_CAP",
    "DATASHIFT_PROGRESS",
    "DATASHIFT_STATUS_INTERVAL",
    "DATASHIFT_NO_TX_COUNTDOWN",
    "DATASHIFT_BATCH_SIZE",
    "DATASHIFT_STRICT_DRY_RUN",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for name in CONFIG_VARS + ("COMMIT", "DRY_RUN", "STATUS_INTERVAL", "CONTINUE_FROM"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env) -> None:
    config = get_config()

    assert config == ShifterConfig()
    assert config.allow_external_requests == ()
    assert config.suppress_repeated_logs is True
    assert config.no_transaction_countdown == 5
    assert config.strict_dry_run is False


def test_environment_overrides(clean_env) -> None:
    clean_env.setenv("DATASHIFT_ALLOW_EXTERNAL_REQUESTS", "api.example.com, hooks.example.com,")
    clean_env.setenv("DATASHIFT_SUPPRESS_REPEATED_LOGS", "false")
    clean_env.setenv("DATASHIFT_REPEATED_LOG_CAP", "50")
    clean_env.setenv("DATASHIFT_PROGRESS", "0")
    clean_env.setenv("DATASHIFT_STATUS_INTERVAL", "60")
    clean_env.setenv("DATASHIFT_NO_TX_COUNTDOWN", "0")
    clean_env.setenv("DATASHIFT_BATCH_SIZE", "not-a-number")
    clean_env.setenv("DATASHIFT_STRICT_DRY_RUN", "yes")

    config = get_config()

    assert config.allow_external_requests == ("api.example.com", "hooks.example.com")
    assert config.suppress_repeated_logs is False
    assert config.repeated_log_cap == 50
    assert config.progress_enabled is False
    assert config.status_interval_seconds == 60
    assert config.no_transaction_countdown == 0
    assert config.batch_size == 1000
    assert config.strict_dry_run is True


def test_configure_returns_a_new_config() -> None:
    base = ShifterConfig()
    pattern = re.compile(r"\.internal$")

    changed = base.configure(allow_external_requests=["api.example.com", pattern], progress_enabled=False)

    assert changed.allow_external_requests == ("api.example.com", pattern)
    assert changed.progress_enabled is False
    assert base.allow_external_requests == ()
    assert base.progress_enabled is True


@pytest.mark.parametrize("cap", [0, -5])
def test_repeated_log_cap_must_be_positive(cap) -> None:
    with pytest.raises(ShiftConfigurationError, match="repeated_log_cap"):
        ShifterConfig().configure(repeated_log_cap=cap)
    with pytest.raises(ShiftConfigurationError, match="repeated_log_cap"):
        ShifterConfig(repeated_log_cap=cap)


def test_non_positive_env_values_fall_back_to_defaults(clean_env) -> None:
    clean_env.setenv("DATASHIFT_REPEATED_LOG_CAP", "-3")
    clean_env.setenv("DATASHIFT_BATCH_SIZE", "0")

    config = get_config()

    assert config.repeated_log_cap == 1000
    assert config.batch_size == 1000


@pytest.mark.parametrize(
    ("commit", "dry_run", "expected"),
    [
        (None, None, True),
        ("1", None, False),
        ("true", None, False),
        ("0", None, True),
        (None, "false", False),
        (None, "true", True),
        ("0", "false", True),
    ],
)
def test_dry_run_from_env(clean_env, commit, dry_run, expected) -> None:
    if commit is not None:
        clean_env.setenv("COMMIT", commit)
    if dry_run is not None:
        clean_env.setenv("DRY_RUN", dry_run)

    assert env.dry_run_from_env() is expected


def test_status_interval_falls_back_to_config(clean_env) -> None:
    config = ShifterConfig(status_interval_seconds=45)

    assert env.status_interval_seconds(config) == 45
    clean_env.setenv("STATUS_INTERVAL", "10")
    assert env.status_interval_seconds(config) == 10
    clean_env.setenv("STATUS_INTERVAL", "soon")
    assert env.status_interval_seconds(config) == 45


def test_continue_from(clean_env) -> None:
    assert env.continue_from() is None
    clean_env.setenv("CONTINUE_FROM", "  ")
    assert env.continue_from() is None
    clean_env.setenv("CONTINUE_FROM", "1042")
    assert env.continue_from() == "1042"
