"""Per-run knobs read from the process environment by the invocation layer."""
import os

from datashift.config import ShifterConfig


def dry_run_from_env() -> bool:
    # COMMIT=1 or COMMIT=true means live; otherwise DRY_RUN=false means live.
    commit = os.getenv("COMMIT", "").strip()
    if commit:
        return commit.lower() not in {"1", "true"}
    return os.getenv("DRY_RUN", "true").strip().lower() != "false"


def status_interval_seconds(config: ShifterConfig, explicit: int | None = None) -> int | None:
    if explicit is not None:
        return explicit
    value = os.getenv("STATUS_INTERVAL", "").strip()
    if not value:
        return config.status_interval_seconds
    try:
        return int(value, 10)
    except ValueError:
        return config.status_interval_seconds


def continue_from() -> str | None:
    value = os.getenv("CONTINUE_FROM", "").strip()
    return value or None
