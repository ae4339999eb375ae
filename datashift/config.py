from dataclasses import dataclass, replace
import os
import re

from dotenv import load_dotenv

from datashift.errors import ShiftConfigurationError


load_dotenv()

AllowedHost = str | re.Pattern[str]


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int | None) -> int | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value, 10)
    except ValueError:
        return default


def _env_positive_int(name: str, default: int) -> int:
    value = _env_int(name, default)
    return value if value is not None and value >= 1 else default


def _env_hosts(name: str) -> tuple[AllowedHost, ...]:
    value = os.getenv(name, "")
    return tuple(host.strip() for host in value.split(",") if host.strip())


@dataclass(frozen=True)
class ShifterConfig:
    database_url: str = "sqlite:///./datashift.db"
    log_level: str = "INFO"
    # Hosts or regexes allowed for HTTP during dry run only, combined with each shift's own list.
    allow_external_requests: tuple[AllowedHost, ...] = ()
    suppress_repeated_logs: bool = True
    repeated_log_cap: int = 1000
    progress_enabled: bool = True
    status_interval_seconds: int | None = None
    no_transaction_countdown: int = 5
    batch_size: int = 1000
    # Also wrap transaction="none" dry runs in the rollback-only transaction.
    strict_dry_run: bool = False

    def __post_init__(self) -> None:
        if self.repeated_log_cap < 1:
            raise ShiftConfigurationError(f"repeated_log_cap must be at least 1, got {self.repeated_log_cap}")
        if self.batch_size < 1:
            raise ShiftConfigurationError(f"batch_size must be at least 1, got {self.batch_size}")

    def configure(self, **changes: object) -> "ShifterConfig":
        if "allow_external_requests" in changes:
            changes["allow_external_requests"] = tuple(changes["allow_external_requests"] or ())
        return replace(self, **changes)


def get_config() -> ShifterConfig:
    return ShifterConfig(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./datashift.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        allow_external_requests=_env_hosts("DATASHIFT_ALLOW_EXTERNAL_REQUESTS"),
        suppress_repeated_logs=_env_bool("DATASHIFT_SUPPRESS_REPEATED_LOGS", True),
        repeated_log_cap=_env_positive_int("DATASHIFT_REPEATED_LOG_CAP", 1000),
        progress_enabled=_env_bool("DATASHIFT_PROGRESS", True),
        status_interval_seconds=_env_int("DATASHIFT_STATUS_INTERVAL", None),
        no_transaction_countdown=_env_int("DATASHIFT_NO_TX_COUNTDOWN", 5) or 0,
        batch_size=_env_positive_int("DATASHIFT_BATCH_SIZE", 1000),
        strict_dry_run=_env_bool("DATASHIFT_STRICT_DRY_RUN", False),
    )
