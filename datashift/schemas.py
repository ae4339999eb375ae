from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from datashift.config import AllowedHost
from datashift.errors import ShiftConfigurationError


def utc_now() -> datetime:
    return datetime.now(UTC)


class TransactionMode(str, Enum):
    SINGLE = "single"
    PER_RECORD = "per_record"
    NONE = "none"

    @property
    def label(self) -> str:
        return {
            TransactionMode.SINGLE: "single (all-or-nothing)",
            TransactionMode.PER_RECORD: "per-record",
            TransactionMode.NONE: "none",
        }[self]

    @classmethod
    def coerce(cls, value: object) -> "TransactionMode":
        if isinstance(value, cls):
            return value
        if value is True:
            return cls.SINGLE
        if value is False or value is None:
            return cls.NONE
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ShiftConfigurationError(
            f"Invalid transaction mode: {value!r}. Expected 'single', 'per_record', 'none', True, or False."
        )


@dataclass(frozen=True)
class ShiftOptions:
    description: str | None = None
    transaction_mode: TransactionMode = TransactionMode.SINGLE
    progress: bool | None = None
    throttle: float | None = None
    allow_external_requests: tuple[AllowedHost, ...] = ()
    suppress_repeated_logs: bool | None = None
    task_name: str | None = None
    batch_size: int | None = None


@dataclass
class Stats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class ErrorEntry:
    record: str
    error: str
    backtrace: tuple[str, ...] = ()


@dataclass
class RunContext:
    dry_run: bool
    transaction_mode: TransactionMode
    status_interval: int | None = None
    stats: Stats = field(default_factory=Stats)
    errors: list[ErrorEntry] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    last_status_print: datetime = field(default_factory=utc_now)
    interrupted: bool = False
    last_successful_id: object | None = None
    label: str = "records"

    def elapsed_seconds(self) -> float:
        return (utc_now() - self.started_at).total_seconds()


@dataclass(frozen=True)
class ShiftResult:
    ok: bool
    error: str | None
    exception: BaseException | None
    stats: Stats
    errors: tuple[ErrorEntry, ...]
    dry_run: bool
    interrupted: bool
    last_successful_id: object | None
