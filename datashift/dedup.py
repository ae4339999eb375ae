from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
import hashlib
import logging
import sys
from typing import TextIO


@dataclass
class DeduplicationEntry:
    count: int
    message: str
    level: int


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class LogDeduplicator:
    """Logger proxy that forwards the first occurrence of a message and counts repeats.

    Everything other than the logging calls themselves (``level``,
    ``setLevel``, ``handlers``, ``addHandler`` ...) passes straight through
    to the wrapped logger.
    """

    def __init__(self, real_logger: logging.Logger, *, cap: int) -> None:
        self._logger = real_logger
        self.cap = cap
        self.seen: dict[str, DeduplicationEntry] = {}

    @property
    def real_logger(self) -> logging.Logger:
        return self._logger

    @property
    def level(self) -> int:
        return self._logger.level

    @level.setter
    def level(self, value: int | str) -> None:
        self._logger.setLevel(value)

    def __getattr__(self, name: str):
        return getattr(self._logger, name)

    def log(self, level: int, msg: object, *args, **kwargs) -> None:
        self._add(level, msg, args, kwargs, depth=1)

    def debug(self, msg: object, *args, **kwargs) -> None:
        self._add(logging.DEBUG, msg, args, kwargs, depth=1)

    def info(self, msg: object, *args, **kwargs) -> None:
        self._add(logging.INFO, msg, args, kwargs, depth=1)

    def warning(self, msg: object, *args, **kwargs) -> None:
        self._add(logging.WARNING, msg, args, kwargs, depth=1)

    def error(self, msg: object, *args, **kwargs) -> None:
        self._add(logging.ERROR, msg, args, kwargs, depth=1)

    def exception(self, msg: object, *args, exc_info=True, **kwargs) -> None:
        self._add(logging.ERROR, msg, args, {**kwargs, "exc_info": exc_info}, depth=1)

    def critical(self, msg: object, *args, **kwargs) -> None:
        self._add(logging.CRITICAL, msg, args, kwargs, depth=1)

    fatal = critical

    def suppressed_messages(self) -> dict[str, DeduplicationEntry]:
        return {key: entry for key, entry in self.seen.items() if entry.count > 1}

    def print_summary(self, stream: TextIO | None = None) -> None:
        suppressed = self.suppressed_messages()
        if not suppressed:
            return
        out = stream or sys.stdout
        print("", file=out)
        print("[datashift] Suppressed repeated log messages:", file=out)
        for entry in suppressed.values():
            snippet = _truncate(entry.message, 100)
            print(f"  {entry.count - 1}x suppressed: {snippet!r}", file=out)

    def _add(self, level: int, msg: object, args: tuple, kwargs: dict, *, depth: int) -> None:
        message = self._render(msg, args)
        key = self._message_key(level, message)
        entry = self.seen.get(key)
        if entry is not None:
            entry.count += 1
            return

        self._enforce_cap()
        self.seen[key] = DeduplicationEntry(count=1, message=_truncate(message, 200), level=level)
        # Point caller info at user code rather than this proxy.
        kwargs["stacklevel"] = kwargs.get("stacklevel", 1) + depth + 1
        self._logger.log(level, msg, *args, **kwargs)

    def _render(self, msg: object, args: tuple) -> str:
        if not args:
            return str(msg)
        try:
            return str(msg) % args
        except (TypeError, ValueError):
            return f"{msg} {args!r}"

    def _message_key(self, level: int, message: str) -> str:
        normalized = f"{level}:{self._logger.name}:{message}"
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

    def _enforce_cap(self) -> None:
        if len(self.seen) < self.cap:
            return

        singles = [key for key, entry in self.seen.items() if entry.count == 1]
        for key in singles:
            del self.seen[key]

        if self.seen and len(self.seen) >= self.cap:
            oldest = next(iter(self.seen))
            del self.seen[oldest]


@contextmanager
def deduplicating_logger(
    real_logger: logging.Logger, *, cap: int, stream: TextIO | None = None
) -> Generator[LogDeduplicator, None, None]:
    proxy = LogDeduplicator(real_logger, cap=cap)
    try:
        yield proxy
    finally:
        proxy.print_summary(stream)
