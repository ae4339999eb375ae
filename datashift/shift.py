"""The shift orchestrator: one run of a bulk data correction.

Subclasses declare policies as class keyword arguments and implement
``collection()`` and ``process_record(record)``::

    class BackfillTimeZones(Shift, description="Backfill user time zones", transaction="per_record"):
        def collection(self):
            return select(User).where(User.time_zone.is_(None))

        def process_record(self, user):
            user.time_zone = "UTC"

Runs are dry by default: the database work is rolled back and outbound
side effects are intercepted unless ``run(dry_run=False)`` is requested.
"""
from collections.abc import Callable, Generator, Iterable
from contextlib import ExitStack, contextmanager
from dataclasses import replace
import logging
import sys
import time
import traceback
from typing import ClassVar, TextIO

from sqlalchemy.orm import Session, sessionmaker

from datashift import env
from datashift.config import ShifterConfig, get_config
from datashift.database import database_host
from datashift.dedup import deduplicating_logger
from datashift.errors import (
    ExternalRequestNotAllowedError,
    ShiftConfigurationError,
    ShiftFailedError,
    SkipRecord,
)
from datashift.guards import GuardRegistry, default_registry, side_effect_guard
from datashift.output import print_header, print_no_transaction_warning, print_status, print_summary
from datashift.progress import create_progress_bar
from datashift.records import (
    StreamingCollection,
    checkpoint_key,
    default_label,
    find_exactly,
    identifier,
    resolve_collection,
)
from datashift.schemas import ErrorEntry, RunContext, ShiftOptions, ShiftResult, TransactionMode, utc_now
from datashift.signals import status_signal_handlers
from datashift.transactions import TransactionStrategy


logger = logging.getLogger(__name__)

_UNSET = object()
BACKTRACE_FRAMES = 3


def _backtrace(exc: BaseException) -> tuple[str, ...]:
    frames = traceback.extract_tb(exc.__traceback__)[-BACKTRACE_FRAMES:]
    return tuple(f"{frame.filename}:{frame.lineno}:in {frame.name}" for frame in reversed(frames))


class Shift:
    options: ClassVar[ShiftOptions] = ShiftOptions()

    def __init_subclass__(
        cls,
        *,
        description=_UNSET,
        transaction=_UNSET,
        progress=_UNSET,
        throttle=_UNSET,
        allow_external_requests=_UNSET,
        suppress_repeated_logs=_UNSET,
        task_name=_UNSET,
        batch_size=_UNSET,
        **kwargs,
    ) -> None:
        super().__init_subclass__(**kwargs)
        changes: dict[str, object] = {}
        if description is not _UNSET:
            changes["description"] = description
        if transaction is not _UNSET:
            changes["transaction_mode"] = TransactionMode.coerce(transaction)
        if progress is not _UNSET:
            changes["progress"] = progress
        if throttle is not _UNSET:
            if throttle is not None and throttle < 0:
                raise ShiftConfigurationError(f"throttle must be a non-negative number of seconds, got {throttle!r}")
            changes["throttle"] = throttle
        if allow_external_requests is not _UNSET:
            changes["allow_external_requests"] = tuple(allow_external_requests or ())
        if suppress_repeated_logs is not _UNSET:
            changes["suppress_repeated_logs"] = suppress_repeated_logs
        if task_name is not _UNSET:
            changes["task_name"] = task_name
        if batch_size is not _UNSET:
            if batch_size is not None and batch_size < 1:
                raise ShiftConfigurationError(f"batch_size must be positive, got {batch_size!r}")
            changes["batch_size"] = batch_size
        cls.options = replace(cls.options, **changes)

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        config: ShifterConfig | None = None,
        out: TextIO | None = None,
        guards: GuardRegistry | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or get_config()
        self.guards = guards if guards is not None else default_registry()
        self._out = out
        self._context: RunContext | None = None
        self._strategy: TransactionStrategy | None = None
        self._session: Session | None = None
        self._logger = None
        self._continue_from: object | None = None

    @classmethod
    def target(cls) -> str:
        return f"{cls.__module__}:{cls.__qualname__}"

    @classmethod
    def display_name(cls) -> str:
        return cls.options.task_name or cls.__name__

    @classmethod
    def run_from_env(cls, session_factory: sessionmaker[Session], **kwargs) -> ShiftResult:
        """Run with COMMIT/DRY_RUN/CONTINUE_FROM from the environment and raise on failure."""
        result = cls(session_factory, **kwargs).run(env.dry_run_from_env(), continue_from=env.continue_from())
        if result.exception is not None:
            raise result.exception
        if not result.ok:
            raise ShiftFailedError(result.error)
        return result

    # --- state exposed to shift code ---

    @property
    def out(self) -> TextIO:
        return self._out or sys.stdout

    @property
    def context(self) -> RunContext | None:
        return self._context

    @property
    def dry_run(self) -> bool:
        return True if self._context is None else self._context.dry_run

    @property
    def session(self) -> Session:
        if self._session is None:
            raise ShiftConfigurationError("The session is only available while the shift is running.")
        return self._session

    @property
    def logger(self):
        if self._logger is not None:
            return self._logger
        return logging.getLogger(type(self).__module__)

    def log(self, message: str) -> None:
        print(message, file=self.out)

    def skip(self, reason: str | None = None) -> None:
        raise SkipRecord(reason)

    def find_exactly(self, model: type, ids: Iterable[object]) -> list[object]:
        return find_exactly(self.session, model, ids)

    # --- override points ---

    def collection(self):
        raise NotImplementedError(f"{type(self).__name__}: override `collection`")

    def process_record(self, record) -> None:
        raise NotImplementedError(f"{type(self).__name__}: override `process_record`")

    def perform(self) -> None:
        self.for_each_record(self.collection(), self.process_record)

    # --- run lifecycle ---

    def run(
        self, dry_run: bool = True, *, continue_from: object | None = None, status_interval: int | None = None
    ) -> ShiftResult:
        options = self.options
        self._context = RunContext(
            dry_run=dry_run,
            transaction_mode=options.transaction_mode,
            status_interval=env.status_interval_seconds(self.config, explicit=status_interval),
        )
        self._continue_from = continue_from
        strategy = TransactionStrategy(
            options.transaction_mode, dry_run=dry_run, strict_dry_run=self.config.strict_dry_run
        )
        self._strategy = strategy
        logger.info(
            "shift started",
            extra={"shift": self.target(), "dry_run": dry_run, "transaction_mode": options.transaction_mode.value},
        )

        try:
            self._check_overrides()
            if options.transaction_mode is TransactionMode.NONE:
                self._warn_no_transaction(strategy)

            with ExitStack() as stack:
                if dry_run:
                    stack.enter_context(side_effect_guard(self.guards, allowed_hosts=self._allowed_hosts()))
                self._logger = stack.enter_context(self._logging_scope())
                stack.enter_context(status_signal_handlers(self._print_status))
                self._session = stack.enter_context(strategy.scope(self.session_factory))
                try:
                    self.perform()
                    self._complete(strategy)
                except KeyboardInterrupt:
                    self._interrupt()
                    raise
                except Exception:
                    self._print_summary()
                    raise
                self._print_summary()
        except ShiftConfigurationError as exc:
            logger.error("shift misconfigured", extra={"shift": self.target(), "error": str(exc)})
            return self._result(exc)
        except ShiftFailedError as exc:
            logger.warning("shift failed", extra={"shift": self.target(), "error": str(exc)})
            return self._result(exc)
        except Exception as exc:
            logger.exception("shift raised", extra={"shift": self.target()})
            return self._result(exc)
        finally:
            self._session = None
            self._logger = None

        logger.info("shift finished", extra={"shift": self.target(), "processed": self._context.stats.processed})
        return self._result(None)

    def for_each_record(
        self, records: object, process: Callable[[object], None], label: str | None = None
    ) -> None:
        context = self._require_context()
        collection = resolve_collection(records, batch_size=self.options.batch_size or self.config.batch_size)
        collection = self._apply_continue_from(collection)

        if isinstance(collection, StreamingCollection):
            total = collection.count(self.session)
            items: Iterable[object] = collection.iterate(self.session)
            context.label = label or collection.label
        else:
            total = len(collection)
            items = collection
            context.label = label or default_label(collection)

        print_header(
            self.out,
            shift_name=self.display_name(),
            description=self.options.description,
            total=total,
            label=context.label,
            dry_run=context.dry_run,
            transaction_mode=context.transaction_mode,
            status_interval=context.status_interval,
        )

        bar = create_progress_bar(total=total, dry_run=context.dry_run, enabled=self._progress_enabled())
        try:
            for record in items:
                if not self._process_one(record, process):
                    break
                if bar is not None:
                    bar.update(1)
                if self.options.throttle:
                    time.sleep(self.options.throttle)
        except KeyboardInterrupt:
            self._interrupt()
            raise
        finally:
            if bar is not None:
                bar.close()

        if context.errors:
            raise ShiftFailedError(f"{context.stats.failed} record(s) failed")
        if context.dry_run and context.transaction_mode is TransactionMode.SINGLE:
            self.log("\nDry run complete - rolling back all changes.")

    # --- internals ---

    def _require_context(self) -> RunContext:
        if self._context is None or self._strategy is None:
            raise ShiftConfigurationError("for_each_record can only be called while the shift is running.")
        return self._context

    def _check_overrides(self) -> None:
        cls = type(self)
        if cls.perform is not Shift.perform:
            return
        missing = [name for name in ("collection", "process_record") if getattr(cls, name) is getattr(Shift, name)]
        if missing:
            names = " and ".join(f"`{name}`" for name in missing)
            raise ShiftConfigurationError(f"{cls.__name__}: override {names}")

    def _allowed_hosts(self) -> tuple:
        hosts = tuple(self.options.allow_external_requests) + tuple(self.config.allow_external_requests)
        # The shift still has to reach its own database when that is a TCP server.
        db_host = database_host(self.session_factory)
        if db_host:
            hosts += (db_host,)
        return hosts

    def _progress_enabled(self) -> bool:
        if self.options.progress is not None:
            return self.options.progress
        return self.config.progress_enabled

    @contextmanager
    def _logging_scope(self) -> Generator[object, None, None]:
        real_logger = logging.getLogger(type(self).__module__)
        enabled = self.options.suppress_repeated_logs
        if enabled is None:
            enabled = self.config.suppress_repeated_logs
        if not enabled:
            yield real_logger
            return
        with deduplicating_logger(real_logger, cap=self.config.repeated_log_cap, stream=self.out) as proxy:
            yield proxy

    def _warn_no_transaction(self, strategy: TransactionStrategy) -> None:
        countdown = max(self.config.no_transaction_countdown, 0)
        print_no_transaction_warning(
            self.out,
            shift_name=self.display_name(),
            dry_run=strategy.dry_run and not strategy.rolls_back_dry_run,
            countdown=countdown,
        )
        logger.warning("shift runs without a transaction", extra={"shift": self.target(), "countdown": countdown})
        if countdown:
            time.sleep(countdown)

    def _apply_continue_from(self, collection):
        if self._continue_from is None:
            return collection
        if not isinstance(collection, StreamingCollection):
            raise ShiftConfigurationError(
                "continue_from is only supported for streaming (select()) collections. "
                "List-based collections (e.g. from find_exactly) cannot be resumed."
            )
        self.log(f"[CONTINUE_FROM] Resuming from {collection.key_attribute.key} > {self._continue_from}")
        return collection.after(self._continue_from)

    def _process_one(self, record: object, process: Callable[[object], None]) -> bool:
        """Process one record; returns False when the run must stop iterating."""
        context = self._context
        stats = context.stats
        key = checkpoint_key(record)
        stats.processed += 1
        try:
            self._strategy.around_record(self.session, lambda: process(record))
        except SkipRecord as skipped:
            stats.skipped += 1
            context.last_successful_id = key
            if skipped.reason:
                self.log(f"  SKIP: {skipped.reason}")
        except ExternalRequestNotAllowedError as exc:
            self._record_failure(record, exc)
            raise
        except Exception as exc:
            self._record_failure(record, exc)
            if context.transaction_mode is TransactionMode.SINGLE:
                return False
        else:
            stats.succeeded += 1
            context.last_successful_id = key
        finally:
            self._maybe_print_interval_status()
        return True

    def _record_failure(self, record: object, exc: Exception) -> None:
        context = self._context
        record_id = identifier(record)
        context.stats.failed += 1
        context.errors.append(ErrorEntry(record=record_id, error=str(exc), backtrace=_backtrace(exc)))
        self.log(f"ERROR {record_id}: {exc}")

    def _complete(self, strategy: TransactionStrategy) -> None:
        try:
            strategy.complete(self.session)
        except Exception as exc:
            context = self._context
            if not context.errors:
                context.errors.append(ErrorEntry(record="transaction", error=str(exc), backtrace=_backtrace(exc)))
            raise

    def _maybe_print_interval_status(self) -> None:
        context = self._context
        interval = context.status_interval
        if not interval or interval <= 0:
            return
        now = utc_now()
        if (now - context.last_status_print).total_seconds() < interval:
            return
        context.last_status_print = now
        self._print_status(f"STATUS_INTERVAL ({interval}s)")

    def _print_status(self, trigger: str) -> None:
        if self._context is None:
            return
        print_status(self.out, self._context, trigger=trigger)

    def _print_summary(self) -> None:
        print_summary(
            self.out,
            self._context,
            target=self.target(),
            rolled_back=self._strategy.rolls_back_dry_run,
        )

    def _interrupt(self) -> None:
        context = self._context
        if context.interrupted:
            return
        context.interrupted = True
        logger.warning("shift interrupted", extra={"shift": self.target()})
        self.log("\n\n*** Interrupted by user (Ctrl+C) ***")
        self._print_summary()

    def _result(self, exc: Exception | None) -> ShiftResult:
        context = self._context
        error = None
        if context.stats.failed:
            error = f"{context.stats.failed} record(s) failed"
            if exc is not None and not isinstance(exc, ShiftFailedError):
                error = f"{error}: {exc}"
        elif context.errors:
            # Every record went through; the final commit did not.
            error = f"transaction failed: {context.errors[0].error}"
        elif exc is not None:
            error = str(exc) or type(exc).__name__
        return ShiftResult(
            ok=exc is None and not context.errors,
            error=error,
            exception=exc,
            stats=replace(context.stats),
            errors=tuple(context.errors),
            dry_run=context.dry_run,
            interrupted=context.interrupted,
            last_successful_id=context.last_successful_id,
        )
