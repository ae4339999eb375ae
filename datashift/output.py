"""Operator-facing text blocks printed around a shift run."""
import os
import signal
from typing import TextIO

from datashift.schemas import ErrorEntry, RunContext, Stats, TransactionMode


RULE = "=" * 60
THIN_RULE = "-" * 60


def resume_command(target: str, checkpoint: object) -> str:
    return f"CONTINUE_FROM={checkpoint} COMMIT=1 python -m datashift.main run {target}"


def status_hint(status_interval: int | None) -> str | None:
    tips = []
    if hasattr(signal, "SIGINFO"):
        tips.append("Ctrl+T")
    if hasattr(signal, "SIGUSR1"):
        tips.append(f"kill -USR1 {os.getpid()}")

    if status_interval:
        interval_msg = f"STATUS_INTERVAL is set to {status_interval}s."
        return f"{interval_msg} Or: {', '.join(tips)}" if tips else interval_msg
    if tips:
        return " or ".join(tips)
    return None


def print_header(
    out: TextIO,
    *,
    shift_name: str,
    description: str | None,
    total: int,
    label: str,
    dry_run: bool,
    transaction_mode: TransactionMode,
    status_interval: int | None,
) -> None:
    print("", file=out)
    print(RULE, file=out)
    print(shift_name, file=out)
    if description:
        print(f'"{description}"', file=out)
    print(THIN_RULE, file=out)
    print(f"Mode:        {'DRY RUN (no changes will be persisted)' if dry_run else 'LIVE'}", file=out)
    print(f"Records:     {total} {label}", file=out)
    print(f"Transaction: {transaction_mode.label}", file=out)
    hint = status_hint(status_interval)
    if hint:
        print(f"Status:      {hint} for live progress (no abort)", file=out)
    print(RULE, file=out)
    print("", file=out)


def print_no_transaction_warning(out: TextIO, *, shift_name: str, dry_run: bool, countdown: int) -> None:
    print("", file=out)
    print(RULE, file=out)
    print(f"[!] WARNING: {shift_name} runs with transaction='none'.", file=out)
    print("    No automatic transaction wraps this run; every write is applied as your code commits it.", file=out)
    if dry_run:
        print("    This dry run is NOT rolled back automatically. Guard writes with `if not self.dry_run`.", file=out)
    if countdown > 0:
        print(f"    Starting in {countdown}s. Press Ctrl+C to abort.", file=out)
    print(RULE, file=out)


def _print_counters(out: TextIO, elapsed: float, stats: Stats) -> None:
    print(f"Duration:    {elapsed:.1f}s", file=out)
    print(f"Processed:   {stats.processed}", file=out)
    print(f"Succeeded:   {stats.succeeded}", file=out)
    print(f"Failed:      {stats.failed}", file=out)
    print(f"Skipped:     {stats.skipped}", file=out)


def print_errors(out: TextIO, errors: list[ErrorEntry]) -> None:
    print("", file=out)
    print("ERRORS:", file=out)
    for entry in errors:
        print(f"  {entry.record}: {entry.error}", file=out)
        for line in entry.backtrace:
            print(f"    {line}", file=out)


def print_status(out: TextIO, context: RunContext, *, trigger: str) -> None:
    print("", file=out)
    print(RULE, file=out)
    print(f"STATUS (still running) - triggered by {trigger}", file=out)
    print(THIN_RULE, file=out)
    _print_counters(out, context.elapsed_seconds(), context.stats)
    if context.errors:
        print_errors(out, context.errors)
    print(RULE, file=out)
    print("", file=out)


def summary_title(*, dry_run: bool, interrupted: bool) -> str:
    base = "SUMMARY (DRY RUN)" if dry_run else "SUMMARY"
    return f"{base} - INTERRUPTED" if interrupted else base


def print_interrupt_warning(out: TextIO, *, transaction_mode: TransactionMode, rolled_back: bool) -> None:
    print("", file=out)
    if transaction_mode is TransactionMode.NONE and not rolled_back:
        print("[!] INTERRUPTED: transaction='none' mode was active.", file=out)
        print("    Some DB changes may have been applied before interruption.", file=out)
        print("    Non-DB side effects (API calls, emails, etc.) are not rolled back.", file=out)
        print("    Review the database state before re-running.", file=out)
    elif rolled_back:
        print("[!] INTERRUPTED: All DB changes have been rolled back (dry run).", file=out)
        print("    Non-DB side effects (API calls, emails, etc.) are not rolled back.", file=out)
    elif transaction_mode is TransactionMode.PER_RECORD:
        print("[!] INTERRUPTED: the record in flight has been rolled back.", file=out)
        print("    Records committed before the interruption remain persisted.", file=out)
        print("    Non-DB side effects (API calls, emails, etc.) are not rolled back.", file=out)
    else:
        print("[!] INTERRUPTED: DB transaction has been rolled back.", file=out)
        print("    No DB changes were persisted.", file=out)
        print("    Non-DB side effects (API calls, emails, etc.) are not rolled back.", file=out)


def print_summary(
    out: TextIO,
    context: RunContext,
    *,
    target: str,
    rolled_back: bool,
) -> None:
    print("", file=out)
    print(RULE, file=out)
    print(summary_title(dry_run=context.dry_run, interrupted=context.interrupted), file=out)
    print(THIN_RULE, file=out)
    _print_counters(out, context.elapsed_seconds(), context.stats)

    if context.errors:
        print_errors(out, context.errors)
    if context.interrupted:
        print_interrupt_warning(out, transaction_mode=context.transaction_mode, rolled_back=rolled_back)
    if context.dry_run and not context.interrupted:
        print("", file=out)
        print("[!] No changes were saved." if rolled_back else "[!] Dry run finished without automatic rollback.", file=out)
        print("To apply these changes, run:", file=out)
        print(f"    COMMIT=1 python -m datashift.main run {target}", file=out)
    if (
        not context.dry_run
        and context.transaction_mode is not TransactionMode.SINGLE
        and context.errors
        and context.last_successful_id is not None
    ):
        print("", file=out)
        print("To resume from the last successful record:", file=out)
        print(f"    {resume_command(target, context.last_successful_id)}", file=out)

    print(RULE, file=out)
