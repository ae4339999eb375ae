"""Helpers for exercising shifts from an application's pytest suite.

    result = run_shift(BackfillTimeZones, session_factory)
    assert result.ok

    result, output = capture_shift_output(BackfillTimeZones, session_factory, commit=True)
    assert "SUMMARY" in output
"""
import io

from sqlalchemy.orm import Session, sessionmaker

from datashift.schemas import ShiftResult
from datashift.shift import Shift


def run_shift(
    shift_cls: type[Shift],
    session_factory: sessionmaker[Session],
    dry_run: bool = True,
    commit: bool = False,
    **kwargs,
) -> ShiftResult:
    continue_from = kwargs.pop("continue_from", None)
    shift = shift_cls(session_factory, **kwargs)
    return shift.run(dry_run=False if commit else dry_run, continue_from=continue_from)


def capture_shift_output(
    shift_cls: type[Shift],
    session_factory: sessionmaker[Session],
    dry_run: bool = True,
    commit: bool = False,
    **kwargs,
) -> tuple[ShiftResult, str]:
    buffer = io.StringIO()
    result = run_shift(shift_cls, session_factory, dry_run=dry_run, commit=commit, out=buffer, **kwargs)
    return result, buffer.getvalue()
