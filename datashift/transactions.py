from collections.abc import Callable, Generator
from contextlib import contextmanager
import logging

from sqlalchemy.orm import Session, sessionmaker

from datashift.database import plain_session, rollback_only_session
from datashift.errors import SkipRecord
from datashift.schemas import TransactionMode


logger = logging.getLogger(__name__)


class TransactionStrategy:
    """Decides how database transactions wrap one run.

    Two layers: ``scope()`` is the dry-run safety net (a rollback-only
    session for single and per-record runs), while ``around_record()`` and
    ``complete()`` isolate failures in live runs.
    """

    def __init__(self, mode: TransactionMode, *, dry_run: bool, strict_dry_run: bool = False) -> None:
        self.mode = mode
        self.dry_run = dry_run
        self.strict_dry_run = strict_dry_run

    @property
    def rolls_back_dry_run(self) -> bool:
        if not self.dry_run:
            return False
        return self.mode is not TransactionMode.NONE or self.strict_dry_run

    @contextmanager
    def scope(self, session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
        opener = rollback_only_session if self.rolls_back_dry_run else plain_session
        with opener(session_factory) as db:
            try:
                yield db
            except BaseException:
                if self.mode is not TransactionMode.NONE:
                    db.rollback()
                raise

    def around_record(self, db: Session, fn: Callable[[], None]) -> None:
        if self.mode is TransactionMode.NONE:
            fn()
            return

        try:
            fn()
            db.flush()
        except SkipRecord:
            self._finish_record(db)
            raise
        except Exception:
            if self.mode is TransactionMode.PER_RECORD:
                db.rollback()
            raise
        self._finish_record(db)

    def _finish_record(self, db: Session) -> None:
        if self.mode is TransactionMode.PER_RECORD and not self.dry_run:
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise

    def complete(self, db: Session) -> None:
        if self.mode is not TransactionMode.SINGLE:
            return
        if self.dry_run:
            logger.info("dry run complete, rolling back all changes")
            return
        db.commit()
