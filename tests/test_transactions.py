from sqlalchemy import select

from datashift.schemas import TransactionMode
from datashift.shift import Shift
from datashift.transactions import TransactionStrategy
from shift_models import User, time_zones


class FailOnSecondSingle(Shift):
    def collection(self):
        return select(User)

    def process_record(self, user: User) -> None:
        if user.email == "user2@example.com":
            raise ValueError("cannot convert user2")
        user.time_zone = "UTC"


class FailOnSecondPerRecord(FailOnSecondSingle, transaction="per_record"):
    pass


class ConvertsAll(Shift):
    def collection(self):
        return select(User)

    def process_record(self, user: User) -> None:
        user.time_zone = "UTC"


class DuplicateEmails(Shift):
    def collection(self):
        return select(User)

    def process_record(self, user: User) -> None:
        user.email = "same@example.com"


class CommitsItself(Shift, transaction="none"):
    def collection(self):
        return select(User)

    def process_record(self, user: User) -> None:
        user.time_zone = "UTC"
        if not self.dry_run:
            self.session.commit()


class CommitsUnconditionally(Shift, transaction="none"):
    def collection(self):
        return select(User)

    def process_record(self, user: User) -> None:
        user.time_zone = "UTC"
        self.session.commit()


def test_single_mode_failure_rolls_back_everything(session_factory, shift_config, users, capsys) -> None:
    result = FailOnSecondSingle(session_factory, config=shift_config).run(dry_run=False)

    assert not result.ok
    assert "1 record(s) failed" in result.error
    assert result.stats.processed == 2
    assert result.stats.succeeded == 1
    assert result.stats.failed == 1
    assert time_zones(session_factory) == {user_id: None for user_id in users}

    output = capsys.readouterr().out
    assert f"ERROR User#{users[1]}: cannot convert user2" in output
    assert "CONTINUE_FROM=" not in output


def test_failed_final_commit_is_reported_without_counting_a_record(
    session_factory, shift_config, users, monkeypatch, capsys
) -> None:
    def fail_commit(self, db) -> None:
        raise RuntimeError("database went away")

    monkeypatch.setattr(TransactionStrategy, "complete", fail_commit)

    result = ConvertsAll(session_factory, config=shift_config).run(dry_run=False)

    assert not result.ok
    assert result.error == "transaction failed: database went away"
    assert "record(s) failed" not in result.error
    assert result.stats.processed == 3
    assert result.stats.failed == 0
    assert result.stats.processed == result.stats.succeeded + result.stats.failed
    assert [entry.record for entry in result.errors] == ["transaction"]
    assert time_zones(session_factory) == {user_id: None for user_id in users}
    assert "  transaction: database went away" in capsys.readouterr().out


def test_single_mode_attributes_flush_errors_to_the_record(session_factory, shift_config, users) -> None:
    result = DuplicateEmails(session_factory, config=shift_config).run(dry_run=False)

    assert not result.ok
    assert [entry.record for entry in result.errors] == [f"User#{users[1]}"]
    with session_factory() as db:
        assert db.scalars(select(User.email).where(User.email == "same@example.com")).all() == []


def test_per_record_failure_keeps_other_records(session_factory, shift_config, users, capsys) -> None:
    result = FailOnSecondPerRecord(session_factory, config=shift_config).run(dry_run=False)

    assert not result.ok
    assert "1 record(s) failed" in result.error
    assert result.stats.processed == 3
    assert result.stats.processed == result.stats.succeeded + result.stats.failed
    assert result.last_successful_id == users[2]
    assert time_zones(session_factory) == {users[0]: "UTC", users[1]: None, users[2]: "UTC"}

    entry = result.errors[0]
    assert entry.record == f"User#{users[1]}"
    assert entry.error == "cannot convert user2"
    assert 0 < len(entry.backtrace) <= 3
    assert "process_record" in entry.backtrace[0]

    output = capsys.readouterr().out
    assert "To resume from the last successful record:" in output
    assert f"CONTINUE_FROM={users[2]} COMMIT=1 python -m datashift.main run" in output


def test_dry_run_persists_nothing_in_any_wrapped_mode(session_factory, shift_config, users) -> None:
    for shift_cls in (FailOnSecondSingle, FailOnSecondPerRecord):
        result = shift_cls(session_factory, config=shift_config).run(dry_run=True)
        assert result.dry_run
        assert time_zones(session_factory) == {user_id: None for user_id in users}


def test_per_record_dry_run_continues_after_a_failure(session_factory, shift_config, users) -> None:
    result = FailOnSecondPerRecord(session_factory, config=shift_config).run(dry_run=True)

    assert result.stats.processed == 3
    assert result.stats.succeeded == 2
    assert result.stats.failed == 1
    assert time_zones(session_factory) == {user_id: None for user_id in users}


def test_none_mode_warns_and_trusts_user_guards(session_factory, shift_config, users, capsys) -> None:
    dry = CommitsItself(session_factory, config=shift_config).run(dry_run=True)
    assert dry.ok
    assert time_zones(session_factory) == {user_id: None for user_id in users}

    output = capsys.readouterr().out
    assert "[!] WARNING: CommitsItself runs with transaction='none'." in output
    assert "This dry run is NOT rolled back automatically." in output
    assert "Dry run finished without automatic rollback." in output

    live = CommitsItself(session_factory, config=shift_config).run(dry_run=False)
    assert live.ok
    assert set(time_zones(session_factory).values()) == {"UTC"}


def test_none_mode_countdown_sleeps_before_running(session_factory, shift_config, users, monkeypatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("datashift.shift.time.sleep", sleeps.append)

    CommitsItself(session_factory, config=shift_config.configure(no_transaction_countdown=3)).run(dry_run=True)

    assert sleeps == [3]


def test_none_mode_dry_run_is_not_wrapped_by_default(session_factory, shift_config, users) -> None:
    CommitsUnconditionally(session_factory, config=shift_config).run(dry_run=True)

    assert set(time_zones(session_factory).values()) == {"UTC"}


def test_strict_dry_run_wraps_none_mode(session_factory, shift_config, users, capsys) -> None:
    strict = shift_config.configure(strict_dry_run=True)
    result = CommitsUnconditionally(session_factory, config=strict).run(dry_run=True)

    assert result.ok
    assert time_zones(session_factory) == {user_id: None for user_id in users}
    output = capsys.readouterr().out
    assert "NOT rolled back automatically" not in output
    assert "[!] No changes were saved." in output


def test_strategy_rollback_decisions() -> None:
    assert TransactionStrategy(TransactionMode.SINGLE, dry_run=True).rolls_back_dry_run
    assert TransactionStrategy(TransactionMode.PER_RECORD, dry_run=True).rolls_back_dry_run
    assert not TransactionStrategy(TransactionMode.NONE, dry_run=True).rolls_back_dry_run
    assert TransactionStrategy(TransactionMode.NONE, dry_run=True, strict_dry_run=True).rolls_back_dry_run
    assert not TransactionStrategy(TransactionMode.SINGLE, dry_run=False).rolls_back_dry_run


def test_transaction_mode_coercion() -> None:
    assert TransactionMode.coerce(True) is TransactionMode.SINGLE
    assert TransactionMode.coerce(False) is TransactionMode.NONE
    assert TransactionMode.coerce(None) is TransactionMode.NONE
    assert TransactionMode.coerce("Per_Record") is TransactionMode.PER_RECORD
    assert TransactionMode.PER_RECORD.label == "per-record"
