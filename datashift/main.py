import argparse
import importlib
import logging

from datashift import env
from datashift.config import get_config
from datashift.database import build_session_factory
from datashift.shift import Shift


EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one-off data shifts")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one shift (dry run unless --commit or COMMIT=1)")
    run_parser.add_argument("target", help="Shift class as module.path:ClassName")
    mode = run_parser.add_mutually_exclusive_group()
    mode.add_argument("--commit", action="store_true", help="persist changes (same as COMMIT=1)")
    mode.add_argument("--dry-run", action="store_true", help="force a dry run even if COMMIT is set")
    run_parser.add_argument("--continue-from", default=None, help="resume a streaming collection after this key")
    run_parser.add_argument("--status-interval", type=int, default=None, help="print status every N seconds")
    run_parser.add_argument(
        "--no-countdown",
        action="store_true",
        help="skip the pause before transaction='none' shifts start",
    )

    return parser.parse_args(argv)


def load_shift(target: str) -> type[Shift]:
    module_name, _, class_name = target.partition(":")
    if not module_name or not class_name:
        raise SystemExit(f"target must look like module.path:ClassName, got {target!r}")

    module = importlib.import_module(module_name)
    shift_cls = module
    for part in class_name.split("."):
        shift_cls = getattr(shift_cls, part)
    if not isinstance(shift_cls, type) or not issubclass(shift_cls, Shift):
        raise SystemExit(f"{target} is not a Shift subclass")
    return shift_cls


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.no_countdown:
        config = config.configure(no_transaction_countdown=0)

    dry_run = env.dry_run_from_env()
    if args.commit:
        dry_run = False
    elif args.dry_run:
        dry_run = True
    continue_from = args.continue_from or env.continue_from()

    shift_cls = load_shift(args.target)
    session_factory = build_session_factory(config.database_url)
    shift = shift_cls(session_factory, config=config)

    try:
        result = shift.run(dry_run=dry_run, continue_from=continue_from, status_interval=args.status_interval)
    except KeyboardInterrupt:
        raise SystemExit(EXIT_INTERRUPTED)

    print(
        "shift={shift} status={status} dry_run={dry_run} processed={processed} succeeded={succeeded} "
        "failed={failed} skipped={skipped} last_successful_id={last}".format(
            shift=shift_cls.target(),
            status="succeeded" if result.ok else "failed",
            dry_run=result.dry_run,
            processed=result.stats.processed,
            succeeded=result.stats.succeeded,
            failed=result.stats.failed,
            skipped=result.stats.skipped,
            last=result.last_successful_id,
        )
    )
    if not result.ok:
        print(f"error={result.error}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
