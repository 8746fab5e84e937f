import argparse
import logging

from mafia_import.config import get_settings
from mafia_import.database import build_session_factory
from mafia_import.errors import ImportAlreadyRunningError, NoSkippedPagesError
from mafia_import.registry import RunRegistry
from mafia_import.run_lock import RunLock
from mafia_import.scheduler import start_scheduler
from mafia_import.schemas import Phase
from mafia_import.sources import FileSnapshotSource


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import tournament data from a paginated source")
    parser.add_argument("--source-dir", help="Snapshot directory to import from (defaults to SOURCE_DIR)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one import, resuming from the last checkpoint")
    run_parser.add_argument("--fresh", action="store_true", help="ignore any saved checkpoint")
    run_parser.add_argument(
        "--trigger-source",
        default="manual",
        choices=["manual", "scheduled"],
        help="Metadata label for how this run was triggered",
    )

    subparsers.add_parser("status", help="show the current import status")

    history_parser = subparsers.add_parser("history", help="list recent import runs")
    history_parser.add_argument("--limit", type=int, default=10)

    subparsers.add_parser("cancel", help="ask the running import to stop")
    subparsers.add_parser("unlock", help="clear a run lock left behind by a crashed import")

    retry_parser = subparsers.add_parser("retry-pages", help="retry pages skipped by an earlier run")
    retry_parser.add_argument("--run-id", type=int, required=True)
    retry_parser.add_argument("--phase", required=True, choices=[phase.value for phase in Phase])
    retry_parser.add_argument("pages", nargs="*", type=int, help="pages to retry (default: all skipped)")

    schedule_parser = subparsers.add_parser("schedule", help="start daily scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    session_factory = build_session_factory(settings.database_url)
    source = FileSnapshotSource(args.source_dir or settings.source_dir)
    registry = RunRegistry(settings, session_factory, source)

    if args.command == "schedule":
        start_scheduler(registry, run_now=args.run_now)
        return

    if args.command == "status":
        status = registry.get_status()
        latest = status.latest_run
        print(
            "running={running} progress={progress} operation={operation} last_error={last_error} "
            "validation_rate={rate} latest_run={run_id} latest_status={run_status}".format(
                running=status.is_running,
                progress=status.progress,
                operation=status.current_operation,
                last_error=status.last_error,
                rate=status.validation_rate,
                run_id=latest.run_id if latest else None,
                run_status=latest.status if latest else None,
            )
        )
        return

    if args.command == "history":
        for run in registry.get_history(limit=args.limit):
            print(
                "run_id={run_id} type={run_type} trigger={trigger} status={status} records={records} "
                "started={started} completed={completed}".format(
                    run_id=run.run_id,
                    run_type=run.run_type,
                    trigger=run.trigger_source,
                    status=run.status,
                    records=run.records_processed,
                    started=run.started_at.isoformat(),
                    completed=run.completed_at.isoformat() if run.completed_at else None,
                )
            )
        return

    if args.command == "cancel":
        requested = registry.cancel()
        print(f"cancel_requested={requested}")
        if not requested:
            raise SystemExit(1)
        return

    if args.command == "unlock":
        RunLock(session_factory).force_release()
        print("unlocked=True")
        return

    if args.command == "retry-pages":
        try:
            retried = registry.retry_skipped_pages(args.run_id, Phase(args.phase), args.pages or None)
        except (LookupError, NoSkippedPagesError, ImportAlreadyRunningError) as exc:
            print(f"error={exc}")
            raise SystemExit(1)
        print(
            "run_id={run_id} phase={phase} recovered={recovered} still_skipped={still} records_added={added}".format(
                run_id=retried.run_id,
                phase=retried.phase.value,
                recovered=",".join(str(page) for page in retried.recovered_pages) or "-",
                still=",".join(str(page) for page in retried.still_skipped) or "-",
                added=retried.records_added,
            )
        )
        if retried.still_skipped:
            raise SystemExit(1)
        return

    try:
        result = registry.run(trigger_source=args.trigger_source, resume=not args.fresh)
    except ImportAlreadyRunningError as exc:
        print(f"status=LOCKED error={exc}")
        raise SystemExit(2)

    skipped = ";".join(f"{phase}:{','.join(str(page) for page in pages)}" for phase, pages in result.skipped_pages.items())
    print(
        "run_id={run_id} trigger={trigger} status={status} records={records} validation_rate={rate:.4f} skipped={skipped}".format(
            run_id=result.run_id,
            trigger=result.trigger_source,
            status=result.status,
            records=result.records_processed,
            rate=result.validation_rate,
            skipped=skipped or "-",
        )
    )
    if result.status != "COMPLETED":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
