import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from . import config
from .core import OrganizerSettings, TakeoutOrganizerApp
from .database.db import JournalDB
from .database.ops import JournalOperations
from .models import BatchSummary
from .organization.rules import CollisionPolicy
from .reporting import ReportGenerator
from .scanning.discovery import DiskScanner

def setup_logging(dest_root: Path, verbose: bool):
    """Sets up logging to both console and a file in the destination."""
    log_level = logging.DEBUG if verbose else logging.INFO

    # Create dest root if it doesn't exist so we can log there
    dest_root.mkdir(parents=True, exist_ok=True)
    log_file = dest_root / config.LOG_FILENAME

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(threadName)s %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)

def parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {value!r}")

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Takeout Organizer: restore capture times and file media by year/month")

    p.add_argument("src", type=Path, help="Takeout export directory to scan")
    p.add_argument("dest", type=Path, help="Destination library root")

    p.add_argument("--workers", type=int, default=config.DEFAULT_MAX_WORKERS, help="Parallel workers")
    p.add_argument("--sanity-floor", type=parse_date, default=config.SANITY_FLOOR,
                   help="Reject capture times before this date (YYYY-MM-DD)")
    p.add_argument("--compare", choices=["sha256", "bytes"], default="sha256",
                   help="How same-named destination files are compared")
    p.add_argument("--skip-dirs-file", type=Path, default=None, help="File containing paths to ignore")
    p.add_argument("--journal", type=Path, default=None,
                   help=f"SQLite run journal (default: dest/{config.JOURNAL_FILENAME})")
    p.add_argument("--no-journal", action="store_true", help="Do not record the run")
    p.add_argument("--report-csv", type=Path, default=None, help="Write a per-file CSV report of this run")
    p.add_argument("--summary-json", action="store_true", help="Print the summary as JSON")
    p.add_argument("--no-progress", action="store_true", help="Hide the progress bar")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    return p.parse_args(argv)

def load_skip_dirs(skip_file: Path) -> set[Path]:
    if not skip_file or not skip_file.exists():
        return set()

    skips = set()
    with skip_file.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                skips.add(Path(line))
    return skips

def print_summary(summary: BatchSummary, as_json: bool):
    if as_json:
        print(json.dumps(summary.to_dict(), indent=2))
        return

    print("\nSummary")
    for kind, count in summary.outcome_counts.items():
        print(f"  {kind.value:<12} {count}")
    for kind, count in summary.error_counts.items():
        if count:
            print(f"  ! {kind.value:<24} {count}")
    for kind, count in summary.warning_counts.items():
        if count:
            print(f"  ~ {kind.value:<24} {count} (non-fatal)")
    for r in summary.failures:
        print(f"  FAILED [{r.error_kind.value}] {r.original_path}: {r.message}")
    if summary.interrupted:
        print(f"  Interrupted: {len(summary.unprocessed)} files not processed")

def main(argv=None) -> int:
    args = parse_args(argv)

    # 1. Setup
    dest_root = args.dest.resolve()
    src_root = args.src.resolve()

    if not src_root.is_dir():
        print(f"Input directory does not exist: {src_root}", file=sys.stderr)
        return 2

    setup_logging(dest_root, args.verbose)

    logging.info("=== Takeout Organizer Started ===")
    logging.info(f"Source: {src_root}")
    logging.info(f"Dest:   {dest_root}")

    # 2. Config
    journal_path = None if args.no_journal else (args.journal or dest_root / config.JOURNAL_FILENAME)
    skip_dirs = load_skip_dirs(args.skip_dirs_file) if args.skip_dirs_file else set()
    # Never re-scan the library if it lives inside the export
    if dest_root != src_root:
        skip_dirs.add(dest_root)

    settings = OrganizerSettings(
        dest_root=dest_root,
        max_workers=args.workers,
        sanity_floor=args.sanity_floor,
        policy=CollisionPolicy(compare=args.compare),
        journal_path=journal_path,
        show_progress=not args.no_progress,
    )

    # 3. Execution
    try:
        items = DiskScanner().discover(src_root, skip_dirs)
        summary = TakeoutOrganizerApp(settings).run(items)
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        return 1
    except Exception:
        logging.exception("Fatal error during organization.")
        return 1

    if args.report_csv:
        if journal_path is None:
            logging.error("--report-csv needs the run journal; drop --no-journal.")
        else:
            with JournalDB(journal_path) as conn:
                ReportGenerator(JournalOperations(conn)).generate_run_report(args.report_csv)

    print_summary(summary, args.summary_json)
    return 1 if summary.has_failures or summary.interrupted else 0

if __name__ == "__main__":
    sys.exit(main())
