import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from tqdm import tqdm

from . import config
from .database.db import JournalDB
from .database.ops import JournalOperations
from .exceptions import SidecarUnreadableError, TakeoutOrganizerError
from .metadata.embedded import EmbeddedMetadata
from .metadata.filename import FilenameTimestampExtractor
from .metadata.reconcile import TimestampReconciler, utc_now
from .metadata.sidecar import SidecarReader
from .models import BatchSummary, ErrorKind, FileResult, MediaFile, OutcomeKind
from .organization.mover import FileMover, PlacementKind
from .organization.rules import CollisionPolicy, DestinationPlanner
from .storage import discard, retry_io, staging_path


@dataclass
class OrganizerSettings:
    dest_root: Path
    max_workers: int = config.DEFAULT_MAX_WORKERS
    sanity_floor: datetime = config.SANITY_FLOOR
    policy: CollisionPolicy = field(default_factory=CollisionPolicy)
    journal_path: Optional[Path] = None
    show_progress: bool = True


class TakeoutOrganizerApp:
    """
    Runs every discovered file through:
      Discovered -> MetadataRead -> Reconciled -> (Rewritten|NoRewriteNeeded) -> Organized -> Done
    or into Failed at any step. One file's failure never stops the batch.
    """

    def __init__(self, settings: OrganizerSettings, clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self.sidecars = SidecarReader()
        self.embedded = EmbeddedMetadata()
        self.filenames = FilenameTimestampExtractor()
        self.reconciler = TimestampReconciler(settings.sanity_floor, clock)
        self.mover = FileMover(DestinationPlanner(settings.dest_root, settings.policy))

    def run(self, items: Iterable[MediaFile]) -> BatchSummary:
        """
        Processes the batch and returns the aggregate summary. Results are
        merged on the calling thread only, so the summary and the journal
        are never touched concurrently.
        """
        items = list(items)
        summary = BatchSummary()
        db = JournalDB(self.settings.journal_path) if self.settings.journal_path else nullcontext()

        with db as conn:
            journal = JournalOperations(conn) if conn is not None else None
            run_id = journal.start_run(self.settings.dest_root) if journal else None

            def collect(result: FileResult):
                summary.add(result)
                if journal:
                    journal.record_result(run_id, result)

            logging.info(f"Organizing {len(items)} files into {self.settings.dest_root} "
                         f"({self.settings.max_workers} workers)")
            if self.settings.max_workers <= 1:
                self._run_sequential(items, collect, summary)
            else:
                self._run_parallel(items, collect, summary)

            if journal:
                journal.finish_run(run_id, len(summary.results), summary.interrupted)

        self._log_summary(summary)
        return summary

    @contextmanager
    def _deferred_sigint(self, stop: threading.Event):
        """While active, Ctrl-C only sets `stop`; the file in progress runs to completion."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def request_stop(signum, frame):
            if not stop.is_set():
                logging.warning("Interrupted; stopping after the current file.")
            stop.set()

        previous = signal.signal(signal.SIGINT, request_stop)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous if previous is not None else signal.default_int_handler)

    def _run_sequential(self, items: List[MediaFile], collect, summary: BatchSummary):
        stop = threading.Event()
        done = 0
        try:
            with self._deferred_sigint(stop):
                for item in tqdm(items, desc="Organizing", disable=not self.settings.show_progress):
                    if stop.is_set():
                        break
                    collect(self.process_safely(item))
                    done += 1
        except KeyboardInterrupt:
            logging.warning("Interrupted during the current file.")
            stop.set()

        if stop.is_set():
            summary.interrupted = True
            summary.unprocessed.extend(item.path for item in items[done:])

    def _run_parallel(self, items: List[MediaFile], collect, summary: BatchSummary):
        with ThreadPoolExecutor(max_workers=self.settings.max_workers,
                                thread_name_prefix="organizer") as executor:
            future_to_item = {executor.submit(self.process_safely, item): item for item in items}
            collected = set()
            try:
                for future in tqdm(as_completed(future_to_item), total=len(future_to_item),
                                   desc="Organizing", disable=not self.settings.show_progress):
                    collected.add(future)
                    collect(future.result())
            except KeyboardInterrupt:
                logging.warning("Interrupted; waiting for in-flight files to finish...")
                summary.interrupted = True
                # Running files complete; queued ones are dropped
                executor.shutdown(wait=True, cancel_futures=True)
                for future, item in future_to_item.items():
                    if future in collected:
                        continue
                    collected.add(future)
                    if future.cancelled():
                        summary.unprocessed.append(item.path)
                    else:
                        collect(future.result())
            except BaseException:
                # e.g. the journal failed; do not keep working unrecorded
                executor.shutdown(wait=True, cancel_futures=True)
                raise

    def process_safely(self, item: MediaFile) -> FileResult:
        """process_file, but any unexpected error still yields exactly one Failed result."""
        try:
            return self.process_file(item)
        except Exception as e:
            logging.exception(f"Unexpected error processing {item.path}")
            return FileResult(item.path, OutcomeKind.FAILED, error_kind=ErrorKind.IO_FAILURE, message=str(e),
                              media=item)

    def process_file(self, item: MediaFile) -> FileResult:
        path = item.path
        warnings: List[ErrorKind] = []
        container_name = None

        try:
            # --- MetadataRead ---
            try:
                sidecar = self.sidecars.candidate(item.sidecar_path)
            except SidecarUnreadableError as e:
                logging.warning(f"{e}; ignoring sidecar")
                warnings.append(e.kind)
                sidecar = None

            container = self.embedded.container(path)
            container_name = container.format.value
            embedded = self.embedded.candidate(path, container)
            item.has_embedded = embedded is not None
            fallback = self.filenames.candidate(path)

            # --- Reconciled ---
            auth = self.reconciler.reconcile(sidecar, embedded, fallback,
                                             compare_offsets=container.stores_offset)
            logging.debug(f"{path.name}: using {auth.source.value} time {auth.value.isoformat()} "
                          f"(rewrite={auth.needs_rewrite})")

            # --- Rewritten | NoRewriteNeeded ---
            staged = None
            if auth.needs_rewrite:
                staged = retry_io(lambda: staging_path(path), f"staging {path}")
                try:
                    self.embedded.write_to(path, auth.value, staged, container)
                except BaseException:
                    discard(staged)
                    raise

            # --- Organized ---
            try:
                placement = self.mover.place(path, auth.value, staged)
            except BaseException:
                if staged:
                    discard(staged)
                raise

        except TakeoutOrganizerError as e:
            logging.error(f"Failed {path}: {e}")
            return FileResult(path, OutcomeKind.FAILED, error_kind=e.kind, message=str(e), warnings=warnings,
                              media=item, container=container_name)
        except OSError as e:
            logging.error(f"Failed {path}: {e}")
            return FileResult(path, OutcomeKind.FAILED, error_kind=ErrorKind.IO_FAILURE, message=str(e),
                              warnings=warnings, media=item, container=container_name)

        if placement.kind is PlacementKind.MOVED:
            outcome = OutcomeKind.UPDATED if staged else OutcomeKind.MOVED_ONLY
        elif placement.kind is PlacementKind.REPLACED:
            outcome = OutcomeKind.UPDATED
        else:
            outcome = OutcomeKind.SKIPPED

        message = f"duplicate of {placement.path}" if placement.kind is PlacementKind.DUPLICATE else None
        final_path = path if placement.kind is PlacementKind.DUPLICATE else placement.path
        return FileResult(path, outcome, final_path=final_path, message=message, timestamp=auth, warnings=warnings,
                          media=item, container=container_name)

    def _log_summary(self, summary: BatchSummary):
        counts = ", ".join(f"{k.value}={v}" for k, v in summary.outcome_counts.items())
        logging.info(f"Run complete: {counts}")
        for kind, count in summary.error_counts.items():
            if count:
                logging.info(f"  {kind.value}: {count}")
        if summary.interrupted:
            logging.warning(f"Run was interrupted; {len(summary.unprocessed)} files not processed.")
