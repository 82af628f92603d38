import errno
import json
import os
import signal
import sqlite3
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import write_jpeg, write_mp4
from takeout_organizer.core import OrganizerSettings, TakeoutOrganizerApp
from takeout_organizer.database.db import JournalDB
from takeout_organizer.database.ops import JournalOperations
from takeout_organizer.metadata.embedded import EmbeddedMetadata, ExifJpegContainer, QuickTimeContainer
from takeout_organizer.models import ErrorKind, MediaFile, OutcomeKind, TimestampSource
from takeout_organizer.scanning.discovery import DiskScanner

UTC = timezone.utc
JUNE_1_10AM = 1622541600  # 2021-06-01T10:00:00Z


def sidecar(path: Path, epoch: int, title: str = None) -> Path:
    path.write_text(json.dumps({"title": title or path.name[:-5], "photoTakenTime": {"timestamp": str(epoch)}}),
                    encoding="utf-8")
    return path


def app(dest, workers=1, **kw):
    return TakeoutOrganizerApp(OrganizerSettings(dest_root=dest, max_workers=workers, show_progress=False, **kw))


def snapshot(root: Path):
    return {p.relative_to(root): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


def test_end_to_end_rewrites_and_files_by_sidecar_time(tmp_path):
    src = tmp_path / "takeout"
    media = write_jpeg(src / "IMG_20210601.jpg", "2019:01:01 00:00:00")
    side = sidecar(src / "IMG_20210601.jpg.json", JUNE_1_10AM)
    dest = tmp_path / "library"

    summary = app(dest).run([MediaFile(media, side)])

    final = dest / "2021" / "06" / "IMG_20210601.jpg"
    [result] = summary.results
    assert result.outcome is OutcomeKind.UPDATED
    assert result.final_path == final
    assert result.timestamp.source is TimestampSource.SIDECAR
    assert not media.exists()
    assert ExifJpegContainer().read_timestamp(final) == datetime(2021, 6, 1, 10, tzinfo=UTC)
    assert side.exists()


def test_second_run_over_destination_only_skips(tmp_path):
    src = tmp_path / "takeout"
    dest = tmp_path / "library"
    items = []
    for i in range(3):
        m = write_jpeg(src / f"IMG_{i}.jpg", "2019:01:01 00:00:00", color=(i * 40, 10, 10))
        items.append(MediaFile(m, sidecar(src / f"IMG_{i}.jpg.json", JUNE_1_10AM + i * 86400 * 40)))
    items.append(MediaFile(write_jpeg(src / "IMG_20200202_101010.jpg", None, color=(1, 2, 3))))

    first = app(dest, workers=3).run(items)
    assert first.outcome_counts[OutcomeKind.UPDATED] == 4
    after_first = snapshot(dest)

    second = app(dest, workers=3).run(DiskScanner().discover(dest))

    assert second.outcome_counts[OutcomeKind.UPDATED] == 0
    assert second.outcome_counts[OutcomeKind.FAILED] == 0
    assert second.outcome_counts[OutcomeKind.SKIPPED] == 4
    assert snapshot(dest) == after_first


def test_matching_metadata_is_moved_only(tmp_path):
    src = tmp_path / "takeout"
    media = write_jpeg(src / "a.jpg", "2021:06:01 10:00:00")
    before = media.read_bytes()
    dest = tmp_path / "library"

    summary = app(dest).run([MediaFile(media, sidecar(src / "a.jpg.json", JUNE_1_10AM))])

    [result] = summary.results
    assert result.outcome is OutcomeKind.MOVED_ONLY
    assert (dest / "2021" / "06" / "a.jpg").read_bytes() == before


def test_video_end_to_end(tmp_path):
    src = tmp_path / "takeout"
    clip = write_mp4(src / "VID.mp4", datetime(2019, 1, 1, tzinfo=UTC))
    dest = tmp_path / "library"

    summary = app(dest).run([MediaFile(clip, sidecar(src / "VID.mp4.json", JUNE_1_10AM))])

    assert summary.results[0].outcome is OutcomeKind.UPDATED
    assert QuickTimeContainer().read_timestamp(dest / "2021" / "06" / "VID.mp4") == datetime(2021, 6, 1, 10, tzinfo=UTC)


def test_no_timestamp_fails_and_leaves_file_untouched(tmp_path):
    src = tmp_path / "takeout"
    media = write_jpeg(src / "holiday.jpg", "1800:01:01 00:00:00")
    side = sidecar(src / "holiday.jpg.json", -5364662400)  # 1800-01-01
    os.utime(media, (86400, 86400))  # 1970-01-02, below the sanity floor
    before = media.read_bytes()
    dest = tmp_path / "library"

    summary = app(dest).run([MediaFile(media, side)])

    [result] = summary.results
    assert result.outcome is OutcomeKind.FAILED
    assert result.error_kind is ErrorKind.NO_TIMESTAMP_AVAILABLE
    assert media.read_bytes() == before
    assert summary.error_counts[ErrorKind.NO_TIMESTAMP_AVAILABLE] == 1
    assert not (dest / "1800").exists()


def test_unsupported_container_fails_without_changes(tmp_path):
    src = tmp_path / "takeout"
    png = src / "shot.png"
    src.mkdir()
    png.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 64)
    dest = tmp_path / "library"

    summary = app(dest).run([MediaFile(png, sidecar(src / "shot.png.json", JUNE_1_10AM))])

    [result] = summary.results
    assert result.error_kind is ErrorKind.UNSUPPORTED_FORMAT
    assert png.read_bytes() == b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
    assert sorted(p.name for p in src.iterdir()) == ["shot.png", "shot.png.json"]


def test_unreadable_sidecar_is_a_warning_not_a_failure(tmp_path):
    src = tmp_path / "takeout"
    media = write_jpeg(src / "a.jpg", "2020:03:04 05:06:07")
    broken = src / "a.jpg.json"
    broken.write_text("{oops", encoding="utf-8")
    dest = tmp_path / "library"

    summary = app(dest).run([MediaFile(media, broken)])

    [result] = summary.results
    assert result.outcome is OutcomeKind.MOVED_ONLY
    assert result.timestamp.source is TimestampSource.EMBEDDED
    assert result.warnings == [ErrorKind.SIDECAR_UNREADABLE]
    assert summary.warning_counts[ErrorKind.SIDECAR_UNREADABLE] == 1
    assert (dest / "2020" / "03" / "a.jpg").exists()


def test_one_failure_does_not_stop_the_batch(tmp_path):
    src = tmp_path / "takeout"
    good = write_jpeg(src / "good.jpg", "2020:03:04 05:06:07")
    corrupt = src / "corrupt.jpg"
    corrupt.write_bytes(b"\xff\xd8\xff\xe1\x00\x40Exif\x00\x00")
    dest = tmp_path / "library"

    summary = app(dest, workers=2).run([MediaFile(corrupt), MediaFile(good)])

    by_name = {r.original_path.name: r for r in summary.results}
    assert by_name["corrupt.jpg"].error_kind is ErrorKind.UNSUPPORTED_FORMAT
    assert by_name["good.jpg"].outcome is OutcomeKind.MOVED_ONLY
    assert summary.has_failures
    assert summary.to_dict()["failed"] == [
        {"path": str(corrupt), "kind": "unsupported_format", "message": by_name["corrupt.jpg"].message}
    ]


def test_identical_duplicates_end_up_once(tmp_path):
    dest = tmp_path / "library"
    items = []
    for folder in ("a", "b"):
        m = write_jpeg(tmp_path / folder / "IMG.jpg", "2019:01:01 00:00:00")
        items.append(MediaFile(m, sidecar(tmp_path / folder / "IMG.jpg.json", JUNE_1_10AM)))

    summary = app(dest, workers=2).run(items)

    assert summary.outcome_counts[OutcomeKind.UPDATED] == 1
    assert summary.outcome_counts[OutcomeKind.SKIPPED] == 1
    assert [p.name for p in (dest / "2021" / "06").iterdir()] == ["IMG.jpg"]
    skipped = next(r for r in summary.results if r.outcome is OutcomeKind.SKIPPED)
    # The duplicate is left where it was, unmodified
    assert skipped.original_path.exists()
    assert ExifJpegContainer().read_timestamp(skipped.original_path) == datetime(2019, 1, 1, tzinfo=UTC)


def test_same_name_different_content_both_kept(tmp_path):
    dest = tmp_path / "library"
    a = write_jpeg(tmp_path / "a" / "IMG.jpg", "2021:06:01 10:00:00", color=(0, 0, 255))
    b = write_jpeg(tmp_path / "b" / "IMG.jpg", "2021:06:01 10:00:00", color=(0, 255, 0))

    summary = app(dest).run([MediaFile(a), MediaFile(b)])

    assert summary.outcome_counts[OutcomeKind.MOVED_ONLY] == 2
    assert sorted(p.name for p in (dest / "2021" / "06").iterdir()) == ["IMG-1.jpg", "IMG.jpg"]


def test_move_failure_leaves_original_unmodified(tmp_path, monkeypatch):
    import takeout_organizer.organization.mover as mover_module

    def refuse(src, dest):
        raise OSError(errno.EACCES, "Permission denied")

    monkeypatch.setattr(mover_module, "move_file", refuse)
    src = tmp_path / "takeout"
    media = write_jpeg(src / "a.jpg", "2019:01:01 00:00:00")
    side = sidecar(src / "a.jpg.json", JUNE_1_10AM)
    before = media.read_bytes()

    summary = app(tmp_path / "library").run([MediaFile(media, side)])

    [result] = summary.results
    assert result.error_kind is ErrorKind.IO_FAILURE
    assert media.read_bytes() == before
    # No staged temp file left behind
    assert sorted(p.name for p in src.iterdir()) == ["a.jpg", "a.jpg.json"]


def test_transient_errors_are_retried(tmp_path, monkeypatch):
    import takeout_organizer.organization.mover as mover_module
    real_move = mover_module.move_file
    calls = []

    def flaky(src, dest):
        calls.append(src)
        if len(calls) == 1:
            raise OSError(errno.EBUSY, "Device busy")
        real_move(src, dest)

    monkeypatch.setattr(mover_module, "move_file", flaky)
    monkeypatch.setattr("takeout_organizer.storage.time.sleep", lambda s: None)
    media = write_jpeg(tmp_path / "in" / "a.jpg", "2020:03:04 05:06:07")

    summary = app(tmp_path / "library").run([MediaFile(media)])

    assert summary.results[0].outcome is OutcomeKind.MOVED_ONLY
    assert len(calls) == 2


def test_unexpected_errors_still_yield_one_result(tmp_path, monkeypatch):
    media = write_jpeg(tmp_path / "in" / "a.jpg", "2020:03:04 05:06:07")
    organizer = app(tmp_path / "library")
    monkeypatch.setattr(organizer.reconciler, "reconcile", lambda *a, **k: 1 / 0)

    summary = organizer.run([MediaFile(media)])

    assert summary.results[0].outcome is OutcomeKind.FAILED
    assert summary.results[0].error_kind is ErrorKind.IO_FAILURE
    assert media.exists()


def test_interrupt_stops_after_current_file(tmp_path, monkeypatch):
    items = [MediaFile(write_jpeg(tmp_path / "in" / f"{i}.jpg", "2020:03:04 05:06:07", color=(i, i, i)))
             for i in range(4)]
    organizer = app(tmp_path / "library")
    real = organizer.process_safely
    seen = []

    def interrupting(item):
        if len(seen) == 2:
            raise KeyboardInterrupt
        seen.append(item)
        return real(item)

    monkeypatch.setattr(organizer, "process_safely", interrupting)

    summary = organizer.run(items)

    assert summary.interrupted
    assert len(summary.results) == 2
    assert summary.unprocessed == [items[2].path, items[3].path]
    assert items[2].path.exists() and items[3].path.exists()


def test_results_are_journaled(tmp_path):
    journal_path = tmp_path / "journal.db"
    media = write_jpeg(tmp_path / "in" / "a.jpg", "2020:03:04 05:06:07")
    bad = tmp_path / "in" / "b.png"
    bad.write_bytes(b"\x89PNG\r\n\x1a\n")
    os.utime(bad, (86400, 86400))

    app(tmp_path / "library", journal_path=journal_path).run([MediaFile(media), MediaFile(bad)])

    with JournalDB(journal_path) as conn:
        ops = JournalOperations(conn)
        run_id = ops.latest_run_id()
        rows = {Path(r['original_path']).name: r for r in ops.fetch_results(run_id)}
        assert ops.count_outcomes(run_id) == {"moved_only": 1, "failed": 1}
    assert rows["a.jpg"]["ts_source"] == "embedded"
    assert rows["a.jpg"]["capture_datetime"] == "2020-03-04T05:06:07+00:00"
    assert rows["b.png"]["error_kind"] == "no_timestamp_available"


def test_journal_records_media_details(tmp_path):
    journal_path = tmp_path / "journal.db"
    media = write_jpeg(tmp_path / "in" / "a.jpg", "2020:03:04 05:06:07")
    bare = write_jpeg(tmp_path / "in" / "IMG_20200304_050607.jpg", with_exif=False)
    clip = write_mp4(tmp_path / "in" / "VID.mp4", datetime(2020, 3, 4, 5, 6, 7, tzinfo=UTC))
    size = media.stat().st_size

    items = DiskScanner().discover(tmp_path / "in")
    app(tmp_path / "library", journal_path=journal_path).run(items)

    with JournalDB(journal_path) as conn:
        ops = JournalOperations(conn)
        rows = {Path(r['original_path']).name: r for r in ops.fetch_results(ops.latest_run_id())}
    assert rows["a.jpg"]["media_kind"] == "image"
    assert rows["a.jpg"]["size_bytes"] == size
    assert rows["a.jpg"]["container"] == "jpeg"
    assert rows["a.jpg"]["had_embedded"] is True
    assert rows[bare.name]["had_embedded"] is False
    assert rows[bare.name]["outcome"] == "updated"
    assert rows[clip.name]["media_kind"] == "video"
    assert rows[clip.name]["container"] == "quicktime"


def test_interrupt_inside_a_file_keeps_only_the_original(tmp_path, monkeypatch):
    src = tmp_path / "takeout"
    media = write_jpeg(src / "IMG.jpg", "2019:01:01 00:00:00")
    side = sidecar(src / "IMG.jpg.json", JUNE_1_10AM)
    before = media.read_bytes()
    dest = tmp_path / "library"
    real_unlink = Path.unlink

    def interrupted(self, *args, **kwargs):
        if self == media:
            raise KeyboardInterrupt
        return real_unlink(self, *args, **kwargs)

    monkeypatch.setattr(Path, "unlink", interrupted)

    summary = app(dest).run([MediaFile(media, side)])

    assert summary.interrupted
    assert summary.unprocessed == [media]
    assert media.read_bytes() == before
    assert [p for p in dest.rglob("*") if p.is_file()] == []
    assert sorted(p.name for p in src.iterdir()) == ["IMG.jpg", "IMG.jpg.json"]


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signal delivery")
def test_ctrl_c_lets_the_current_file_finish(tmp_path, monkeypatch):
    items = [MediaFile(write_jpeg(tmp_path / "in" / f"{i}.jpg", "2020:03:04 05:06:07", color=(i, i, i)))
             for i in range(3)]
    organizer = app(tmp_path / "library")
    real = organizer.process_safely
    handler_before = signal.getsignal(signal.SIGINT)

    def ctrl_c_then_process(item):
        if item is items[0]:
            os.kill(os.getpid(), signal.SIGINT)
        return real(item)

    monkeypatch.setattr(organizer, "process_safely", ctrl_c_then_process)

    summary = organizer.run(items)

    assert summary.interrupted
    [result] = summary.results
    assert result.outcome is OutcomeKind.MOVED_ONLY
    assert result.final_path.exists()
    assert summary.unprocessed == [items[1].path, items[2].path]
    assert signal.getsignal(signal.SIGINT) is handler_before


def test_journal_failure_stops_workers(tmp_path, monkeypatch):
    items = [MediaFile(write_jpeg(tmp_path / "in" / f"{i}.jpg", "2020:03:04 05:06:07", color=(i, i, i)))
             for i in range(6)]

    def broken(self, run_id, result):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(JournalOperations, "record_result", broken)

    with pytest.raises(sqlite3.OperationalError):
        app(tmp_path / "library", workers=3, journal_path=tmp_path / "journal.db").run(items)

    assert not [t for t in threading.enumerate() if t.name.startswith("organizer")]
