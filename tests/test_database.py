from datetime import datetime, timezone
from pathlib import Path

from takeout_organizer.database.schema import init_schema
from takeout_organizer.models import (
    AuthoritativeTimestamp, ErrorKind, FileResult, MediaFile, OutcomeKind, TimestampSource,
)


def test_schema_is_idempotent(conn):
    init_schema(conn)
    cur = conn.cursor()
    cur.execute("SELECT COUNT(*) FROM schema_version")
    assert cur.fetchone()[0] == 1


def test_run_lifecycle_and_results(journal):
    run_id = journal.start_run(Path("/library"))
    ts = AuthoritativeTimestamp(datetime(2021, 6, 1, 10, tzinfo=timezone.utc), TimestampSource.SIDECAR, True)

    journal.record_result(run_id, FileResult(
        Path("/src/a.jpg"), OutcomeKind.UPDATED, final_path=Path("/library/2021/06/a.jpg"), timestamp=ts,
        warnings=[ErrorKind.SIDECAR_UNREADABLE],
        media=MediaFile(Path("/src/a.jpg"), kind="image", size_bytes=1234, has_embedded=True), container="jpeg",
    ))
    journal.record_result(run_id, FileResult(
        Path("/src/b.png"), OutcomeKind.FAILED, error_kind=ErrorKind.UNSUPPORTED_FORMAT, message="no container",
    ))
    journal.finish_run(run_id, 2, interrupted=False)

    rows = journal.fetch_results(run_id)
    assert [r['outcome'] for r in rows] == ["updated", "failed"]
    assert rows[0]['final_path'] == "/library/2021/06/a.jpg"
    assert rows[0]['ts_source'] == "sidecar"
    assert rows[0]['capture_datetime'] == "2021-06-01T10:00:00+00:00"
    assert rows[0]['warnings'] == "sidecar_unreadable"
    assert rows[1]['error_kind'] == "unsupported_format"
    assert rows[1]['final_path'] is None
    assert (rows[0]['media_kind'], rows[0]['size_bytes'], rows[0]['container'], rows[0]['had_embedded']) == \
        ('image', 1234, 'jpeg', True)
    assert rows[1]['had_embedded'] is None
    assert journal.count_outcomes(run_id) == {"updated": 1, "failed": 1}

    cur = journal.conn.cursor()
    cur.execute("SELECT file_count, interrupted, finished_at FROM runs WHERE id = ?", (run_id,))
    count, interrupted, finished = cur.fetchone()
    assert (count, interrupted) == (2, 0)
    assert finished is not None


def test_latest_run(journal):
    assert journal.latest_run_id() is None
    journal.start_run(Path("/a"))
    second = journal.start_run(Path("/b"))
    assert journal.latest_run_id() == second
