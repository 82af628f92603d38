import sqlite3
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import FileResult


class JournalOperations:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def start_run(self, dest_root: Path) -> int:
        cur = self.conn.cursor()
        cur.execute(
            "INSERT INTO runs (dest_root, started_at) VALUES (?, ?)",
            (str(dest_root), datetime.now(UTC).isoformat()),
        )
        if cur.lastrowid is None:
            raise RuntimeError("Database INSERT failed to return a row ID.")
        self.conn.commit()
        return cur.lastrowid

    def finish_run(self, run_id: int, file_count: int, interrupted: bool):
        self.conn.execute(
            "UPDATE runs SET finished_at = ?, file_count = ?, interrupted = ? WHERE id = ?",
            (datetime.now(UTC).isoformat(), file_count, int(interrupted), run_id),
        )
        self.conn.commit()

    def record_result(self, run_id: int, result: FileResult):
        """Stores one terminal per-file outcome."""
        ts = result.timestamp
        media = result.media
        self.conn.execute("""
            INSERT INTO results (
                run_id, original_path, media_kind, size_bytes, container, had_embedded,
                final_path, outcome, error_kind, message,
                ts_source, capture_datetime, warnings, recorded_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            run_id,
            str(result.original_path),
            media.kind if media else None,
            media.size_bytes if media else None,
            result.container,
            int(media.has_embedded) if media and media.has_embedded is not None else None,
            str(result.final_path) if result.final_path else None,
            result.outcome.value,
            result.error_kind.value if result.error_kind else None,
            result.message,
            ts.source.value if ts else None,
            ts.value.isoformat() if ts else None,
            ",".join(w.value for w in result.warnings) or None,
            datetime.now(UTC).isoformat(),
        ))

    def latest_run_id(self) -> Optional[int]:
        cur = self.conn.cursor()
        cur.execute("SELECT MAX(id) FROM runs")
        row = cur.fetchone()
        return row[0] if row else None

    def fetch_results(self, run_id: int) -> List[Dict[str, Any]]:
        cur = self.conn.cursor()
        cur.execute("""
            SELECT original_path, final_path, outcome, error_kind, message, ts_source, capture_datetime, warnings,
                   media_kind, size_bytes, container, had_embedded
            FROM results WHERE run_id = ? ORDER BY id
        """, (run_id,))
        return [
            {
                'original_path': r[0], 'final_path': r[1], 'outcome': r[2], 'error_kind': r[3],
                'message': r[4], 'ts_source': r[5], 'capture_datetime': r[6], 'warnings': r[7],
                'media_kind': r[8], 'size_bytes': r[9], 'container': r[10],
                'had_embedded': None if r[11] is None else bool(r[11]),
            }
            for r in cur.fetchall()
        ]

    def count_outcomes(self, run_id: int) -> Dict[str, int]:
        cur = self.conn.cursor()
        cur.execute("SELECT outcome, COUNT(*) FROM results WHERE run_id = ? GROUP BY outcome", (run_id,))
        return {outcome: count for outcome, count in cur.fetchall()}
