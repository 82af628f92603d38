import csv
import logging
from pathlib import Path
from typing import Optional

from .database.ops import JournalOperations


class ReportGenerator:
    def __init__(self, journal: JournalOperations):
        self.journal = journal

    def generate_run_report(self, output_csv: Path, run_id: Optional[int] = None) -> int:
        """
        Writes one CSV row per file of a run (the latest run by default).
        Returns the number of rows written.
        """
        if run_id is None:
            run_id = self.journal.latest_run_id()
        if run_id is None:
            raise ValueError("The journal holds no runs to report on.")

        logging.info(f"Generating report for run {run_id} -> {output_csv}")

        headers = [
            "Original Path",
            "Media Kind",
            "Container",
            "Had Embedded Time",
            "Outcome",
            "Final Path",
            "Error Kind",
            "Timestamp Source",
            "Capture Time",
            "Warnings",
            "Notes",
        ]

        rows = self.journal.fetch_results(run_id)
        with open(output_csv, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(headers)
            for r in rows:
                writer.writerow([
                    r['original_path'],
                    r['media_kind'] or "",
                    r['container'] or "",
                    "" if r['had_embedded'] is None else ("yes" if r['had_embedded'] else "no"),
                    r['outcome'],
                    r['final_path'] or "",
                    r['error_kind'] or "",
                    r['ts_source'] or "",
                    r['capture_datetime'] or "",
                    r['warnings'] or "",
                    r['message'] or "",
                ])

        logging.info(f"Report complete. {len(rows)} files.")
        return len(rows)
