"""
Journal schema definitions.
"""
import sqlite3
import logging

CURRENT_SCHEMA_VERSION = 1

def init_schema(conn: sqlite3.Connection):
    """
    Applies the journal schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. One row per pipeline run
        conn.execute("""
        CREATE TABLE IF NOT EXISTS runs (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            dest_root       TEXT NOT NULL,
            started_at      TEXT NOT NULL,
            finished_at     TEXT,
            file_count      INTEGER NOT NULL DEFAULT 0,
            interrupted     INTEGER NOT NULL DEFAULT 0
        );
        """)

        # 3. One row per media file per run (the terminal outcome)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS results (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id          INTEGER NOT NULL,
            original_path   TEXT NOT NULL,
            media_kind      TEXT,                 -- image/video/other
            size_bytes      INTEGER,
            container       TEXT,                 -- jpeg/quicktime/unsupported
            had_embedded    INTEGER,              -- capture time already in the container
            final_path      TEXT,
            outcome         TEXT NOT NULL,        -- updated/moved_only/skipped/failed
            error_kind      TEXT,
            message         TEXT,
            ts_source       TEXT,                 -- sidecar/embedded/filename/filesystem
            capture_datetime TEXT,                -- ISO-8601 with offset
            warnings        TEXT,                 -- comma-separated ErrorKind values
            recorded_at     TEXT NOT NULL,
            FOREIGN KEY(run_id) REFERENCES runs(id) ON DELETE CASCADE
        );
        """)

        # 4. Indices for Performance
        conn.execute("CREATE INDEX IF NOT EXISTS idx_results_run ON results(run_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_results_outcome ON results(outcome);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_results_original ON results(original_path);")

    logging.debug("Journal schema initialized.")
