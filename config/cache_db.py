"""
SQLite Database Layer for Analysis Caching and Job Persistence
Provides the composite analysis cache, append-only review rows and persistent job tracking
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


def _connect(db_file: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_file, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def _prepare(db_file: Path) -> Path:
    db_file = Path(db_file)
    db_file.parent.mkdir(parents=True, exist_ok=True)
    return db_file


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, declaration: str):
    """Add a column to a table created by an older version"""
    columns = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column not in columns:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {declaration}")


def _loads(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return None


class AnalysisStore:
    """Latest composite analysis per (app_id, store); a write replaces the previous one"""

    def __init__(self, db_file: Path = None):
        if db_file is None:
            db_file = Path("cache/analyses.db")
        self.db_file = _prepare(db_file)
        self._init_db()

    def _init_db(self):
        """Initialize analyses table"""
        conn = _connect(self.db_file)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS analyses (
                app_id TEXT NOT NULL,
                store TEXT NOT NULL,
                summary_json TEXT NOT NULL,
                positive_json TEXT,
                negative_json TEXT,
                timestamp TEXT NOT NULL,
                app_name TEXT,
                PRIMARY KEY (app_id, store)
            )
        """)
        _ensure_column(conn, "analyses", "app_name", "TEXT")
        conn.commit()
        conn.close()

    def get_latest(self, app_id: str, store: str) -> Optional[dict]:
        """Get the stored analysis for an app, or None"""
        conn = _connect(self.db_file)
        row = conn.execute(
            "SELECT * FROM analyses WHERE app_id = ? AND store = ?",
            (app_id, store)
        ).fetchone()
        conn.close()

        if not row:
            return None
        return {
            'app_id': row['app_id'],
            'store': row['store'],
            'summary': _loads(row['summary_json']) or {},
            'positive_insight': _loads(row['positive_json']),
            'negative_insight': _loads(row['negative_json']),
            'timestamp': row['timestamp'],
            'app_name': row['app_name'],
        }

    def upsert(self, app_id: str, store: str, analysis: dict):
        """Replace the analysis for (app_id, store) in a single statement"""
        positive = analysis.get('positive_insight')
        negative = analysis.get('negative_insight')

        conn = _connect(self.db_file)
        try:
            with conn:
                conn.execute("""
                    INSERT OR REPLACE INTO analyses
                    (app_id, store, summary_json, positive_json, negative_json, timestamp, app_name)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    app_id,
                    store,
                    json.dumps(analysis['summary']),
                    json.dumps(positive) if positive is not None else None,
                    json.dumps(negative) if negative is not None else None,
                    analysis['timestamp'],
                    analysis.get('app_name'),
                ))
        finally:
            conn.close()

    def delete(self, app_id: str, store: str):
        conn = _connect(self.db_file)
        conn.execute("DELETE FROM analyses WHERE app_id = ? AND store = ?", (app_id, store))
        conn.commit()
        conn.close()


class ReviewStore:
    """Append-only review rows, one batch per fetched page"""

    def __init__(self, db_file: Path = None):
        if db_file is None:
            db_file = Path("cache/analyses.db")
        self.db_file = _prepare(db_file)
        self._init_db()

    def _init_db(self):
        conn = _connect(self.db_file)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS reviews (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                app_id TEXT NOT NULL,
                store TEXT NOT NULL,
                rating REAL,
                title TEXT,
                content TEXT,
                author TEXT,
                date TEXT,
                sentiment TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_reviews_app_store ON reviews(app_id, store)")
        conn.commit()
        conn.close()

    def append(self, reviews: Iterable) -> int:
        """Insert reviews as new rows. Returns the number of rows written."""
        rows = [
            (r.app_id, r.store, r.rating, r.title, r.content, r.author, r.date, r.sentiment)
            for r in reviews
        ]
        if not rows:
            return 0

        conn = _connect(self.db_file)
        try:
            with conn:
                conn.executemany("""
                    INSERT INTO reviews (app_id, store, rating, title, content, author, date, sentiment)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, rows)
        finally:
            conn.close()
        return len(rows)

    def count(self, app_id: str, store: str) -> int:
        conn = _connect(self.db_file)
        total = conn.execute(
            "SELECT COUNT(*) FROM reviews WHERE app_id = ? AND store = ?",
            (app_id, store)
        ).fetchone()[0]
        conn.close()
        return total


class JobDatabase:
    """SQLite database for persistent job tracking and progress events"""

    def __init__(self, db_file: Path = None):
        if db_file is None:
            db_file = Path("cache/jobs.db")
        self.db_file = _prepare(db_file)
        self._write_lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        """Initialize jobs, job_events and workers tables"""
        conn = _connect(self.db_file)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                job_id TEXT PRIMARY KEY,
                app_id TEXT NOT NULL,
                store TEXT NOT NULL,
                user_id TEXT,
                status TEXT NOT NULL,
                progress INTEGER NOT NULL DEFAULT 0,
                message TEXT,
                options TEXT,
                result_data TEXT,
                error TEXT,
                owner_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        _ensure_column(conn, "jobs", "owner_id", "TEXT")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_app_store_status ON jobs(app_id, store, status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS job_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                status TEXT NOT NULL,
                progress INTEGER NOT NULL,
                message TEXT,
                FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_events_job ON job_events(job_id)")

        # One row per live JobManager; heartbeat_at is refreshed while it runs
        conn.execute("""
            CREATE TABLE IF NOT EXISTS workers (
                owner_id TEXT PRIMARY KEY,
                heartbeat_at TEXT NOT NULL
            )
        """)
        conn.commit()
        conn.close()

    def create_job(self, job_data: dict) -> str:
        """Create new job record together with its first progress event"""
        with self._write_lock:
            conn = _connect(self.db_file)
            try:
                with conn:
                    conn.execute("""
                        INSERT INTO jobs (job_id, app_id, store, user_id, status, progress, message,
                                          options, owner_id, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        job_data['job_id'],
                        job_data['app_id'],
                        job_data['store'],
                        job_data.get('user_id'),
                        job_data['status'],
                        job_data.get('progress', 0),
                        job_data.get('message'),
                        json.dumps(job_data.get('options') or {}),
                        job_data.get('owner_id'),
                        job_data['created_at'],
                        job_data['created_at'],
                    ))
                    self._insert_event(conn, job_data['job_id'], {
                        'timestamp': job_data['created_at'],
                        'status': job_data['status'],
                        'progress': job_data.get('progress', 0),
                        'message': job_data.get('message'),
                    })
            finally:
                conn.close()
        return job_data['job_id']

    def record_update(self, job_id: str, updates: dict, event: dict):
        """Update a job row and append the matching progress event in one transaction"""
        columns = dict(updates)
        for key in ('result_data', 'options'):
            if key in columns and not isinstance(columns[key], (str, type(None))):
                columns[key] = json.dumps(columns[key])

        set_clause = ", ".join(f"{k} = ?" for k in columns)
        query = f"UPDATE jobs SET {set_clause} WHERE job_id = ?"

        with self._write_lock:
            conn = _connect(self.db_file)
            try:
                with conn:
                    conn.execute(query, list(columns.values()) + [job_id])
                    self._insert_event(conn, job_id, event)
            finally:
                conn.close()

    @staticmethod
    def _insert_event(conn: sqlite3.Connection, job_id: str, event: dict):
        conn.execute("""
            INSERT INTO job_events (job_id, timestamp, status, progress, message)
            VALUES (?, ?, ?, ?, ?)
        """, (job_id, event['timestamp'], event['status'], event['progress'], event.get('message')))

    def get_job(self, job_id: str) -> Optional[dict]:
        """Get job by ID"""
        conn = _connect(self.db_file)
        row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        conn.close()
        return self._row_to_dict(row) if row else None

    def get_jobs_by_app(self, app_id: str) -> List[dict]:
        conn = _connect(self.db_file)
        rows = conn.execute(
            "SELECT * FROM jobs WHERE app_id = ? ORDER BY created_at ASC",
            (app_id,)
        ).fetchall()
        conn.close()
        return [self._row_to_dict(row) for row in rows]

    def get_active_jobs(self, statuses: Iterable[str], app_id: str = None, store: str = None) -> List[dict]:
        """Jobs in one of the given statuses, optionally for one (app_id, store)"""
        statuses = list(statuses)
        placeholders = ", ".join("?" for _ in statuses)
        query = f"SELECT * FROM jobs WHERE status IN ({placeholders})"
        params: List[Any] = list(statuses)
        if app_id is not None and store is not None:
            query += " AND app_id = ? AND store = ?"
            params.extend([app_id, store])
        query += " ORDER BY created_at ASC"

        conn = _connect(self.db_file)
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [self._row_to_dict(row) for row in rows]

    def count_jobs(self, statuses: Iterable[str]) -> int:
        statuses = list(statuses)
        placeholders = ", ".join("?" for _ in statuses)
        conn = _connect(self.db_file)
        total = conn.execute(
            f"SELECT COUNT(*) FROM jobs WHERE status IN ({placeholders})", statuses
        ).fetchone()[0]
        conn.close()
        return total

    def get_events(self, job_id: str) -> List[dict]:
        conn = _connect(self.db_file)
        rows = conn.execute("""
            SELECT timestamp, status, progress, message
            FROM job_events
            WHERE job_id = ?
            ORDER BY id ASC
        """, (job_id,)).fetchall()
        conn.close()
        return [dict(row) for row in rows]

    def delete_jobs_created_before(self, cutoff: str, statuses: Iterable[str]) -> List[str]:
        """Delete jobs in the given statuses created before cutoff. Returns removed ids."""
        statuses = list(statuses)
        placeholders = ", ".join("?" for _ in statuses)
        with self._write_lock:
            conn = _connect(self.db_file)
            try:
                with conn:
                    rows = conn.execute(
                        f"SELECT job_id FROM jobs WHERE created_at < ? AND status IN ({placeholders})",
                        [cutoff] + statuses
                    ).fetchall()
                    job_ids = [row['job_id'] for row in rows]
                    for job_id in job_ids:
                        conn.execute("DELETE FROM job_events WHERE job_id = ?", (job_id,))
                        conn.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
            finally:
                conn.close()
        return job_ids

    def touch_worker(self, owner_id: str, heartbeat_at: str):
        """Register a job manager or refresh its heartbeat"""
        with self._write_lock:
            conn = _connect(self.db_file)
            try:
                with conn:
                    conn.execute(
                        "INSERT OR REPLACE INTO workers (owner_id, heartbeat_at) VALUES (?, ?)",
                        (owner_id, heartbeat_at)
                    )
            finally:
                conn.close()

    def remove_worker(self, owner_id: str):
        with self._write_lock:
            conn = _connect(self.db_file)
            try:
                with conn:
                    conn.execute("DELETE FROM workers WHERE owner_id = ?", (owner_id,))
            finally:
                conn.close()

    def get_orphaned_jobs(self, statuses: Iterable[str], alive_since: str, exclude_owner: str = None) -> List[dict]:
        """
        Jobs in the given statuses whose owner has no heartbeat at or after alive_since

        Jobs without an owner count as orphaned. Jobs of exclude_owner never do.
        """
        statuses = list(statuses)
        placeholders = ", ".join("?" for _ in statuses)
        query = f"""
            SELECT * FROM jobs
            WHERE status IN ({placeholders})
              AND (owner_id IS NULL OR owner_id NOT IN (
                    SELECT owner_id FROM workers WHERE heartbeat_at >= ?))
        """
        params: List[Any] = statuses + [alive_since]
        if exclude_owner is not None:
            query += " AND (owner_id IS NULL OR owner_id != ?)"
            params.append(exclude_owner)
        query += " ORDER BY created_at ASC"

        conn = _connect(self.db_file)
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [self._row_to_dict(row) for row in rows]

    def delete_stale_workers(self, cutoff: str) -> int:
        with self._write_lock:
            conn = _connect(self.db_file)
            try:
                with conn:
                    removed = conn.execute("DELETE FROM workers WHERE heartbeat_at < ?", (cutoff,)).rowcount
            finally:
                conn.close()
        return removed

    def get_stats(self) -> Dict[str, Any]:
        """Get job statistics"""
        conn = _connect(self.db_file)
        total_jobs = conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0]
        by_status = {
            row[0]: row[1]
            for row in conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status").fetchall()
        }
        conn.close()
        return {
            'total_jobs': total_jobs,
            'by_status': by_status
        }

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict:
        job = dict(row)
        # Parse JSON fields
        job['options'] = _loads(job.get('options')) or {}
        job['result_data'] = _loads(job.get('result_data'))
        return job
