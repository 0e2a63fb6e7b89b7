"""
Run History Database

SQLite journal of workflow runs for later inspection.

Tables:
- runs: one row per transfer run
- stage_attempts: per-stage state and duration
- poi_warnings: reconciliation warnings attached to a run
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from .models import WorkflowRun
from .reconciliation import ReconciliationResult


class RunHistoryDB:
    """
    SQLite database for run history

    Recording never raises into the workflow: failures are logged and
    reported through the boolean return value.
    """

    def __init__(self, db_path: str = "run_history.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database (":memory:" for tests)
        """
        self.db_path = db_path if db_path == ":memory:" else str(Path(db_path))
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"Run history database initialized: {self.db_path}")

    def _initialize_db(self):
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT UNIQUE NOT NULL,
                workflow TEXT NOT NULL,
                wallet_id TEXT NOT NULL,
                status TEXT NOT NULL,
                failed_stage TEXT,
                error_kind TEXT,
                detail TEXT,
                escalate BOOLEAN DEFAULT 0,
                outcome_unknown BOOLEAN DEFAULT 0,
                tx_id TEXT,
                started_at TIMESTAMP NOT NULL,
                finished_at TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS stage_attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                stage TEXT NOT NULL,
                state TEXT NOT NULL,
                duration_seconds REAL,
                error_kind TEXT,
                detail TEXT,
                FOREIGN KEY (run_id) REFERENCES runs(run_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS poi_warnings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                step TEXT NOT NULL,
                message TEXT NOT NULL,
                recorded_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_runs_wallet ON runs(wallet_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_runs_started ON runs(started_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_stage_attempts_run ON stage_attempts(run_id)")

        self.conn.commit()
        logger.debug("Database tables created successfully")

    def record_run(self, run: WorkflowRun, workflow: str = "transfer") -> bool:
        """
        Record a finished run and its stage attempts

        Args:
            run: Workflow run
            workflow: Workflow name

        Returns:
            Success status
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO runs (
                    run_id, workflow, wallet_id, status, failed_stage, error_kind,
                    detail, escalate, outcome_unknown, tx_id, started_at, finished_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                run.run_id,
                workflow,
                run.wallet_id,
                run.status.value,
                run.failed_stage,
                run.error_kind.value if run.error_kind else None,
                run.detail,
                run.escalate,
                run.outcome_unknown,
                run.output.get('tx_id'),
                run.started_at.isoformat(),
                run.finished_at.isoformat() if run.finished_at else None,
            ))
            cursor.executemany("""
                INSERT INTO stage_attempts (
                    run_id, position, stage, state, duration_seconds, error_kind, detail
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    run.run_id,
                    position,
                    record.name,
                    record.state.value,
                    record.duration_seconds,
                    record.error_kind.value if record.error_kind else None,
                    record.detail,
                )
                for position, record in enumerate(run.stages)
            ])

            self.conn.commit()
            logger.info(f"✓ Run recorded: {run.run_id}")
            return True

        except sqlite3.IntegrityError:
            logger.error(f"✗ Duplicate run record: {run.run_id}")
            self.conn.rollback()
            return False
        except sqlite3.Error as e:
            logger.error(f"✗ Error recording run: {e}")
            self.conn.rollback()
            return False

    def record_reconciliation(self, run_id: str, result: ReconciliationResult) -> bool:
        """
        Attach reconciliation warnings to a run

        Args:
            run_id: Run the reconciliation followed
            result: Reconciliation result

        Returns:
            Success status
        """
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (run_id, record.name, record.detail or "", now)
            for record in result.steps
            if record.error_kind is not None
        ]
        try:
            self.conn.executemany("""
                INSERT INTO poi_warnings (run_id, step, message, recorded_at)
                VALUES (?, ?, ?, ?)
            """, rows)
            self.conn.commit()
            return True
        except sqlite3.Error as e:
            logger.error(f"Error recording POI warnings: {e}")
            self.conn.rollback()
            return False

    def get_run(self, run_id: str) -> Optional[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def get_stage_attempts(self, run_id: str) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM stage_attempts WHERE run_id = ? ORDER BY position", (run_id,))
        return [dict(row) for row in cursor.fetchall()]

    def get_poi_warnings(self, run_id: str) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM poi_warnings WHERE run_id = ? ORDER BY id", (run_id,))
        return [dict(row) for row in cursor.fetchall()]

    def get_recent_runs(self, limit: int = 20, wallet_id: Optional[str] = None) -> List[Dict]:
        """
        Most recent runs first

        Args:
            limit: Maximum rows
            wallet_id: Optional wallet filter

        Returns:
            List of run records
        """
        cursor = self.conn.cursor()
        if wallet_id:
            cursor.execute(
                "SELECT * FROM runs WHERE wallet_id = ? ORDER BY started_at DESC LIMIT ?",
                (wallet_id, limit),
            )
        else:
            cursor.execute("SELECT * FROM runs ORDER BY started_at DESC LIMIT ?", (limit,))
        return [dict(row) for row in cursor.fetchall()]

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Run history database closed")
