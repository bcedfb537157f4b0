"""SQLite-backed store for patterns, projections and session fingerprints."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from .exceptions import StoreError
from .models import (
    IngestedSession,
    MergeOp,
    Pattern,
    PatternStatus,
    PatternType,
    Projection,
    ProjectionStatus,
    SuggestedTarget,
)
from .util import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3

_BASE_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS patterns (
        id TEXT PRIMARY KEY,
        pattern_type TEXT NOT NULL,
        description TEXT NOT NULL,
        confidence REAL NOT NULL,
        times_seen INTEGER NOT NULL DEFAULT 1,
        first_seen TEXT NOT NULL,
        last_seen TEXT NOT NULL,
        last_projected TEXT,
        status TEXT NOT NULL DEFAULT 'discovered',
        source_sessions TEXT NOT NULL DEFAULT '[]',
        related_files TEXT NOT NULL DEFAULT '[]',
        suggested_content TEXT NOT NULL DEFAULT '',
        suggested_target TEXT NOT NULL,
        project TEXT,
        generation_failed INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS projections (
        id TEXT PRIMARY KEY,
        pattern_id TEXT NOT NULL,
        target_type TEXT NOT NULL,
        target_path TEXT NOT NULL,
        content TEXT NOT NULL,
        applied_at TEXT NOT NULL,
        pr_url TEXT,
        FOREIGN KEY (pattern_id) REFERENCES patterns(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analyzed_sessions (
        session_id TEXT PRIMARY KEY,
        project TEXT NOT NULL,
        analyzed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ingested_sessions (
        session_id TEXT PRIMARY KEY,
        project TEXT NOT NULL,
        session_path TEXT NOT NULL,
        file_size INTEGER NOT NULL,
        file_mtime TEXT NOT NULL,
        ingested_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_patterns_status ON patterns(status)",
    "CREATE INDEX IF NOT EXISTS idx_projections_pattern ON projections(pattern_id)",
)

# (version, table, column, definition); applied in order, skipped when present.
_ADDED_COLUMNS = (
    (2, "projections", "status", "TEXT NOT NULL DEFAULT 'applied'"),
    (3, "projections", "nudged", "INTEGER NOT NULL DEFAULT 0"),
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _union(existing: list[str], extra: list[str]) -> list[str]:
    """Order-preserving deduplicated union."""
    merged = list(dict.fromkeys(existing))
    for item in extra:
        if item not in merged:
            merged.append(item)
    return merged


class PatternStore:
    """Persisted patterns, projections, session fingerprints and metadata.

    One writer at a time is guaranteed by the process lock, not by database
    transactions. The database runs in WAL mode so readers never block.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize store with database path.

        Args:
            db_path: Path to the SQLite file (``":memory:"`` is accepted)
        """
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @classmethod
    def open(cls, db_path: Path) -> PatternStore:
        """Open a store and bring its schema up to date."""
        store = cls(db_path)
        store.migrate()
        return store

    def connect(self) -> sqlite3.Connection:
        """Open or return the existing connection."""
        if self._conn is not None:
            return self._conn
        try:
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=5.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA foreign_keys = ON")
        except (sqlite3.Error, OSError) as e:
            msg = f"Failed to open database {self.db_path}: {e}"
            raise StoreError(msg) from e
        self._conn = conn
        return conn

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> PatternStore:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        try:
            return self.connect().execute(query, params)
        except sqlite3.Error as e:
            msg = f"Database query failed: {e}"
            raise StoreError(msg, details={"query": " ".join(query.split())}) from e

    def _write(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        cursor = self._execute(query, params)
        self.connect().commit()
        return cursor

    def _scalar(self, query: str, params: tuple[Any, ...] = ()) -> Any:
        row = self._execute(query, params).fetchone()
        return row[0] if row is not None else None

    # Schema

    def schema_version(self) -> int:
        """Current ``PRAGMA user_version``."""
        return int(self._scalar("PRAGMA user_version") or 0)

    def migrate(self) -> None:
        """Create tables and apply additive migrations.

        Safe to run any number of times against an already-migrated store.
        """
        for statement in _BASE_SCHEMA:
            self._execute(statement)

        for _version, table, column, definition in _ADDED_COLUMNS:
            if column not in self._columns(table):
                self._execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

        if self.schema_version() < SCHEMA_VERSION:
            self._execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        self.connect().commit()

    def _columns(self, table: str) -> set[str]:
        return {row["name"] for row in self._execute(f"PRAGMA table_info({table})")}

    def is_wal(self) -> bool:
        """Whether the journal mode is WAL."""
        mode = self._scalar("PRAGMA journal_mode")
        return str(mode).lower() == "wal"

    # Patterns

    def insert_pattern(self, pattern: Pattern) -> None:
        """Insert a new pattern row."""
        self._write(
            """
            INSERT INTO patterns (
                id, pattern_type, description, confidence, times_seen,
                first_seen, last_seen, last_projected, status, source_sessions,
                related_files, suggested_content, suggested_target, project,
                generation_failed
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pattern.id,
                pattern.pattern_type.value,
                pattern.description,
                pattern.confidence,
                pattern.times_seen,
                _iso(pattern.first_seen),
                _iso(pattern.last_seen),
                _iso(pattern.last_projected),
                pattern.status.value,
                json.dumps(pattern.source_sessions),
                json.dumps(pattern.related_files),
                pattern.suggested_content,
                pattern.suggested_target.value,
                pattern.project,
                int(pattern.generation_failed),
            ),
        )

    def get_pattern(self, pattern_id: str) -> Pattern | None:
        """Fetch one pattern by id."""
        row = self._execute("SELECT * FROM patterns WHERE id = ?", (pattern_id,)).fetchone()
        return self._row_to_pattern(row) if row is not None else None

    def get_patterns(
        self,
        statuses: list[PatternStatus],
        project: str | None = None,
    ) -> list[Pattern]:
        """Patterns in the given statuses.

        With a project, returns that project's patterns plus global ones;
        without, returns every pattern.
        """
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        query = f"SELECT * FROM patterns WHERE status IN ({placeholders})"
        params: list[Any] = [s.value for s in statuses]
        if project is not None:
            query += " AND (project = ? OR project IS NULL)"
            params.append(project)
        query += " ORDER BY first_seen, id"
        rows = self._execute(query, tuple(params)).fetchall()
        return [self._row_to_pattern(row) for row in rows]

    def get_all_patterns(self, project: str | None = None) -> list[Pattern]:
        """Every pattern regardless of status."""
        return self.get_patterns(list(PatternStatus), project)

    def apply_merge(self, op: MergeOp, now: datetime | None = None) -> Pattern:
        """Reinforce an existing pattern.

        Confidence becomes the max of old and new, times_seen grows by the
        op's increment, and source sessions are unioned.

        Raises:
            StoreError: If the pattern does not exist
        """
        existing = self.get_pattern(op.pattern_id)
        if existing is None:
            msg = f"Cannot merge into unknown pattern {op.pattern_id}"
            raise StoreError(msg, details={"pattern_id": op.pattern_id})

        confidence = max(existing.confidence, op.new_confidence)
        times_seen = existing.times_seen + max(op.additional_times_seen, 0)
        sessions = _union(existing.source_sessions, op.new_sessions)
        last_seen = now or utc_now()

        self._write(
            """
            UPDATE patterns
            SET confidence = ?, times_seen = ?, source_sessions = ?, last_seen = ?
            WHERE id = ?
            """,
            (confidence, times_seen, json.dumps(sessions), _iso(last_seen), op.pattern_id),
        )
        return existing.model_copy(
            update={
                "confidence": confidence,
                "times_seen": times_seen,
                "source_sessions": sessions,
                "last_seen": last_seen,
            },
        )

    def update_pattern_status(self, pattern_id: str, status: PatternStatus) -> None:
        self._write("UPDATE patterns SET status = ? WHERE id = ?", (status.value, pattern_id))

    def reopen_pattern(self, pattern_id: str) -> bool:
        """Return an active or archived pattern to discovered.

        Used when a delivered change was reverted upstream.

        Returns:
            True if the pattern was reopened
        """
        cursor = self._write(
            "UPDATE patterns SET status = ? WHERE id = ? AND status IN (?, ?)",
            (
                PatternStatus.DISCOVERED.value,
                pattern_id,
                PatternStatus.ACTIVE.value,
                PatternStatus.ARCHIVED.value,
            ),
        )
        return cursor.rowcount > 0

    def update_pattern_last_projected(
        self,
        pattern_id: str,
        when: datetime | None = None,
    ) -> None:
        self._write(
            "UPDATE patterns SET last_projected = ? WHERE id = ?",
            (_iso(when or utc_now()), pattern_id),
        )

    def set_generation_failed(self, pattern_id: str, failed: bool) -> None:
        self._write(
            "UPDATE patterns SET generation_failed = ? WHERE id = ?",
            (int(failed), pattern_id),
        )

    def pattern_count_by_status(self, status: PatternStatus) -> int:
        return int(
            self._scalar("SELECT COUNT(*) FROM patterns WHERE status = ?", (status.value,)) or 0,
        )

    def _row_to_pattern(self, row: sqlite3.Row) -> Pattern:
        return Pattern(
            id=row["id"],
            pattern_type=PatternType(row["pattern_type"]),
            description=row["description"],
            confidence=row["confidence"],
            times_seen=row["times_seen"],
            first_seen=parse_timestamp(row["first_seen"]) or utc_now(),
            last_seen=parse_timestamp(row["last_seen"]) or utc_now(),
            last_projected=parse_timestamp(row["last_projected"]),
            status=PatternStatus(row["status"]),
            source_sessions=json.loads(row["source_sessions"] or "[]"),
            related_files=json.loads(row["related_files"] or "[]"),
            suggested_content=row["suggested_content"] or "",
            suggested_target=SuggestedTarget(row["suggested_target"]),
            project=row["project"],
            generation_failed=bool(row["generation_failed"]),
        )

    # Projections

    def insert_projection(self, projection: Projection) -> None:
        self._write(
            """
            INSERT INTO projections (
                id, pattern_id, target_type, target_path, content,
                applied_at, pr_url, status, nudged
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                projection.id,
                projection.pattern_id,
                projection.target_type.value,
                projection.target_path,
                projection.content,
                _iso(projection.applied_at),
                projection.pr_url,
                projection.status.value,
                int(projection.nudged),
            ),
        )

    def get_projection(self, projection_id: str) -> Projection | None:
        row = self._execute(
            "SELECT * FROM projections WHERE id = ?",
            (projection_id,),
        ).fetchone()
        return self._row_to_projection(row) if row is not None else None

    def get_projected_pattern_ids(self, statuses: list[ProjectionStatus]) -> set[str]:
        """Ids of patterns carrying a projection in one of the statuses."""
        if not statuses:
            return set()
        placeholders = ", ".join("?" for _ in statuses)
        rows = self._execute(
            f"SELECT DISTINCT pattern_id FROM projections WHERE status IN ({placeholders})",
            tuple(s.value for s in statuses),
        ).fetchall()
        return {row["pattern_id"] for row in rows}

    def get_pending_review_projections(self) -> list[Projection]:
        rows = self._execute(
            "SELECT * FROM projections WHERE status = ? ORDER BY applied_at, id",
            (ProjectionStatus.PENDING_REVIEW.value,),
        ).fetchall()
        return [self._row_to_projection(row) for row in rows]

    def update_projection_status(self, projection_id: str, status: ProjectionStatus) -> None:
        self._write(
            "UPDATE projections SET status = ? WHERE id = ?",
            (status.value, projection_id),
        )

    def update_projection_pr_url(self, projection_id: str, pr_url: str) -> None:
        self._write(
            "UPDATE projections SET pr_url = ? WHERE id = ?",
            (pr_url, projection_id),
        )

    def get_applied_projections_with_pr(self) -> list[Projection]:
        rows = self._execute(
            """
            SELECT * FROM projections
            WHERE status = ? AND pr_url IS NOT NULL AND pr_url != ''
            ORDER BY applied_at, id
            """,
            (ProjectionStatus.APPLIED.value,),
        ).fetchall()
        return [self._row_to_projection(row) for row in rows]

    def delete_projection(self, projection_id: str) -> None:
        self._write("DELETE FROM projections WHERE id = ?", (projection_id,))

    def get_unnudged_pr_urls(self) -> list[str]:
        """Distinct PR URLs the user has not been reminded about yet."""
        rows = self._execute(
            """
            SELECT pr_url, MIN(applied_at) AS first_applied FROM projections
            WHERE status = ? AND pr_url IS NOT NULL AND pr_url != '' AND nudged = 0
            GROUP BY pr_url
            ORDER BY first_applied
            """,
            (ProjectionStatus.APPLIED.value,),
        ).fetchall()
        return [row["pr_url"] for row in rows]

    def mark_pr_nudged(self, pr_url: str) -> None:
        self._write("UPDATE projections SET nudged = 1 WHERE pr_url = ?", (pr_url,))

    def _row_to_projection(self, row: sqlite3.Row) -> Projection:
        return Projection(
            id=row["id"],
            pattern_id=row["pattern_id"],
            target_type=SuggestedTarget(row["target_type"]),
            target_path=row["target_path"],
            content=row["content"],
            applied_at=parse_timestamp(row["applied_at"]) or utc_now(),
            pr_url=row["pr_url"],
            status=ProjectionStatus(row["status"]),
            nudged=bool(row["nudged"]),
        )

    # Sessions

    def is_session_ingested(self, session_id: str, file_size: int, file_mtime: str) -> bool:
        """Whether this exact (size, mtime) fingerprint is already recorded."""
        row = self._execute(
            "SELECT file_size, file_mtime FROM ingested_sessions WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        if row is None:
            return False
        return row["file_size"] == file_size and row["file_mtime"] == file_mtime

    def record_ingested_session(self, session: IngestedSession) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO ingested_sessions (
                session_id, project, session_path, file_size, file_mtime, ingested_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                session.session_id,
                session.project,
                session.session_path,
                session.file_size,
                session.file_mtime,
                _iso(session.ingested_at),
            ),
        )

    def get_sessions_for_analysis(
        self,
        project: str | None,
        since: datetime,
        rolling: bool,
    ) -> list[IngestedSession]:
        """Ingested sessions modified inside the window.

        Args:
            project: Restrict to one project, or None for all
            since: Window start
            rolling: Include sessions already analyzed

        Returns:
            Sessions ordered oldest first
        """
        query = "SELECT i.* FROM ingested_sessions i WHERE i.file_mtime >= ?"
        params: list[Any] = [since.isoformat()]
        if project is not None:
            query += " AND i.project = ?"
            params.append(project)
        if not rolling:
            query += (
                " AND NOT EXISTS (SELECT 1 FROM analyzed_sessions a"
                " WHERE a.session_id = i.session_id)"
            )
        query += " ORDER BY i.file_mtime, i.session_id"
        rows = self._execute(query, tuple(params)).fetchall()
        return [self._row_to_ingested(row) for row in rows]

    def mark_session_analyzed(self, session_id: str, project: str) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO analyzed_sessions (session_id, project, analyzed_at)
            VALUES (?, ?, ?)
            """,
            (session_id, project, _iso(utc_now())),
        )

    def unanalyzed_session_count(self, project: str | None = None) -> int:
        query = (
            "SELECT COUNT(*) FROM ingested_sessions i WHERE NOT EXISTS"
            " (SELECT 1 FROM analyzed_sessions a WHERE a.session_id = i.session_id)"
        )
        params: tuple[Any, ...] = ()
        if project is not None:
            query += " AND i.project = ?"
            params = (project,)
        return int(self._scalar(query, params) or 0)

    def ingested_session_count(self, project: str | None = None) -> int:
        if project is None:
            return int(self._scalar("SELECT COUNT(*) FROM ingested_sessions") or 0)
        return int(
            self._scalar(
                "SELECT COUNT(*) FROM ingested_sessions WHERE project = ?",
                (project,),
            )
            or 0,
        )

    def analyzed_session_count(self) -> int:
        return int(self._scalar("SELECT COUNT(*) FROM analyzed_sessions") or 0)

    def last_ingested_at(self) -> datetime | None:
        return parse_timestamp(self._scalar("SELECT MAX(ingested_at) FROM ingested_sessions"))

    def last_analyzed_at(self) -> datetime | None:
        return parse_timestamp(self._scalar("SELECT MAX(analyzed_at) FROM analyzed_sessions"))

    def last_applied_at(self) -> datetime | None:
        return parse_timestamp(self._scalar("SELECT MAX(applied_at) FROM projections"))

    def list_projects(self) -> list[str]:
        rows = self._execute(
            "SELECT DISTINCT project FROM ingested_sessions ORDER BY project",
        ).fetchall()
        return [row["project"] for row in rows]

    def _row_to_ingested(self, row: sqlite3.Row) -> IngestedSession:
        return IngestedSession(
            session_id=row["session_id"],
            project=row["project"],
            session_path=row["session_path"],
            file_size=row["file_size"],
            file_mtime=row["file_mtime"],
            ingested_at=parse_timestamp(row["ingested_at"]) or utc_now(),
        )

    # Metadata

    def get_metadata(self, key: str) -> str | None:
        return self._scalar("SELECT value FROM metadata WHERE key = ?", (key,))

    def set_metadata(self, key: str, value: str) -> None:
        self._write(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            (key, value),
        )
