"""Tests for the SQLite pattern store."""

from __future__ import annotations

import itertools
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from retro.exceptions import StoreError
from retro.models import (
    IngestedSession,
    MergeOp,
    Pattern,
    PatternStatus,
    Projection,
    ProjectionStatus,
    SuggestedTarget,
)
from retro.store import SCHEMA_VERSION, PatternStore


def ingested(session_id: str, project: str = "/work/app", mtime: datetime | None = None) -> IngestedSession:
    when = mtime or datetime.now(tz=UTC)
    return IngestedSession(
        session_id=session_id,
        project=project,
        session_path=f"/logs/{session_id}.jsonl",
        file_size=100,
        file_mtime=when.isoformat(),
    )


def projection(pattern_id: str, **overrides: object) -> Projection:
    fields: dict[str, object] = {
        "id": f"proj-{pattern_id}",
        "pattern_id": pattern_id,
        "target_type": SuggestedTarget.CLAUDE_MD,
        "target_path": "/work/app/CLAUDE.md",
        "content": "Always run tests",
    }
    fields.update(overrides)
    return Projection(**fields)


class TestSchema:
    """Tests for schema creation and migration."""

    def test_open_sets_version_and_wal(self, store: PatternStore) -> None:
        """A fresh store is fully migrated and in WAL mode."""
        assert store.schema_version() == SCHEMA_VERSION
        assert store.is_wal()

    def test_migrate_is_idempotent(self, store: PatternStore) -> None:
        """Running migrations again changes nothing."""
        store.migrate()
        store.migrate()
        assert store.schema_version() == SCHEMA_VERSION

    def test_old_schema_gains_columns(self, tmp_path: Path) -> None:
        """A version-1 projections table gets status and nudged columns."""
        db_path = tmp_path / "old.db"
        conn = sqlite3.connect(db_path)
        conn.execute(
            """
            CREATE TABLE projections (
                id TEXT PRIMARY KEY, pattern_id TEXT NOT NULL, target_type TEXT NOT NULL,
                target_path TEXT NOT NULL, content TEXT NOT NULL, applied_at TEXT NOT NULL,
                pr_url TEXT
            )
            """,
        )
        conn.execute(
            "INSERT INTO projections VALUES ('x', 'p1', 'claude_md', '/f', 'c', '2026-01-01T00:00:00+00:00', NULL)",
        )
        conn.commit()
        conn.close()

        with PatternStore.open(db_path) as store:
            migrated = store.get_projection("x")
            assert migrated is not None
            assert migrated.status == ProjectionStatus.APPLIED
            assert migrated.nudged is False
            assert store.schema_version() == SCHEMA_VERSION


class TestPatterns:
    """Tests for pattern persistence and merging."""

    def test_round_trip(self, store: PatternStore, make_pattern: Callable[..., Pattern]) -> None:
        """Inserted patterns read back unchanged."""
        pattern = make_pattern(source_sessions=["s1", "s2"], related_files=["a.py"], project="/work/app")
        store.insert_pattern(pattern)
        loaded = store.get_pattern(pattern.id)
        assert loaded is not None
        assert loaded.source_sessions == ["s1", "s2"]
        assert loaded.related_files == ["a.py"]
        assert loaded.project == "/work/app"
        assert loaded.suggested_target == SuggestedTarget.CLAUDE_MD

    def test_project_filter_includes_global(
        self,
        store: PatternStore,
        make_pattern: Callable[..., Pattern],
    ) -> None:
        """A project sees its own and unscoped patterns, not other projects'."""
        store.insert_pattern(make_pattern(id="mine", project="/work/app"))
        store.insert_pattern(make_pattern(id="global", project=None))
        store.insert_pattern(make_pattern(id="other", project="/work/other"))

        scoped = {p.id for p in store.get_patterns([PatternStatus.DISCOVERED], "/work/app")}
        everything = {p.id for p in store.get_patterns([PatternStatus.DISCOVERED])}
        assert scoped == {"mine", "global"}
        assert everything == {"mine", "global", "other"}

    def test_apply_merge_is_monotonic(self, store: PatternStore, make_pattern: Callable[..., Pattern]) -> None:
        """Confidence takes the max, times_seen grows, sessions are unioned."""
        store.insert_pattern(make_pattern(id="p", confidence=0.8, source_sessions=["s1"]))

        store.apply_merge(MergeOp(pattern_id="p", new_sessions=["s1", "s2"], new_confidence=0.5))
        merged = store.apply_merge(MergeOp(pattern_id="p", new_sessions=["s3"], new_confidence=0.9))

        assert merged.confidence == 0.9
        assert merged.times_seen == 3
        assert merged.source_sessions == ["s1", "s2", "s3"]
        loaded = store.get_pattern("p")
        assert loaded is not None
        assert loaded.confidence == 0.9
        assert loaded.times_seen == 3

    def test_apply_merge_is_order_independent(
        self,
        store: PatternStore,
        make_pattern: Callable[..., Pattern],
    ) -> None:
        """Every ordering of the same merges yields the same union and count."""
        batches = [["s2", "s3"], ["s3", "s4", "s1"], ["s5", "s5"]]
        results = []
        for index, order in enumerate(itertools.permutations(batches)):
            pattern_id = f"order-{index}"
            store.insert_pattern(make_pattern(id=pattern_id, confidence=0.6, source_sessions=["s1"]))
            for sessions in order:
                store.apply_merge(MergeOp(pattern_id=pattern_id, new_sessions=sessions, new_confidence=0.7))
            loaded = store.get_pattern(pattern_id)
            assert loaded is not None
            results.append(loaded)

        for pattern in results:
            assert sorted(pattern.source_sessions) == ["s1", "s2", "s3", "s4", "s5"]
            assert pattern.times_seen == 4
            assert pattern.confidence == 0.7

    def test_apply_merge_unknown_pattern(self, store: PatternStore) -> None:
        """Merging into a missing pattern raises."""
        with pytest.raises(StoreError):
            store.apply_merge(MergeOp(pattern_id="missing", new_confidence=0.5))

    def test_reopen_pattern(self, store: PatternStore, make_pattern: Callable[..., Pattern]) -> None:
        """Active patterns reopen; dismissed ones stay dismissed."""
        store.insert_pattern(make_pattern(id="active", status=PatternStatus.ACTIVE))
        store.insert_pattern(make_pattern(id="dismissed", status=PatternStatus.DISMISSED))

        assert store.reopen_pattern("active")
        assert not store.reopen_pattern("dismissed")
        assert store.get_pattern("active").status == PatternStatus.DISCOVERED  # type: ignore[union-attr]
        assert store.get_pattern("dismissed").status == PatternStatus.DISMISSED  # type: ignore[union-attr]

    def test_generation_failed_flag(self, store: PatternStore, make_pattern: Callable[..., Pattern]) -> None:
        """The generation failure flag persists."""
        store.insert_pattern(make_pattern(id="p"))
        store.set_generation_failed("p", True)
        assert store.get_pattern("p").generation_failed  # type: ignore[union-attr]


class TestProjections:
    """Tests for projection bookkeeping."""

    def test_projected_ids_by_status(self, store: PatternStore, make_pattern: Callable[..., Pattern]) -> None:
        """Only projections in the requested states count."""
        for pid in ("a", "b", "c"):
            store.insert_pattern(make_pattern(id=pid))
        store.insert_projection(projection("a"))
        store.insert_projection(projection("b", status=ProjectionStatus.PENDING_REVIEW))
        store.insert_projection(projection("c", status=ProjectionStatus.DISMISSED))

        ids = store.get_projected_pattern_ids([ProjectionStatus.APPLIED, ProjectionStatus.PENDING_REVIEW])
        assert ids == {"a", "b"}

    def test_pending_review_lifecycle(self, store: PatternStore, make_pattern: Callable[..., Pattern]) -> None:
        """Pending items can be applied and given a PR URL."""
        store.insert_pattern(make_pattern(id="a"))
        store.insert_projection(projection("a", status=ProjectionStatus.PENDING_REVIEW))
        assert [p.id for p in store.get_pending_review_projections()] == ["proj-a"]

        store.update_projection_status("proj-a", ProjectionStatus.APPLIED)
        store.update_projection_pr_url("proj-a", "https://github.com/o/r/pull/1")
        assert store.get_pending_review_projections() == []
        assert [p.id for p in store.get_applied_projections_with_pr()] == ["proj-a"]

    def test_nudges_are_shown_once_per_url(
        self,
        store: PatternStore,
        make_pattern: Callable[..., Pattern],
    ) -> None:
        """Distinct unnudged URLs are listed until marked."""
        url = "https://github.com/o/r/pull/7"
        for pid in ("a", "b"):
            store.insert_pattern(make_pattern(id=pid))
            store.insert_projection(projection(pid, pr_url=url))

        assert store.get_unnudged_pr_urls() == [url]
        store.mark_pr_nudged(url)
        assert store.get_unnudged_pr_urls() == []

    def test_last_applied_at(self, store: PatternStore, make_pattern: Callable[..., Pattern]) -> None:
        """The latest projection time is reported."""
        assert store.last_applied_at() is None
        when = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        store.insert_pattern(make_pattern(id="a"))
        store.insert_projection(projection("a", applied_at=when))
        assert store.last_applied_at() == when

    def test_delete_projection(self, store: PatternStore, make_pattern: Callable[..., Pattern]) -> None:
        """Deleted projections disappear."""
        store.insert_pattern(make_pattern(id="a"))
        store.insert_projection(projection("a"))
        store.delete_projection("proj-a")
        assert store.get_projection("proj-a") is None


class TestSessions:
    """Tests for session fingerprints and analysis selection."""

    def test_fingerprint_matching(self, store: PatternStore) -> None:
        """Only an identical size and mtime count as already ingested."""
        session = ingested("s1")
        store.record_ingested_session(session)
        assert store.is_session_ingested("s1", session.file_size, session.file_mtime)
        assert not store.is_session_ingested("s1", session.file_size + 1, session.file_mtime)
        assert not store.is_session_ingested("s2", session.file_size, session.file_mtime)

    def test_selection_window_and_rolling(self, store: PatternStore) -> None:
        """Old sessions are excluded; analyzed ones only come back when rolling."""
        now = datetime.now(tz=UTC)
        store.record_ingested_session(ingested("old", mtime=now - timedelta(days=30)))
        store.record_ingested_session(ingested("new1", mtime=now - timedelta(days=2)))
        store.record_ingested_session(ingested("new2", mtime=now - timedelta(days=1)))
        store.mark_session_analyzed("new1", "/work/app")

        since = now - timedelta(days=14)
        fresh = [s.session_id for s in store.get_sessions_for_analysis(None, since, rolling=False)]
        rolling = [s.session_id for s in store.get_sessions_for_analysis(None, since, rolling=True)]
        assert fresh == ["new2"]
        assert rolling == ["new1", "new2"]

    def test_counts_by_project(self, store: PatternStore) -> None:
        """Counters respect the project filter."""
        store.record_ingested_session(ingested("a", project="/work/app"))
        store.record_ingested_session(ingested("b", project="/work/other"))
        store.mark_session_analyzed("a", "/work/app")

        assert store.ingested_session_count() == 2
        assert store.ingested_session_count("/work/other") == 1
        assert store.unanalyzed_session_count() == 1
        assert store.unanalyzed_session_count("/work/app") == 0
        assert store.analyzed_session_count() == 1
        assert store.list_projects() == ["/work/app", "/work/other"]

    def test_metadata(self, store: PatternStore) -> None:
        """Metadata values are upserted."""
        assert store.get_metadata("k") is None
        store.set_metadata("k", "1")
        store.set_metadata("k", "2")
        assert store.get_metadata("k") == "2"
