"""Fingerprint scan of Claude Code transcript directories."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from ..config import RetroConfig
from ..exceptions import FileOperationError
from ..models import IngestedSession, IngestResult
from ..store import PatternStore
from .parser import SessionParser, read_session_cwd

logger = logging.getLogger(__name__)


def encode_project_path(path: str) -> str:
    """Claude Code's directory name for a project: every / becomes -."""
    return path.replace("/", "-")


def recover_project_path(sessions_dir: Path, encoded: str) -> str:
    """Real project path for an encoded directory.

    The encoding is lossy (hyphens in names), so prefer the ``cwd`` recorded
    in a transcript and fall back to naive decoding.
    """
    for path in sorted(sessions_dir.glob("*.jsonl")):
        cwd = read_session_cwd(path)
        if cwd:
            return cwd
    return "/" + encoded.replace("-", "/").lstrip("/")


class SessionScanner:
    """Records new or changed transcripts in the store."""

    def __init__(
        self,
        store: PatternStore,
        config: RetroConfig,
        parser: SessionParser | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.parser = parser or SessionParser()

    @property
    def projects_dir(self) -> Path:
        return self.config.claude_dir() / "projects"

    def is_excluded(self, project_path: str) -> bool:
        return any(excl and excl in project_path for excl in self.config.privacy.exclude_projects)

    def ingest_project(self, project_path: str) -> IngestResult:
        """Ingest every transcript of one project.

        Unchanged files (same size and mtime) are skipped without touching
        their rows.
        """
        if self.is_excluded(project_path):
            return IngestResult()
        sessions_dir = self.projects_dir / encode_project_path(project_path)
        return self._ingest_dir(sessions_dir, project_path)

    def _ingest_dir(self, sessions_dir: Path, project_path: str) -> IngestResult:
        result = IngestResult()
        if not sessions_dir.is_dir():
            return result

        paths = sorted(sessions_dir.glob("*.jsonl"))
        result.sessions_found = len(paths)

        for path in paths:
            session_id = path.stem
            try:
                stat = path.stat()
            except OSError as e:
                result.errors.append(f"metadata error for {path}: {e}")
                continue

            file_size = stat.st_size
            file_mtime = datetime.fromtimestamp(stat.st_mtime, tz=UTC).isoformat()

            if self.store.is_session_ingested(session_id, file_size, file_mtime):
                result.sessions_skipped += 1
                continue

            try:
                self.parser.parse(path, session_id, project_path)
            except FileOperationError as e:
                result.errors.append(f"parse error for {session_id}: {e}")
                continue

            self.store.record_ingested_session(
                IngestedSession(
                    session_id=session_id,
                    project=project_path,
                    session_path=str(path),
                    file_size=file_size,
                    file_mtime=file_mtime,
                ),
            )
            result.sessions_ingested += 1

        return result

    def ingest_all(self) -> IngestResult:
        """Ingest every project directory under the Claude data dir."""
        total = IngestResult()
        if not self.projects_dir.is_dir():
            return total

        excluded = [encode_project_path(e) for e in self.config.privacy.exclude_projects if e]
        for sessions_dir in sorted(self.projects_dir.iterdir()):
            if not sessions_dir.is_dir():
                continue
            if any(e in sessions_dir.name for e in excluded):
                continue
            project_path = recover_project_path(sessions_dir, sessions_dir.name)
            if self.is_excluded(project_path):
                continue
            logger.debug("Scanning %s as %s", sessions_dir.name, project_path)
            total.absorb(self._ingest_dir(sessions_dir, project_path))
        return total
