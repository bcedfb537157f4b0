"""Analysis scheduler: batches sessions through the AI and merges the results.

Batches run strictly one after another. Each batch reloads the pattern pool
so that patterns created by an earlier batch are merge targets for later ones.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path

from .backend import AnalysisBackend
from .config import RetroConfig
from .exceptions import FileOperationError
from .ingest.models import Session
from .ingest.parser import SessionParser
from .merge import parse_analysis_response, process_updates
from .models import AnalyzeResult, IngestedSession, PatternStatus
from .prompts import MAX_PROMPT_CHARS, build_analysis_prompt
from .schemas import ANALYSIS_RESPONSE_SCHEMA, schema_argument
from .scrub import scrub_session
from .store import PatternStore
from .util import utc_now

logger = logging.getLogger(__name__)

BATCH_SIZE = 20

MERGE_POOL = [PatternStatus.DISCOVERED, PatternStatus.ACTIVE]


def make_batches(sessions: list[Session], batch_size: int = BATCH_SIZE) -> list[list[Session]]:
    """Split sessions into consecutive groups of at most batch_size."""
    if batch_size < 1:
        msg = "batch_size must be positive"
        raise ValueError(msg)
    return [sessions[i : i + batch_size] for i in range(0, len(sessions), batch_size)]


class AnalysisScheduler:
    """Selects sessions, batches them and reconciles AI findings into the store."""

    def __init__(
        self,
        store: PatternStore,
        config: RetroConfig,
        backend: AnalysisBackend,
        parser: SessionParser | None = None,
        batch_size: int = BATCH_SIZE,
        max_prompt_chars: int = MAX_PROMPT_CHARS,
    ) -> None:
        self.store = store
        self.config = config
        self.backend = backend
        self.parser = parser or SessionParser()
        self.batch_size = batch_size
        self.max_prompt_chars = max_prompt_chars

    def select_sessions(
        self,
        project: str | None,
        since: datetime,
        rolling: bool,
    ) -> list[IngestedSession]:
        """Sessions inside the window; rolling mode includes already-analyzed ones."""
        return self.store.get_sessions_for_analysis(project, since, rolling)

    def load_sessions(self, selected: list[IngestedSession]) -> list[Session]:
        """Re-parse selected sessions, scrub them and drop low-signal ones."""
        sessions: list[Session] = []
        for ingested in selected:
            path = Path(ingested.session_path)
            if not path.exists():
                logger.warning("Session file not found: %s", path)
                continue
            try:
                session = self.parser.parse(path, ingested.session_id, ingested.project)
            except FileOperationError as e:
                logger.warning("Failed to re-parse session %s: %s", ingested.session_id, e)
                continue
            if session.is_low_signal:
                logger.debug("Skipping low-signal session %s", ingested.session_id)
                continue
            if self.config.privacy.scrub_secrets:
                scrub_session(session)
            sessions.append(session)
        return sessions

    def run(
        self,
        project: str | None = None,
        window_days: int | None = None,
        rolling: bool | None = None,
        context_summary: str | None = None,
    ) -> AnalyzeResult:
        """Analyze the window and merge findings.

        Args:
            project: Restrict to one project, or None for every project
            window_days: Override ``analysis.window_days``
            rolling: Override ``analysis.rolling_window``
            context_summary: Installed-context digest for the prompt

        Returns:
            Totals accumulated across all batches

        Raises:
            AnalysisError: If an AI call or reply parse fails; sessions are
                then left unmarked so the run can be retried
        """
        days = window_days if window_days is not None else self.config.analysis.window_days
        use_rolling = rolling if rolling is not None else self.config.analysis.rolling_window
        since = utc_now() - timedelta(days=days)

        selected = self.select_sessions(project, since, use_rolling)
        result = AnalyzeResult()
        if not selected:
            result.total_patterns = self._total_patterns()
            return result

        sessions = self.load_sessions(selected)
        for batch in make_batches(sessions, self.batch_size):
            # Fresh pool: includes patterns inserted by the previous batch.
            existing = self.store.get_patterns(MERGE_POOL, project)
            prompt = build_analysis_prompt(
                batch,
                existing,
                context_summary,
                max_chars=self.max_prompt_chars,
            )
            if len(prompt.session_ids) < len(batch):
                logger.info(
                    "Prompt budget kept %d of %d sessions in this batch",
                    len(prompt.session_ids),
                    len(batch),
                )

            response = self.backend.execute(
                prompt.text,
                schema_argument(ANALYSIS_RESPONSE_SCHEMA),
            )
            result.input_tokens += response.input_tokens
            result.output_tokens += response.output_tokens
            result.batches += 1

            parsed = parse_analysis_response(response.text)
            merged = process_updates(parsed.patterns, existing, project)
            for pattern in merged.new_patterns:
                self.store.insert_pattern(pattern)
                result.new_patterns += 1
            for op in merged.merge_ops:
                self.store.apply_merge(op)
                result.updated_patterns += 1

        # Including unreadable and low-signal ones, so they are never re-offered.
        for ingested in selected:
            self.store.mark_session_analyzed(ingested.session_id, ingested.project)

        result.sessions_analyzed = len(selected)
        result.total_patterns = self._total_patterns()
        return result

    def _total_patterns(self) -> int:
        return sum(self.store.pattern_count_by_status(s) for s in MERGE_POOL)
