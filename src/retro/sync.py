"""Reconcile applied projections with the state of their pull requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from . import audit_log
from .exceptions import GitError
from .git import GitClient
from .store import PatternStore

logger = logging.getLogger(__name__)

PR_CLOSED = "CLOSED"


@dataclass
class SyncResult:
    checked: int = 0
    reset_patterns: list[str] = field(default_factory=list)
    failed_urls: list[str] = field(default_factory=list)


def sync_closed_prs(store: PatternStore, git: GitClient, audit_path: Path) -> SyncResult:
    """Reopen patterns whose PR was closed without merging.

    The projection is deleted so the pattern can be planned again.
    """
    result = SyncResult()
    if not git.is_pr_tool_available():
        logger.info("gh not available; skipping PR sync")
        return result

    projections = store.get_applied_projections_with_pr()
    urls = list(dict.fromkeys(p.pr_url for p in projections if p.pr_url))

    for url in urls:
        result.checked += 1
        try:
            state = git.pr_state(url)
        except GitError as e:
            logger.warning("Could not check PR %s: %s", url, e)
            result.failed_urls.append(url)
            continue
        if state != PR_CLOSED:
            continue

        pattern_ids = []
        for projection in projections:
            if projection.pr_url != url:
                continue
            store.delete_projection(projection.id)
            store.reopen_pattern(projection.pattern_id)
            pattern_ids.append(projection.pattern_id)

        result.reset_patterns.extend(pattern_ids)
        audit_log.append(audit_path, "sync_reset", {"patterns": pattern_ids, "pr_url": url})

    return result


def take_pr_nudges(store: PatternStore) -> list[str]:
    """PR URLs not yet shown to the user; each is returned only once."""
    urls = store.get_unnudged_pr_urls()
    for url in urls:
        store.mark_pr_nudged(url)
    return urls
