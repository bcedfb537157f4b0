"""Pattern deduplication and merge engine.

AI proposals either reference an existing pattern by id or describe a new
one. New proposals still go through an edit-distance safety net so that a
near-verbatim restatement of a known pattern reinforces it instead of
creating a duplicate.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import jsonschema
from pydantic import ValidationError

from .exceptions import AnalysisError
from .models import (
    AnalysisResponse,
    MergeOp,
    NewPatternProposal,
    Pattern,
    PatternProposal,
    PatternStatus,
    UpdatePatternProposal,
)
from .schemas import ANALYSIS_RESPONSE_SCHEMA
from .util import strip_code_fences, truncate, utc_now

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.8


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def normalized_similarity(a: str, b: str) -> float:
    """Case-insensitive similarity in [0, 1]; two empty strings are identical."""
    a_lower = a.lower()
    b_lower = b.lower()
    max_len = max(len(a_lower), len(b_lower))
    if max_len == 0:
        return 1.0
    return 1.0 - levenshtein(a_lower, b_lower) / max_len


def find_best_match(
    description: str,
    candidates: list[Pattern],
    threshold: float = SIMILARITY_THRESHOLD,
) -> tuple[Pattern, float] | None:
    """Most similar candidate above threshold.

    Ties keep the earliest candidate.
    """
    best: tuple[Pattern, float] | None = None
    for candidate in candidates:
        score = normalized_similarity(description, candidate.description)
        if score > threshold and (best is None or score > best[1]):
            best = (candidate, score)
    return best


@dataclass
class MergeResult:
    """Patterns to insert and reinforcements to apply for one AI reply."""

    new_patterns: list[Pattern] = field(default_factory=list)
    merge_ops: list[MergeOp] = field(default_factory=list)
    dropped_ids: list[str] = field(default_factory=list)


def process_updates(
    proposals: list[PatternProposal],
    existing: list[Pattern],
    project: str | None,
    now: datetime | None = None,
) -> MergeResult:
    """Reconcile AI proposals with the existing pattern pool.

    Args:
        proposals: Parsed proposals from one analysis reply
        existing: Patterns loaded from the store before the call
        project: Scope assigned to genuinely new patterns
        now: Timestamp for new patterns

    Returns:
        New patterns and merge ops; never deletes anything
    """
    timestamp = now or utc_now()
    result = MergeResult()
    known = {p.id for p in existing}

    for proposal in proposals:
        if isinstance(proposal, UpdatePatternProposal):
            if proposal.existing_id not in known:
                logger.warning(
                    "Dropping update for unknown pattern id %s",
                    proposal.existing_id,
                )
                result.dropped_ids.append(proposal.existing_id)
                continue
            result.merge_ops.append(
                MergeOp(
                    pattern_id=proposal.existing_id,
                    new_sessions=list(dict.fromkeys(proposal.new_sessions)),
                    new_confidence=proposal.new_confidence,
                ),
            )
            continue

        _merge_or_create(proposal, existing, project, timestamp, result)

    return result


def _merge_or_create(
    proposal: NewPatternProposal,
    existing: list[Pattern],
    project: str | None,
    timestamp: datetime,
    result: MergeResult,
) -> None:
    match = find_best_match(proposal.description, existing)
    if match is not None:
        pattern, score = match
        logger.debug(
            "Merging new proposal into %s (similarity %.2f)",
            pattern.id,
            score,
        )
        result.merge_ops.append(
            MergeOp(
                pattern_id=pattern.id,
                new_sessions=list(dict.fromkeys(proposal.source_sessions)),
                new_confidence=proposal.confidence,
            ),
        )
        return

    # Near-duplicates within the same reply collapse into the first one.
    sibling = find_best_match(proposal.description, result.new_patterns)
    if sibling is not None:
        pattern = sibling[0]
        pattern.confidence = max(pattern.confidence, proposal.confidence)
        pattern.times_seen += 1
        for session_id in proposal.source_sessions:
            if session_id not in pattern.source_sessions:
                pattern.source_sessions.append(session_id)
        return

    result.new_patterns.append(
        Pattern(
            id=str(uuid.uuid4()),
            pattern_type=proposal.pattern_type,
            description=proposal.description,
            confidence=proposal.confidence,
            times_seen=1,
            first_seen=timestamp,
            last_seen=timestamp,
            status=PatternStatus.DISCOVERED,
            source_sessions=list(dict.fromkeys(proposal.source_sessions)),
            related_files=list(dict.fromkeys(proposal.related_files)),
            suggested_content=proposal.suggested_content,
            suggested_target=proposal.suggested_target,
            project=project,
        ),
    )


def parse_analysis_response(text: str) -> AnalysisResponse:
    """Parse and validate an analysis reply.

    Raises:
        AnalysisError: If the text is not JSON or does not match the schema
    """
    json_str = strip_code_fences(text)
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        msg = f"Failed to parse AI response as JSON: {e}"
        raise AnalysisError(msg, details={"response": truncate(text, 500)}) from e

    try:
        jsonschema.validate(data, ANALYSIS_RESPONSE_SCHEMA)
    except jsonschema.ValidationError as e:
        msg = f"AI response failed schema validation: {e.message}"
        raise AnalysisError(
            msg,
            details={"path": list(e.absolute_path), "response": truncate(text, 500)},
        ) from e

    try:
        return AnalysisResponse.model_validate(data)
    except ValidationError as e:
        msg = f"AI response validation failed: {e}"
        raise AnalysisError(msg, details={"response": truncate(text, 500)}) from e
