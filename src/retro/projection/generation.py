"""Generate, validate and retry loop for AI-written artifacts."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass

import jsonschema
from pydantic import ValidationError

from ..backend import AnalysisBackend
from ..exceptions import AnalysisError
from ..models import ArtifactDraft, DraftValidation, Pattern
from ..schemas import DRAFT_VALIDATION_SCHEMA, schema_argument
from ..util import strip_code_fences
from . import agent, skill
from .frontmatter import parse_artifact_name

logger = logging.getLogger(__name__)

MAX_RETRIES = 2

MISSING_NAME_FEEDBACK = (
    "The file must start with YAML frontmatter containing a 'name' field of "
    "lowercase letters, digits and hyphens."
)


@dataclass(frozen=True)
class ArtifactKind:
    """Prompts for one kind of generated artifact."""

    label: str
    generation_prompt: Callable[[Pattern, str | None], str]
    validation_prompt: Callable[[str, Pattern], str]


SKILL = ArtifactKind(
    label="skill",
    generation_prompt=skill.build_generation_prompt,
    validation_prompt=skill.build_validation_prompt,
)

AGENT = ArtifactKind(
    label="agent",
    generation_prompt=agent.build_generation_prompt,
    validation_prompt=agent.build_validation_prompt,
)


def parse_validation(text: str) -> DraftValidation | None:
    """Validator verdict, or None when the reply is not a usable verdict."""
    try:
        data = json.loads(strip_code_fences(text))
        jsonschema.validate(data, DRAFT_VALIDATION_SCHEMA)
        return DraftValidation.model_validate(data)
    except (json.JSONDecodeError, jsonschema.ValidationError, ValidationError):
        return None


def generate_with_retry(
    backend: AnalysisBackend,
    pattern: Pattern,
    kind: ArtifactKind,
    max_retries: int = MAX_RETRIES,
) -> ArtifactDraft:
    """Generate an artifact, feeding validator feedback into each retry.

    A draft with a valid name is accepted without a verdict when the
    validator call fails or its reply cannot be parsed.

    Raises:
        AnalysisError: If a generation call fails or every attempt is rejected
    """
    retries = max(0, max_retries)
    feedback: str | None = None

    for attempt in range(retries + 1):
        response = backend.execute(kind.generation_prompt(pattern, feedback))
        content = strip_code_fences(response.text)

        name = parse_artifact_name(content)
        if name is None:
            logger.debug("%s attempt %d for %s had no valid name", kind.label, attempt + 1, pattern.id)
            feedback = MISSING_NAME_FEEDBACK
            continue

        draft = ArtifactDraft(name=name, content=content, pattern_id=pattern.id)

        try:
            verdict_response = backend.execute(
                kind.validation_prompt(content, pattern),
                schema_argument(DRAFT_VALIDATION_SCHEMA),
            )
        except AnalysisError as e:
            logger.warning("Validation call failed for %s, accepting draft: %s", pattern.id, e)
            return draft

        verdict = parse_validation(verdict_response.text)
        if verdict is None:
            logger.warning("Unparseable validation reply for %s, accepting draft", pattern.id)
            return draft
        if verdict.valid:
            return draft

        feedback = verdict.feedback or "The draft did not meet the quality criteria."
        logger.debug("%s attempt %d for %s rejected: %s", kind.label, attempt + 1, pattern.id, feedback)

    msg = f"{kind.label} generation failed after {retries} retries for pattern {pattern.id}"
    raise AnalysisError(msg, details={"pattern_id": pattern.id, "feedback": feedback})
