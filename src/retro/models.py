"""Core data models for retro pattern discovery and projection."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

from .util import utc_now


class PatternType(str, Enum):
    """Kinds of recurring behavior the analysis can surface."""

    REPETITIVE_INSTRUCTION = "repetitive_instruction"
    RECURRING_MISTAKE = "recurring_mistake"
    WORKFLOW_PATTERN = "workflow_pattern"
    STALE_CONTEXT = "stale_context"
    REDUNDANT_CONTEXT = "redundant_context"


class PatternStatus(str, Enum):
    """Pattern lifecycle states."""

    DISCOVERED = "discovered"
    ACTIVE = "active"
    ARCHIVED = "archived"
    DISMISSED = "dismissed"


class SuggestedTarget(str, Enum):
    """Where a pattern should be projected."""

    SKILL = "skill"
    CLAUDE_MD = "claude_md"
    GLOBAL_AGENT = "global_agent"
    DB_ONLY = "db_only"


class ProjectionStatus(str, Enum):
    """Projection lifecycle states."""

    PENDING_REVIEW = "pending_review"
    APPLIED = "applied"
    DISMISSED = "dismissed"


class ApplyTrack(str, Enum):
    """Delivery track for a generated artifact."""

    PERSONAL = "personal"  # written directly
    SHARED = "shared"  # goes through a branch and PR


class ClaudeMdEditType(str, Enum):
    """Structured edit kinds for CLAUDE.md."""

    ADD = "add"
    REMOVE = "remove"
    REWORD = "reword"
    MOVE = "move"


class Pattern(BaseModel):
    """A recurring behavior discovered across sessions."""

    id: str = Field(..., description="Pattern identifier (uuid4)")
    pattern_type: PatternType = Field(..., description="Kind of pattern")
    description: str = Field(..., description="What was observed")
    confidence: float = Field(..., ge=0.0, le=1.0)
    times_seen: int = Field(default=1, ge=1)
    first_seen: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)
    last_projected: datetime | None = Field(default=None)
    status: PatternStatus = Field(default=PatternStatus.DISCOVERED)
    source_sessions: list[str] = Field(default_factory=list)
    related_files: list[str] = Field(default_factory=list)
    suggested_content: str = Field(default="")
    suggested_target: SuggestedTarget = Field(...)
    project: str | None = Field(
        default=None,
        description="Project scope; None applies to every project",
    )
    generation_failed: bool = Field(default=False)


class Projection(BaseModel):
    """Record that a pattern was rendered into an artifact."""

    id: str
    pattern_id: str
    target_type: SuggestedTarget
    target_path: str
    content: str
    applied_at: datetime = Field(default_factory=utc_now)
    pr_url: str | None = None
    status: ProjectionStatus = ProjectionStatus.APPLIED
    nudged: bool = False


class IngestedSession(BaseModel):
    """Stat fingerprint of an ingested session file."""

    session_id: str
    project: str
    session_path: str
    file_size: int
    file_mtime: str = Field(..., description="RFC 3339 modification time")
    ingested_at: datetime = Field(default_factory=utc_now)


def _null_to_empty(value: Any) -> Any:
    return "" if value is None else value


class NewPatternProposal(BaseModel):
    """AI proposal for a pattern not yet in the store."""

    action: Literal["new"]
    pattern_type: PatternType
    description: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    source_sessions: list[str] = Field(default_factory=list)
    related_files: list[str] = Field(default_factory=list)
    suggested_content: str = ""
    suggested_target: SuggestedTarget = SuggestedTarget.CLAUDE_MD

    @field_validator("description", "suggested_content", mode="before")
    @classmethod
    def null_strings_are_empty(cls, v: Any) -> Any:
        """Models sometimes return null for free-text fields."""
        return _null_to_empty(v)


class UpdatePatternProposal(BaseModel):
    """AI proposal to reinforce an existing pattern by id."""

    action: Literal["update"]
    existing_id: str
    new_sessions: list[str] = Field(default_factory=list)
    new_confidence: float = Field(..., ge=0.0, le=1.0)


PatternProposal = Annotated[
    NewPatternProposal | UpdatePatternProposal,
    Field(discriminator="action"),
]


class AnalysisResponse(BaseModel):
    """Parsed analysis reply."""

    reasoning: str = ""
    patterns: list[PatternProposal] = Field(default_factory=list)

    @field_validator("reasoning", mode="before")
    @classmethod
    def null_reasoning_is_empty(cls, v: Any) -> Any:
        """Normalise a null reasoning string."""
        return _null_to_empty(v)


class MergeOp(BaseModel):
    """Reinforcement to apply to an existing pattern."""

    pattern_id: str
    new_sessions: list[str] = Field(default_factory=list)
    new_confidence: float
    additional_times_seen: int = 1


class ClaudeMdEdit(BaseModel):
    """A structured edit against CLAUDE.md content outside the managed block."""

    edit_type: ClaudeMdEditType
    original_text: str = ""
    replacement: str | None = None
    target_section: str | None = None
    reasoning: str


class ApplyAction(BaseModel):
    """A pattern paired with generated content and a destination."""

    pattern_id: str
    pattern_description: str
    target_type: SuggestedTarget
    target_path: str
    content: str
    track: ApplyTrack
    projection_id: str | None = Field(
        default=None,
        description="Pending-review projection this action came from",
    )


class ApplyPlan(BaseModel):
    """Ordered set of actions produced by the projection planner."""

    actions: list[ApplyAction] = Field(default_factory=list)

    def is_empty(self) -> bool:
        """Whether the plan has nothing to do."""
        return not self.actions

    def for_track(self, track: ApplyTrack) -> list[ApplyAction]:
        """Actions belonging to one delivery track."""
        return [a for a in self.actions if a.track == track]

    @property
    def shared(self) -> list[ApplyAction]:
        return self.for_track(ApplyTrack.SHARED)

    @property
    def personal(self) -> list[ApplyAction]:
        return self.for_track(ApplyTrack.PERSONAL)


class ArtifactDraft(BaseModel):
    """Generated skill or agent content awaiting placement."""

    name: str
    content: str
    pattern_id: str


class DraftValidation(BaseModel):
    """Validator verdict on a generated draft."""

    valid: bool
    feedback: str = ""

    @field_validator("feedback", mode="before")
    @classmethod
    def null_feedback_is_empty(cls, v: Any) -> Any:
        """Normalise a null feedback string."""
        return _null_to_empty(v)


class BackendResponse(BaseModel):
    """Text and token usage returned by the AI collaborator."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class AnalyzeResult(BaseModel):
    """Totals accumulated across every analysis batch."""

    sessions_analyzed: int = 0
    new_patterns: int = 0
    updated_patterns: int = 0
    total_patterns: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    batches: int = 0


class IngestResult(BaseModel):
    """Outcome of an ingestion scan."""

    sessions_found: int = 0
    sessions_ingested: int = 0
    sessions_skipped: int = 0
    errors: list[str] = Field(default_factory=list)

    def absorb(self, other: IngestResult) -> None:
        """Fold another project's counters into this one."""
        self.sessions_found += other.sessions_found
        self.sessions_ingested += other.sessions_ingested
        self.sessions_skipped += other.sessions_skipped
        self.errors.extend(other.errors)


class AuditEntry(BaseModel):
    """One line of the audit log."""

    timestamp: datetime = Field(default_factory=utc_now)
    action: str
    details: dict[str, Any] = Field(default_factory=dict)
