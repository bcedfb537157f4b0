"""JSON schemas for structured AI replies.

The analysis schema is handed to the CLI as ``--json-schema`` and is also
used to reject malformed replies before they reach the merge engine.
"""

from __future__ import annotations

import json
from typing import Any

PATTERN_TYPES = [
    "repetitive_instruction",
    "recurring_mistake",
    "workflow_pattern",
    "stale_context",
    "redundant_context",
]

SUGGESTED_TARGETS = ["skill", "claude_md", "global_agent", "db_only"]

ANALYSIS_RESPONSE_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Retro Analysis Response",
    "type": "object",
    "required": ["patterns"],
    "properties": {
        "reasoning": {"type": ["string", "null"]},
        "patterns": {
            "type": "array",
            "items": {
                "oneOf": [
                    {
                        "type": "object",
                        "required": [
                            "action",
                            "pattern_type",
                            "description",
                            "confidence",
                            "suggested_target",
                        ],
                        "properties": {
                            "action": {"const": "new"},
                            "pattern_type": {"enum": PATTERN_TYPES},
                            "description": {"type": "string"},
                            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                            "source_sessions": {"type": "array", "items": {"type": "string"}},
                            "related_files": {"type": "array", "items": {"type": "string"}},
                            "suggested_content": {"type": ["string", "null"]},
                            "suggested_target": {"enum": SUGGESTED_TARGETS},
                        },
                    },
                    {
                        "type": "object",
                        "required": ["action", "existing_id", "new_confidence"],
                        "properties": {
                            "action": {"const": "update"},
                            "existing_id": {"type": "string"},
                            "new_sessions": {"type": "array", "items": {"type": "string"}},
                            "new_confidence": {"type": "number", "minimum": 0, "maximum": 1},
                        },
                    },
                ],
            },
        },
    },
}

DRAFT_VALIDATION_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Retro Draft Validation",
    "type": "object",
    "required": ["valid"],
    "properties": {
        "valid": {"type": "boolean"},
        "feedback": {"type": ["string", "null"]},
    },
}


def schema_argument(schema: dict[str, Any]) -> str:
    """Compact JSON form suitable for a command-line argument."""
    return json.dumps(schema, separators=(",", ":"))
