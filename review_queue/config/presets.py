"""Built-in prompt presets for review runs."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from review_queue.config.settings import (
    DEFAULT_AGGREGATE_PROMPT,
    DEFAULT_FIX_PROMPT,
    DEFAULT_REVIEW_PROMPT,
)


class ReviewPreset(BaseModel):
    """A named bundle of review / aggregate / fix prompts."""

    id: str
    name: str
    review_prompt: str
    aggregate_prompt: str
    fix_prompt: str


BUILT_IN_PRESETS: list[ReviewPreset] = [
    ReviewPreset(
        id="deep-review",
        name="Deep review",
        review_prompt=DEFAULT_REVIEW_PROMPT,
        aggregate_prompt=DEFAULT_AGGREGATE_PROMPT,
        fix_prompt=DEFAULT_FIX_PROMPT,
    ),
    ReviewPreset(
        id="security-audit",
        name="Security audit",
        review_prompt=(
            "Audit this codebase for security vulnerabilities: injection, "
            "authentication and authorization flaws, secrets in code, unsafe "
            "deserialization and path traversal. Cite file and line for each finding."
        ),
        aggregate_prompt=(
            "Verify each reported vulnerability against the code. Drop false "
            "positives, merge duplicates and rank the rest by severity."
        ),
        fix_prompt="Fix every confirmed vulnerability, highest severity first.",
    ),
    ReviewPreset(
        id="performance",
        name="Performance review",
        review_prompt=(
            "Review this codebase for performance problems: needless allocations, "
            "N+1 queries, blocking calls on hot paths and quadratic loops."
        ),
        aggregate_prompt=(
            "Confirm each performance issue, deduplicate, and order them by "
            "expected impact."
        ),
        fix_prompt="Fix the confirmed performance issues without changing behavior.",
    ),
]


def get_preset(preset_id: str) -> ReviewPreset:
    """
    Look up a built-in preset.

    Raises:
        KeyError: If no preset has this id.
    """
    for preset in BUILT_IN_PRESETS:
        if preset.id == preset_id:
            return preset
    raise KeyError(f"Unknown preset: {preset_id}. Available: {[p.id for p in BUILT_IN_PRESETS]}")


def apply_preset(fields: dict[str, Any], preset_id: str) -> dict[str, Any]:
    """
    Return run fields with the preset's prompts filled in.

    Prompts already present in ``fields`` win over the preset's.
    """
    preset = get_preset(preset_id)
    merged = dict(fields)
    for key, value in (
        ("shared_prompt", preset.review_prompt),
        ("aggregate_prompt", preset.aggregate_prompt),
        ("fix_prompt", preset.fix_prompt),
    ):
        if not (merged.get(key) or "").strip():
            merged[key] = value
    return merged
