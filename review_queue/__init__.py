"""
Review Queue - Parallel Code Review Orchestrator

Fans review prompts out to parallel coding-agent CLI processes, merges
their findings into one validated issue list and optionally applies fixes.
"""

__version__ = "0.1.0"

from review_queue.core.models import ReviewQueuePhase, RunConfiguration
from review_queue.core.orchestrator import ReviewQueue

__all__ = [
    "ReviewQueue",
    "ReviewQueuePhase",
    "RunConfiguration",
]
