# core/types/status.py
"""
Core types and enums shared by the queue adapter.
This module should not import from other application modules.
"""

from enum import Enum


class JobState(Enum):
    """Lifecycle state of a job row in the queue."""

    QUEUED = 'queued'  # Ready to be picked up by a consumer.

    DELAYED = 'delayed'  # Saved with a delay; becomes queued at run_at.

    ACTIVE = 'active'  # Picked up by a consumer.

    COMPLETE = 'complete'  # Finished successfully.

    FAILED = 'failed'  # Exhausted its attempts.

    @property
    def is_terminal(self) -> bool:
        """Whether this state is final (no further transitions)."""
        return self in JOB_TERMINAL_STATES


JOB_TERMINAL_STATES: frozenset[JobState] = frozenset({
    JobState.COMPLETE,
    JobState.FAILED,
})
