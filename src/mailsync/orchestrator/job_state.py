"""Lifecycle states of a per-account sync job.

``stopped -> starting -> idle <-> syncing -> stopping -> stopped``, with
``error`` entered after a pass whose credentials were rejected. A job in
``error`` keeps its timer: the next tick moves it back to ``syncing``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from ..errors import InvalidStateTransitionError
from ..models import PassOutcome

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    """Job lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    IDLE = "idle"  # running, waiting for the next tick
    SYNCING = "syncing"  # running, pass in flight
    STOPPING = "stopping"
    ERROR = "error"  # running, last pass failed authentication

    @property
    def is_running(self) -> bool:
        return self in RUNNING_STATES


RUNNING_STATES = frozenset({JobState.IDLE, JobState.SYNCING, JobState.ERROR})

VALID_TRANSITIONS: Dict[JobState, Set[JobState]] = {
    JobState.STOPPED: {
        JobState.STARTING,
    },
    JobState.STARTING: {
        JobState.IDLE,
        JobState.STOPPING,  # stopped before the first pass
    },
    JobState.IDLE: {
        JobState.SYNCING,
        JobState.STOPPING,
    },
    JobState.SYNCING: {
        JobState.IDLE,
        JobState.ERROR,
        JobState.STOPPING,
    },
    JobState.ERROR: {
        JobState.SYNCING,  # keep attempting on every tick
        JobState.STOPPING,
    },
    JobState.STOPPING: {
        JobState.STOPPED,
    },
}


def validate_transition(account_id: str, from_state: JobState, to_state: JobState) -> None:
    """Raise ``InvalidStateTransitionError`` unless the move is allowed.

    Same-state transitions are accepted as no-ops.
    """
    if from_state == to_state:
        return
    if to_state not in VALID_TRANSITIONS.get(from_state, set()):
        logger.error(
            "Invalid job state transition",
            extra={
                "account_id": account_id,
                "from_state": from_state.value,
                "to_state": to_state.value,
            },
        )
        raise InvalidStateTransitionError(
            f"Invalid transition for {account_id}: {from_state.value} -> {to_state.value}"
        )


class JobStatus(BaseModel):
    """Read-only snapshot of one job, returned by status calls."""

    account_id: str
    state: JobState
    interval_seconds: int
    started_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_outcome: Optional[PassOutcome] = None
    last_error: Optional[str] = None
    passes: int = 0

    @property
    def is_running(self) -> bool:
        return self.state.is_running


class GlobalStatus(BaseModel):
    """Process-wide scheduler view."""

    enabled: bool
    active_jobs: int = 0
    jobs: List[JobStatus] = Field(default_factory=list)


__all__ = [
    "GlobalStatus",
    "JobState",
    "JobStatus",
    "RUNNING_STATES",
    "VALID_TRANSITIONS",
    "validate_transition",
]
