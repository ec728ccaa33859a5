"""Tests for job lifecycle transitions."""

from __future__ import annotations

import pytest

from mailsync.errors import InvalidStateTransitionError
from mailsync.orchestrator.job_state import (
    RUNNING_STATES,
    VALID_TRANSITIONS,
    JobState,
    JobStatus,
    validate_transition,
)


@pytest.mark.parametrize(
    "from_state,to_state",
    [
        (JobState.STOPPED, JobState.STARTING),
        (JobState.STARTING, JobState.IDLE),
        (JobState.IDLE, JobState.SYNCING),
        (JobState.SYNCING, JobState.IDLE),
        (JobState.SYNCING, JobState.ERROR),
        (JobState.ERROR, JobState.SYNCING),
        (JobState.ERROR, JobState.STOPPING),
        (JobState.STOPPING, JobState.STOPPED),
    ],
)
def test_valid_transitions(from_state, to_state):
    validate_transition("a", from_state, to_state)


@pytest.mark.parametrize(
    "from_state,to_state",
    [
        (JobState.STOPPED, JobState.SYNCING),
        (JobState.IDLE, JobState.ERROR),
        (JobState.STOPPING, JobState.IDLE),
        (JobState.STARTING, JobState.SYNCING),
    ],
)
def test_invalid_transitions(from_state, to_state):
    with pytest.raises(InvalidStateTransitionError):
        validate_transition("a", from_state, to_state)


def test_same_state_is_noop():
    for state in JobState:
        validate_transition("a", state, state)


def test_every_state_has_an_exit():
    assert set(VALID_TRANSITIONS) == set(JobState)
    assert all(VALID_TRANSITIONS[state] for state in JobState)


def test_running_states():
    assert RUNNING_STATES == {JobState.IDLE, JobState.SYNCING, JobState.ERROR}
    assert JobStatus(account_id="a", state=JobState.ERROR, interval_seconds=60).is_running
    assert not JobStatus(account_id="a", state=JobState.STOPPING, interval_seconds=60).is_running
