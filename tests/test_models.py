"""Tests for renderq.core.models: job state machine and frozen parameters."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from renderq.core.errors import OrchestratorError
from renderq.core.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Job,
    JobStatus,
    PostProcessStatus,
    RecoveryState,
    SavedParams,
)
from tests.helpers import make_job


# ─── Job state machine ────────────────────────────────────────────────


class TestJobTransitions:
    """Tests for Job.transition and the allowed-transition table."""

    @pytest.mark.parametrize(
        "path",
        [
            [JobStatus.GENERATING, JobStatus.REVEALING, JobStatus.COMPLETED],
            [JobStatus.PAUSED, JobStatus.QUEUE],
            [JobStatus.GENERATING, JobStatus.FAILED],
            [JobStatus.RECOVERING, JobStatus.COMPLETED],
            [JobStatus.GENERATING, JobStatus.RECOVERING, JobStatus.TIMEOUT],
        ],
    )
    def test_documented_paths_are_allowed(self, path):
        job = make_job()
        for status in path:
            job.transition(status)
        assert job.status is path[-1]

    def test_completed_cannot_restart(self):
        job = make_job(status=JobStatus.COMPLETED)
        with pytest.raises(OrchestratorError, match="illegal transition completed -> generating"):
            job.transition(JobStatus.GENERATING)

    def test_paused_cannot_be_revealed(self):
        job = make_job(status=JobStatus.PAUSED)
        assert not job.can_transition(JobStatus.REVEALING)

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_is_terminal(self):
        assert make_job(status=JobStatus.TIMEOUT).is_terminal
        assert not make_job(status=JobStatus.RECOVERING).is_terminal


class TestPostProcessTransitions:
    """Tests for the post-processing sub-state machine."""

    def test_happy_path(self):
        job = make_job(status=JobStatus.COMPLETED)
        job.transition_post(PostProcessStatus.QUEUED)
        job.transition_post(PostProcessStatus.UPSCALING)
        job.transition_post(PostProcessStatus.COMPLETED)
        assert job.post_status is PostProcessStatus.COMPLETED

    def test_queued_can_be_withdrawn(self):
        job = make_job(status=JobStatus.COMPLETED, post_status=PostProcessStatus.QUEUED)
        job.transition_post(PostProcessStatus.NONE)
        assert job.post_status is PostProcessStatus.NONE

    def test_completed_post_is_final(self):
        job = make_job(status=JobStatus.COMPLETED, post_status=PostProcessStatus.COMPLETED)
        with pytest.raises(OrchestratorError):
            job.transition_post(PostProcessStatus.QUEUED)


# ─── Seeds and parameters ─────────────────────────────────────────────


class TestSeedAssignment:
    def test_seed_is_assigned_once(self):
        job = make_job()
        assert job.assign_seed(42) is True
        assert job.assign_seed(7) is False
        assert job.seed == 42


class TestSavedParams:
    def test_params_are_frozen(self):
        params = SavedParams(prompt="a fox")
        with pytest.raises(ValidationError):
            params.steps = 30  # type: ignore[misc]

    def test_dimensions_scale_with_resolution(self):
        params = SavedParams(prompt="x", aspect_ratio="landscape", resolution_scale=0.5)
        assert params.dimensions() == (640, 360)

    def test_unknown_aspect_falls_back_to_square(self):
        assert SavedParams(prompt="x", aspect_ratio="weird").dimensions() == (1024, 1024)


class TestIdentifiers:
    def test_make_id_is_scoped_to_batch_and_index(self):
        assert Job.make_id("pabc", 3, 1) == "pabc-3-1"

    def test_recovery_cleared_is_empty(self):
        state = RecoveryState.cleared()
        assert state.is_paused is False
        assert state.paused_batch_id is None
        assert state.total_count == 0
