"""Job, batch and recovery models.

These are the only records the orchestrator mutates and the snapshot store
persists. Every status change goes through ``Job.transition`` so an
illegal combination (a completed job becoming generating again, a paused
job being revealed) fails loudly instead of being papered over at a call
site.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from renderq.core.errors import OrchestratorError
from renderq.utils.time import utc_now


class JobStatus(str, Enum):
    """Lifecycle of a single job."""

    QUEUE = "queue"
    GENERATING = "generating"
    REVEALING = "revealing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    RECOVERING = "recovering"
    TIMEOUT = "timeout"


class PostProcessStatus(str, Enum):
    """Post-processing sub-state of a completed job."""

    NONE = "none"
    QUEUED = "queued"
    UPSCALING = "upscaling"
    COMPLETED = "completed"


class AckStatus(str, Enum):
    """Whether a submitted task's outcome has been confirmed locally."""

    PENDING = "pending"
    CONFIRMED = "confirmed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUE: frozenset({JobStatus.GENERATING, JobStatus.PAUSED, JobStatus.RECOVERING}),
    JobStatus.GENERATING: frozenset({
        JobStatus.REVEALING,
        JobStatus.FAILED,
        JobStatus.PAUSED,
        JobStatus.RECOVERING,
        JobStatus.TIMEOUT,
    }),
    JobStatus.REVEALING: frozenset({JobStatus.COMPLETED, JobStatus.RECOVERING}),
    JobStatus.PAUSED: frozenset({JobStatus.QUEUE}),
    JobStatus.RECOVERING: frozenset({JobStatus.COMPLETED, JobStatus.TIMEOUT}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.TIMEOUT: frozenset(),
}

POSTPROCESS_TRANSITIONS: dict[PostProcessStatus, frozenset[PostProcessStatus]] = {
    PostProcessStatus.NONE: frozenset({PostProcessStatus.QUEUED}),
    PostProcessStatus.QUEUED: frozenset({PostProcessStatus.NONE, PostProcessStatus.UPSCALING}),
    # A failed upscale falls back to NONE; it is never cancelled by the user.
    PostProcessStatus.UPSCALING: frozenset({PostProcessStatus.COMPLETED, PostProcessStatus.NONE}),
    PostProcessStatus.COMPLETED: frozenset(),
}

# Base dimensions per aspect ratio before resolution scaling
ASPECT_DIMENSIONS: dict[str, tuple[int, int]] = {
    "square": (1024, 1024),
    "portrait": (720, 1280),
    "landscape": (1280, 720),
    "4:3": (1152, 864),
    "3:4": (864, 1152),
    "2.35:1": (1536, 656),
}


class SavedParams(BaseModel):
    """Generation parameters frozen at submission time.

    Later changes to the global configuration never reach a job that was
    already submitted with these.
    """

    model_config = ConfigDict(frozen=True)

    prompt: str
    negative_prompt: str = ""
    aspect_ratio: str = "square"
    resolution_scale: float = Field(default=1.0, gt=0)
    steps: int = Field(default=9, ge=1)
    sampler_name: str = "euler"
    scheduler: str = "simple"

    def dimensions(self) -> tuple[int, int]:
        """Pixel width and height after resolution scaling."""
        width, height = ASPECT_DIMENSIONS.get(self.aspect_ratio, ASPECT_DIMENSIONS["square"])
        return round(width * self.resolution_scale), round(height * self.resolution_scale)


class OutputRef(BaseModel):
    """Opaque reference to an artifact produced by the backend."""

    model_config = ConfigDict(frozen=True)

    filename: str
    subfolder: str = ""
    kind: str = "output"


class Job(BaseModel):
    """Atomic unit of backend work tracked client-side."""

    id: str
    batch_id: int
    source_request_id: str
    index: int = 0
    status: JobStatus = JobStatus.QUEUE
    progress: int = Field(default=0, ge=0, le=100)
    is_loading: bool = False
    output_ref: OutputRef | None = None
    seed: int | None = None
    retry_count: int = 0
    load_error: bool = False
    error: str | None = None
    saved_params: SavedParams
    post_status: PostProcessStatus = PostProcessStatus.NONE
    post_progress: int = Field(default=0, ge=0, le=100)
    post_output_ref: OutputRef | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @staticmethod
    def make_id(source_request_id: str, batch_id: int, index: int) -> str:
        return f"{source_request_id}-{batch_id}-{index}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, target: JobStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition(self, target: JobStatus) -> None:
        """Move to ``target``, raising OrchestratorError if not allowed."""
        if not self.can_transition(target):
            raise OrchestratorError(
                f"Job {self.id}: illegal transition {self.status.value} -> {target.value}"
            )
        self.status = target

    def transition_post(self, target: PostProcessStatus) -> None:
        if target not in POSTPROCESS_TRANSITIONS[self.post_status]:
            raise OrchestratorError(
                f"Job {self.id}: illegal post-process transition "
                f"{self.post_status.value} -> {target.value}"
            )
        self.post_status = target

    def assign_seed(self, seed: int) -> bool:
        """Assign the seed once. Returns False if a seed was already set."""
        if self.seed is not None:
            return False
        self.seed = seed
        return True


class Batch(BaseModel):
    """Jobs created from one user submission."""

    batch_id: int
    source_request_id: str
    session_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class QueueEntry(BaseModel):
    """Queue item meaning: run the next queued job of this batch."""

    batch_id: int
    payload: dict[str, Any] = Field(default_factory=dict)
    saved_params: SavedParams


class PostProcessEntry(BaseModel):
    """Post-processing request for one completed job."""

    job_id: str


class SubmittedTask(BaseModel):
    """A job handed to the backend whose outcome is not yet confirmed."""

    external_job_id: str
    batch_id: int
    job_ids: list[str]
    submitted_at: int
    ack_status: AckStatus = AckStatus.PENDING


class RecoveryState(BaseModel):
    """Singleton describing the batch frozen by connectivity loss."""

    is_paused: bool = False
    paused_batch_id: int | None = None
    source_request_id: str | None = None
    remaining_count: int = 0
    saved_params: SavedParams | None = None
    reason: str = ""

    @property
    def total_count(self) -> int:
        return self.remaining_count

    @classmethod
    def cleared(cls) -> RecoveryState:
        return cls()


__all__ = [
    "ALLOWED_TRANSITIONS",
    "ASPECT_DIMENSIONS",
    "AckStatus",
    "Batch",
    "Job",
    "JobStatus",
    "OutputRef",
    "PostProcessEntry",
    "PostProcessStatus",
    "QueueEntry",
    "RecoveryState",
    "SavedParams",
    "SubmittedTask",
    "TERMINAL_STATUSES",
]
