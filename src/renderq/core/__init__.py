"""Core domain models, configuration, errors and logging."""

from renderq.core.config import (
    BackendConfig,
    GenerationConfig,
    QueueConfig,
    RenderqConfig,
    SnapshotConfig,
    TimeoutConfig,
)
from renderq.core.errors import (
    BackendError,
    BackendRejectedError,
    BackendTransportError,
    OrchestratorError,
    OutcomeKind,
    RenderqError,
    SnapshotValidationError,
    StorageError,
    StorageQuotaExceededError,
    classify_exception,
)
from renderq.core.models import (
    AckStatus,
    Batch,
    Job,
    JobStatus,
    OutputRef,
    PostProcessEntry,
    PostProcessStatus,
    QueueEntry,
    RecoveryState,
    SavedParams,
    SubmittedTask,
)

__all__ = [
    "AckStatus",
    "BackendConfig",
    "BackendError",
    "BackendRejectedError",
    "BackendTransportError",
    "Batch",
    "GenerationConfig",
    "Job",
    "JobStatus",
    "OrchestratorError",
    "OutcomeKind",
    "OutputRef",
    "PostProcessEntry",
    "PostProcessStatus",
    "QueueConfig",
    "QueueEntry",
    "RecoveryState",
    "RenderqConfig",
    "RenderqError",
    "SavedParams",
    "SnapshotConfig",
    "SnapshotValidationError",
    "StorageError",
    "StorageQuotaExceededError",
    "SubmittedTask",
    "TimeoutConfig",
    "classify_exception",
]
