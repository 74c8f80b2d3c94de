"""Configuration models for renderq.

Pydantic v2 models for backend connection, queue arbitration, timeouts,
snapshot storage and generation defaults. A full configuration can be
loaded from YAML::

    backend:
      base_url: "http://127.0.0.1:8188"
    queue:
      prioritize_generation: true
      auto_postprocess: true
    generation:
      seed_mode: first-fixed
      batch_size: 3
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from renderq.core.models import SavedParams

SeedMode = Literal["random", "fixed", "first-fixed"]


class BackendConfig(BaseModel):
    """Where the compute backend lives and how to talk to it."""

    base_url: str = Field(
        default="http://127.0.0.1:8188",
        description="HTTP root of the compute backend",
    )
    ws_path: str = Field(
        default="/ws",
        description="Path of the event channel endpoint (clientId is appended)",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for each HTTP request (submit, status, interrupt, dequeue)",
    )
    auth_token: str | None = Field(
        default=None,
        description="Optional bearer token forwarded on every request",
    )
    generation_workflow: Path | None = Field(
        default=None,
        description="JSON workflow template for generation; built-in graph when unset",
    )
    postprocess_workflow: Path | None = Field(
        default=None,
        description="JSON workflow template for post-processing; built-in graph when unset",
    )


class QueueConfig(BaseModel):
    """Arbitration between the generation and post-processing queues."""

    prioritize_generation: bool = Field(
        default=False,
        description="Block post-processing while generation work is queued or active",
    )
    auto_postprocess: bool = Field(
        default=False,
        description="Queue post-processing for every job as soon as it completes",
    )


class TimeoutConfig(BaseModel):
    """Deadlines and intervals for execution, polling and display."""

    execution_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Wall-clock bound on one Connection Adapter execution",
    )
    poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Backup Poller interval during live execution",
    )
    poll_ceiling_seconds: float = Field(
        default=270.0,
        gt=0,
        description="Backup Poller hard ceiling; the job is marked timeout past it",
    )
    recovery_poll_interval_seconds: float = Field(
        default=3.0,
        gt=0,
        description="Poll interval when resolving submitted tasks after restore",
    )
    recovery_ceiling_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Ceiling for restore-time polling",
    )
    reveal_delay_seconds: float = Field(
        default=0.8,
        ge=0,
        description="Delay between revealing and completed",
    )

    @model_validator(mode="after")
    def _ceiling_within_execution(self) -> TimeoutConfig:
        if self.poll_ceiling_seconds > self.execution_seconds:
            raise ValueError(
                f"poll_ceiling_seconds ({self.poll_ceiling_seconds}) must not exceed "
                f"execution_seconds ({self.execution_seconds})"
            )
        if self.poll_interval_seconds >= self.poll_ceiling_seconds:
            raise ValueError("poll_interval_seconds must be shorter than poll_ceiling_seconds")
        return self


class SnapshotConfig(BaseModel):
    """Durable client storage and session snapshot settings."""

    storage_dir: Path = Field(
        default=Path("~/.renderq/storage"),
        description="Directory for FileStorage keys",
    )
    quota_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1024,
        description="Total capacity of the storage; writes beyond it raise a quota error",
    )
    debounce_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Autosave debounce after the last state change",
    )
    max_history_batches: int = Field(
        default=50,
        ge=1,
        description="Maximum batches kept in the history archive",
    )
    evict_keep_batches: int = Field(
        default=25,
        ge=0,
        description="History batches kept when a snapshot save hits the quota",
    )

    @model_validator(mode="after")
    def _evict_below_cap(self) -> SnapshotConfig:
        if self.evict_keep_batches > self.max_history_batches:
            raise ValueError("evict_keep_batches must not exceed max_history_batches")
        return self


class GenerationConfig(BaseModel):
    """Defaults applied when a submission is turned into a batch."""

    seed_mode: SeedMode = "random"
    fixed_seed: int | None = Field(default=None, ge=0)
    first_fixed_seed: int | None = Field(default=None, ge=0)
    batch_size: int = Field(default=1, ge=1, le=64)
    aspect_ratio: str = "square"
    resolution_scale: float = Field(default=1.0, gt=0)
    steps: int = Field(default=9, ge=1)
    sampler_name: str = "euler"
    scheduler: str = "simple"
    negative_prompt: str = ""
    progress_nodes: list[str] = Field(
        default_factory=list,
        description="Node ids whose progress counts; empty accepts every node",
    )
    max_load_retries: int = Field(default=3, ge=0)

    def freeze(self, prompt: str) -> SavedParams:
        """Snapshot the current defaults for one submission."""
        return SavedParams(
            prompt=prompt,
            negative_prompt=self.negative_prompt,
            aspect_ratio=self.aspect_ratio,
            resolution_scale=self.resolution_scale,
            steps=self.steps,
            sampler_name=self.sampler_name,
            scheduler=self.scheduler,
        )


class RenderqConfig(BaseModel):
    """Top-level renderq configuration."""

    backend: BackendConfig = Field(default_factory=BackendConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    snapshot: SnapshotConfig = Field(default_factory=SnapshotConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> RenderqConfig:
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> RenderqConfig:
        data = yaml.safe_load(yaml_str)
        return cls.model_validate(data or {})


__all__ = [
    "BackendConfig",
    "GenerationConfig",
    "QueueConfig",
    "RenderqConfig",
    "SeedMode",
    "SnapshotConfig",
    "TimeoutConfig",
]
