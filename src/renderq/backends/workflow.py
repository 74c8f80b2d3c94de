"""Workflow payloads for the node-graph backend.

The backend executes a JSON graph keyed by node id. Generation fills the
prompt, seed, size and step inputs of a text-to-image graph; post-processing
points a load node of an upscale graph at a previously produced artifact.
Both embed the local job id in the save node's filename prefix so two
otherwise identical submissions never hit the backend's result cache.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any

from renderq.core.models import OutputRef, SavedParams

# Node ids of the built-in graphs
SAMPLER_NODE = "4"
POSITIVE_NODE = "5"
NEGATIVE_NODE = "6"
LATENT_NODE = "7"
SAVE_NODE = "9"
UPSCALE_LOAD_NODE = "1145"
UPSCALE_SAVE_NODE = "1150"

DEFAULT_GENERATION_GRAPH: dict[str, Any] = {
    "3": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": "model.safetensors"}},
    SAMPLER_NODE: {
        "class_type": "KSampler",
        "inputs": {
            "seed": 0,
            "steps": 9,
            "cfg": 1.0,
            "sampler_name": "euler",
            "scheduler": "simple",
            "denoise": 1.0,
            "model": ["3", 0],
            "positive": [POSITIVE_NODE, 0],
            "negative": [NEGATIVE_NODE, 0],
            "latent_image": [LATENT_NODE, 0],
        },
    },
    POSITIVE_NODE: {"class_type": "CLIPTextEncode", "inputs": {"text": "", "clip": ["3", 1]}},
    NEGATIVE_NODE: {"class_type": "CLIPTextEncode", "inputs": {"text": "", "clip": ["3", 1]}},
    LATENT_NODE: {
        "class_type": "EmptyLatentImage",
        "inputs": {"width": 1024, "height": 1024, "batch_size": 1},
    },
    "8": {"class_type": "VAEDecode", "inputs": {"samples": [SAMPLER_NODE, 0], "vae": ["3", 2]}},
    SAVE_NODE: {
        "class_type": "SaveImage",
        "inputs": {"filename_prefix": "renderq", "images": ["8", 0]},
    },
}

DEFAULT_UPSCALE_GRAPH: dict[str, Any] = {
    UPSCALE_LOAD_NODE: {"class_type": "LoadImage", "inputs": {"image": ""}},
    "1146": {"class_type": "UpscaleModelLoader", "inputs": {"model_name": "4x-upscale.pth"}},
    "1147": {
        "class_type": "ImageUpscaleWithModel",
        "inputs": {"upscale_model": ["1146", 0], "image": [UPSCALE_LOAD_NODE, 0]},
    },
    UPSCALE_SAVE_NODE: {
        "class_type": "SaveImage",
        "inputs": {"filename_prefix": "renderq-hq", "images": ["1147", 0]},
    },
}


def load_template(path: Path | None, default: dict[str, Any]) -> dict[str, Any]:
    """Read a workflow template from disk, or fall back to ``default``."""
    if path is None:
        return default
    with open(path.expanduser(), encoding="utf-8") as f:
        template: dict[str, Any] = json.load(f)
    return template


def build_generation_workflow(
    params: SavedParams,
    seed: int,
    job_id: str,
    template: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Fill a text-to-image graph for one job.

    One job always produces one artifact, so the latent batch size is
    pinned to 1 regardless of how many jobs the batch holds.
    """
    workflow = copy.deepcopy(template or DEFAULT_GENERATION_GRAPH)
    width, height = params.dimensions()

    workflow[POSITIVE_NODE]["inputs"]["text"] = params.prompt
    workflow[NEGATIVE_NODE]["inputs"]["text"] = params.negative_prompt

    sampler = workflow[SAMPLER_NODE]["inputs"]
    sampler["seed"] = seed
    sampler["steps"] = params.steps
    sampler["sampler_name"] = params.sampler_name
    sampler["scheduler"] = params.scheduler

    latent = workflow[LATENT_NODE]["inputs"]
    latent["width"] = width
    latent["height"] = height
    latent["batch_size"] = 1

    workflow[SAVE_NODE]["inputs"]["filename_prefix"] = f"renderq/{job_id}"
    return workflow


def build_postprocess_workflow(
    source: OutputRef,
    job_id: str,
    template: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Fill an upscale graph that reads ``source`` from the backend's output folder."""
    workflow = copy.deepcopy(template or DEFAULT_UPSCALE_GRAPH)
    name = f"{source.subfolder}/{source.filename}" if source.subfolder else source.filename
    workflow[UPSCALE_LOAD_NODE]["inputs"]["image"] = f"{name} [{source.kind}]"
    workflow[UPSCALE_SAVE_NODE]["inputs"]["filename_prefix"] = f"renderq-hq/{job_id}"
    return workflow


__all__ = [
    "DEFAULT_GENERATION_GRAPH",
    "DEFAULT_UPSCALE_GRAPH",
    "build_generation_workflow",
    "build_postprocess_workflow",
    "load_template",
]
