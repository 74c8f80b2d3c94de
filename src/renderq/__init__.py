"""renderq: client-side job orchestrator for remote image generation backends."""

__version__ = "0.4.0"

from renderq.core.config import RenderqConfig
from renderq.orchestrator.core import Orchestrator

__all__ = ["Orchestrator", "RenderqConfig", "__version__"]
