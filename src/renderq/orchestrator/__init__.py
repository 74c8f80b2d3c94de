"""Job orchestration: store, queues, pause control and the Orchestrator."""

from renderq.orchestrator.core import Orchestrator
from renderq.orchestrator.guard import GuardTicket, SingleFlightGuard
from renderq.orchestrator.pause import PauseController
from renderq.orchestrator.queues import WorkQueue
from renderq.orchestrator.seeds import SeedAllocator
from renderq.orchestrator.store import JobStore, StoreEvent

__all__ = [
    "GuardTicket",
    "JobStore",
    "Orchestrator",
    "PauseController",
    "SeedAllocator",
    "SingleFlightGuard",
    "StoreEvent",
    "WorkQueue",
]
