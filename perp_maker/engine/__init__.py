"""Engine loop and session bookkeeping."""

from .reconciliation import EngineSnapshot, FeedStatus, LoopPhase, ReconciliationLoop
from .session_volume import SessionVolumeTracker

__all__ = [
    "EngineSnapshot",
    "FeedStatus",
    "LoopPhase",
    "ReconciliationLoop",
    "SessionVolumeTracker",
]
