"""Sequential batch runner for an external video tracking tool."""

from trackbatch.registry import JobRegistry
from trackbatch.runner import JobRunner, TrackSummary, run_track

__all__ = ["JobRegistry", "JobRunner", "TrackSummary", "run_track"]
