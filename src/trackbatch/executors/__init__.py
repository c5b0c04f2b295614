from trackbatch.executors.noop import NoopTracker
from trackbatch.executors.process import ProcessTracker

__all__ = ["NoopTracker", "ProcessTracker"]
