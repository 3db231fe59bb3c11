"""
Live progress tracking: an in-memory state registry (ProgressStore) and the
publish/subscribe layer that streams ProgressEvents to clients
(ProgressTracker). Both are constructed explicitly by the application
factory; nothing here is a module-level singleton.
"""

from docpipe.progress.store import ProgressStore
from docpipe.progress.tracker import ProgressTracker

__all__ = ["ProgressStore", "ProgressTracker"]
