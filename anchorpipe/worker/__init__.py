"""
Background workers for Anchorpipe.
"""

from .ingestion import IngestionWorker, QueuedTestRun, main

__all__ = ["IngestionWorker", "QueuedTestRun", "main"]
