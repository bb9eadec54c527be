"""
cardwriter: Duplicate folders onto many SD cards or USB drives at once.

This package copies one or more source folders to multiple destination drives
concurrently, skipping files that are already identical, and validates every
copy by content hash while isolating failures per destination.
"""

from .engine import Writer
from .hashing import HashCalculator, fingerprint, missing_fingerprint
from .main import main
from .models import (
    CleaningPolicy,
    CopyEvent,
    DestinationStatus,
    ErrorLog,
    EventType,
    OverwritePolicy,
    RunOptions,
    RunResult,
    WorkItem,
)

__version__ = "1.0.0"
__author__ = "cardwriter project"
__description__ = "Multi-drive folder duplication with hash validation"

__all__ = [
    "CleaningPolicy",
    "CopyEvent",
    "DestinationStatus",
    "ErrorLog",
    "EventType",
    "HashCalculator",
    "OverwritePolicy",
    "RunOptions",
    "RunResult",
    "WorkItem",
    "Writer",
    "fingerprint",
    "main",
    "missing_fingerprint",
]
