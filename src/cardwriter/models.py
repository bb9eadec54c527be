"""
Data models shared by the duplication engine and the CLI layer.

Everything here is UI-agnostic: the engine yields ``CopyEvent`` objects and
records failures in ``ErrorLog``/``DestinationStatus``; presentation lives in
``cardwriter.main``.
"""

import argparse
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

# Constants
BUFFER_SIZE = 256 * 1024  # 256KB
MAX_WORKERS = 16  # Concurrent hashing/validation tasks
MAX_LABEL_LENGTH = 15
HASH_ALGORITHMS = ("xxh64be", "md5", "sha1", "sha256")


# ============================================================================
# Policies
# ============================================================================


class OverwritePolicy(Enum):
    """
    How an existing destination file is treated.

    Attributes
    ----------
    NEVER : str
        Keep any existing file, whatever its content
    IF_DIFFERENT : str
        Rewrite only when the fingerprint differs from the source
    ALWAYS : str
        Rewrite every file
    """

    NEVER = "never"
    IF_DIFFERENT = "different"
    ALWAYS = "always"


class CleaningPolicy(Enum):
    """Pre-pass applied to each destination root before copying."""

    NONE = "none"
    ERASE = "erase"


class EventType(Enum):
    """Events emitted by the engine stages."""

    CLEAN_PROGRESS = "clean_progress"
    COPY_START = "copy_start"
    COPY_PROGRESS = "copy_progress"
    COPY_COMPLETE = "copy_complete"
    VERIFY_START = "verify_start"
    VERIFY_PROGRESS = "verify_progress"
    VERIFY_COMPLETE = "verify_complete"


# ============================================================================
# Work items and events
# ============================================================================


@dataclass(frozen=True)
class WorkItem:
    """
    One source file found under a source root, with its fingerprint.

    Parameters
    ----------
    source_path : Path
        Absolute path of the source file
    origin_root : Path
        Source root the file was found under
    fingerprint : str
        Content digest of the source file
    """

    source_path: Path
    origin_root: Path
    fingerprint: str

    def destination_path(self, destination_root: Path | str) -> Path:
        """
        Map the source path onto a destination root.

        Parameters
        ----------
        destination_root : Path | str
            Root of the destination device

        Returns
        -------
        Path
            ``source_path`` with ``origin_root`` replaced by ``destination_root``

        Raises
        ------
        ValueError
            If ``origin_root`` is not a prefix of ``source_path``
        """
        relative_path = self.source_path.relative_to(self.origin_root)
        return Path(destination_root) / relative_path


@dataclass
class CopyEvent:
    """Event emitted during clean/copy/verify stages."""

    type: EventType
    completed: int = 0
    total: int = 0
    message: str = ""

    @property
    def fraction(self) -> float:
        """Completed share of the stage, in [0.0, 1.0]."""
        if self.total <= 0:
            return 1.0
        return min(1.0, max(0.0, self.completed / self.total))


# ============================================================================
# Shared run state
# ============================================================================


class DestinationStatus:
    """
    Per-destination viability flags, indexed by destination position.

    All flags start ``True``. A flag only ever moves from ``True`` to
    ``False`` and never back within a run.

    Parameters
    ----------
    count : int
        Number of destinations in the run
    """

    def __init__(self, count: int):
        self._flags = {index: True for index in range(count)}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._flags)

    def __getitem__(self, index: int) -> bool:
        with self._lock:
            return self._flags[index]

    def is_viable(self, index: int) -> bool:
        return self[index]

    def mark_failed(self, index: int) -> bool:
        """
        Atomically flip a destination to failed.

        Parameters
        ----------
        index : int
            Destination position

        Returns
        -------
        bool
            True if this call changed the flag, False if it was already failed
        """
        with self._lock:
            was_viable = self._flags[index]
            self._flags[index] = False
            return was_viable

    def viable_indices(self) -> list[int]:
        with self._lock:
            return [index for index, ok in self._flags.items() if ok]

    def snapshot(self) -> dict[int, bool]:
        with self._lock:
            return dict(self._flags)


class ErrorLog:
    """Append-only list of failure descriptions, safe for concurrent writers."""

    def __init__(self):
        self._messages: list[str] = []
        self._lock = threading.Lock()

    def append(self, message: str) -> None:
        with self._lock:
            self._messages.append(message)

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._messages)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def __bool__(self) -> bool:
        return len(self) > 0

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())


# ============================================================================
# Configuration and results
# ============================================================================


@dataclass(frozen=True)
class RunOptions:
    """
    Immutable configuration for one duplication run.

    Parameters
    ----------
    source_roots : tuple[Path, ...]
        Directory trees to duplicate
    destination_roots : tuple[Path, ...]
        Mounted destination roots; position is the destination identity
    overwrite_policy : OverwritePolicy, default=OverwritePolicy.IF_DIFFERENT
        Treatment of files already present on a destination
    cleaning_policy : CleaningPolicy, default=CleaningPolicy.NONE
        Pre-pass applied to each destination
    validate : bool, default=True
        Re-fingerprint destinations after copying
    validate_only : bool, default=False
        Skip cleaning and copying, only validate
    volume_label : str, default=""
        Label written to viable destinations after the run (empty to skip)
    eject : bool, default=False
        Eject viable destinations after the run
    buffer_size : int, default=BUFFER_SIZE
        Read/write buffer size in bytes
    max_workers : int, default=MAX_WORKERS
        Bound on concurrent hashing and validation tasks
    hash_algorithm : str, default="xxh64be"
        Fingerprint algorithm
    """

    source_roots: tuple[Path, ...]
    destination_roots: tuple[Path, ...]
    overwrite_policy: OverwritePolicy = OverwritePolicy.IF_DIFFERENT
    cleaning_policy: CleaningPolicy = CleaningPolicy.NONE
    validate: bool = True
    validate_only: bool = False
    volume_label: str = ""
    eject: bool = False
    buffer_size: int = BUFFER_SIZE
    max_workers: int = MAX_WORKERS
    hash_algorithm: str = "xxh64be"

    def __post_init__(self):
        """Normalize and validate configuration."""
        object.__setattr__(
            self, "source_roots", tuple(Path(p) for p in self.source_roots)
        )
        object.__setattr__(
            self, "destination_roots", tuple(Path(p) for p in self.destination_roots)
        )
        object.__setattr__(self, "volume_label", self.volume_label.strip())
        if self.validate_only:
            object.__setattr__(self, "validate", True)

        if not self.source_roots:
            raise ValueError("At least one source folder is required")
        if not self.destination_roots:
            raise ValueError("At least one destination is required")
        if self.buffer_size <= 0:
            raise ValueError(f"Buffer size must be positive, got {self.buffer_size}")
        if self.max_workers <= 0:
            raise ValueError(f"Worker count must be positive, got {self.max_workers}")
        if self.hash_algorithm.lower() not in HASH_ALGORITHMS:
            raise ValueError(f"Invalid hash algorithm: {self.hash_algorithm}")
        if self.volume_label and (
            len(self.volume_label) > MAX_LABEL_LENGTH
            or not all(c.isalnum() or c == " " for c in self.volume_label)
        ):
            raise ValueError(
                "The volume label must contain only letters, numbers, or spaces "
                f"and be at most {MAX_LABEL_LENGTH} characters"
            )

    @classmethod
    def from_args(
        cls,
        args: argparse.Namespace,
        destinations: list[Path] | None = None,
    ) -> "RunOptions":
        """
        Create options from parsed command-line arguments.

        ``destinations`` replaces ``args.destinations`` when given, e.g. after
        drive discovery for the current round.
        """
        if destinations is None:
            destinations = args.destinations
        return cls(
            source_roots=tuple(args.sources),
            destination_roots=tuple(destinations),
            overwrite_policy=OverwritePolicy(args.overwrite),
            cleaning_policy=CleaningPolicy(args.clean),
            validate=args.validate,
            validate_only=args.validate_only,
            volume_label=args.label or "",
            eject=args.eject,
            buffer_size=args.buffer_size,
            max_workers=args.workers,
            hash_algorithm=args.hash_algorithm,
        )


@dataclass
class RunResult:
    """Outcome of a run: the error log and the final destination flags."""

    destinations: list[Path]
    status: dict[int, bool]
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """An empty error list means every destination succeeded."""
        return not self.errors

    @property
    def viable_destinations(self) -> list[Path]:
        return [self.destinations[i] for i, ok in sorted(self.status.items()) if ok]

    @property
    def failed_destinations(self) -> list[Path]:
        return [
            self.destinations[i] for i, ok in sorted(self.status.items()) if not ok
        ]
