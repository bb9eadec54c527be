"""
Fan-out duplication engine: catalog, clean, copy and validate.

Architecture:
- Source files are cataloged once per run with their fingerprints
- Every stage after the catalog is an async generator of ``CopyEvent``
- Failures are isolated per destination: a failed destination is flagged in
  ``DestinationStatus`` and skipped by every later stage, the others go on
- Copying is lockstep: one buffer is written to every destination before the
  next buffer is read from the source
"""

import asyncio
import contextlib
import logging
import shutil
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Protocol

import aiofiles
import aiofiles.os

from .hashing import fingerprint
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

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    """Anything that accepts fractional progress values in [0.0, 1.0]."""

    def report(self, value: float) -> None: ...


class Writer:
    """
    Duplicates source trees onto every destination of a run.

    One ``Writer`` corresponds to one run: the catalog, destination status
    and error log it holds are never reset.

    Parameters
    ----------
    options : RunOptions
        Finalized run configuration
    """

    def __init__(self, options: RunOptions):
        self.options = options
        self.destinations = list(options.destination_roots)
        self.status = DestinationStatus(len(self.destinations))
        self.errors = ErrorLog()
        self._catalog: tuple[WorkItem, ...] | None = None

    # ------------------------------------------------------------------------
    # Public stages
    # ------------------------------------------------------------------------

    async def run(self, progress: ProgressSink | None = None) -> RunResult:
        """
        Execute catalog, clean, copy and validate according to the options.

        Parameters
        ----------
        progress : ProgressSink | None, default=None
            Receives copy fractions, then validation fractions

        Returns
        -------
        RunResult
            Final error list and destination flags
        """
        await self.build_catalog()

        if not self.options.validate_only:
            async for _ in self.clean():
                pass
            async for event in self.copy_files():
                if progress is not None:
                    progress.report(event.fraction)

        if self.options.validate:
            async for event in self.validate():
                if progress is not None:
                    progress.report(event.fraction)

        return self.result()

    def result(self) -> RunResult:
        return RunResult(
            destinations=list(self.destinations),
            status=self.status.snapshot(),
            errors=self.errors.snapshot(),
        )

    async def build_catalog(self) -> tuple[WorkItem, ...]:
        """
        Fingerprint every file under the source roots, once per run.

        Unreadable source files are logged and left out of the catalog.

        Returns
        -------
        tuple[WorkItem, ...]
            Work items ordered by source path

        Raises
        ------
        FileNotFoundError
            If a source root is not an existing directory
        """
        if self._catalog is not None:
            return self._catalog

        # First root wins when roots overlap
        candidates: dict[Path, Path] = {}
        for root in self.options.source_roots:
            root = root.absolute()
            if not root.is_dir():
                raise FileNotFoundError(f"Source folder not found: {root}")
            for path in sorted(root.rglob("*")):
                if path.is_file():
                    candidates.setdefault(path, root)

        semaphore = asyncio.Semaphore(self.options.max_workers)

        async def catalog_file(path: Path, root: Path) -> WorkItem | None:
            async with semaphore:
                try:
                    digest = await fingerprint(
                        path, self.options.hash_algorithm, self.options.buffer_size
                    )
                except OSError as e:
                    self._record_error(f"Error reading source file {path} ({e})")
                    return None
            return WorkItem(source_path=path, origin_root=root, fingerprint=digest)

        items = await asyncio.gather(
            *(catalog_file(path, root) for path, root in candidates.items())
        )
        self._catalog = tuple(item for item in items if item is not None)
        logger.info(
            f"Cataloged {len(self._catalog)} file(s) from "
            f"{len(self.options.source_roots)} source folder(s)"
        )
        return self._catalog

    async def should_write(self, index: int, candidate: Path, digest: str) -> bool:
        """
        Decide whether a destination needs this file written.

        Parameters
        ----------
        index : int
            Destination position
        candidate : Path
            Destination file path
        digest : str
            Fingerprint of the source file

        Returns
        -------
        bool
            True if the file must be (re)written to this destination

        Raises
        ------
        ValueError
            If the overwrite policy is not recognized
        OSError
            If an existing destination file cannot be read
        """
        if not self.status.is_viable(index):
            return False

        policy = self.options.overwrite_policy
        if policy is OverwritePolicy.NEVER:
            return not await aiofiles.os.path.exists(candidate)
        elif policy is OverwritePolicy.IF_DIFFERENT:
            existing = await fingerprint(
                candidate, self.options.hash_algorithm, self.options.buffer_size
            )
            return existing != digest
        elif policy is OverwritePolicy.ALWAYS:
            return True

        raise ValueError(f"Unsupported overwrite policy: {policy}")

    async def clean(self) -> AsyncIterator[CopyEvent]:
        """
        Empty every viable destination root, one task per destination.

        Yields
        ------
        CopyEvent
            CLEAN_PROGRESS once per finished destination
        """
        policy = self.options.cleaning_policy
        if policy is CleaningPolicy.NONE:
            return
        if policy is not CleaningPolicy.ERASE:
            raise ValueError(f"Unsupported cleaning policy: {policy}")

        tasks = [
            asyncio.ensure_future(self._erase_destination(index))
            for index in self.status.viable_indices()
        ]
        async for completed in self._drain(tasks):
            yield CopyEvent(
                type=EventType.CLEAN_PROGRESS, completed=completed, total=len(tasks)
            )

    async def copy_files(self) -> AsyncIterator[CopyEvent]:
        """
        Copy every work item to the destinations that need it.

        Items are processed one at a time; within an item the destinations are
        written concurrently in lockstep.

        Yields
        ------
        CopyEvent
            COPY_START, one COPY_PROGRESS per item, then COPY_COMPLETE
        """
        catalog = await self.build_catalog()
        total = len(catalog)

        yield CopyEvent(
            type=EventType.COPY_START,
            total=total,
            message=f"Copying {total} file(s) to {len(self.destinations)} destination(s)",
        )

        for completed, item in enumerate(catalog, 1):
            await self._copy_item(item)
            yield CopyEvent(
                type=EventType.COPY_PROGRESS, completed=completed, total=total
            )

        yield CopyEvent(
            type=EventType.COPY_COMPLETE,
            completed=total,
            total=total,
            message="Copy phase complete",
        )

    async def validate(self) -> AsyncIterator[CopyEvent]:
        """
        Re-fingerprint every destination copy and compare with the catalog.

        Yields
        ------
        CopyEvent
            VERIFY_START, one VERIFY_PROGRESS per item, then VERIFY_COMPLETE
        """
        catalog = await self.build_catalog()
        total = len(catalog)
        semaphore = asyncio.Semaphore(self.options.max_workers)

        yield CopyEvent(
            type=EventType.VERIFY_START,
            total=total,
            message=f"Verifying {total} file(s) on {len(self.status.viable_indices())} destination(s)",
        )

        async def validate_item(item: WorkItem) -> None:
            async with semaphore:
                await asyncio.gather(
                    *(
                        self._validate_destination(index, item)
                        for index in self.status.viable_indices()
                    )
                )

        tasks = [asyncio.ensure_future(validate_item(item)) for item in catalog]
        async for completed in self._drain(tasks):
            yield CopyEvent(
                type=EventType.VERIFY_PROGRESS, completed=completed, total=total
            )

        yield CopyEvent(
            type=EventType.VERIFY_COMPLETE,
            completed=total,
            total=total,
            message="Validation complete",
        )

    # ------------------------------------------------------------------------
    # Internal methods
    # ------------------------------------------------------------------------

    def _record_error(self, message: str) -> None:
        self.errors.append(message)
        logger.error(message)

    def _fail(self, index: int, message: str) -> None:
        """Flag a destination as failed for the rest of the run."""
        self.status.mark_failed(index)
        self._record_error(message)

    @staticmethod
    async def _drain(tasks: list[asyncio.Future]) -> AsyncIterator[int]:
        """Await tasks as they finish, yielding the running count."""
        try:
            for completed, task in enumerate(asyncio.as_completed(tasks), 1):
                await task
                yield completed
        finally:
            for task in tasks:
                task.cancel()

    async def _erase_destination(self, index: int) -> None:
        root = self.destinations[index]
        try:
            await asyncio.to_thread(self._erase_tree, root)
        except OSError as e:
            self._fail(index, f"Error in erasing drive {root} ({e})")
        else:
            logger.info(f"Erased drive {root}")

    @staticmethod
    def _erase_tree(root: Path) -> None:
        """Delete every subdirectory and top-level file under root."""
        for entry in list(root.iterdir()):
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    async def _select_targets(self, item: WorkItem) -> dict[int, Path]:
        """Evaluate the overwrite policy for every destination concurrently."""

        async def evaluate(index: int) -> Path | None:
            target = item.destination_path(self.destinations[index])
            try:
                needed = await self.should_write(index, target, item.fingerprint)
            except OSError as e:
                self._fail(
                    index,
                    f"Error checking {target} on drive {self.destinations[index]} ({e})",
                )
                return None
            return target if needed else None

        targets = await asyncio.gather(
            *(evaluate(index) for index in range(len(self.destinations)))
        )
        return {index: t for index, t in enumerate(targets) if t is not None}

    async def _open_source(self, path: Path) -> Any:
        return await aiofiles.open(path, "rb")

    async def _open_output(self, path: Path) -> Any:
        return await aiofiles.open(path, "wb")

    @staticmethod
    async def _close_quietly(handle: Any) -> None:
        # Only used for destinations that are already flagged failed
        with contextlib.suppress(OSError):
            await handle.close()

    async def _copy_item(self, item: WorkItem) -> None:
        targets = await self._select_targets(item)
        if not targets:
            logger.debug(f"Up to date on all destinations: {item.source_path}")
            return

        for index, target in list(targets.items()):
            try:
                await aiofiles.os.makedirs(target.parent, exist_ok=True)
            except OSError as e:
                self._fail(
                    index,
                    f"Error creating folder {target.parent} on drive {self.destinations[index]} ({e})",
                )
                del targets[index]

        if not targets:
            return

        try:
            source = await self._open_source(item.source_path)
        except OSError as e:
            self._record_error(f"Error reading source file {item.source_path} ({e})")
            return

        outputs: dict[int, Any] = {}
        try:
            for index, target in targets.items():
                try:
                    outputs[index] = await self._open_output(target)
                except OSError as e:
                    self._write_failed(index, target, e)

            logger.debug(f"Copying {item.source_path} to {len(outputs)} destination(s)")
            await self._stream(item, source, targets, outputs)

        finally:
            await source.close()
            # Flush and close the survivors concurrently
            await asyncio.gather(
                *(
                    self._finish_output(index, targets[index], handle)
                    for index, handle in outputs.items()
                )
            )

    async def _stream(
        self,
        item: WorkItem,
        source: Any,
        targets: dict[int, Path],
        outputs: dict[int, Any],
    ) -> None:
        """
        Read the source once and write each buffer to every open output.

        Failed outputs are closed and removed from ``outputs``.
        """
        while outputs:
            try:
                chunk = await source.read(self.options.buffer_size)
            except OSError as e:
                for index in list(outputs):
                    await self._close_quietly(outputs.pop(index))
                    self._fail(
                        index,
                        f"Error reading source file {item.source_path}, copy to drive "
                        f"{self.destinations[index]} abandoned ({e})",
                    )
                return

            if not chunk:
                return

            # Lockstep: every destination finishes this buffer before the next read
            indices = list(outputs)
            results = await asyncio.gather(
                *(outputs[index].write(chunk) for index in indices),
                return_exceptions=True,
            )
            for index, outcome in zip(indices, results):
                if isinstance(outcome, OSError):
                    await self._close_quietly(outputs.pop(index))
                    self._write_failed(index, targets[index], outcome)
                elif isinstance(outcome, BaseException):
                    raise outcome

    async def _finish_output(self, index: int, target: Path, handle: Any) -> None:
        try:
            await handle.flush()
            await handle.close()
        except OSError as e:
            await self._close_quietly(handle)
            self._write_failed(index, target, e)

    def _write_failed(self, index: int, target: Path, error: OSError) -> None:
        self._fail(
            index,
            f"Error writing {target} to drive {self.destinations[index]} ({error})",
        )

    async def _validate_destination(self, index: int, item: WorkItem) -> None:
        if not self.status.is_viable(index):
            return

        root = self.destinations[index]
        target = item.destination_path(root)
        try:
            digest = await fingerprint(
                target, self.options.hash_algorithm, self.options.buffer_size
            )
        except OSError as e:
            self._fail(index, f"Validation failed for drive {root} ({target}: {e})")
            return

        if digest != item.fingerprint:
            self._fail(index, f"Validation failed for drive {root} ({target})")
