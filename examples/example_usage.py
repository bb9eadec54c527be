#!/usr/bin/env python3
"""
Example usage script for the cardwriter library.

Builds a small source folder, duplicates it onto three temporary "cards",
tampers with one card and shows how a validation-only run reports it.
"""

import asyncio
import logging
import shutil
import sys
import tempfile
from pathlib import Path

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cardwriter import EventType, OverwritePolicy, RunOptions, Writer


def setup_logging() -> None:
    """Configure logging for the example script."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def create_sample_tree(root: Path, size_kb: int = 512) -> None:
    """
    Create a source folder with a few nested files.

    Parameters
    ----------
    root : Path
        Folder to populate
    size_kb : int
        Size of the largest file in kilobytes
    """
    (root / "photos" / "2024").mkdir(parents=True, exist_ok=True)
    (root / "notes.txt").write_text("Trip notes\n")
    (root / "photos" / "2024" / "img_0001.raw").write_bytes(b"\x00" * 1024 * size_kb)
    (root / "photos" / "2024" / "img_0002.raw").write_bytes(b"\xff" * 1024 * 64)
    logging.info(f"Created sample tree in {root}")


class PrintProgress:
    """Minimal progress sink that logs every quarter."""

    def __init__(self):
        self._last = -1

    def report(self, value: float) -> None:
        quarter = int(value * 4)
        if quarter != self._last:
            self._last = quarter
            logging.info(f"Progress {value:.0%}")


async def example_copy(source: Path, cards: list[Path]) -> None:
    """Example 1: copy with the default skip-if-identical policy."""
    print("\n=== Example 1: Copy to three cards ===")
    options = RunOptions(source_roots=(source,), destination_roots=tuple(cards))
    result = await Writer(options).run(PrintProgress())
    print(f"Success: {result.success}, viable: {result.viable_destinations}")


async def example_events(source: Path, cards: list[Path]) -> None:
    """Example 2: drive the copy stage yourself and inspect events."""
    print("\n=== Example 2: Always overwrite, watching events ===")
    options = RunOptions(
        source_roots=(source,),
        destination_roots=tuple(cards),
        overwrite_policy=OverwritePolicy.ALWAYS,
        validate=False,
    )
    writer = Writer(options)
    async for event in writer.copy_files():
        if event.type in (EventType.COPY_START, EventType.COPY_COMPLETE):
            print(f"{event.type.value}: {event.message}")
        else:
            print(f"  {event.completed}/{event.total} files")


async def example_validate(source: Path, cards: list[Path]) -> None:
    """Example 3: validation-only run after tampering with one card."""
    print("\n=== Example 3: Detect a tampered card ===")
    (cards[1] / "notes.txt").write_text("Edited on the card\n")
    options = RunOptions(
        source_roots=(source,), destination_roots=tuple(cards), validate_only=True
    )
    result = await Writer(options).run()
    for message in result.errors:
        print(f"  {message}")
    print(f"Failed cards: {result.failed_destinations}")


def main() -> None:
    setup_logging()
    test_dir = Path(tempfile.mkdtemp(prefix="cardwriter_example_"))
    try:
        source = test_dir / "source"
        create_sample_tree(source)
        cards = []
        for i in range(3):
            card = test_dir / f"card{i + 1}"
            card.mkdir()
            cards.append(card)

        asyncio.run(example_copy(source, cards))
        asyncio.run(example_events(source, cards))
        asyncio.run(example_validate(source, cards))
    finally:
        shutil.rmtree(test_dir)


if __name__ == "__main__":
    main()
