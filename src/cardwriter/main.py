#!/usr/bin/env python3
"""
cardwriter - Duplicate folders onto many SD cards or USB drives at once.

Presentation layer: argument parsing, confirmation prompt, progress bars and
the platform collaborators that run after the engine (labelling, ejecting).
The engine in ``cardwriter.engine`` never touches stdout.
"""

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import TextIO

from .devices import discover_drives, get_ejector, get_labeler
from .engine import Writer
from .models import (
    BUFFER_SIZE,
    HASH_ALGORITHMS,
    MAX_WORKERS,
    CleaningPolicy,
    EventType,
    OverwritePolicy,
    RunOptions,
    RunResult,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Progress display
# ============================================================================


class ProgressBar:
    """
    Text progress bar fed with fractional values.

    Parameters
    ----------
    stream : TextIO | None, default=None
        Output stream; nothing is drawn when it is not a terminal
    width : int, default=50
        Number of bar cells
    update_interval : float, default=0.1
        Minimum seconds between redraws
    """

    FILLED = "█"
    EMPTY = "░"

    def __init__(
        self,
        stream: TextIO | None = None,
        width: int = 50,
        update_interval: float = 0.1,
    ):
        self.stream = stream or sys.stdout
        self.width = width
        self.update_interval = update_interval
        self.enabled = self.stream.isatty()
        self.value = 0.0
        self._last_draw = 0.0
        self._last_text = ""

    def report(self, value: float) -> None:
        self.value = max(0.0, min(1.0, value))
        current_time = time.time()
        # Always draw completion
        if self.value >= 1.0 or current_time - self._last_draw >= self.update_interval:
            self._draw()
            self._last_draw = current_time

    def render(self) -> str:
        percent = int(self.value * 100)
        filled = int(self.value * self.width)
        bar = self.FILLED * filled + self.EMPTY * (self.width - filled)
        return f"[{bar}] {percent}%"

    def _draw(self) -> None:
        if not self.enabled:
            return
        text = self.render()
        if text != self._last_text:
            self.stream.write(f"\r{text}")
            self.stream.flush()
            self._last_text = text

    def close(self) -> None:
        if self.enabled:
            self._draw()
            self.stream.write("\n")
            self.stream.flush()


# ============================================================================
# Run orchestration
# ============================================================================


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


async def run_round(options: RunOptions) -> RunResult:
    """
    Run one duplication round: clean, copy and validate.

    Parameters
    ----------
    options : RunOptions
        Finalized run configuration

    Returns
    -------
    RunResult
        Errors and destination flags from the engine
    """
    writer = Writer(options)

    print(f"{_timestamp()} Cataloging source files")
    catalog = await writer.build_catalog()
    print(f"Found {len(catalog)} file(s)")

    if not options.validate_only:
        if options.cleaning_policy is not CleaningPolicy.NONE:
            print("Cleaning destinations")
            async for _ in writer.clean():
                pass

        print(f"\n{_timestamp()} Copying files")
        bar = ProgressBar()
        async for event in writer.copy_files():
            if event.type == EventType.COPY_PROGRESS:
                bar.report(event.fraction)
        bar.close()
        print("Copying finished")

    if options.validate:
        print(f"\n{_timestamp()} Validating files")
        bar = ProgressBar()
        async for event in writer.validate():
            if event.type == EventType.VERIFY_PROGRESS:
                bar.report(event.fraction)
        bar.close()
        print("Validation finished")

    return writer.result()


def finish_drives(options: RunOptions, result: RunResult) -> None:
    """
    Label and eject the destinations that are still viable.

    Collaborator failures are appended to ``result.errors``.
    """
    viable = result.viable_destinations

    if options.volume_label and not options.validate_only and viable:
        labeler = get_labeler()
        if labeler is None:
            logger.warning(f"Volume labels are not supported on {sys.platform}")
        elif not labeler.write_label(options.volume_label, viable):
            result.errors.append("Error setting volume labels.")

    if options.eject:
        ejector = get_ejector()
        if ejector is None:
            logger.warning(f"Ejecting drives is not supported on {sys.platform}")
        else:
            if viable and not ejector.eject(viable):
                result.errors.append("Error ejecting drives.")
            failed = result.failed_destinations
            if failed:
                result.errors.append(
                    f"Not ejected (failed): {', '.join(str(p) for p in failed)}"
                )


def show_summary(result: RunResult) -> None:
    print()
    if result.errors:
        for message in result.errors:
            print(message)
        print(f"{_timestamp()} - Completed with errors. See above for details")
    else:
        print(f"{_timestamp()} - Completed successfully. No errors found")


def confirm_options(options: RunOptions) -> bool:
    """Print the options and ask the user to confirm them."""
    print("Please confirm options")
    for folder in options.source_roots:
        print(f"Input folder - {folder}")
    print(f"Validate only = {options.validate_only}")
    if not options.validate_only:
        print(f"Volume label = {options.volume_label}")
        print(f"Cleaning type = {options.cleaning_policy.value}")
        print(f"Overwrite type = {options.overwrite_policy.value}")
        print(f"Validate = {options.validate}")
    print(f"Eject = {options.eject}")
    print(f"Drives to validate/copy to ({len(options.destination_roots)}):")
    for drive in options.destination_roots:
        print(f"  {drive}")

    try:
        response = input("Continue? [y/n]: ").strip().lower()
    except EOFError:
        return False
    return response in ["y", "yes"]


# ============================================================================
# Main Entry Point
# ============================================================================


def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging for the application.

    Parameters
    ----------
    verbose : bool
        Enable verbose logging
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command line arguments.

    Returns
    -------
    argparse.Namespace
        Parsed command line arguments
    """
    parser = argparse.ArgumentParser(
        description="Duplicate folders onto multiple SD cards or USB drives with hash validation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ./content -d /media/card1 -d /media/card2        # Copy changed files, then validate
  %(prog)s ./content --all-drives -o always -c erase -e     # Fresh copy to every card, then eject
  %(prog)s ./content -d /media/card1 --validate-only        # Only check an existing copy
  %(prog)s ./content --all-drives -r -y                     # Write card after card until q
  %(prog)s --list-drives                                    # Show removable drives
        """,
    )

    parser.add_argument(
        "sources",
        type=Path,
        nargs="*",
        help="Source folders to duplicate",
    )
    parser.add_argument(
        "-d",
        "--destination",
        dest="destinations",
        type=Path,
        action="append",
        default=[],
        help="Destination drive root (repeat for each drive)",
    )
    parser.add_argument(
        "--all-drives",
        action="store_true",
        help="Use every discovered removable drive as a destination",
    )
    parser.add_argument(
        "--list-drives",
        action="store_true",
        help="List discovered removable drives and exit",
    )
    parser.add_argument(
        "-o",
        "--overwrite",
        type=str,
        default=OverwritePolicy.IF_DIFFERENT.value,
        choices=[p.value for p in OverwritePolicy],
        help="When to overwrite existing files (default: different)",
    )
    parser.add_argument(
        "-c",
        "--clean",
        type=str,
        default=CleaningPolicy.NONE.value,
        choices=[p.value for p in CleaningPolicy],
        help="Erase destinations before copying (default: none)",
    )
    parser.add_argument(
        "--validate",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Validate files after copying (default: on)",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Do not copy, only validate destinations against the sources",
    )
    parser.add_argument(
        "-l",
        "--label",
        type=str,
        default="",
        help="Volume label to set on successful drives",
    )
    parser.add_argument(
        "-e",
        "--eject",
        action="store_true",
        help="Eject successful drives when finished",
    )
    parser.add_argument(
        "-b",
        "--buffer-size",
        type=int,
        default=BUFFER_SIZE,
        help="Buffer size in bytes (default: 256KB)",
    )
    parser.add_argument(
        "-w",
        "--workers",
        type=int,
        default=MAX_WORKERS,
        help=f"Concurrent hashing tasks (default: {MAX_WORKERS})",
    )
    parser.add_argument(
        "--hash-algorithm",
        type=str,
        default="xxh64be",
        choices=list(HASH_ALGORITHMS),
        help="Hash algorithm for fingerprints (default: xxh64be)",
    )
    parser.add_argument(
        "-r",
        "--repeat",
        action="store_true",
        help="Run again for each new set of drives until told to stop",
    )
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Do not ask for confirmation",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args(argv)


def list_drives() -> None:
    drives = discover_drives()
    print(f"Found the following {len(drives)} drives:")
    for i, drive in enumerate(drives):
        print(f"{i}. {drive.name} ({drive.size_gb:.2f} GB)")


def run_once(args: argparse.Namespace) -> int:
    """
    Run one round with freshly resolved destinations.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments; never modified

    Returns
    -------
    int
        Exit code for this round
    """
    destinations = list(args.destinations)
    if args.all_drives:
        destinations.extend(Path(drive.name) for drive in discover_drives())

    try:
        options = RunOptions.from_args(args, destinations)
    except ValueError as e:
        logger.error(f"Invalid parameter: {e}")
        return 2

    if not args.yes and not confirm_options(options):
        print("Cancelled")
        return 1

    try:
        result = asyncio.run(run_round(options))
    except KeyboardInterrupt:
        print("\nOperation interrupted by user")
        return 130
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Invalid parameter: {e}")
        return 2

    finish_drives(options, result)
    show_summary(result)
    return 0 if result.success else 1


def wait_for_next_round() -> bool:
    """Ask the user to swap drives; False when they want to stop."""
    try:
        response = input(
            "\nInsert the next set of drives and press Enter (q to quit): "
        )
    except EOFError:
        return False
    return response.strip().lower() not in ["q", "quit"]


def main(argv: list[str] | None = None) -> int:
    """
    CLI entry point.

    Returns
    -------
    int
        Exit code: 0 for success, 1 for failure, 2 for invalid parameters,
        130 for keyboard interrupt
    """
    args = parse_arguments(argv)
    setup_logging(args.verbose)

    if args.list_drives:
        list_drives()
        return 0

    if not args.repeat:
        return run_once(args)

    failed_rounds = 0
    round_number = 1
    while True:
        print(f"\n{_timestamp()} Round {round_number}")
        try:
            exit_code = run_once(args)
        except Exception as e:
            logger.exception(
                f"Round {round_number} aborted ({e}). "
                "Check the drives are connected and try again"
            )
            exit_code = 1

        if exit_code == 130:
            return 130
        if exit_code != 0:
            failed_rounds += 1

        try:
            if not wait_for_next_round():
                break
        except KeyboardInterrupt:
            print("\nOperation interrupted by user")
            return 130
        round_number += 1

    print(f"Finished {round_number} round(s), {failed_rounds} with errors")
    return 0 if failed_rounds == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
