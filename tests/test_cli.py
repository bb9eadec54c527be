#!/usr/bin/env python3
"""
Tests for the command line layer.

Tests cover:
- Argument parsing into RunOptions
- Progress bar rendering
- Labelling/ejecting after a run
- End-to-end runs through main()
"""

import io
import shutil
import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cardwriter import (
    CleaningPolicy,
    OverwritePolicy,
    RunOptions,
    RunResult,
    Writer,
    main,
)
from cardwriter.devices import DriveInfo
from cardwriter.main import ProgressBar, finish_drives, parse_arguments, run_round


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def cli_dirs():
    test_dir = Path(tempfile.mkdtemp())
    source = test_dir / "source"
    (source / "docs").mkdir(parents=True)
    (source / "readme.txt").write_bytes(b"read me")
    (source / "docs" / "guide.txt").write_bytes(b"guide")
    card1 = test_dir / "card1"
    card2 = test_dir / "card2"
    card1.mkdir()
    card2.mkdir()
    yield source, card1, card2
    shutil.rmtree(test_dir)


class FakeTerminal(io.StringIO):
    def isatty(self):
        return True


# ============================================================================
# Argument Parsing Tests
# ============================================================================


def test_parse_arguments_defaults() -> None:
    args = parse_arguments(["./content", "-d", "/media/card1", "-d", "/media/card2"])
    options = RunOptions.from_args(args)

    assert options.source_roots == (Path("./content"),)
    assert options.destination_roots == (Path("/media/card1"), Path("/media/card2"))
    assert options.overwrite_policy is OverwritePolicy.IF_DIFFERENT
    assert options.cleaning_policy is CleaningPolicy.NONE
    assert options.validate is True
    assert options.eject is False


def test_parse_arguments_full() -> None:
    args = parse_arguments(
        [
            "./a",
            "./b",
            "-d",
            "/media/card1",
            "-o",
            "always",
            "-c",
            "erase",
            "--no-validate",
            "-l",
            "HOLIDAY",
            "-e",
            "-b",
            "4096",
            "-w",
            "4",
            "--hash-algorithm",
            "sha256",
        ]
    )
    options = RunOptions.from_args(args)

    assert options.source_roots == (Path("./a"), Path("./b"))
    assert options.overwrite_policy is OverwritePolicy.ALWAYS
    assert options.cleaning_policy is CleaningPolicy.ERASE
    assert options.validate is False
    assert options.volume_label == "HOLIDAY"
    assert options.eject is True
    assert options.buffer_size == 4096
    assert options.max_workers == 4
    assert options.hash_algorithm == "sha256"


def test_parse_arguments_rejects_unknown_policy() -> None:
    with pytest.raises(SystemExit):
        parse_arguments(["./a", "-d", "/media/card1", "-o", "sometimes"])


# ============================================================================
# Progress Bar Tests
# ============================================================================


def test_progress_bar_render() -> None:
    bar = ProgressBar(stream=io.StringIO(), width=10)
    bar.report(0.5)

    assert bar.render() == "[█████░░░░░] 50%"
    assert not bar.enabled


def test_progress_bar_clamps_and_draws_completion() -> None:
    stream = FakeTerminal()
    bar = ProgressBar(stream=stream, width=4, update_interval=3600)

    bar.report(0.25)
    bar.report(0.5)  # throttled
    bar.report(7.0)
    bar.close()

    output = stream.getvalue()
    assert "[█░░░] 25%" in output
    assert "50%" not in output
    assert output.endswith("[████] 100%\n")


# ============================================================================
# Collaborator Tests
# ============================================================================


def make_result(status):
    return RunResult(
        destinations=[Path("/media/card1"), Path("/media/card2")],
        status=status,
    )


def test_finish_drives_labels_and_ejects_viable() -> None:
    labeler = MagicMock()
    labeler.write_label.return_value = True
    ejector = MagicMock()
    ejector.eject.return_value = True
    options = RunOptions(
        source_roots=["/src"],
        destination_roots=["/media/card1", "/media/card2"],
        volume_label="CARD",
        eject=True,
    )
    result = make_result({0: True, 1: False})

    with patch("cardwriter.main.get_labeler", return_value=labeler), patch(
        "cardwriter.main.get_ejector", return_value=ejector
    ):
        finish_drives(options, result)

    labeler.write_label.assert_called_once_with("CARD", [Path("/media/card1")])
    ejector.eject.assert_called_once_with([Path("/media/card1")])
    assert result.errors == ["Not ejected (failed): /media/card2"]


def test_finish_drives_reports_collaborator_failures() -> None:
    labeler = MagicMock()
    labeler.write_label.return_value = False
    ejector = MagicMock()
    ejector.eject.return_value = False
    options = RunOptions(
        source_roots=["/src"],
        destination_roots=["/media/card1", "/media/card2"],
        volume_label="CARD",
        eject=True,
    )
    result = make_result({0: True, 1: True})

    with patch("cardwriter.main.get_labeler", return_value=labeler), patch(
        "cardwriter.main.get_ejector", return_value=ejector
    ):
        finish_drives(options, result)

    assert result.errors == ["Error setting volume labels.", "Error ejecting drives."]


def test_finish_drives_skips_label_when_validating_only() -> None:
    labeler = MagicMock()
    options = RunOptions(
        source_roots=["/src"],
        destination_roots=["/media/card1", "/media/card2"],
        volume_label="CARD",
        validate_only=True,
    )
    result = make_result({0: True, 1: True})

    with patch("cardwriter.main.get_labeler", return_value=labeler):
        finish_drives(options, result)

    labeler.write_label.assert_not_called()
    assert result.success


# ============================================================================
# End-to-end Tests
# ============================================================================


def test_main_copies_and_validates(cli_dirs) -> None:
    source, card1, card2 = cli_dirs

    exit_code = main([str(source), "-d", str(card1), "-d", str(card2), "--yes"])

    assert exit_code == 0
    for card in [card1, card2]:
        assert (card / "readme.txt").read_bytes() == b"read me"
        assert (card / "docs" / "guide.txt").read_bytes() == b"guide"


def test_main_validate_only_reports_mismatch(cli_dirs, capsys) -> None:
    source, card1, card2 = cli_dirs
    assert main([str(source), "-d", str(card1), "-d", str(card2), "-y"]) == 0
    (card2 / "readme.txt").write_bytes(b"tampered")

    exit_code = main([str(source), "-d", str(card1), "-d", str(card2), "-y", "--validate-only"])

    assert exit_code == 1
    out = capsys.readouterr().out
    assert "Validation failed" in out
    assert "Completed with errors" in out


def test_main_invalid_label(cli_dirs) -> None:
    source, card1, _ = cli_dirs

    assert main([str(source), "-d", str(card1), "-l", "no/slashes", "-y"]) == 2


def test_main_missing_source(cli_dirs) -> None:
    source, card1, _ = cli_dirs

    assert main([str(source / "absent"), "-d", str(card1), "-y"]) == 1


def test_main_requires_destination(cli_dirs) -> None:
    source, _, _ = cli_dirs

    assert main([str(source), "-y"]) == 2


def test_main_cancelled_at_prompt(cli_dirs) -> None:
    source, card1, _ = cli_dirs

    with patch("builtins.input", return_value="n"):
        assert main([str(source), "-d", str(card1)]) == 1

    assert list(card1.iterdir()) == []


# ============================================================================
# Repeat Mode Tests
# ============================================================================


def test_repeat_discovers_drives_each_round(cli_dirs) -> None:
    """Each round gets newly discovered drives and a fresh writer."""
    source, card1, card2 = cli_dirs
    writers = []

    class RecordingWriter(Writer):
        def __init__(self, options):
            super().__init__(options)
            writers.append(self)

    drive_sets = iter([[DriveInfo(str(card1), 1.0)], [DriveInfo(str(card2), 1.0)]])

    with patch(
        "cardwriter.main.discover_drives", side_effect=lambda: next(drive_sets)
    ), patch("cardwriter.main.Writer", RecordingWriter), patch(
        "builtins.input", side_effect=["", "q"]
    ):
        exit_code = main([str(source), "--all-drives", "-r", "-y"])

    assert exit_code == 0
    assert [writer.destinations for writer in writers] == [[card1], [card2]]
    assert writers[0].status is not writers[1].status
    assert writers[0].errors is not writers[1].errors
    for writer in writers:
        assert writer.status.snapshot() == {0: True}
    for card in [card1, card2]:
        assert (card / "docs" / "guide.txt").read_bytes() == b"guide"


def test_repeat_continues_after_failed_round(cli_dirs, caplog) -> None:
    source, card1, _ = cli_dirs
    calls = []

    def flaky_run_round(options):
        calls.append(options)
        if len(calls) == 1:
            raise RuntimeError("Drive disappeared")
        return run_round(options)

    with patch("cardwriter.main.run_round", flaky_run_round), patch(
        "builtins.input", side_effect=["", EOFError()]
    ):
        exit_code = main([str(source), "-d", str(card1), "-r", "-y"])

    assert exit_code == 1
    assert len(calls) == 2
    assert "Drive disappeared" in caplog.text
    assert (card1 / "readme.txt").read_bytes() == b"read me"


def test_single_round_without_repeat(cli_dirs) -> None:
    source, card1, _ = cli_dirs

    with patch("builtins.input") as prompt:
        assert main([str(source), "-d", str(card1), "-y"]) == 0

    prompt.assert_not_called()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
