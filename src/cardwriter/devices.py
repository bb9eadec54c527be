"""
Platform capabilities used around the duplication engine.

Drive discovery, volume labelling and ejection are selected per platform at
startup; the engine itself never calls into this module.
"""

import logging
import os
import shutil
import string
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

LINUX_MOUNTS_FILE = Path("/proc/mounts")
LINUX_MOUNT_PREFIXES = ("/media/", "/run/media/")
LINUX_FILESYSTEMS = ("vfat", "msdos", "exfat")
WINDOWS_DRIVE_REMOVABLE = 2


@dataclass
class DriveInfo:
    """A removable drive offered as a destination."""

    name: str
    size_gb: float


# ============================================================================
# Command helpers
# ============================================================================


def run_command(command: list[str]) -> subprocess.CompletedProcess | None:
    """
    Run an external command and capture its output.

    Parameters
    ----------
    command : list[str]
        Executable and arguments

    Returns
    -------
    subprocess.CompletedProcess | None
        The finished process, or None if the executable could not be started
    """
    logger.debug(f"Running command: {' '.join(command)}")
    try:
        return subprocess.run(command, capture_output=True, text=True)
    except OSError as e:
        logger.error(f"Could not run {command[0]}: {e}")
        return None


def _succeeded(result: subprocess.CompletedProcess | None) -> bool:
    if result is None:
        return False
    if result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "Command failed"
        logger.error(f"Command failed ({' '.join(result.args)}): {message}")
        return False
    return True


def _privileged(command: list[str]) -> list[str]:
    """Prefix with sudo unless already running as root."""
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        return ["sudo", *command]
    return command


# ============================================================================
# Drive discovery
# ============================================================================


def linux_removable_mounts(mounts_file: Path = LINUX_MOUNTS_FILE) -> list[str]:
    """Mount points of FAT/exFAT filesystems under the desktop media folders."""
    mounts = []
    for line in mounts_file.read_text().splitlines():
        fields = line.split()
        if len(fields) < 3:
            continue
        # /proc/mounts escapes spaces as \040
        mount_point = fields[1].replace("\\040", " ")
        if fields[2] in LINUX_FILESYSTEMS and mount_point.startswith(
            LINUX_MOUNT_PREFIXES
        ):
            mounts.append(mount_point)
    return mounts


def windows_removable_drives() -> list[str]:
    import ctypes

    kernel32 = ctypes.windll.kernel32
    bitmask = kernel32.GetLogicalDrives()
    drives = []
    for position, letter in enumerate(string.ascii_uppercase):
        if bitmask & (1 << position):
            root = f"{letter}:\\"
            if kernel32.GetDriveTypeW(root) == WINDOWS_DRIVE_REMOVABLE:
                drives.append(root)
    return drives


def discover_drives(platform: str = sys.platform) -> list[DriveInfo]:
    """
    List removable drives that can be written to.

    Parameters
    ----------
    platform : str, default=sys.platform
        Platform identifier used to pick the discovery mechanism

    Returns
    -------
    list[DriveInfo]
        Ready drives with their capacity in GB
    """
    if platform.startswith("linux"):
        mounts = linux_removable_mounts()
    elif platform == "win32":
        mounts = windows_removable_drives()
    else:
        logger.warning(f"Drive discovery is not supported on {platform}")
        return []

    drives = []
    for mount in mounts:
        try:
            usage = shutil.disk_usage(mount)
        except OSError as e:
            logger.warning(f"Skipping drive {mount}: {e}")
            continue
        drives.append(DriveInfo(name=mount, size_gb=usage.total / 1e9))
    return drives


# ============================================================================
# Volume labels
# ============================================================================


class VolumeLabeler:
    """Writes a volume label to a set of drives."""

    def write_label(self, label: str, drives: list[Path]) -> bool:
        raise NotImplementedError


class LinuxVolumeLabeler(VolumeLabeler):
    """Labels FAT drives with mtools' ``mlabel`` on the backing block device."""

    def write_label(self, label: str, drives: list[Path]) -> bool:
        success = True
        for drive in drives:
            device = self.block_device(drive)
            if device is None:
                logger.error(f"Could not find the block device for {drive}")
                success = False
                continue
            result = run_command(_privileged(["mlabel", "-i", device, f"::{label}"]))
            success = _succeeded(result) and success
        return success

    @staticmethod
    def block_device(drive: Path) -> str | None:
        result = run_command(["findmnt", "-n", "-o", "SOURCE", str(drive)])
        if not _succeeded(result) or not result.stdout.strip():
            return None
        return result.stdout.strip()


class WindowsVolumeLabeler(VolumeLabeler):
    def write_label(self, label: str, drives: list[Path]) -> bool:
        success = True
        for drive in drives:
            letter = str(drive).rstrip("\\/")
            success = _succeeded(run_command(["label", letter, label])) and success
        return success


# ============================================================================
# Ejection
# ============================================================================


class DriveEjector:
    """Unmounts or ejects a set of drives."""

    def eject(self, drives: list[Path]) -> bool:
        raise NotImplementedError


class LinuxDriveEjector(DriveEjector):
    def eject(self, drives: list[Path]) -> bool:
        success = True
        for drive in drives:
            result = run_command(_privileged(["umount", "-l", str(drive)]))
            success = _succeeded(result) and success
        return success


class WindowsDriveEjector(DriveEjector):
    """Uses the shell's Eject verb, the same action as Explorer's context menu."""

    def eject(self, drives: list[Path]) -> bool:
        success = True
        for drive in drives:
            letter = str(drive).rstrip("\\/")
            script = (
                "(New-Object -ComObject Shell.Application).Namespace(17)"
                f".ParseName('{letter}').InvokeVerb('Eject')"
            )
            result = run_command(["powershell", "-NoProfile", "-Command", script])
            success = _succeeded(result) and success
        return success


def get_labeler(platform: str = sys.platform) -> VolumeLabeler | None:
    if platform.startswith("linux"):
        return LinuxVolumeLabeler()
    elif platform == "win32":
        return WindowsVolumeLabeler()
    return None


def get_ejector(platform: str = sys.platform) -> DriveEjector | None:
    if platform.startswith("linux"):
        return LinuxDriveEjector()
    elif platform == "win32":
        return WindowsDriveEjector()
    return None
