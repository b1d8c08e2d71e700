"""Bootable media and firmware discovery for Cold VM."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Iterable, List, Set

from coldvm.constants import (
    DEFAULT_DISK_NAME,
    DEFAULT_DISK_SIZE_GB,
    DISK_EXTENSIONS,
    DISK_TOOL_BINARY,
    FIRMWARE_VARS_FALLBACK_SIZE,
    ISO_EXTENSIONS,
)
from coldvm.models import LayoutConfig, MediaSet
from coldvm.utils import log, run

VARS_EXISTING = "existing"
VARS_TEMPLATE = "template"
VARS_BLANK = "blank"


def _scan(directory: Path, extensions: Set[str], label: str) -> List[Path]:
    found: List[Path] = []
    try:
        if not directory.is_dir():
            return found
        for entry in directory.iterdir():
            if entry.suffix.lower() in extensions and entry.is_file():
                found.append(entry)
    except OSError as exc:
        log("ERROR", f"Failed to scan {label} directory {directory}: {exc}")
        return []
    # Sorting fixes which file is the primary boot medium
    found.sort(key=str)
    for path in found:
        log("DEBUG", f"Found {label}: {path.name}")
    return found


def scan_disks(directory: Path) -> List[Path]:
    log("DEBUG", "Scanning for disk images...")
    return _scan(directory, DISK_EXTENSIONS, "disk")


def scan_isos(directory: Path) -> List[Path]:
    log("DEBUG", "Scanning for ISO files...")
    return _scan(directory, ISO_EXTENSIONS, "ISO")


def scan_media(layout: LayoutConfig) -> MediaSet:
    return MediaSet(disks=scan_disks(layout.disk_dir), isos=scan_isos(layout.rom_dir))


def ensure_directories(layout: LayoutConfig) -> None:
    log("DEBUG", "Creating required directories...")
    directories = [
        layout.disk_dir,
        layout.rom_dir,
        layout.firmware_code.parent,
        layout.firmware_vars.parent,
        layout.novnc_dir.parent,
    ]
    try:
        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        log("ERROR", f"Failed to create directories: {exc}")
        return
    log("DEBUG", "Directory structure ready")


def ensure_default_disk(directory: Path, size_gb: int = DEFAULT_DISK_SIZE_GB) -> bool:
    """Create a sparse qcow2 disk unless the directory already holds a disk image.

    Returns False when creation failed. The caller decides whether that matters:
    a later scan may still find bootable media (an ISO, for instance).
    """
    if scan_disks(directory):
        return True

    target = directory / DEFAULT_DISK_NAME
    log("INFO", f"Creating default {size_gb}GB disk image...")
    try:
        result = run(
            [DISK_TOOL_BINARY, "create", "-f", "qcow2", str(target), f"{size_gb}G"],
            check=False,
            capture_output=True,
        )
    except OSError as exc:
        log("ERROR", f"Failed to create default disk: {exc}")
        return False
    if result.returncode != 0:
        detail = (result.stderr or "").strip()
        log("ERROR", f"Failed to create default disk (exit {result.returncode}){': ' + detail if detail else ''}")
        return False
    log("SUCCESS", f"Default disk created at {target}")
    return True


def ensure_firmware_vars(path: Path, candidate_sources: Iterable[Path]) -> str:
    """Make sure the UEFI variable store exists next to the firmware code.

    Returns VARS_EXISTING, VARS_TEMPLATE or VARS_BLANK. A blank store still
    boots but UEFI may fail to persist its settings, so it is only a warning.
    """
    if path.exists():
        return VARS_EXISTING

    log("INFO", "Creating OVMF VARS file...")
    path.parent.mkdir(parents=True, exist_ok=True)
    for source in candidate_sources:
        if not source.exists():
            continue
        try:
            shutil.copyfile(source, path)
        except OSError as exc:
            log("DEBUG", f"Failed to copy {source}: {exc}")
            continue
        log("SUCCESS", f"OVMF VARS file created from system template {source}")
        return VARS_TEMPLATE

    log("WARN", "No OVMF VARS template found; creating an empty VARS file (UEFI settings may not persist)")
    with open(path, "wb") as handle:
        handle.truncate(FIRMWARE_VARS_FALLBACK_SIZE)
    return VARS_BLANK


def check_bridge_interface(name: str) -> bool:
    """Return True if the host has a network interface called ``name``."""
    try:
        result = run(["ip", "link", "show", name], check=False, capture_output=True)
    except (OSError, subprocess.SubprocessError) as exc:
        log("DEBUG", f"Could not query interface {name}: {exc}")
        return False
    return result.returncode == 0
