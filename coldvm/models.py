"""Data models for Cold VM."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from coldvm.constants import (
    DEFAULT_DISK_DIR,
    DEFAULT_FIRMWARE_CODE,
    DEFAULT_FIRMWARE_VARS,
    DEFAULT_NOVNC_DIR,
    DEFAULT_ROM_DIR,
)


class DisplayMode(str, Enum):
    REMOTE = "remote"  # VNC bridged to the browser through websockify
    LOCAL = "local"  # GTK window on the host


class NetworkMode(str, Enum):
    BRIDGED = "bridged"
    NAT = "nat"


class ChildRole(str, Enum):
    HYPERVISOR = "hypervisor"
    DISPLAY_PROXY = "display-proxy"


class ChildState(str, Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class SupervisorState(str, Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    ACTIVE = "active"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    FAILED = "failed"


@dataclass(frozen=True)
class LayoutConfig:
    disk_dir: Path = DEFAULT_DISK_DIR
    rom_dir: Path = DEFAULT_ROM_DIR
    firmware_code: Path = DEFAULT_FIRMWARE_CODE
    firmware_vars: Path = DEFAULT_FIRMWARE_VARS
    novnc_dir: Path = DEFAULT_NOVNC_DIR


@dataclass(frozen=True)
class VMConfig:
    cpu_cores: int
    ram_gb: int
    cpu_model: str
    display_mode: DisplayMode
    network_mode: NetworkMode
    bridge_interface: str
    camera_enabled: bool
    audio_enabled: bool
    microphone_enabled: bool
    layout: LayoutConfig = field(default_factory=LayoutConfig)

    @property
    def remote_display(self) -> bool:
        return self.display_mode is DisplayMode.REMOTE


@dataclass(frozen=True)
class MediaSet:
    """Bootable media in discovery order; the first entry of each list is primary."""

    disks: List[Path] = field(default_factory=list)
    isos: List[Path] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.disks and not self.isos

    @property
    def primary_disk(self) -> Optional[Path]:
        return self.disks[0] if self.disks else None

    @property
    def primary_iso(self) -> Optional[Path]:
        return self.isos[0] if self.isos else None


@dataclass(frozen=True)
class CameraDevice:
    vendor_id: str
    product_id: str
    name: str = ""


@dataclass
class ChildProcess:
    role: ChildRole
    command: List[str]
    process: Optional[subprocess.Popen] = None
    state: ChildState = ChildState.NOT_STARTED
    history: List[ChildState] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append(self.state)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def label(self) -> str:
        return "QEMU" if self.role is ChildRole.HYPERVISOR else "Websockify"

    def transition(self, state: ChildState) -> None:
        self.state = state
        self.history.append(state)


@dataclass(frozen=True)
class LaunchPlan:
    media: MediaSet
    hypervisor_command: List[str]
    proxy_command: Optional[List[str]] = None
    hypervisor_port: Optional[int] = None
    proxy_port: Optional[int] = None
    proxy_assets: Optional[Path] = None
