"""Global constants and path configuration for Cold VM."""

from __future__ import annotations

import os
from pathlib import Path

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# External executables
HYPERVISOR_BINARY = "qemu-system-x86_64"
PROXY_BINARY = "websockify"
DISK_TOOL_BINARY = "qemu-img"
USB_LIST_BINARY = "lsusb"

# Filesystem layout, relative to the working directory
DEFAULT_DISK_DIR = Path("./devices/disk")
DEFAULT_ROM_DIR = Path("./devices/rom")
DEFAULT_FIRMWARE_CODE = Path("./boot/firmware/OVMF_CODE.fd")
DEFAULT_FIRMWARE_VARS = Path("./boot/firmware/OVMF_VARS.fd")
DEFAULT_NOVNC_DIR = Path("./libraries/noVNC")

DISK_EXTENSIONS = {".qcow2", ".img", ".raw", ".vdi", ".vmdk"}
ISO_EXTENSIONS = {".iso"}

DEFAULT_DISK_NAME = "disk.qcow2"
DEFAULT_DISK_SIZE_GB = 30

FIRMWARE_VARS_SOURCES = (
    Path("/usr/share/OVMF/OVMF_VARS.fd"),
    Path("/usr/share/edk2-ovmf/x64/OVMF_VARS.fd"),
    Path("/usr/share/qemu/OVMF_VARS.fd"),
)
# Size of the zero-filled vars store written when no template exists
FIRMWARE_VARS_FALLBACK_SIZE = 64 * 1024 * 1024

# VM defaults
DEFAULT_CPU_CORES = 4
DEFAULT_RAM_GB = 4
DEFAULT_CPU_MODEL = "host"
DEFAULT_BRIDGE_INTERFACE = "virbr0"
GUEST_MAC_ADDRESS = "52:54:00:12:34:56"

# Remote display: VNC display :1 listens on 5900 + 1
VNC_DISPLAY = 1
VNC_PORT = 5900 + VNC_DISPLAY
NOVNC_PORT = 8080
NOVNC_URL = f"http://localhost:{NOVNC_PORT}/vnc.html?resize=remote&autoconnect=true"

# Child lifecycle timings (seconds)
HYPERVISOR_READY_TIMEOUT = 3.0
PROXY_READY_TIMEOUT = 2.0
READY_POLL_INTERVAL = 0.1
CHILD_STOP_TIMEOUT = 10.0

CAMERA_KEYWORDS = ("camera", "webcam")

CONFIG_ENV_VAR = "COLD_CONFIG"
