"""Environment checks and launch planning for Cold VM."""

from __future__ import annotations

import dataclasses

from coldvm.command import build_proxy_command, build_qemu_command
from coldvm.constants import (
    FIRMWARE_VARS_SOURCES,
    HYPERVISOR_BINARY,
    NOVNC_PORT,
    PROXY_BINARY,
    VNC_PORT,
)
from coldvm.exceptions import MissingToolError
from coldvm.models import LaunchPlan, MediaSet, NetworkMode, VMConfig
from coldvm.scanner import (
    check_bridge_interface,
    ensure_default_disk,
    ensure_directories,
    ensure_firmware_vars,
    scan_media,
)
from coldvm.utils import command_available, log


class Launcher:
    """Validate the host, discover media and assemble the LaunchPlan.

    Nothing here spawns a long-running process; that belongs to the
    supervisor. The configuration is final once ``prepare`` returns.
    """

    def __init__(self, cfg: VMConfig, camera_probe=None) -> None:
        self.cfg = cfg
        self.camera_probe = camera_probe
        self.media = MediaSet()
        self.firmware_present = False

    def check_requirements(self) -> None:
        log("DEBUG", "Checking system requirements...")
        if not command_available(HYPERVISOR_BINARY):
            raise MissingToolError(f"QEMU ({HYPERVISOR_BINARY}) is required but not installed!")
        log("SUCCESS", "QEMU is available!")

        self.firmware_present = self.cfg.layout.firmware_code.exists()
        if self.firmware_present:
            log("SUCCESS", "OVMF Firmware found!")
        else:
            log("WARN", f"OVMF Firmware not found at: {self.cfg.layout.firmware_code} (booting without UEFI)")

        if self.cfg.remote_display:
            if not command_available(PROXY_BINARY):
                raise MissingToolError("Websockify is required for VNC mode!")
            log("SUCCESS", "Websockify is available!")
            if self.cfg.layout.novnc_dir.exists():
                log("SUCCESS", "noVNC found!")
            else:
                log("WARN", f"noVNC not found at: {self.cfg.layout.novnc_dir}")

        if self.cfg.network_mode is NetworkMode.BRIDGED:
            iface = self.cfg.bridge_interface
            if check_bridge_interface(iface):
                log("SUCCESS", f"Bridge interface '{iface}' is available!")
            else:
                log("WARN", f"Bridge interface '{iface}' not found!")
                log("WARN", "Falling back to user networking (NAT)")
                self.cfg = dataclasses.replace(self.cfg, network_mode=NetworkMode.NAT)

    def discover_media(self) -> MediaSet:
        layout = self.cfg.layout
        media = scan_media(layout)
        if not media.disks:
            log("WARN", "No disk images found!")
            if ensure_default_disk(layout.disk_dir):
                media = scan_media(layout)
        self.media = media
        return media

    def prepare_firmware(self) -> bool:
        if not self.firmware_present:
            return False
        try:
            ensure_firmware_vars(self.cfg.layout.firmware_vars, FIRMWARE_VARS_SOURCES)
        except OSError as exc:
            log("WARN", f"Cannot create OVMF VARS file ({exc}); booting without UEFI firmware")
            return False
        return True

    def prepare(self) -> LaunchPlan:
        ensure_directories(self.cfg.layout)
        self.check_requirements()
        self.discover_media()
        firmware = self.prepare_firmware()
        return self.build_plan(firmware)

    def build_plan(self, firmware_present: bool) -> LaunchPlan:
        kwargs = {}
        if self.camera_probe is not None:
            kwargs["camera_probe"] = self.camera_probe
        hypervisor_command = build_qemu_command(self.cfg, self.media, firmware_present, **kwargs)
        if not self.cfg.remote_display:
            return LaunchPlan(media=self.media, hypervisor_command=hypervisor_command)
        return LaunchPlan(
            media=self.media,
            hypervisor_command=hypervisor_command,
            proxy_command=build_proxy_command(self.cfg.layout.novnc_dir),
            hypervisor_port=VNC_PORT,
            proxy_port=NOVNC_PORT,
            proxy_assets=self.cfg.layout.novnc_dir,
        )

    def describe_media(self) -> None:
        if self.media.disks:
            log("INFO", f"Attaching {len(self.media.disks)} disk(s):")
            for idx, disk in enumerate(self.media.disks):
                flag = " [PRIMARY BOOT]" if idx == 0 else ""
                log("INFO", f"  -> {disk.name}{flag}")
        if self.media.isos:
            log("INFO", f"Attaching {len(self.media.isos)} ISO(s):")
            for idx, iso in enumerate(self.media.isos):
                flag = " [CDROM - BOOT PRIORITY]" if idx == 0 else f" [CDROM {idx}]"
                log("INFO", f"  -> {iso.name}{flag}")

        if self.media.isos and self.media.disks:
            log("INFO", "Boot Mode: ISO Installation with persistent disk(s)")
        elif self.media.isos:
            log("INFO", "Boot Mode: Live ISO (no persistent storage)")
        elif self.media.disks:
            log("INFO", "Boot Mode: Disk boot")
