"""QEMU and websockify command construction for Cold VM."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional

from coldvm.camera import probe_camera
from coldvm.constants import (
    GUEST_MAC_ADDRESS,
    HYPERVISOR_BINARY,
    NOVNC_PORT,
    PROXY_BINARY,
    VNC_DISPLAY,
    VNC_PORT,
)
from coldvm.models import CameraDevice, MediaSet, NetworkMode, VMConfig

CameraProbe = Callable[[], Optional[CameraDevice]]

_DISK_FORMATS = {
    ".img": "raw",
    ".raw": "raw",
    ".vdi": "vdi",
    ".vmdk": "vmdk",
}

# -cdrom occupies IDE index 2 on q35
_CDROM_IDE_INDEX = 2


def disk_format(path) -> str:
    """Infer the QEMU block format from the file extension (qcow2 by default)."""
    return _DISK_FORMATS.get(Path(path).suffix.lower(), "qcow2")


def secondary_cdrom_indexes(count: int) -> List[int]:
    indexes: List[int] = []
    index = 1
    while len(indexes) < count:
        if index != _CDROM_IDE_INDEX:
            indexes.append(index)
        index += 1
    return indexes


def _display_args(cfg: VMConfig) -> List[str]:
    if cfg.remote_display:
        return ["-display", "none", "-vnc", f":{VNC_DISPLAY}"]
    return ["-display", "gtk,gl=on"]


def _firmware_args(cfg: VMConfig) -> List[str]:
    layout = cfg.layout
    return [
        "-drive",
        f"if=pflash,format=raw,readonly=on,file={layout.firmware_code}",
        "-drive",
        f"if=pflash,format=raw,file={layout.firmware_vars}",
    ]


def _disk_args(media: MediaSet) -> List[str]:
    args: List[str] = []
    for disk in media.disks:
        args.extend(["-drive", f"file={disk},format={disk_format(disk)},if=virtio,cache=writeback"])
    return args


def _iso_args(media: MediaSet) -> List[str]:
    if not media.isos:
        return []
    args = ["-cdrom", str(media.isos[0])]
    extra = media.isos[1:]
    for iso, index in zip(extra, secondary_cdrom_indexes(len(extra))):
        args.extend(["-drive", f"file={iso},media=cdrom,readonly=on,if=ide,index={index}"])
    return args


def _audio_args(cfg: VMConfig) -> List[str]:
    if not cfg.audio_enabled:
        return []
    codec = "hda-duplex" if cfg.microphone_enabled else "hda-output"
    return [
        "-audiodev",
        "alsa,id=audio0",
        "-device",
        "intel-hda",
        "-device",
        f"{codec},audiodev=audio0",
    ]


def _network_args(cfg: VMConfig) -> List[str]:
    if cfg.network_mode is NetworkMode.BRIDGED:
        netdev = f"bridge,id=net0,br={cfg.bridge_interface}"
    else:
        netdev = "user,id=net0"
    return [
        "-netdev",
        netdev,
        "-device",
        f"virtio-net-pci,netdev=net0,mac={GUEST_MAC_ADDRESS}",
    ]


def _camera_args(camera: Optional[CameraDevice]) -> List[str]:
    if camera is None:
        return []
    return ["-device", f"usb-host,vendorid=0x{camera.vendor_id},productid=0x{camera.product_id}"]


def build_qemu_command(
    cfg: VMConfig,
    media: MediaSet,
    firmware_present: bool,
    camera_probe: CameraProbe = probe_camera,
) -> List[str]:
    """Return the full QEMU argv for ``cfg`` and ``media``.

    The output depends only on the arguments, except for the camera probe
    which inspects the host's USB devices when the camera is enabled.
    """
    cmd = [HYPERVISOR_BINARY, "-enable-kvm"]
    cmd += ["-cpu", cfg.cpu_model, "-smp", str(cfg.cpu_cores)]
    cmd += ["-m", f"{cfg.ram_gb}G"]
    cmd += ["-vga", "virtio"]
    cmd += _display_args(cfg)
    if firmware_present:
        cmd += _firmware_args(cfg)
    cmd += _disk_args(media)
    cmd += _iso_args(media)
    cmd += _audio_args(cfg)
    cmd += _network_args(cfg)
    cmd += ["-device", "qemu-xhci,id=xhci", "-device", "usb-tablet"]
    if cfg.camera_enabled:
        cmd += _camera_args(camera_probe())
    cmd += ["-rtc", "base=localtime,clock=host,driftfix=slew"]
    boot_order = "dc" if media.isos else "c"
    cmd += ["-boot", f"order={boot_order},menu=on"]
    cmd += ["-machine", "type=q35,accel=kvm"]
    return cmd


def build_proxy_command(
    novnc_dir: Path,
    listen_port: int = NOVNC_PORT,
    target: str = f"localhost:{VNC_PORT}",
) -> List[str]:
    return [PROXY_BINARY, f"--web={novnc_dir}", str(listen_port), target]
