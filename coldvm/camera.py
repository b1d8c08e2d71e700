"""Best-effort USB camera discovery for passthrough."""

from __future__ import annotations

import re
import subprocess
from typing import Optional

from coldvm.constants import CAMERA_KEYWORDS, USB_LIST_BINARY
from coldvm.models import CameraDevice
from coldvm.utils import log, run

# lsusb: "Bus 001 Device 003: ID 04f2:b604 Chicony Electronics Co., Ltd Integrated Camera"
_LSUSB_ID_RE = re.compile(r"\bID ([0-9a-fA-F]{4}):([0-9a-fA-F]{4})\s*(.*)$")


def parse_lsusb(output: str) -> Optional[CameraDevice]:
    """Return the first device whose description mentions a camera."""
    for line in output.splitlines():
        lowered = line.lower()
        if not any(keyword in lowered for keyword in CAMERA_KEYWORDS):
            continue
        match = _LSUSB_ID_RE.search(line.strip())
        if match is None:
            continue
        vendor, product, name = match.groups()
        return CameraDevice(vendor_id=vendor.lower(), product_id=product.lower(), name=name.strip())
    return None


def probe_camera() -> Optional[CameraDevice]:
    """List USB devices and pick a camera. Never raises.

    Matching vendor strings is locale and format dependent, so a miss only
    means no passthrough device is attached.
    """
    log("DEBUG", "Detecting USB camera devices...")
    try:
        result = run([USB_LIST_BINARY], check=False, capture_output=True)
    except (OSError, subprocess.SubprocessError) as exc:
        log("WARN", f"Could not execute {USB_LIST_BINARY} to detect camera: {exc}")
        return None
    if result.returncode != 0:
        log("WARN", f"{USB_LIST_BINARY} exited with status {result.returncode}; camera disabled")
        return None

    camera = parse_lsusb(result.stdout or "")
    if camera is None:
        log("WARN", "No camera device found! Camera disabled.")
        log("WARN", "Make sure your camera is connected and working")
        return None
    log("SUCCESS", f"Camera enabled: {camera.name or 'unknown device'}")
    log("DEBUG", f"Camera IDs: {camera.vendor_id}:{camera.product_id}")
    return camera
