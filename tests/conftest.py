"""Shared test fixtures."""

from __future__ import annotations

import argparse
from pathlib import Path

import pytest

from coldvm.models import DisplayMode, LayoutConfig, MediaSet, NetworkMode, VMConfig


@pytest.fixture
def layout(tmp_path) -> LayoutConfig:
    """A filesystem layout rooted in a temporary directory."""
    return LayoutConfig(
        disk_dir=tmp_path / "devices" / "disk",
        rom_dir=tmp_path / "devices" / "rom",
        firmware_code=tmp_path / "boot" / "firmware" / "OVMF_CODE.fd",
        firmware_vars=tmp_path / "boot" / "firmware" / "OVMF_VARS.fd",
        novnc_dir=tmp_path / "libraries" / "noVNC",
    )


@pytest.fixture
def default_vm_config(layout) -> VMConfig:
    """Return a VMConfig with the launcher defaults."""
    return VMConfig(
        cpu_cores=4,
        ram_gb=4,
        cpu_model="host",
        display_mode=DisplayMode.REMOTE,
        network_mode=NetworkMode.BRIDGED,
        bridge_interface="virbr0",
        camera_enabled=True,
        audio_enabled=True,
        microphone_enabled=True,
        layout=layout,
    )


@pytest.fixture
def media() -> MediaSet:
    return MediaSet(
        disks=[Path("/vm/disk/a.qcow2"), Path("/vm/disk/b.img")],
        isos=[Path("/vm/rom/install.iso")],
    )


@pytest.fixture
def cli_args():
    """Build an argparse namespace shaped like the CLI parser's output."""

    def _make(**overrides) -> argparse.Namespace:
        values = dict(
            no_vnc=False,
            no_bridge=False,
            no_camera=False,
            no_mic=False,
            no_audio=False,
            cpus=None,
            ram=None,
            cpu_model=None,
            bridge=None,
            config=None,
            show_config=False,
            dry_run=False,
        )
        values.update(overrides)
        return argparse.Namespace(**values)

    return _make


# All environment variables that parse_config() reads.
_CONFIG_ENV_VARS = [
    "CPUS",
    "RAM_GB",
    "CPU_MODEL",
    "BRIDGE_INTERFACE",
    "COLD_CONFIG",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_config() reads."""
    for key in _CONFIG_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
