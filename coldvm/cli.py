"""CLI entry points for Cold VM."""

from __future__ import annotations

import argparse
import dataclasses
from typing import List, Optional

from coldvm.config import parse_config
from coldvm.constants import (
    CONFIG_ENV_VAR,
    DEFAULT_BRIDGE_INTERFACE,
    DEFAULT_CPU_CORES,
    DEFAULT_CPU_MODEL,
    DEFAULT_RAM_GB,
    NOVNC_URL,
)
from coldvm.exceptions import LauncherError
from coldvm.launcher import Launcher
from coldvm.models import NetworkMode, VMConfig
from coldvm.signals import SignalRouter
from coldvm.supervisor import ProcessSupervisor
from coldvm.utils import format_command, log

_BANNER_COLOUR = "\033[0;36m"
_RESET = "\033[0m"


def _print_block(lines: List[str]) -> None:
    width = max(len(line) for line in lines) + 2
    print(f"{_BANNER_COLOUR}{'=' * width}{_RESET}", flush=True)
    for line in lines:
        print(f"{_BANNER_COLOUR}{line}{_RESET}", flush=True)
    print(f"{_BANNER_COLOUR}{'=' * width}{_RESET}", flush=True)


def print_header() -> None:
    _print_block(["  COLD VM MANAGER", "  Virtual machine launcher for QEMU"])


def print_configuration(cfg: VMConfig, firmware_present: bool) -> None:
    log("INFO", "System Configuration:")
    print(f"  -> CPU: {cfg.cpu_model} ({cfg.cpu_cores} cores)")
    print(f"  -> RAM: {cfg.ram_gb} GB")
    print("  -> VirtIO: Enabled")
    print(f"  -> OVMF/UEFI: {'Enabled' if firmware_present else 'Disabled'}")
    print(f"  -> Display: {'VNC (Remote)' if cfg.remote_display else 'GTK (Local)'}")
    if cfg.network_mode is NetworkMode.BRIDGED:
        print(f"  -> Network: Bridge ({cfg.bridge_interface})", flush=True)
    else:
        print("  -> Network: NAT", flush=True)


def print_access_banner(cfg: VMConfig) -> None:
    if cfg.remote_display:
        _print_block(["  VM is ready! Access via web browser:", f"  {NOVNC_URL}"])
    else:
        log("SUCCESS", "VM started in local display mode!")


def show_config(cfg: VMConfig) -> None:
    """Print the resolved VM configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if dataclasses.is_dataclass(value):
            print(f"  {field.name}:")
            for sub_field in dataclasses.fields(value):
                print(f"    {sub_field.name}: {getattr(value, sub_field.name)}")
        elif hasattr(value, "value"):
            print(f"  {field.name}: {value.value}")
        else:
            print(f"  {field.name}: {value}")


def build_parser() -> argparse.ArgumentParser:
    epilog = (
        "Defaults (override with flags, environment variables or the config file):\n"
        f"  - {DEFAULT_RAM_GB} GB RAM (--ram, RAM_GB)\n"
        f"  - {DEFAULT_CPU_CORES} CPU cores, '{DEFAULT_CPU_MODEL}' model (--cpus/CPUS, --cpu-model/CPU_MODEL)\n"
        "  - VirtIO devices\n"
        "  - VNC with remote scaling through noVNC\n"
        f"  - Bridge networking ({DEFAULT_BRIDGE_INTERFACE}; --bridge, BRIDGE_INTERFACE)\n"
        "  - Camera, audio & microphone enabled\n"
        f"\nConfig file: --config PATH or {CONFIG_ENV_VAR}=PATH (YAML)."
    )
    parser = argparse.ArgumentParser(
        prog="cold-vm",
        description="Cold VM Manager - launch a QEMU virtual machine with an optional browser display",
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--no-vnc", action="store_true", help="Use local GTK display instead of VNC")
    parser.add_argument("--no-bridge", action="store_true", help="Use NAT networking instead of bridge")
    parser.add_argument("--no-camera", action="store_true", help="Disable camera passthrough")
    parser.add_argument("--no-mic", action="store_true", help="Disable microphone")
    parser.add_argument("--no-audio", action="store_true", help="Disable audio entirely")
    parser.add_argument("--cpus", type=int, default=None, metavar="N", help="Number of CPU cores")
    parser.add_argument("--ram", type=int, default=None, metavar="GB", help="RAM in gigabytes")
    parser.add_argument("--cpu-model", default=None, metavar="MODEL", help="QEMU CPU model")
    parser.add_argument("--bridge", default=None, metavar="IFACE", help="Host bridge interface")
    parser.add_argument("--config", default=None, metavar="PATH", help="YAML configuration file")
    parser.add_argument("--show-config", action="store_true", help="Show resolved VM configuration and exit")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Check the environment and print the QEMU command without starting anything",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = parse_config(args)
    except LauncherError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    print_header()
    log("INFO", "Initializing Cold VM...")
    launcher = Launcher(cfg)
    try:
        plan = launcher.prepare()
    except LauncherError as exc:
        log("ERROR", str(exc))
        log("ERROR", "Failed to start Cold VM!")
        return 1

    print_configuration(launcher.cfg, launcher.firmware_present)
    launcher.describe_media()

    if args.dry_run:
        log("INFO", f"QEMU command: {format_command(plan.hypervisor_command)}")
        if plan.proxy_command is not None:
            log("INFO", f"Proxy command: {format_command(plan.proxy_command)}")
        if plan.media.is_empty:
            log("WARN", "No bootable media available; a real launch would fail")
        log("INFO", "=== Dry-run complete (no VM started) ===")
        return 0

    supervisor = ProcessSupervisor()
    router = SignalRouter(supervisor)
    router.install()
    try:
        log("INFO", "Starting virtual machine...")
        if not supervisor.boot(plan):
            if plan.media.is_empty:
                layout = cfg.layout
                log("ERROR", f"Please add disk images to {layout.disk_dir} or ISOs to {layout.rom_dir}")
            log("ERROR", "Failed to start Cold VM!")
            return supervisor.exit_code
        print_access_banner(launcher.cfg)
        supervisor.wait_forever()
    except LauncherError as exc:
        log("ERROR", str(exc))
        supervisor.shutdown(reason="error")
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        supervisor.shutdown(reason="unexpected error")
        return 1
    finally:
        router.restore()
    return supervisor.exit_code
