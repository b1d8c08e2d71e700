"""Configuration loading for Cold VM (YAML file, environment, CLI flags)."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from coldvm.constants import (
    CONFIG_ENV_VAR,
    DEFAULT_BRIDGE_INTERFACE,
    DEFAULT_CPU_CORES,
    DEFAULT_CPU_MODEL,
    DEFAULT_RAM_GB,
)
from coldvm.exceptions import LauncherError
from coldvm.models import DisplayMode, LayoutConfig, NetworkMode, VMConfig
from coldvm.utils import get_env, log, parse_positive_int

_TOP_LEVEL_KEYS = {
    "cpus",
    "ram_gb",
    "cpu_model",
    "bridge_interface",
    "display",
    "network",
    "camera",
    "audio",
    "microphone",
    "paths",
}
_PATH_KEYS = {"disk_dir", "rom_dir", "firmware_code", "firmware_vars", "novnc_dir"}


def load_config_file(path: Optional[Path]) -> Dict[str, Any]:
    """Read the optional YAML configuration file.

    An explicitly requested file that does not exist is an error; no file at
    all yields an empty mapping.
    """
    if path is None:
        return {}
    if not path.exists():
        raise LauncherError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise LauncherError(f"Config file {path} contains invalid YAML: {exc}")
    except OSError as exc:
        raise LauncherError(f"Cannot read config file {path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise LauncherError(f"Config file {path} must contain a YAML mapping, got {type(data).__name__}")

    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise LauncherError(f"Unknown key(s) in {path}: {', '.join(sorted(unknown))}")
    paths = data.get("paths") or {}
    if not isinstance(paths, dict):
        raise LauncherError(f"'paths' in {path} must be a mapping")
    unknown_paths = set(paths) - _PATH_KEYS
    if unknown_paths:
        raise LauncherError(f"Unknown path key(s) in {path}: {', '.join(sorted(unknown_paths))}")
    log("DEBUG", f"Loaded config file {path}")
    return data


def _layout_from(paths: Dict[str, Any]) -> LayoutConfig:
    defaults = LayoutConfig()
    resolved = {}
    for key in sorted(_PATH_KEYS):
        value = paths.get(key)
        resolved[key] = Path(str(value)) if value is not None else getattr(defaults, key)
    return LayoutConfig(**resolved)


def _pick(cli_value, env_name: str, file_data: Dict[str, Any], file_key: str, default):
    if cli_value is not None:
        return cli_value
    env_value = get_env(env_name)
    if env_value is not None and env_value.strip():
        return env_value.strip()
    if file_key in file_data and file_data[file_key] is not None:
        return file_data[file_key]
    return default


def _file_bool(file_data: Dict[str, Any], key: str, default: bool) -> bool:
    value = file_data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise LauncherError(f"Config key '{key}' must be true or false (got '{value}')")
    return value


def _file_enum(file_data: Dict[str, Any], key: str, enum_cls, default):
    raw = file_data.get(key)
    if raw is None:
        return default
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise LauncherError(f"Config key '{key}' must be one of {choices} (got '{raw}')")


def parse_config(args: argparse.Namespace) -> VMConfig:
    """Resolve the VM configuration: CLI flag > environment > config file > default."""
    config_path = getattr(args, "config", None) or get_env(CONFIG_ENV_VAR)
    file_data = load_config_file(Path(config_path) if config_path else None)

    cpu_cores = parse_positive_int(
        "CPUS", _pick(args.cpus, "CPUS", file_data, "cpus", DEFAULT_CPU_CORES)
    )
    ram_gb = parse_positive_int(
        "RAM_GB", _pick(args.ram, "RAM_GB", file_data, "ram_gb", DEFAULT_RAM_GB)
    )
    cpu_model = str(_pick(args.cpu_model, "CPU_MODEL", file_data, "cpu_model", DEFAULT_CPU_MODEL)).strip()
    if not cpu_model:
        raise LauncherError("CPU_MODEL must not be empty")
    bridge_interface = str(
        _pick(args.bridge, "BRIDGE_INTERFACE", file_data, "bridge_interface", DEFAULT_BRIDGE_INTERFACE)
    ).strip()
    if not bridge_interface:
        raise LauncherError("BRIDGE_INTERFACE must not be empty")

    display_mode = _file_enum(file_data, "display", DisplayMode, DisplayMode.REMOTE)
    if args.no_vnc:
        display_mode = DisplayMode.LOCAL
    network_mode = _file_enum(file_data, "network", NetworkMode, NetworkMode.BRIDGED)
    if args.no_bridge:
        network_mode = NetworkMode.NAT

    camera_enabled = _file_bool(file_data, "camera", True) and not args.no_camera
    audio_enabled = _file_bool(file_data, "audio", True) and not args.no_audio
    microphone_enabled = _file_bool(file_data, "microphone", True) and not args.no_mic

    return VMConfig(
        cpu_cores=cpu_cores,
        ram_gb=ram_gb,
        cpu_model=cpu_model,
        display_mode=display_mode,
        network_mode=network_mode,
        bridge_interface=bridge_interface,
        camera_enabled=camera_enabled,
        audio_enabled=audio_enabled,
        microphone_enabled=microphone_enabled,
        layout=_layout_from(file_data.get("paths") or {}),
    )
