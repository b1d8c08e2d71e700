"""Utility functions for Cold VM."""

from __future__ import annotations

import os
import shlex
import shutil
import socket
import subprocess
from typing import List, Optional

from coldvm.constants import _LOG_VERBOSE
from coldvm.exceptions import LauncherError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with a coloured severity marker."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_positive_int(name: str, raw, min_val: int = 1) -> int:
    if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
        raise LauncherError(f"{name} must be an integer (got '{raw}')")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise LauncherError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise LauncherError(f"{name} must be >= {min_val} (got {value})")
    return value


def command_available(name: str) -> bool:
    return shutil.which(name) is not None


def port_open(host: str, port: int, timeout: float = 0.2) -> bool:
    """Return True if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def format_command(cmd: List[str]) -> str:
    return shlex.join(cmd)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {format_command(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
