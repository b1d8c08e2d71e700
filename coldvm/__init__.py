"""cold-vm package."""

__all__ = [
    "camera",
    "cli",
    "command",
    "config",
    "constants",
    "exceptions",
    "launcher",
    "models",
    "scanner",
    "signals",
    "supervisor",
    "utils",
]
