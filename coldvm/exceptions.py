"""Custom exceptions for Cold VM."""


class LauncherError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class MissingToolError(LauncherError):
    """A required external executable is not installed."""


class SpawnError(LauncherError):
    """A child process could not be started or died while starting."""
