from typing import Optional


class LauncherError(Exception):
    """Base exception for launcher errors."""
    pass


class FatalConfigurationError(LauncherError):
    """
    Raised when the configuration makes it impossible to continue.
    The entry point terminates the process with a non-zero exit code.
    """
    pass


class JenkinsError(LauncherError):
    """Raised when a call to the Jenkins HTTP API fails."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class ModeStateError(RuntimeError):
    """Raised on an invalid run mode transition (programming error, never caught)."""
    pass
