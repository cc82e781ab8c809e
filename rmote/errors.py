"""
Error categories raised by the sync core
"""
from typing import Optional


class RmoteError(Exception):
    """Base class for every error rmote raises on purpose."""


class ConfigError(RmoteError):
    """Configuration could not be loaded or is invalid."""


class FilterConfigInvalid(ConfigError):
    """A blacklist rule is malformed."""

    def __init__(self, rule: str, reason: str):
        super().__init__(f"invalid blacklist rule {rule!r}: {reason}")
        self.rule = rule
        self.reason = reason


class ConnectionFailed(RmoteError):
    """The SSH/SFTP session could not be established."""


class SessionBroken(RmoteError):
    """The transport died in the middle of a remote operation."""

    def __init__(self, message: str, action: Optional[str] = None,
                 path: Optional[str] = None):
        super().__init__(message)
        self.action = action
        self.path = path


class RemoteOperationFailed(RmoteError):
    """A single remote command failed while the session stayed healthy."""

    def __init__(self, action: str, path: str, cause: Exception):
        super().__init__(f"{action} {path!r} failed: {cause}")
        self.action = action
        self.path = path
        self.cause = cause


class LocalReadFailed(RmoteError):
    """A local source vanished or became unreadable before it was applied."""

    def __init__(self, path: str, cause: Exception):
        super().__init__(f"cannot read local {path!r}: {cause}")
        self.path = path
        self.cause = cause
