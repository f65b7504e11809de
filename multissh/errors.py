"""
Error taxonomy for multissh.

Configuration errors are fatal and raised before any host is contacted.
Every other error is host-local: the scheduler turns it into that host's
Outcome and the rest of the run carries on.
"""

from typing import Optional

# Author: Vamsi


class MultiSSHError(Exception):
    """Base class for all multissh errors."""


class ConfigurationError(MultiSSHError, ValueError):
    """Invalid targets, job or run configuration."""


class HostError(MultiSSHError):
    """Failure confined to a single host."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConnectError(HostError):
    """Address unreachable, connection refused, DNS failure or handshake error."""


class AuthError(HostError):
    """Every configured authentication method was rejected."""


class CommandError(HostError):
    """Remote process exited with a non-zero status."""

    def __init__(self, exit_code: int, stdout: str = "", stderr: str = "",
                 truncated: bool = False):
        super().__init__(f"command exited with status {exit_code}")
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.truncated = truncated


class TransferError(HostError):
    """Size mismatch, permission denied or local/remote I/O fault."""


class HostTimeoutError(HostError):
    """A per-host deadline elapsed."""

    def __init__(self, reason: str, phase: Optional[str] = None):
        super().__init__(reason)
        self.phase = phase


class RunCancelledError(HostError):
    """The run was stopped before or while this host was being processed."""
