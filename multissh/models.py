"""
Data model for multissh: targets, jobs, outcomes and host states.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union

# Author: Vamsi


@dataclass(frozen=True)
class PasswordAuth:
    """Basic password authentication."""
    password: str = field(repr=False)


@dataclass(frozen=True)
class KeyAuth:
    """Public key authentication with a private key file on disk."""
    path: str
    passphrase: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class AgentAuth:
    """Authentication with the keys held by the local SSH agent."""


AuthMethod = Union[PasswordAuth, KeyAuth, AgentAuth]


@dataclass(frozen=True)
class Target:
    """One remote host plus the credentials needed to reach it."""
    address: str
    username: str
    port: int = 22
    auth: Tuple[AuthMethod, ...] = (AgentAuth(),)
    timeout: Optional[float] = None

    def __post_init__(self):
        # Accept lists for convenience, store an immutable tuple
        if not isinstance(self.auth, tuple):
            object.__setattr__(self, 'auth', tuple(self.auth))

    @property
    def key(self) -> Tuple[str, int, str]:
        """Identity of the target within a run."""
        return (self.address, self.port, self.username)

    @property
    def label(self) -> str:
        if ':' in self.address:
            return f"{self.username}@[{self.address}]:{self.port}"
        return f"{self.username}@{self.address}:{self.port}"

    @property
    def slug(self) -> str:
        """Filesystem friendly form of the label."""
        address = self.address.replace(':', '_')
        return f"{self.username}@{address}-{self.port}"

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class CommandJob:
    """Run a shell command on every target."""
    text: str


class Direction(Enum):
    """Direction of a file transfer."""
    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass(frozen=True)
class TransferJob:
    """Copy one file to or from every target."""
    direction: Direction
    local_path: str
    remote_path: str

    def local_destination(self, target: Target) -> str:
        """
        Local file a download from ``target`` is written to.

        Every host gets its own file inside ``local_path`` so concurrent
        downloads never overwrite each other.
        """
        name = os.path.basename(self.remote_path.rstrip('/')) or "download"
        return os.path.join(self.local_path, f"{target.slug}_{name}")


Job = Union[CommandJob, TransferJob]


class HostState(Enum):
    """Lifecycle of a single host within a run."""
    PENDING = "pending"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (HostState.SUCCEEDED, HostState.FAILED,
                        HostState.TIMED_OUT, HostState.CANCELLED)


class OutcomeKind(Enum):
    """Discriminator of the Outcome variants."""
    SUCCESS = "success"
    CONNECT_FAILED = "connect_failed"
    AUTH_FAILED = "auth_failed"
    COMMAND_FAILED = "command_failed"
    TRANSFER_FAILED = "transfer_failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Outcome:
    """Terminal result recorded for one target."""
    kind = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def state(self) -> HostState:
        if self.kind is OutcomeKind.SUCCESS:
            return HostState.SUCCEEDED
        if self.kind is OutcomeKind.TIMED_OUT:
            return HostState.TIMED_OUT
        if self.kind is OutcomeKind.CANCELLED:
            return HostState.CANCELLED
        return HostState.FAILED

    def to_dict(self) -> dict:
        data = {'kind': self.kind.value}
        data.update({k: v for k, v in self.__dict__.items()})
        return data


@dataclass(frozen=True)
class Success(Outcome):
    """
    Job completed.

    Commands fill ``exit_code``, ``stdout`` and ``stderr``; transfers fill
    ``bytes_transferred``.
    """
    kind = OutcomeKind.SUCCESS
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    bytes_transferred: Optional[int] = None
    truncated: bool = False


@dataclass(frozen=True)
class ConnectFailed(Outcome):
    kind = OutcomeKind.CONNECT_FAILED
    reason: str = ""


@dataclass(frozen=True)
class AuthFailed(Outcome):
    kind = OutcomeKind.AUTH_FAILED
    reason: str = ""


@dataclass(frozen=True)
class CommandFailed(Outcome):
    """Remote command exited with a non-zero status."""
    kind = OutcomeKind.COMMAND_FAILED
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    reason: str = ""


@dataclass(frozen=True)
class TransferFailed(Outcome):
    kind = OutcomeKind.TRANSFER_FAILED
    reason: str = ""


@dataclass(frozen=True)
class TimedOut(Outcome):
    kind = OutcomeKind.TIMED_OUT
    reason: str = ""


@dataclass(frozen=True)
class Cancelled(Outcome):
    kind = OutcomeKind.CANCELLED
    reason: str = ""
