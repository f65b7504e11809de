"""
multissh - run one command or one file transfer on many hosts over SSH.

Key Components:
- MultiSSH: Runs a job on many targets with bounded parallelism
- RunHandle: Live view of a run, yields outcomes as hosts finish
- RunReport: One outcome per target once the run is over
- RunConfig: Concurrency and timeout settings
- StructuredLogger: Logging with text or JSON output

Features:
- Password, private key and SSH agent authentication, tried in order
- Per-host connect, auth and job timeouts plus a global run deadline
- Cancellation that closes live sessions
- SCP upload and per-host download with byte count verification
- Host inventory in YAML or JSON

Example usage:
    from multissh import MultiSSH, CommandJob, load_inventory

    inventory = load_inventory('hosts.yaml')
    with MultiSSH(inventory.config).stream(inventory.targets, CommandJob('hostname')) as run:
        for target, outcome in run:
            print(f"{target}: {outcome.kind.value}")
"""

# Author: Vamsi

__version__ = "1.0.0"

from .config import RunConfig, Inventory, load_inventory, parse_inventory
from .logger import StructuredLogger, HostLogger
from .errors import (
    MultiSSHError, ConfigurationError, HostError, ConnectError, AuthError,
    CommandError, TransferError, HostTimeoutError, RunCancelledError
)
from .models import (
    PasswordAuth, KeyAuth, AgentAuth, Target, CommandJob, TransferJob, Direction,
    HostState, OutcomeKind, Outcome, Success, ConnectFailed, AuthFailed,
    CommandFailed, TransferFailed, TimedOut, Cancelled
)
from .collector import RunReport
from .scheduler import MultiSSH, RunHandle, run, stream

# Export main classes
__all__ = [
    'MultiSSH', 'RunHandle', 'RunReport', 'run', 'stream',
    'RunConfig', 'Inventory', 'load_inventory', 'parse_inventory',
    'StructuredLogger', 'HostLogger',
    'MultiSSHError', 'ConfigurationError', 'HostError', 'ConnectError', 'AuthError',
    'CommandError', 'TransferError', 'HostTimeoutError', 'RunCancelledError',
    'PasswordAuth', 'KeyAuth', 'AgentAuth', 'Target', 'CommandJob', 'TransferJob',
    'Direction', 'HostState', 'OutcomeKind', 'Outcome', 'Success', 'ConnectFailed',
    'AuthFailed', 'CommandFailed', 'TransferFailed', 'TimedOut', 'Cancelled'
]
