"""
Configuration management for multissh.
Provides the run configuration dataclass and the loader for host inventory
files (YAML or JSON).
"""

import os
import json
import yaml
from dataclasses import dataclass, field
from typing import List, Optional, Any, Tuple
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception

from .errors import ConfigurationError
from .models import Target, AuthMethod, PasswordAuth, KeyAuth, AgentAuth

# Author: Vamsi

DEFAULT_PORT = 22


@dataclass
class RunConfig:
    """Concurrency and timeout settings for one run."""

    # Concurrency
    concurrency: int = 10
    continue_on_error: bool = True

    # Timeouts in seconds, None disables the bound
    connect_timeout: float = 30.0
    auth_timeout: float = 30.0
    job_timeout: Optional[float] = None
    run_timeout: Optional[float] = None

    # Buffering and transfer settings
    max_output_bytes: int = 1024 * 1024
    chunk_size: int = 32768
    poll_interval: float = 0.05

    def __post_init__(self):
        """Post-initialization processing."""
        self._validate()

    def _validate(self):
        """Validate configuration settings."""
        if isinstance(self.concurrency, bool) or not isinstance(self.concurrency, int):
            raise ConfigurationError(f"Concurrency must be an integer, got {self.concurrency!r}")

        if self.concurrency < 1:
            raise ConfigurationError(f"Concurrency must be at least 1, got {self.concurrency}")

        for name in ('connect_timeout', 'auth_timeout', 'job_timeout', 'run_timeout'):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

        if self.max_output_bytes < 0:
            raise ConfigurationError("max_output_bytes cannot be negative")

        if self.chunk_size < 1:
            raise ConfigurationError("chunk_size must be at least 1")

        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive")

    def job_timeout_for(self, target: Target) -> Optional[float]:
        """
        Timeout applied to the job on a given target.

        :param target: Target the job runs on
        :return: Timeout in seconds or None
        """
        if target.timeout is not None:
            return target.timeout
        return self.job_timeout

    def merge_cli_args(self, **kwargs) -> None:
        """
        Merge command-line arguments into configuration.

        :param **kwargs: Command-line arguments to merge, None values are ignored
        """
        for key, value in kwargs.items():
            if value is None:
                continue
            if not hasattr(self, key):
                raise ConfigurationError(f"Unknown configuration option: {key}")
            setattr(self, key, value)

        # Re-validate after merging
        self._validate()


@dataclass
class Inventory:
    """Targets and run settings read from an inventory file."""
    targets: List[Target] = field(default_factory=list)
    config: RunConfig = field(default_factory=RunConfig)


def _is_transient_read_error(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and not isinstance(
        exc, (FileNotFoundError, IsADirectoryError, PermissionError))


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    retry=retry_if_exception(_is_transient_read_error),
    reraise=True
)
def _read_file(filename: str) -> str:
    with open(filename, 'r', encoding='utf-8') as f:
        return f.read()


def load_inventory(filename: str) -> Inventory:
    """
    Load targets and run settings from a YAML (.yaml/.yml) or JSON file.

    The file format::

        default_auth: agent            # or {password: ...}, {pubkey: path}, or a list
        default_port: 22
        default_user: username
        threads: 0                     # 0 means one slot per host
        timeout: 5000                  # milliseconds, 0 means no timeout
        hosts:
          - 1.1.1.1
          - other-user@2.2.2.2:20022
          - addr: 3.3.3.3
            auth: {password: special-password}
            user: other-user
            timeout: 10000

    :param filename: Path to inventory file
    :return: Inventory instance
    :raises FileNotFoundError: If the file doesn't exist
    :raises ConfigurationError: If the file content is invalid
    """
    if not os.path.exists(filename):
        raise FileNotFoundError(f"Inventory file not found: {filename}")

    text = _read_file(filename)
    ext = os.path.splitext(filename)[1].lower()
    if ext in ['.yaml', '.yml']:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in inventory file: {e}") from e
    elif ext == '.json':
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ConfigurationError(f"Invalid JSON in inventory file: {e}") from e
    else:
        raise ConfigurationError(f"Unsupported inventory file extension: {ext}")

    return parse_inventory(data)


def parse_inventory(data: Any) -> Inventory:
    """
    Build an Inventory from already decoded file content.

    :param data: Mapping as produced by yaml.safe_load or json.loads
    :return: Inventory instance
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Inventory must be a mapping")

    default_auth = parse_auth(data.get('default_auth', 'agent'))
    default_port = data.get('default_port') or DEFAULT_PORT
    default_user = data.get('default_user')

    hosts = data.get('hosts') or []
    if not isinstance(hosts, list):
        raise ConfigurationError("'hosts' must be a list")

    targets = []
    for entry in hosts:
        targets.append(_parse_host(entry, default_auth, default_port, default_user))

    threads = _parse_count(data.get('threads'), 'threads')
    timeout_ms = _parse_count(data.get('timeout'), 'timeout')

    config = RunConfig(concurrency=threads or max(len(targets), 1))
    if timeout_ms:
        seconds = timeout_ms / 1000.0
        config.connect_timeout = seconds
        config.auth_timeout = seconds
        config.job_timeout = seconds

    return Inventory(targets=targets, config=config)


def parse_auth(value: Any) -> Tuple[AuthMethod, ...]:
    """
    Parse an authentication entry into an ordered tuple of methods.

    :param value: 'agent', {'password': ...}, {'pubkey': path or {path, passphrase}} or a list
    :return: Tuple of authentication methods
    """
    if isinstance(value, list):
        methods = []
        for item in value:
            methods.extend(parse_auth(item))
        if not methods:
            raise ConfigurationError("Authentication method list is empty")
        return tuple(methods)

    if value == 'agent':
        return (AgentAuth(),)

    if isinstance(value, dict) and len(value) == 1:
        (kind, arg), = value.items()
        if kind == 'agent':
            return (AgentAuth(),)
        if kind == 'password':
            return (PasswordAuth(str(arg)),)
        if kind == 'pubkey':
            if isinstance(arg, dict):
                if 'path' not in arg:
                    raise ConfigurationError("pubkey authentication requires 'path'")
                return (KeyAuth(os.path.expanduser(arg['path']), arg.get('passphrase')),)
            return (KeyAuth(os.path.expanduser(str(arg))),)

    raise ConfigurationError(f"Invalid authentication method: {value!r}")


def parse_host_string(value: str) -> Tuple[Optional[str], str, Optional[int]]:
    """
    Split ``[user@]address[:port]`` into its parts.

    IPv6 addresses with a port are written ``[::1]:22``.

    :param value: Host string
    :return: Tuple of (user, address, port), missing parts are None
    """
    user = None
    if '@' in value:
        user, value = value.rsplit('@', 1)
        if not user:
            raise ConfigurationError(f"Empty username in host: {value!r}")

    port = None
    if value.startswith('['):
        address, sep, rest = value[1:].partition(']')
        if not sep:
            raise ConfigurationError(f"Unterminated IPv6 address: {value!r}")
        if rest:
            if not rest.startswith(':'):
                raise ConfigurationError(f"Invalid host: {value!r}")
            port = _parse_port(rest[1:])
    elif value.count(':') == 1:
        address, port_text = value.split(':')
        port = _parse_port(port_text)
    else:
        # bare hostname, IPv4 or IPv6 without port
        address = value

    if not address:
        raise ConfigurationError(f"Empty address in host: {value!r}")
    return user, address, port


def _parse_port(text: Any) -> int:
    try:
        port = int(text)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid port: {text!r}")
    if not 0 < port < 65536:
        raise ConfigurationError(f"Port out of range: {port}")
    return port


def _parse_count(value: Any, name: str) -> int:
    if not value:
        return 0
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid '{name}': {value!r}")
    if count < 0:
        raise ConfigurationError(f"'{name}' cannot be negative")
    return count


def _parse_host(entry: Any, default_auth: Tuple[AuthMethod, ...],
                default_port: int, default_user: Optional[str]) -> Target:
    auth = default_auth
    timeout = None

    if isinstance(entry, str):
        user, address, port = parse_host_string(entry.strip())
    elif isinstance(entry, dict):
        if not entry.get('addr'):
            raise ConfigurationError(f"Host entry without 'addr': {entry!r}")
        address = str(entry['addr'])
        user = entry.get('user')
        port = _parse_port(entry['port']) if entry.get('port') is not None else None
        if entry.get('auth') is not None:
            auth = parse_auth(entry['auth'])
        timeout_ms = _parse_count(entry.get('timeout'), 'timeout')
        if timeout_ms:
            timeout = timeout_ms / 1000.0
    else:
        raise ConfigurationError(f"Invalid host entry: {entry!r}")

    user = user or default_user
    if not user:
        raise ConfigurationError(f"No username for host {address} and no default_user")

    return Target(
        address=address,
        username=user,
        port=port or _parse_port(default_port),
        auth=auth,
        timeout=timeout
    )

