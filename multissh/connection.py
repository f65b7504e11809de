"""
Connection management for multissh.
Opens the transport to one target, authenticates it and hands out a
single-use Session that is always closed when its scope ends.
"""

import errno
import os
import socket
import selectors
import threading
from contextlib import contextmanager
from typing import Any, Callable, Optional

import paramiko
from paramiko.ssh_exception import (
    SSHException, AuthenticationException, BadAuthenticationType,
    PasswordRequiredException
)

from .config import RunConfig
from .context import CancelToken, Deadline
from .errors import AuthError, ConnectError, RunCancelledError
from .logger import HostLogger, StructuredLogger
from .models import AgentAuth, AuthMethod, HostState, KeyAuth, PasswordAuth, Target

# Author: Vamsi

KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)

# (target, connect timeout, cancel token, poll interval) -> handshaken transport
Connector = Callable[[Target, Optional[float], CancelToken, float], Any]


def resolve(address: str, port: int, deadline: Deadline, token: CancelToken,
            poll_interval: float = 0.05) -> list:
    """
    Resolve an address on a helper thread, bounded by the deadline and the token.

    A lookup still pending when the call returns is left to its daemon thread.

    :raises ConnectError: DNS failure or timeout
    :raises RunCancelledError: The run was cancelled while resolving
    """
    result = {}
    done = threading.Event()

    def lookup():
        try:
            result['infos'] = socket.getaddrinfo(address, port, 0, socket.SOCK_STREAM)
        except OSError as e:
            result['error'] = e
        finally:
            done.set()

    threading.Thread(target=lookup, name=f"multissh-resolve-{address}", daemon=True).start()
    while not done.wait(deadline.bound(poll_interval)):
        if token.cancelled:
            raise RunCancelledError("cancelled while resolving")
        if deadline.expired:
            raise ConnectError(f"resolving {address} timed out after {deadline.seconds}s")

    if 'error' in result:
        error = result['error']
        raise ConnectError(f"cannot resolve {address}: {error.strerror or error}") from error
    return result['infos']


def open_socket(address: str, port: int, timeout: Optional[float],
                token: CancelToken, poll_interval: float = 0.05) -> socket.socket:
    """
    Open a TCP connection, checking for cancellation while it is pending.

    :param address: Host name or IP address
    :param port: Port number
    :param timeout: Connect timeout in seconds, None for no bound
    :param token: Run cancellation signal
    :param poll_interval: How often to re-check cancellation
    :return: Connected blocking socket
    :raises ConnectError: DNS failure, refused, unreachable or timeout
    :raises RunCancelledError: The run was cancelled while connecting
    """
    deadline = Deadline(timeout)
    infos = resolve(address, port, deadline, token, poll_interval)

    last_error = None
    for family, socktype, proto, _, sockaddr in infos:
        sock = socket.socket(family, socktype, proto)
        try:
            sock.setblocking(False)
            err = sock.connect_ex(sockaddr)
            if err not in (0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EALREADY):
                raise OSError(err, os.strerror(err))

            with selectors.DefaultSelector() as selector:
                selector.register(sock, selectors.EVENT_WRITE)
                while err != 0:
                    if token.cancelled:
                        raise RunCancelledError("cancelled while connecting")
                    if deadline.expired:
                        raise ConnectError(
                            f"connection to {address}:{port} timed out after {timeout}s")
                    if selector.select(deadline.bound(poll_interval)):
                        err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
                        if err:
                            raise OSError(err, os.strerror(err))
                        break

            sock.setblocking(True)
            return sock
        except OSError as e:
            sock.close()
            last_error = e
        except BaseException:
            sock.close()
            raise

    reason = last_error.strerror if last_error and last_error.strerror else str(last_error)
    raise ConnectError(f"cannot connect to {address}:{port}: {reason}")


def paramiko_connector(target: Target, timeout: Optional[float],
                       token: CancelToken, poll_interval: float = 0.05) -> paramiko.Transport:
    """
    Open a socket and run the SSH handshake for one target.

    :param target: Target to connect to
    :param timeout: Connect and handshake timeout in seconds
    :param token: Run cancellation signal
    :param poll_interval: How often to re-check cancellation
    :return: Started paramiko transport, not yet authenticated
    """
    deadline = Deadline(timeout)
    sock = open_socket(target.address, target.port, timeout, token, poll_interval)

    try:
        transport = paramiko.Transport(sock)
    except BaseException:
        sock.close()
        raise

    remaining = deadline.remaining()
    if remaining is not None:
        transport.banner_timeout = remaining
        transport.handshake_timeout = remaining
    handle = token.register(transport.close)
    try:
        transport.start_client(timeout=remaining)
    except (SSHException, EOFError, OSError) as e:
        transport.close()
        if token.cancelled:
            raise RunCancelledError("cancelled during SSH handshake") from e
        raise ConnectError(f"SSH handshake with {target.label} failed: {e}") from e
    except BaseException:
        transport.close()
        raise
    finally:
        token.unregister(handle)

    return transport


def load_private_key(method: KeyAuth) -> paramiko.PKey:
    """
    Load a private key file, trying each supported key type.

    :param method: Key authentication method
    :return: Decrypted private key
    :raises AuthError: If the file is unreadable, encrypted without passphrase or invalid
    """
    last_error = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key_file(method.path, password=method.passphrase)
        except PasswordRequiredException as e:
            raise AuthError(f"key {method.path} is encrypted and no passphrase was given") from e
        except SSHException as e:
            last_error = e
        except OSError as e:
            raise AuthError(f"cannot read key {method.path}: {e.strerror or e}") from e
    raise AuthError(f"unsupported or invalid key {method.path}: {last_error}")


def _method_name(method: AuthMethod) -> str:
    if isinstance(method, PasswordAuth):
        return "password"
    if isinstance(method, KeyAuth):
        return "publickey"
    return "agent"


class Session:
    """Authenticated transport for exactly one target and one job."""

    def __init__(self, target: Target, transport: Any, host_logger: HostLogger):
        """
        Initialize session.

        :param target: Target the transport is connected to
        :param transport: Authenticated transport
        :param host_logger: Logger of the target
        """
        self.target = target
        self.transport = transport
        self.host_logger = host_logger
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open_channel(self, timeout: Optional[float] = None):
        """
        Open a session channel on the transport.

        :param timeout: Channel open timeout in seconds
        :return: Channel
        """
        if self._closed:
            raise SSHException("session is closed")
        return self.transport.open_session(timeout=timeout)

    def close(self):
        """Close the transport, safe to call more than once and from any thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.transport.close()
        self.host_logger.log_connection("closed")


class ConnectionManager:
    """Connects and authenticates one target at a time."""

    def __init__(self, config: RunConfig, logger: StructuredLogger,
                 connector: Optional[Connector] = None,
                 agent_factory: Optional[Callable[[], Any]] = None):
        """
        Initialize connection manager.

        :param config: Run configuration
        :param logger: Logger instance
        :param connector: Callable opening a handshaken transport, defaults to paramiko
        :param agent_factory: Callable returning an SSH agent client, defaults to paramiko.Agent
        """
        self.config = config
        self.logger = logger
        self.connector = connector or paramiko_connector
        self.agent_factory = agent_factory or paramiko.Agent

    def open(self, target: Target, token: CancelToken, host_logger: HostLogger) -> Session:
        """
        Connect and authenticate a target.

        :param target: Target to connect to
        :param token: Run cancellation signal
        :param host_logger: Logger of the target
        :return: Live session, owned by the caller
        :raises ConnectError: Network level failure
        :raises AuthError: Every authentication method was rejected
        :raises RunCancelledError: The run was cancelled meanwhile
        """
        host_logger.transition(HostState.CONNECTING)
        if token.cancelled:
            raise RunCancelledError("cancelled before connecting")

        transport = self.connector(target, self.config.connect_timeout, token,
                                   self.config.poll_interval)
        host_logger.log_connection("connected")

        handle = token.register(transport.close)
        try:
            host_logger.transition(HostState.AUTHENTICATING)
            self._authenticate(transport, target, token, host_logger)
        except BaseException:
            transport.close()
            raise
        finally:
            token.unregister(handle)

        if token.cancelled:
            transport.close()
            raise RunCancelledError("cancelled after authentication")

        host_logger.log_connection("authenticated")
        return Session(target, transport, host_logger)

    @contextmanager
    def session(self, target: Target, token: CancelToken, host_logger: HostLogger):
        """
        Context manager for a session, closed on every exit path.

        Cancelling the run closes the session from the cancelling thread,
        which unblocks any read in progress.

        :param target: Target to connect to
        :param token: Run cancellation signal
        :param host_logger: Logger of the target
        :yield: Live session
        """
        session = self.open(target, token, host_logger)
        handle = token.register(session.close)
        try:
            yield session
        finally:
            token.unregister(handle)
            session.close()

    def _authenticate(self, transport: Any, target: Target, token: CancelToken,
                      host_logger: HostLogger):
        """
        Try each authentication method in order until one succeeds.

        :raises AuthError: With the last rejection reason when all methods fail
        """
        if self.config.auth_timeout is not None:
            transport.auth_timeout = self.config.auth_timeout

        last_reason = "no authentication methods configured"
        for method in target.auth:
            if token.cancelled:
                raise RunCancelledError("cancelled during authentication")

            name = _method_name(method)
            reason = None
            try:
                if isinstance(method, PasswordAuth):
                    transport.auth_password(target.username, method.password)
                elif isinstance(method, KeyAuth):
                    self._auth_key(transport, target, method)
                elif isinstance(method, AgentAuth):
                    self._auth_agent(transport, target)
            except BadAuthenticationType as e:
                reason = f"{name}: server accepts only {', '.join(e.allowed_types)}"
            except AuthenticationException as e:
                reason = f"{name}: {e}"
            except AuthError as e:
                reason = e.reason
            except (SSHException, EOFError, OSError) as e:
                if token.cancelled:
                    raise RunCancelledError("cancelled during authentication") from e
                if not transport.is_active():
                    raise ConnectError(f"connection lost during authentication: {e}") from e
                reason = f"{name}: {e}"

            if transport.is_authenticated():
                host_logger.log_connection("auth_accepted", method=name)
                return

            # no exception but not authenticated: partial success
            last_reason = reason or f"{name}: server requires further authentication"
            host_logger.log_connection("auth_rejected", method=name, reason=last_reason)

        raise AuthError(last_reason)

    def _auth_key(self, transport: Any, target: Target, method: KeyAuth):
        key = load_private_key(method)
        try:
            transport.auth_publickey(target.username, key)
        finally:
            del key

    def _auth_agent(self, transport: Any, target: Target):
        agent = self.agent_factory()
        try:
            keys = agent.get_keys()
            if not keys:
                raise AuthError("agent: no keys available")

            last_error = None
            for key in keys:
                try:
                    transport.auth_publickey(target.username, key)
                    return
                except AuthenticationException as e:
                    last_error = e
            raise last_error
        finally:
            agent.close()
