"""
SCP file transfer over an SSH exec channel.

Upload runs ``scp -t`` on the remote side (sink), download runs ``scp -f``
(source). Each frame is acknowledged with a single byte: 0 for ok, 1 or 2
followed by a message line for an error.
"""

import os
import shlex
import socket
import stat
from typing import Any, Optional, Tuple

from .context import CancelToken, Deadline
from .errors import HostTimeoutError, RunCancelledError, TransferError

# Author: Vamsi

OK = b"\x00"
WARNING = b"\x01"
FATAL = b"\x02"

MAX_LINE = 4096


class ChannelStream:
    """Blocking reads and writes on a channel bounded by a deadline and a cancel token."""

    def __init__(self, channel: Any, deadline: Deadline, token: CancelToken,
                 poll_interval: float = 0.05):
        self.channel = channel
        self.deadline = deadline
        self.token = token
        self.poll_interval = poll_interval
        channel.settimeout(poll_interval)

    def _check(self):
        if self.token.cancelled:
            raise RunCancelledError("cancelled during transfer")
        if self.deadline.expired:
            raise HostTimeoutError(f"transfer timed out after {self.deadline.seconds}s",
                                   phase="transfer")

    def recv(self, size: int) -> bytes:
        """
        Receive up to ``size`` bytes, waiting until at least one is available.

        :raises TransferError: If the remote side closed the channel
        """
        while True:
            self._check()
            try:
                data = self.channel.recv(size)
            except socket.timeout:
                continue
            except (EOFError, OSError) as e:
                self._check()
                raise TransferError(f"channel error: {e}") from e
            if not data:
                self._check()
                raise TransferError("remote side closed the channel unexpectedly")
            return data

    def recv_exact(self, size: int) -> bytes:
        chunks = []
        while size > 0:
            data = self.recv(size)
            chunks.append(data)
            size -= len(data)
        return b"".join(chunks)

    def read_line(self) -> bytes:
        """Read up to and including the next newline."""
        line = bytearray()
        while not line.endswith(b"\n"):
            if len(line) >= MAX_LINE:
                raise TransferError("protocol error: response line too long")
            line += self.recv(1)
        return bytes(line)

    def send(self, data: bytes):
        view = memoryview(data)
        while view:
            self._check()
            try:
                sent = self.channel.send(view)
            except socket.timeout:
                continue
            except (EOFError, OSError) as e:
                self._check()
                raise TransferError(f"channel error: {e}") from e
            if sent <= 0:
                self._check()
                raise TransferError("remote side closed the channel unexpectedly")
            view = view[sent:]

    def read_ack(self):
        """
        Read one acknowledge byte.

        :raises TransferError: With the remote message on a negative acknowledge
        """
        code = self.recv(1)
        if code == OK:
            return
        if code in (WARNING, FATAL):
            message = self.read_line().decode('utf-8', errors='replace').strip()
            raise TransferError(message or "remote scp reported an error")
        raise TransferError(f"protocol error: unexpected response {code!r}")

    def wait_exit_status(self) -> Optional[int]:
        """Wait for the remote exit status until the deadline."""
        while not self.channel.exit_status_ready():
            self._check()
            self.token.wait(self.poll_interval)
        return self.channel.recv_exit_status()


def remote_mode(local_mode: int) -> int:
    """Mode announced for an upload, keeping the executable bits of the source."""
    return 0o644 | (local_mode & 0o111)


def parse_header(line: bytes) -> Tuple[int, int, str]:
    """
    Parse a ``C<mode> <size> <name>`` file header.

    :return: Tuple of (mode, size, name)
    """
    try:
        text = line.decode('utf-8').rstrip("\n")
        mode_text, size_text, name = text[1:].split(" ", 2)
        mode = int(mode_text, 8)
        size = int(size_text)
    except ValueError as e:
        raise TransferError(f"protocol error: invalid file header {line!r}") from e
    if size < 0:
        raise TransferError(f"protocol error: negative size in {line!r}")
    return mode, size, name


def upload(channel: Any, local_path: str, remote_path: str, deadline: Deadline,
           token: CancelToken, chunk_size: int = 32768, poll_interval: float = 0.05) -> int:
    """
    Copy a local file to the remote path.

    :param channel: Fresh session channel
    :param local_path: Local source file
    :param remote_path: Remote destination file or directory
    :param deadline: Transfer deadline
    :param token: Run cancellation signal
    :param chunk_size: Bytes per write
    :param poll_interval: How often to re-check deadline and cancellation
    :return: Number of bytes transferred
    :raises TransferError: On local or remote failure, or size mismatch
    """
    try:
        source = open(local_path, 'rb')
    except OSError as e:
        raise TransferError(f"cannot read {local_path}: {e.strerror or e}") from e

    with source:
        st = os.fstat(source.fileno())
        if not stat.S_ISREG(st.st_mode):
            raise TransferError(f"{local_path} is not a regular file")
        size = st.st_size

        stream = ChannelStream(channel, deadline, token, poll_interval)
        channel.exec_command(f"scp -t {shlex.quote(remote_path)}")
        stream.read_ack()

        name = os.path.basename(local_path)
        header = f"C{remote_mode(st.st_mode):04o} {size} {name}\n"
        stream.send(header.encode('utf-8'))
        stream.read_ack()

        sent = 0
        while sent < size:
            try:
                chunk = source.read(min(chunk_size, size - sent))
            except OSError as e:
                raise TransferError(f"cannot read {local_path}: {e.strerror or e}") from e
            if not chunk:
                break
            stream.send(chunk)
            sent += len(chunk)

        if sent != size:
            raise TransferError(
                f"size mismatch: {local_path} shrank to {sent} bytes, expected {size}")

    stream.send(OK)
    stream.read_ack()

    channel.shutdown_write()
    status = stream.wait_exit_status()
    if status not in (0, -1):
        raise TransferError(f"remote scp exited with status {status}")
    return sent


def download(channel: Any, remote_path: str, local_path: str, deadline: Deadline,
             token: CancelToken, chunk_size: int = 32768, poll_interval: float = 0.05) -> int:
    """
    Copy a remote file to a local path.

    The data is written to ``local_path + '.part'`` and renamed once the
    byte count is verified.

    :param channel: Fresh session channel
    :param remote_path: Remote source file
    :param local_path: Local destination file
    :param deadline: Transfer deadline
    :param token: Run cancellation signal
    :param chunk_size: Bytes per read
    :param poll_interval: How often to re-check deadline and cancellation
    :return: Number of bytes transferred
    :raises TransferError: On local or remote failure, or size mismatch
    """
    stream = ChannelStream(channel, deadline, token, poll_interval)
    channel.exec_command(f"scp -f {shlex.quote(remote_path)}")
    stream.send(OK)

    while True:
        line = stream.read_line()
        prefix = line[:1]
        if prefix in (WARNING, FATAL):
            raise TransferError(line[1:].decode('utf-8', errors='replace').strip()
                                or "remote scp reported an error")
        if prefix == b"T":
            # modification times, not preserved
            stream.send(OK)
            continue
        if prefix in (b"D", b"E"):
            raise TransferError(f"{remote_path} is a directory")
        if prefix == b"C":
            break
        raise TransferError(f"protocol error: unexpected header {line!r}")

    mode, size, _ = parse_header(line)

    partial = local_path + ".part"
    try:
        target = open(partial, 'wb')
    except OSError as e:
        raise TransferError(f"cannot write {local_path}: {e.strerror or e}") from e

    received = 0
    try:
        with target:
            stream.send(OK)
            while received < size:
                data = stream.recv(min(chunk_size, size - received))
                try:
                    target.write(data)
                except OSError as e:
                    raise TransferError(f"cannot write {local_path}: {e.strerror or e}") from e
                received += len(data)

        stream.read_ack()
        stream.send(OK)

        written = os.path.getsize(partial)
        if written != size:
            raise TransferError(f"size mismatch: wrote {written} bytes, expected {size}")

        os.replace(partial, local_path)
    except BaseException:
        try:
            os.unlink(partial)
        except OSError:
            pass
        raise

    if mode & 0o111 and os.name == 'posix':
        current = os.stat(local_path).st_mode
        os.chmod(local_path, stat.S_IMODE(current) | (mode & 0o111))

    return received
