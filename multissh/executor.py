"""
Job execution over an established session.
Runs commands on exec channels and file transfers over SCP.
"""

import os
import time
from typing import Any

from paramiko.ssh_exception import SSHException

from . import scp
from .config import RunConfig
from .context import CancelToken, Deadline
from .errors import (
    CommandError, ConnectError, HostTimeoutError, RunCancelledError, TransferError
)
from .logger import HostLogger
from .models import CommandJob, Direction, Job, Success, Target, TransferJob

# Author: Vamsi


class BoundedBuffer:
    """Keeps the first ``limit`` bytes written to it and counts the rest."""

    def __init__(self, limit: int):
        self.limit = limit
        self._chunks = []
        self.size = 0
        self.dropped = 0

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def write(self, data: bytes):
        room = self.limit - self.size
        if room > 0:
            kept = data[:room]
            self._chunks.append(kept)
            self.size += len(kept)
            data = data[room:]
        self.dropped += len(data)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)

    def text(self, encoding: str = 'utf-8') -> str:
        return self.getvalue().decode(encoding, errors='replace')


class Executor:
    """Runs one job on one session. Never retries."""

    def __init__(self, config: RunConfig):
        """
        Initialize executor.

        :param config: Run configuration
        """
        self.config = config

    def run(self, session: Any, job: Job, target: Target, token: CancelToken,
            host_logger: HostLogger) -> Success:
        """
        Run a job on a session.

        :param session: Live session of the target
        :param job: Command or transfer job
        :param target: Target the session belongs to
        :param token: Run cancellation signal
        :param host_logger: Logger of the target
        :return: Success outcome
        :raises CommandError: Non-zero exit status
        :raises TransferError: Transfer failure
        :raises HostTimeoutError: Job timeout elapsed
        :raises RunCancelledError: Run cancelled meanwhile
        :raises ConnectError: Connection lost while running
        """
        deadline = Deadline(self.config.job_timeout_for(target))
        if isinstance(job, CommandJob):
            return self.run_command(session, job, deadline, token, host_logger)
        if isinstance(job, TransferJob):
            return self.run_transfer(session, job, target, deadline, token, host_logger)
        raise TypeError(f"Unsupported job type: {type(job).__name__}")

    def _open_channel(self, session: Any, deadline: Deadline, token: CancelToken):
        try:
            return session.open_channel(timeout=deadline.bound(self.config.connect_timeout))
        except (SSHException, EOFError, OSError) as e:
            if token.cancelled:
                raise RunCancelledError("cancelled while opening channel") from e
            if deadline.expired:
                raise HostTimeoutError("timed out opening channel", phase="execute") from e
            raise ConnectError(f"cannot open channel: {e}") from e

    def run_command(self, session: Any, job: CommandJob, deadline: Deadline,
                    token: CancelToken, host_logger: HostLogger) -> Success:
        """
        Run a command and capture its output.

        Output beyond ``max_output_bytes`` per stream is read and dropped.
        """
        start_time = time.time()
        stdout = BoundedBuffer(self.config.max_output_bytes)
        stderr = BoundedBuffer(self.config.max_output_bytes)
        window_size = self.config.chunk_size
        poll = self.config.poll_interval

        channel = self._open_channel(session, deadline, token)
        try:
            channel.exec_command(job.text)
            while True:
                if token.cancelled:
                    raise RunCancelledError("cancelled while command was running")
                if deadline.expired:
                    host_logger.log_connection("command_timeout", timeout=deadline.seconds)
                    raise HostTimeoutError(
                        f"command timed out after {deadline.seconds}s", phase="execute")

                busy = False
                if channel.recv_ready():
                    stdout.write(channel.recv(window_size))
                    busy = True
                if channel.recv_stderr_ready():
                    stderr.write(channel.recv_stderr(window_size))
                    busy = True
                if busy:
                    continue

                if channel.exit_status_ready():
                    # drain what arrived together with the exit status
                    while channel.recv_ready():
                        stdout.write(channel.recv(window_size))
                    while channel.recv_stderr_ready():
                        stderr.write(channel.recv_stderr(window_size))
                    break

                if channel.closed:
                    raise ConnectError("channel closed before the command exited")

                token.wait(deadline.bound(poll))

            exit_code = channel.recv_exit_status()
            if exit_code == -1:
                # closed without an exit status
                if token.cancelled:
                    raise RunCancelledError("cancelled while command was running")
                raise ConnectError("channel closed before the command exited")
        except (SSHException, EOFError, OSError) as e:
            if token.cancelled:
                raise RunCancelledError("cancelled while command was running") from e
            raise ConnectError(f"connection lost while running command: {e}") from e
        finally:
            channel.close()

        truncated = stdout.truncated or stderr.truncated
        host_logger.parent_logger.debug(
            "Command finished", host=host_logger.host, exit_code=exit_code,
            stdout_bytes=stdout.size + stdout.dropped, stderr_bytes=stderr.size + stderr.dropped,
            duration=round(time.time() - start_time, 3))

        if exit_code != 0:
            raise CommandError(exit_code, stdout.text(), stderr.text(), truncated)

        return Success(exit_code=exit_code, stdout=stdout.text(), stderr=stderr.text(),
                       truncated=truncated)

    def run_transfer(self, session: Any, job: TransferJob, target: Target, deadline: Deadline,
                     token: CancelToken, host_logger: HostLogger) -> Success:
        """
        Upload or download a file with SCP and verify the byte count.
        """
        start_time = time.time()
        if job.direction is Direction.UPLOAD:
            local_path = job.local_path
        else:
            local_path = job.local_destination(target)
            try:
                os.makedirs(job.local_path, exist_ok=True)
            except OSError as e:
                raise TransferError(f"cannot create {job.local_path}: {e.strerror or e}") from e

        channel = self._open_channel(session, deadline, token)
        try:
            if job.direction is Direction.UPLOAD:
                transferred = scp.upload(channel, local_path, job.remote_path, deadline, token,
                                         self.config.chunk_size, self.config.poll_interval)
            else:
                transferred = scp.download(channel, job.remote_path, local_path, deadline, token,
                                           self.config.chunk_size, self.config.poll_interval)
        except (SSHException, EOFError, OSError) as e:
            if token.cancelled:
                raise RunCancelledError("cancelled during transfer") from e
            raise TransferError(f"I/O error: {e}") from e
        finally:
            channel.close()

        host_logger.parent_logger.info(
            "File transfer completed", host=host_logger.host, operation=job.direction.value,
            local_path=local_path, remote_path=job.remote_path, size=transferred,
            duration=round(time.time() - start_time, 3))
        return Success(bytes_transferred=transferred)
