"""
MCP server subprocess management.

ServerProcess spawns the server with unbuffered stdin/stdout pipes in its own
process group, so the server and anything it spawns can be terminated
together. Server stderr is forwarded line by line to the 'mcplink.server'
logger from a daemon thread.

Platform: POSIX only (process groups, os.killpg).
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from typing import IO, Optional

from .errors import TransportError

# Grace period for subprocess termination before sending SIGKILL
PROCESS_TERMINATE_TIMEOUT = 3.0

logger = logging.getLogger('mcplink')
server_logger = logging.getLogger('mcplink.server')


class ServerProcess:
    """A spawned MCP server exposing its stdin/stdout as raw byte streams."""

    def __init__(
        self,
        command: list[str],
        env: Optional[dict[str, str]] = None,
        forward_stderr: bool = True,
        terminate_timeout: float = PROCESS_TERMINATE_TIMEOUT
    ) -> None:
        """
        Args:
            command: Command and arguments to spawn the MCP server.
            env: Additional environment variables for the subprocess.
            forward_stderr: If True (default), log server stderr on the
                           'mcplink.server' logger. If False it is discarded.
            terminate_timeout: Seconds to wait after SIGTERM before SIGKILL.
        """
        if not command:
            raise ValueError("Server command must not be empty")
        self.command = list(command)
        self.env = env
        self.forward_stderr = forward_stderr
        self.terminate_timeout = terminate_timeout
        self.process: Optional[subprocess.Popen[bytes]] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> "ServerProcess":
        """Spawn the subprocess."""
        with self._lock:
            if self.process is not None:
                return self
            process_env = os.environ.copy()
            if self.env:
                process_env.update(self.env)
            try:
                self.process = subprocess.Popen(
                    self.command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE if self.forward_stderr else subprocess.DEVNULL,
                    bufsize=0,
                    env=process_env,
                    start_new_session=True  # Own process group, see terminate()
                )
            except OSError as e:
                raise TransportError(f"Failed to start process: {e}") from e
        logger.debug("Started MCP server pid=%s: %s", self.process.pid, ' '.join(self.command))

        if self.forward_stderr:
            self._stderr_thread = threading.Thread(
                target=self._forward_stderr,
                args=(self.process.stderr,),
                name=f"mcplink-stderr-{self.process.pid}",
                daemon=True
            )
            self._stderr_thread.start()
        return self

    def _forward_stderr(self, stream: IO[bytes]) -> None:
        try:
            for line in iter(stream.readline, b""):
                text = line.decode('utf-8', errors='replace').rstrip()
                if text:
                    server_logger.info(text)
        except (OSError, ValueError):
            # Pipe closed underneath us during shutdown
            pass

    def _require(self) -> subprocess.Popen[bytes]:
        if self.process is None:
            raise TransportError("Server process not started")
        return self.process

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.poll() if self.process else None

    @property
    def stdin(self) -> IO[bytes]:
        return self._require().stdin

    @property
    def stdout(self) -> IO[bytes]:
        return self._require().stdout

    def close_stdin(self) -> None:
        """Signal end of input to the server."""
        process = self.process
        if process is not None and process.stdin and not process.stdin.closed:
            try:
                process.stdin.close()
            except OSError:
                pass

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for the server to exit. Returns the exit code, or None on timeout."""
        process = self._require()
        try:
            return process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def _signal_group(self, process: subprocess.Popen[bytes], sig: int) -> None:
        try:
            os.killpg(process.pid, sig)
        except (OSError, ProcessLookupError):
            # Process group may already be gone
            pass

    def terminate(self) -> None:
        """Terminate the server and its children: SIGTERM, then SIGKILL after the grace period."""
        process = self.process
        if process is None or process.poll() is not None:
            return
        self._signal_group(process, signal.SIGTERM)
        try:
            process.wait(timeout=self.terminate_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("MCP server pid=%s ignored SIGTERM, killing", process.pid)
            self._signal_group(process, signal.SIGKILL)
            try:
                process.wait(timeout=1)
            except (subprocess.TimeoutExpired, OSError):
                pass

    def close(self) -> None:
        """Close all pipes and make sure the server is gone."""
        process = self.process
        if process is None:
            return
        self.close_stdin()
        if self.wait(timeout=self.terminate_timeout) is None:
            self.terminate()
        for pipe in (process.stdout, process.stderr):
            if pipe:
                try:
                    pipe.close()
                except OSError:
                    pass
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=1)
            self._stderr_thread = None
