"""
External command runner.

Streams stdout/stderr line by line to a callback while the process runs,
keeping only a short stderr tail in memory. A running command can be
cancelled through a CancelToken: the process tree receives SIGTERM and is
force-killed if it is still alive after the grace period.
"""

import codecs
import logging
import os
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

import psutil

from svnmigrate.exceptions import ProcessCancelledError, ProcessExitError
from .progress_parser import LineBuffer

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

LineCallback = Callable[[str, str], None]


class CancelToken(Protocol):
    """Anything that can report a pending cancellation request."""

    def is_set(self) -> bool:
        ...


def redact(text: str, secrets: Iterable[Optional[str]]) -> str:
    """Replace every non-empty secret in text with ***."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


@dataclass
class ProcessResult:
    command: str
    returncode: int
    duration_ms: int
    stderr_tail: List[str] = field(default_factory=list)


class ProcessHandle:
    """A started process plus its termination policy."""

    def __init__(self, process: subprocess.Popen, display: str, grace_seconds: float):
        self.process = process
        self.display = display
        self.grace_seconds = grace_seconds
        self.terminated = False
        self._lock = threading.Lock()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.poll() is None

    def terminate(self) -> None:
        """
        Send SIGTERM to the process tree, SIGKILL whatever survives the
        grace period. Returns immediately; escalation runs in the background.
        """
        with self._lock:
            if self.terminated or not self.running:
                return
            self.terminated = True

        logger.info(f"Terminating {self.display} (pid={self.pid})")
        thread = threading.Thread(
            target=self._terminate_tree,
            name=f"terminate-{self.pid}",
            daemon=True,
        )
        thread.start()

    def _terminate_tree(self) -> None:
        try:
            parent = psutil.Process(self.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.grace_seconds)
        for proc in alive:
            logger.warning(
                f"pid {proc.pid} still alive after {self.grace_seconds}s, killing"
            )
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass


class ProcessRunner:
    """
    Runs external commands with streamed output.

    Usage:
        runner = ProcessRunner()
        result = runner.run(
            "git", ["svn", "fetch"],
            cwd=repo_path,
            on_line=lambda stream, line: print(stream, line),
        )
    """

    def __init__(
        self,
        kill_grace_seconds: float = 5.0,
        tail_lines: int = 50,
        poll_interval: float = 0.5,
    ):
        self.kill_grace_seconds = kill_grace_seconds
        self.tail_lines = tail_lines
        self.poll_interval = poll_interval

    def start(
        self,
        command: str,
        args: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        secrets: Iterable[Optional[str]] = (),
    ) -> ProcessHandle:
        display = redact(" ".join([command, *args]), secrets)
        full_env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", **(env or {})}
        try:
            process = subprocess.Popen(
                [command, *args],
                cwd=cwd,
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessExitError(display, 127, [str(e)]) from e
        logger.debug(f"Started {display} (pid={process.pid})")
        return ProcessHandle(process, display, self.kill_grace_seconds)

    def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
        cancel_token: Optional[CancelToken] = None,
        secrets: Iterable[Optional[str]] = (),
    ) -> ProcessResult:
        """
        Run a command to completion.

        Raises:
            ProcessExitError: nonzero exit, timeout, or the command could not start
            ProcessCancelledError: cancel_token was set while running
        """
        secrets = [s for s in secrets if s]
        start_time = time.monotonic()
        handle = self.start(command, args, cwd=cwd, env=env, secrets=secrets)
        stderr_tail: deque[str] = deque(maxlen=self.tail_lines)
        callback_lock = threading.Lock()

        def emit(stream_name: str, line: str) -> None:
            line = redact(line, secrets)
            if stream_name == STDERR:
                stderr_tail.append(line)
            if on_line is None:
                return
            with callback_lock:
                try:
                    on_line(stream_name, line)
                except Exception as e:
                    # Keep draining the pipe; a stalled reader would block the child
                    logger.warning(f"Output callback failed for {handle.display}: {e}")

        readers = [
            threading.Thread(
                target=self._pump,
                args=(handle.process.stdout, STDOUT, emit),
                daemon=True,
            ),
            threading.Thread(
                target=self._pump,
                args=(handle.process.stderr, STDERR, emit),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        while True:
            try:
                handle.process.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel_token is not None and cancel_token.is_set():
                handle.terminate()
            elif timeout is not None and time.monotonic() - start_time > timeout:
                timed_out = True
                handle.terminate()

        for reader in readers:
            reader.join()

        returncode = handle.process.returncode
        duration_ms = int((time.monotonic() - start_time) * 1000)

        if handle.terminated and not timed_out:
            raise ProcessCancelledError(handle.display)
        if timed_out:
            stderr_tail.append(f"timed out after {timeout}s")
            raise ProcessExitError(handle.display, returncode, list(stderr_tail))
        if returncode != 0:
            raise ProcessExitError(handle.display, returncode, list(stderr_tail))

        logger.debug(f"{handle.display} finished in {duration_ms}ms")
        return ProcessResult(
            command=handle.display,
            returncode=returncode,
            duration_ms=duration_ms,
            stderr_tail=list(stderr_tail),
        )

    @staticmethod
    def _pump(stream, stream_name: str, emit: Callable[[str, str], None]) -> None:
        """Read raw chunks and forward complete lines."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        lines = LineBuffer()
        try:
            while True:
                chunk = stream.read1(8192)
                if not chunk:
                    break
                for line in lines.feed(decoder.decode(chunk)):
                    if line:
                        emit(stream_name, line)
            for line in lines.feed(decoder.decode(b"", final=True)) + lines.flush():
                if line:
                    emit(stream_name, line)
        finally:
            stream.close()
