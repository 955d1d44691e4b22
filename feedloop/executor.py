"""
Executor - runs one external command to completion (or timeout).

stdout and stderr are merged and pumped on a reader thread. At most
max_output_bytes are retained; anything beyond is drained and discarded so a
noisy child can neither grow our memory nor block on a full pipe.
"""

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, Optional

from .step import REASON_EXIT, REASON_OK, REASON_SPAWN_ERROR, REASON_TIMEOUT, Step

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

_POSIX = os.name == "posix"


@dataclass
class ExecResult:
    """Result of running one step's command."""

    exit_code: Optional[int]
    output: bytes = b""
    truncated: bool = False
    spawn_error: Optional[str] = None
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def reason(self) -> str:
        if self.spawn_error is not None:
            return REASON_SPAWN_ERROR
        if self.timed_out:
            return REASON_TIMEOUT
        if self.exit_code != 0:
            return REASON_EXIT
        return REASON_OK

    @property
    def success(self) -> bool:
        return self.reason == REASON_OK


class OutputCapture:
    """Byte buffer that stops growing at a fixed limit."""

    def __init__(self, limit: int):
        self.limit = limit
        self.truncated = False
        self.total_bytes = 0
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> None:
        self.total_bytes += len(chunk)
        room = self.limit - len(self._buffer)
        if room <= 0:
            if chunk:
                self.truncated = True
            return
        if len(chunk) > room:
            self._buffer += chunk[:room]
            self.truncated = True
        else:
            self._buffer += chunk

    def getvalue(self) -> bytes:
        return bytes(self._buffer)


class Executor:
    """
    Runs Steps as child processes.

    Each child is started in its own session, so a timeout terminates the
    whole process group, including shell and wrapper-script grandchildren.

    Args:
        stream: Binary stream that visible output is written to
            (default: the current sys.stdout)
        terminate_grace_seconds: Time between terminate and kill on timeout,
            and how long output is still drained after the child exits
    """

    def __init__(self, stream: Optional[BinaryIO] = None, terminate_grace_seconds: float = 2.0):
        self.stream = stream
        self.terminate_grace_seconds = terminate_grace_seconds
        self._write_lock = threading.Lock()
        self._procs_lock = threading.Lock()
        self._running: set[subprocess.Popen] = set()

    def run(self, step: Step) -> ExecResult:
        """
        Run a step's command and wait for it.

        Args:
            step: Step to run

        Returns:
            ExecResult; spawn failures are reported in it, never raised
        """
        env = None
        if step.env:
            env = {**os.environ, **step.env}

        command = step.command if step.shell else step.argv()
        logger.debug(
            f"Executing: {step.display_command()}",
            extra={"step": step.name, "event": "step_spawn", "metadata": {"cwd": str(step.cwd)}},
        )

        start_time = time.time()
        try:
            proc = subprocess.Popen(
                command,
                shell=step.shell,
                cwd=str(step.cwd) if step.cwd else None,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=_POSIX,
            )
        except (OSError, ValueError) as e:
            return ExecResult(
                exit_code=None,
                spawn_error=str(e),
                duration_seconds=time.time() - start_time,
            )

        with self._procs_lock:
            self._running.add(proc)

        capture = OutputCapture(step.max_output_bytes)
        reader = threading.Thread(
            target=self._pump,
            args=(proc.stdout, capture, step.output_visible),
            name=f"feedloop-output-{step.name}",
            daemon=True,
        )
        reader.start()

        timed_out = False
        try:
            proc.wait(timeout=step.timeout_seconds)
        except subprocess.TimeoutExpired:
            timed_out = True
            self._terminate(proc)
        except KeyboardInterrupt:
            self._terminate(proc)
            raise
        finally:
            with self._procs_lock:
                self._running.discard(proc)

        # Background processes the step started may keep the pipe open forever
        reader.join(timeout=self.terminate_grace_seconds)
        if reader.is_alive():
            logger.warning(
                f"{step.name} exited but a background process still holds its output open; "
                f"later output is not captured",
                extra={"step": step.name, "event": "output_still_open"},
            )

        result = ExecResult(
            exit_code=proc.returncode,
            output=capture.getvalue(),
            truncated=capture.truncated,
            timed_out=timed_out,
            duration_seconds=time.time() - start_time,
        )

        if capture.truncated:
            logger.debug(
                f"Output of {step.name} truncated at {step.max_output_bytes} bytes "
                f"({capture.total_bytes} produced)",
                extra={"step": step.name, "event": "output_truncated"},
            )
        if not step.output_visible and result.output:
            logger.debug(
                f"{step.name} output (hidden):\n{result.output[-2000:].decode(errors='replace')}",
                extra={"step": step.name, "event": "hidden_output"},
            )

        return result

    def terminate_running(self) -> None:
        """Terminate every step process still running, e.g. on shutdown."""
        with self._procs_lock:
            procs = list(self._running)
        for proc in procs:
            self._terminate(proc)

    def _pump(self, pipe: BinaryIO, capture: OutputCapture, visible: bool) -> None:
        with pipe:
            for chunk in iter(lambda: pipe.read1(CHUNK_SIZE), b""):
                capture.feed(chunk)
                if visible:
                    self._write(chunk)

    def _write(self, chunk: bytes) -> None:
        with self._write_lock:
            stream = self.stream
            if stream is None:
                text_stream = sys.stdout
                stream = getattr(text_stream, "buffer", None)
                if stream is None:
                    text_stream.write(chunk.decode(errors="replace"))
                    text_stream.flush()
                    return
            stream.write(chunk)
            stream.flush()

    def _terminate(self, proc: subprocess.Popen) -> None:
        """Terminate a child's process group, escalating to kill after the grace period."""
        _signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.terminate_grace_seconds)
        except subprocess.TimeoutExpired:
            _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            proc.wait()
        # Grandchildren may outlive the leader's SIGTERM
        if _POSIX:
            _signal_group(proc, signal.SIGKILL)


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    if not _POSIX:
        if sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
        return
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        # The whole group has already exited
        pass
