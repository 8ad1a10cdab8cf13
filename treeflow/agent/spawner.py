"""Launch external agent processes and stream their output.

The executor depends only on the Spawner protocol, so tests can substitute
a deterministic double for real subprocesses.
"""

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = [
    "claude",
    "-p",
    "--output-format",
    "stream-json",
    "--verbose",
    "--dangerously-skip-permissions",
]


class AgentError(Exception):
    """Error launching or supervising an agent process."""

    pass


class SpawnFailedError(AgentError):
    """The agent process could not be started at all.

    Distinct from a process that started and exited non-zero.
    """

    pass


class AgentConfig(BaseModel):
    """What to run: prompt, where, and with which model/session."""

    prompt: str
    workdir: Path
    session_id: str | None = None
    model: str | None = None
    timeout: float | None = Field(default=None, gt=0)
    env: dict[str, str] = Field(default_factory=dict)


class OutputChunk(BaseModel):
    """A piece of agent output, delivered in production order per stream."""

    stream: str  # "stdout" or "stderr"
    text: str
    sequence: int


class AgentResult(BaseModel):
    """Outcome of one agent process."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


OutputCallback = Callable[[OutputChunk], None]


class Spawner(Protocol):
    """Capability to run one agent process to completion."""

    def spawn(
        self,
        config: AgentConfig,
        on_output: OutputCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> AgentResult: ...


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed.

    Prevents downstream memory issues from unbounded agent output.
    """
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Truncate by bytes, ensuring we don't cut in the middle of a UTF-8 sequence
    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


class CliAgentSpawner:
    """Run an agent CLI as a subprocess, prompt on stdin.

    The process runs in its own session so termination reaches any children
    it starts. On timeout or cancellation it gets SIGTERM, then SIGKILL
    after grace_period seconds.
    """

    def __init__(
        self,
        command: list[str] | None = None,
        model_flag: str | None = "--model",
        session_flag: str | None = "--session-id",
        max_output_bytes: int = 1024 * 1024,
        grace_period: float = 5.0,
        poll_interval: float = 0.1,
    ):
        self.command = list(command or DEFAULT_AGENT_COMMAND)
        self.model_flag = model_flag
        self.session_flag = session_flag
        self.max_output_bytes = max_output_bytes
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self._active: set[subprocess.Popen] = set()
        self._lock = threading.Lock()

    def build_command(self, config: AgentConfig) -> list[str]:
        command = list(self.command)
        if config.model and self.model_flag:
            command += [self.model_flag, config.model]
        if config.session_id and self.session_flag:
            command += [self.session_flag, config.session_id]
        return command

    def spawn(
        self,
        config: AgentConfig,
        on_output: OutputCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> AgentResult:
        """Run the agent until it exits, times out, or is cancelled.

        Raises:
            SpawnFailedError: workdir is invalid or the executable cannot be started.
        """
        workdir = Path(config.workdir)
        if not workdir.is_dir():
            raise SpawnFailedError(f"Agent working directory does not exist: {workdir}")

        command = self.build_command(config)
        env = {**os.environ, **config.env} if config.env else None
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                command,
                cwd=workdir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            raise SpawnFailedError(f"Cannot start agent {command[0]!r}: {e}") from e

        logger.debug(f"Spawned agent pid={proc.pid} in {workdir}: {command}")
        with self._lock:
            self._active.add(proc)
        try:
            return self._supervise(proc, config, on_output, cancel_event, start)
        finally:
            with self._lock:
                self._active.discard(proc)

    def _supervise(
        self,
        proc: subprocess.Popen,
        config: AgentConfig,
        on_output: OutputCallback | None,
        cancel_event: threading.Event | None,
        start: float,
    ) -> AgentResult:
        chunks: queue.Queue[tuple[str, str] | None] = queue.Queue()
        readers = [
            threading.Thread(target=self._pump, args=(proc.stdout, "stdout", chunks), daemon=True),
            threading.Thread(target=self._pump, args=(proc.stderr, "stderr", chunks), daemon=True),
        ]
        writer = threading.Thread(target=self._feed, args=(proc.stdin, config.prompt), daemon=True)
        for thread in (*readers, writer):
            thread.start()

        collected: dict[str, list[str]] = {"stdout": [], "stderr": []}
        collected_bytes = 0
        sequence = 0
        open_streams = len(readers)
        timed_out = cancelled = False
        deadline = start + config.timeout if config.timeout else None

        while open_streams:
            try:
                item = chunks.get(timeout=self.poll_interval)
            except queue.Empty:
                pass
            else:
                if item is None:
                    open_streams -= 1
                else:
                    stream, text = item
                    if collected_bytes <= self.max_output_bytes:
                        collected[stream].append(text)
                        collected_bytes += len(text.encode("utf-8", errors="replace"))
                    if on_output is not None:
                        on_output(OutputChunk(stream=stream, text=text, sequence=sequence))
                    sequence += 1

            if timed_out or cancelled:
                continue
            if deadline is not None and time.monotonic() > deadline:
                timed_out = True
                logger.warning(f"Agent pid={proc.pid} exceeded {config.timeout}s timeout")
                self._terminate(proc)
            elif cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info(f"Cancelling agent pid={proc.pid}")
                self._terminate(proc)

        exit_code = proc.wait()
        writer.join(timeout=1)
        duration = time.monotonic() - start
        stderr = "".join(collected["stderr"])
        if timed_out:
            stderr += f"\nAgent timed out after {config.timeout}s"
        return AgentResult(
            exit_code=exit_code,
            stdout=_truncate_output("".join(collected["stdout"]), self.max_output_bytes),
            stderr=_truncate_output(stderr, self.max_output_bytes),
            duration_seconds=duration,
            timed_out=timed_out,
            cancelled=cancelled,
        )

    @staticmethod
    def _pump(pipe: IO[bytes], stream: str, sink: queue.Queue) -> None:
        try:
            for raw in iter(pipe.readline, b""):
                sink.put((stream, raw.decode("utf-8", errors="replace")))
        finally:
            pipe.close()
            sink.put(None)

    @staticmethod
    def _feed(pipe: IO[bytes], prompt: str) -> None:
        try:
            pipe.write(prompt.encode("utf-8"))
        except (BrokenPipeError, ValueError):
            pass  # Agent exited without reading its prompt
        finally:
            try:
                pipe.close()
            except BrokenPipeError:
                pass

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM, then SIGKILL after the grace period, delivered to the whole session."""
        self._signal(proc, signal.SIGTERM)
        threading.Thread(target=self._kill_after_grace, args=(proc,), daemon=True).start()

    def _kill_after_grace(self, proc: subprocess.Popen) -> None:
        try:
            proc.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            logger.warning(f"Agent pid={proc.pid} ignored SIGTERM, killing")
            self._signal(proc, signal.SIGKILL)

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        if proc.poll() is not None:
            return
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass  # Already exited

    def terminate_all(self) -> None:
        """Terminate every agent process this spawner is supervising."""
        with self._lock:
            active = list(self._active)
        for proc in active:
            self._terminate(proc)
