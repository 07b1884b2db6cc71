"""Supervision of the external decoder process that turns a network stream into PCM."""

import time
import logging
import subprocess
import threading
from enum import Enum
from typing import Callable, List, Optional

from ..errors import DecoderError, StreamDegradedError
from ..models.sources import Source
from .capture import CaptureProducer, RestartThrottle, Sink, backoff_delay

logger = logging.getLogger(__name__)

RTSP_SCHEMES = ("rtsp://", "rtsps://")


class SupervisorState(Enum):
    """Decoder supervision state."""
    STOPPED = "stopped"
    RUNNING = "running"
    BACKOFF = "backoff"


def build_ffmpeg_command(url: str, transport: str = "tcp", sample_rate: int = 48000,
                         channels: int = 1, ffmpeg_path: str = "ffmpeg") -> List[str]:
    """Arguments for an ffmpeg process emitting raw s16le PCM on stdout."""
    command = [ffmpeg_path, "-hide_banner", "-nostdin"]
    if url.lower().startswith(RTSP_SCHEMES):
        command += ["-rtsp_transport", transport]
    command += [
        "-i", url,
        "-loglevel", "error",
        "-vn",
        "-f", "s16le",
        "-ar", str(sample_rate),
        "-ac", str(channels),
        "pipe:1",
    ]
    return command


class DecoderSupervisor(CaptureProducer):
    """Runs one decoder subprocess per stream source and restarts it when it exits.

    State machine: STOPPED -> RUNNING -> BACKOFF -> RUNNING ... -> STOPPED.
    Restarts wait an exponential backoff delay and must also pass a sliding
    window spawn ceiling. Once consecutive failures exceed the restart budget
    the stream is reported degraded and supervision ends. ``stop`` always
    wins over a pending restart and returns only after the process is reaped.
    """

    def __init__(
        self,
        source: Source,
        sink: Sink,
        command: List[str],
        chunk_bytes: int = 8192,
        frame_bytes: int = 2,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        throttle: Optional[RestartThrottle] = None,
        restart_budget: int = 10,
        stable_run_seconds: float = 30.0,
        terminate_timeout: float = 5.0,
        on_degraded: Optional[Callable[[str, StreamDegradedError], None]] = None,
        on_state_change: Optional[Callable[[SupervisorState], None]] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(source, sink)
        self.command = command
        self.chunk_bytes = chunk_bytes
        self.frame_bytes = frame_bytes
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.throttle = throttle or RestartThrottle(5, 60.0, clock=clock)
        self.restart_budget = restart_budget
        self.stable_run_seconds = stable_run_seconds
        self.terminate_timeout = terminate_timeout
        self.on_degraded = on_degraded
        self.on_state_change = on_state_change
        self._popen = popen
        self._clock = clock

        self._state = SupervisorState.STOPPED
        self._state_lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._process_lock = threading.Lock()
        self._stderr_thread: Optional[threading.Thread] = None

        self.spawn_count = 0
        self.restart_count = 0
        self.consecutive_failures = 0
        self.last_exit_time: Optional[float] = None
        self.last_exit_code: Optional[int] = None
        self.degraded = False

    @property
    def state(self) -> SupervisorState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SupervisorState) -> None:
        with self._state_lock:
            if self._state is state:
                return
            old, self._state = self._state, state
        logger.debug(f"Decoder for {self.source.name}: {old.value} -> {state.value}")
        if self.on_state_change:
            self.on_state_change(state)

    def _spawn(self) -> Optional[subprocess.Popen]:
        with self._process_lock:
            # A stop issued before we got the lock must not be followed by a spawn
            if self.stop_event.is_set():
                return None
            try:
                process = self._popen(
                    self.command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=0,
                )
            except OSError as e:
                raise DecoderError(f"Failed to start decoder for {self.source.name}: {e}") from e
            self._process = process
            self.spawn_count += 1

        self._stderr_thread = threading.Thread(target=self._log_stderr, args=(process,), daemon=True)
        self._stderr_thread.name = f"DecoderStderr-{self.source.name}"
        self._stderr_thread.start()
        logger.info(f"🎬 Decoder started for {self.source.name} (pid {process.pid})")
        return process

    def _log_stderr(self, process: subprocess.Popen) -> None:
        for line in iter(process.stderr.readline, b""):
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.warning(f"Decoder [{self.source.name}]: {text}")

    def _pump(self, process: subprocess.Popen) -> None:
        """Forward whole PCM frames from the decoder's stdout until EOF or stop."""
        pending = b""
        while not self.stop_event.is_set():
            data = process.stdout.read(self.chunk_bytes)
            if not data:
                break
            data = pending + data
            usable = len(data) - len(data) % self.frame_bytes
            pending = data[usable:]
            if usable:
                self._deliver(data[:usable])
        if pending:
            logger.debug(f"Discarding {len(pending)} bytes of partial frame from {self.source.name}")

    def _reap(self, process: subprocess.Popen) -> int:
        returncode = process.wait()
        # stderr hits EOF once the process is gone; join before closing the pipe under it
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=1.0)
        for stream in (process.stdout, process.stderr):
            if stream is not None:
                stream.close()
        with self._process_lock:
            if self._process is process:
                self._process = None
        return returncode

    def _terminate(self, process: subprocess.Popen) -> None:
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.terminate_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Decoder for {self.source.name} ignored SIGTERM, killing")
                process.kill()
                process.wait()

    def _produce(self) -> None:
        try:
            self._supervise()
        finally:
            self._set_state(SupervisorState.STOPPED)

    def _supervise(self) -> None:
        while not self.stop_event.is_set():
            if not self.throttle.acquire(self.stop_event):
                break

            run_started = self._clock()
            try:
                process = self._spawn()
            except DecoderError as e:
                logger.error(str(e))
                process = None
                self.last_exit_code = None
            else:
                if process is None:
                    break
                self._set_state(SupervisorState.RUNNING)
                self._pump(process)
                self.last_exit_code = self._reap(process)

            self.last_exit_time = self._clock()
            if self.stop_event.is_set():
                break

            if process is not None and self.last_exit_time - run_started >= self.stable_run_seconds:
                self.consecutive_failures = 0
            self.consecutive_failures += 1
            logger.warning(f"Decoder for {self.source.name} exited (code {self.last_exit_code}), "
                           f"failure {self.consecutive_failures}/{self.restart_budget}")

            if self.consecutive_failures > self.restart_budget:
                self._degrade()
                break

            self._set_state(SupervisorState.BACKOFF)
            delay = backoff_delay(self.consecutive_failures, self.backoff_initial, self.backoff_max)
            if self.stop_event.wait(delay):
                break
            self.restart_count += 1
            logger.info(f"🔄 Restarting decoder for {self.source.name} (restart {self.restart_count})")

    def _degrade(self) -> None:
        error = StreamDegradedError(
            f"Decoder for {self.source.name} failed {self.consecutive_failures} times in a row")
        self.degraded = True
        logger.error(f"⚠️ {error}")
        if self.on_degraded:
            self.on_degraded(self.source.source_id, error)

    def stop(self) -> None:
        """Stop supervision; idempotent. Returns after the process is reaped."""
        self.stop_event.set()
        with self._process_lock:
            process = self._process
        if process is not None:
            self._terminate(process)
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout=self.terminate_timeout)
            if self.thread.is_alive():
                logger.warning(f"Decoder supervisor for {self.source.name} did not stop cleanly")

    def cleanup(self) -> bool:
        """Terminate the decoder and block until it is reaped.

        Returns:
            True if no decoder process remains
        """
        self.stop()
        with self._process_lock:
            process = self._process
        if process is not None:
            self._terminate(process)
            return process.poll() is not None
        return True

    @property
    def pid(self) -> Optional[int]:
        with self._process_lock:
            return self._process.pid if self._process is not None else None
