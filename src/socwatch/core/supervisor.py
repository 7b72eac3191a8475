"""Lifecycle of the privileged powermetrics child process."""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import threading
import time
from collections.abc import Iterator
from pathlib import Path

import psutil

from socwatch.config import SupervisorConfig
from socwatch.errors import FatalFailure, RecoverableFailure, SpawnError
from socwatch.models.runtime import SupervisorState

logger = logging.getLogger("socwatch.supervisor")


def build_command(template: tuple[str, ...], output: Path, interval: float) -> list[str]:
    """Fill the ``{output}`` and ``{interval_ms}`` placeholders of a command template."""
    interval_ms = str(max(1, round(interval * 1000)))
    return [
        part.replace("{output}", str(output)).replace("{interval_ms}", interval_ms)
        for part in template
    ]


def cleanup_output_files(directory: Path, prefix: str) -> int:
    """Remove leftover output files whose owning socwatch process is gone."""
    removed = 0
    own_pid = os.getpid()
    try:
        entries = list(directory.iterdir())
    except OSError:
        return 0
    for path in entries:
        if not path.name.startswith(prefix):
            continue
        owner = _owner_pid(path.name[len(prefix):])
        if owner is not None and owner != own_pid and psutil.pid_exists(owner):
            continue
        try:
            path.unlink()
            removed += 1
        except OSError as exc:
            logger.debug("Cannot remove stale output %s: %s", path, exc)
    if removed:
        logger.debug("Removed %d stale output files", removed)
    return removed


def _owner_pid(suffix: str) -> int | None:
    head = suffix.split("_", 1)[0]
    return int(head) if head.isdigit() else None


def _descendants(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def _signal_all(procs: list[psutil.Process], kill: bool) -> None:
    for p in procs:
        try:
            if kill:
                p.kill()
            else:
                p.terminate()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            logger.debug("Access denied signalling PID %d", p.pid)


class ProcessSupervisor:
    """Owns the sampler child and guarantees it is reclaimed.

    The child writes to a transient file which ``poll_output`` re-opens and
    reads from the last offset. ``shutdown`` is safe to call any number of
    times and from any exit path; the context manager form calls it on exit.
    """

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        interval: float = 1.0,
        max_count: int = 0,
        stop_event: threading.Event | None = None,
        output_dir: Path | None = None,
    ) -> None:
        self._config = config or SupervisorConfig()
        self._interval = interval
        self._max_count = max_count
        self._stop = stop_event or threading.Event()
        self._output_dir = Path(output_dir) if output_dir else Path(tempfile.gettempdir())
        self._state = SupervisorState()
        self._closed = False

    def __enter__(self) -> ProcessSupervisor:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()

    # --- Introspection ---

    @property
    def pid(self) -> int | None:
        proc = self._state.process
        return proc.pid if proc is not None else None

    @property
    def running(self) -> bool:
        proc = self._state.process
        return proc is not None and proc.poll() is None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def output_path(self) -> Path | None:
        return self._state.output_path

    @property
    def samples_since_spawn(self) -> int:
        return self._state.samples_since_spawn

    @property
    def restart_attempts(self) -> int:
        return self._state.restart_attempts

    @property
    def spawn_count(self) -> int:
        return self._state.spawn_count

    @property
    def last_exit_status(self) -> int | None:
        return self._state.last_exit_status

    # --- Lifecycle ---

    def start(self) -> None:
        """Spawn a fresh child writing to a new output file.

        Raises SpawnError if the process cannot be created or exits with a
        failure status inside the spawn grace period.
        """
        if self._closed:
            raise SpawnError("supervisor has been shut down")
        self._terminate_child()

        cleanup_output_files(self._output_dir, self._config.output_prefix)
        output = self._output_dir / (
            f"{self._config.output_prefix}{os.getpid()}_{time.time_ns()}"
        )
        cmd = build_command(self._config.command, output, self._interval)

        logger.info("Starting sampler: %s", " ".join(cmd))
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise SpawnError(f"Failed to spawn {cmd[0]}: {exc}") from exc

        if self._config.spawn_grace > 0:
            try:
                status = proc.wait(timeout=self._config.spawn_grace)
            except subprocess.TimeoutExpired:
                status = None
            if status is not None and status != 0:
                self._state.last_exit_status = status
                output.unlink(missing_ok=True)
                raise SpawnError(
                    f"{cmd[0]} exited immediately with status {status} "
                    "(are elevated privileges available?)"
                )

        st = self._state
        st.process = proc
        st.output_path = output
        st.read_offset = 0
        st.samples_since_spawn = 0
        st.spawn_count += 1
        logger.info("Sampler started with PID %d, output %s", proc.pid, output)

    def poll_output(self) -> Iterator[bytes]:
        """Yield bytes appended to the output file since the last read.

        Yields nothing when the file does not exist yet or has not grown.
        """
        st = self._state
        path = st.output_path
        if path is None:
            return
        try:
            f = open(path, "rb")
        except FileNotFoundError:
            return
        with f:
            size = os.fstat(f.fileno()).st_size
            if size < st.read_offset:
                logger.warning("Output %s shrank to %d bytes; rereading", path, size)
                st.read_offset = 0
            f.seek(st.read_offset)
            while True:
                chunk = f.read(self._config.read_chunk_bytes)
                if not chunk:
                    return
                st.read_offset += len(chunk)
                yield chunk

    def poll_exit(self) -> int | None:
        """Exit status if the child has terminated, else None."""
        proc = self._state.process
        if proc is None:
            return None
        status = proc.poll()
        if status is not None:
            self._state.last_exit_status = status
        return status

    def on_sample_emitted(self) -> bool:
        """Count a parsed Sample. Returns True once the child is due for replacement.

        The caller performs the replacement with ``restart``.
        """
        st = self._state
        st.samples_since_spawn += 1
        st.restart_attempts = 0
        if self._max_count > 0 and st.samples_since_spawn >= self._max_count:
            logger.info(
                "Reached %d samples; sampler due for restart", st.samples_since_spawn
            )
            return True
        return False

    def restart(self) -> None:
        """Gracefully replace the child with a new one."""
        self._terminate_child()
        self.start()

    def on_child_exit(self, status: int | None) -> bool:
        """Handle an unexpected child exit with capped exponential backoff.

        Returns True once a new child is running, False if cancelled during
        the backoff wait. Raises FatalFailure when the consecutive failure
        budget is exhausted.
        """
        st = self._state
        st.last_exit_status = status
        st.restart_attempts += 1
        failure = RecoverableFailure(status, st.restart_attempts)

        if st.restart_attempts > self._config.max_failures:
            raise FatalFailure(
                f"Sampler exited {st.restart_attempts} times in a row "
                f"(last status {status}); giving up"
            ) from failure

        delay = min(
            self._config.backoff_base * 2 ** (st.restart_attempts - 1),
            self._config.backoff_cap,
        )
        logger.warning("%s; restarting in %.1fs", failure, delay)
        self._terminate_child()
        if self._stop.wait(delay):
            logger.info("Restart cancelled")
            return False
        self.start()
        return True

    def shutdown(self) -> None:
        """Terminate the child (SIGTERM, bounded wait, SIGKILL) and clean up.

        Idempotent. Raises FatalFailure if the child survives the forced kill.
        """
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down sampler")
        self._terminate_child()

    # --- Internals ---

    def _terminate_child(self) -> None:
        st = self._state
        proc = st.process
        try:
            if proc is not None:
                if proc.poll() is None:
                    self._terminate_tree(proc)
                st.last_exit_status = proc.returncode
        finally:
            st.process = None
            if st.output_path is not None:
                try:
                    st.output_path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.debug("Cannot remove %s: %s", st.output_path, exc)
                st.output_path = None
            st.read_offset = 0

    def _terminate_tree(self, proc: subprocess.Popen) -> None:
        timeout = self._config.terminate_timeout
        descendants = _descendants(proc.pid)
        logger.debug(
            "Terminating sampler PID %d and %d descendants", proc.pid, len(descendants)
        )

        _signal_all(descendants, kill=False)
        try:
            proc.terminate()
        except ProcessLookupError:
            pass

        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Sampler PID %d ignored SIGTERM for %.1fs; killing", proc.pid, timeout
            )
            _signal_all(descendants, kill=True)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired as exc:
                raise FatalFailure(
                    f"Sampler PID {proc.pid} survived SIGKILL"
                ) from exc

        if descendants:
            _gone, alive = psutil.wait_procs(descendants, timeout=timeout)
            if alive:
                _signal_all(alive, kill=True)
                _gone, alive = psutil.wait_procs(alive, timeout=timeout)
            for p in alive:
                logger.warning("Sampler descendant PID %d is still running", p.pid)
        logger.info("Sampler PID %d exited with status %s", proc.pid, proc.returncode)
