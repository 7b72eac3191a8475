"""Producer loop: sampler output -> parser -> aggregator -> snapshot store."""

from __future__ import annotations

import dataclasses
import logging
import threading

from socwatch.core.aggregator import RollingAggregator
from socwatch.core.host import HostSampler
from socwatch.core.parser import StreamParser
from socwatch.core.store import SnapshotStore
from socwatch.core.supervisor import ProcessSupervisor
from socwatch.errors import FatalFailure, SpawnError
from socwatch.models.enums import PipelineState
from socwatch.models.runtime import Sample

logger = logging.getLogger("socwatch.driver")

# Legal transitions; FAILED is reachable from every non-terminal state.
_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.STARTING: frozenset({PipelineState.RUNNING, PipelineState.DRAINING}),
    PipelineState.RUNNING: frozenset({PipelineState.RESTARTING, PipelineState.DRAINING}),
    PipelineState.RESTARTING: frozenset({PipelineState.RUNNING, PipelineState.DRAINING}),
    PipelineState.DRAINING: frozenset({PipelineState.STOPPED}),
    PipelineState.STOPPED: frozenset(),
    PipelineState.FAILED: frozenset(),
}


class PipelineDriver:
    """Runs the sampling pipeline as one cooperative lifecycle.

    ``run`` blocks in the calling thread; ``start`` runs it in a producer
    thread instead. Whichever way it ends (``stop``, a fatal error, or an
    unexpected exception) ``supervisor.shutdown()`` has completed before the
    state becomes STOPPED or FAILED.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        parser: StreamParser,
        aggregator: RollingAggregator,
        store: SnapshotStore,
        host: HostSampler | None = None,
        poll_timeout: float = 0.1,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._parser = parser
        self._aggregator = aggregator
        self._store = store
        self._host = host
        self._poll_timeout = poll_timeout
        self._stop = stop_event or threading.Event()
        self._state = PipelineState.STARTING
        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.error: BaseException | None = None
        self.malformed_count = 0
        self.restart_count = 0

    # --- Observation ---

    @property
    def state(self) -> PipelineState:
        with self._state_lock:
            return self._state

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def _set_state(self, new: PipelineState) -> None:
        with self._state_lock:
            old = self._state
            if old == new:
                return
            if new != PipelineState.FAILED and new not in _TRANSITIONS[old]:
                raise RuntimeError(f"Illegal pipeline transition {old.value} -> {new.value}")
            if old.terminal:
                raise RuntimeError(f"Pipeline already {old.value}")
            self._state = new
        logger.info("Pipeline %s -> %s", old.value, new.value)

    # --- Control ---

    def start(self) -> threading.Thread:
        """Run the pipeline in a non-daemon producer thread."""
        if self._thread is not None:
            raise RuntimeError("Pipeline already started")
        self._thread = threading.Thread(target=self.run, name="socwatch-pipeline")
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        """Request cancellation. The loop drains and shuts the child down."""
        self._stop.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the producer thread. Returns True if it has finished."""
        if self._thread is None:
            return self.state.terminal
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def run(self) -> PipelineState:
        try:
            self._run()
        except (SpawnError, FatalFailure) as exc:
            self.error = exc
            logger.error("Pipeline failed: %s", exc)
        except Exception as exc:
            self.error = exc
            logger.exception("Pipeline crashed")
        finally:
            self._finish()
        return self.state

    # --- Loop ---

    def _run(self) -> None:
        self._supervisor.start()
        self._set_state(PipelineState.RUNNING)

        while not self._stop.is_set():
            status = self._supervisor.poll_exit()
            ingested = self._pump()
            if status is not None and not self._stop.is_set():
                self._handle_exit(status)
                continue
            if not ingested:
                self._stop.wait(self._poll_timeout)

    def _pump(self) -> bool:
        """Drain available output through the parser. Returns True if data was ingested."""
        ingested = False
        for chunk in self._supervisor.poll_output():
            for result in self._parser.feed(chunk):
                if not result.ok:
                    self.malformed_count += 1
                    logger.warning(
                        "Dropping malformed record #%d: %s",
                        result.error.sequence, result.error.reason,
                    )
                    continue
                if not self._aggregator.ingest(self._enrich(result.sample)):
                    continue
                ingested = True
                self._store.publish(self._aggregator.snapshot())
                if self._supervisor.on_sample_emitted():
                    self._rotate()
                    return ingested
            if self._stop.is_set():
                break
        return ingested

    def _enrich(self, sample: Sample) -> Sample:
        if self._host is None:
            return sample
        return dataclasses.replace(
            sample, memory=self._host.memory(), io=self._host.io_rates()
        )

    def _rotate(self) -> None:
        # Planned replacement after max_count samples
        self._set_state(PipelineState.RESTARTING)
        self.restart_count += 1
        self._parser.reset()
        self._supervisor.restart()
        self._set_state(PipelineState.RUNNING)

    def _handle_exit(self, status: int) -> None:
        self._set_state(PipelineState.RESTARTING)
        self.restart_count += 1
        self._parser.reset()
        if self._supervisor.on_child_exit(status):
            self._set_state(PipelineState.RUNNING)

    def _finish(self) -> None:
        failed = self.error is not None
        if not failed and not self.state.terminal:
            self._set_state(PipelineState.DRAINING)
        try:
            self._supervisor.shutdown()
        except FatalFailure as exc:
            logger.error("Sampler could not be reclaimed: %s", exc)
            if self.error is None:
                self.error = exc
            failed = True
        if failed:
            self._set_state(PipelineState.FAILED)
        else:
            self._set_state(PipelineState.STOPPED)
