from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from enum import Enum

from reloader.src.metrics import ReloaderMetrics
from reloader.src.models import ChangeEvent, MutationTarget, RestartOutcome, WatchTarget
from reloader.src.mutator import ConflictSafeMutator
from reloader.src.recorder import OutcomeRecorder

DEFAULT_DELAY_SECONDS = 120.0


class RestartState(Enum):
    IDLE = "idle"
    WAITING = "waiting"
    MUTATING = "mutating"


class RestartScheduler:
    """Turn a stream of Secret change events into delayed, coalesced restarts.

    At most one restart is pending at a time.  The first event of a burst
    schedules a restart ``delay_seconds`` after that event was observed;
    events arriving while the restart is still waiting are absorbed.  An
    event arriving while the mutation itself is in flight is not dropped: it
    starts a new cycle as soon as the current one has recorded its outcome.

    Key internal state (guarded by ``_lock``):
        ``_state``
            :class:`RestartState` of the single pending restart.
        ``_due_at``
            Monotonic time at which the waiting restart fires.
        ``_rerun_from``
            ``observed_at`` of the first event seen during a mutation, or
            ``None`` when no follow-up cycle is needed.
    """

    def __init__(
        self,
        mutator: ConflictSafeMutator,
        recorder: OutcomeRecorder,
        watch_target: WatchTarget,
        mutation_target: MutationTarget,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        metrics: ReloaderMetrics | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if delay_seconds < 0:
            raise ValueError(f"delay_seconds must be >= 0, got: {delay_seconds}")
        self.mutator = mutator
        self.recorder = recorder
        self.watch_target = watch_target
        self.mutation_target = mutation_target
        self.delay_seconds = delay_seconds
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        self._lock = threading.Lock()
        self._state = RestartState.IDLE
        self._due_at: float | None = None
        self._rerun_from: float | None = None
        self._worker: threading.Thread | None = None
        # Set on shutdown to cut a waiting delay short.
        self._cancel_wait = threading.Event()
        self._idle = threading.Condition(self._lock)

    @property
    def state(self) -> RestartState:
        with self._lock:
            return self._state

    @property
    def due_at(self) -> float | None:
        with self._lock:
            return self._due_at

    def _set_pending_gauge(self, pending: bool) -> None:
        if self.metrics is not None:
            self.metrics.pending_restart.set(1 if pending else 0)

    def _start_cycle_locked(self, observed_at: float) -> None:
        self._state = RestartState.WAITING
        self._due_at = observed_at + self.delay_seconds
        self._set_pending_gauge(True)
        self._worker = threading.Thread(
            target=self._run_cycle,
            name="restart-worker",
            daemon=True,
        )
        self._worker.start()

    def submit(self, event: ChangeEvent) -> bool:
        """Accept one change event.  Returns True if it started a new cycle."""
        with self._lock:
            if self._state is RestartState.IDLE:
                self._start_cycle_locked(event.observed_at)
                self.logger.info(
                    "Secret %s changed, waiting %.1fs before restarting deployment %s",
                    self.watch_target.secret_name,
                    self.delay_seconds,
                    self.mutation_target.deployment_name,
                )
                return True

            if self._state is RestartState.MUTATING and self._rerun_from is None:
                self._rerun_from = event.observed_at
                self.logger.info(
                    "Secret %s changed during restart of %s; another restart will follow",
                    self.watch_target.secret_name,
                    self.mutation_target.deployment_name,
                )
            else:
                self.logger.debug(
                    "Coalesced update of secret %s into pending restart",
                    self.watch_target.secret_name,
                )
                if self.metrics is not None:
                    self.metrics.coalesced_total.labels(
                        namespace=self.watch_target.namespace,
                        secret=self.watch_target.secret_name,
                    ).inc()
            return False

    def _wait_until_due(self) -> None:
        while True:
            with self._lock:
                due_at = self._due_at
            remaining = (due_at or 0.0) - self.clock()
            if remaining <= 0:
                return
            if self._cancel_wait.wait(timeout=min(remaining, threading.TIMEOUT_MAX)):
                self.logger.warning(
                    "Shutdown requested; restarting deployment %s without waiting out the delay",
                    self.mutation_target.deployment_name,
                )
                return

    def _attempt(self) -> bool:
        try:
            return self.mutator.restart().succeeded
        except Exception:
            self.logger.exception(
                "Unexpected error restarting deployment %s/%s",
                self.mutation_target.namespace,
                self.mutation_target.deployment_name,
            )
            return False

    def _record(self, succeeded: bool) -> None:
        outcome = RestartOutcome(
            namespace=self.mutation_target.namespace,
            secret_name=self.watch_target.secret_name,
            deployment_name=self.mutation_target.deployment_name,
            succeeded=succeeded,
        )
        try:
            self.recorder.record(outcome)
        except Exception:
            self.logger.exception("Failed to record restart outcome %s", outcome)

    def _run_cycle(self) -> None:
        try:
            self._run_cycle_steps()
        finally:
            with self._lock:
                if self._state is not RestartState.IDLE:
                    self._state = RestartState.IDLE
                    self._due_at = None
                    self._rerun_from = None
                    self._set_pending_gauge(False)
                    self._idle.notify_all()

    def _run_cycle_steps(self) -> None:
        while True:
            try:
                self._wait_until_due()
            except Exception:
                self.logger.exception(
                    "Restart delay for deployment %s failed; restarting now",
                    self.mutation_target.deployment_name,
                )
            with self._lock:
                self._state = RestartState.MUTATING
                self._due_at = None

            succeeded = self._attempt()
            self._record(succeeded)

            with self._lock:
                rerun_from = self._rerun_from
                self._rerun_from = None
                if rerun_from is None:
                    self._state = RestartState.IDLE
                    self._set_pending_gauge(False)
                    self._idle.notify_all()
                    return
                self._state = RestartState.WAITING
                self._due_at = rerun_from + self.delay_seconds

    def run(self, events: queue.Queue[ChangeEvent], stop_event: threading.Event) -> None:
        """Consume change events from ``events`` until ``stop_event`` is set.

        Whatever is still queued when the stop arrives is submitted before
        returning, so a following :meth:`shutdown` fires it.
        """
        while not stop_event.is_set():
            try:
                event = events.get(timeout=0.5)
            except queue.Empty:
                continue
            self.submit(event)

        # Events queued before the stop still get a restart cycle.
        while True:
            try:
                event = events.get_nowait()
            except queue.Empty:
                return
            self.submit(event)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no restart is pending.  Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._state is RestartState.IDLE, timeout=timeout)

    def shutdown(self, timeout: float | None = None) -> bool:
        """Fire any waiting restart now and wait for the in-flight cycle to finish.

        Returns False if the cycle did not complete within ``timeout``.
        """
        self._cancel_wait.set()
        with self._lock:
            worker = self._worker
        if worker is None:
            return True
        worker.join(timeout=timeout)
        if worker.is_alive():
            self.logger.error(
                "Restart of deployment %s did not finish within %ss of shutdown",
                self.mutation_target.deployment_name,
                timeout,
            )
            return False
        return True
