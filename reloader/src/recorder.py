from __future__ import annotations

from typing import Protocol

from reloader.src.metrics import ReloaderMetrics
from reloader.src.models import RestartOutcome


class OutcomeRecorder(Protocol):
    """Sink for completed restart cycles.

    Implementations must return promptly; the scheduler calls ``record`` on
    its worker thread and does not start the next cycle until it returns.
    """

    def record(self, outcome: RestartOutcome) -> None: ...


class PrometheusOutcomeRecorder:
    """Count restart outcomes in ``deployment_rollouts_total``."""

    def __init__(self, metrics: ReloaderMetrics) -> None:
        self.metrics = metrics

    def record(self, outcome: RestartOutcome) -> None:
        self.metrics.rollouts_total.labels(
            namespace=outcome.namespace,
            secret=outcome.secret_name,
            deployment=outcome.deployment_name,
            restarted="true" if outcome.succeeded else "false",
        ).inc()
