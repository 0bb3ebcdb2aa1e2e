from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Info


class ReloaderMetrics:
    """Prometheus metrics exported by the reloader on ``/metrics``.

    Every collector is registered against an explicit registry so each process
    (and each test) owns its own set of series instead of sharing the global
    default registry.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.rollouts_total = Counter(
            "deployment_rollouts_total",
            "Total number of deployment rollouts",
            ["namespace", "secret", "deployment", "restarted"],
            registry=self.registry,
        )
        self.events_total = Counter(
            "secret_reload_events_total",
            "Total Secret update events delivered to the restart scheduler",
            ["namespace", "secret"],
            registry=self.registry,
        )
        self.coalesced_total = Counter(
            "secret_reload_coalesced_total",
            "Total Secret update events absorbed by an already pending restart",
            ["namespace", "secret"],
            registry=self.registry,
        )
        self.conflict_retries_total = Counter(
            "secret_reload_conflict_retries_total",
            "Total deployment writes retried after a resourceVersion conflict",
            ["namespace", "deployment"],
            registry=self.registry,
        )
        self.watch_errors_total = Counter(
            "secret_reload_watch_errors_total",
            "Total Kubernetes watch errors",
            registry=self.registry,
        )
        self.watch_reconnects_total = Counter(
            "secret_reload_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            registry=self.registry,
        )
        self.pending_restart = Gauge(
            "secret_reload_pending_restart",
            "Whether a restart is currently waiting out its delay or in flight (1=yes, 0=no)",
            registry=self.registry,
        )
        self.build_info = Info(
            "secret_reload",
            "Build information for the reloader",
            registry=self.registry,
        )
