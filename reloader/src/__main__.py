from __future__ import annotations

import json
import logging
import os
import queue
import re
import signal
import sys
import threading
from collections.abc import Sequence

from kubernetes.client import AppsV1Api
from kubernetes.config.config_exception import ConfigException

from reloader.src.config import ReloaderConfig, load_config
from reloader.src.feed import CacheSyncError, ChangeFeed
from reloader.src.health import start_health_server
from reloader.src.kube import build_clients, load_kube_configuration
from reloader.src.metrics import ReloaderMetrics
from reloader.src.models import ChangeEvent, MutationTarget, WatchTarget
from reloader.src.mutator import ConflictSafeMutator
from reloader.src.recorder import PrometheusOutcomeRecorder
from reloader.src.retry import Backoff
from reloader.src.scheduler import RestartScheduler

RUNTIME_VERSION = "0.1.0"
EVENT_QUEUE_SIZE = 16
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def build_scheduler(
    cfg: ReloaderConfig, apps_api: AppsV1Api, metrics: ReloaderMetrics
) -> RestartScheduler:
    """Wire mutator, recorder and scheduler for the configured targets."""
    watch_target = WatchTarget(namespace=cfg.namespace, secret_name=cfg.secret_name)
    mutation_target = MutationTarget(namespace=cfg.namespace, deployment_name=cfg.deployment_name)
    mutator = ConflictSafeMutator(
        apps_api=apps_api,
        target=mutation_target,
        annotation_key=cfg.annotation_key,
        backoff=Backoff(steps=cfg.conflict_retries),
        metrics=metrics,
    )
    return RestartScheduler(
        mutator=mutator,
        recorder=PrometheusOutcomeRecorder(metrics),
        watch_target=watch_target,
        mutation_target=mutation_target,
        delay_seconds=cfg.delay_seconds,
        metrics=metrics,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Entrypoint: resolve config, sync the Secret feed, and run until signalled."""
    cfg = load_config(argv)
    configure_logging(cfg.log_level)

    metrics = ReloaderMetrics()
    metrics.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        load_kube_configuration(inside_cluster=cfg.inside_cluster, kubeconfig=cfg.kubeconfig)
    except ConfigException:
        LOGGER.exception("Failed to load Kubernetes configuration")
        sys.exit(1)
    core_api, apps_api = build_clients()

    events: queue.Queue[ChangeEvent] = queue.Queue(maxsize=EVENT_QUEUE_SIZE)
    feed = ChangeFeed(
        core_api=core_api,
        target=WatchTarget(namespace=cfg.namespace, secret_name=cfg.secret_name),
        events=events,
        metrics=metrics,
    )
    scheduler = build_scheduler(cfg, apps_api, metrics)

    try:
        feed.sync()
    except CacheSyncError:
        LOGGER.exception("Failed to sync secret cache")
        sys.exit(1)

    health_server = start_health_server(
        ready=feed.ready, registry=metrics.registry, port=cfg.metrics_port
    )

    shutdown_event = threading.Event()
    feed_failed = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    def _run_feed() -> None:
        try:
            feed.run(stop_event=shutdown_event)
            if not shutdown_event.is_set():
                LOGGER.error("Secret watch exited without a stop signal; terminating process")
                feed_failed.set()
        except Exception:
            LOGGER.exception("Secret watch crashed")
            feed_failed.set()
        finally:
            shutdown_event.set()

    feed_thread = threading.Thread(target=_run_feed, name="secret-feed", daemon=True)
    scheduler_thread = threading.Thread(
        target=scheduler.run,
        args=(events, shutdown_event),
        name="restart-scheduler",
        daemon=True,
    )
    feed_thread.start()
    scheduler_thread.start()

    LOGGER.info(
        "Watching secret %s in namespace %s; restarting deployment %s after %.1fs",
        cfg.secret_name,
        cfg.namespace,
        cfg.deployment_name,
        cfg.delay_seconds,
    )
    shutdown_event.wait()

    feed.request_stop()
    scheduler_thread.join(timeout=cfg.shutdown_timeout_seconds)
    scheduler.shutdown(timeout=cfg.shutdown_timeout_seconds)
    feed_thread.join(timeout=cfg.shutdown_timeout_seconds)
    health_server.shutdown()
    LOGGER.info("Reloader stopped")
    if feed_failed.is_set():
        sys.exit(1)


if __name__ == "__main__":
    main()
