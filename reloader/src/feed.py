from __future__ import annotations

import logging
import queue
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from reloader.src.metrics import ReloaderMetrics
from reloader.src.models import ChangeEvent, WatchTarget


class CacheSyncError(RuntimeError):
    """The initial Secret listing failed; the process cannot start watching."""


class ChangeFeed:
    """List-then-watch Secrets in one namespace and report updates to one of them.

    The feed keeps a local view of every Secret in the namespace as a map of
    name to ``resourceVersion``.  Only ``MODIFIED`` events for the configured
    Secret produce a :class:`ChangeEvent`; everything else just refreshes the
    view.  Delivery is at-least-once, so consumers must tolerate duplicates.

    Events are handed to the scheduler through a bounded queue with
    ``put_nowait`` so a slow consumer never stalls the watch stream.  When the
    queue is full the event is dropped: an event already queued will start a
    restart cycle that observes the same change.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        target: WatchTarget,
        events: queue.Queue[ChangeEvent],
        metrics: ReloaderMetrics | None = None,
        logger: logging.Logger | None = None,
        watch_timeout_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.core_api = core_api
        self.target = target
        self.events = events
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)
        self.watch_timeout_seconds = watch_timeout_seconds
        self.clock = clock

        self.ready = threading.Event()
        self._resource_versions: dict[str, str | None] = {}
        self._list_resource_version: str | None = None
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def resource_version(self) -> str | None:
        """The resource version the next watch stream starts from."""
        return self._list_resource_version

    def known_resource_version(self, secret_name: str) -> str | None:
        return self._resource_versions.get(secret_name)

    def _list_secrets(self) -> Any:
        return self.core_api.list_namespaced_secret(namespace=self.target.namespace)

    def _replace_view(self, secrets: Any) -> None:
        view: dict[str, str | None] = {}
        for secret in getattr(secrets, "items", None) or []:
            metadata = getattr(secret, "metadata", None)
            name = getattr(metadata, "name", None)
            if name:
                view[name] = getattr(metadata, "resource_version", None)
        self._resource_versions = view
        self._list_resource_version = getattr(
            getattr(secrets, "metadata", None), "resource_version", None
        )

    def sync(self) -> None:
        """Perform the initial full list and mark the feed ready.

        Raises :class:`CacheSyncError` on any failure; startup does not retry.
        """
        try:
            secrets = self._list_secrets()
        except Exception as exc:
            self.ready.clear()
            raise CacheSyncError(
                f"initial list of secrets in namespace {self.target.namespace} failed: {exc}"
            ) from exc

        self._replace_view(secrets)
        if self.target.secret_name not in self._resource_versions:
            self.logger.warning(
                "Secret %s not found in namespace %s; waiting for it to appear",
                self.target.secret_name,
                self.target.namespace,
            )
        self.ready.set()
        self.logger.info(
            "Synced %d secret(s) in namespace %s at resourceVersion %s",
            len(self._resource_versions),
            self.target.namespace,
            self._list_resource_version,
        )

    def _deliver(self, resource_version: str | None) -> ChangeEvent:
        event = ChangeEvent(
            namespace=self.target.namespace,
            secret_name=self.target.secret_name,
            resource_version=resource_version,
            observed_at=self.clock(),
        )
        if self.metrics is not None:
            self.metrics.events_total.labels(
                namespace=self.target.namespace, secret=self.target.secret_name
            ).inc()
        try:
            self.events.put_nowait(event)
        except queue.Full:
            self.logger.debug(
                "Event queue full; dropping update for %s/%s",
                self.target.namespace,
                self.target.secret_name,
            )
            if self.metrics is not None:
                self.metrics.coalesced_total.labels(
                    namespace=self.target.namespace, secret=self.target.secret_name
                ).inc()
        return event

    def handle_event(self, event_type: str, secret: Any) -> ChangeEvent | None:
        """Apply one watch event to the local view.

        Returns the delivered :class:`ChangeEvent` when the event is an update
        of the watched Secret, otherwise ``None``.
        """
        metadata = getattr(secret, "metadata", None)
        name = getattr(metadata, "name", None)
        if not name:
            return None
        resource_version = getattr(metadata, "resource_version", None)

        if event_type == "DELETED":
            self._resource_versions.pop(name, None)
            return None
        if event_type not in {"ADDED", "MODIFIED"}:
            return None

        previous = self._resource_versions.get(name)
        self._resource_versions[name] = resource_version

        if event_type != "MODIFIED" or name != self.target.secret_name:
            return None
        if previous is not None and previous == resource_version:
            self.logger.debug(
                "Ignoring replayed update for %s/%s at resourceVersion %s",
                self.target.namespace,
                name,
                resource_version,
            )
            return None

        self.logger.info(
            "Secret %s/%s changed (resourceVersion %s)",
            self.target.namespace,
            name,
            resource_version,
        )
        return self._deliver(resource_version)

    def _relist(self) -> None:
        """Refresh the view after ``410 Gone`` and report drift of the watched Secret."""
        previous = self._resource_versions.get(self.target.secret_name)
        self._replace_view(self._list_secrets())
        current = self._resource_versions.get(self.target.secret_name)
        if previous is not None and current is not None and previous != current:
            self.logger.info(
                "Secret %s/%s changed while the watch was disconnected",
                self.target.namespace,
                self.target.secret_name,
            )
            self._deliver(current)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _backoff_wait(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Stream Secret events until stopped.

        Must be called after :meth:`sync`.  Streams that end on their server
        side timeout are reopened from the last seen resource version.
        ``410 Gone`` triggers a re-list.  ``401``/``403`` clear ``ready`` until a
        stream succeeds again.  Errors back off exponentially with jitter,
        capped at 30 s.
        """
        if not self.ready.is_set():
            raise RuntimeError("ChangeFeed.run() called before a successful sync()")

        stop = stop_event or threading.Event()
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0 and self.metrics is not None:
                    self.metrics.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.core_api.list_namespaced_secret,
                    namespace=self.target.namespace,
                    resource_version=self._list_resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and metadata.resource_version:
                        self._list_resource_version = metadata.resource_version

                    self.handle_event(event_type=str(event.get("type", "")), secret=obj)
                    self.ready.set()

                self.ready.set()
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        self._relist()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self._access_denied("410 re-list", relist_exc.status)
                        else:
                            self.logger.exception("Failed to re-list after 410")
                        self._count_watch_error()
                        self._list_resource_version = None
                        backoff_seconds = self._backoff_wait(stop, backoff_seconds)
                    except Exception:
                        self.logger.exception("Unexpected error re-listing after 410")
                        self._count_watch_error()
                        self._list_resource_version = None
                        backoff_seconds = self._backoff_wait(stop, backoff_seconds)
                    continue

                if exc.status in {401, 403}:
                    self._access_denied("watch", exc.status)
                else:
                    self.logger.exception("Kubernetes API watch error")
                self._count_watch_error()
                backoff_seconds = self._backoff_wait(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                self._count_watch_error()
                backoff_seconds = self._backoff_wait(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()

    def _count_watch_error(self) -> None:
        if self.metrics is not None:
            self.metrics.watch_errors_total.inc()

    def _access_denied(self, phase: str, status: int | None) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s (status=%s). "
            "Check RBAC and service account permissions.",
            phase,
            status,
        )
        self.ready.clear()
