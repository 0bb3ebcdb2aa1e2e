from __future__ import annotations

import queue
import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from prometheus_client import CollectorRegistry

from reloader.src.feed import CacheSyncError, ChangeFeed
from reloader.src.metrics import ReloaderMetrics
from reloader.src.models import ChangeEvent, WatchTarget

TARGET = WatchTarget(namespace="prod", secret_name="app-tls")


def make_secret(name: str, resource_version: str) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, resource_version=resource_version),
        data={"tls.crt": "c2VjcmV0"},
    )


def _fake_core_api(
    list_versions: list[str] | None = None,
    item_sets: list[list[SimpleNamespace]] | None = None,
) -> SimpleNamespace:
    versions = list(list_versions or ["100"])
    items = list(item_sets or [[make_secret("app-tls", "10"), make_secret("other", "11")]])
    calls = 0

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal calls
        index = min(calls, len(versions) - 1)
        calls += 1
        return SimpleNamespace(
            metadata=SimpleNamespace(resource_version=versions[index]),
            items=items[min(index, len(items) - 1)],
        )

    return SimpleNamespace(list_namespaced_secret=fake_list)


def _make_feed(
    core_api: Any = None,
    events: queue.Queue[ChangeEvent] | None = None,
    metrics: ReloaderMetrics | None = None,
) -> ChangeFeed:
    return ChangeFeed(
        core_api=core_api or _fake_core_api(),
        target=TARGET,
        events=events if events is not None else queue.Queue(),
        metrics=metrics,
        clock=lambda: 42.0,
    )


def _drain(events: queue.Queue[ChangeEvent]) -> list[ChangeEvent]:
    drained = []
    while not events.empty():
        drained.append(events.get_nowait())
    return drained


# ---------------------------------------------------------------------------
# Initial sync
# ---------------------------------------------------------------------------


def test_sync_populates_view_and_marks_ready() -> None:
    feed = _make_feed()

    feed.sync()

    assert feed.ready.is_set()
    assert feed.resource_version == "100"
    assert feed.known_resource_version("app-tls") == "10"
    assert feed.known_resource_version("other") == "11"


def test_sync_failure_is_fatal() -> None:
    def fake_list(**kwargs: Any) -> SimpleNamespace:
        raise ApiException(status=500, reason="etcd unavailable")

    feed = _make_feed(core_api=SimpleNamespace(list_namespaced_secret=fake_list))

    with pytest.raises(CacheSyncError, match="namespace prod"):
        feed.sync()
    assert not feed.ready.is_set()


def test_sync_tolerates_missing_watched_secret() -> None:
    feed = _make_feed(core_api=_fake_core_api(item_sets=[[make_secret("other", "11")]]))

    feed.sync()

    assert feed.ready.is_set()
    assert feed.known_resource_version("app-tls") is None


def test_run_requires_sync_first() -> None:
    feed = _make_feed()

    with pytest.raises(RuntimeError, match="before a successful sync"):
        feed.run(stop_event=threading.Event())


# ---------------------------------------------------------------------------
# Event filtering
# ---------------------------------------------------------------------------


def test_update_of_watched_secret_is_delivered() -> None:
    events: queue.Queue[ChangeEvent] = queue.Queue()
    registry = CollectorRegistry()
    feed = _make_feed(events=events, metrics=ReloaderMetrics(registry))
    feed.sync()

    delivered = feed.handle_event("MODIFIED", make_secret("app-tls", "12"))

    assert delivered == ChangeEvent(
        namespace="prod", secret_name="app-tls", resource_version="12", observed_at=42.0
    )
    assert _drain(events) == [delivered]
    assert (
        registry.get_sample_value(
            "secret_reload_events_total", {"namespace": "prod", "secret": "app-tls"}
        )
        == 1
    )


def test_updates_to_other_secrets_are_filtered() -> None:
    events: queue.Queue[ChangeEvent] = queue.Queue()
    feed = _make_feed(events=events)
    feed.sync()

    assert feed.handle_event("MODIFIED", make_secret("other", "12")) is None
    assert feed.handle_event("MODIFIED", make_secret("app-tls-backup", "13")) is None

    assert _drain(events) == []
    assert feed.known_resource_version("other") == "12"


def test_added_and_deleted_events_never_trigger() -> None:
    events: queue.Queue[ChangeEvent] = queue.Queue()
    feed = _make_feed(events=events)
    feed.sync()

    assert feed.handle_event("DELETED", make_secret("app-tls", "12")) is None
    assert feed.known_resource_version("app-tls") is None
    assert feed.handle_event("ADDED", make_secret("app-tls", "13")) is None
    assert feed.known_resource_version("app-tls") == "13"
    assert feed.handle_event("BOOKMARK", make_secret("app-tls", "14")) is None

    assert _drain(events) == []


def test_replayed_update_with_same_resource_version_is_skipped() -> None:
    events: queue.Queue[ChangeEvent] = queue.Queue()
    feed = _make_feed(events=events)
    feed.sync()

    assert feed.handle_event("MODIFIED", make_secret("app-tls", "10")) is None
    assert _drain(events) == []


def test_repeated_updates_are_each_delivered() -> None:
    events: queue.Queue[ChangeEvent] = queue.Queue()
    feed = _make_feed(events=events)
    feed.sync()

    feed.handle_event("MODIFIED", make_secret("app-tls", "12"))
    feed.handle_event("MODIFIED", make_secret("app-tls", "13"))

    assert [e.resource_version for e in _drain(events)] == ["12", "13"]


def test_full_queue_drops_and_counts_event() -> None:
    events: queue.Queue[ChangeEvent] = queue.Queue(maxsize=1)
    registry = CollectorRegistry()
    feed = _make_feed(events=events, metrics=ReloaderMetrics(registry))
    feed.sync()

    feed.handle_event("MODIFIED", make_secret("app-tls", "12"))
    feed.handle_event("MODIFIED", make_secret("app-tls", "13"))

    assert [e.resource_version for e in _drain(events)] == ["12"]
    assert (
        registry.get_sample_value(
            "secret_reload_coalesced_total", {"namespace": "prod", "secret": "app-tls"}
        )
        == 1
    )


def test_event_without_name_is_ignored() -> None:
    feed = _make_feed()
    feed.sync()

    assert feed.handle_event("MODIFIED", SimpleNamespace(metadata=None)) is None


# ---------------------------------------------------------------------------
# Watch loop
# ---------------------------------------------------------------------------


def test_run_delivers_events_and_tracks_resource_version() -> None:
    events: queue.Queue[ChangeEvent] = queue.Queue()
    feed = _make_feed(events=events)
    feed.sync()

    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    seen_versions: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs.get("resource_version"))
        if len(seen_versions) == 1:
            return iter(
                [
                    {"type": "MODIFIED", "object": make_secret("other", "101")},
                    {"type": "MODIFIED", "object": make_secret("app-tls", "102")},
                ]
            )
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reloader.src.feed.watch.Watch", return_value=mock_watcher):
        feed.run(stop_event=shutdown_event)

    assert [e.resource_version for e in _drain(events)] == ["102"]
    assert seen_versions == ["100", "102"]
    assert mock_watcher.stop.call_count >= 1
    assert not feed.ready.is_set()


def test_run_relists_on_410_and_reports_drift() -> None:
    events: queue.Queue[ChangeEvent] = queue.Queue()
    core_api = _fake_core_api(
        list_versions=["100", "200"],
        item_sets=[[make_secret("app-tls", "10")], [make_secret("app-tls", "150")]],
    )
    feed = _make_feed(core_api=core_api, events=events)
    feed.sync()

    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    seen_versions: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs.get("resource_version"))
        if len(seen_versions) == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reloader.src.feed.watch.Watch", return_value=mock_watcher):
        feed.run(stop_event=shutdown_event)

    assert seen_versions == ["100", "200"]
    assert [e.resource_version for e in _drain(events)] == ["150"]


def test_run_relist_without_drift_delivers_nothing() -> None:
    events: queue.Queue[ChangeEvent] = queue.Queue()
    core_api = _fake_core_api(
        list_versions=["100", "200"],
        item_sets=[[make_secret("app-tls", "10")], [make_secret("app-tls", "10")]],
    )
    feed = _make_feed(core_api=core_api, events=events)
    feed.sync()

    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    calls = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reloader.src.feed.watch.Watch", return_value=mock_watcher):
        feed.run(stop_event=shutdown_event)

    assert _drain(events) == []


def test_run_keeps_watching_after_rbac_denied() -> None:
    registry = CollectorRegistry()
    feed = _make_feed(metrics=ReloaderMetrics(registry))
    feed.sync()
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    ready_seen: list[bool] = []
    call_count = 0

    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise ApiException(status=403, reason="forbidden")
        ready_seen.append(feed.ready.is_set())
        if call_count == 3:
            shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reloader.src.feed.watch.Watch", return_value=mock_watcher),
        patch("reloader.src.feed.threading.Event.wait", side_effect=fake_wait),
        patch("reloader.src.feed.random.random", return_value=0.5),
    ):
        feed.run(stop_event=shutdown_event)

    # Not ready while access is denied, ready again once a stream succeeds.
    assert ready_seen == [False, True]
    assert wait_values == [pytest.approx(1.0)]
    assert registry.get_sample_value("secret_reload_watch_errors_total") == 1


def test_run_applies_exponential_backoff_on_api_error() -> None:
    registry = CollectorRegistry()
    feed = _make_feed(metrics=ReloaderMetrics(registry))
    feed.sync()
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    call_count = 0

    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reloader.src.feed.watch.Watch", return_value=mock_watcher),
        patch("reloader.src.feed.threading.Event.wait", side_effect=fake_wait),
        patch("reloader.src.feed.random.random", return_value=0.5),
    ):
        feed.run(stop_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]
    assert registry.get_sample_value("secret_reload_watch_errors_total") == 3
    assert registry.get_sample_value("secret_reload_watch_reconnects_total") == 3


def test_run_handles_unexpected_exception_with_backoff() -> None:
    feed = _make_feed()
    feed.sync()
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    call_count = 0

    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise ConnectionResetError("peer reset")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reloader.src.feed.watch.Watch", return_value=mock_watcher),
        patch("reloader.src.feed.threading.Event.wait", side_effect=fake_wait),
        patch("reloader.src.feed.random.random", return_value=0.5),
    ):
        feed.run(stop_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0)]
    assert call_count == 2


def test_request_stop_interrupts_active_watch() -> None:
    feed = _make_feed()
    feed.sync()
    mock_watcher = MagicMock()
    entered = threading.Event()
    stopped = threading.Event()

    def blocking_stream(*args: Any, **kwargs: Any) -> Any:
        entered.set()
        stopped.wait(timeout=5)
        return iter([])

    mock_watcher.stream.side_effect = blocking_stream
    mock_watcher.stop.side_effect = stopped.set

    with patch("reloader.src.feed.watch.Watch", return_value=mock_watcher):
        runner = threading.Thread(target=feed.run, args=(threading.Event(),), daemon=True)
        runner.start()
        assert entered.wait(timeout=5)
        feed.request_stop()
        runner.join(timeout=5)

    assert not runner.is_alive()
    mock_watcher.stop.assert_called()
