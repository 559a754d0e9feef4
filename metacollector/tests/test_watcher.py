from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from metacollector.src.watcher import ResourceWatcher

EVENT_WAIT = "metacollector.src.watcher.threading.Event.wait"


def make_object(name: str, resource_version: str = "1") -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace="default", resource_version=resource_version)
    )


class FakeLister:
    def __init__(
        self,
        resource_versions: list[str] | None = None,
        item_sets: list[list[Any]] | None = None,
    ) -> None:
        self.resource_versions = list(resource_versions or ["100"])
        self.item_sets = list(item_sets or [[]])
        self.calls = 0

    def __call__(self, **kwargs: Any) -> SimpleNamespace:
        index = min(self.calls, len(self.resource_versions) - 1)
        self.calls += 1
        items = self.item_sets[min(index, len(self.item_sets) - 1)]
        return SimpleNamespace(
            metadata=SimpleNamespace(resource_version=self.resource_versions[index]),
            items=list(items),
        )


class Recorder:
    def __init__(self) -> None:
        self.listings: list[list[Any]] = []
        self.events: list[tuple[str, Any]] = []

    def on_list(self, items: list[Any]) -> None:
        self.listings.append(items)

    def on_event(self, event_type: str, obj: Any) -> None:
        self.events.append((event_type, obj))


def _make_watcher(
    list_fn: Any, recorder: Recorder | None = None
) -> tuple[ResourceWatcher, Recorder]:
    recorder = recorder or Recorder()
    watcher = ResourceWatcher(
        name="deployment",
        list_fn=list_fn,
        on_list=recorder.on_list,
        on_event=recorder.on_event,
        timeout_seconds=5,
    )
    return watcher, recorder


def _recording_wait(wait_values: list[float]) -> Any:
    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    return fake_wait


def test_run_forever_lists_then_forwards_watch_events() -> None:
    initial = make_object("web", "100")
    updated = make_object("web", "101")
    watcher, recorder = _make_watcher(FakeLister(["100"], [[initial]]))

    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    seen_versions: list[Any] = []
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        seen_versions.append(kwargs.get("resource_version"))
        if call_count == 1:
            return iter([{"type": "MODIFIED", "object": updated}, {"type": "BOOKMARK"}])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("metacollector.src.watcher.watch.Watch", return_value=mock_watcher):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert recorder.listings == [[initial]]
    assert recorder.events == [("MODIFIED", updated)]
    assert seen_versions == ["100", "101"]
    assert mock_watcher.stop.call_count >= 1
    assert not watcher.ready.is_set()


def test_run_forever_relists_on_410() -> None:
    first = make_object("a", "100")
    second = make_object("b", "200")
    watcher, recorder = _make_watcher(FakeLister(["100", "200"], [[first], [second]]))

    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    seen_versions: list[Any] = []
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        seen_versions.append(kwargs.get("resource_version"))
        if call_count == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("metacollector.src.watcher.watch.Watch", return_value=mock_watcher):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert seen_versions == ["100", "200"]
    assert recorder.listings == [[first], [second]]


def test_run_forever_retries_initial_list_on_transient_error() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    attempts = 0

    def flaky_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise ApiException(status=500, reason="temporary startup failure")
        return SimpleNamespace(metadata=SimpleNamespace(resource_version="100"), items=[])

    watcher, _ = _make_watcher(flaky_list)
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("metacollector.src.watcher.watch.Watch", return_value=mock_watcher),
        patch(EVENT_WAIT, side_effect=_recording_wait(wait_values)),
        patch("metacollector.src.watcher.random.random", return_value=0.5),
    ):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert attempts == 2
    assert wait_values == [pytest.approx(1.0)]
    assert mock_watcher.stream.call_count == 1


def test_run_forever_exits_fast_on_startup_rbac_denied() -> None:
    def forbidden(**kwargs: Any) -> SimpleNamespace:
        raise ApiException(status=403, reason="forbidden")

    watcher, recorder = _make_watcher(forbidden)
    watch_factory = MagicMock()

    with patch("metacollector.src.watcher.watch.Watch", watch_factory):
        watcher.run_forever(shutdown_event=threading.Event())

    watch_factory.assert_not_called()
    assert recorder.listings == []
    assert not watcher.ready.is_set()


def test_run_forever_exits_fast_on_watch_rbac_denied() -> None:
    wait_values: list[float] = []
    watcher, _ = _make_watcher(FakeLister())
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="unauthorized")

    with (
        patch("metacollector.src.watcher.watch.Watch", return_value=mock_watcher),
        patch(EVENT_WAIT, side_effect=_recording_wait(wait_values)),
    ):
        watcher.run_forever(shutdown_event=threading.Event())

    assert wait_values == []
    assert not watcher.ready.is_set()


def test_run_forever_applies_exponential_backoff_on_api_error() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    watcher, _ = _make_watcher(FakeLister())
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("metacollector.src.watcher.watch.Watch", return_value=mock_watcher),
        patch(EVENT_WAIT, side_effect=_recording_wait(wait_values)),
        patch("metacollector.src.watcher.random.random", return_value=0.5),
    ):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]


def test_run_forever_resets_backoff_after_successful_stream() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    watcher, _ = _make_watcher(FakeLister())
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count in (1, 3):
            raise ConnectionError("network down")
        if call_count == 2:
            return iter([])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("metacollector.src.watcher.watch.Watch", return_value=mock_watcher),
        patch(EVENT_WAIT, side_effect=_recording_wait(wait_values)),
        patch("metacollector.src.watcher.random.random", return_value=0.5),
    ):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(1.0)]


def test_run_forever_shutdown_event_stops_loop() -> None:
    shutdown_event = threading.Event()
    shutdown_event.set()
    lister = FakeLister()
    watcher, recorder = _make_watcher(lister)
    watch_factory = MagicMock()

    with patch("metacollector.src.watcher.watch.Watch", watch_factory):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert lister.calls == 0
    watch_factory.assert_not_called()
    assert recorder.events == []


def test_request_stop_interrupts_active_stream() -> None:
    watcher, _ = _make_watcher(FakeLister())
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        watcher.request_stop()
        return iter([{"type": "ADDED", "object": make_object("late")}])

    mock_watcher.stream.side_effect = patched_stream

    with patch("metacollector.src.watcher.watch.Watch", return_value=mock_watcher):
        watcher.run_forever(shutdown_event=threading.Event())

    assert mock_watcher.stop.call_count >= 1
    assert not watcher.ready.is_set()
