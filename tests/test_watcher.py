from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import List
from unittest.mock import MagicMock, patch

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from lib_publish_watcher.context import DaemonContext
from lib_publish_watcher.patterns import IgnoreRules
from lib_publish_watcher.watcher import DebounceTimer, RebuildEventHandler, RecursiveWatcher


def wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


# --- DebounceTimer ---------------------------------------------------------


def test_debounce_collapses_burst() -> None:
    calls: List[float] = []
    timer = DebounceTimer(0.2)
    try:
        for _ in range(5):
            timer.schedule(lambda: calls.append(time.monotonic()))
            time.sleep(0.02)
        time.sleep(0.5)
        assert len(calls) == 1
    finally:
        timer.stop()


def test_debounce_fires_after_last_call() -> None:
    fired = threading.Event()
    fired_at: List[float] = []

    def action() -> None:
        fired_at.append(time.monotonic())
        fired.set()

    timer = DebounceTimer(0.3)
    try:
        first = time.monotonic()
        timer.schedule(action)
        time.sleep(0.15)
        last = time.monotonic()
        timer.schedule(action)

        assert fired.wait(2.0)
        assert fired_at[0] - last >= 0.3
        assert fired_at[0] - first >= 0.45
    finally:
        timer.stop()


def test_schedule_replaces_pending_action() -> None:
    a = MagicMock()
    b = MagicMock()
    timer = DebounceTimer(0.1)
    try:
        timer.schedule(a)
        timer.schedule(b)
        assert wait_for(lambda: b.call_count == 1)
        time.sleep(0.2)
        a.assert_not_called()
        b.assert_called_once()
    finally:
        timer.stop()


def test_schedule_explicit_delay() -> None:
    action = MagicMock()
    timer = DebounceTimer(10.0)
    try:
        timer.schedule(action, delay=0.05)
        assert wait_for(lambda: action.call_count == 1, timeout=1.0)
    finally:
        timer.stop()


def test_schedule_reuses_last_action() -> None:
    action = MagicMock()
    timer = DebounceTimer(0.05, action)
    try:
        timer.schedule()
        assert wait_for(lambda: action.call_count == 1)
    finally:
        timer.stop()


def test_schedule_without_action_raises() -> None:
    timer = DebounceTimer(0.05)
    with pytest.raises(ValueError, match="no action"):
        timer.schedule()


def test_pending_until_fired() -> None:
    action = MagicMock()
    timer = DebounceTimer(0.1)
    try:
        assert not timer.pending
        timer.schedule(action)
        assert timer.pending
        assert wait_for(lambda: action.call_count == 1)
        assert not timer.pending
    finally:
        timer.stop()


def test_stop_ignores_later_schedules() -> None:
    action = MagicMock()
    timer = DebounceTimer(0.05)
    timer.stop()
    timer.schedule(action)
    time.sleep(0.2)
    action.assert_not_called()


def test_action_error_is_logged_and_timer_survives(caplog: pytest.LogCaptureFixture) -> None:
    ok = MagicMock()
    timer = DebounceTimer(0.05)
    try:
        with caplog.at_level(logging.ERROR):
            timer.schedule(MagicMock(side_effect=RuntimeError("boom")))
            assert wait_for(lambda: "Error in debounce callback" in caplog.text)
        timer.schedule(ok)
        assert wait_for(lambda: ok.call_count == 1)
    finally:
        timer.stop()


def test_reschedule_during_action_fires_again() -> None:
    calls: List[int] = []
    timer = DebounceTimer(0.05)

    def action() -> None:
        calls.append(1)
        if len(calls) == 1:
            # A change arriving while the rebuild runs
            timer.schedule(action)
            time.sleep(0.1)

    try:
        timer.schedule(action)
        assert wait_for(lambda: len(calls) == 2)
        time.sleep(0.2)
        assert len(calls) == 2
    finally:
        timer.stop()


# --- RebuildEventHandler ---------------------------------------------------


@pytest.fixture
def handler(tmp_path: Path) -> RebuildEventHandler:
    return RebuildEventHandler(tmp_path / "libs", IgnoreRules(), MagicMock())


@pytest.mark.parametrize(
    "event_cls",
    [FileModifiedEvent, FileCreatedEvent, FileDeletedEvent, DirCreatedEvent],
)
def test_handler_accepts_changes(handler: RebuildEventHandler, event_cls: type) -> None:
    path = str(handler.root / "foo" / "src" / "index.ts")
    event = event_cls(path)
    dispatch = {
        "modified": handler.on_modified,
        "created": handler.on_created,
        "deleted": handler.on_deleted,
    }
    dispatch[event.event_type](event)
    handler.on_change.assert_called_once_with(path)


def test_handler_ignores_matching_paths(handler: RebuildEventHandler) -> None:
    handler.on_modified(FileModifiedEvent(str(handler.root / "foo" / "src" / "app.spec.ts")))
    handler.on_created(FileCreatedEvent(str(handler.root / "foo" / "dist" / "bundle.js")))
    handler.on_change.assert_not_called()
    assert handler.events_ignored == 2


def test_handler_drops_directory_modified(handler: RebuildEventHandler) -> None:
    handler.on_modified(DirModifiedEvent(str(handler.root / "foo" / "src")))
    handler.on_change.assert_not_called()
    assert handler.events_ignored == 0


def test_handler_uses_move_destination(handler: RebuildEventHandler) -> None:
    src = str(handler.root / "foo" / "src" / "old.ts")
    dest = str(handler.root / "foo" / "src" / "new.ts")
    handler.on_moved(FileMovedEvent(src, dest))
    handler.on_change.assert_called_once_with(dest)


def test_handler_move_into_ignored_directory(handler: RebuildEventHandler) -> None:
    src = str(handler.root / "foo" / "src" / "a.js")
    dest = str(handler.root / "foo" / "dist" / "a.js")
    handler.on_moved(FileMovedEvent(src, dest))
    handler.on_change.assert_not_called()


def test_handler_rules_apply_relative_to_root(tmp_path: Path) -> None:
    # Root itself sits below a directory matching a rule
    root = tmp_path / "tmp" / "dist" / "libs"
    on_change = MagicMock()
    handler = RebuildEventHandler(root, IgnoreRules(), on_change)
    path = str(root / "foo" / "index.ts")
    handler.on_modified(FileModifiedEvent(path))
    on_change.assert_called_once_with(path)


def test_handler_empty_name_discarded(handler: RebuildEventHandler) -> None:
    handler.on_modified(FileModifiedEvent("/"))
    handler.on_change.assert_not_called()


# --- RecursiveWatcher ------------------------------------------------------


def make_watcher(
    observer: MagicMock,
    on_rebuild: MagicMock,
    context: DaemonContext = None,
    **kwargs,
) -> RecursiveWatcher:
    """Build a watcher on a mock observer, in per-directory mode unless overridden."""
    kwargs.setdefault("native_recursive", False)
    return RecursiveWatcher(
        context or DaemonContext(),
        IgnoreRules(),
        on_rebuild,
        observer_factory=lambda: observer,
        **kwargs,
    )


def scheduled_paths(observer: MagicMock) -> List[str]:
    return [c.args[1] for c in observer.schedule.call_args_list]


def test_walk_watches_every_non_ignored_directory(lib_tree: Path, mock_observer: MagicMock) -> None:
    watcher = make_watcher(mock_observer, MagicMock())
    watcher.watch_tree([lib_tree])

    expected = {
        lib_tree,
        lib_tree / "foo",
        lib_tree / "foo" / "src",
        lib_tree / "foo" / "src" / "lib",
        lib_tree / "bar",
        lib_tree / "bar" / "src",
    }
    assert set(scheduled_paths(mock_observer)) == {str(p) for p in expected}
    for c in mock_observer.schedule.call_args_list:
        assert c.kwargs["recursive"] is False
    mock_observer.start.assert_called_once()
    assert len(watcher.watched_directories) == len(expected)


def test_native_recursive_uses_one_watch_per_root(lib_tree: Path, mock_observer: MagicMock) -> None:
    watcher = make_watcher(mock_observer, MagicMock(), native_recursive=True)
    watcher.watch_tree([lib_tree])

    mock_observer.schedule.assert_called_once()
    assert mock_observer.schedule.call_args.args[1] == str(lib_tree)
    assert mock_observer.schedule.call_args.kwargs["recursive"] is True


def test_default_mode_is_recursive(lib_tree: Path, mock_observer: MagicMock) -> None:
    watcher = RecursiveWatcher(DaemonContext(), IgnoreRules(), MagicMock(), observer_factory=lambda: mock_observer)
    watcher.watch_tree([lib_tree])

    assert watcher.native_recursive is True
    mock_observer.schedule.assert_called_once()
    assert mock_observer.schedule.call_args.kwargs["recursive"] is True


def test_missing_root_is_skipped(tmp_path: Path, lib_tree: Path, mock_observer: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    watcher = make_watcher(mock_observer, MagicMock())
    watcher.watch_tree([tmp_path / "missing", lib_tree])

    assert "Watch root not found" in caplog.text
    assert str(lib_tree) in scheduled_paths(mock_observer)


def test_directory_watched_once(lib_tree: Path, mock_observer: MagicMock) -> None:
    watcher = make_watcher(mock_observer, MagicMock())
    watcher.watch_tree([lib_tree, lib_tree / "foo"])

    paths = scheduled_paths(mock_observer)
    assert len(paths) == len(set(paths))


def test_symlink_cycle_terminates(lib_tree: Path, mock_observer: MagicMock) -> None:
    try:
        os.symlink(lib_tree / "foo", lib_tree / "foo" / "src" / "loop", target_is_directory=True)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported")

    watcher = make_watcher(mock_observer, MagicMock())
    watcher.watch_tree([lib_tree])

    paths = scheduled_paths(mock_observer)
    assert str(lib_tree / "foo" / "src" / "loop") not in paths
    assert len(paths) == 6


def test_listing_failure_skips_branch(lib_tree: Path, mock_observer: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    broken = lib_tree / "bar" / "src"
    (broken / "deep").mkdir()
    real_scandir = os.scandir

    def fake_scandir(path):
        if Path(path) == broken:
            raise PermissionError("denied")
        return real_scandir(path)

    watcher = make_watcher(mock_observer, MagicMock())
    with patch("lib_publish_watcher.watcher.os.scandir", side_effect=fake_scandir):
        watcher.watch_tree([lib_tree])

    paths = scheduled_paths(mock_observer)
    assert str(broken) in paths
    assert str(broken / "deep") not in paths
    assert str(lib_tree / "foo" / "src" / "lib") in paths
    assert "Could not list directory" in caplog.text


def test_schedule_failure_is_not_fatal(lib_tree: Path, mock_observer: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    def schedule(handler, path, recursive=False):
        if path.endswith("bar"):
            raise FileNotFoundError("vanished")

    mock_observer.schedule.side_effect = schedule
    watcher = make_watcher(mock_observer, MagicMock())
    watcher.watch_tree([lib_tree])

    assert "Could not watch" in caplog.text
    # bar failed, so its subtree was not walked
    assert str(lib_tree / "bar" / "src") not in scheduled_paths(mock_observer)
    assert str(lib_tree / "foo" / "src") in scheduled_paths(mock_observer)


def test_observer_start_failure(lib_tree: Path, mock_observer: MagicMock) -> None:
    mock_observer.start.side_effect = OSError("inotify instance limit reached")
    watcher = make_watcher(mock_observer, MagicMock())
    with pytest.raises(RuntimeError, match="Failed to start watchdog observer"):
        watcher.watch_tree([lib_tree])


def test_changes_are_debounced_into_one_rebuild(mock_observer: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    on_rebuild = MagicMock()
    watcher = make_watcher(mock_observer, on_rebuild, debounce_seconds=0.1)
    try:
        with caplog.at_level(logging.INFO):
            for i in range(3):
                watcher._on_change(f"/work/libs/foo/src/f{i}.ts")
            assert watcher.get_statistics()["rebuild_pending"] is True
            assert wait_for(lambda: on_rebuild.call_count == 1)
            time.sleep(0.3)
        on_rebuild.assert_called_once()
        assert "Change detected: /work/libs/foo/src/f0.ts" in caplog.text
        stats = watcher.get_statistics()
        assert stats["events_detected"] == 3
        assert stats["rebuilds_triggered"] == 1
        assert stats["rebuild_pending"] is False
    finally:
        watcher.stop()


def test_changes_ignored_after_stop_requested(mock_observer: MagicMock) -> None:
    context = DaemonContext()
    on_rebuild = MagicMock()
    watcher = make_watcher(mock_observer, on_rebuild, context=context, debounce_seconds=0.05)
    context.request_stop()
    watcher._on_change("/work/libs/foo/src/index.ts")
    time.sleep(0.2)
    on_rebuild.assert_not_called()
    assert watcher.get_statistics()["events_detected"] == 0


def test_stop_stops_observer_and_debouncer(lib_tree: Path, mock_observer: MagicMock) -> None:
    on_rebuild = MagicMock()
    watcher = make_watcher(mock_observer, on_rebuild, debounce_seconds=0.1)
    watcher.watch_tree([lib_tree])
    watcher._on_change(str(lib_tree / "foo" / "src" / "index.ts"))
    watcher.stop()
    assert watcher.get_statistics()["rebuild_pending"] is False

    mock_observer.stop.assert_called_once()
    mock_observer.join.assert_called_once()
    time.sleep(0.3)
    on_rebuild.assert_not_called()


def test_stop_before_start_is_safe() -> None:
    watcher = RecursiveWatcher(DaemonContext(), IgnoreRules(), MagicMock())
    watcher.stop()


def test_small_debounce_warns(caplog: pytest.LogCaptureFixture) -> None:
    RecursiveWatcher(DaemonContext(), IgnoreRules(), MagicMock(), debounce_seconds=0.01)
    assert "Very small debounce interval" in caplog.text
