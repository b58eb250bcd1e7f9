"""
File system watcher implementation using watchdog.

Responsibility:
    This module watches the library source trees and turns bursts of file system
    events into single rebuild triggers. It does not run the rebuild itself; the
    trigger is a callable supplied by the daemon.

Design:
    - **Recursive watches**: By default one recursive watch is installed per root.
      With ``native_recursive=False`` the tree is walked once at startup and one
      non-recursive watch is installed per non-ignored directory instead. Each of
      those is its own observer emitter (an inotify instance on Linux), so this
      fallback only suits small trees. The ignore filtering is identical in both
      modes.
    - **Debouncing**: A `DebounceTimer` collapses a burst of events into one
      trigger, fired a fixed interval after the *last* event of the burst.
    - **Filtering**: Ignore rules are applied to paths relative to the watched
      root, both when walking and when events arrive.

Key Invariants:
    - The watcher never writes to the watched trees.
    - A directory (after symlink resolution) is watched at most once.
    - Directories created after the initial walk are not watched in
      per-directory mode.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from watchdog.events import DirModifiedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from lib_publish_watcher.context import DaemonContext
from lib_publish_watcher.patterns import IgnoreRules

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DebounceTimer", "RebuildEventHandler", "RecursiveWatcher"]


class DebounceTimer:
    """Implement a reusable single-slot timer for debouncing without thread churn.

    Each call to :meth:`schedule` replaces the pending action and pushes the
    deadline back, so an action fires once, ``delay`` after the last call.

    Attributes:
        interval (float): The default debounce interval in seconds.
    """

    __slots__ = ('interval', '_action', '_condition', '_target_time', '_active', '_stopped', '_thread')

    def __init__(self, interval: float, action: Optional[Callable[[], None]] = None) -> None:
        """Initialize the debounce timer.

        Args:
            interval (float): The default debounce interval in seconds.
            action (Optional[Callable[[], None]]): Action used when `schedule`
                is called without one.
        """
        self.interval = interval
        self._action = action
        self._condition = threading.Condition()
        self._target_time = 0.0
        self._active = False
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    def schedule(self, action: Optional[Callable[[], None]] = None, delay: Optional[float] = None) -> None:
        """Cancel any pending action and arm the timer again.

        Args:
            action (Optional[Callable[[], None]]): The action to run when the
                timer fires. Defaults to the last scheduled action.
            delay (Optional[float]): Seconds to wait. Defaults to `interval`.

        Raises:
            ValueError: If no action was ever provided.
        """
        with self._condition:
            if self._stopped:
                return
            if action is not None:
                self._action = action
            if self._action is None:
                raise ValueError("DebounceTimer has no action to schedule")
            self._target_time = time.monotonic() + (self.interval if delay is None else delay)
            if not self._active:
                self._active = True
                self._start_thread()
            else:
                self._condition.notify()

    def stop(self) -> None:
        """Stop the timer permanently.

        Returns:
            None
        """
        with self._condition:
            self._stopped = True
            self._active = False
            self._condition.notify_all()

    @property
    def pending(self) -> bool:
        with self._condition:
            return self._active

    def __repr__(self) -> str:
        return f"<DebounceTimer interval={self.interval} active={self.pending}>"

    def _start_thread(self) -> None:
        """Start the timer thread if not already running."""
        if self._thread is None or not self._thread.is_alive():
            try:
                self._thread = threading.Thread(target=self._run, name="DebounceTimer")
                self._thread.daemon = True
                self._thread.start()
            except Exception:
                # Reset active state if thread fails to start to allow retries
                self._active = False
                logger.error("Failed to start DebounceTimer thread", exc_info=True)

    def _run(self) -> None:
        """Run the timer loop."""
        with self._condition:
            while self._active and not self._stopped:
                now = time.monotonic()
                wait_time = self._target_time - now

                if wait_time <= 0:
                    self._active = False
                    action = self._action
                    self._condition.release()
                    try:
                        if action is not None:
                            action()
                    except Exception:
                        logger.error("Error in debounce callback", exc_info=True)
                    finally:
                        self._condition.acquire()

                    # Rescheduled while the action ran
                    if self._active:
                        continue
                    break

                self._condition.wait(wait_time)

            if not self._active or self._stopped:
                self._thread = None


def _relative_posix(path: str, root: Path) -> str:
    """Return `path` relative to `root` with forward slashes.

    Paths outside the root fall back to their base name.
    """
    try:
        rel = os.path.relpath(path, str(root))
    except ValueError:
        # Different drives on Windows
        return os.path.basename(path)
    if rel == os.pardir or rel.startswith(os.pardir + os.sep):
        return os.path.basename(path)
    return rel.replace(os.sep, "/")


class RebuildEventHandler(FileSystemEventHandler):
    """Filter file system events under one root and report accepted changes.

    Created, modified, moved and deleted events are treated alike. Directory
    modification notifications (emitted for a parent when one of its entries
    changes) carry no change of their own and are dropped.

    Attributes:
        root (Path): The watched root that relative paths are computed from.
        ignore_rules (IgnoreRules): Rules applied to root-relative paths.
        on_change (Callable[[str], None]): Called with the absolute path of
            every accepted change.
        events_ignored (int): Number of events dropped by the filter.
    """

    def __init__(
        self,
        root: Path,
        ignore_rules: IgnoreRules,
        on_change: Callable[[str], None],
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.root = Path(root).absolute()
        self.ignore_rules = ignore_rules
        self.on_change = on_change
        self.logger = logger or logging.getLogger(__name__)
        self.events_ignored: int = 0

    def _process_event(self, event: FileSystemEvent) -> None:
        """Apply the ignore rules to an event and forward accepted changes.

        Args:
            event (FileSystemEvent): The watchdog event.

        Returns:
            None
        """
        if isinstance(event, DirModifiedEvent):
            return

        file_path = os.fsdecode(event.src_path)
        if event.event_type == "moved" and getattr(event, "dest_path", None):
            file_path = os.fsdecode(event.dest_path)

        name = os.path.basename(file_path.rstrip("/\\"))
        if not name:
            return

        rel_path = _relative_posix(file_path, self.root)
        if self.ignore_rules.should_ignore(rel_path):
            self.events_ignored += 1
            if self.logger.isEnabledFor(logging.DEBUG):
                self.logger.debug(f"Ignoring {event.event_type} event on {rel_path}")
            return

        self.on_change(file_path)

    def on_created(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def __repr__(self) -> str:
        return f"<RebuildEventHandler root={self.root}>"


class RecursiveWatcher:
    """Watch every non-ignored directory under the given roots.

    Accepted changes are logged and debounced into a single call of
    `on_rebuild`, which is expected to start a rebuild unless one is running.

    Attributes:
        context (DaemonContext): Shared daemon state.
        ignore_rules (IgnoreRules): Rules applied when walking and on events.
        debouncer (DebounceTimer): The single pending-rebuild slot.
        native_recursive (bool): Use one recursive watch per root (default)
            rather than one watch per directory.

    Example:
        >>> watcher = RecursiveWatcher(context, IgnoreRules(), runner.run_once)
        >>> watcher.watch_tree(["/work/libs"])
        >>> # ...
        >>> watcher.stop()
    """

    def __init__(
        self,
        context: DaemonContext,
        ignore_rules: IgnoreRules,
        on_rebuild: Callable[[], None],
        debounce_seconds: float = 1.0,
        native_recursive: bool = True,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.context = context
        self.ignore_rules = ignore_rules
        self.on_rebuild = on_rebuild
        self.native_recursive = native_recursive
        self.debouncer = DebounceTimer(debounce_seconds)
        self._observer_factory = observer_factory
        self._observer: Optional[Any] = None
        self._handlers: List[RebuildEventHandler] = []
        self._watched: Set[str] = set()
        self._lock = threading.Lock()

        if debounce_seconds < 0.1:
            logger.warning(
                f"Very small debounce interval ({debounce_seconds}s) may rebuild on every keystroke."
            )

        self.events_detected: int = 0
        self.rebuilds_triggered: int = 0
        self.last_event_time: float = 0.0

    @property
    def watched_directories(self) -> Set[str]:
        with self._lock:
            return set(self._watched)

    def watch_tree(self, roots: Iterable[Union[str, Path]]) -> None:
        """Install watches on every root and start observing.

        Args:
            roots (Iterable[Union[str, Path]]): Directories to watch.

        Returns:
            None

        Raises:
            RuntimeError: If the observer cannot be started.
        """
        observer = self._observer_factory()
        self._observer = observer

        # Must be running before schedule(): a vanished directory then fails its
        # own watch instead of the observer start.
        try:
            observer.start()
        except OSError as e:
            raise RuntimeError(f"Failed to start watchdog observer: {e}") from e

        for root in roots:
            root_path = Path(root).absolute()
            if not root_path.is_dir():
                logger.warning(f"Watch root not found, skipping: {root_path}")
                continue

            handler = RebuildEventHandler(root_path, self.ignore_rules, self._on_change, logger=logger)
            self._handlers.append(handler)

            if self.native_recursive:
                self._add_watch(observer, handler, root_path, recursive=True)
            else:
                self._walk(observer, handler, root_path)

        mode = "recursive" if self.native_recursive else "per-directory"
        logger.info(f"Watching {len(self.watched_directories)} directories ({mode}, {type(observer).__name__})")

    def _walk(self, observer: Any, handler: RebuildEventHandler, root: Path) -> None:
        """Install one non-recursive watch per non-ignored directory under `root`.

        Listing failures skip that branch of the tree.
        """
        pending = [root]
        while pending:
            directory = pending.pop()
            if not self._add_watch(observer, handler, directory, recursive=False):
                continue

            try:
                with os.scandir(directory) as it:
                    entries = list(it)
            except OSError as e:
                logger.warning(f"Could not list directory {directory}: {e}. Skipping.")
                continue

            for entry in entries:
                try:
                    if not entry.is_dir():
                        continue
                except OSError:
                    continue
                rel_path = _relative_posix(entry.path, root)
                if self.ignore_rules.should_ignore(rel_path):
                    logger.debug(f"Not watching ignored directory {rel_path}")
                    continue
                pending.append(Path(entry.path))

    def _add_watch(self, observer: Any, handler: RebuildEventHandler, directory: Path, recursive: bool) -> bool:
        """Register a watch unless the directory is already watched.

        Returns:
            bool: True if a new watch was installed.
        """
        key = os.path.realpath(directory)
        with self._lock:
            if key in self._watched:
                logger.debug(f"Already watching {key}, skipping")
                return False
            try:
                observer.schedule(handler, str(directory), recursive=recursive)
            except OSError as e:
                logger.warning(f"Could not watch {directory}: {e} (Check inotify limits?)")
                return False
            self._watched.add(key)
        logger.debug(f"Watching {directory}")
        return True

    def _on_change(self, path: str) -> None:
        if self.context.stopping:
            return
        self.events_detected += 1
        self.last_event_time = time.monotonic()
        logger.info(f"Change detected: {path}")
        self.debouncer.schedule(self._trigger_rebuild)

    def _trigger_rebuild(self) -> None:
        if self.context.stopping:
            return
        self.rebuilds_triggered += 1
        self.on_rebuild()

    def stop(self) -> None:
        """Stop the debouncer and the observer thread.

        Returns:
            None
        """
        self.debouncer.stop()
        if self._observer is not None:
            try:
                if self._observer.is_alive():
                    self._observer.stop()
                    self._observer.join(timeout=5.0)
                    if self._observer.is_alive():
                        logger.warning("Observer thread did not terminate within timeout.")
            except Exception as e:
                logger.error(f"Error stopping observer: {e}")
        logger.info("Watcher stopped.")

    def get_statistics(self) -> Dict[str, Any]:
        """Return usage statistics.

        Returns:
            Dict[str, Any]: Watched directory count and event counters,
            and whether a debounced rebuild is waiting to fire.
        """
        return {
            "watched_directories": len(self.watched_directories),
            "events_detected": self.events_detected,
            "events_ignored": sum(h.events_ignored for h in self._handlers),
            "rebuilds_triggered": self.rebuilds_triggered,
            "rebuild_pending": self.debouncer.pending,
            "last_event_time": self.last_event_time,
        }

    def __repr__(self) -> str:
        return f"<RecursiveWatcher watched={len(self.watched_directories)} native_recursive={self.native_recursive}>"
