"""
Change Watcher.

Monitors document and state-file locations with watchdog and coalesces
bursts of raw notifications into debounced ChangeEvents, exposed as an
async iterator.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent as WatchdogEvent
from watchdog.events import FileMovedEvent, DirDeletedEvent, DirMovedEvent

from .events import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)


class ChangeWatcher:
    """
    Multi-root file watcher with per-path debouncing.

    Features:
    - Several roots observed by one watchdog observer
    - Include/exclude glob filtering
    - Per-path debounce: a burst of notifications yields exactly one event
    - Restartable: stop() and start() re-arm observation
    - Missing or vanished roots are excluded with a warning, never fatal
    """

    def __init__(
        self,
        roots: Iterable[Path],
        include_patterns: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
        debounce_ms: int = 500,
        root_check_interval_s: float = 5.0,
        max_pending: int = 1000
    ):
        """
        Initialize the watcher.

        Args:
            roots: Directories to observe recursively
            include_patterns: Glob patterns a file must match (name or full path)
            exclude_patterns: Glob patterns that exclude a file
            debounce_ms: Quiet period before a path's event is emitted
            root_check_interval_s: How often roots are checked for removal
            max_pending: Bound on emitted events not yet consumed
        """
        self.roots: List[Path] = []
        for root in roots:
            resolved = Path(root).resolve()
            if resolved not in self.roots:
                self.roots.append(resolved)
        self.include_patterns = list(include_patterns or ["*.md", "*.json"])
        self.exclude_patterns = list(exclude_patterns or ["*.tmp"])
        self.debounce_ms = debounce_ms
        self.root_check_interval_s = root_check_interval_s

        self.excluded_roots: Dict[Path, str] = {}
        self._watches: Dict[Path, Any] = {}

        self.observer: Optional[Observer] = None
        self.event_handler: Optional['WatchdogBridge'] = None

        # Debouncing state
        self._pending_events: Dict[str, ChangeEvent] = {}
        self._debounce_tasks: Dict[str, asyncio.Task] = {}
        self._debounce_lock = asyncio.Lock()
        self._bridge_tasks: Set[asyncio.Task] = set()

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._root_check_task: Optional[asyncio.Task] = None

        # Monitoring state
        self._is_monitoring = False
        self._monitor_start_time: Optional[datetime] = None

        # Counters
        self._raw_notifications = 0
        self._events_emitted = 0
        self._error_count = 0
        self._last_error: Optional[str] = None

        logger.info(
            f"Initialized ChangeWatcher for {len(self.roots)} root(s), "
            f"debounce {self.debounce_ms}ms"
        )

    @property
    def active_roots(self) -> List[Path]:
        return [root for root in self.roots if root not in self.excluded_roots]

    def exclude_root(self, root: Path, reason: str) -> None:
        """Stop observing a root and remember why"""
        root = Path(root)
        if root in self.excluded_roots:
            return
        self.excluded_roots[root] = reason
        logger.warning(f"Excluding watch root {root}: {reason}")

        watch = self._watches.pop(root, None)
        if watch is not None and self.observer is not None:
            try:
                self.observer.unschedule(watch)
            except (KeyError, OSError) as e:
                logger.debug(f"Unschedule of {root} failed: {e}")

    def _validate_root(self, root: Path) -> Optional[str]:
        if not root.exists():
            return "path does not exist"
        if not root.is_dir():
            return "path is not a directory"
        if not os.access(root, os.R_OK | os.X_OK):
            return "path is not readable"
        return None

    async def start(self) -> bool:
        """
        Start observing every valid root.

        Returns:
            True if at least one root is being observed
        """
        if self._is_monitoring:
            logger.warning("Change watcher is already running")
            return True

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("No running event loop found when starting watcher")
            return False

        self.event_handler = WatchdogBridge(self)
        self.event_handler.set_event_loop(loop)
        self.observer = Observer()

        for root in self.active_roots:
            problem = self._validate_root(root)
            if problem:
                self.exclude_root(root, problem)
                continue
            try:
                self._watches[root] = self.observer.schedule(
                    self.event_handler, str(root), recursive=True
                )
            except OSError as e:
                self.exclude_root(root, f"cannot be watched: {e}")

        if not self._watches:
            logger.warning("No watch roots available; watcher idle")

        self.observer.start()
        self._root_check_task = asyncio.create_task(self._periodic_root_check())

        self._is_monitoring = True
        self._monitor_start_time = datetime.now()
        logger.info(f"Started watching {[str(r) for r in self._watches]}")
        return bool(self._watches)

    async def stop(self) -> None:
        """Stop observation; pending debounced events are dropped"""
        if not self._is_monitoring:
            return

        self._is_monitoring = False

        if self.event_handler:
            self.event_handler.set_event_loop(None)

        if self.observer:
            try:
                self.observer.stop()
                self.observer.join(timeout=5.0)
            except RuntimeError as e:
                logger.warning(f"Error stopping observer: {e}")
            finally:
                self.observer = None
                self._watches.clear()

        tasks_to_cancel = []
        if self._root_check_task and not self._root_check_task.done():
            tasks_to_cancel.append(self._root_check_task)

        async with self._debounce_lock:
            tasks_to_cancel.extend(
                task for task in self._debounce_tasks.values() if not task.done()
            )
            tasks_to_cancel.extend(task for task in self._bridge_tasks if not task.done())
            for task in tasks_to_cancel:
                task.cancel()
            self._debounce_tasks.clear()
            self._pending_events.clear()

        if tasks_to_cancel:
            await asyncio.gather(*tasks_to_cancel, return_exceptions=True)

        self._root_check_task = None
        self.event_handler = None
        logger.info(f"Stopped change watcher (duration: {self.monitoring_duration})")

    def should_watch(self, path: Path) -> bool:
        """Check a path against the root set and include/exclude patterns"""
        path = Path(path)
        path_str = path.as_posix()

        if not any(self._is_under(path, root) for root in self.active_roots):
            return False

        for pattern in self.exclude_patterns:
            if fnmatch(path_str, pattern) or fnmatch(path.name, pattern):
                return False

        return any(
            fnmatch(path.name, pattern) or fnmatch(path_str, pattern)
            for pattern in self.include_patterns
        )

    @staticmethod
    def _is_under(path: Path, root: Path) -> bool:
        try:
            path.relative_to(root)
            return True
        except ValueError:
            return False

    async def handle_watchdog_event(self, event: WatchdogEvent) -> None:
        """Translate a watchdog event into one or two raw notifications"""
        try:
            if event.is_directory:
                if isinstance(event, (DirDeletedEvent, DirMovedEvent)):
                    removed = Path(os.fsdecode(event.src_path)).resolve()
                    if removed in self.active_roots:
                        self.exclude_root(removed, "root was removed")
                return

            src = Path(os.fsdecode(event.src_path)).resolve()
            if isinstance(event, FileMovedEvent):
                dest = Path(os.fsdecode(event.dest_path)).resolve()
                await self.notify(src, ChangeKind.DELETE)
                await self.notify(dest, ChangeKind.CREATE)
                return

            kind = {
                "created": ChangeKind.CREATE,
                "modified": ChangeKind.MODIFY,
                "deleted": ChangeKind.DELETE,
            }.get(event.event_type)
            if kind is None:
                logger.debug(f"Ignoring watchdog event type {event.event_type}")
                return

            await self.notify(src, kind)

        except Exception as e:
            logger.error(f"Error handling watchdog event {event}: {e}")
            self._error_count += 1
            self._last_error = str(e)

    async def notify(self, path: Path, kind: ChangeKind) -> None:
        """
        Record one raw notification for ``path`` and (re)arm its debounce timer.

        Args:
            path: Absolute path that changed
            kind: Kind of raw change
        """
        path = Path(path).resolve()
        if not self.should_watch(path):
            return

        self._raw_notifications += 1
        event = ChangeEvent(path=path, kind=kind)

        async with self._debounce_lock:
            file_key = str(path)

            existing_task = self._debounce_tasks.get(file_key)
            if existing_task and not existing_task.done():
                existing_task.cancel()

            pending = self._pending_events.get(file_key)
            self._pending_events[file_key] = pending.merge(event) if pending else event

            self._debounce_tasks[file_key] = asyncio.create_task(
                self._emit_after_quiet_period(file_key, self.debounce_ms / 1000.0)
            )

    async def _emit_after_quiet_period(self, file_key: str, delay_seconds: float) -> None:
        try:
            await asyncio.sleep(delay_seconds)

            async with self._debounce_lock:
                if self._debounce_tasks.get(file_key) is not asyncio.current_task():
                    return
                event = self._pending_events.pop(file_key, None)
                self._debounce_tasks.pop(file_key, None)

            if event is None:
                return

            await self._queue.put(event)
            self._events_emitted += 1
            logger.debug(f"Emitted {event} ({event.coalesced} notification(s))")

        except asyncio.CancelledError:
            pass

    async def events(self) -> AsyncIterator[ChangeEvent]:
        """
        Lazily yield debounced events for as long as the caller iterates.

        The iterator survives stop()/start() cycles; it simply waits while
        the watcher is stopped.
        """
        while True:
            yield await self._queue.get()

    async def next_event(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Wait for the next debounced event, or None on timeout"""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def _periodic_root_check(self) -> None:
        """Exclude roots that disappeared while being watched"""
        while self._is_monitoring:
            try:
                await asyncio.sleep(self.root_check_interval_s)
                for root in list(self._watches):
                    problem = self._validate_root(root)
                    if problem:
                        self.exclude_root(root, problem)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Error in root check: {e}")

    @property
    def is_monitoring(self) -> bool:
        return self._is_monitoring

    @property
    def monitoring_duration(self) -> Optional[timedelta]:
        if not self._monitor_start_time:
            return None
        return datetime.now() - self._monitor_start_time

    def get_status(self) -> Dict[str, Any]:
        """Get status information"""
        return {
            "is_monitoring": self._is_monitoring,
            "roots": [str(root) for root in self.roots],
            "watched_roots": [str(root) for root in self._watches],
            "excluded_roots": {str(root): reason for root, reason in self.excluded_roots.items()},
            "debounce_ms": self.debounce_ms,
            "pending_events": len(self._pending_events),
            "queued_events": self._queue.qsize(),
            "raw_notifications": self._raw_notifications,
            "events_emitted": self._events_emitted,
            "error_count": self._error_count,
            "last_error": self._last_error,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()


class WatchdogBridge(FileSystemEventHandler):
    """
    Forwards watchdog events from the observer thread onto the event loop.
    """

    def __init__(self, watcher: ChangeWatcher):
        super().__init__()
        self.watcher = watcher
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None

    def set_event_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._event_loop = loop

    def _schedule(self, event: WatchdogEvent) -> None:
        task = asyncio.create_task(self.watcher.handle_watchdog_event(event))
        self.watcher._bridge_tasks.add(task)
        task.add_done_callback(self.watcher._bridge_tasks.discard)

    def on_any_event(self, event: WatchdogEvent) -> None:
        loop = self._event_loop
        if loop is None or loop.is_closed():
            logger.debug(f"No event loop available, dropping event: {event}")
            return
        try:
            loop.call_soon_threadsafe(self._schedule, event)
        except RuntimeError as e:
            if "closed" not in str(e).lower():
                logger.error(f"Failed to schedule event on loop: {e}")
