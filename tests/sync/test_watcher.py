"""
Tests for the change watcher: debouncing, kind coalescing, filtering and
root exclusion.
"""

import asyncio

import pytest
from watchdog.events import DirDeletedEvent, FileModifiedEvent, FileMovedEvent

from core.sync.events import ChangeEvent, ChangeKind
from core.sync.watcher import ChangeWatcher


@pytest.fixture
def roots(tmp_path):
    docs = (tmp_path / "docs").resolve()
    state = (tmp_path / "state").resolve()
    docs.mkdir()
    state.mkdir()
    return docs, state


def make_watcher(roots, **kwargs):
    kwargs.setdefault("debounce_ms", 50)
    return ChangeWatcher(roots=roots, **kwargs)


class TestChangeKindMerge:
    """Test coalescing of raw change kinds"""

    @pytest.mark.parametrize("earlier,later,expected", [
        (ChangeKind.CREATE, ChangeKind.MODIFY, ChangeKind.CREATE),
        (ChangeKind.CREATE, ChangeKind.DELETE, ChangeKind.DELETE),
        (ChangeKind.MODIFY, ChangeKind.MODIFY, ChangeKind.MODIFY),
        (ChangeKind.MODIFY, ChangeKind.DELETE, ChangeKind.DELETE),
        (ChangeKind.DELETE, ChangeKind.CREATE, ChangeKind.MODIFY),
    ])
    def test_merge(self, earlier, later, expected):
        assert earlier.merge(later) is expected

    def test_event_requires_absolute_path(self):
        with pytest.raises(ValueError):
            ChangeEvent.modified("docs/feat-1.md")


class TestDebounce:
    """Test per-path debouncing"""

    @pytest.mark.asyncio
    async def test_burst_yields_one_event(self, roots):
        watcher = make_watcher(roots)
        path = roots[0] / "feat-1.md"

        for _ in range(10):
            await watcher.notify(path, ChangeKind.MODIFY)

        event = await watcher.next_event(timeout=2.0)
        assert event.path == path
        assert event.kind is ChangeKind.MODIFY
        assert event.coalesced == 10
        assert await watcher.next_event(timeout=0.2) is None

        status = watcher.get_status()
        assert status["raw_notifications"] == 10
        assert status["events_emitted"] == 1

    @pytest.mark.asyncio
    async def test_kinds_are_merged(self, roots):
        watcher = make_watcher(roots)
        created = roots[0] / "new.md"
        replaced = roots[0] / "replaced.md"

        await watcher.notify(created, ChangeKind.CREATE)
        await watcher.notify(created, ChangeKind.MODIFY)
        await watcher.notify(replaced, ChangeKind.DELETE)
        await watcher.notify(replaced, ChangeKind.CREATE)

        events = {}
        for _ in range(2):
            event = await watcher.next_event(timeout=2.0)
            events[event.path] = event.kind

        assert events == {created: ChangeKind.CREATE, replaced: ChangeKind.MODIFY}

    @pytest.mark.asyncio
    async def test_paths_debounce_independently(self, roots):
        watcher = make_watcher(roots)
        docs, state = roots

        await watcher.notify(docs / "a.md", ChangeKind.MODIFY)
        await watcher.notify(state / "progress.json", ChangeKind.MODIFY)

        first = await watcher.next_event(timeout=2.0)
        second = await watcher.next_event(timeout=2.0)
        assert {first.path, second.path} == {docs / "a.md", state / "progress.json"}

    @pytest.mark.asyncio
    async def test_events_iterator(self, roots):
        watcher = make_watcher(roots)
        await watcher.notify(roots[0] / "a.md", ChangeKind.CREATE)

        iterator = watcher.events()
        event = await asyncio.wait_for(iterator.__anext__(), timeout=2.0)

        assert event.kind is ChangeKind.CREATE


class TestFiltering:
    """Test include/exclude patterns and root membership"""

    def test_should_watch(self, roots, tmp_path):
        watcher = make_watcher(roots, exclude_patterns=["*.tmp", "*/audit.json"])
        docs, state = roots

        assert watcher.should_watch(docs / "nested" / "feat-1.md")
        assert watcher.should_watch(state / "progress.json")
        assert not watcher.should_watch(state / "audit.json")
        assert not watcher.should_watch(docs / ".feat-1.md.abc.tmp")
        assert not watcher.should_watch(docs / "image.png")
        assert not watcher.should_watch(tmp_path / "outside.md")

    @pytest.mark.asyncio
    async def test_ignored_paths_are_not_counted(self, roots, tmp_path):
        watcher = make_watcher(roots)

        await watcher.notify(roots[0] / "scratch.tmp", ChangeKind.MODIFY)
        await watcher.notify(tmp_path / "outside.md", ChangeKind.MODIFY)

        assert watcher.get_status()["raw_notifications"] == 0
        assert await watcher.next_event(timeout=0.2) is None


class TestWatchdogTranslation:
    """Test translation of watchdog events"""

    @pytest.mark.asyncio
    async def test_move_becomes_delete_and_create(self, roots):
        watcher = make_watcher(roots)
        src = roots[0] / "old.md"
        dest = roots[0] / "new.md"

        await watcher.handle_watchdog_event(FileMovedEvent(str(src), str(dest)))

        kinds = {}
        for _ in range(2):
            event = await watcher.next_event(timeout=2.0)
            kinds[event.path] = event.kind
        assert kinds == {src: ChangeKind.DELETE, dest: ChangeKind.CREATE}

    @pytest.mark.asyncio
    async def test_modified_event(self, roots):
        watcher = make_watcher(roots)
        path = roots[1] / "handoffs.json"

        await watcher.handle_watchdog_event(FileModifiedEvent(str(path)))

        event = await watcher.next_event(timeout=2.0)
        assert (event.path, event.kind) == (path, ChangeKind.MODIFY)

    @pytest.mark.asyncio
    async def test_removed_root_is_excluded(self, roots):
        watcher = make_watcher(roots)
        docs, state = roots

        await watcher.handle_watchdog_event(DirDeletedEvent(str(docs)))

        assert docs in watcher.excluded_roots
        assert watcher.active_roots == [state]
        assert not watcher.should_watch(docs / "feat-1.md")


class TestLifecycle:
    """Test start/stop and root validation"""

    @pytest.mark.asyncio
    async def test_missing_root_excluded_on_start(self, roots, tmp_path):
        missing = (tmp_path / "missing").resolve()
        watcher = make_watcher([roots[0], missing])

        try:
            assert await watcher.start() is True
            assert watcher.excluded_roots[missing] == "path does not exist"
            assert watcher.is_monitoring
        finally:
            await watcher.stop()

        assert not watcher.is_monitoring

    @pytest.mark.asyncio
    async def test_no_valid_roots(self, tmp_path):
        watcher = make_watcher([tmp_path / "missing"])

        try:
            assert await watcher.start() is False
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_stop_drops_pending_events(self, roots):
        watcher = make_watcher(roots, debounce_ms=500)
        await watcher.start()
        await watcher.notify(roots[0] / "a.md", ChangeKind.MODIFY)

        await watcher.stop()

        assert watcher.get_status()["pending_events"] == 0
        assert await watcher.next_event(timeout=0.7) is None

    @pytest.mark.asyncio
    async def test_real_file_change_is_observed(self, roots):
        async with make_watcher(roots) as watcher:
            await asyncio.sleep(0.1)
            path = roots[0] / "feat-9.md"
            path.write_text("---\nid: FEAT-9\n---\n")

            event = await watcher.next_event(timeout=5.0)

        assert event is not None
        assert event.path == path
