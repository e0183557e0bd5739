"""
Tests for the workflow sync engine: a change flows through classification,
the consistency check and repair, and the engine starts and stops cleanly.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from core.errors import StateIOError
from core.models.config import ProjectConfig
from core.models.documents import TaskStatus
from core.sync.arbiter import ConflictArbiter
from core.sync.classifier import DescriptionKind
from core.sync.engine import WorkflowSyncEngine
from core.sync.events import ChangeEvent


@pytest.fixture
def config(project_dir, feat_100):
    return ProjectConfig(name="demo", path=project_dir)


@pytest_asyncio.fixture
async def engine(config):
    """Engine with records built and the router running, but no watcher"""
    engine = WorkflowSyncEngine(config)
    await engine.initialize()
    result = await engine.tracker.sync_from_documents()
    assert result.success
    await engine.classifier.prime([engine.store.path_for("progress")])
    await engine.router.start()
    yield engine
    await engine.router.stop()


def edit_progress(engine, edit):
    path = engine.store.path_for("progress")
    progress = json.loads(path.read_text())
    edit(progress["by_spec"]["FEAT-100"])
    path.write_text(json.dumps(progress, indent=2))
    return path


def drop_dependency(record):
    record["tasks"]["TASK-002"]["depends_on"] = []


class TestProcessEvent:
    """Test the change pipeline end to end"""

    @pytest.mark.asyncio
    async def test_document_change_repairs_record(self, engine, feat_100):
        feat_100.write_text(feat_100.read_text().replace("status: ready", "status: blocked", 1))

        description = await engine.process_event(ChangeEvent.modified(feat_100))
        await engine.settle()

        assert description.kind is DescriptionKind.CONTENT
        record = await engine.store.get_spec_record("FEAT-100")
        assert record.tasks["TASK-001"].status == TaskStatus.BLOCKED
        assert engine.metrics.auto_repaired == 1
        assert engine.metrics.events_processed == 1

    @pytest.mark.asyncio
    async def test_record_change_repairs_document(self, engine):
        def block(record):
            record["tasks"]["TASK-002"]["status"] = "blocked"
        path = edit_progress(engine, block)

        await engine.process_event(ChangeEvent.modified(path))
        await engine.settle()

        document = await engine.repository.get("FEAT-100")
        assert document.get_task("TASK-002").status == TaskStatus.BLOCKED
        assert engine.metrics.auto_repaired == 1

    @pytest.mark.asyncio
    async def test_structural_conflict_is_queued(self, engine):
        path = edit_progress(engine, drop_dependency)

        await engine.process_event(ChangeEvent.modified(path))
        await engine.settle()

        assert engine.metrics.conflicts == 1
        [conflict] = engine.arbiter.get_manual_queue()
        assert conflict.verdict.spec_id == "FEAT-100"
        assert engine.arbiter.list_backups() == []

    @pytest.mark.asyncio
    async def test_queued_conflict_survives_restart(self, engine):
        path = edit_progress(engine, drop_dependency)
        await engine.process_event(ChangeEvent.modified(path))
        await engine.settle()

        arbiter = ConflictArbiter(engine.coordinator, engine.config.backups_dir)

        [conflict] = arbiter.get_manual_queue()
        assert conflict.conflict_id == engine.arbiter.get_manual_queue()[0].conflict_id

    @pytest.mark.asyncio
    async def test_repeated_check_keeps_one_entry(self, engine):
        path = edit_progress(engine, drop_dependency)
        await engine.process_event(ChangeEvent.modified(path))
        await engine.settle()

        await engine.repair(await engine.checker.check_entity("FEAT-100"))

        assert len(engine.arbiter.get_manual_queue()) == 1

    @pytest.mark.asyncio
    async def test_agreement_clears_queued_conflict(self, engine):
        def restore_dependency(record):
            record["tasks"]["TASK-002"]["depends_on"] = ["TASK-001"]
        path = edit_progress(engine, drop_dependency)
        await engine.process_event(ChangeEvent.modified(path))
        await engine.settle()
        assert engine.arbiter.get_manual_queue()

        edit_progress(engine, restore_dependency)
        await engine.process_event(ChangeEvent.modified(path))
        await engine.settle()

        assert engine.arbiter.get_manual_queue() == []
        stored = json.loads(engine.store.path_for("conflicts").read_text())
        assert stored == {"queue": {}}

    @pytest.mark.asyncio
    async def test_parse_error_keeps_last_good_state(self, engine, feat_100):
        progress_before = engine.store.path_for("progress").read_bytes()
        feat_100.write_text("---\nid: FEAT-100\ntasks: [\n---\n")

        description = await engine.process_event(ChangeEvent.modified(feat_100))
        await engine.settle()

        assert description.is_parse_error
        assert engine.metrics.parse_errors == 1
        assert engine.metrics.auto_repaired == 0
        assert engine.store.path_for("progress").read_bytes() == progress_before

    @pytest.mark.asyncio
    async def test_unchanged_content_is_not_routed(self, engine, feat_100):
        published = engine.router.get_status()["published"]

        description = await engine.process_event(ChangeEvent.modified(feat_100))

        assert description.kind is DescriptionKind.UNCHANGED
        assert engine.router.get_status()["published"] == published

    @pytest.mark.asyncio
    async def test_classification_failure_is_recorded(self, engine, feat_100):
        with patch.object(engine.classifier, "classify", AsyncMock(side_effect=StateIOError("disk gone"))):
            assert await engine.process_event(ChangeEvent.modified(feat_100)) is None

        status = engine.get_status()
        assert status["events_failed"] == 1
        assert "disk gone" in status["last_error"]


class TestLifecycle:
    """Test start, the initial pass and stop"""

    @pytest.mark.asyncio
    async def test_initial_pass_builds_missing_records(self, config):
        engine = WorkflowSyncEngine(config)
        try:
            assert await engine.start() is True
            await engine.settle()

            record = await engine.store.get_spec_record("FEAT-100")
            assert record is not None
            assert set(record.tasks) == {"TASK-001", "TASK-002"}
        finally:
            await engine.stop()

        assert not engine.is_running

    @pytest.mark.asyncio
    async def test_rebuild_on_start(self, config):
        async with WorkflowSyncEngine(config, rebuild_on_start=True) as engine:
            assert engine.is_running
            record = await engine.store.get_spec_record("FEAT-100")
            assert record.total == 2
            status = engine.get_status()

        assert status["project"] == "demo"
        assert status["watcher"]["is_monitoring"] is True
        assert not engine.is_running

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, config):
        engine = WorkflowSyncEngine(config)
        await engine.stop()
        await engine.start()
        await engine.stop()
        await engine.stop()

        assert engine.get_status()["is_running"] is False
