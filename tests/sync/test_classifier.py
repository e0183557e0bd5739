"""
Tests for the change classifier: structural diffing, categorization,
impact rating and parse error reporting.
"""

import json

import pytest

from core.documents.frontmatter import parse_document
from core.sync.classifier import (
    ChangeCategory, ChangeClassifier, ChangeType, DescriptionKind, FieldChange,
    Impact, assess_impact, categorize, deep_diff, normalize_document, normalize_state
)
from core.sync.events import ChangeEvent
from core.models.state import Representation
from tests.helpers import FEAT_100


def spec(status="ready", **extra):
    task = {"status": status, "depends_on": [], "subtasks": {}}
    task.update(extra)
    return {"FEAT-1": {"status": "active", "priority": "P2", "tasks": {"TASK-1": task}}}


class TestNormalization:
    """Test normalization of both representations"""

    def test_normalize_document(self):
        document = parse_document(FEAT_100)

        structure = normalize_document(document)

        entry = structure["FEAT-100"]
        assert entry["priority"] == "P1"
        assert entry["phase"] == "1"
        assert list(entry["tasks"]) == ["TASK-001", "TASK-002"]
        assert entry["tasks"]["TASK-002"]["depends_on"] == ["TASK-001"]

    def test_normalize_assignments(self):
        data = {"current_assignments": {"FEAT-1": {"TASK-1": {
            "worker": "alice", "status": "in_progress", "started_at": "2026-01-01T00:00:00"
        }}}}

        structure = normalize_state("assignments", data)

        assert structure["FEAT-1"]["tasks"]["TASK-1"]["assigned_agent"] == "alice"

    def test_other_categories_use_reserved_key(self):
        assert normalize_state("audit", {"records": []}) == {"_audit": {"records": []}}


class TestDeepDiff:
    """Test the field-level diff"""

    def test_status_change(self):
        [change] = deep_diff(spec("ready"), spec("in_progress"))

        assert change.path == "FEAT-1.tasks.TASK-1.status"
        assert change.change_type is ChangeType.MODIFICATION
        assert change.category is ChangeCategory.STATUS
        assert (change.spec_id, change.task_id, change.field) == ("FEAT-1", "TASK-1", "status")
        assert (change.old_value, change.new_value) == ("ready", "in_progress")

    def test_added_task_is_one_structural_change(self):
        old = spec()
        new = spec()
        new["FEAT-1"]["tasks"]["TASK-2"] = {"status": "ready", "depends_on": ["TASK-1"]}

        [change] = deep_diff(old, new)

        assert change.change_type is ChangeType.ADDITION
        assert change.category is ChangeCategory.STRUCTURAL
        assert change.task_id == "TASK-2"
        assert change.field is None

    def test_removed_spec(self):
        [change] = deep_diff(spec(), {})

        assert change.path == "FEAT-1"
        assert change.change_type is ChangeType.DELETION
        assert change.category is ChangeCategory.STRUCTURAL

    def test_whitespace_only_edit_has_no_changes(self):
        document = parse_document(FEAT_100)
        reformatted = parse_document(FEAT_100.replace("title: User authentication", "title:   User authentication"))

        assert deep_diff(normalize_document(document), normalize_document(reformatted)) == []

    @pytest.mark.parametrize("field_name,path,expected", [
        ("status", "FEAT-1.status", ChangeCategory.STATUS),
        ("assigned_agent", "FEAT-1.tasks.T.assigned_agent", ChangeCategory.ASSIGNMENT),
        ("priority", "FEAT-1.priority", ChangeCategory.PRIORITY),
        ("T.1", "FEAT-1.tasks.T.subtasks.T.1", ChangeCategory.PROGRESS),
        ("depends_on", "FEAT-1.tasks.T.depends_on", ChangeCategory.STRUCTURAL),
        ("updated_at", "FEAT-1.updated_at", ChangeCategory.METADATA),
        ("title", "FEAT-1.title", ChangeCategory.OTHER),
    ])
    def test_categorize(self, field_name, path, expected):
        assert categorize(field_name, path) is expected


class TestImpact:
    """Test impact rating"""

    def change(self, category, old, new, task_id=None):
        return FieldChange(path="x", change_type=ChangeType.MODIFICATION, old_value=old,
                           new_value=new, category=category, task_id=task_id)

    def test_workflow_status_transition_is_high(self):
        changes = [self.change(ChangeCategory.STATUS, "ready", "in_progress")]
        assert assess_impact(changes) is Impact.HIGH

    def test_reassignment_is_high(self):
        changes = [self.change(ChangeCategory.ASSIGNMENT, "alice", "bob")]
        assert assess_impact(changes) is Impact.HIGH

    def test_priority_raise_is_high_and_drop_is_not(self):
        assert assess_impact([self.change(ChangeCategory.PRIORITY, "P2", "P0")]) is Impact.HIGH
        assert assess_impact([self.change(ChangeCategory.PRIORITY, "P0", "P2")]) is Impact.LOW

    def test_task_change_is_medium(self):
        changes = [self.change(ChangeCategory.OTHER, "a", "b", task_id="TASK-1")]
        assert assess_impact(changes) is Impact.MEDIUM

    def test_no_changes(self):
        assert assess_impact([]) is Impact.NONE


class TestClassify:
    """Test classification of real file changes"""

    @pytest.fixture
    def classifier(self, feat_workflow):
        return ChangeClassifier(feat_workflow.repository, feat_workflow.store)

    @pytest.mark.asyncio
    async def test_content_change(self, classifier, feat_100):
        assert await classifier.prime([feat_100]) == 1
        feat_100.write_text(feat_100.read_text().replace("status: ready", "status: blocked", 1))
        event = ChangeEvent.modified(feat_100)

        description = await classifier.classify(event)

        assert description.kind is DescriptionKind.CONTENT
        assert description.representation is Representation.DOCUMENT
        assert description.spec_ids == ["FEAT-100"]
        assert description.affected_task_ids == ["TASK-001"]
        [status] = description.changes_in(ChangeCategory.STATUS)
        assert (status.old_value, status.new_value) == ("ready", "blocked")
        assert description.impact is Impact.HIGH
        assert "+  status: blocked" in description.raw_diff
        assert event.raw_diff == description.raw_diff

    @pytest.mark.asyncio
    async def test_unchanged_content(self, classifier, feat_100):
        await classifier.prime([feat_100])

        description = await classifier.classify(ChangeEvent.modified(feat_100))

        assert description.kind is DescriptionKind.UNCHANGED
        assert description.changes == []
        assert description.impact is Impact.NONE

    @pytest.mark.asyncio
    async def test_deleted_document(self, classifier, feat_100):
        await classifier.prime([feat_100])
        feat_100.unlink()

        description = await classifier.classify(ChangeEvent.deleted(feat_100))

        assert description.kind is DescriptionKind.DELETED
        assert description.spec_ids == ["FEAT-100"]
        [change] = description.changes
        assert change.change_type is ChangeType.DELETION
        assert classifier.get_snapshot(feat_100) is None

    @pytest.mark.asyncio
    async def test_parse_error_keeps_snapshot(self, classifier, feat_100):
        await classifier.prime([feat_100])
        snapshot = classifier.get_snapshot(feat_100)
        feat_100.write_text("---\nid: FEAT-100\ntasks: [\n---\n")

        description = await classifier.classify(ChangeEvent.modified(feat_100))

        assert description.is_parse_error
        assert description.impact is Impact.HIGH
        assert description.spec_ids == ["FEAT-100"]
        assert "Invalid YAML" in description.error
        assert classifier.get_snapshot(feat_100) is snapshot
        assert classifier.get_status()["parse_errors"] == 1

    @pytest.mark.asyncio
    async def test_state_file_change(self, classifier, feat_workflow):
        progress_path = feat_workflow.state_dir / "progress.json"
        await classifier.prime([progress_path])
        progress = json.loads(progress_path.read_text())
        progress["by_spec"]["FEAT-100"]["tasks"]["TASK-002"]["status"] = "blocked"
        progress_path.write_text(json.dumps(progress))

        description = await classifier.classify(ChangeEvent.modified(progress_path))

        assert description.representation is Representation.RECORD
        assert description.state_category == "progress"
        assert description.spec_ids == ["FEAT-100"]
        assert description.affected_task_ids == ["TASK-002"]

    @pytest.mark.asyncio
    async def test_unwatched_path_is_ignored(self, classifier, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")

        description = await classifier.classify(ChangeEvent.modified(path))

        assert description.kind is DescriptionKind.IGNORED
