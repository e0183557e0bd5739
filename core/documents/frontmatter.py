"""
YAML frontmatter parsing and rendering.

A specification document starts with a YAML block delimited by ``---``
lines; everything after the closing delimiter is prose and is preserved
verbatim when the document is rendered back.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from ..errors import ParseError
from ..models.documents import SpecDocument, Task

logger = logging.getLogger(__name__)

DELIMITER = "---"

REQUIRED_FIELDS = ("id", "title", "type", "status")
REQUIRED_TASK_FIELDS = ("id", "title")

# Order used when writing metadata back out
SPEC_FIELD_ORDER = ("id", "title", "type", "status", "priority", "phase")
TASK_FIELD_ORDER = (
    "id", "title", "status", "agent_type", "depends_on", "context_requirements",
    "estimated_hours", "assigned_agent", "subtasks"
)


def split_frontmatter(text: str) -> Tuple[Dict[str, Any], str]:
    """
    Split a document into its metadata mapping and prose body.

    Args:
        text: Full document text

    Returns:
        (metadata, body)

    Raises:
        ParseError: If the frontmatter block is missing or not a YAML mapping
    """
    if text.startswith("\ufeff"):
        text = text[1:]

    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != DELIMITER:
        raise ParseError("Document does not start with a frontmatter block")

    closing = None
    for index in range(1, len(lines)):
        if lines[index].strip() == DELIMITER:
            closing = index
            break

    if closing is None:
        raise ParseError("Frontmatter block is not terminated")

    raw = "".join(lines[1:closing])
    body = "".join(lines[closing + 1:])

    try:
        metadata = yaml.safe_load(raw) if raw.strip() else {}
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML in frontmatter: {e}") from e

    if not isinstance(metadata, dict):
        raise ParseError("Frontmatter must be a YAML mapping")

    return metadata, body


def validate_metadata(metadata: Dict[str, Any]) -> List[str]:
    """Return a list of structural problems with the metadata mapping"""
    errors = []
    for field in REQUIRED_FIELDS:
        if metadata.get(field) in (None, ""):
            errors.append(f"Missing required field: {field}")

    tasks = metadata.get("tasks", [])
    if tasks is None:
        tasks = []
    if not isinstance(tasks, list):
        errors.append("Field 'tasks' must be a list")
        return errors

    for position, task in enumerate(tasks):
        if not isinstance(task, dict):
            errors.append(f"Task at position {position} must be a mapping")
            continue
        for field in REQUIRED_TASK_FIELDS:
            if task.get(field) in (None, ""):
                errors.append(f"Task at position {position} missing required field: {field}")

    return errors


def metadata_to_document(
    metadata: Dict[str, Any],
    body: str = "",
    source_path: Optional[Path] = None
) -> SpecDocument:
    """Build a validated SpecDocument from a metadata mapping"""
    errors = validate_metadata(metadata)
    if errors:
        raise ParseError(
            f"Invalid frontmatter: {'; '.join(errors)}",
            details={"errors": errors, "path": str(source_path) if source_path else None}
        )

    known = set(SPEC_FIELD_ORDER) | {"tasks"}
    extra = {key: value for key, value in metadata.items() if key not in known}

    tasks = []
    for raw_task in metadata.get("tasks") or []:
        task_data = dict(raw_task)
        subtasks = []
        for position, raw_subtask in enumerate(task_data.get("subtasks") or []):
            if isinstance(raw_subtask, str):
                raw_subtask = {"title": raw_subtask}
            subtask = dict(raw_subtask)
            subtask.setdefault("id", f"{task_data['id']}.{position + 1}")
            subtask.setdefault("title", subtask.get("description", ""))
            subtask.pop("description", None)
            subtasks.append(subtask)
        task_data["subtasks"] = subtasks
        tasks.append(task_data)

    try:
        return SpecDocument(
            id=metadata["id"],
            title=metadata["title"],
            type=metadata.get("type", "feature"),
            status=metadata["status"],
            priority=metadata.get("priority", "P2"),
            phase=metadata.get("phase"),
            tasks=tasks,
            source_path=source_path,
            body=body,
            extra=extra,
        )
    except ValidationError as e:
        raise ParseError(
            f"Invalid document metadata: {e.error_count()} validation error(s)",
            details={"errors": [err["msg"] for err in e.errors()]}
        ) from e


def parse_document(text: str, source_path: Optional[Path] = None) -> SpecDocument:
    """Parse a full document text into a SpecDocument"""
    metadata, body = split_frontmatter(text)
    return metadata_to_document(metadata, body, source_path)


def task_to_metadata(task: Task) -> Dict[str, Any]:
    """Serialize a task the way it appears in frontmatter"""
    data = task.model_dump(mode="json", exclude={"spec_id"})
    ordered: Dict[str, Any] = {}
    for key in TASK_FIELD_ORDER:
        value = data.get(key)
        if key in ("assigned_agent", "estimated_hours", "agent_type") and value is None:
            continue
        if key in ("subtasks", "context_requirements") and not value:
            continue
        ordered[key] = value
    return ordered


def document_to_metadata(document: SpecDocument) -> Dict[str, Any]:
    """Serialize a SpecDocument back into an ordered metadata mapping"""
    metadata: Dict[str, Any] = {
        "id": document.id,
        "title": document.title,
        "type": document.type,
        "status": document.status.value,
        "priority": document.priority.value,
    }
    if document.phase is not None:
        metadata["phase"] = document.phase
    metadata.update(document.extra)
    metadata["tasks"] = [task_to_metadata(task) for task in document.tasks]
    return metadata


def render_document(document: SpecDocument) -> str:
    """Render a SpecDocument as frontmatter plus its original prose"""
    dumped = yaml.safe_dump(
        document_to_metadata(document),
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True
    )
    body = document.body
    return f"{DELIMITER}\n{dumped}{DELIMITER}\n{body}"


def _step(container: Any, key: str, create: bool) -> Any:
    """Resolve one dot-path segment; list items are addressed by their id"""
    if isinstance(container, list):
        for item in container:
            if isinstance(item, dict) and str(item.get("id")) == key:
                return item
        if key.isdigit() and int(key) < len(container):
            return container[int(key)]
        raise KeyError(key)

    if isinstance(container, dict):
        if key not in container:
            if not create:
                raise KeyError(key)
            container[key] = {}
        return container[key]

    raise KeyError(key)


FieldPath = Union[str, Tuple[str, ...]]


def _segments(path: FieldPath) -> Tuple[str, ...]:
    return tuple(path) if isinstance(path, tuple) else tuple(path.split("."))


def set_field(metadata: Dict[str, Any], path: FieldPath, value: Any) -> None:
    """
    Write a value by dot path (``tasks.TASK-001.status``) or segment tuple,
    creating intermediate mappings as needed.

    Use a tuple when an id itself contains dots. List segments must already
    contain an item with the addressed id.
    """
    segments = _segments(path)
    current: Any = metadata
    for segment in segments[:-1]:
        current = _step(current, segment, create=True)

    last = segments[-1]
    if isinstance(current, dict):
        current[last] = value
    elif isinstance(current, list):
        for index, item in enumerate(current):
            if isinstance(item, dict) and str(item.get("id")) == last:
                current[index] = value
                return
        raise KeyError(last)
    else:
        raise KeyError(last)


def apply_updates(document: SpecDocument, updates: Dict[FieldPath, Any]) -> SpecDocument:
    """
    Return a new document with dot-path updates applied.

    Raises:
        ParseError: If the updated metadata no longer validates
        KeyError: If a path addresses an unknown task
    """
    metadata = document_to_metadata(document)
    for path, value in updates.items():
        set_field(metadata, path, value)
    updated = metadata_to_document(metadata, document.body, document.source_path)
    logger.debug(f"Applied {len(updates)} update(s) to {document.id}")
    return updated
