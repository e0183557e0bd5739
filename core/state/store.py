"""
JSON state store.

One JSON file per state category lives under the project-local state
directory. Writes go through a temporary file and an atomic rename; a
corrupted file detected at load time falls back to the last known-good
snapshot held in memory.
"""

import copy
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from ..errors import ParseError, StateIOError
from ..models.state import AssignmentRecord, AuditRecord, Conflict, HandoffRecord, SpecRecord
from .cache import StateCache

logger = logging.getLogger(__name__)


CATEGORIES = ("assignments", "progress", "handoffs", "metadata", "audit", "conflicts")

MAX_AUDIT_RECORDS = 5000


def default_state(category: str) -> Dict[str, Any]:
    """Empty document for a state category"""
    if category == "assignments":
        return {"current_assignments": {}, "assignment_history": []}
    if category == "progress":
        return {
            "overall": {"completed": 0, "total": 0, "percentage": 0},
            "by_phase": {},
            "by_spec": {},
        }
    if category == "handoffs":
        return {"ready_handoffs": [], "handoff_history": []}
    if category == "metadata":
        return {"version": "1.0.0", "created_at": datetime.now().isoformat()}
    if category == "audit":
        return {"records": []}
    if category == "conflicts":
        return {"queue": {}}
    raise ValueError(f"Unknown state category: {category}")


class StateStore:
    """
    Persistent store for the fast-query state representation.

    Features:
    - One JSON document per category (assignments, progress, handoffs,
      metadata, audit, conflicts)
    - Atomic writes via temporary file plus rename
    - Last known-good fallback on corrupted reads
    - Injectable cache invalidated by path
    """

    def __init__(self, state_dir: Path, cache: Optional[StateCache] = None):
        self.state_dir = Path(state_dir)
        self.cache = cache or StateCache()
        self._last_good: Dict[str, Dict[str, Any]] = {}
        self._load_failures = 0

    def initialize(self) -> None:
        """
        Create the state directory and any missing category files.

        Raises:
            StateIOError: If the directory cannot be created or written; this
                is the only fatal startup condition
        """
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            for category in CATEGORIES:
                path = self.path_for(category)
                if not path.exists():
                    path.write_text(self.render(category, default_state(category)), encoding="utf-8")
        except OSError as e:
            raise StateIOError(f"Cannot initialize state directory {self.state_dir}: {e}") from e

        logger.info(f"State store ready at {self.state_dir}")

    def path_for(self, category: str) -> Path:
        if category not in CATEGORIES:
            raise ValueError(f"Unknown state category: {category}")
        return self.state_dir / f"{category}.json"

    def category_for(self, path: Path) -> Optional[str]:
        """Map a file path back to its state category, if it is one"""
        path = Path(path)
        if path.parent.resolve() != self.state_dir.resolve():
            return None
        if path.suffix != ".json" or path.stem not in CATEGORIES:
            return None
        return path.stem

    def render(self, category: str, data: Dict[str, Any]) -> str:
        """Serialize a category document"""
        return json.dumps(data, indent=2, default=str) + "\n"

    def parse(self, category: str, text: str) -> Dict[str, Any]:
        """
        Parse and structurally validate a category document.

        Raises:
            ParseError: If the text is not valid JSON or has the wrong shape
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON in {category}.json: {e}") from e

        if not isinstance(data, dict):
            raise ParseError(f"{category}.json must contain an object")

        for key, value in default_state(category).items():
            if key in data and isinstance(value, (dict, list)) and not isinstance(data[key], type(value)):
                raise ParseError(f"{category}.json field '{key}' has the wrong type")

        if category == "progress":
            for spec_id, record in data.get("by_spec", {}).items():
                try:
                    SpecRecord.model_validate(record)
                except ValueError as e:
                    raise ParseError(f"Invalid progress record for {spec_id}: {e}") from e

        if category == "conflicts":
            for spec_id, raw in data.get("queue", {}).items():
                try:
                    Conflict.model_validate(raw)
                except ValueError as e:
                    raise ParseError(f"Invalid queued conflict for {spec_id}: {e}") from e

        return data

    async def load(self, category: str) -> Dict[str, Any]:
        """
        Load a category document.

        Missing files yield the default document. Unreadable or corrupt
        files yield the last known-good snapshot and log a warning.
        """
        path = self.path_for(category)
        cached = await self.cache.get(str(path))
        if cached is not None:
            return copy.deepcopy(cached)

        if not path.exists():
            data = self._last_good.get(category) or default_state(category)
            return copy.deepcopy(data)

        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                text = await f.read()
            data = self.parse(category, text)
        except (OSError, ParseError) as e:
            self._load_failures += 1
            fallback = self._last_good.get(category)
            logger.warning(
                f"Failed to load state file {path}: {e}. "
                f"{'Using last known-good snapshot.' if fallback else 'Using empty state.'}"
            )
            return copy.deepcopy(fallback or default_state(category))

        self._last_good[category] = data
        await self.cache.put(str(path), data)
        return copy.deepcopy(data)

    def load_now(self, category: str) -> Dict[str, Any]:
        """
        Blocking variant of ``load`` for use outside a running event loop.

        Bypasses the cache but shares the known-good fallback.
        """
        path = self.path_for(category)
        if not path.exists():
            return copy.deepcopy(self._last_good.get(category) or default_state(category))
        try:
            data = self.parse(category, path.read_text(encoding='utf-8'))
        except (OSError, ParseError) as e:
            self._load_failures += 1
            logger.warning(f"Failed to load state file {path}: {e}")
            return copy.deepcopy(self._last_good.get(category) or default_state(category))

        self._last_good[category] = data
        return copy.deepcopy(data)

    async def save(self, category: str, data: Dict[str, Any]) -> None:
        """
        Atomically write a category document.

        Raises:
            StateIOError: If the write or rename fails
        """
        path = self.path_for(category)
        temp_file = path.with_suffix('.tmp')
        try:
            async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
                await f.write(self.render(category, data))
            os.replace(temp_file, path)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise StateIOError(f"Failed to save state file {path}: {e}") from e

        await self.accept(category, data)
        logger.debug(f"Saved {category} state to {path}")

    async def accept(self, category: str, data: Dict[str, Any]) -> None:
        """Record data just committed to disk as the known-good snapshot"""
        self._last_good[category] = copy.deepcopy(data)
        await self.cache.invalidate(str(self.path_for(category)))

    def written_at(self, category: str) -> Optional[datetime]:
        """Last modification time of a category file"""
        path = self.path_for(category)
        try:
            return datetime.fromtimestamp(path.stat().st_mtime)
        except OSError:
            return None

    # Typed accessors

    async def get_spec_record(self, spec_id: str) -> Optional[SpecRecord]:
        progress = await self.load("progress")
        raw = progress.get("by_spec", {}).get(spec_id)
        if raw is None:
            return None
        return SpecRecord.model_validate(raw)

    async def get_spec_records(self) -> Dict[str, SpecRecord]:
        progress = await self.load("progress")
        return {
            spec_id: SpecRecord.model_validate(raw)
            for spec_id, raw in progress.get("by_spec", {}).items()
        }

    async def get_current_assignments(self) -> List[AssignmentRecord]:
        assignments = await self.load("assignments")
        records = []
        for spec_id, tasks in assignments.get("current_assignments", {}).items():
            for task_id, raw in tasks.items():
                raw = dict(raw)
                raw.setdefault("spec_id", spec_id)
                raw.setdefault("task_id", task_id)
                records.append(AssignmentRecord.model_validate(raw))
        return records

    async def get_assignment_history(self) -> List[AssignmentRecord]:
        assignments = await self.load("assignments")
        return [
            AssignmentRecord.model_validate(raw)
            for raw in assignments.get("assignment_history", [])
        ]

    async def get_ready_handoffs(self) -> List[HandoffRecord]:
        handoffs = await self.load("handoffs")
        return [HandoffRecord.model_validate(raw) for raw in handoffs.get("ready_handoffs", [])]

    async def save_conflict_queue(self, queue: Dict[str, Conflict]) -> None:
        """Persist the manual conflict queue, keyed by spec id"""
        await self.save("conflicts", {
            "queue": {spec_id: conflict.model_dump(mode="json") for spec_id, conflict in queue.items()}
        })

    async def append_audit(self, record: AuditRecord) -> None:
        """Append one record to the audit log, trimming the oldest entries"""
        audit = await self.load("audit")
        records = audit.setdefault("records", [])
        records.append(record.model_dump(mode="json"))
        if len(records) > MAX_AUDIT_RECORDS:
            del records[:len(records) - MAX_AUDIT_RECORDS]
        await self.save("audit", audit)

    async def get_audit_records(self, limit: Optional[int] = None) -> List[AuditRecord]:
        audit = await self.load("audit")
        raw_records = audit.get("records", [])
        if limit is not None:
            raw_records = raw_records[-limit:]
        return [AuditRecord.model_validate(raw) for raw in raw_records]

    def get_status(self) -> Dict[str, Any]:
        return {
            "state_dir": str(self.state_dir),
            "snapshots": sorted(self._last_good),
            "load_failures": self._load_failures,
            "cache": self.cache.get_stats(),
        }
