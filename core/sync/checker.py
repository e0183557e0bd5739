"""
Consistency Checker.

Compares the document and fast-query record of a specification and issues
a ConsistencyVerdict with an explicit confidence score.

Confidence rubric, per divergent field:

    confidence = category_weight * category_score + recency_weight * recency_score

where ``category_score`` is ``simple_score`` for status/assignment-like
fields and ``structural_score`` for dependency lists and tasks that only
the record still lists, and ``recency_score`` grows linearly with the gap between
the two sides' last writes up to ``recency_horizon_s``. The verdict takes
the minimum over its divergent fields.
"""

import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

from ..documents.repository import DocumentRepository
from ..models.config import ConsistencyConfig
from ..models.documents import SpecDocument
from ..models.state import (
    ConsistencyVerdict, Divergence, FieldCategory, Representation,
    SpecRecord, VerdictStatus
)
from ..state.store import StateStore
from .classifier import ChangeDescription, DescriptionKind

logger = logging.getLogger(__name__)


def compare_representations(
    document: Optional[SpecDocument],
    record: Optional[SpecRecord]
) -> List[Divergence]:
    """
    List the fields on which a document and its record disagree.

    Spec-level status, priority and phase and per-task status and
    assignment are simple fields. Dependency lists and tasks the document
    no longer has are structural. A task the record has not caught up with
    yet is simple, since creating a record entry loses nothing.
    """
    divergences: List[Divergence] = []

    if document is None and record is None:
        return divergences

    if record is None:
        divergences.append(Divergence(
            field="record", document_value="present", record_value=None,
            category=FieldCategory.SIMPLE
        ))
        return divergences

    if document is None:
        divergences.append(Divergence(
            field="document", document_value=None, record_value="present",
            category=FieldCategory.STRUCTURAL
        ))
        return divergences

    for field_name, document_value, record_value in (
        ("status", document.status.value, record.status.value),
        ("priority", document.priority.value, record.priority.value),
        ("phase", document.phase, record.phase),
    ):
        if document_value != record_value:
            divergences.append(Divergence(
                field=field_name, document_value=document_value,
                record_value=record_value, category=FieldCategory.SIMPLE
            ))

    for task in document.tasks:
        task_record = record.tasks.get(task.id)
        if task_record is None:
            divergences.append(Divergence(
                task_id=task.id, field="presence", document_value=True,
                record_value=False, category=FieldCategory.SIMPLE
            ))
            continue

        if task.status != task_record.status:
            divergences.append(Divergence(
                task_id=task.id, field="status", document_value=task.status.value,
                record_value=task_record.status.value, category=FieldCategory.SIMPLE
            ))
        if task.assigned_agent != task_record.assigned_agent:
            divergences.append(Divergence(
                task_id=task.id, field="assigned_agent", document_value=task.assigned_agent,
                record_value=task_record.assigned_agent, category=FieldCategory.SIMPLE
            ))
        if sorted(task.depends_on) != sorted(task_record.depends_on):
            divergences.append(Divergence(
                task_id=task.id, field="depends_on", document_value=list(task.depends_on),
                record_value=list(task_record.depends_on), category=FieldCategory.STRUCTURAL
            ))

    document_ids = set(document.task_ids)
    for task_id in record.tasks:
        if task_id not in document_ids:
            divergences.append(Divergence(
                task_id=task_id, field="presence", document_value=False,
                record_value=True, category=FieldCategory.STRUCTURAL
            ))

    return divergences


class ConsistencyChecker:
    """
    Issues consistency verdicts for specifications.

    Features:
    - Loads the other representation for every classified change
    - Explicit, configurable confidence rubric
    - Side-effect free: never writes either representation
    - Bounded verdict history for status reporting
    """

    def __init__(
        self,
        repository: DocumentRepository,
        store: StateStore,
        config: Optional[ConsistencyConfig] = None,
        history_size: int = 200
    ):
        self.repository = repository
        self.store = store
        self.config = config or ConsistencyConfig()
        self.verdict_history: Deque[ConsistencyVerdict] = deque(maxlen=history_size)
        self._checks = 0

    def score(self, category: FieldCategory, delta_seconds: Optional[float]) -> float:
        """Confidence for one divergent field"""
        category_score = (
            self.config.simple_score if category == FieldCategory.SIMPLE
            else self.config.structural_score
        )
        recency_score = 0.0
        if delta_seconds is not None:
            recency_score = min(abs(delta_seconds) / self.config.recency_horizon_s, 1.0)
        confidence = (
            self.config.category_weight * category_score
            + self.config.recency_weight * recency_score
        )
        return round(max(0.0, min(confidence, 1.0)), 4)

    async def check(self, description: ChangeDescription) -> List[ConsistencyVerdict]:
        """
        Check every specification touched by a classified change.

        Parse errors are checked against the last known-good content, so the
        verdict reflects the state the rest of the system is operating on.
        """
        if description.kind in (DescriptionKind.IGNORED, DescriptionKind.UNCHANGED):
            return []

        prefer = description.representation
        if description.kind == DescriptionKind.PARSE_ERROR:
            prefer = None

        verdicts = []
        for spec_id in description.spec_ids:
            verdicts.append(await self.check_entity(spec_id, prefer=prefer))
        return verdicts

    async def check_entity(
        self,
        spec_id: str,
        prefer: Optional[Representation] = None,
        document: Optional[SpecDocument] = None,
        record: Optional[SpecRecord] = None,
        loaded: bool = False
    ) -> ConsistencyVerdict:
        """
        Compare both representations of one specification.

        Args:
            spec_id: Specification id
            prefer: Side that just changed; it is taken as the newer write
            document, record: Preloaded representations (with loaded=True)
            loaded: Skip loading and use the given representations as-is

        Returns:
            ConsistencyVerdict
        """
        self._checks += 1
        if not loaded:
            document = await self.repository.get(spec_id)
            record = await self.store.get_spec_record(spec_id)

        document_written_at = self.repository.written_at(document.source_path) if document else None
        record_written_at = None
        if record is not None:
            # progress.json can be edited by hand without touching updated_at
            stamps = [t for t in (record.updated_at, self.store.written_at("progress")) if t is not None]
            record_written_at = max(stamps) if stamps else None

        divergences = compare_representations(document, record)
        delta = None
        if document_written_at and record_written_at:
            delta = (document_written_at - record_written_at).total_seconds()

        for divergence in divergences:
            divergence.confidence = self.score(divergence.category, delta)

        source, orphan = self._choose_source(document, record, prefer, delta)

        if not divergences:
            status, confidence = VerdictStatus.CONSISTENT, 1.0
        elif orphan:
            status, confidence = VerdictStatus.CONFLICT, 0.0
        else:
            confidence = min(d.confidence for d in divergences)
            if confidence >= self.config.auto_repair_threshold:
                status = VerdictStatus.AUTO_REPAIRABLE
            else:
                status = VerdictStatus.CONFLICT

        verdict = ConsistencyVerdict(
            spec_id=spec_id,
            status=status,
            confidence=confidence,
            divergences=divergences,
            source=source,
            document_path=document.source_path if document else None,
            document_written_at=document_written_at,
            record_written_at=record_written_at,
            orphan_record=orphan,
        )
        self.verdict_history.append(verdict)

        if status != VerdictStatus.CONSISTENT:
            logger.info(
                f"{spec_id}: {status.value} (confidence {confidence:.2f}, "
                f"{len(divergences)} divergence(s), source {source.value})"
            )
        return verdict

    def _choose_source(
        self,
        document: Optional[SpecDocument],
        record: Optional[SpecRecord],
        prefer: Optional[Representation],
        delta: Optional[float]
    ) -> Tuple[Representation, bool]:
        if record is None:
            return Representation.DOCUMENT, False
        if document is None:
            return Representation.RECORD, True
        if prefer is not None:
            return prefer, False
        if delta is not None and delta < 0:
            return Representation.RECORD, False
        return Representation.DOCUMENT, False

    async def check_all(self) -> List[ConsistencyVerdict]:
        """Check every specification known to either representation"""
        documents = await self.repository.load_all()
        records = await self.store.get_spec_records()

        verdicts = []
        for spec_id in list(documents) + [s for s in records if s not in documents]:
            verdicts.append(await self.check_entity(
                spec_id,
                document=documents.get(spec_id),
                record=records.get(spec_id),
                loaded=True
            ))
        return verdicts

    def get_status(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for verdict in self.verdict_history:
            counts[verdict.status.value] = counts.get(verdict.status.value, 0) + 1
        return {
            "checks": self._checks,
            "auto_repair_threshold": self.config.auto_repair_threshold,
            "recent_verdicts": counts,
        }
