"""
Sync Coordinator.

Executes cross-representation writes as one atomic transaction: every
participating file is staged to a temporary file, validated, and only then
swapped into place. Any failure before or during the swap leaves every
participating file byte-identical to its content before the transaction.
"""

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiofiles

from ..documents.frontmatter import apply_updates, parse_document, render_document
from ..documents.repository import DocumentRepository
from ..errors import (
    EntityNotFound, ParseError, StateIOError, TransactionCancelled, TransactionError, WorkflowError
)
from ..models.documents import Priority, SpecStatus, SpecDocument, Task, TaskStatus
from ..models.results import OperationResult
from ..models.state import (
    AuditRecord, ConsistencyVerdict, Representation, SpecRecord,
    TransactionOutcome, VerdictStatus
)
from ..state.store import StateStore
from ..tracking.progress import build_spec_record, refresh_progress_totals
from .events import EventCategory, RoutedEvent, Severity

logger = logging.getLogger(__name__)

CommitHook = Callable[[], Awaitable[None]]


class TransactionState(Enum):
    PENDING = "pending"
    STAGING = "staging"
    VALIDATING = "validating"
    REPLACING = "replacing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


@dataclass
class StagedWrite:
    """One file participating in a transaction"""
    path: Path
    content: str
    validator: Optional[Callable[[str], Any]] = None
    on_commit: Optional[CommitHook] = None
    temp_path: Optional[Path] = None
    original: Optional[bytes] = None
    existed: bool = False
    replaced: bool = False


class Transaction:
    """
    A set of file writes applied all-or-nothing.

    The transaction can be cancelled until its replace phase begins; after
    that, ``cancel`` returns False and the transaction runs to completion.
    """

    def __init__(
        self,
        entity: Optional[str] = None,
        fields: Optional[List[str]] = None,
        action: str = "transaction",
        reasoning: Optional[str] = None
    ):
        self.transaction_id = uuid.uuid4().hex[:12]
        self.entity = entity
        self.fields = list(fields or [])
        self.action = action
        self.reasoning = reasoning
        self.state = TransactionState.PENDING
        self.writes: List[StagedWrite] = []
        self.error: Optional[str] = None
        self._cancel_requested = False

    def stage(
        self,
        path: Path,
        content: str,
        validator: Optional[Callable[[str], Any]] = None,
        on_commit: Optional[CommitHook] = None
    ) -> 'Transaction':
        """Add or replace the pending write for ``path``"""
        if self.state is not TransactionState.PENDING:
            raise TransactionError("Cannot stage writes after execution started")
        path = Path(path)
        self.writes = [w for w in self.writes if w.path != path]
        self.writes.append(StagedWrite(path=path, content=content,
                                       validator=validator, on_commit=on_commit))
        return self

    def cancel(self) -> bool:
        """
        Request cancellation.

        Returns:
            True if the transaction will not modify any file
        """
        if self.state in (TransactionState.REPLACING, TransactionState.COMMITTED):
            return False
        self._cancel_requested = True
        return True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def paths(self) -> List[Path]:
        return [w.path for w in self.writes]

    def __len__(self) -> int:
        return len(self.writes)


class SyncCoordinator:
    """
    Applies transactions and builds them from verdicts and tracker updates.

    Features:
    - Temp-file staging, validation, then atomic replace
    - Byte-identical rollback on any failure
    - Cancellation up to the replace phase
    - Serialized transactions so observers never see partial writes
    - Audit record per transaction, success or failure
    """

    def __init__(
        self,
        repository: DocumentRepository,
        store: StateStore,
        router: Optional[Any] = None
    ):
        self.repository = repository
        self.store = store
        self.router = router
        self._lock = asyncio.Lock()

        self._committed = 0
        self._rolled_back = 0
        self._cancelled = 0
        self._last_duration_ms: Optional[float] = None

    # Staging helpers

    def stage_document(self, tx: Transaction, document: SpecDocument) -> None:
        """Stage a rendered document with a parse-back validator"""
        if document.source_path is None:
            raise TransactionError(f"Document {document.id} has no source path")
        path = Path(document.source_path)
        content = render_document(document)

        def validate(text: str) -> SpecDocument:
            parsed = parse_document(text, source_path=path)
            if parsed.id != document.id:
                raise ParseError(f"Rendered document id {parsed.id} != {document.id}")
            return parsed

        async def remember() -> None:
            self.repository.remember(document)

        tx.stage(path, content, validator=validate, on_commit=remember)

    def stage_state(self, tx: Transaction, category: str, data: Dict[str, Any]) -> None:
        """Stage a state category document with a structural validator"""
        path = self.store.path_for(category)
        content = self.store.render(category, data)

        async def accept() -> None:
            await self.store.accept(category, data)

        tx.stage(path, content,
                 validator=lambda text: self.store.parse(category, text),
                 on_commit=accept)

    # Execution

    async def execute(self, tx: Transaction) -> AuditRecord:
        """
        Execute a transaction.

        Returns:
            The audit record of the committed transaction

        Raises:
            TransactionCancelled: If cancelled before the replace phase
            TransactionError: If any step failed; no file was modified
        """
        start = time.perf_counter()
        async with self._lock:
            try:
                await self._stage_all(tx)
                self._check_cancel(tx)
                self._validate_all(tx)
                self._check_cancel(tx)
                self._capture_originals(tx)
                self._check_cancel(tx)
            except TransactionCancelled as e:
                await self._discard(tx)
                tx.state = TransactionState.CANCELLED
                self._cancelled += 1
                await self._finish(tx, TransactionOutcome.CANCELLED, start, e.message)
                raise
            except asyncio.CancelledError:
                await self._discard(tx)
                tx.state = TransactionState.CANCELLED
                self._cancelled += 1
                await asyncio.shield(self._finish(tx, TransactionOutcome.CANCELLED, start, "task cancelled"))
                raise
            except (WorkflowError, OSError) as e:
                await self._discard(tx)
                tx.state = TransactionState.ROLLED_BACK
                self._rolled_back += 1
                message = e.message if isinstance(e, WorkflowError) else str(e)
                await self._finish(tx, TransactionOutcome.ROLLED_BACK, start, message)
                raise TransactionError(
                    f"Transaction {tx.transaction_id} aborted: {message}",
                    details={"transaction_id": tx.transaction_id, "files": [str(p) for p in tx.paths]}
                ) from e

            # Point of no return: replace runs without awaiting, so task
            # cancellation cannot interleave with it
            tx.state = TransactionState.REPLACING
            try:
                self._replace_all(tx)
            except OSError as e:
                self._restore_originals(tx)
                await self._discard(tx)
                tx.state = TransactionState.ROLLED_BACK
                self._rolled_back += 1
                await asyncio.shield(self._finish(tx, TransactionOutcome.ROLLED_BACK, start, str(e)))
                raise TransactionError(
                    f"Transaction {tx.transaction_id} rolled back during replace: {e}",
                    details={"transaction_id": tx.transaction_id}
                ) from e

            tx.state = TransactionState.COMMITTED
            self._committed += 1
            return await asyncio.shield(self._finish(tx, TransactionOutcome.COMMITTED, start))

    async def _stage_all(self, tx: Transaction) -> None:
        tx.state = TransactionState.STAGING
        for write in tx.writes:
            write.path.parent.mkdir(parents=True, exist_ok=True)
            write.temp_path = write.path.with_name(f".{write.path.name}.{tx.transaction_id}.tmp")
            try:
                async with aiofiles.open(write.temp_path, 'w', encoding='utf-8') as f:
                    await f.write(write.content)
            except OSError as e:
                raise StateIOError(f"Cannot stage {write.path}: {e}") from e

    def _validate_all(self, tx: Transaction) -> None:
        tx.state = TransactionState.VALIDATING
        for write in tx.writes:
            if write.validator is None:
                continue
            staged = write.temp_path.read_text(encoding='utf-8')
            try:
                write.validator(staged)
            except WorkflowError as e:
                raise ParseError(f"Staged {write.path.name} failed validation: {e.message}") from e
            except ValueError as e:
                raise ParseError(f"Staged {write.path.name} failed validation: {e}") from e

    def _capture_originals(self, tx: Transaction) -> None:
        for write in tx.writes:
            write.existed = write.path.exists()
            write.original = write.path.read_bytes() if write.existed else None

    def _check_cancel(self, tx: Transaction) -> None:
        if tx.cancel_requested:
            raise TransactionCancelled(f"Transaction {tx.transaction_id} cancelled")

    def _replace_all(self, tx: Transaction) -> None:
        for write in tx.writes:
            os.replace(write.temp_path, write.path)
            write.replaced = True

    def _restore_originals(self, tx: Transaction) -> None:
        for write in tx.writes:
            if not write.replaced:
                continue
            try:
                if write.existed:
                    write.path.write_bytes(write.original)
                else:
                    write.path.unlink()
            except OSError as e:
                logger.error(f"Failed to restore {write.path} after aborted transaction: {e}")

    async def _discard(self, tx: Transaction) -> None:
        for write in tx.writes:
            if write.temp_path is not None and write.temp_path.exists():
                try:
                    write.temp_path.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove temp file {write.temp_path}: {e}")

    async def _finish(
        self,
        tx: Transaction,
        outcome: TransactionOutcome,
        start: float,
        error: Optional[str] = None
    ) -> AuditRecord:
        duration_ms = (time.perf_counter() - start) * 1000
        self._last_duration_ms = duration_ms

        if outcome is TransactionOutcome.COMMITTED:
            for write in tx.writes:
                if write.on_commit is not None:
                    await write.on_commit()
            logger.info(
                f"Committed transaction {tx.transaction_id} for {tx.entity} "
                f"({len(tx.writes)} file(s), {duration_ms:.1f}ms)"
            )
        else:
            log = logger.info if outcome is TransactionOutcome.CANCELLED else logger.error
            log(f"Transaction {tx.transaction_id} for {tx.entity} {outcome.value}: {error}")

        record = AuditRecord(
            transaction_id=tx.transaction_id,
            action=tx.action,
            entity=tx.entity,
            fields=tx.fields,
            files=[str(p) for p in tx.paths],
            outcome=outcome,
            error=error,
            reasoning=tx.reasoning,
            duration_ms=round(duration_ms, 3),
        )
        try:
            await self.store.append_audit(record)
        except StateIOError as e:
            logger.error(f"Failed to append audit record for {tx.transaction_id}: {e.message}")

        if self.router is not None:
            await self.router.publish(RoutedEvent(
                category=EventCategory.TRANSACTION,
                severity=Severity.INFO if outcome is TransactionOutcome.COMMITTED else Severity.ERROR,
                source_path=tx.entity,
                payload=record,
            ))
        return record

    # Builders

    async def write(
        self,
        entity: str,
        fields: List[str],
        documents: Optional[List[SpecDocument]] = None,
        state: Optional[Dict[str, Dict[str, Any]]] = None,
        action: str = "transaction",
        reasoning: Optional[str] = None,
        transaction: Optional[Transaction] = None
    ) -> AuditRecord:
        """
        Write documents and state categories in one transaction.

        Raises:
            TransactionError: If the transaction failed or was cancelled
        """
        tx = transaction or Transaction(entity=entity, fields=fields, action=action, reasoning=reasoning)
        tx.entity, tx.fields, tx.action, tx.reasoning = entity, list(fields), action, reasoning
        for document in documents or []:
            self.stage_document(tx, document)
        for category, data in (state or {}).items():
            self.stage_state(tx, category, data)
        return await self.execute(tx)

    async def propagate(
        self,
        verdict: ConsistencyVerdict,
        source: Optional[Representation] = None,
        reasoning: Optional[str] = None,
        transaction: Optional[Transaction] = None
    ) -> OperationResult:
        """
        Make both representations of ``verdict.spec_id`` agree.

        Args:
            verdict: Verdict naming the entity and its divergences
            source: Side whose values win; defaults to ``verdict.source``
            reasoning: Recorded in the audit log

        Returns:
            OperationResult carrying the verdict marked auto_repaired
        """
        start = time.perf_counter()
        source = source or verdict.source
        try:
            document = await self.repository.get(verdict.spec_id)
            if document is None:
                raise EntityNotFound(
                    f"No document for {verdict.spec_id}; cannot propagate",
                    details={"spec_id": verdict.spec_id}
                )
            progress = await self.store.load("progress")
            raw_record = progress.get("by_spec", {}).get(verdict.spec_id)
            previous = SpecRecord.model_validate(raw_record) if raw_record else None

            documents: List[SpecDocument] = []
            if source is Representation.RECORD and previous is not None:
                updated = self._apply_record_to_document(document, previous)
                if render_document(updated) != render_document(document):
                    documents.append(updated)
                document = updated

            record = build_spec_record(document, previous, now=datetime.now())
            progress.setdefault("by_spec", {})[verdict.spec_id] = record.model_dump(mode="json")
            refresh_progress_totals(progress)

            await self.write(
                entity=verdict.spec_id,
                fields=[d.path for d in verdict.divergences],
                documents=documents,
                state={"progress": progress},
                action="propagate",
                reasoning=reasoning or f"propagate from {source.value}",
                transaction=transaction,
            )
        except WorkflowError as e:
            return OperationResult.from_exception(
                e, "propagate", processing_time_ms=(time.perf_counter() - start) * 1000
            )

        repaired = verdict.model_copy(update={"status": VerdictStatus.AUTO_REPAIRED, "source": source})
        return OperationResult.success_result(
            repaired, "propagate", processing_time_ms=(time.perf_counter() - start) * 1000
        )

    async def apply_task_changes(
        self,
        document: SpecDocument,
        fields: List[str],
        assignments: Optional[Dict[str, Any]] = None,
        handoffs: Optional[Dict[str, Any]] = None,
        action: str = "update_task",
        reasoning: Optional[str] = None,
        related: Optional[List[SpecDocument]] = None
    ) -> AuditRecord:
        """
        Write an updated document together with its rebuilt record and any
        assignment or handoff changes, all in one transaction.

        ``related`` documents, such as the target of a cross-specification
        handoff, are written and have their records rebuilt in the same
        transaction.
        """
        documents = [document] + list(related or [])
        progress = await self.store.load("progress")
        by_spec = progress.setdefault("by_spec", {})
        now = datetime.now()
        for changed in documents:
            raw_record = by_spec.get(changed.id)
            previous = SpecRecord.model_validate(raw_record) if raw_record else None
            by_spec[changed.id] = build_spec_record(changed, previous, now=now).model_dump(mode="json")
        refresh_progress_totals(progress)

        state: Dict[str, Dict[str, Any]] = {"progress": progress}
        if assignments is not None:
            state["assignments"] = assignments
        if handoffs is not None:
            state["handoffs"] = handoffs

        return await self.write(
            entity=document.id,
            fields=fields,
            documents=documents,
            state=state,
            action=action,
            reasoning=reasoning,
        )

    async def rebuild_records(self, documents: List[SpecDocument], reasoning: Optional[str] = None) -> AuditRecord:
        """Rebuild every record from its document in one transaction"""
        progress = await self.store.load("progress")
        by_spec = progress.setdefault("by_spec", {})
        for document in documents:
            raw_record = by_spec.get(document.id)
            previous = SpecRecord.model_validate(raw_record) if raw_record else None
            by_spec[document.id] = build_spec_record(document, previous).model_dump(mode="json")
        refresh_progress_totals(progress)
        return await self.write(
            entity="*",
            fields=["records"],
            state={"progress": progress},
            action="rebuild_records",
            reasoning=reasoning or f"rebuilt {len(documents)} record(s) from documents",
        )

    async def drop_record(self, spec_id: str, reasoning: Optional[str] = None) -> AuditRecord:
        """Remove the fast-query record of a specification that has no document"""
        progress = await self.store.load("progress")
        if spec_id not in progress.get("by_spec", {}):
            raise EntityNotFound(f"No record for {spec_id}", details={"spec_id": spec_id})
        del progress["by_spec"][spec_id]
        refresh_progress_totals(progress)
        return await self.write(
            entity=spec_id,
            fields=["record"],
            state={"progress": progress},
            action="drop_record",
            reasoning=reasoning,
        )

    @staticmethod
    def _apply_record_to_document(document: SpecDocument, record: SpecRecord) -> SpecDocument:
        """Copy record values into a document, adding tasks only the record knows"""
        updates: Dict[Any, Any] = {
            ("status",): SpecStatus(record.status).value,
            ("priority",): Priority(record.priority).value,
            ("phase",): record.phase,
        }
        added = []
        for task_id, task_record in record.tasks.items():
            task = document.get_task(task_id)
            if task is None:
                added.append(Task(
                    id=task_id,
                    spec_id=document.id,
                    title=task_id,
                    status=task_record.status,
                    assigned_agent=task_record.assigned_agent,
                    depends_on=list(task_record.depends_on),
                ))
                continue
            # Tuple paths, task ids may contain dots
            status = TaskStatus(task_record.status)
            updates[("tasks", task_id, "status")] = status.value
            updates[("tasks", task_id, "assigned_agent")] = task_record.assigned_agent
            updates[("tasks", task_id, "depends_on")] = list(task_record.depends_on)
            if status == TaskStatus.COMPLETE and task.subtasks:
                updates[("tasks", task_id, "subtasks")] = [
                    {"id": s.id, "title": s.title, "completed": True} for s in task.subtasks
                ]

        updated = apply_updates(document, updates)
        if not added:
            return updated
        updated.tasks.extend(added)
        # Re-run validation so back-references and duplicate checks hold
        return SpecDocument.model_validate(updated.model_dump())

    def get_status(self) -> Dict[str, Any]:
        return {
            "committed": self._committed,
            "rolled_back": self._rolled_back,
            "cancelled": self._cancelled,
            "last_duration_ms": self._last_duration_ms,
            "busy": self._lock.locked(),
        }
