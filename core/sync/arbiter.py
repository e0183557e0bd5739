"""
Conflict Arbiter.

Resolves conflicts the consistency checker would not repair on its own.
Strategies run in a fixed order: auto-repair when confidence allows it,
then recency, then declared precedence rules, then the manual queue. Every
applied resolution is preceded by a backup snapshot that ``rollback`` can
restore.
"""

import json
import logging
import shutil
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from ..documents.frontmatter import parse_document
from ..errors import (
    ConsistencyConflict, EntityNotFound, StateIOError, TransactionError, WorkflowError
)
from ..models.config import ArbiterConfig
from ..models.results import OperationResult
from ..models.state import (
    AuditRecord, Conflict, Divergence, FieldCategory, Representation, Resolution,
    ResolutionStrategy, TransactionOutcome, VerdictStatus
)
from ..state.store import default_state
from ..tracking.progress import refresh_progress_totals
from .checker import compare_representations
from .events import EventCategory, RoutedEvent, Severity
from .transaction import SyncCoordinator, Transaction

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


class ConflictArbiter:
    """
    Applies resolution strategies to conflicts.

    Features:
    - Auto-repair above the confidence threshold
    - Recency and precedence strategies below it
    - Persistent manual queue, one entry per specification, most urgent first
    - Backup snapshot before any applied resolution, with rollback
    - Retention-based backup cleanup
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        backups_dir: Path,
        config: Optional[ArbiterConfig] = None,
        auto_repair_threshold: float = 0.6
    ):
        self.coordinator = coordinator
        self.backups_dir = Path(backups_dir)
        self.config = config or ArbiterConfig()
        self.auto_repair_threshold = auto_repair_threshold

        self.store = coordinator.store

        # Queued conflicts by spec id
        self._manual: Dict[str, Conflict] = self._load_queue()
        self._resolved: Dict[str, Conflict] = {}

    # Strategy selection

    def choose(self, conflict: Conflict) -> Optional[tuple]:
        """
        Pick a strategy and winning side without applying anything.

        Returns:
            (strategy, side, reasoning), or None to escalate
        """
        verdict = conflict.verdict
        if verdict.orphan_record:
            return None

        if conflict.confidence >= self.auto_repair_threshold:
            return (
                ResolutionStrategy.AUTO_REPAIR, verdict.source,
                f"confidence {conflict.confidence:.2f} >= {self.auto_repair_threshold:.2f}; "
                f"repair from {verdict.source.value}"
            )

        if verdict.document_written_at and verdict.record_written_at:
            delta = (verdict.document_written_at - verdict.record_written_at).total_seconds()
            if abs(delta) > self.config.recency_tolerance_s:
                side = Representation.DOCUMENT if delta > 0 else Representation.RECORD
                return (
                    ResolutionStrategy.RECENCY, side,
                    f"{side.value} written {abs(delta):.1f}s later "
                    f"(tolerance {self.config.recency_tolerance_s:.1f}s)"
                )

        side = self._precedence_side(conflict)
        if side is not None:
            return (
                ResolutionStrategy.PRECEDENCE, side,
                f"{side.value} holds a precedence value "
                f"({', '.join(sorted(self.config.precedence_rules))})"
            )
        return None

    def _precedence_side(self, conflict: Conflict) -> Optional[Representation]:
        winners = set()
        for divergence in conflict.verdict.divergences:
            ranked = self.config.precedence_rules.get(divergence.field)
            if not ranked:
                continue
            document_wins = divergence.document_value in ranked
            record_wins = divergence.record_value in ranked
            if document_wins and not record_wins:
                winners.add(Representation.DOCUMENT)
            elif record_wins and not document_wins:
                winners.add(Representation.RECORD)
        if len(winners) == 1:
            return winners.pop()
        return None

    # Resolution

    async def resolve(self, conflict: Conflict) -> Conflict:
        """
        Resolve a conflict automatically or queue it for manual resolution.

        Returns:
            The conflict, resolved or marked manual
        """
        choice = self.choose(conflict)
        if choice is None:
            return await self._escalate(conflict, self._escalation_reason(conflict))

        strategy, side, reasoning = choice
        try:
            return await self._apply(conflict, strategy, side, reasoning, resolver="arbiter")
        except WorkflowError as e:
            return await self._escalate(conflict, f"{strategy.value} resolution failed: {e.message}")

    def _escalation_reason(self, conflict: Conflict) -> str:
        if conflict.verdict.orphan_record:
            return "record has no document"
        return (
            f"confidence {conflict.confidence:.2f} below threshold, write times within "
            f"tolerance and no precedence rule applies"
        )

    async def _escalate(self, conflict: Conflict, reasoning: str) -> Conflict:
        spec_id = conflict.verdict.spec_id
        queued = self._manual.get(spec_id)
        conflict.manual = True
        conflict.strategy = ResolutionStrategy.MANUAL
        conflict.reasoning = reasoning

        if queued is not None:
            # A re-check of an already queued spec replaces the entry in place
            conflict.conflict_id = queued.conflict_id
            conflict.created_at = queued.created_at
            self._manual[spec_id] = conflict
            await self._save_queue()
            logger.info(f"Refreshed queued conflict {conflict.conflict_id} for {spec_id}")
            return conflict

        self._manual[spec_id] = conflict
        await self._save_queue()
        logger.warning(f"Escalated conflict {conflict.conflict_id} for {spec_id}: {reasoning}")

        await self._audit(conflict, action="escalate", outcome=None)
        await self._publish(conflict, Severity.WARNING)
        return conflict

    def _load_queue(self) -> Dict[str, Conflict]:
        data = self.store.load_now("conflicts")
        queue = {
            spec_id: Conflict.model_validate(raw)
            for spec_id, raw in data.get("queue", {}).items()
        }
        if queue:
            logger.info(f"Restored {len(queue)} queued conflict(s) from {self.store.path_for('conflicts')}")
        return queue

    async def _save_queue(self) -> None:
        await self.store.save_conflict_queue(self._manual)

    async def discard(self, spec_id: str, reasoning: str) -> Optional[Conflict]:
        """
        Drop a queued conflict whose representations agree again.

        Returns:
            The discarded conflict, or None if nothing was queued for the spec
        """
        conflict = self._manual.pop(spec_id, None)
        if conflict is None:
            return None
        conflict.reasoning = reasoning
        await self._save_queue()
        await self._audit(conflict, action="discard", outcome=TransactionOutcome.COMMITTED)
        logger.info(f"Discarded queued conflict {conflict.conflict_id} for {spec_id}: {reasoning}")
        return conflict

    async def _apply(
        self,
        conflict: Conflict,
        strategy: ResolutionStrategy,
        side: Representation,
        reasoning: str,
        resolver: str
    ) -> Conflict:
        verdict = conflict.verdict
        conflict.backup_id = await self.backup(conflict)

        if verdict.orphan_record and side is Representation.DOCUMENT:
            await self.coordinator.drop_record(verdict.spec_id, reasoning=reasoning)
        elif verdict.orphan_record:
            raise EntityNotFound(
                f"Cannot restore a document for {verdict.spec_id} from its record",
                details={"spec_id": verdict.spec_id}
            )
        else:
            result = await self.coordinator.propagate(verdict, source=side, reasoning=reasoning)
            if not result.success:
                raise TransactionError(result.error or "propagation failed", details=result.error_details)

        conflict.chosen = conflict.candidate_for(side) or Resolution(source=side)
        conflict.strategy = strategy
        conflict.reasoning = reasoning
        conflict.resolved_at = datetime.now()
        conflict.resolved_by = resolver
        conflict.verdict = verdict.model_copy(update={"status": VerdictStatus.AUTO_REPAIRED, "source": side})
        self._resolved[conflict.conflict_id] = conflict
        if self._manual.pop(verdict.spec_id, None) is not None:
            await self._save_queue()

        logger.info(
            f"Resolved conflict {conflict.conflict_id} for {verdict.spec_id} "
            f"via {strategy.value} from {side.value}: {reasoning}"
        )
        await self._audit(conflict, action="resolve", outcome=TransactionOutcome.COMMITTED)
        await self._publish(conflict, Severity.INFO)
        return conflict

    async def resolve_manually(
        self,
        conflict_id: str,
        choose: Representation,
        resolver: str = "manual"
    ) -> OperationResult:
        """
        Resolve a queued conflict by taking every divergent value from one side.

        Args:
            conflict_id: Id of a conflict in the manual queue
            choose: Winning representation
            resolver: Recorded as the resolving party
        """
        conflict = self._queued(conflict_id)
        if conflict is None:
            return OperationResult.error_result(
                f"No queued conflict {conflict_id}", "resolve_manually", error_code=EntityNotFound.code
            )
        try:
            await self._ensure_current(conflict)
            resolved = await self._apply(
                conflict, ResolutionStrategy.MANUAL, Representation(choose),
                f"manually resolved by {resolver} in favour of {Representation(choose).value}",
                resolver=resolver
            )
        except WorkflowError as e:
            return OperationResult.from_exception(e, "resolve_manually")
        return OperationResult.success_result(resolved, "resolve_manually")

    def _queued(self, conflict_id: str) -> Optional[Conflict]:
        for conflict in self._manual.values():
            if conflict.conflict_id == conflict_id:
                return conflict
        return None

    async def _ensure_current(self, conflict: Conflict) -> None:
        """
        Refuse to apply a queued conflict whose divergences no longer hold.

        Raises:
            ConsistencyConflict: If either representation changed since the
                conflict was queued
        """
        spec_id = conflict.verdict.spec_id
        document = await self.coordinator.repository.get(spec_id)
        record = await self.store.get_spec_record(spec_id)
        current = compare_representations(document, record)
        if _divergence_key(current) == _divergence_key(conflict.verdict.divergences):
            return

        if not current:
            await self.discard(spec_id, "representations agree again")
        raise ConsistencyConflict(
            f"Conflict {conflict.conflict_id} for {spec_id} is out of date; check the spec again",
            details={
                "spec_id": spec_id,
                "queued": sorted(d.path for d in conflict.verdict.divergences),
                "current": sorted(d.path for d in current),
            }
        )

    def get_manual_queue(self) -> List[Conflict]:
        """Queued conflicts, most urgent first"""
        return sorted(self._manual.values(), key=lambda c: (-self.urgency(c), c.created_at))

    @staticmethod
    def urgency(conflict: Conflict) -> int:
        fields = {d.field for d in conflict.verdict.divergences}
        score = 0
        if "status" in fields:
            score += 3
        if "assigned_agent" in fields:
            score += 2
        if any(d.category == FieldCategory.STRUCTURAL for d in conflict.verdict.divergences):
            score += 1
        return score

    def get_conflict(self, conflict_id: str) -> Optional[Conflict]:
        return self._queued(conflict_id) or self._resolved.get(conflict_id)

    # Backups

    def _affected_files(self, conflict: Conflict) -> List[Path]:
        files = []
        if conflict.verdict.document_path is not None:
            files.append(Path(conflict.verdict.document_path))
        files.append(self.store.path_for("progress"))
        return files

    async def backup(self, conflict: Conflict) -> str:
        """
        Snapshot every file a resolution of ``conflict`` may touch.

        Returns:
            Backup id; the snapshot lives in ``backups_dir/<backup_id>/``
        """
        backup_id = f"{datetime.now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"
        backup_dir = self.backups_dir / backup_id
        entries = []
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
            for index, path in enumerate(self._affected_files(conflict)):
                stored = f"{index:02d}-{path.name}"
                existed = path.exists()
                if existed:
                    async with aiofiles.open(path, 'rb') as src:
                        content = await src.read()
                    async with aiofiles.open(backup_dir / stored, 'wb') as dst:
                        await dst.write(content)
                entries.append({"original": str(path), "stored": stored, "existed": existed})

            manifest = {
                "backup_id": backup_id,
                "conflict_id": conflict.conflict_id,
                "spec_id": conflict.verdict.spec_id,
                "created_at": datetime.now().isoformat(),
                "files": entries,
            }
            async with aiofiles.open(backup_dir / MANIFEST_NAME, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(manifest, indent=2))
        except OSError as e:
            raise StateIOError(f"Failed to back up files for {conflict.verdict.spec_id}: {e}") from e

        logger.debug(f"Backed up {len(entries)} file(s) to {backup_dir}")
        return backup_id

    def read_manifest(self, backup_id: str) -> Dict[str, Any]:
        path = self.backups_dir / backup_id / MANIFEST_NAME
        try:
            return json.loads(path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            raise StateIOError(f"Cannot read backup manifest {path}: {e}") from e

    async def rollback(self, conflict_id: str) -> OperationResult:
        """
        Restore what a resolved conflict's backup captured.

        The document file is restored whole. Shared state files only get the
        conflicting spec's entry back, so later changes to other specs stay.
        """
        conflict = self._resolved.get(conflict_id)
        if conflict is None or conflict.backup_id is None:
            return OperationResult.error_result(
                f"No backup recorded for conflict {conflict_id}", "rollback",
                error_code=EntityNotFound.code
            )

        spec_id = conflict.verdict.spec_id
        try:
            manifest = self.read_manifest(conflict.backup_id)
            tx = Transaction(
                entity=spec_id, fields=["*"], action="rollback",
                reasoning=f"rollback of conflict {conflict_id} to backup {conflict.backup_id}"
            )
            removals: List[Path] = []

            for entry in manifest["files"]:
                target = Path(entry["original"])
                category = self.store.category_for(target)
                stored = self.backups_dir / conflict.backup_id / entry["stored"]
                if category == "progress":
                    backed_up = self.store.parse(category, stored.read_text(encoding='utf-8')) \
                        if entry["existed"] else default_state(category)
                    text = await self._restore_spec_entry(spec_id, backed_up)
                    tx.stage(target, text, on_commit=self._accept_state_hook(category, text))
                elif not entry["existed"]:
                    removals.append(target)
                else:
                    text = stored.read_text(encoding='utf-8')
                    tx.stage(target, text, on_commit=self._remember_document_hook(target, text))

            await self.coordinator.execute(tx)
            for target in removals:
                if target.exists():
                    target.unlink()
                    logger.info(f"Removed {target}, which did not exist at backup time")
        except WorkflowError as e:
            return OperationResult.from_exception(e, "rollback")
        except OSError as e:
            return OperationResult.error_result(str(e), "rollback", error_code=StateIOError.code)

        conflict.resolved_at = None
        conflict.resolved_by = None
        conflict.chosen = None
        conflict.manual = True
        conflict.strategy = ResolutionStrategy.MANUAL
        conflict.reasoning = f"rolled back to backup {conflict.backup_id}"
        self._resolved.pop(conflict_id, None)
        self._manual[spec_id] = conflict
        await self._save_queue()
        logger.info(f"Rolled back conflict {conflict_id} for {spec_id}")
        return OperationResult.success_result(conflict, "rollback")

    async def _restore_spec_entry(self, spec_id: str, backed_up: Dict[str, Any]) -> str:
        """Current progress with only ``spec_id``'s record taken from the backup"""
        progress = await self.store.load("progress")
        by_spec = progress.setdefault("by_spec", {})
        previous = backed_up.get("by_spec", {}).get(spec_id)
        if previous is None:
            by_spec.pop(spec_id, None)
        else:
            by_spec[spec_id] = previous
        refresh_progress_totals(progress)
        return self.store.render("progress", progress)

    def _accept_state_hook(self, category: str, text: str):
        store = self.store

        async def hook() -> None:
            await store.accept(category, store.parse(category, text))
        return hook

    def _remember_document_hook(self, path: Path, text: str):
        repository = self.coordinator.repository

        async def hook() -> None:
            repository.remember(parse_document(text, source_path=path))
        return hook

    def list_backups(self) -> List[Dict[str, Any]]:
        """Manifests of every backup, oldest first"""
        manifests = []
        if not self.backups_dir.exists():
            return manifests
        for backup_dir in sorted(p for p in self.backups_dir.iterdir() if p.is_dir()):
            try:
                manifests.append(self.read_manifest(backup_dir.name))
            except StateIOError as e:
                logger.warning(f"Skipping unreadable backup {backup_dir.name}: {e.message}")
        return manifests

    def cleanup_backups(self, now: Optional[datetime] = None) -> int:
        """
        Delete backups older than the retention period.

        Returns:
            Number of backups removed
        """
        now = now or datetime.now()
        cutoff = now - timedelta(days=self.config.backup_retention_days)
        in_use = {c.backup_id for c in self._resolved.values()}
        removed = 0
        for manifest in self.list_backups():
            created_at = datetime.fromisoformat(manifest["created_at"])
            if created_at >= cutoff:
                continue
            if manifest["backup_id"] in in_use:
                logger.debug(f"Keeping backup {manifest['backup_id']}; conflict can still roll back")
                continue
            shutil.rmtree(self.backups_dir / manifest["backup_id"], ignore_errors=True)
            removed += 1

        if removed:
            logger.info(f"Removed {removed} backup(s) older than {self.config.backup_retention_days} day(s)")
        return removed

    # Reporting

    async def _audit(self, conflict: Conflict, action: str, outcome) -> None:
        try:
            await self.store.append_audit(AuditRecord(
                action=action,
                entity=conflict.verdict.spec_id,
                fields=[d.path for d in conflict.verdict.divergences],
                outcome=outcome,
                reasoning=conflict.reasoning,
            ))
        except StateIOError as e:
            logger.error(f"Failed to audit {action} of conflict {conflict.conflict_id}: {e.message}")

    async def _publish(self, conflict: Conflict, severity: Severity) -> None:
        router = self.coordinator.router
        if router is None:
            return
        await router.publish(RoutedEvent(
            category=EventCategory.CONFLICT,
            severity=severity,
            source_path=str(conflict.verdict.document_path) if conflict.verdict.document_path else conflict.verdict.spec_id,
            payload=conflict,
        ))

    def get_status(self) -> Dict[str, Any]:
        return {
            "manual_queue": len(self._manual),
            "resolved": len(self._resolved),
            "backups_dir": str(self.backups_dir),
            "auto_repair_threshold": self.auto_repair_threshold,
        }


def _divergence_key(divergences: List[Divergence]) -> Dict[str, tuple]:
    return {d.path: (d.document_value, d.record_value) for d in divergences}
