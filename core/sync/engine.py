"""
Workflow Synchronization Engine.

Central coordinator for one project root: wires the change watcher, the
classifier, the consistency checker and the event router together, and
subscribes the repair stage that either propagates a verdict or hands it to
the conflict arbiter.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..documents.repository import DocumentRepository
from ..errors import WorkflowError
from ..models.config import ProjectConfig
from ..models.state import Conflict, ConsistencyVerdict, VerdictStatus
from ..scheduling.scheduler import TaskScheduler
from ..state.cache import StateCache
from ..state.store import StateStore
from ..tracking.tracker import WorkAssignmentTracker
from .arbiter import ConflictArbiter
from .checker import ConsistencyChecker
from .classifier import ChangeClassifier, ChangeDescription, DescriptionKind, Impact
from .events import ChangeEvent, EventCategory, RoutedEvent, Severity
from .router import EventRouter, Subscriber
from .transaction import SyncCoordinator
from .watcher import ChangeWatcher

logger = logging.getLogger(__name__)


@dataclass
class SyncEngineMetrics:
    """Counters for the synchronization pipeline"""

    events_processed: int = 0
    events_failed: int = 0
    parse_errors: int = 0

    verdicts: int = 0
    auto_repaired: int = 0
    conflicts: int = 0

    avg_processing_time_ms: float = 0.0
    max_processing_time_ms: float = 0.0

    consecutive_errors: int = 0
    last_error_time: Optional[datetime] = None
    last_error_message: Optional[str] = None


class ConsistencySubscriber(Subscriber):
    """Checks every classified change and publishes the non-trivial verdicts"""

    name = "consistency"
    categories = frozenset({EventCategory.CHANGE})
    priority = 10

    def __init__(self, engine: 'WorkflowSyncEngine'):
        self.engine = engine

    async def handle(self, event: RoutedEvent) -> None:
        description: ChangeDescription = event.payload
        for verdict in await self.engine.checker.check(description):
            self.engine.metrics.verdicts += 1
            if verdict.status == VerdictStatus.CONSISTENT:
                await self.engine.arbiter.discard(verdict.spec_id, "representations agree again")
                continue
            await self.engine.router.publish(RoutedEvent(
                category=EventCategory.VERDICT,
                severity=Severity.WARNING if verdict.status == VerdictStatus.CONFLICT else Severity.INFO,
                source_path=event.source_path,
                payload=verdict,
            ))


class RepairSubscriber(Subscriber):
    """Propagates auto-repairable verdicts and arbitrates conflicts"""

    name = "repair"
    categories = frozenset({EventCategory.VERDICT})
    priority = 20

    def __init__(self, engine: 'WorkflowSyncEngine'):
        self.engine = engine

    async def handle(self, event: RoutedEvent) -> None:
        await self.engine.repair(event.payload)


class WorkflowSyncEngine:
    """
    Central coordinator for real-time document/record synchronization.

    Features:
    - Debounced file watching over documents and state
    - Classification, consistency checks and repair as router stages
    - Conflicts arbitrated with backups, or queued for manual resolution
    - Initial consistency pass on start
    - Graceful shutdown and status reporting
    """

    def __init__(self, config: ProjectConfig, rebuild_on_start: bool = False):
        """
        Initialize the engine and every component for one project.

        Args:
            config: Project configuration
            rebuild_on_start: Rebuild all records from documents on start
                instead of checking and repairing them individually
        """
        self.config = config
        self.rebuild_on_start = rebuild_on_start

        self.repository = DocumentRepository(config.documents_dir)
        self.store = StateStore(config.state_dir, cache=StateCache())
        self.router = EventRouter(config.router)
        self.coordinator = SyncCoordinator(self.repository, self.store, router=self.router)
        self.checker = ConsistencyChecker(self.repository, self.store, config.consistency)
        self.classifier = ChangeClassifier(self.repository, self.store)
        self.arbiter = ConflictArbiter(
            self.coordinator,
            config.backups_dir,
            config.arbiter,
            auto_repair_threshold=config.consistency.auto_repair_threshold,
        )
        self.tracker = WorkAssignmentTracker(
            self.repository, self.store, self.coordinator, self.checker, config.scheduler
        )
        self.scheduler = TaskScheduler(self.tracker, config.scheduler)
        self.watcher = ChangeWatcher(
            roots=[config.documents_dir, config.state_dir],
            include_patterns=config.watcher.include_patterns,
            exclude_patterns=config.watcher.exclude_patterns,
            debounce_ms=config.watcher.debounce_ms,
            root_check_interval_s=config.watcher.root_check_interval_s,
        )

        self.router.subscribe(ConsistencySubscriber(self))
        self.router.subscribe(RepairSubscriber(self))

        self.metrics = SyncEngineMetrics()
        self.is_running = False
        self.start_time: Optional[datetime] = None
        self._pump_task: Optional[asyncio.Task] = None

        logger.info(f"Initialized WorkflowSyncEngine for {config.name} at {config.path}")

    async def initialize(self) -> None:
        """Prepare state and take baseline snapshots without watching"""
        self.config.documents_dir.mkdir(parents=True, exist_ok=True)
        self.store.initialize()
        self.config.backups_dir.mkdir(parents=True, exist_ok=True)

        documents = await self.repository.load_all()
        paths = [d.source_path for d in documents.values() if d.source_path is not None]
        paths += [self.store.path_for(c) for c in ("progress", "assignments", "handoffs")]
        await self.classifier.prime(paths)

    async def start(self) -> bool:
        """
        Start watching and run the initial consistency pass.

        Returns:
            True if the watcher started on at least one root
        """
        if self.is_running:
            return True

        await self.initialize()
        await self.router.start()

        if self.rebuild_on_start:
            result = await self.tracker.sync_from_documents()
            if not result.success:
                logger.error(f"Initial rebuild failed: {result.error}")
        else:
            for verdict in await self.checker.check_all():
                if verdict.status == VerdictStatus.CONSISTENT:
                    await self.arbiter.discard(verdict.spec_id, "representations agree again")
                else:
                    await self.router.publish(RoutedEvent(
                        category=EventCategory.VERDICT,
                        severity=Severity.INFO,
                        source_path=str(verdict.document_path) if verdict.document_path else verdict.spec_id,
                        payload=verdict,
                    ))

        started = await self.watcher.start()
        self.is_running = True
        self.start_time = datetime.now()
        self._pump_task = asyncio.create_task(self._pump())
        logger.info(f"Started WorkflowSyncEngine for {self.config.name}")
        return started

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False

        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        await self.watcher.stop()
        await self.router.stop()
        logger.info(f"Stopped WorkflowSyncEngine for {self.config.name}")

    async def _pump(self) -> None:
        logger.info("Started change pump")
        async for event in self.watcher.events():
            await self.process_event(event)

    async def process_event(self, event: ChangeEvent) -> Optional[ChangeDescription]:
        """
        Classify one change event and publish it.

        Args:
            event: Debounced change event

        Returns:
            The description, or None if classification failed
        """
        start = time.perf_counter()
        if self.store.category_for(event.path) is not None:
            # The file changed outside the store; cached content is stale
            await self.store.cache.invalidate(str(event.path))
        try:
            description = await self.classifier.classify(event)
        except WorkflowError as e:
            self._record_error(f"Failed to classify {event}: {e.message}")
            return None

        if description.kind in (DescriptionKind.IGNORED, DescriptionKind.UNCHANGED):
            logger.debug(f"No logical change in {event}")
        else:
            if description.is_parse_error:
                self.metrics.parse_errors += 1
                severity = Severity.ERROR
            elif description.impact == Impact.HIGH:
                severity = Severity.WARNING
            else:
                severity = Severity.INFO
            await self.router.publish(RoutedEvent(
                category=EventCategory.CHANGE,
                severity=severity,
                source_path=str(event.path),
                payload=description,
            ))

        self._record_success((time.perf_counter() - start) * 1000)
        return description

    async def repair(self, verdict: ConsistencyVerdict) -> Optional[Any]:
        """Propagate an auto-repairable verdict, arbitrate anything else"""
        if verdict.needs_propagation:
            result = await self.coordinator.propagate(verdict)
            if result.success:
                self.metrics.auto_repaired += 1
                await self.arbiter.discard(verdict.spec_id, "repaired by propagation")
                return result
            logger.warning(f"Propagation for {verdict.spec_id} failed: {result.error}; arbitrating")

        if verdict.status in (VerdictStatus.CONFLICT, VerdictStatus.AUTO_REPAIRABLE):
            self.metrics.conflicts += 1
            return await self.arbiter.resolve(Conflict.from_verdict(verdict))
        return None

    async def settle(self) -> None:
        """Wait until every routed event has been handled"""
        await self.router.join()

    def _record_success(self, elapsed_ms: float) -> None:
        self.metrics.events_processed += 1
        self.metrics.consecutive_errors = 0
        processed = self.metrics.events_processed
        self.metrics.avg_processing_time_ms += (elapsed_ms - self.metrics.avg_processing_time_ms) / processed
        self.metrics.max_processing_time_ms = max(self.metrics.max_processing_time_ms, elapsed_ms)

    def _record_error(self, message: str) -> None:
        logger.error(message)
        self.metrics.events_failed += 1
        self.metrics.consecutive_errors += 1
        self.metrics.last_error_message = message
        self.metrics.last_error_time = datetime.now()

    def get_status(self) -> Dict[str, Any]:
        """
        Get comprehensive status information about the sync engine.

        Returns:
            Dictionary with status information
        """
        uptime = (datetime.now() - self.start_time).total_seconds() if self.start_time else 0.0
        return {
            "is_running": self.is_running,
            "project": self.config.name,
            "uptime_seconds": uptime,
            "events_processed": self.metrics.events_processed,
            "events_failed": self.metrics.events_failed,
            "parse_errors": self.metrics.parse_errors,
            "verdicts": self.metrics.verdicts,
            "auto_repaired": self.metrics.auto_repaired,
            "conflicts": self.metrics.conflicts,
            "avg_processing_time_ms": self.metrics.avg_processing_time_ms,
            "last_error": self.metrics.last_error_message,
            "last_error_time": self.metrics.last_error_time.isoformat() if self.metrics.last_error_time else None,
            "watcher": self.watcher.get_status(),
            "classifier": self.classifier.get_status(),
            "checker": self.checker.get_status(),
            "router": self.router.get_status(),
            "transactions": self.coordinator.get_status(),
            "arbiter": self.arbiter.get_status(),
            "store": self.store.get_status(),
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
