import logging
from typing import Callable, Iterable, List, Optional

from magnetboard.config.settings import Settings, get_settings
from magnetboard.engine.assignment_service import AssignmentService
from magnetboard.engine.board import BoardState
from magnetboard.engine.conflicts import ConflictDetector
from magnetboard.engine.reconciler import SyncReconciler
from magnetboard.engine.registry import ResourceRegistry
from magnetboard.engine.rule_store import RuleStore
from magnetboard.models.entities import Job, Resource
from magnetboard.models.outcomes import OperationResult
from magnetboard.storage.change_feed import RedisChangeFeed
from magnetboard.storage.store import SqlBackingStore

logger = logging.getLogger(__name__)


class BoardSession:
    """Wires one board's local state, rules, service and store together."""

    def __init__(
        self,
        store: SqlBackingStore,
        rule_store: Optional[RuleStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.rule_store = rule_store or RuleStore()
        self.state = BoardState(ResourceRegistry())
        self.detector = ConflictDetector()
        self.reconciler = SyncReconciler(self.state)
        self.service = AssignmentService(
            self.state, self.rule_store, store, self.reconciler, self.detector, self.settings
        )
        self._unsubscribe: Optional[Callable[[], None]] = None

    def connect(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe_to_changes(self.reconciler.enqueue)

    def disconnect(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def hydrate(self) -> None:
        resources, jobs, assignments = self.store.load_snapshot()
        self.state = BoardState(ResourceRegistry(resources), jobs, assignments)
        self.reconciler.state = self.state
        self.service.state = self.state
        logger.info(f"Board hydrated: {len(resources)} resources, {len(jobs)} jobs, {len(assignments)} assignments")

    async def commit(self) -> List[OperationResult]:
        """Flush queued writes, then apply whatever the change feed delivered meanwhile."""
        failures = await self.service.flush()
        if isinstance(self.store.feed, RedisChangeFeed):
            self.store.feed.poll()
        applied = self.reconciler.drain()
        if applied:
            logger.debug(f"Applied {applied} remote change(s)")
        return failures

    async def save_resources(self, resources: Iterable[Resource]) -> List[Resource]:
        saved = []
        for resource in resources:
            stored = await self.store.upsert_resource(resource)
            self.state.upsert_resource(stored)
            saved.append(stored)
        self.reconciler.drain()
        return saved

    async def save_jobs(self, jobs: Iterable[Job]) -> List[Job]:
        saved = []
        for job in jobs:
            stored = await self.store.upsert_job(job)
            self.state.upsert_job(stored)
            saved.append(stored)
        self.reconciler.drain()
        return saved
