import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field, replace
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple, Union
from uuid import uuid4

from magnetboard.engine.board import BoardState
from magnetboard.models.entities import Assignment, AssignmentState, Job, Resource
from magnetboard.models.outcomes import ErrorKind
from magnetboard.storage.change_feed import ChangeEvent, ChangeType
from magnetboard.storage.serialization import assignment_from_dict, job_from_dict, resource_from_dict

logger = logging.getLogger(__name__)

Record = Union[Assignment, Job, Resource]
RecordKey = Tuple[str, str]  # (table, record id)

ASSIGNMENTS = "assignments"
JOBS = "jobs"
RESOURCES = "resources"

# Deleted keys remembered so late events cannot resurrect them
MAX_TOMBSTONES = 1024


@dataclass(frozen=True)
class RecordChange:
    table: str
    record_id: str
    kind: ChangeType
    before: Optional[Record]  # None for inserts
    after: Optional[Record]  # None for deletes

    @property
    def key(self) -> RecordKey:
        return (self.table, self.record_id)

    @property
    def optimistic_version(self) -> int:
        if self.after is not None:
            return self.after.version
        return self.before.version + 1


@dataclass
class PendingWrite:
    """One locally committed operation waiting for the backing store."""

    operation: str
    changes: List[RecordChange]
    id: str = field(default_factory=lambda: f"write-{uuid4()}")

    def keys(self) -> Set[RecordKey]:
        return {c.key for c in self.changes}


@dataclass
class PendingMutation:
    before: Optional[Record]
    version: int
    writes: int = 1
    echoed: bool = False
    superseded: bool = False  # a newer remote version replaced the rollback baseline


class SyncReconciler:
    """
    Merges local optimistic mutations with the store's change feed.

    The feed callback only enqueues; drain() applies queued events on the
    caller's turn, so remote updates never interleave with a local operation.
    Conflicts resolve last-writer-wins on the per-record version.
    """

    def __init__(self, state: BoardState):
        self.state = state
        self._pending: Dict[RecordKey, PendingMutation] = {}
        self._tombstones: "OrderedDict[RecordKey, int]" = OrderedDict()
        self._queue: Deque[ChangeEvent] = deque()
        self.lifecycle: Dict[str, AssignmentState] = {}
        self.stale_dropped = 0

    # -- local side -----------------------------------------------------

    def has_pending(self, table: str, record_id: str) -> bool:
        return (table, record_id) in self._pending

    def track(self, write: PendingWrite) -> None:
        for change in write.changes:
            entry = self._pending.get(change.key)
            if entry is None:
                self._pending[change.key] = PendingMutation(change.before, change.optimistic_version)
            else:
                entry.version = change.optimistic_version
                entry.writes += 1
                entry.echoed = False
            if change.table == ASSIGNMENTS:
                self.lifecycle[change.record_id] = AssignmentState.COMMITTED

    def acknowledge(self, write: PendingWrite, persisted: Dict[RecordKey, Optional[Record]]) -> None:
        """Store accepted the write; adopt its versions and clear pending entries."""
        for change in write.changes:
            entry = self._pending.get(change.key)
            if entry is None:
                continue
            entry.writes -= 1
            record = persisted.get(change.key)
            if change.kind is ChangeType.DELETE and not entry.echoed:
                self._bury(change.key, record if isinstance(record, int) else change.optimistic_version)
            if entry.writes > 0:
                continue
            del self._pending[change.key]
            if record is not None and not isinstance(record, int):
                local = self._get_local(change.table, change.record_id)
                if local is not None:
                    self._put_local(change.table, replace(local, version=record.version))
            if change.table != ASSIGNMENTS:
                continue
            if change.kind is ChangeType.DELETE:
                self.lifecycle.pop(change.record_id, None)
            else:
                self.lifecycle[change.record_id] = (
                    AssignmentState.RECONCILED if entry.echoed else AssignmentState.PERSISTED
                )

    def rollback(self, write: PendingWrite) -> None:
        """Restore the pre-mutation snapshot of exactly the records this write touched."""
        for change in reversed(write.changes):
            baseline = change.before
            entry = self._pending.get(change.key)
            if entry is not None:
                if entry.superseded:
                    baseline = entry.before
                entry.writes -= 1
                if entry.writes <= 0:
                    del self._pending[change.key]
            if baseline is None:
                self._remove_local(change.table, change.record_id)
            else:
                self._put_local(change.table, baseline)
            if change.table == ASSIGNMENTS:
                self.lifecycle[change.record_id] = AssignmentState.ROLLED_BACK
        logger.warning(f"Rolled back {write.operation} ({len(write.changes)} record(s))")

    # -- remote side ----------------------------------------------------

    def enqueue(self, event: ChangeEvent) -> None:
        self._queue.append(event)

    def drain(self) -> int:
        """Apply every queued event; returns how many changed local state."""
        applied = 0
        while self._queue:
            if self.apply_event(self._queue.popleft()):
                applied += 1
        return applied

    def apply_event(self, event: ChangeEvent) -> bool:
        record_id = event.record.get("id")
        if record_id is None or event.table not in (ASSIGNMENTS, JOBS, RESOURCES):
            logger.warning(f"Ignoring change event for {event.table}: {event.record}")
            return False
        key = (event.table, record_id)

        tombstone = self._tombstones.get(key)
        if tombstone is not None and event.version <= tombstone:
            if event.type is ChangeType.DELETE and event.version == tombstone:
                # Echo of the delete itself; nothing older can follow it
                del self._tombstones[key]
            return self._stale(event, "record already deleted")

        entry = self._pending.get(key)
        if entry is not None:
            if event.version <= entry.version:
                if event.version == entry.version:
                    entry.echoed = True
                return self._stale(event, f"pending local version {entry.version}")
            # Remote write is newer; it becomes the baseline a failed local write rolls back to
            entry.before = self._record_from_event(event)
            entry.version = event.version
            entry.superseded = True
        else:
            local = self._get_local(event.table, record_id)
            if local is not None and event.version < local.version:
                return self._stale(event, f"local version {local.version}")

        if event.type is ChangeType.DELETE:
            self._bury(key, event.version)
            self._remove_local(event.table, record_id)
            if event.table == ASSIGNMENTS and entry is None:
                self.lifecycle.pop(record_id, None)
        else:
            self._put_local(event.table, self._record_from_event(event))
            if event.table == ASSIGNMENTS and entry is None:
                self.lifecycle[record_id] = AssignmentState.RECONCILED
        logger.debug(f"Applied remote {event.type.value} on {event.table}/{record_id} v{event.version}")
        return True

    def _bury(self, key: RecordKey, version: int) -> None:
        self._tombstones[key] = version
        self._tombstones.move_to_end(key)
        while len(self._tombstones) > MAX_TOMBSTONES:
            self._tombstones.popitem(last=False)

    def _stale(self, event: ChangeEvent, reason: str) -> bool:
        self.stale_dropped += 1
        logger.debug(
            f"{ErrorKind.STALE_VERSION.value}: {event.type.value} {event.table}/{event.record.get('id')} "
            f"v{event.version} ({reason})"
        )
        return False

    @staticmethod
    def _record_from_event(event: ChangeEvent) -> Optional[Record]:
        if event.type is ChangeType.DELETE:
            return None
        if event.table == ASSIGNMENTS:
            return assignment_from_dict(event.record)
        if event.table == JOBS:
            return job_from_dict(event.record)
        return resource_from_dict(event.record)

    # -- local record access --------------------------------------------

    def _get_local(self, table: str, record_id: str) -> Optional[Record]:
        if table == ASSIGNMENTS:
            return self.state.graph.get(record_id)
        if table == JOBS:
            return self.state.jobs.get(record_id)
        return self.state.registry.get_resource(record_id)

    def _put_local(self, table: str, record: Record) -> None:
        if table == ASSIGNMENTS:
            self.state.put_assignment(record)
        elif table == JOBS:
            self.state.upsert_job(record)
        else:
            self.state.upsert_resource(record)

    def _remove_local(self, table: str, record_id: str) -> None:
        if table == ASSIGNMENTS:
            removed = self.state.remove_assignment(record_id)
            if removed is not None:
                self._detach_orphans(record_id)
        elif table == JOBS:
            self.state.remove_job(record_id)
        else:
            self.state.remove_resource(record_id)

    def _detach_orphans(self, parent_id: str) -> None:
        orphans: Iterable[Assignment] = self.state.graph.children(parent_id)
        for child in orphans:
            self.state.put_assignment(replace(child, attached_to=None))
