import asyncio
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Union
from uuid import uuid4

from magnetboard.config.settings import Settings, get_settings
from magnetboard.engine.board import BoardSnapshot, BoardState
from magnetboard.engine.conflicts import ConflictDetector
from magnetboard.engine.reconciler import (
    ASSIGNMENTS,
    JOBS,
    PendingWrite,
    RecordChange,
    RecordKey,
    SyncReconciler,
)
from magnetboard.engine.rule_store import RuleStore
from magnetboard.engine.validation import validate_attach, validate_drop, validate_finalize
from magnetboard.exceptions import PersistenceError
from magnetboard.models.entities import (
    Assignment,
    AssignmentState,
    Job,
    MagnetStatus,
    ResourceType,
    RowType,
    TimeSlot,
    parse_clock,
)
from magnetboard.models.outcomes import ACCEPTED, Decision, ErrorKind, OperationResult, reject
from magnetboard.storage.change_feed import ChangeType
from magnetboard.storage.serialization import assignment_to_dict, time_slot_to_dict
from magnetboard.storage.store import BackingStore

logger = logging.getLogger(__name__)

DRIVER_TYPES = (ResourceType.DRIVER, ResourceType.PRIVATE_DRIVER)


def _assignment_patch(a: Assignment) -> Dict:
    return {
        "job_id": a.job_id,
        "row": a.row.value,
        "position": a.position,
        "attached_to": a.attached_to,
        "time_slot": time_slot_to_dict(a.time_slot),
        "multi_shift": a.multi_shift,
        "note": a.note,
    }


class AssignmentService:
    """
    Single entry point for every board mutation.

    Each operation validates against the pre-operation snapshot, applies the
    change to local state and queues it for persistence, all synchronously.
    flush() is the only suspension point.
    """

    def __init__(
        self,
        state: BoardState,
        rule_store: RuleStore,
        store: BackingStore,
        reconciler: SyncReconciler,
        detector: Optional[ConflictDetector] = None,
        settings: Optional[Settings] = None,
    ):
        self.state = state
        self.rule_store = rule_store
        self.store = store
        self.reconciler = reconciler
        self.detector = detector or ConflictDetector()
        self.settings = settings or get_settings()
        self.last_known_drivers: Dict[str, str] = {}  # truck resource id -> driver resource id
        self._outbox: List[PendingWrite] = []

    # -- helpers ----------------------------------------------------------

    def _snapshot(self) -> BoardSnapshot:
        return self.state.snapshot(self.rule_store.snapshot())

    def _rejected(self, operation: str, decision: Decision) -> OperationResult:
        logger.info(f"{operation} rejected: {decision.kind.value} - {decision.message}")
        return OperationResult(decision)

    def _default_slot(self, job: Job) -> TimeSlot:
        start = parse_clock(job.start_time or self.settings.default_start_time)
        end = parse_clock(self.settings.default_end_time)
        if end <= start:
            end = min(start + 8 * 60 + 30, 24 * 60)
        return TimeSlot(start, end)

    def _commit(self, operation: str, changes: List[RecordChange]) -> PendingWrite:
        for change in changes:
            if change.table == ASSIGNMENTS:
                if change.after is None:
                    self.state.remove_assignment(change.record_id)
                else:
                    self.state.put_assignment(change.after)
            elif change.table == JOBS:
                self.state.upsert_job(change.after)
        write = PendingWrite(operation, changes)
        self.reconciler.track(write)
        self._outbox.append(write)
        logger.debug(f"{operation} committed locally ({len(changes)} record(s))")
        return write

    @staticmethod
    def _update(before: Assignment, **fields) -> RecordChange:
        after = replace(before, version=before.version + 1, **fields)
        return RecordChange(ASSIGNMENTS, before.id, ChangeType.UPDATE, before, after)

    def _root_in_row(self, resource_id: str, job_id: str, row: RowType) -> Optional[Assignment]:
        for a in self.state.graph.for_resource(resource_id):
            if a.job_id == job_id and a.row is row and not a.attached_to:
                return a
        return None

    # -- operations ---------------------------------------------------------

    def assign(
        self,
        resource_id: str,
        job_id: str,
        row: Union[RowType, str],
        position: Optional[int] = None,
        time_slot: Optional[TimeSlot] = None,
        multi_shift: bool = False,
        auto_attach: bool = True,
    ) -> OperationResult:
        resource = self.state.get_resource(resource_id)
        job = self.state.get_job(job_id)
        logger.debug(f"Proposed: assign {resource.type.value} {resource_id} to {job_id}/{row}")

        own_roots = {
            a.id for a in self.state.graph.for_resource(resource_id) if a.job_id == job_id and not a.attached_to
        }
        decision = validate_drop(resource.type, row, job, self._snapshot(), ignore=own_roots)
        if not decision:
            return self._rejected("assign", decision)
        target_row = RowType(row)

        existing = self._root_in_row(resource_id, job_id, target_row)
        if existing is not None:
            return OperationResult(ACCEPTED, existing.id)

        slot = time_slot or self._default_slot(job)
        decision = self.detector.check_double_shift(resource_id, job, slot, self.state, multi_shift=multi_shift)
        if not decision:
            return self._rejected("assign", decision)

        assignment = Assignment(
            id=f"assign-{uuid4()}",
            resource_id=resource_id,
            job_id=job_id,
            row=target_row,
            position=position if position is not None else self.state.graph.next_position(job_id, target_row),
            time_slot=slot,
            multi_shift=multi_shift,
            version=1,
        )
        self._commit("assign", [RecordChange(ASSIGNMENTS, assignment.id, ChangeType.INSERT, None, assignment)])

        secondary = ()
        if auto_attach and resource.type is ResourceType.TRUCK:
            secondary = self._auto_attach_driver(assignment)
        return OperationResult(ACCEPTED, assignment.id, secondary)

    def _auto_attach_driver(self, truck_assignment: Assignment) -> tuple:
        """Best effort: bring the truck's last-known driver along. Never undoes the truck."""
        driver_id = self.last_known_drivers.get(truck_assignment.resource_id)
        if driver_id is None or self.state.registry.get_resource(driver_id) is None:
            return ()
        placed = self.assign(driver_id, truck_assignment.job_id, truck_assignment.row, auto_attach=False)
        if not placed.accepted:
            logger.info(f"Auto-attach of driver {driver_id} skipped: {placed.kind.value}")
            return (placed.decision,)
        attached = self.attach(placed.assignment_id, truck_assignment.id)
        if not attached.accepted:
            logger.info(f"Auto-attach of driver {driver_id} failed: {attached.kind.value}")
        return (attached.decision,)

    def attach(self, source_id: str, target_id: str) -> OperationResult:
        source = self.state.get_assignment(source_id)
        target = self.state.get_assignment(target_id)
        if source.attached_to == target.id:
            return OperationResult(ACCEPTED, source.id)

        snapshot = self._snapshot()
        decision = validate_attach(source, target, snapshot)
        if not decision:
            return self._rejected("attach", decision)

        source_type = snapshot.resources[source.resource_id].type
        target_type = snapshot.resources[target.resource_id].type
        rule = snapshot.rules.pair_rule(source_type, target_type)
        decision = self.detector.check_attachment_count(source, target, rule, self.state, snapshot.rules)
        if not decision:
            return self._rejected("attach", decision)

        job = self.state.get_job(target.job_id)
        moving = self.state.graph.subtree(source.id)
        for member in moving:
            member_type = snapshot.resources[member.resource_id].type
            decision = validate_drop(member_type, target.row, job, snapshot, check_capacity=False)
            if not decision:
                return self._rejected("attach", decision)

        changes = [
            self._update(
                source,
                attached_to=target.id,
                row=target.row,
                position=target.position,
                time_slot=target.time_slot,
            )
        ]
        for member in moving[1:]:
            if (member.row, member.position, member.time_slot) != (target.row, target.position, target.time_slot):
                changes.append(
                    self._update(member, row=target.row, position=target.position, time_slot=target.time_slot)
                )
        self._commit("attach", changes)

        if source_type in DRIVER_TYPES and target_type is ResourceType.TRUCK:
            self.last_known_drivers[target.resource_id] = source.resource_id
        elif target_type in DRIVER_TYPES and source_type is ResourceType.TRUCK:
            self.last_known_drivers[source.resource_id] = target.resource_id
        return OperationResult(ACCEPTED, source.id)

    def detach(self, assignment_id: str) -> OperationResult:
        """Detach from the parent, or release every child when called on a parent."""
        assignment = self.state.get_assignment(assignment_id)
        if assignment.attached_to:
            changes = [self._update(assignment, attached_to=None)]
        else:
            changes = [self._update(child, attached_to=None) for child in self.state.graph.children(assignment_id)]
        if changes:
            self._commit("detach", changes)
        return OperationResult(ACCEPTED, assignment_id)

    def unassign(self, assignment_id: str) -> OperationResult:
        """Remove an assignment together with everything attached below it."""
        subtree = self.state.graph.subtree(assignment_id)
        if not subtree:
            self.state.get_assignment(assignment_id)
        changes = [
            RecordChange(ASSIGNMENTS, a.id, ChangeType.DELETE, a, None)
            for a in reversed(subtree)
        ]
        self._commit("unassign", changes)
        return OperationResult(ACCEPTED, assignment_id)

    def move_assignment(
        self,
        assignment_id: str,
        new_job_id: str,
        new_row: Union[RowType, str],
        position: Optional[int] = None,
    ) -> OperationResult:
        """
        Group move: the assignment and its whole attachment subtree go to the
        new job/row together, keeping their attached_to links. A moved
        assignment that was itself attached becomes a root in the new job.
        """
        root = self.state.get_assignment(assignment_id)
        new_job = self.state.get_job(new_job_id)
        subtree = self.state.graph.subtree(assignment_id)
        moving_ids = {a.id for a in subtree}
        snapshot = self._snapshot()

        root_type = snapshot.resources[root.resource_id].type
        decision = validate_drop(root_type, new_row, new_job, snapshot, ignore=moving_ids)
        if not decision:
            return self._rejected("move", decision)
        target_row = RowType(new_row)

        for member in subtree[1:]:
            member_type = snapshot.resources[member.resource_id].type
            decision = validate_drop(member_type, target_row, new_job, snapshot, check_capacity=False)
            if not decision:
                return self._rejected("move", decision)

        changing_job = new_job.id != root.job_id
        new_slot = self._default_slot(new_job) if changing_job else root.time_slot
        if changing_job:
            for member in subtree:
                decision = self.detector.check_double_shift(
                    member.resource_id, new_job, new_slot, self.state, multi_shift=member.multi_shift, ignore=moving_ids
                )
                if not decision:
                    return self._rejected("move", decision)

        if position is None:
            if not changing_job and root.row is target_row and not root.attached_to:
                position = root.position
            else:
                position = self.state.graph.next_position(new_job.id, target_row)

        changes = [
            self._update(root, job_id=new_job.id, row=target_row, position=position, attached_to=None, time_slot=new_slot)
        ]
        for member in subtree[1:]:
            changes.append(self._update(member, job_id=new_job.id, row=target_row, position=position, time_slot=new_slot))
        self._commit("move", changes)
        logger.info(f"Moved {len(subtree)} assignment(s) from {root.job_id}/{root.row.value} to {new_job.id}/{target_row.value}")
        return OperationResult(ACCEPTED, assignment_id)

    def finalize_job(self, job_id: str) -> OperationResult:
        job = self.state.get_job(job_id)
        if job.finalized:
            return OperationResult(ACCEPTED)
        decision = self.validate_finalize_preview(job_id)
        if not decision:
            return self._rejected("finalize", decision)
        after = replace(job, finalized=True, version=job.version + 1)
        self._commit("finalize", [RecordChange(JOBS, job.id, ChangeType.UPDATE, job, after)])
        return OperationResult(ACCEPTED)

    def unfinalize_job(self, job_id: str) -> OperationResult:
        job = self.state.get_job(job_id)
        if not job.finalized:
            return OperationResult(ACCEPTED)
        after = replace(job, finalized=False, version=job.version + 1)
        self._commit("unfinalize", [RecordChange(JOBS, job.id, ChangeType.UPDATE, job, after)])
        return OperationResult(ACCEPTED)

    # -- truck / driver pairing -----------------------------------------

    def assign_driver_to_truck(self, truck_id: str, driver_id: str) -> Decision:
        truck = self.state.get_resource(truck_id)
        driver = self.state.get_resource(driver_id)
        if truck.type is not ResourceType.TRUCK or driver.type not in DRIVER_TYPES:
            return reject(ErrorKind.ROW_TYPE_MISMATCH, f"{driver.type.value} cannot drive {truck.type.value}")
        self.last_known_drivers[truck_id] = driver_id
        return ACCEPTED

    def unassign_driver_from_truck(self, truck_id: str) -> Optional[str]:
        return self.last_known_drivers.pop(truck_id, None)

    # -- read-only views ------------------------------------------------

    def magnet_status(self, resource_id: str) -> MagnetStatus:
        return self.state.registry.get_magnet(resource_id).status

    def assignments_for_job(self, job_id: str) -> List[Assignment]:
        return self.state.graph.for_job(job_id)

    def validate_finalize_preview(self, job_id: str) -> Decision:
        job = self.state.get_job(job_id)
        return validate_finalize(job, self.state.graph.for_job(job_id), self._snapshot())

    def state_of(self, assignment_id: str) -> Optional[AssignmentState]:
        return self.reconciler.lifecycle.get(assignment_id)

    @property
    def pending_writes(self) -> Sequence[PendingWrite]:
        return tuple(self._outbox)

    # -- persistence ----------------------------------------------------

    async def flush(self) -> List[OperationResult]:
        """
        Persist queued writes in issue order. A failed or timed-out write is
        rolled back locally, along with any later queued write that touched
        the same records; the failures are returned after rollback.
        """
        writes, self._outbox = self._outbox, []
        failed: List[PendingWrite] = []
        failed_keys = set()
        for write in writes:
            if failed_keys & write.keys():
                failed.append(write)
                failed_keys |= write.keys()
                continue
            try:
                persisted = await asyncio.wait_for(self._persist(write), timeout=self.settings.persist_timeout_seconds)
            except (PersistenceError, asyncio.TimeoutError) as exc:
                logger.error(f"Persisting {write.operation} failed: {exc!r}")
                failed.append(write)
                failed_keys |= write.keys()
                continue
            self.reconciler.acknowledge(write, persisted)

        results = []
        for write in reversed(failed):
            self.reconciler.rollback(write)
        for write in failed:
            results.append(
                OperationResult(
                    reject(ErrorKind.PERSISTENCE_FAILURE, f"{write.operation} could not be saved and was reverted"),
                    write.changes[0].record_id,
                )
            )
        return results

    async def _persist(self, write: PendingWrite) -> Dict[RecordKey, object]:
        persisted: Dict[RecordKey, object] = {}
        if write.operation == "move":
            root = write.changes[0].after
            moved = await self.store.move_assignment_group(
                [c.record_id for c in write.changes], root.job_id, root.row, root.position, root.time_slot
            )
            for record in moved:
                persisted[(ASSIGNMENTS, record.id)] = record
            return persisted

        for change in write.changes:
            if change.table == JOBS:
                persisted[change.key] = await self.store.update_job(change.record_id, {"finalized": change.after.finalized})
            elif change.kind is ChangeType.INSERT:
                persisted[change.key] = await self.store.create_assignment(assignment_to_dict(change.after))
            elif change.kind is ChangeType.UPDATE:
                persisted[change.key] = await self.store.update_assignment(change.record_id, _assignment_patch(change.after))
            else:
                persisted[change.key] = await self.store.delete_assignment(change.record_id)
        return persisted
