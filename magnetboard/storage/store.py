import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from magnetboard.exceptions import PersistenceError
from magnetboard.models.entities import Assignment, Job, Resource, RowType, TimeSlot
from magnetboard.storage.change_feed import ChangeCallback, ChangeEvent, ChangeType, LocalChangeFeed
from magnetboard.storage.repositories import (
    AssignmentRepository,
    AuditLogRepository,
    JobRepository,
    ResourceRepository,
)
from magnetboard.storage.serialization import (
    assignment_from_dict,
    assignment_to_dict,
    job_to_dict,
    resource_to_dict,
    time_slot_to_dict,
)

logger = logging.getLogger(__name__)


class BackingStore(ABC):
    """
    Persistence and real-time collaborator.

    Writes are async and may fail with PersistenceError; every committed
    write is echoed to subscribers as a ChangeEvent carrying the record's new
    version.
    """

    @abstractmethod
    async def create_assignment(self, payload: Dict[str, Any]) -> Assignment:
        ...

    @abstractmethod
    async def update_assignment(self, assignment_id: str, patch: Dict[str, Any]) -> Assignment:
        ...

    @abstractmethod
    async def delete_assignment(self, assignment_id: str) -> int:
        """Returns the version assigned to the deletion."""

    @abstractmethod
    async def move_assignment_group(
        self,
        assignment_ids: Sequence[str],
        job_id: str,
        row: RowType,
        position: int,
        time_slot: Optional[TimeSlot] = None,
    ) -> List[Assignment]:
        """Move a root assignment and its attached subtree in one transaction."""

    @abstractmethod
    async def update_job(self, job_id: str, patch: Dict[str, Any]) -> Job:
        ...

    @abstractmethod
    async def upsert_job(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def upsert_resource(self, resource: Resource) -> Resource:
        ...

    @abstractmethod
    def subscribe_to_changes(self, callback: ChangeCallback) -> Callable[[], None]:
        ...


class SqlBackingStore(BackingStore):
    def __init__(self, session_factory, feed: Optional[LocalChangeFeed] = None):
        self.session_factory = session_factory
        self.feed = feed or LocalChangeFeed()

    def subscribe_to_changes(self, callback: ChangeCallback) -> Callable[[], None]:
        return self.feed.subscribe(callback)

    @contextmanager
    def _transaction(self, action: str):
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"{action} failed: {exc}")
            raise PersistenceError(f"{action} failed") from exc
        finally:
            db.close()

    def _emit(self, events: List[ChangeEvent]) -> None:
        for event in events:
            self.feed.publish(event)

    def load_snapshot(self) -> Tuple[List[Resource], List[Job], List[Assignment]]:
        with self._transaction("load snapshot") as db:
            return (
                ResourceRepository(db).list_all(),
                JobRepository(db).list_all(),
                AssignmentRepository(db).list_all(),
            )

    async def create_assignment(self, payload: Dict[str, Any]) -> Assignment:
        return await asyncio.to_thread(self._create_assignment, payload)

    async def update_assignment(self, assignment_id: str, patch: Dict[str, Any]) -> Assignment:
        return await asyncio.to_thread(self._update_assignment, assignment_id, patch)

    async def delete_assignment(self, assignment_id: str) -> int:
        return await asyncio.to_thread(self._delete_assignment, assignment_id)

    async def move_assignment_group(
        self,
        assignment_ids: Sequence[str],
        job_id: str,
        row: RowType,
        position: int,
        time_slot: Optional[TimeSlot] = None,
    ) -> List[Assignment]:
        return await asyncio.to_thread(self._move_assignment_group, list(assignment_ids), job_id, row, position, time_slot)

    async def update_job(self, job_id: str, patch: Dict[str, Any]) -> Job:
        return await asyncio.to_thread(self._update_job, job_id, patch)

    async def upsert_job(self, job: Job) -> Job:
        return await asyncio.to_thread(self._upsert_job, job)

    async def upsert_resource(self, resource: Resource) -> Resource:
        return await asyncio.to_thread(self._upsert_resource, resource)

    # Blocking session work, run on a worker thread by the coroutines above.
    # Events go out from the worker right after commit, so a caller that gave
    # up waiting still sees the write's echo.

    def _create_assignment(self, payload: Dict[str, Any]) -> Assignment:
        with self._transaction(f"create assignment {payload.get('id')}") as db:
            repo = AssignmentRepository(db)
            if repo.get_by_id(payload["id"]) is not None:
                raise PersistenceError(f"assignment {payload['id']} already exists")
            created = repo.create(assignment_from_dict(payload))
        self._emit([ChangeEvent("assignments", ChangeType.INSERT, assignment_to_dict(created), created.version)])
        return created

    def _update_assignment(self, assignment_id: str, patch: Dict[str, Any]) -> Assignment:
        with self._transaction(f"update assignment {assignment_id}") as db:
            updated = AssignmentRepository(db).update(assignment_id, patch)
            if updated is None:
                raise PersistenceError(f"assignment {assignment_id} not found")
        self._emit([ChangeEvent("assignments", ChangeType.UPDATE, assignment_to_dict(updated), updated.version)])
        return updated

    def _delete_assignment(self, assignment_id: str) -> int:
        with self._transaction(f"delete assignment {assignment_id}") as db:
            repo = AssignmentRepository(db)
            existing = repo.get_by_id(assignment_id)
            if existing is None:
                raise PersistenceError(f"assignment {assignment_id} not found")
            version = repo.delete(assignment_id)
        record = assignment_to_dict(existing)
        record["version"] = version
        self._emit([ChangeEvent("assignments", ChangeType.DELETE, record, version)])
        return version

    def _move_assignment_group(
        self,
        assignment_ids: List[str],
        job_id: str,
        row: RowType,
        position: int,
        time_slot: Optional[TimeSlot],
    ) -> List[Assignment]:
        if not assignment_ids:
            return []
        root_id = assignment_ids[0]
        with self._transaction(f"move assignment group {root_id}") as db:
            repo = AssignmentRepository(db)
            root = repo.get_by_id(root_id)
            if root is None:
                raise PersistenceError(f"assignment {root_id} not found")
            moved = []
            for assignment_id in assignment_ids:
                patch: Dict[str, Any] = {"job_id": job_id, "row": row.value, "position": position}
                if time_slot is not None:
                    patch["time_slot"] = time_slot_to_dict(time_slot)
                if assignment_id == root_id:
                    patch["attached_to"] = None
                updated = repo.update(assignment_id, patch)
                if updated is None:
                    raise PersistenceError(f"assignment {assignment_id} not found")
                moved.append(updated)
            AuditLogRepository(db).record(
                "MOVE_ASSIGNMENT_GROUP",
                "assignment_group",
                root_id,
                {
                    "moved_assignments": assignment_ids,
                    "from_job_id": root.job_id,
                    "from_row_type": root.row.value,
                    "to_job_id": job_id,
                    "to_row_type": row.value,
                },
            )
        self._emit([ChangeEvent("assignments", ChangeType.UPDATE, assignment_to_dict(a), a.version) for a in moved])
        return moved

    def _update_job(self, job_id: str, patch: Dict[str, Any]) -> Job:
        with self._transaction(f"update job {job_id}") as db:
            updated = JobRepository(db).update(job_id, patch)
            if updated is None:
                raise PersistenceError(f"job {job_id} not found")
            if "finalized" in patch:
                AuditLogRepository(db).record(
                    "FINALIZE_JOB" if patch["finalized"] else "UNFINALIZE_JOB", "job", job_id, None
                )
        self._emit([ChangeEvent("jobs", ChangeType.UPDATE, job_to_dict(updated), updated.version)])
        return updated

    def _upsert_job(self, job: Job) -> Job:
        with self._transaction(f"save job {job.id}") as db:
            repo = JobRepository(db)
            change = ChangeType.UPDATE if repo.get_by_id(job.id) else ChangeType.INSERT
            saved = repo.save(job)
        self._emit([ChangeEvent("jobs", change, job_to_dict(saved), saved.version)])
        return saved

    def _upsert_resource(self, resource: Resource) -> Resource:
        with self._transaction(f"save resource {resource.id}") as db:
            repo = ResourceRepository(db)
            change = ChangeType.UPDATE if repo.get_by_id(resource.id) else ChangeType.INSERT
            saved = repo.save(resource)
        self._emit([ChangeEvent("resources", change, resource_to_dict(saved), saved.version)])
        return saved

    def audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._transaction("read audit log") as db:
            return AuditLogRepository(db).list_recent(limit)
