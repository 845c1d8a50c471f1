from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from magnetboard.models.entities import Assignment, Job, Resource
from magnetboard.storage.database import AssignmentModel, AuditLogModel, JobModel, ResourceModel
from magnetboard.storage.serialization import (
    assignment_from_dict,
    job_from_dict,
    job_to_dict,
    resource_from_dict,
    time_slot_to_dict,
)


class ResourceRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, resource_id: str) -> Optional[Resource]:
        model = self.db.get(ResourceModel, resource_id)
        if not model:
            return None
        return self._model_to_resource(model)

    def list_all(self) -> List[Resource]:
        return [self._model_to_resource(m) for m in self.db.query(ResourceModel).all()]

    def save(self, resource: Resource) -> Resource:
        existing = self.db.get(ResourceModel, resource.id)
        allowed = list(resource.allowed_equipment) if resource.allowed_equipment is not None else None
        if existing:
            existing.type = resource.type.value
            existing.class_type = resource.class_type.value
            existing.name = resource.name
            existing.allowed_equipment = allowed
            existing.on_site = resource.on_site
            existing.version += 1
            model = existing
        else:
            model = ResourceModel(
                id=resource.id,
                type=resource.type.value,
                class_type=resource.class_type.value,
                name=resource.name,
                allowed_equipment=allowed,
                on_site=resource.on_site,
                version=1,
            )
            self.db.add(model)
        self.db.flush()
        return self._model_to_resource(model)

    @staticmethod
    def _model_to_resource(model: ResourceModel) -> Resource:
        return resource_from_dict({
            "id": model.id,
            "type": model.type,
            "class_type": model.class_type,
            "name": model.name,
            "allowed_equipment": model.allowed_equipment,
            "on_site": model.on_site,
            "version": model.version,
        })


class JobRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, job_id: str) -> Optional[Job]:
        model = self.db.get(JobModel, job_id)
        if not model:
            return None
        return self._model_to_job(model)

    def list_all(self) -> List[Job]:
        return [self._model_to_job(m) for m in self.db.query(JobModel).all()]

    def save(self, job: Job) -> Job:
        data = job_to_dict(job)
        existing = self.db.get(JobModel, job.id)
        if existing:
            model = existing
            model.version += 1
        else:
            model = JobModel(id=job.id, version=1)
            self.db.add(model)
        model.type = data["type"]
        model.name = data["name"]
        model.shift = data["shift"]
        model.schedule_date = job.schedule_date
        model.start_time = data["start_time"]
        model.finalized = data["finalized"]
        model.rows = data["rows"]
        self.db.flush()
        return self._model_to_job(model)

    def update(self, job_id: str, patch: Dict[str, Any]) -> Optional[Job]:
        model = self.db.get(JobModel, job_id)
        if not model:
            return None
        for key, value in patch.items():
            setattr(model, key, value)
        model.version += 1
        self.db.flush()
        return self._model_to_job(model)

    @staticmethod
    def _model_to_job(model: JobModel) -> Job:
        return job_from_dict({
            "id": model.id,
            "type": model.type,
            "name": model.name,
            "shift": model.shift,
            "schedule_date": model.schedule_date,
            "start_time": model.start_time,
            "finalized": model.finalized,
            "rows": model.rows,
            "version": model.version,
        })


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, assignment_id: str) -> Optional[Assignment]:
        model = self.db.get(AssignmentModel, assignment_id)
        if not model:
            return None
        return self._model_to_assignment(model)

    def list_all(self) -> List[Assignment]:
        return [self._model_to_assignment(m) for m in self.db.query(AssignmentModel).all()]

    def create(self, assignment: Assignment) -> Assignment:
        model = AssignmentModel(
            id=assignment.id,
            resource_id=assignment.resource_id,
            job_id=assignment.job_id,
            row_type=assignment.row.value,
            position=assignment.position,
            attached_to=assignment.attached_to,
            time_slot=time_slot_to_dict(assignment.time_slot),
            multi_shift=assignment.multi_shift,
            note=assignment.note,
            version=1,
        )
        self.db.add(model)
        self.db.flush()
        return self._model_to_assignment(model)

    def update(self, assignment_id: str, patch: Dict[str, Any]) -> Optional[Assignment]:
        model = self.db.get(AssignmentModel, assignment_id)
        if not model:
            return None
        for key, value in patch.items():
            if key == "row":
                key = "row_type"
            setattr(model, key, value)
        model.version += 1
        self.db.flush()
        return self._model_to_assignment(model)

    def delete(self, assignment_id: str) -> Optional[int]:
        model = self.db.get(AssignmentModel, assignment_id)
        if not model:
            return None
        version = model.version + 1
        self.db.delete(model)
        self.db.flush()
        return version

    @staticmethod
    def _model_to_assignment(model: AssignmentModel) -> Assignment:
        return assignment_from_dict({
            "id": model.id,
            "resource_id": model.resource_id,
            "job_id": model.job_id,
            "row": model.row_type,
            "position": model.position,
            "attached_to": model.attached_to,
            "time_slot": model.time_slot,
            "multi_shift": model.multi_shift,
            "version": model.version,
            "note": model.note,
        })


class AuditLogRepository:
    def __init__(self, db: Session):
        self.db = db

    def record(self, action: str, entity_type: str, entity_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.db.add(AuditLogModel(action=action, entity_type=entity_type, entity_id=entity_id, change_details=details))
        self.db.flush()

    def list_recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        models = self.db.query(AuditLogModel).order_by(AuditLogModel.id.desc()).limit(limit).all()
        return [
            {
                "action": m.action,
                "entity_type": m.entity_type,
                "entity_id": m.entity_id,
                "change_details": m.change_details,
            }
            for m in models
        ]
