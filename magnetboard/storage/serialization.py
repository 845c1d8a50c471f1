from datetime import date
from typing import Any, Dict, Optional

from magnetboard.models.entities import (
    Assignment,
    ClassType,
    Job,
    JobRow,
    JobType,
    Resource,
    ResourceType,
    RowType,
    Shift,
    TimeSlot,
)


def time_slot_to_dict(slot: Optional[TimeSlot]) -> Optional[Dict[str, Any]]:
    if slot is None:
        return None
    return {"start_minute": slot.start_minute, "end_minute": slot.end_minute, "is_full_day": slot.is_full_day}


def time_slot_from_dict(data: Optional[Dict[str, Any]]) -> Optional[TimeSlot]:
    if not data:
        return None
    return TimeSlot(int(data["start_minute"]), int(data["end_minute"]), bool(data.get("is_full_day", False)))


def assignment_to_dict(a: Assignment) -> Dict[str, Any]:
    return {
        "id": a.id,
        "resource_id": a.resource_id,
        "job_id": a.job_id,
        "row": a.row.value,
        "position": a.position,
        "attached_to": a.attached_to,
        "time_slot": time_slot_to_dict(a.time_slot),
        "multi_shift": a.multi_shift,
        "version": a.version,
        "note": a.note,
    }


def assignment_from_dict(data: Dict[str, Any]) -> Assignment:
    return Assignment(
        id=data["id"],
        resource_id=data["resource_id"],
        job_id=data["job_id"],
        row=RowType(data["row"]),
        position=int(data.get("position") or 0),
        attached_to=data.get("attached_to"),
        time_slot=time_slot_from_dict(data.get("time_slot")),
        multi_shift=bool(data.get("multi_shift", False)),
        version=int(data.get("version") or 0),
        note=data.get("note"),
    )


def job_to_dict(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type.value,
        "name": job.name,
        "shift": job.shift.value,
        "schedule_date": job.schedule_date.isoformat() if job.schedule_date else None,
        "start_time": job.start_time,
        "finalized": job.finalized,
        "rows": [
            {
                "row": r.row.value,
                "allowed_types": sorted(t.value for t in r.allowed_types) if r.allowed_types is not None else None,
                "max_count": r.max_count,
            }
            for r in job.rows
        ],
        "version": job.version,
    }


def job_from_dict(data: Dict[str, Any]) -> Job:
    schedule_date = data.get("schedule_date")
    if isinstance(schedule_date, str):
        schedule_date = date.fromisoformat(schedule_date)
    rows = tuple(
        JobRow(
            row=RowType(r["row"]),
            allowed_types=frozenset(ResourceType(t) for t in r["allowed_types"]) if r.get("allowed_types") is not None else None,
            max_count=r.get("max_count"),
        )
        for r in data.get("rows") or []
    )
    return Job(
        id=data["id"],
        type=JobType(data["type"]),
        name=data.get("name") or "",
        shift=Shift(data.get("shift") or Shift.DAY.value),
        schedule_date=schedule_date,
        start_time=data.get("start_time"),
        finalized=bool(data.get("finalized", False)),
        rows=rows,
        version=int(data.get("version") or 0),
    )


def resource_to_dict(r: Resource) -> Dict[str, Any]:
    return {
        "id": r.id,
        "type": r.type.value,
        "class_type": r.class_type.value,
        "name": r.name,
        "allowed_equipment": list(r.allowed_equipment) if r.allowed_equipment is not None else None,
        "on_site": r.on_site,
        "version": r.version,
    }


def resource_from_dict(data: Dict[str, Any]) -> Resource:
    allowed = data.get("allowed_equipment")
    return Resource(
        id=data["id"],
        type=ResourceType(data["type"]),
        class_type=ClassType(data["class_type"]),
        name=data.get("name") or "",
        allowed_equipment=tuple(allowed) if allowed is not None else None,
        on_site=bool(data.get("on_site", True)),
        version=int(data.get("version") or 0),
    )
