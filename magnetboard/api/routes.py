from datetime import date
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from magnetboard.engine.session import BoardSession
from magnetboard.engine.registry import Magnet
from magnetboard.models.entities import (
    ClassType,
    Job,
    JobRow,
    JobType,
    Resource,
    ResourceType,
    RowType,
    Shift,
    TimeSlot,
    parse_clock,
)
from magnetboard.models.outcomes import Decision, OperationResult
from magnetboard.storage.serialization import assignment_to_dict, job_to_dict, resource_to_dict

router = APIRouter()
logger = logging.getLogger(__name__)


def get_board(request: Request) -> BoardSession:
    """One BoardSession per application, built in the startup hook."""
    return request.app.state.board


class ResourceDTO(BaseModel):
    id: str
    type: ResourceType
    class_type: ClassType
    name: str = ""
    allowed_equipment: Optional[List[str]] = None
    on_site: bool = True

    def to_domain(self) -> Resource:
        allowed = tuple(self.allowed_equipment) if self.allowed_equipment is not None else None
        return Resource(
            id=self.id,
            type=self.type,
            class_type=self.class_type,
            name=self.name,
            allowed_equipment=allowed,
            on_site=self.on_site,
        )


class JobRowDTO(BaseModel):
    row: RowType
    allowed_types: Optional[List[ResourceType]] = None
    max_count: Optional[int] = Field(None, ge=0)


class JobDTO(BaseModel):
    id: str
    type: JobType
    name: str = ""
    shift: Shift = Shift.DAY
    schedule_date: Optional[date] = None
    start_time: Optional[str] = None
    rows: List[JobRowDTO] = Field(default_factory=list)

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: Optional[str]):
        """Start time must be "HH:MM" within one day."""
        if v is None:
            return v
        try:
            minutes = parse_clock(v)
        except ValueError:
            raise ValueError("start_time must be HH:MM")
        if not 0 <= minutes < 1440:
            raise ValueError("start_time must be within the day")
        return v

    def to_domain(self) -> Job:
        return Job(
            id=self.id,
            type=self.type,
            name=self.name,
            shift=self.shift,
            schedule_date=self.schedule_date,
            start_time=self.start_time,
            rows=tuple(
                JobRow(
                    row=r.row,
                    allowed_types=frozenset(r.allowed_types) if r.allowed_types is not None else None,
                    max_count=r.max_count,
                )
                for r in self.rows
            ),
        )


class TimeSlotDTO(BaseModel):
    start: str
    end: str
    is_full_day: bool = False

    @field_validator("end")
    @classmethod
    def validate_window(cls, v: str, info):
        start = info.data.get("start")
        if start is not None and parse_clock(v) <= parse_clock(start):
            raise ValueError("time slot must end after it starts")
        return v

    def to_domain(self) -> TimeSlot:
        return TimeSlot.parse(self.start, self.end, self.is_full_day)


class AssignRequest(BaseModel):
    resource_id: str
    job_id: str
    row: RowType
    position: Optional[int] = Field(None, ge=0)
    time_slot: Optional[TimeSlotDTO] = None
    multi_shift: bool = False


class AttachRequest(BaseModel):
    target_id: str


class MoveRequest(BaseModel):
    job_id: str
    row: RowType
    position: Optional[int] = Field(None, ge=0)


class TruckDriverRequest(BaseModel):
    driver_id: str


def _decision_detail(decision: Decision) -> Dict[str, Any]:
    return {
        "kind": decision.kind.value if decision.kind else None,
        "message": decision.message,
        "violations": list(decision.violations),
    }


def _magnet_dict(magnet: Magnet) -> Dict[str, Any]:
    data = resource_to_dict(magnet.resource)
    data["status"] = magnet.status.value
    data["assignment_count"] = magnet.assignment_count
    return data


async def _finish(board: BoardSession, result: OperationResult) -> Dict[str, Any]:
    """Map a rejection to 409, otherwise persist and map a failed save to 503."""
    if not result.accepted:
        raise HTTPException(status_code=409, detail=_decision_detail(result.decision))
    failures = await board.commit()
    if failures:
        raise HTTPException(status_code=503, detail=[_decision_detail(f.decision) for f in failures])
    response: Dict[str, Any] = {"accepted": True, "assignment_id": result.assignment_id}
    if result.assignment_id and result.assignment_id in board.state.graph:
        response["assignment"] = assignment_to_dict(board.state.get_assignment(result.assignment_id))
    if result.secondary:
        response["secondary"] = [{"accepted": d.accepted, **_decision_detail(d)} for d in result.secondary]
    return response


@router.put("/resources", summary="Create or update resources")
async def put_resources(resources: List[ResourceDTO], board: BoardSession = Depends(get_board)):
    saved = await board.save_resources(r.to_domain() for r in resources)
    logger.info(f"Saved {len(saved)} resource(s)")
    return [resource_to_dict(r) for r in saved]


@router.put("/jobs", summary="Create or update jobs")
async def put_jobs(jobs: List[JobDTO], board: BoardSession = Depends(get_board)):
    saved = await board.save_jobs(j.to_domain() for j in jobs)
    logger.info(f"Saved {len(saved)} job(s)")
    return [job_to_dict(j) for j in saved]


@router.post("/assignments", summary="Drop a magnet into a job row")
async def create_assignment(req: AssignRequest, board: BoardSession = Depends(get_board)):
    """
    Assign a resource to a row of a job.

    **Rejections (409):** RowTypeMismatch, RowFull, DoubleShiftConflict.
    Assigning a truck also tries to bring its last-known driver along; that
    outcome is reported under `secondary` and never undoes the truck.
    """
    result = board.service.assign(
        req.resource_id,
        req.job_id,
        req.row,
        position=req.position,
        time_slot=req.time_slot.to_domain() if req.time_slot else None,
        multi_shift=req.multi_shift,
    )
    return await _finish(board, result)


@router.post("/assignments/{assignment_id}/attach", summary="Attach one assignment to another")
async def attach_assignment(assignment_id: str, req: AttachRequest, board: BoardSession = Depends(get_board)):
    return await _finish(board, board.service.attach(assignment_id, req.target_id))


@router.post("/assignments/{assignment_id}/detach", summary="Detach an assignment")
async def detach_assignment(assignment_id: str, board: BoardSession = Depends(get_board)):
    return await _finish(board, board.service.detach(assignment_id))


@router.post("/assignments/{assignment_id}/move", summary="Move an assignment with everything attached to it")
async def move_assignment(assignment_id: str, req: MoveRequest, board: BoardSession = Depends(get_board)):
    result = board.service.move_assignment(assignment_id, req.job_id, req.row, position=req.position)
    return await _finish(board, result)


@router.delete("/assignments/{assignment_id}", summary="Remove an assignment and its attachments")
async def delete_assignment(assignment_id: str, board: BoardSession = Depends(get_board)):
    return await _finish(board, board.service.unassign(assignment_id))


@router.post("/jobs/{job_id}/finalize", summary="Finalize a job")
async def finalize_job(job_id: str, board: BoardSession = Depends(get_board)):
    """Fails with 409 MissingRequiredAttachment listing every violation."""
    result = await _finish(board, board.service.finalize_job(job_id))
    result["job"] = job_to_dict(board.state.get_job(job_id))
    return result


@router.post("/jobs/{job_id}/unfinalize", summary="Reopen a finalized job")
async def unfinalize_job(job_id: str, board: BoardSession = Depends(get_board)):
    result = await _finish(board, board.service.unfinalize_job(job_id))
    result["job"] = job_to_dict(board.state.get_job(job_id))
    return result


@router.get("/jobs/{job_id}/assignments", summary="Assignments on a job")
def job_assignments(job_id: str, board: BoardSession = Depends(get_board)):
    board.state.get_job(job_id)
    return [assignment_to_dict(a) for a in board.service.assignments_for_job(job_id)]


@router.get("/jobs/{job_id}/finalize-preview", summary="Check finalization without committing")
def finalize_preview(job_id: str, board: BoardSession = Depends(get_board)):
    decision = board.service.validate_finalize_preview(job_id)
    return {"accepted": decision.accepted, **_decision_detail(decision)}


@router.put("/trucks/{truck_id}/driver", summary="Remember a truck's driver")
def set_truck_driver(truck_id: str, req: TruckDriverRequest, board: BoardSession = Depends(get_board)):
    decision = board.service.assign_driver_to_truck(truck_id, req.driver_id)
    if not decision:
        raise HTTPException(status_code=409, detail=_decision_detail(decision))
    return {"truck_id": truck_id, "driver_id": req.driver_id}


@router.delete("/trucks/{truck_id}/driver", summary="Forget a truck's driver")
def clear_truck_driver(truck_id: str, board: BoardSession = Depends(get_board)):
    return {"truck_id": truck_id, "driver_id": board.service.unassign_driver_from_truck(truck_id)}


@router.get("/magnets", summary="List magnets")
def list_magnets(
    type: Optional[ResourceType] = None,
    available_only: bool = False,
    board: BoardSession = Depends(get_board),
):
    registry = board.state.registry
    magnets = registry.available_magnets() if available_only else registry.all_magnets()
    if type is not None:
        magnets = [m for m in magnets if m.type is type]
    return [_magnet_dict(m) for m in sorted(magnets, key=lambda m: m.resource_id)]


@router.get("/magnets/{resource_id}", summary="One magnet and its assignments")
def get_magnet(resource_id: str, board: BoardSession = Depends(get_board)):
    data = _magnet_dict(board.state.registry.get_magnet(resource_id))
    data["assignments"] = [assignment_to_dict(a) for a in board.state.graph.for_resource(resource_id)]
    return data


@router.get("/conflicts", summary="Double-shift conflicts across the board")
def list_conflicts(board: BoardSession = Depends(get_board)):
    conflicts = board.detector.detect_all_conflicts(board.state)
    return {
        resource_id: [{"first": c.first.id, "second": c.second.id} for c in pairs]
        for resource_id, pairs in conflicts.items()
    }


@router.post("/rules", summary="Replace the active rule set")
def load_rules(rules: Dict[str, Any], board: BoardSession = Depends(get_board)):
    """The whole set is validated before it replaces the active one; a bad set returns 422."""
    ruleset = board.rule_store.load_rules(rules)
    return {
        "drop_rules": sum(len(r) for r in ruleset.drop_rules.values()),
        "interaction_rules": len(ruleset.interaction_rules),
    }
