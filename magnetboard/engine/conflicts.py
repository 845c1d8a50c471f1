import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Collection, Dict, List, Optional

from magnetboard.engine.board import BoardState
from magnetboard.engine.validation import count_within_limit
from magnetboard.models.entities import Assignment, Job, TimeSlot
from magnetboard.models.outcomes import ACCEPTED, Decision, ErrorKind, reject
from magnetboard.models.rules import InteractionRule, RuleSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShiftConflict:
    resource_id: str
    first: Assignment
    second: Assignment


def windows_collide(job_a: Job, slot_a: Optional[TimeSlot], job_b: Job, slot_b: Optional[TimeSlot]) -> bool:
    """
    Two bookings of one resource collide when they fall on the same day
    (an undated job matches any day) and either the shifts differ or the
    time slots overlap. A missing slot is treated as the whole shift.
    """
    if job_a.schedule_date and job_b.schedule_date and job_a.schedule_date != job_b.schedule_date:
        return False
    if job_a.shift is not job_b.shift:
        return True
    if slot_a is None or slot_b is None:
        return True
    return slot_a.overlaps(slot_b)


class ConflictDetector:
    """Invariants that span several assignments rather than one proposed change."""

    def check_double_shift(
        self,
        resource_id: str,
        job: Job,
        time_slot: Optional[TimeSlot],
        state: BoardState,
        multi_shift: bool = False,
        ignore: Collection[str] = (),
    ) -> Decision:
        for existing in state.graph.for_resource(resource_id):
            if existing.id in ignore:
                continue
            other_job = state.jobs.get(existing.job_id)
            if other_job is None:
                continue
            if not windows_collide(job, time_slot, other_job, existing.time_slot):
                continue
            if multi_shift:
                logger.info(f"Resource {resource_id} double-booked on request ({existing.job_id} + {job.id})")
                return ACCEPTED
            return reject(
                ErrorKind.DOUBLE_SHIFT_CONFLICT,
                f"resource {resource_id} is already booked on job {existing.job_id} ({other_job.shift.value} shift)",
            )
        return ACCEPTED

    def check_attachment_count(
        self,
        source: Assignment,
        target: Assignment,
        rule: InteractionRule,
        state: BoardState,
        rules: RuleSet,
    ) -> Decision:
        """Recount live partners on both ends; runs again right before an attach commits."""
        return count_within_limit(source, target, rule, state.snapshot(rules))

    def detect_all_conflicts(self, state: BoardState) -> Dict[str, List[ShiftConflict]]:
        """Every colliding pair per resource, skipping pairs where either side was explicitly double-booked."""
        conflicts: Dict[str, List[ShiftConflict]] = defaultdict(list)
        by_resource: Dict[str, List[Assignment]] = defaultdict(list)
        for assignment in state.graph:
            by_resource[assignment.resource_id].append(assignment)
        for resource_id, assignments in by_resource.items():
            assignments.sort(key=lambda a: a.id)
            for i, first in enumerate(assignments):
                for second in assignments[i + 1:]:
                    if first.multi_shift or second.multi_shift:
                        continue
                    job_a = state.jobs.get(first.job_id)
                    job_b = state.jobs.get(second.job_id)
                    if job_a is None or job_b is None:
                        continue
                    if windows_collide(job_a, first.time_slot, job_b, second.time_slot):
                        conflicts[resource_id].append(ShiftConflict(resource_id, first, second))
        if conflicts:
            logger.warning(f"Shift conflicts detected for {len(conflicts)} resource(s)")
        return dict(conflicts)
