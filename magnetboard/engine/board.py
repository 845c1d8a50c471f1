from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional

from magnetboard.engine.registry import ResourceRegistry
from magnetboard.exceptions import UnknownRecordError
from magnetboard.graph.attachment_graph import AssignmentGraph
from magnetboard.models.entities import Assignment, Job, Resource
from magnetboard.models.rules import RuleSet


@dataclass(frozen=True)
class BoardSnapshot:
    """Read-only view handed to the validation functions."""

    resources: Mapping[str, Resource]
    jobs: Mapping[str, Job]
    graph: AssignmentGraph
    rules: RuleSet

    def resource_of(self, assignment: Assignment) -> Optional[Resource]:
        return self.resources.get(assignment.resource_id)


class BoardState:
    """
    Local board state for one client session: resources (through the
    registry), jobs and the assignment graph. Only the Assignment Service and
    the Sync Reconciler write to it.
    """

    def __init__(
        self,
        registry: Optional[ResourceRegistry] = None,
        jobs: Iterable[Job] = (),
        assignments: Iterable[Assignment] = (),
    ):
        self.registry = registry or ResourceRegistry()
        self.jobs: Dict[str, Job] = {job.id: job for job in jobs}
        self.graph = AssignmentGraph(assignments)
        for magnet in self.registry.all_magnets():
            self.registry.refresh(magnet.resource_id, self.graph)

    def snapshot(self, rules: RuleSet) -> BoardSnapshot:
        return BoardSnapshot(self.registry.resources(), dict(self.jobs), self.graph, rules)

    def get_job(self, job_id: str) -> Job:
        job = self.jobs.get(job_id)
        if job is None:
            raise UnknownRecordError(job_id)
        return job

    def get_assignment(self, assignment_id: str) -> Assignment:
        assignment = self.graph.get(assignment_id)
        if assignment is None:
            raise UnknownRecordError(assignment_id)
        return assignment

    def get_resource(self, resource_id: str) -> Resource:
        resource = self.registry.get_resource(resource_id)
        if resource is None:
            raise UnknownRecordError(resource_id)
        return resource

    def upsert_job(self, job: Job) -> Optional[Job]:
        previous = self.jobs.get(job.id)
        self.jobs[job.id] = job
        return previous

    def remove_job(self, job_id: str) -> Optional[Job]:
        return self.jobs.pop(job_id, None)

    def upsert_resource(self, resource: Resource) -> None:
        self.registry.upsert_resource(resource, self.graph)

    def remove_resource(self, resource_id: str) -> Optional[Resource]:
        return self.registry.remove_resource(resource_id)

    def put_assignment(self, assignment: Assignment) -> Optional[Assignment]:
        previous = self.graph.put(assignment)
        touched = {assignment.resource_id}
        if previous is not None:
            touched.add(previous.resource_id)
        self.registry.refresh_many(touched, self.graph)
        return previous

    def remove_assignment(self, assignment_id: str) -> Optional[Assignment]:
        previous = self.graph.remove(assignment_id)
        if previous is not None:
            self.registry.refresh(previous.resource_id, self.graph)
        return previous
