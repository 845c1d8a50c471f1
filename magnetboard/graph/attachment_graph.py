from collections import defaultdict, deque
from typing import Dict, Iterable, List, Optional, Set

from magnetboard.models.entities import Assignment, RowType


class AssignmentGraph:
    """
    Arena of assignments indexed by id.

    attached_to is stored as an id, never as a live reference; the parent,
    resource and job indexes are kept in step on every add/replace/remove so
    lookups touch only the records involved.
    """

    def __init__(self, assignments: Iterable[Assignment] = ()):
        self._arena: Dict[str, Assignment] = {}
        self._by_resource: Dict[str, Set[str]] = defaultdict(set)
        self._by_job: Dict[str, Set[str]] = defaultdict(set)
        self._children: Dict[str, Set[str]] = defaultdict(set)
        for a in assignments:
            self.put(a)

    def __len__(self) -> int:
        return len(self._arena)

    def __contains__(self, assignment_id: str) -> bool:
        return assignment_id in self._arena

    def __iter__(self):
        return iter(list(self._arena.values()))

    def get(self, assignment_id: str) -> Optional[Assignment]:
        return self._arena.get(assignment_id)

    def put(self, assignment: Assignment) -> Optional[Assignment]:
        """Insert or replace; returns the previous value."""
        previous = self._arena.get(assignment.id)
        if previous is not None:
            self._unindex(previous)
        self._arena[assignment.id] = assignment
        self._by_resource[assignment.resource_id].add(assignment.id)
        self._by_job[assignment.job_id].add(assignment.id)
        if assignment.attached_to:
            self._children[assignment.attached_to].add(assignment.id)
        return previous

    def remove(self, assignment_id: str) -> Optional[Assignment]:
        previous = self._arena.pop(assignment_id, None)
        if previous is not None:
            self._unindex(previous)
        return previous

    def _unindex(self, assignment: Assignment) -> None:
        self._by_resource[assignment.resource_id].discard(assignment.id)
        self._by_job[assignment.job_id].discard(assignment.id)
        if assignment.attached_to:
            self._children[assignment.attached_to].discard(assignment.id)

    def for_resource(self, resource_id: str) -> List[Assignment]:
        return [self._arena[i] for i in self._by_resource.get(resource_id, ())]

    def count_for_resource(self, resource_id: str) -> int:
        return len(self._by_resource.get(resource_id, ()))

    def for_job(self, job_id: str) -> List[Assignment]:
        return sorted((self._arena[i] for i in self._by_job.get(job_id, ())), key=lambda a: (a.row.value, a.position, a.id))

    def in_row(self, job_id: str, row: RowType, roots_only: bool = False) -> List[Assignment]:
        return [
            a for a in self.for_job(job_id)
            if a.row is row and not (roots_only and a.attached_to)
        ]

    def children(self, assignment_id: str) -> List[Assignment]:
        return [self._arena[i] for i in sorted(self._children.get(assignment_id, ())) if i in self._arena]

    def parent(self, assignment_id: str) -> Optional[Assignment]:
        a = self._arena.get(assignment_id)
        if a is None or not a.attached_to:
            return None
        return self._arena.get(a.attached_to)

    def ancestors(self, assignment_id: str) -> List[str]:
        """Ids from the direct parent up to the root. Bounded by arena size."""
        chain: List[str] = []
        current = self._arena.get(assignment_id)
        for _ in range(len(self._arena)):
            if current is None or not current.attached_to:
                break
            chain.append(current.attached_to)
            current = self._arena.get(current.attached_to)
        return chain

    def descendants(self, assignment_id: str) -> List[Assignment]:
        """Breadth-first subtree below assignment_id, excluding it."""
        found: List[Assignment] = []
        seen = {assignment_id}
        queue = deque([assignment_id])
        while queue:
            for child in self.children(queue.popleft()):
                if child.id in seen:
                    continue
                seen.add(child.id)
                found.append(child)
                queue.append(child.id)
        return found

    def subtree(self, assignment_id: str) -> List[Assignment]:
        root = self._arena.get(assignment_id)
        if root is None:
            return []
        return [root] + self.descendants(assignment_id)

    def next_position(self, job_id: str, row: RowType) -> int:
        taken = {a.position for a in self.in_row(job_id, row, roots_only=True)}
        position = 0
        while position in taken:
            position += 1
        return position
