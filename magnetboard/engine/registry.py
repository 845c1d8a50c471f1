import logging
from typing import Dict, Iterable, List, Optional

from magnetboard.exceptions import UnknownRecordError
from magnetboard.graph.attachment_graph import AssignmentGraph
from magnetboard.models.entities import MagnetStatus, Resource, ResourceType

logger = logging.getLogger(__name__)


class Magnet:
    """Runtime view over a Resource; status is derived from the assignment count."""

    def __init__(self, resource: Resource, assignment_count: int = 0):
        self.resource = resource
        self.assignment_count = assignment_count
        self.dragging = False

    @property
    def resource_id(self) -> str:
        return self.resource.id

    @property
    def type(self) -> ResourceType:
        return self.resource.type

    @property
    def status(self) -> MagnetStatus:
        if self.dragging:
            return MagnetStatus.DRAGGING
        if self.assignment_count == 0:
            return MagnetStatus.AVAILABLE
        if self.assignment_count == 1:
            return MagnetStatus.ASSIGNED
        return MagnetStatus.MULTI_ASSIGNED

    def __repr__(self) -> str:
        return f"Magnet({self.resource.id!r}, {self.resource.type.value}, {self.status.value})"


class ResourceRegistry:
    """Canonical resources and their magnets. One instance per board session."""

    def __init__(self, resources: Iterable[Resource] = ()):
        self._magnets: Dict[str, Magnet] = {}
        for resource in resources:
            self.upsert_resource(resource)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._magnets

    def upsert_resource(self, resource: Resource, graph: Optional[AssignmentGraph] = None) -> Magnet:
        magnet = self._magnets.get(resource.id)
        if magnet is None:
            magnet = Magnet(resource)
            self._magnets[resource.id] = magnet
            logger.debug(f"Magnet created for {resource.type.value} {resource.id}")
        else:
            magnet.resource = resource
        if graph is not None:
            self.refresh(resource.id, graph)
        return magnet

    def remove_resource(self, resource_id: str) -> Optional[Resource]:
        magnet = self._magnets.pop(resource_id, None)
        if magnet is None:
            return None
        logger.debug(f"Magnet removed for {resource_id}")
        return magnet.resource

    def get_magnet(self, resource_id: str) -> Magnet:
        magnet = self._magnets.get(resource_id)
        if magnet is None:
            raise UnknownRecordError(resource_id)
        return magnet

    def find_magnet(self, resource_id: str) -> Optional[Magnet]:
        return self._magnets.get(resource_id)

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        magnet = self._magnets.get(resource_id)
        return magnet.resource if magnet else None

    def resources(self) -> Dict[str, Resource]:
        return {rid: m.resource for rid, m in self._magnets.items()}

    def all_magnets(self) -> List[Magnet]:
        return list(self._magnets.values())

    def available_magnets(self) -> List[Magnet]:
        return [m for m in self._magnets.values() if m.status is MagnetStatus.AVAILABLE]

    def magnets_by_type(self, resource_type: ResourceType) -> List[Magnet]:
        return [m for m in self._magnets.values() if m.type is resource_type]

    def refresh(self, resource_id: str, graph: AssignmentGraph) -> None:
        """Recount assignments for one resource via the graph's per-resource index."""
        magnet = self._magnets.get(resource_id)
        if magnet is not None:
            magnet.assignment_count = graph.count_for_resource(resource_id)

    def refresh_many(self, resource_ids: Iterable[str], graph: AssignmentGraph) -> None:
        for resource_id in set(resource_ids):
            self.refresh(resource_id, graph)

    def start_drag(self, resource_id: str) -> None:
        self.get_magnet(resource_id).dragging = True

    def end_drag(self, resource_id: str) -> None:
        magnet = self._magnets.get(resource_id)
        if magnet is not None:
            magnet.dragging = False
