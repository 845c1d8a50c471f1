from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from magnetboard.models.entities import JobType, ResourceType, RowType


@dataclass(frozen=True)
class DropRule:
    row: RowType
    allowed_types: FrozenSet[ResourceType]
    max_count: Optional[int] = None  # counts root assignments only


@dataclass(frozen=True)
class InteractionRule:
    source_type: ResourceType  # the resource being attached
    target_type: ResourceType  # the resource it attaches to
    max_count: int = 1
    can_attach: bool = True
    required_for_finalization: bool = False
    safety: bool = False


@dataclass(frozen=True)
class RuleSet:
    """
    Immutable rule snapshot.

    drop_rules is keyed by job type; the None key holds the rows every job
    type falls back to.
    """

    drop_rules: Dict[Optional[JobType], Dict[RowType, DropRule]] = field(default_factory=dict)
    interaction_rules: Dict[Tuple[ResourceType, ResourceType], InteractionRule] = field(default_factory=dict)

    def drop_rule(self, row: RowType, job_type: Optional[JobType] = None) -> Optional[DropRule]:
        if job_type is not None:
            rule = self.drop_rules.get(job_type, {}).get(row)
            if rule is not None:
                return rule
        return self.drop_rules.get(None, {}).get(row)

    def interaction_rule(self, source_type: ResourceType, target_type: ResourceType) -> Optional[InteractionRule]:
        return self.interaction_rules.get((source_type, target_type))

    def pair_rule(self, a: ResourceType, b: ResourceType) -> Optional[InteractionRule]:
        """Rule covering a and b in either direction, (a, b) first."""
        return self.interaction_rule(a, b) or self.interaction_rule(b, a)

    def required_partners(self, resource_type: ResourceType) -> List[ResourceType]:
        """Types that must be attached to resource_type before a job can be finalized."""
        return [
            rule.source_type
            for (source, target), rule in self.interaction_rules.items()
            if target is resource_type and rule.required_for_finalization
        ]
