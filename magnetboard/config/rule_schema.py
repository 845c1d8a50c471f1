import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from magnetboard.models.entities import EQUIPMENT_TYPES, JobType, ResourceType, RowType
from magnetboard.models.rules import DropRule, InteractionRule, RuleSet

logger = logging.getLogger(__name__)

DEFAULT_KEY = "default"


class RowPolicyConfig(BaseModel):
    allowed_types: List[ResourceType]
    max_count: Optional[int] = Field(None, ge=0)


class JobTypeRulesConfig(BaseModel):
    rows: Dict[RowType, RowPolicyConfig] = Field(default_factory=dict)


class AttachmentRuleConfig(BaseModel):
    source: ResourceType
    target: ResourceType
    max_count: int = Field(1, ge=0)
    can_attach: bool = True
    required_for_finalization: bool = False
    safety: bool = False

    @model_validator(mode="after")
    def check_required_is_attachable(self):
        if self.required_for_finalization and not self.can_attach:
            raise ValueError(
                f"{self.source.value} -> {self.target.value} is required for finalization but cannot attach"
            )
        return self


class RuleSetConfig(BaseModel):
    """Declarative rule set keyed by job type ("default" applies to every job type)."""

    job_types: Dict[str, JobTypeRulesConfig] = Field(default_factory=dict)
    attachments: List[AttachmentRuleConfig] = Field(default_factory=list)

    @field_validator("job_types")
    def validate_job_type_keys(cls, v: Dict[str, JobTypeRulesConfig]):
        """Only "default" and known job types may key a row policy."""
        for key in v:
            if key != DEFAULT_KEY:
                JobType(key)
        return v

    @field_validator("attachments")
    def validate_unique_pairs(cls, v: List[AttachmentRuleConfig]):
        seen = set()
        for rule in v:
            pair = (rule.source, rule.target)
            if pair in seen:
                raise ValueError(f"duplicate attachment rule for {rule.source.value} -> {rule.target.value}")
            seen.add(pair)
        return v

    def warnings(self) -> List[str]:
        """Soft findings that do not block loading."""
        found: List[str] = []
        attachable = {(r.source, r.target) for r in self.attachments if r.can_attach}
        for equipment in sorted(EQUIPMENT_TYPES - {ResourceType.EQUIPMENT}, key=lambda t: t.value):
            if (ResourceType.OPERATOR, equipment) not in attachable:
                found.append(f"No operator rule found for {equipment.value}")
        if not attachable & {(ResourceType.DRIVER, ResourceType.TRUCK), (ResourceType.PRIVATE_DRIVER, ResourceType.TRUCK)}:
            found.append("No driver rule found for trucks")
        for rule in self.attachments:
            if rule.max_count > 5:
                found.append(f"High max_count ({rule.max_count}) for {rule.source.value} -> {rule.target.value}")
            if rule.can_attach and rule.max_count == 0:
                found.append(f"Rule allows attachment but max_count is 0: {rule.source.value} -> {rule.target.value}")
        for key, job_rules in self.job_types.items():
            for row, policy in job_rules.rows.items():
                if not policy.allowed_types:
                    found.append(f"Row {row.value} for {key} allows no resource types")
        return found

    def to_domain(self) -> RuleSet:
        drop_rules = {}
        for key, job_rules in self.job_types.items():
            job_type = None if key == DEFAULT_KEY else JobType(key)
            drop_rules[job_type] = {
                row: DropRule(row=row, allowed_types=frozenset(policy.allowed_types), max_count=policy.max_count)
                for row, policy in job_rules.rows.items()
            }
        interaction_rules = {
            (r.source, r.target): InteractionRule(
                source_type=r.source,
                target_type=r.target,
                max_count=r.max_count,
                can_attach=r.can_attach,
                required_for_finalization=r.required_for_finalization,
                safety=r.safety,
            )
            for r in self.attachments
        }
        return RuleSet(drop_rules=drop_rules, interaction_rules=interaction_rules)
