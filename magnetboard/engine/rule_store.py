import json
import logging
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from magnetboard.config.default_rules import DEFAULT_RULES
from magnetboard.config.rule_schema import RuleSetConfig
from magnetboard.config.settings import Settings, get_settings
from magnetboard.exceptions import RuleConfigurationError
from magnetboard.models.entities import JobType, ResourceType, RowType
from magnetboard.models.rules import DropRule, InteractionRule, RuleSet

logger = logging.getLogger(__name__)


class RuleStore:
    """
    Holds the active RuleSet.

    A reload parses and validates the complete replacement first and then
    swaps a single reference, so validators always read one whole snapshot.
    """

    def __init__(self, rules: Union[RuleSet, Mapping[str, Any], None] = None):
        self._rules = RuleSet()
        self.load_rules(DEFAULT_RULES if rules is None else rules)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RuleStore":
        settings = settings or get_settings()
        if not settings.rules_path:
            return cls()
        logger.info(f"Loading rules from {settings.rules_path}")
        with open(settings.rules_path, encoding="utf-8") as fh:
            return cls(json.load(fh))

    def load_rules(self, rules: Union[RuleSet, Mapping[str, Any]]) -> RuleSet:
        if not isinstance(rules, RuleSet):
            rules = self.parse(rules)
        self._rules = rules
        logger.info(
            f"Rule set loaded: {sum(len(r) for r in rules.drop_rules.values())} drop rules, "
            f"{len(rules.interaction_rules)} interaction rules"
        )
        return rules

    @staticmethod
    def parse(data: Mapping[str, Any]) -> RuleSet:
        try:
            config = RuleSetConfig.model_validate(data)
        except ValidationError as exc:
            raise RuleConfigurationError(str(exc)) from exc
        for warning in config.warnings():
            logger.warning(warning)
        return config.to_domain()

    def snapshot(self) -> RuleSet:
        return self._rules

    def drop_rule(self, row: RowType, job_type: Optional[JobType] = None) -> Optional[DropRule]:
        return self._rules.drop_rule(row, job_type)

    def interaction_rule(self, source_type: ResourceType, target_type: ResourceType) -> Optional[InteractionRule]:
        return self._rules.interaction_rule(source_type, target_type)
