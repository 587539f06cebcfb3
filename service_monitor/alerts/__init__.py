"""
Alerts - Rule evaluation and alert lifecycle.
"""

from .repository import (
    Repository,
    AlertRepository,
    InMemoryRuleRepository,
    InMemoryAlertRepository,
)
from .rules import (
    SERVICE_UP_METRIC,
    OPERATORS,
    evaluate_condition,
    RuleInstance,
    resolve_instances,
)
from .engine import SYSTEM_ACTOR, AlertEngine, AlertCallback, parse_period

__all__ = [
    "Repository",
    "AlertRepository",
    "InMemoryRuleRepository",
    "InMemoryAlertRepository",
    "SERVICE_UP_METRIC",
    "OPERATORS",
    "evaluate_condition",
    "RuleInstance",
    "resolve_instances",
    "SYSTEM_ACTOR",
    "AlertEngine",
    "AlertCallback",
    "parse_period",
]
