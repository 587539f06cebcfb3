"""
Alert Rules - Conditions and Value Resolution.

============================================================
PURPOSE
============================================================
Deterministic threshold checks for alert rules.

PRINCIPLES:
- Numeric comparison only, no coercion of text
- A value that cannot be read is "unavailable", never zero
- One rule may split into several instances along its
  fingerprint labels (e.g. one per service)

============================================================
"""

import logging
import operator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..models import AlertRule, Operator, parse_enum, to_number

if TYPE_CHECKING:
    from ..health.poller import HealthPoller
    from ..metrics.aggregator import MetricsAggregator


logger = logging.getLogger(__name__)


SERVICE_UP_METRIC = "service_up"


# ============================================================
# OPERATORS
# ============================================================

OPERATORS: Dict[Operator, Callable[[float, float], bool]] = {
    Operator.GT: operator.gt,
    Operator.LT: operator.lt,
    Operator.GTE: operator.ge,
    Operator.LTE: operator.le,
    Operator.EQ: operator.eq,
    Operator.NEQ: operator.ne,
}


def evaluate_condition(value: Any, op: Any, threshold: Any) -> bool:
    """
    Compare value against threshold.

    Raises:
        ValidationError: non-numeric value/threshold or unknown operator
    """
    op = parse_enum(Operator, op, "operator")
    return OPERATORS[op](to_number(value, "value"), to_number(threshold, "threshold"))


# ============================================================
# RULE INSTANCES
# ============================================================

@dataclass
class RuleInstance:
    """One evaluable instance of a rule."""

    rule: AlertRule
    labels: Dict[str, str] = field(default_factory=dict)
    value: Optional[float] = None

    @property
    def fingerprint(self) -> str:
        return self.rule.fingerprint(self.labels)

    @property
    def holds(self) -> bool:
        cond = self.rule.condition
        return evaluate_condition(self.value, cond.operator, cond.threshold)


def resolve_instances(
    rule: AlertRule,
    aggregator: Optional["MetricsAggregator"],
    poller: Optional["HealthPoller"] = None,
) -> List[RuleInstance]:
    """
    Read the current value(s) of a rule.

    service_up rules read the poller's latest results; all other
    metrics come from the aggregator. Instances whose value is
    unavailable are left out.
    """
    if rule.metric_name == SERVICE_UP_METRIC and poller is not None:
        return _service_up_instances(rule, poller)

    if aggregator is None:
        return []

    if not rule.fingerprint_labels:
        value = aggregator.get_value(rule.metric_name, rule.labels)
        return [RuleInstance(rule, dict(rule.labels), value)] if value is not None else []

    instances = []
    seen = set()
    for series in aggregator.get_series(rule.metric_name, rule.labels):
        scoped = {name: series.labels.get(name, "") for name in rule.fingerprint_labels}
        key = tuple(sorted(scoped.items()))
        if key in seen:
            continue
        seen.add(key)

        value = aggregator.get_value(rule.metric_name, {**rule.labels, **scoped})
        if value is not None:
            instances.append(RuleInstance(rule, {**rule.labels, **scoped}, value))

    return instances


def _service_up_instances(rule: AlertRule, poller: "HealthPoller") -> List[RuleInstance]:
    values = poller.service_values()

    wanted = rule.labels.get("service")
    if wanted is not None:
        values = {name: v for name, v in values.items() if name == wanted}

    if not values:
        return []

    if "service" in rule.fingerprint_labels:
        return [
            RuleInstance(rule, {**rule.labels, "service": name}, value)
            for name, value in sorted(values.items())
        ]

    # Unscoped: up only if every service is up
    return [RuleInstance(rule, dict(rule.labels), min(values.values()))]


__all__ = [
    "SERVICE_UP_METRIC",
    "OPERATORS",
    "evaluate_condition",
    "RuleInstance",
    "resolve_instances",
]
