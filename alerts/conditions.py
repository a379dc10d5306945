"""Threshold condition evaluation."""
import logging

from models.enums import OPERATOR_ALIASES, Operator
from utils.errors import ConfigurationError

logger = logging.getLogger("opsmonitor.alerts.conditions")

OPERATOR_MAP = {
    Operator.GT: lambda v, t: v > t,
    Operator.LT: lambda v, t: v < t,
    Operator.EQ: lambda v, t: v == t,
    Operator.GTE: lambda v, t: v >= t,
    Operator.LTE: lambda v, t: v <= t,
    Operator.NE: lambda v, t: v != t,
}


def parse_operator(raw):
    """Accept ``gt``/``>``/``≥`` style spellings; raise on anything else."""
    if isinstance(raw, Operator):
        return raw
    text = str(raw).strip() if raw is not None else ""
    if text in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[text]
    try:
        return Operator(text.lower())
    except ValueError:
        raise ConfigurationError(f"Unknown comparison operator: {raw!r}")


def evaluate(condition, current_value, epsilon=None):
    """Return True when ``current_value`` satisfies ``condition``.

    Equality is exact unless ``epsilon`` is given, in which case ``eq``/``ne``
    compare ``abs(value - threshold)`` against it. A missing value never
    satisfies a condition.
    """
    operator = parse_operator(condition.operator)
    if current_value is None:
        return False

    value = float(current_value)
    threshold = float(condition.threshold)

    if epsilon is not None and operator in (Operator.EQ, Operator.NE):
        close = abs(value - threshold) <= epsilon
        return close if operator == Operator.EQ else not close

    return OPERATOR_MAP[operator](value, threshold)


class ConditionEvaluator:
    """Stateless evaluator with an optional default epsilon for equality."""

    def __init__(self, epsilon=None):
        self.epsilon = epsilon

    def evaluate(self, condition, current_value, epsilon=None):
        return evaluate(condition, current_value, self.epsilon if epsilon is None else epsilon)

    def validate(self, condition):
        """Reject a condition before it is registered."""
        condition.operator = parse_operator(condition.operator)
        if condition.evaluation_interval is None or condition.evaluation_interval <= 0:
            raise ConfigurationError(
                f"evaluation_interval must be > 0 (got {condition.evaluation_interval})"
            )
        if condition.time_window is None or condition.time_window <= 0:
            raise ConfigurationError(f"time_window must be > 0 (got {condition.time_window})")
        try:
            condition.threshold = float(condition.threshold)
        except (TypeError, ValueError):
            raise ConfigurationError(f"threshold must be numeric (got {condition.threshold!r})")
        return condition
