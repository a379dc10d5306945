"""Small predicate language used by suppression and escalation conditions.

A predicate is one or more clauses joined by ``AND``::

    maintenance_mode = true
    severity = critical AND duration > 15min

Each clause is ``<name> <op> <value>`` with ops ``= == != > < >= <=``.
Values are compared as durations (``15min``, ``1h``), numbers, booleans or
plain strings, in that order of preference. An empty predicate is always
true. Names missing from the context make the clause false.
"""
import re

from utils.errors import ConfigurationError
from utils.formatters import parse_duration

_CLAUSE_RE = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*(==|!=|>=|<=|=|>|<)\s*(.+?)\s*$")
_AND_RE = re.compile(r"\s+AND\s+", re.IGNORECASE)

_COMPARE = {
    "=": lambda a, b: a == b,
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">": lambda a, b: a > b,
    "<": lambda a, b: a < b,
    ">=": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
}


def _coerce(raw):
    text = str(raw).strip().strip('"').strip("'")
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return parse_duration(text)
    except ValueError:
        return lowered


def parse_predicate(text):
    """Parse into a list of (name, op, value) clauses or raise ConfigurationError."""
    if text is None:
        return []
    if not isinstance(text, str):
        raise ConfigurationError(f"Condition must be text (got {text!r})")
    text = text.strip()
    if not text:
        return []
    clauses = []
    for part in _AND_RE.split(text):
        match = _CLAUSE_RE.match(part)
        if not match:
            raise ConfigurationError(f"Malformed condition clause: {part!r}")
        name, op, value = match.groups()
        clauses.append((name, op, _coerce(value)))
    return clauses


def evaluate_predicate(clauses, context):
    """Evaluate parsed clauses against a dict of facts."""
    if isinstance(clauses, str):
        clauses = parse_predicate(clauses)
    for name, op, expected in clauses:
        if name not in context:
            return False
        actual = context[name]
        if hasattr(actual, "value"):
            actual = actual.value
        if isinstance(actual, str):
            actual = actual.lower()
        elif isinstance(expected, str):
            actual = str(actual).lower()
        try:
            if not _COMPARE[op](actual, expected):
                return False
        except TypeError:
            return False
    return True
