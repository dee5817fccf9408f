"""Comparison of a queried value against an expected threshold."""

from __future__ import annotations

import logging
import operator
from dataclasses import dataclass

log = logging.getLogger(__name__)

_OPERATORS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass
class EvalCondition:
    operator: str = ""
    query_value: float = 0.0
    expected_value: float = 0.0
    type: str = ""


def eval_condition(condition: EvalCondition) -> bool:
    """Return True when the query value satisfies the condition."""
    compare = _OPERATORS.get(condition.operator)
    if compare is None:
        log.error(
            "invalid evaluation condition: type=%s operator=%s expected=%s",
            condition.type,
            condition.operator,
            condition.expected_value,
        )
        return False
    return bool(compare(condition.query_value, condition.expected_value))