"""
Condition evaluation for the Automation engine.

Evaluation is pure: the same conditions over the same context always give
the same answer, so live runs and simulations agree.
"""

import logging
from collections.abc import Mapping
from typing import Any, List, Optional, Sequence, Tuple

from .errors import EvaluationError
from .models import Condition, ConditionLogic, ConditionResult, Operator

logger = logging.getLogger(__name__)

_MISSING = object()


def as_number(value: Any) -> Optional[float]:
    """Return value as a float if it parses as a number, else None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def compare(actual: Any, operator: Operator, expected: Any) -> bool:
    """
    Compare two operands, numerically when both parse as numbers.

    Non-numeric operands support only eq/neq (string comparison); ordering
    operators on them evaluate False.

    Raises:
        EvaluationError: If either operand is a mapping or sequence
    """
    for operand in (actual, expected):
        if isinstance(operand, (Mapping, list, tuple, set)):
            raise EvaluationError(
                f"Cannot compare {type(operand).__name__} with {operator.value}",
                {"operator": operator.value},
            )

    left = as_number(actual)
    right = as_number(expected)

    if left is not None and right is not None:
        if operator == Operator.GT:
            return left > right
        elif operator == Operator.GTE:
            return left >= right
        elif operator == Operator.LT:
            return left < right
        elif operator == Operator.LTE:
            return left <= right
        elif operator == Operator.EQ:
            return left == right
        return left != right

    if operator == Operator.EQ:
        return str(actual) == str(expected)
    if operator == Operator.NEQ:
        return str(actual) != str(expected)
    return False


def resolve_field(context: Mapping, path: str) -> Any:
    """
    Look up a field in the context.

    Tries the flat key first ("equipment.5.temperature"), then walks the
    dotted path through nested mappings. Returns a sentinel when missing.
    """
    if path in context:
        return context[path]

    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


class ConditionEvaluator:
    """
    Evaluates condition lists against a runtime context.

    Holds no state; one instance is shared by live and simulated runs.
    """

    def check(self, condition: Condition, context: Mapping) -> Tuple[bool, Any, str]:
        """
        Evaluate one condition.

        Returns:
            (passed, actual_value, detail) where detail explains the outcome
        """
        actual = resolve_field(context, condition.field)
        if actual is _MISSING:
            logger.warning(f"Condition field not found in context: {condition.field}")
            return False, None, "field not found"

        try:
            passed = compare(actual, condition.operator, condition.value)
        except EvaluationError as e:
            logger.warning(f"Condition on {condition.field} treated as false: {e}")
            return False, None, str(e)

        expression = f"{actual} {condition.operator.value} {condition.value}"
        return passed, actual, f"{'PASS' if passed else 'FAIL'} ({expression})"

    def evaluate(
        self,
        conditions: Sequence[Condition],
        context: Mapping,
        logic: ConditionLogic = ConditionLogic.AND,
    ) -> bool:
        """
        Evaluate conditions combined with AND/OR logic.

        Args:
            conditions: Conditions to evaluate
            context: Runtime context
            logic: AND = all must pass, OR = at least one must pass

        Returns:
            True if the combined result passes (always True with no conditions)
        """
        passed, _ = self.explain(conditions, context, logic)
        return passed

    def explain(
        self,
        conditions: Sequence[Condition],
        context: Mapping,
        logic: ConditionLogic = ConditionLogic.AND,
    ) -> Tuple[bool, List[ConditionResult]]:
        """
        Evaluate every condition and report each result.

        Unlike evaluate(), never short-circuits, so reports list all conditions.

        Returns:
            (combined_result, per-condition results)
        """
        results: List[ConditionResult] = []
        for index, condition in enumerate(conditions, start=1):
            passed, actual, detail = self.check(condition, context)
            logger.debug(f"Condition {index} ({condition.field}): {detail}")
            results.append(
                ConditionResult(
                    index=index,
                    field=condition.field,
                    operator=condition.operator.value,
                    expected_value=condition.value,
                    would_pass=passed,
                    test_result=detail,
                    actual_value=actual,
                )
            )

        if not results:
            return True, results
        if logic == ConditionLogic.OR:
            return any(r.would_pass for r in results), results
        return all(r.would_pass for r in results), results


def describe_failure(results: Sequence[ConditionResult], logic: ConditionLogic) -> str:
    """Explain which side of the AND/OR gate stopped a run."""
    failed = [r for r in results if not r.would_pass]
    if logic == ConditionLogic.OR:
        return f"Conditions not met (OR: none of {len(results)} condition(s) passed)"

    first = failed[0]
    return (
        f"Conditions not met (AND: condition {first.index} "
        f"'{first.field} {first.operator} {first.expected_value}' failed"
        + (f", {len(failed) - 1} more failed)" if len(failed) > 1 else ")")
    )
