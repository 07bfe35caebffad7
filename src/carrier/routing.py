"""
Task routing - choose the next task from a finished task's outcome.

Route conditions are either keywords or comparison expressions:

- ``success`` / ``failure`` (alias ``failed``) / ``approved`` / ``always``
  (an empty condition means ``always``)
- ``${task.status} == 'complete'``, ``'LGTM' in ${task.output}``,
  ``${task.exit_code} != 0``, ``${env.DEPLOY_ENV} == 'staging'``
"""

from __future__ import annotations

import logging
import operator
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from carrier.exceptions import ValidationError
from carrier.models import Status, Task, TaskRoute

logger = logging.getLogger(__name__)

# Route target that ends the fleet successfully.
COMPLETE_ROUTE = "complete"


@dataclass
class RouteContext:
    """Outcome of a finished task, as seen by route conditions."""

    status: Status
    output: str = ""
    exit_code: int | None = None
    approved: bool = False
    env: Mapping[str, str] = field(default_factory=lambda: os.environ)

    def resolve(self, ref_type: str, ref_path: str) -> Any:
        if ref_type == "env":
            return self.env.get(ref_path, "")
        if ref_path == "status":
            return self.status.value
        if ref_path == "output":
            return self.output
        if ref_path == "exit_code":
            return self.exit_code
        if ref_path == "approved":
            return self.approved
        raise ValueError(f"Unknown task field: {ref_path}")


_KEYWORDS = {
    "success": lambda ctx: ctx.status == Status.COMPLETE,
    "failure": lambda ctx: ctx.status == Status.FAILED,
    "failed": lambda ctx: ctx.status == Status.FAILED,
    "approved": lambda ctx: ctx.approved,
    "always": lambda ctx: True,
    "true": lambda ctx: True,
    "never": lambda ctx: False,
    "false": lambda ctx: False,
}

# Reference pattern: ${task.field} or ${env.VAR}
_REF_PATTERN = re.compile(r"\$\{(task|env)\.([^}]+)\}")

# Longest operators first so "<=" is never split as "<".
_OPERATORS = [
    (" not in ", lambda a, b: str(a) not in str(b)),
    (" in ", lambda a, b: str(a) in str(b)),
    ("==", operator.eq),
    ("!=", operator.ne),
    ("<=", operator.le),
    (">=", operator.ge),
    ("<", operator.lt),
    (">", operator.gt),
]
_ORDERING = {"<=", ">=", "<", ">"}


def _parse_value(val_str: str) -> Any:
    """Parse a literal into the appropriate type."""
    val_str = val_str.strip()

    # Quoted string
    if len(val_str) >= 2 and val_str[0] == val_str[-1] and val_str[0] in ("'", '"'):
        return val_str[1:-1]

    if val_str.lower() == "true":
        return True
    if val_str.lower() == "false":
        return False
    if val_str.lower() in ("none", "null"):
        return None

    try:
        if "." in val_str:
            return float(val_str)
        return int(val_str)
    except ValueError:
        pass

    return val_str


def _operand(text: str, context: RouteContext) -> Any:
    text = text.strip()
    match = _REF_PATTERN.fullmatch(text)
    if match:
        return context.resolve(match.group(1), match.group(2))
    if _REF_PATTERN.search(text):
        # References embedded in a larger literal are interpolated as text.
        return _REF_PATTERN.sub(lambda m: str(context.resolve(m.group(1), m.group(2))), text)
    return _parse_value(text)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except (TypeError, ValueError):
        return None


def _compare(op_str: str, op_func: Any, left: Any, right: Any) -> bool:
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None and op_str.strip() not in ("in", "not in"):
        return bool(op_func(left_num, right_num))
    if op_str in _ORDERING:
        raise ValueError(f"Cannot order non-numeric values {left!r} and {right!r}")
    if op_str in ("==", "!="):
        left = "" if left is None else left
        right = "" if right is None else right
        return bool(op_func(str(left), str(right)))
    return bool(op_func(left, right))


def _split_operator(expr: str) -> tuple[str, str, Any, str] | None:
    """Split at the first operator outside quotes and ``${...}`` references."""
    quote: str | None = None
    i = 0
    while i < len(expr):
        ch = expr[i]
        if quote:
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            i += 1
            continue
        if expr.startswith("${", i):
            end = expr.find("}", i)
            i = end + 1 if end >= 0 else len(expr)
            continue
        for op_str, op_func in _OPERATORS:
            if expr.startswith(op_str, i):
                return expr[:i], op_str, op_func, expr[i + len(op_str):]
        i += 1
    return None


def evaluate_condition(condition: str | None, context: RouteContext) -> bool:
    """Evaluate one route condition. Raises ValueError on malformed expressions."""
    expr = (condition or "").strip()
    if not expr:
        return True
    keyword = _KEYWORDS.get(expr.lower())
    if keyword is not None:
        return keyword(context)

    split = _split_operator(expr)
    if split is not None:
        left_text, op_str, op_func, right_text = split
        left = _operand(left_text, context)
        right = _operand(right_text, context)
        return _compare(op_str, op_func, left, right)

    if not _REF_PATTERN.search(expr):
        raise ValueError(f"Unknown route condition: {expr}")
    value = _operand(expr, context)
    return bool(value) and value not in ("0", "false", "False")


def select_route(task: Task, context: RouteContext) -> TaskRoute | None:
    """First route of ``task`` whose condition holds, or None.

    Routes whose condition cannot be evaluated are skipped with a warning.
    """
    for route in task.next_tasks:
        try:
            if evaluate_condition(route.condition, context):
                return route
        except ValueError as e:
            logger.warning(
                "Skipping route %s -> %s: condition %r failed: %s",
                task.id,
                route.task_id,
                route.condition,
                e,
            )
    return None


def is_complete_route(route: TaskRoute) -> bool:
    return route.task_id == COMPLETE_ROUTE


def validate_routes(tasks: list[Task]) -> None:
    """Check every route target names a task of the fleet or ``complete``."""
    ids = {task.id for task in tasks}
    for task in tasks:
        for route in task.next_tasks:
            if route.task_id != COMPLETE_ROUTE and route.task_id not in ids:
                raise ValidationError(
                    f"Task {task.id} routes to unknown task {route.task_id}",
                    field_name="nextTasks",
                    value=route.task_id,
                )
