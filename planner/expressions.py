"""Precondition expressions for resgraph.

A precondition gates whether a node is materialized at all. It can be given
as a Precondition object, a callable, or a string in a small expression
language:

    access_point_id != null
    ref.efs.access_point_id != null
    mode == "fargate"
    enable_lb == true
    !skip_listener
    enable_lb
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from planner.exceptions import PreconditionEvaluationError
from planner.model import ABSENT, UNKNOWN, Node, Reference

# Subject: plain attribute name or ref.<node id>.<attribute>
_SUBJECT = r"(?:ref\.[A-Za-z0-9_\-\.]+\.[A-Za-z0-9_\-]+|[A-Za-z_][A-Za-z0-9_\-]*)"
_COMPARISON = re.compile(rf"^\s*({_SUBJECT})\s*(==|!=)\s*(.+?)\s*$")
_TRUTHY = re.compile(rf"^\s*(!?)\s*({_SUBJECT})\s*$")

OPERATORS = ("present", "absent", "equals", "not_equals", "truthy", "falsy")

# (subject) -> current value, ABSENT or UNKNOWN
Lookup = Callable[[Union[str, Reference]], Any]


@dataclass(frozen=True)
class Precondition:
    """Structured predicate over one attribute value.

    Args:
        subject: Attribute name on the node itself, or a Reference
        operator: One of OPERATORS
        value: Comparison operand for equals/not_equals
    """

    subject: Union[str, Reference]
    operator: str = "present"
    value: Any = None

    def __post_init__(self):
        if self.operator not in OPERATORS:
            raise PreconditionEvaluationError(
                f"Unknown precondition operator '{self.operator}'",
                context={"subject": str(self.subject)},
            )

    def __str__(self) -> str:
        subject = (
            f"ref.{self.subject.to_node_id}.{self.subject.to_attribute_name}"
            if isinstance(self.subject, Reference)
            else self.subject
        )
        if self.operator == "present":
            return f"{subject} != null"
        if self.operator == "absent":
            return f"{subject} == null"
        if self.operator == "equals":
            return f"{subject} == {json.dumps(self.value)}"
        if self.operator == "not_equals":
            return f"{subject} != {json.dumps(self.value)}"
        if self.operator == "falsy":
            return f"!{subject}"
        return str(subject)


def _parse_subject(text: str) -> Union[str, Reference]:
    if text.startswith("ref."):
        node_id, attribute = text[len("ref.") :].rsplit(".", 1)
        return Reference(node_id, attribute)
    return text


def _parse_literal(text: str, expression: str) -> Any:
    if text == "null":
        return None
    try:
        return json.loads(text)
    except ValueError as e:
        raise PreconditionEvaluationError(
            f"Cannot parse operand '{text}' in precondition '{expression}'",
            context={"expression": expression},
        ) from e


def parse_expression(expression: str) -> Precondition:
    """Parse a precondition string into a Precondition.

    Raises:
        PreconditionEvaluationError: If the string is not a valid expression
    """
    match = _COMPARISON.match(expression)
    if match:
        subject = _parse_subject(match.group(1))
        operand = _parse_literal(match.group(3), expression)
        if operand is None:
            operator = "present" if match.group(2) == "!=" else "absent"
            return Precondition(subject, operator)
        operator = "equals" if match.group(2) == "==" else "not_equals"
        return Precondition(subject, operator, operand)

    match = _TRUTHY.match(expression)
    if match:
        operator = "falsy" if match.group(1) else "truthy"
        return Precondition(_parse_subject(match.group(2)), operator)

    raise PreconditionEvaluationError(
        f"Malformed precondition '{expression}'",
        context={"expression": expression},
    )


def _is_missing(value: Any) -> bool:
    return value is None or value is ABSENT


def evaluate_precondition(precondition: Precondition, lookup: Lookup) -> bool:
    """Evaluate a structured precondition.

    Presence tests treat UNKNOWN (known after apply) as present; equality
    tests against UNKNOWN cannot be decided before apply.
    """
    value = lookup(precondition.subject)
    operator = precondition.operator
    if operator == "present":
        return not _is_missing(value)
    if operator == "absent":
        return _is_missing(value)
    if value is UNKNOWN:
        raise PreconditionEvaluationError(
            f"Precondition '{precondition}' depends on a value only known after apply",
            context={"expression": str(precondition)},
        )
    if operator == "equals":
        return value == precondition.value
    if operator == "not_equals":
        return value != precondition.value
    if operator == "falsy":
        return _is_missing(value) or not value
    return not _is_missing(value) and bool(value)


def evaluate(node: Node, precondition: Any, lookup: Lookup) -> bool:
    """Evaluate any supported precondition form for node.

    Raises:
        PreconditionEvaluationError: On malformed input or a callable that
            raises or returns a non-bool
    """
    if isinstance(precondition, (str, Precondition)):
        try:
            if isinstance(precondition, str):
                precondition = parse_expression(precondition)
            return evaluate_precondition(precondition, lookup)
        except PreconditionEvaluationError as error:
            error.context.setdefault("node_id", node.id)
            raise
    if callable(precondition):
        try:
            result = precondition(node, lookup)
        except Exception as e:
            raise PreconditionEvaluationError(
                f"Precondition callable failed on node '{node.id}': {e}",
                context={"node_id": node.id},
            ) from e
        if not isinstance(result, bool):
            raise PreconditionEvaluationError(
                f"Precondition callable returned {type(result).__name__}, expected bool",
                context={"node_id": node.id},
            )
        return result
    raise PreconditionEvaluationError(
        f"Unsupported precondition type {type(precondition).__name__}",
        context={"node_id": node.id},
    )


def describe(precondition: Any) -> Optional[str]:
    """Readable form of a precondition for logs."""
    if callable(precondition) and not isinstance(precondition, Precondition):
        return getattr(precondition, "__name__", repr(precondition))
    return str(precondition)
