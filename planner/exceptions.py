"""Custom exception types for resgraph.

This module defines the exception hierarchy for planning and apply errors,
so callers can tell exactly which node failed and why.

Exception Hierarchy:
    ResGraphError (base)
    ├── DuplicateIdError - Node id declared twice
    ├── DanglingReferenceError - Reference to an undeclared node
    ├── SelfReferenceError - Node referencing its own id
    ├── UnresolvableCycleError - Cycle left after splitting
    ├── SchedulerInternalError - Scheduler found a cycle (logic defect)
    ├── PreconditionEvaluationError - Malformed or undecidable predicate
    ├── BackendApplyError - Backend failed to apply/destroy a node
    ├── StateTransitionError - Illegal node lifecycle transition
    ├── DeclarationParsingError - Declaration file parsing failures
    └── ConfigurationError - Invalid resgraph.yml settings
"""

from typing import Any, Dict, Optional


class ResGraphError(Exception):
    """Base exception for all resgraph-specific errors.

    Attributes:
        message: Human-readable error description
        context: Additional contextual information (e.g., node ids, file paths)
    """

    kind = "ResGraphError"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        """Initialize ResGraphError.

        Args:
            message: Human-readable error description
            context: Optional dict with additional context (node ids, paths, etc.)
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    @property
    def node_id(self) -> Optional[str]:
        """Id of the node the error is about, if any."""
        return self.context.get("node_id")

    def __str__(self) -> str:
        """Return formatted error message with context."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (context: {context_str})"
        return self.message


class DuplicateIdError(ResGraphError):
    """Raised when a node id is declared more than once in a planning run."""

    kind = "DuplicateId"


class DanglingReferenceError(ResGraphError):
    """Raised when a reference targets a node that was never declared.

    References carrying a default are exempt: they resolve to the default.
    """

    kind = "DanglingReference"


class SelfReferenceError(ResGraphError):
    """Raised when a node references one of its own attributes."""

    kind = "SelfReference"


class UnresolvableCycleError(ResGraphError):
    """Raised when a cycle remains among resources after cycle splitting.

    Examples:
        - Three-way mutual reference where only one side is a detachable rule
        - Structural references (no direction) inside a rule-only cycle group
    """

    kind = "UnresolvableCycle"


class SchedulerInternalError(ResGraphError):
    """Raised when the scheduler cannot drain the graph.

    Only reachable if a cyclic graph bypassed the splitter.
    """

    kind = "SchedulerInternalError"


class PreconditionEvaluationError(ResGraphError):
    """Raised when a precondition cannot be evaluated.

    Examples:
        - Unparseable expression string
        - Callable precondition raising or returning a non-bool
        - Equality test against a value only known after apply
    """

    kind = "PreconditionEvaluationError"


class BackendApplyError(ResGraphError):
    """Raised (and collected) when the backend fails to apply or destroy a node."""

    kind = "BackendApplyError"


class StateTransitionError(ResGraphError):
    """Raised on an illegal node lifecycle transition."""

    kind = "StateTransitionError"


class DeclarationParsingError(ResGraphError):
    """Raised when a declaration file cannot be parsed.

    Examples:
        - Invalid HCL2 or YAML syntax
        - Resource block without attributes mapping
        - Malformed ${ref...} string
    """

    kind = "DeclarationParsingError"


class ConfigurationError(ResGraphError):
    """Raised when configuration loading fails."""

    kind = "ConfigurationError"
