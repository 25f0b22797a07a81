"""
Error kinds raised inside the triage core.

Only ValidationError ever reaches a caller of the orchestrator. Dependency
errors are absorbed by the degradation policy, InvariantViolation means the
core itself is broken.
"""

from typing import Optional


class TriageError(Exception):
    """Base class for every error this package raises."""


class ValidationError(TriageError):
    """Malformed event; rejected before it enters the core."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DependencyUnavailable(TriageError):
    """History store, config provider or classifier could not be reached."""

    kind = "unavailable"

    def __init__(self, dependency: str, detail: str = ""):
        suffix = f": {detail}" if detail else ""
        super().__init__(f"{dependency} unavailable{suffix}")
        self.dependency = dependency
        self.detail = detail


class DependencyTimeout(DependencyUnavailable):
    """A bounded call ran past its deadline. Handled exactly like an outage."""

    kind = "timeout"

    def __init__(self, dependency: str, deadline: float):
        super().__init__(dependency, f"no answer within {deadline * 1000:.0f}ms")
        self.deadline = deadline


class RuleConfigError(TriageError):
    """A rule document could not be parsed into RuleSpecs."""

    def __init__(self, message: str, rule: Optional[str] = None):
        prefix = f"rule {rule!r}: " if rule else ""
        super().__init__(prefix + message)
        self.rule = rule


class InvariantViolation(TriageError):
    """The core produced an outcome its own guarantees forbid."""
