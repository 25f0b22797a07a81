from notification_triage.engine.errors import (
    DependencyTimeout,
    DependencyUnavailable,
    InvariantViolation,
    RuleConfigError,
    TriageError,
    ValidationError,
)
from notification_triage.engine.models import Decision, NotificationEvent, Stage, Verdict
from notification_triage.engine.orchestrator import DecisionOrchestrator, build_orchestrator
from notification_triage.engine.validation import validate_event

__all__ = [
    "Decision",
    "DecisionOrchestrator",
    "DependencyTimeout",
    "DependencyUnavailable",
    "InvariantViolation",
    "NotificationEvent",
    "RuleConfigError",
    "Stage",
    "TriageError",
    "ValidationError",
    "Verdict",
    "build_orchestrator",
    "validate_event",
]
