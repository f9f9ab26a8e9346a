"""Failure categorization, learned solutions and the hybrid recovery pipeline."""
from intentflow.recovery.categorizer import ErrorCategorizer, ErrorPattern, KNOWN_PATTERNS
from intentflow.recovery.context import RecoveryContext
from intentflow.recovery.solution_library import (
    InMemorySolutionStore,
    SolutionLibrary,
    SolutionStore,
    SQLiteSolutionStore,
    fingerprint_for,
)
from intentflow.recovery.strategies import (
    NOT_APPLICABLE,
    BuiltInStrategies,
    RecoveryAttemptResult,
    RecoveryStatistics,
)
from intentflow.recovery.sandbox import SolutionSandbox
from intentflow.recovery.synthesizer import AISolutionSynthesizer, EscalationDecision
from intentflow.recovery.hybrid import Exhausted, HybridErrorRecovery, Recovered

__all__ = [
    "ErrorCategorizer",
    "ErrorPattern",
    "KNOWN_PATTERNS",
    "RecoveryContext",
    "SolutionLibrary",
    "SolutionStore",
    "InMemorySolutionStore",
    "SQLiteSolutionStore",
    "fingerprint_for",
    "BuiltInStrategies",
    "RecoveryAttemptResult",
    "RecoveryStatistics",
    "NOT_APPLICABLE",
    "SolutionSandbox",
    "AISolutionSynthesizer",
    "EscalationDecision",
    "HybridErrorRecovery",
    "Recovered",
    "Exhausted",
]
