from .intent_spec import (
    ExecutionPath,
    FallbackPath,
    IntentStep,
    IntentSpec,
    PathPreferences,
    SpecValidationResult,
    validate_spec,
)
from .execution_report import (
    RecoveryStatus,
    StepExecutionResult,
    ExecutionReport,
    ReportBuilder,
)
from .solution import (
    ErrorCategory,
    ErrorAnalysis,
    ErrorFingerprint,
    SolutionUsage,
    Solution,
    RankedSolution,
)

__all__ = [
    # Intent Spec
    "ExecutionPath",
    "FallbackPath",
    "IntentStep",
    "IntentSpec",
    "PathPreferences",
    "SpecValidationResult",
    "validate_spec",
    # Results
    "RecoveryStatus",
    "StepExecutionResult",
    "ExecutionReport",
    "ReportBuilder",
    # Recovery
    "ErrorCategory",
    "ErrorAnalysis",
    "ErrorFingerprint",
    "SolutionUsage",
    "Solution",
    "RankedSolution",
]
