"""Executor component - runs Intent Specs against a browser."""
from .control import RunControl, RUN_TIMEOUT
from .browser import BrowserPrimitives, PlaywrightBrowser, translate_error
from .snippet import PRIMITIVES, PrimitiveCall, SnippetParser, SnippetExecutor
from .reasoning import ReasoningEngine, LLMReasoningEngine, SemanticExecutor
from .step_executor import DualPathStepExecutor
from .orchestrator import (
    ExecutionOrchestrator,
    ExecutionStarted,
    StepStarted,
    FallbackStarted,
    FallbackCompleted,
    StepCompleted,
    ExecutionCompleted,
)

__all__ = [
    "RunControl",
    "RUN_TIMEOUT",
    "BrowserPrimitives",
    "PlaywrightBrowser",
    "translate_error",
    "PRIMITIVES",
    "PrimitiveCall",
    "SnippetParser",
    "SnippetExecutor",
    "ReasoningEngine",
    "LLMReasoningEngine",
    "SemanticExecutor",
    "DualPathStepExecutor",
    # Orchestration
    "ExecutionOrchestrator",
    "ExecutionStarted",
    "StepStarted",
    "FallbackStarted",
    "FallbackCompleted",
    "StepCompleted",
    "ExecutionCompleted",
]
