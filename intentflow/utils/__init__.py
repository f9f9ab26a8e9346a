"""Shared utilities."""
from .config import config, Config
from .logger import setup_logger, StepLogger
from .safety_guard import safety_guard, SafetyGuard, SafetyCheck, DangerLevel
from .audit_log import audit_log, AuditLog, AuditEntry, SandboxRecord, ExecutionSummary
from .rate_limiter import rate_limiters, RateLimiter, RateLimiterManager

__all__ = [
    "config",
    "Config",
    "setup_logger",
    "StepLogger",
    # Safety
    "safety_guard",
    "SafetyGuard",
    "SafetyCheck",
    "DangerLevel",
    # Audit
    "audit_log",
    "AuditLog",
    "AuditEntry",
    "SandboxRecord",
    "ExecutionSummary",
    # Rate Limiting
    "rate_limiters",
    "RateLimiter",
    "RateLimiterManager",
]
