"""Error analysis and learned recovery solutions."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Literal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import uuid


class ErrorCategory(str, Enum):
    """Kinds of step failure, used to pick recovery strategies."""
    TIMEOUT = "timeout"
    ELEMENT_NOT_FOUND = "element_not_found"
    NETWORK_ERROR = "network_error"
    INTERACTION_BLOCKED = "interaction_blocked"
    NAVIGATION_FAILED = "navigation_failed"
    JAVASCRIPT_ERROR = "javascript_error"
    VALIDATION_ERROR = "validation_error"
    PERMISSION_DENIED = "permission_denied"
    PAGE_LOAD_ERROR = "page_load_error"
    STALE_ELEMENT = "stale_element"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorAnalysis:
    """Categorizer output. Derived per failure, never persisted."""
    category: ErrorCategory
    confidence: float
    message: str
    is_known_issue: bool = False
    pattern_id: Optional[str] = None
    suggested_strategies: List[str] = field(default_factory=list)


RiskLevel = Literal["low", "medium", "high"]
SolutionSource = Literal["ai", "built_in", "imported"]


class ErrorFingerprint(BaseModel):
    """Normalized signature of a failure, used as the library lookup key."""

    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    selector_signature: str = ""
    url_signature: str = ""

    @property
    def key(self) -> str:
        return f"{self.category.value}|{self.selector_signature}|{self.url_signature}"


class SolutionUsage(BaseModel):
    """Outcome counters for a stored solution."""
    success_count: int = 0
    failure_count: int = 0
    last_used: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Solution(BaseModel):
    """A recovery fix for a fingerprint: executable code plus its scoring."""

    id: str = Field(default_factory=lambda: f"sol_{uuid.uuid4().hex[:12]}")
    fingerprint: ErrorFingerprint
    strategy: str
    code: str
    confidence: float = Field(ge=0.0, le=1.0)
    estimated_success_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    risk_level: RiskLevel = "medium"
    explanation: str = ""
    usage: SolutionUsage = Field(default_factory=SolutionUsage)
    created_at: datetime = Field(default_factory=_now)
    source: SolutionSource = "ai"

    @property
    def success_rate(self) -> float:
        """Observed success rate, or the estimate until the solution has been used."""
        if self.usage.total == 0:
            return self.estimated_success_rate
        return self.usage.success_count / self.usage.total


@dataclass(frozen=True)
class RankedSolution:
    """A library hit with its similarity score in [0, 1]."""
    solution: Solution
    similarity: float
    exact: bool = False
