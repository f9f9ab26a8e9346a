"""Configuration management for intentflow."""
import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Config:
    """Central configuration for intentflow."""

    # =========================================================================
    # PATHS
    # =========================================================================
    artifacts_dir: Path = field(default_factory=lambda: Path.cwd() / "artifacts")

    @property
    def screenshots_dir(self) -> Path:
        return self.artifacts_dir / "screenshots"

    @property
    def audit_dir(self) -> Path:
        return self.artifacts_dir / "audit_logs"

    @property
    def reports_dir(self) -> Path:
        return self.artifacts_dir / "reports"

    @property
    def solution_db_path(self) -> Path:
        return self.artifacts_dir / "solution-library.sqlite3"

    # =========================================================================
    # BROWSER SETTINGS
    # =========================================================================
    browser_type: str = "chromium"  # chromium, firefox, webkit
    browser_headless: bool = False
    viewport_width: int = 1280
    viewport_height: int = 800
    save_screenshots: bool = True
    dom_summary_chars: int = 4000  # Truncation for reasoning-engine page context

    # =========================================================================
    # OPENAI SETTINGS (reasoning engine)
    # =========================================================================
    openai_api_key: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    llm_model: str = "gpt-4o"
    llm_temperature: float = 0.0
    llm_max_tokens: int = 2000
    llm_timeout: float = 60.0  # Seconds; non-response is a timeout failure

    # =========================================================================
    # TIMEOUTS (milliseconds)
    # =========================================================================
    action_timeout_ms: int = 10000   # Per primitive browser action
    step_timeout_ms: int = 90000     # Per step, including recovery and fallback
    run_timeout_ms: int = 900000     # Per whole run

    # =========================================================================
    # RECOVERY SETTINGS
    # =========================================================================
    max_builtin_strategies: int = 3   # Ceiling on built-in strategies per failure
    retry_ceiling: int = 3            # Retry count at which AI escalation is forced
    escalation_threshold: float = 0.6
    ai_confidence_threshold: float = 0.5  # Below this, synthesized code is not run
    allow_high_risk_solutions: bool = False
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 10000

    # =========================================================================
    # SOLUTION LIBRARY
    # =========================================================================
    library_capacity: int = 1000
    library_max_results: int = 5
    library_min_similarity: float = 0.6

    # =========================================================================
    # RATE LIMITS
    # =========================================================================
    ai_requests_per_minute: int = 10      # AI synthesis, per session
    sandbox_executions_per_minute: int = 30  # Sandboxed code runs, per session

    # =========================================================================
    # EXECUTION POLICY / REPORTING
    # =========================================================================
    halt_on_failure: bool = False
    slow_run_threshold_ms: int = 60000
    high_fallback_rate: float = 30.0  # Percent

    # =========================================================================
    # LOGGING
    # =========================================================================
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    structured_logs: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        """Create config from environment variables."""
        config = cls()

        # Override from environment
        if os.getenv("INTENTFLOW_ARTIFACTS_DIR"):
            config.artifacts_dir = Path(os.getenv("INTENTFLOW_ARTIFACTS_DIR"))

        if os.getenv("INTENTFLOW_LOG_LEVEL"):
            config.log_level = os.getenv("INTENTFLOW_LOG_LEVEL")

        if os.getenv("INTENTFLOW_LOG_FILE"):
            config.log_file = Path(os.getenv("INTENTFLOW_LOG_FILE"))

        if os.getenv("INTENTFLOW_STRUCTURED_LOGS"):
            config.structured_logs = os.getenv("INTENTFLOW_STRUCTURED_LOGS").lower() == "true"

        if os.getenv("INTENTFLOW_LLM_MODEL"):
            config.llm_model = os.getenv("INTENTFLOW_LLM_MODEL")

        if os.getenv("INTENTFLOW_BROWSER_HEADLESS"):
            config.browser_headless = os.getenv("INTENTFLOW_BROWSER_HEADLESS").lower() == "true"

        if os.getenv("INTENTFLOW_RUN_TIMEOUT_MS"):
            config.run_timeout_ms = int(os.getenv("INTENTFLOW_RUN_TIMEOUT_MS"))

        if os.getenv("INTENTFLOW_STEP_TIMEOUT_MS"):
            config.step_timeout_ms = int(os.getenv("INTENTFLOW_STEP_TIMEOUT_MS"))

        if os.getenv("INTENTFLOW_AI_REQUESTS_PER_MINUTE"):
            config.ai_requests_per_minute = int(os.getenv("INTENTFLOW_AI_REQUESTS_PER_MINUTE"))

        return config


# Global config instance
config = Config.from_env()
