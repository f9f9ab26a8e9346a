"""Audit logging for intent spec executions.

Provides a persistent record of every execution and every sandboxed
code run for:
- Debugging failed runs
- Security auditing of AI-synthesized code
- Performance analysis
"""
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict, field
from contextlib import contextmanager
import threading

from intentflow.utils.config import config
from intentflow.utils.logger import setup_logger


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AuditEntry:
    """A single step audit entry."""
    timestamp: str
    execution_id: str
    step_name: str
    step_index: int
    path_used: str
    result: str = "pending"  # pending, success, failed, skipped
    fallback_occurred: bool = False
    recovery: Optional[str] = None
    recovery_source: Optional[str] = None
    duration_ms: int = 0
    error: Optional[str] = None
    error_category: Optional[str] = None


@dataclass
class SandboxRecord:
    """Who ran which candidate code, when, and how it ended."""
    timestamp: str
    session_id: str
    who: str
    what: str
    outcome: str  # success, failed, rejected, rate_limited
    detail: Optional[str] = None


@dataclass
class ExecutionSummary:
    """Summary of one execution."""
    execution_id: str
    spec_name: str
    start_time: str
    end_time: Optional[str] = None
    total_steps: int = 0
    successful_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    fallback_steps: int = 0
    sandbox_runs: int = 0
    total_duration_ms: int = 0
    parameters_used: Dict[str, Any] = field(default_factory=dict)
    final_status: str = "running"  # running, completed, failed, cancelled


class AuditLog:
    """
    Thread-safe audit logger for concurrent executions.

    Each execution gets its own JSONL file keyed by execution id; sandbox
    records for a session without an open execution go to sandbox.jsonl.

    Usage:
        audit = AuditLog()
        audit.start_execution("exec_1", "login_flow", {"USERNAME": "bob"})
        audit.log_step(AuditEntry(...))
        audit.log_sandbox_execution("exec_1", "hybrid-recovery", "page.click('#x')", "success")
        audit.end_execution("exec_1", status="completed")
    """

    SANDBOX_LOG = "sandbox.jsonl"

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Args:
            log_dir: Directory to store audit logs. Defaults to
                    <artifacts>/audit_logs/, created on first write.
        """
        self.logger = setup_logger("AuditLog")
        self.log_dir = Path(log_dir) if log_dir else config.audit_dir

        self._paths: Dict[str, Path] = {}
        self._summaries: Dict[str, ExecutionSummary] = {}
        self._lock = threading.Lock()

    def start_execution(
        self,
        execution_id: str,
        spec_name: str,
        parameters: Dict[str, Any] = None
    ) -> Path:
        """
        Start logging a new execution.

        Returns:
            Path to the log file
        """
        with self._lock:
            start = _utcnow()
            path = self.log_dir / f"{execution_id}.jsonl"
            self._paths[execution_id] = path
            self._summaries[execution_id] = ExecutionSummary(
                execution_id=execution_id,
                spec_name=spec_name,
                start_time=start,
                parameters_used=dict(parameters or {})
            )

            self._write_line(path, {
                "type": "execution_start",
                "execution_id": execution_id,
                "spec_name": spec_name,
                "start_time": start,
                "parameters": parameters or {}
            })

        self.logger.debug(f"Started audit log: {path}")
        return path

    def log_step(self, entry: AuditEntry):
        """Log a finished (or skipped) step."""
        with self._lock:
            path = self._paths.get(entry.execution_id)
            summary = self._summaries.get(entry.execution_id)
            if not path or not summary:
                self.logger.warning(f"No active execution {entry.execution_id} - call start_execution first")
                return

            summary.total_steps += 1
            if entry.result == "success":
                summary.successful_steps += 1
            elif entry.result == "failed":
                summary.failed_steps += 1
            elif entry.result == "skipped":
                summary.skipped_steps += 1
            if entry.fallback_occurred:
                summary.fallback_steps += 1
            summary.total_duration_ms += entry.duration_ms

            self._write_line(path, {"type": "step", **asdict(entry)})

    def log_sandbox_execution(
        self,
        session_id: str,
        who: str,
        what: str,
        outcome: str,
        detail: Optional[str] = None
    ) -> SandboxRecord:
        """
        Record a sandboxed code run. Always written, whatever the outcome.

        Args:
            session_id: Execution/session the code ran in
            who: Component that requested the run
            what: The code that was (or would have been) run
            outcome: success, failed, rejected or rate_limited
            detail: Error or rejection reason
        """
        record = SandboxRecord(
            timestamp=_utcnow(),
            session_id=session_id,
            who=who,
            what=what,
            outcome=outcome,
            detail=detail
        )
        with self._lock:
            path = self._paths.get(session_id) or self.log_dir / self.SANDBOX_LOG
            summary = self._summaries.get(session_id)
            if summary:
                summary.sandbox_runs += 1
            self._write_line(path, {"type": "sandbox", **asdict(record)})
        return record

    def end_execution(self, execution_id: str, status: str, error: Optional[str] = None):
        """
        End logging for an execution.

        Args:
            execution_id: Execution to close
            status: completed, failed or cancelled
            error: Error message if any
        """
        with self._lock:
            path = self._paths.pop(execution_id, None)
            summary = self._summaries.pop(execution_id, None)
            if not path or not summary:
                self.logger.warning(f"No active execution {execution_id} to end")
                return

            summary.end_time = _utcnow()
            summary.final_status = status
            self._write_line(path, {"type": "execution_end", **asdict(summary), "error": error})

        self.logger.debug(
            f"Ended audit log {execution_id}: {summary.final_status} "
            f"({summary.successful_steps}/{summary.total_steps} steps)"
        )

    def _write_line(self, path: Path, data: Dict[str, Any]):
        """Append one JSON line. Caller holds the lock."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'a', encoding='utf-8') as f:
                f.write(json.dumps(data, default=str) + '\n')
        except OSError as e:
            self.logger.error(f"Failed to write audit log: {e}")

    def get_recent_logs(self, limit: int = 10) -> List[Path]:
        """Paths to recent audit logs, newest first."""
        if not self.log_dir.exists():
            return []
        logs = sorted(
            self.log_dir.glob("*.jsonl"),
            key=lambda p: p.stat().st_mtime,
            reverse=True
        )
        return logs[:limit]

    @staticmethod
    def load_log(log_path: Path) -> List[Dict[str, Any]]:
        """Load and parse an audit log file."""
        entries = []
        with open(log_path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries

    @contextmanager
    def execution_context(
        self,
        execution_id: str,
        spec_name: str,
        parameters: Dict[str, Any] = None
    ):
        """
        Context manager for execution logging.

        Usage:
            with audit.execution_context("exec_1", "login_flow", params) as log_path:
                audit.log_step(...)
        """
        log_path = self.start_execution(execution_id, spec_name, parameters)
        status = "completed"
        error = None

        try:
            yield log_path
        except Exception as e:
            status = "failed"
            error = str(e)
            raise
        finally:
            self.end_execution(execution_id, status=status, error=error)


# Global instance
audit_log = AuditLog()
