"""Safety guardrails to prevent dangerous operations.

This module provides a safety layer that blocks potentially dangerous
operations during spec execution and recovery, such as:
- Navigation to browser settings pages that could cause data loss
- Script-capable URL schemes (javascript:, file:, data:)
- Candidate recovery code that reaches outside the page primitives
"""
import re
from typing import Optional
from dataclasses import dataclass
from enum import Enum

from intentflow.utils.logger import setup_logger


class DangerLevel(Enum):
    """Severity level of detected danger."""
    SAFE = "safe"
    WARNING = "warning"
    BLOCKED = "blocked"


@dataclass
class SafetyCheck:
    """Result of a safety check."""
    allowed: bool
    danger_level: DangerLevel
    reason: Optional[str] = None
    action_type: Optional[str] = None


class SafetyGuard:
    """
    Prevents execution of dangerous operations.

    Checks:
    - URLs (browser reset, clear data pages, script schemes)
    - Candidate code (imports, dunder access, process and file access)
    - Typed values (credentials exfiltration patterns)

    Usage:
        from intentflow.utils.safety_guard import safety_guard

        check = safety_guard.check_url("chrome://settings/reset")
        if not check.allowed:
            raise SandboxViolationError(check.reason)
    """

    # === BLOCKED URLS ===
    BLOCKED_URL_PATTERNS = [
        # Chrome dangerous settings
        r"chrome://settings/clearBrowserData",
        r"chrome://settings/reset",
        r"chrome://settings/resetProfileSettings",

        # Firefox dangerous settings
        r"about:config",
        r"about:preferences.*clear",

        # Edge dangerous settings
        r"edge://settings/reset",
        r"edge://settings/clearBrowserData",

        # Brave
        r"brave://settings/reset",
        r"brave://settings/clearBrowserData",

        # Script-capable and local schemes
        r"^\s*javascript:",
        r"^\s*file:",
        r"^\s*data:text/html",
    ]

    # === BLOCKED CODE PATTERNS (candidate recovery code) ===
    BLOCKED_CODE_PATTERNS = [
        r"\bimport\b",
        r"__\w+__",                      # dunder access (__class__, __import__, ...)
        r"\beval\s*\(",
        r"\bexec\s*\(",
        r"\bcompile\s*\(",
        r"\bopen\s*\(",
        r"\bgetattr\s*\(",
        r"\bsetattr\s*\(",
        r"\bglobals\s*\(",
        r"\bos\.\w+",
        r"\bsubprocess\b",
        r"\bsys\.\w+",
        r"\bpage\.evaluate\w*\s*\(",    # arbitrary in-page JavaScript
        r"\bpage\.context\b",
        r"\bpage\.route\s*\(",
        r"\bdocument\.cookie\b",
        r"\bdocument\.write\b",
        r"\bwindow\.open\b",
        r"\blocation\.(?:href|replace|assign)\b",
        r"\bnew\s+Function\s*\(",
        r"\bfetch\s*\(",
        r"\bXMLHttpRequest\b",
        r"\blocalStorage\b",
        r"\bsessionStorage\b",
        r"\bchild_process\b",
        r"\brequire\s*\(",
        r"\bprocess\.\w+",
        r"\bfs\.\w+",
    ]

    # === BLOCKED TYPED PATTERNS (values filled into pages) ===
    BLOCKED_TYPE_PATTERNS = [
        r"-----BEGIN [A-Z ]*PRIVATE KEY-----",
        r"aws_secret_access_key",
    ]

    def __init__(self, strict_mode: bool = False):
        """
        Initialize safety guard.

        Args:
            strict_mode: If True, also blocks WARNING level actions
                        (non-http(s) navigation).
        """
        self.logger = setup_logger("SafetyGuard")
        self.strict_mode = strict_mode

        # Pre-compile patterns for performance
        self._blocked_url_patterns = [
            re.compile(p, re.IGNORECASE) for p in self.BLOCKED_URL_PATTERNS
        ]
        self._blocked_code_patterns = [
            re.compile(p) for p in self.BLOCKED_CODE_PATTERNS
        ]
        self._blocked_type_patterns = [
            re.compile(p, re.IGNORECASE) for p in self.BLOCKED_TYPE_PATTERNS
        ]

    def check_url(self, url: str) -> SafetyCheck:
        """
        Check if URL navigation is safe.

        Args:
            url: The URL being navigated to

        Returns:
            SafetyCheck with allowed=False if dangerous URL
        """
        if not url:
            return SafetyCheck(allowed=True, danger_level=DangerLevel.SAFE)

        for pattern in self._blocked_url_patterns:
            if pattern.search(url):
                self.logger.warning(f"🛑 BLOCKED URL: {url}")
                return SafetyCheck(
                    allowed=False,
                    danger_level=DangerLevel.BLOCKED,
                    reason=f"Dangerous URL blocked: {url}",
                    action_type="navigate"
                )

        if self.strict_mode and not re.match(r"^\s*https?://", url, re.IGNORECASE):
            self.logger.warning(f"⚠️ BLOCKED non-http URL (strict): {url}")
            return SafetyCheck(
                allowed=False,
                danger_level=DangerLevel.WARNING,
                reason=f"Non-http navigation blocked in strict mode: {url}",
                action_type="navigate"
            )

        return SafetyCheck(allowed=True, danger_level=DangerLevel.SAFE)

    def check_code(self, code: str) -> SafetyCheck:
        """
        Check candidate recovery code for dangerous fragments.

        This is a textual pre-filter; the sandbox still parses the code and
        only admits allow-listed page primitives.
        """
        for pattern in self._blocked_code_patterns:
            match = pattern.search(code or "")
            if match:
                self.logger.warning(f"🛑 BLOCKED code fragment: {match.group(0)!r}")
                return SafetyCheck(
                    allowed=False,
                    danger_level=DangerLevel.BLOCKED,
                    reason=f"Dangerous code pattern blocked: {match.group(0)}",
                    action_type="code"
                )

        return SafetyCheck(allowed=True, danger_level=DangerLevel.SAFE)

    def check_typed_text(self, text: str) -> SafetyCheck:
        """Check a value about to be filled into a page."""
        for pattern in self._blocked_type_patterns:
            if pattern.search(text or ""):
                self.logger.warning("🛑 BLOCKED fill of sensitive content")
                return SafetyCheck(
                    allowed=False,
                    danger_level=DangerLevel.BLOCKED,
                    reason="Sensitive content blocked from being typed",
                    action_type="fill"
                )

        return SafetyCheck(allowed=True, danger_level=DangerLevel.SAFE)


# Global instance (non-strict by default)
safety_guard = SafetyGuard(strict_mode=False)
