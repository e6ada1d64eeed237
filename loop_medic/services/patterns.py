"""Ordered pattern table that classifies task-loop log lines.

The first matching entry wins, so order encodes priority.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from loop_medic.models.actions import ActionType
from loop_medic.models.monitor import PatternMatch, Severity


@dataclass(frozen=True)
class ErrorPattern:
    """One entry of the classification table."""

    name: str
    regex: "re.Pattern[str]"
    severity: Severity
    category: str
    description: str
    context_key: Optional[str] = None
    default_action: Optional[ActionType] = ActionType.NOTIFY

    def extract_context(self, match: "re.Match[str]") -> Dict[str, str]:
        """Pull the first captured group into the pattern's context key."""
        if self.context_key is None:
            return {}
        for group in match.groups():
            if group:
                return {self.context_key: group.strip()}
        return {}


ERROR_PATTERNS: List[ErrorPattern] = [
    ErrorPattern(
        name="prd-not-found",
        regex=re.compile(r"PRD file not found:?\s*(.+)", re.IGNORECASE),
        severity=Severity.WARN,
        category="prd",
        description="Task PRD file is missing",
        context_key="path",
        default_action=ActionType.AUTO_FIX,
    ),
    ErrorPattern(
        name="rate-limit",
        regex=re.compile(r"rate limit|429|too many requests", re.IGNORECASE),
        severity=Severity.HIGH,
        category="api",
        description="Provider rate limit hit",
        default_action=ActionType.PAUSE,
    ),
    ErrorPattern(
        name="env-var-required",
        regex=re.compile(
            r"(\w+)\s+is required|environment variable\s+(\w+)\s+not found",
            re.IGNORECASE,
        ),
        severity=Severity.ERROR,
        category="config",
        description="Required environment variable is missing",
        context_key="envVar",
    ),
    ErrorPattern(
        name="task-failed",
        regex=re.compile(
            r"task failed|execution failed|error executing task", re.IGNORECASE
        ),
        severity=Severity.HIGH,
        category="task",
        description="Task execution failed",
    ),
    ErrorPattern(
        name="timeout",
        regex=re.compile(
            r"timeout exceeded|timed out|execution timeout", re.IGNORECASE
        ),
        severity=Severity.WARN,
        category="task",
        description="Operation timed out",
    ),
    ErrorPattern(
        name="no-pending-tasks",
        regex=re.compile(r"no pending tasks|all tasks completed", re.IGNORECASE),
        severity=Severity.INFO,
        category="loop",
        description="Loop ran out of work",
        default_action=None,
    ),
    ErrorPattern(
        name="file-not-found",
        regex=re.compile(
            r"(?:file|path)\s+(?:not found|does not exist):\s*(.+)", re.IGNORECASE
        ),
        severity=Severity.ERROR,
        category="filesystem",
        description="Referenced file does not exist",
        context_key="path",
    ),
    ErrorPattern(
        name="permission-denied",
        regex=re.compile(r"permission denied|EACCES|EPERM", re.IGNORECASE),
        severity=Severity.ERROR,
        category="filesystem",
        description="Filesystem permission denied",
    ),
    ErrorPattern(
        name="network-error",
        regex=re.compile(
            r"network error|ECONNREFUSED|ETIMEDOUT|ENOTFOUND", re.IGNORECASE
        ),
        severity=Severity.WARN,
        category="network",
        description="Network request failed",
    ),
    ErrorPattern(
        name="plugin-error",
        regex=re.compile(r"plugin\s+(\w+)\s+(?:failed|error)", re.IGNORECASE),
        severity=Severity.WARN,
        category="plugin",
        description="Loop plugin failed",
        context_key="plugin",
    ),
    ErrorPattern(
        name="circuit-breaker",
        regex=re.compile(
            r"circuit breaker|max retries exceeded|too many failures", re.IGNORECASE
        ),
        severity=Severity.HIGH,
        category="loop",
        description="Loop tripped its own circuit breaker",
    ),
]

_ERROR_LIKE = re.compile(r"error|failed|exception|critical", re.IGNORECASE)

_BY_NAME = {p.name: p for p in ERROR_PATTERNS}


def match_pattern(line: str) -> Optional[PatternMatch]:
    """Classify a log line against the pattern table.

    Args:
        line: Raw log line.

    Returns:
        PatternMatch for the first matching pattern, or None.
    """
    for pattern in ERROR_PATTERNS:
        match = pattern.regex.search(line)
        if match:
            return PatternMatch(
                pattern=pattern.name,
                severity=pattern.severity,
                raw_line=line,
                context=pattern.extract_context(match),
            )
    return None


def get_pattern_by_name(name: str) -> Optional[ErrorPattern]:
    return _BY_NAME.get(name)


def is_known_pattern(name: str) -> bool:
    return name in _BY_NAME


def get_patterns_by_severity(severity: Severity) -> List[ErrorPattern]:
    return [p for p in ERROR_PATTERNS if p.severity == severity]


def looks_like_error(line: str) -> bool:
    """Whether an unclassified line is worth treating as an unknown error."""
    return bool(_ERROR_LIKE.search(line))
