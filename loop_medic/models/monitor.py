"""
Data models for the monitoring pipeline.

Covers log lines read from the tailed file, their classification, the
circuit breaker snapshot and the whole-session state persisted to
monitor-state.json.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(str, Enum):
    """How serious a classified log line is."""

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    HIGH = "HIGH"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class LogLine:
    """One complete line appended to the tailed file."""

    line: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PatternMatch:
    """A log line classified against the pattern table."""

    pattern: str
    severity: Severity
    raw_line: str
    context: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CircuitBreakerState:
    """Serializable circuit breaker snapshot."""

    consecutive_failures: int = 0
    max_failures: int = 3
    cooldown_period_ms: int = 60000
    last_failure_time: int = 0
    state: CircuitState = CircuitState.CLOSED
    half_open_attempts: int = 0  # trials in flight, never persisted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consecutiveFailures": self.consecutive_failures,
            "maxFailures": self.max_failures,
            "cooldownPeriodMs": self.cooldown_period_ms,
            "lastFailureTime": self.last_failure_time,
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CircuitBreakerState":
        defaults = cls()
        try:
            state = CircuitState(data.get("state", CircuitState.CLOSED.value))
        except ValueError:
            state = CircuitState.CLOSED
        return cls(
            consecutive_failures=int(data.get("consecutiveFailures", 0)),
            max_failures=int(data.get("maxFailures", defaults.max_failures)),
            cooldown_period_ms=int(
                data.get("cooldownPeriodMs", defaults.cooldown_period_ms)
            ),
            last_failure_time=int(data.get("lastFailureTime", 0)),
            state=state,
        )


@dataclass
class RecoveryRecord:
    """Outcome of one recovery attempt for a (task, exit reason) pair."""

    timestamp: int
    success: bool


def _iso(value: datetime) -> str:
    return value.isoformat()


def _parse_iso(value: Optional[str], fallback: datetime) -> datetime:
    if not value:
        return fallback
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return fallback


@dataclass
class MonitorState:
    """Whole-session state, flushed to monitor-state.json."""

    session_id: str
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    llm_calls_count: int = 0
    last_llm_call: int = 0
    detected_patterns: Dict[str, int] = field(default_factory=dict)
    unknown_error_cache: List[str] = field(default_factory=list)
    recovery_history: Dict[str, RecoveryRecord] = field(default_factory=dict)
    recovery_attempts: int = 0
    recovery_successes: int = 0
    recovery_failures: int = 0
    circuit_breaker: CircuitBreakerState = field(default_factory=CircuitBreakerState)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "startTime": _iso(self.start_time),
            "lastActivity": _iso(self.last_activity),
            "llmCallsCount": self.llm_calls_count,
            "lastLLMCall": self.last_llm_call,
            "detectedPatterns": dict(self.detected_patterns),
            "unknownErrorCache": list(self.unknown_error_cache),
            "recoveryHistory": {
                key: {"timestamp": rec.timestamp, "success": rec.success}
                for key, rec in self.recovery_history.items()
            },
            "recoveryAttempts": self.recovery_attempts,
            "recoverySuccesses": self.recovery_successes,
            "recoveryFailures": self.recovery_failures,
            "circuitBreaker": self.circuit_breaker.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], session_id: str) -> "MonitorState":
        """Restore state, keeping defaults for anything missing or malformed."""
        now = datetime.now(timezone.utc)
        history = {}
        for key, rec in (data.get("recoveryHistory") or {}).items():
            if isinstance(rec, dict):
                history[key] = RecoveryRecord(
                    timestamp=int(rec.get("timestamp", 0)),
                    success=bool(rec.get("success", False)),
                )
        breaker = data.get("circuitBreaker")
        return cls(
            session_id=data.get("sessionId") or session_id,
            start_time=_parse_iso(data.get("startTime"), now),
            last_activity=_parse_iso(data.get("lastActivity"), now),
            llm_calls_count=int(data.get("llmCallsCount", 0)),
            last_llm_call=int(data.get("lastLLMCall", 0)),
            detected_patterns={
                str(k): int(v) for k, v in (data.get("detectedPatterns") or {}).items()
            },
            unknown_error_cache=[str(v) for v in data.get("unknownErrorCache") or []],
            recovery_history=history,
            recovery_attempts=int(data.get("recoveryAttempts", 0)),
            recovery_successes=int(data.get("recoverySuccesses", 0)),
            recovery_failures=int(data.get("recoveryFailures", 0)),
            circuit_breaker=(
                CircuitBreakerState.from_dict(breaker)
                if isinstance(breaker, dict)
                else CircuitBreakerState()
            ),
        )


class MonitorEventKind(str, Enum):
    """Events published by the monitor to its subscribers."""

    STALE = "stale"
    MAX_LIFETIME = "max-lifetime"
    ERROR_DETECTED = "error-detected"
    HEALING_STARTED = "healing-started"
    HEALING_COMPLETED = "healing-completed"
    RECOVERY_COMPLETED = "recovery-completed"


@dataclass
class MonitorEvent:
    """A published monitor event."""

    kind: MonitorEventKind
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
