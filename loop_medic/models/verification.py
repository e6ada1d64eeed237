"""Verification check definitions and results."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


class CheckType(str, Enum):
    """Kinds of verification check."""

    BUILD = "BUILD"
    TEST = "TEST"
    LINT = "LINT"
    FUNCTIONALITY = "FUNCTIONALITY"
    ARCHITECT = "ARCHITECT"
    TODO = "TODO"
    ERROR_FREE = "ERROR_FREE"


@dataclass
class CheckConfig:
    """How one check is run."""

    type: CheckType
    required: bool = True
    timeout: float = 120.0
    command: Optional[List[str]] = None


@dataclass
class VerificationCheckResult:
    """Outcome of one check."""

    type: CheckType
    passed: bool
    required: bool
    output: str = ""
    duration: float = 0.0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class VerificationEvidence:
    """Proof captured for a claim at a point in time."""

    claim: str
    checks: List[VerificationCheckResult] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.timestamp < ttl


@dataclass
class VerificationResult:
    """Aggregated outcome of a verification run."""

    passed: bool
    checks: List[VerificationCheckResult] = field(default_factory=list)
    evidence: Optional[VerificationEvidence] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failed_checks(self) -> List[CheckType]:
        """Required checks that did not pass."""
        return [c.type for c in self.checks if c.required and not c.passed]

    @property
    def warnings(self) -> List[CheckType]:
        """Optional checks that did not pass."""
        return [c.type for c in self.checks if not c.required and not c.passed]
