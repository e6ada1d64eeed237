"""
Data models for the wisdom store.

A WisdomPattern pairs a failure signature with a remediation that has
worked for it before. Patterns only become trusted after enough
successes and are forgotten when unseen for too long.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

WISDOM_VERSION = "1.0"


@dataclass
class WisdomPattern:
    """A learned (failure signature, fix action) pair."""

    id: str
    error_signature: str
    fix_action: str
    success_count: int
    first_seen: datetime
    last_seen: datetime
    context: Dict[str, List[str]] = field(default_factory=dict)

    def is_expired(self, now: datetime, expiry_days: int) -> bool:
        return now - self.last_seen >= timedelta(days=expiry_days)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "errorSignature": self.error_signature,
            "fixAction": self.fix_action,
            "successCount": self.success_count,
            "firstSeen": self.first_seen.isoformat(),
            "lastSeen": self.last_seen.isoformat(),
        }
        if self.context:
            data["context"] = {k: list(v) for k, v in self.context.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WisdomPattern":
        """Parse a stored pattern; raises KeyError/ValueError when malformed."""
        return cls(
            id=str(data["id"]),
            error_signature=str(data["errorSignature"]),
            fix_action=str(data["fixAction"]),
            success_count=int(data.get("successCount", 0)),
            first_seen=datetime.fromisoformat(data["firstSeen"].replace("Z", "+00:00")),
            last_seen=datetime.fromisoformat(data["lastSeen"].replace("Z", "+00:00")),
            context={
                str(k): [str(t) for t in v]
                for k, v in (data.get("context") or {}).items()
                if isinstance(v, list)
            },
        )


@dataclass
class WisdomStats:
    """Aggregate view of the wisdom store."""

    total_patterns: int = 0
    trusted_patterns: int = 0
    session_count: int = 0
    total_heals: int = 0
    total_failures: int = 0
    oldest_pattern: Optional[datetime] = None
    newest_pattern: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        """Fraction of recorded outcomes that were heals."""
        total = self.total_heals + self.total_failures
        if total == 0:
            return 0.0
        return self.total_heals / total
