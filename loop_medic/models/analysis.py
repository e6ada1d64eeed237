"""LLM analysis results and their cache entries."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class Analysis:
    """Root-cause diagnosis for an error message."""

    root_cause: str
    suggested_fixes: List[str] = field(default_factory=list)
    confidence: float = 0.5
    cached: bool = False
    source: str = "pattern"
    throttled: bool = False
    throttle_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rootCause": self.root_cause,
            "suggestedFixes": list(self.suggested_fixes),
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **extra: Any) -> "Analysis":
        return cls(
            root_cause=str(data.get("rootCause", "Unknown error")),
            suggested_fixes=[str(f) for f in data.get("suggestedFixes") or []],
            confidence=float(data.get("confidence", 0.5)),
            **extra,
        )


@dataclass
class CacheEntry:
    """A cached analysis keyed by normalized error hash."""

    error_hash: str
    analysis: Analysis
    cached_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "errorHash": self.error_hash,
            "analysis": self.analysis.to_dict(),
            "source": self.analysis.source,
            "cachedAt": self.cached_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        """Parse a stored entry; raises KeyError/ValueError when malformed."""
        return cls(
            error_hash=str(data["errorHash"]),
            analysis=Analysis.from_dict(
                data["analysis"], source=str(data.get("source", "llm"))
            ),
            cached_at=datetime.fromisoformat(
                str(data["cachedAt"]).replace("Z", "+00:00")
            ),
            expires_at=datetime.fromisoformat(
                str(data["expiresAt"]).replace("Z", "+00:00")
            ),
        )
