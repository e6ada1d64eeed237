"""
Wisdom store: learns which remediations work for which failures.

Every mutation is written through to wisdom.json immediately so a crash
never loses learned history.
"""

import hashlib
import json
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from loop_medic.models.wisdom import WISDOM_VERSION, WisdomPattern, WisdomStats
from loop_medic.services.patterns import ErrorPattern
from loop_medic.utils.json_store import read_json, write_json

logger = logging.getLogger(__name__)


def pattern_signature(pattern: ErrorPattern) -> str:
    """Stable signature over a pattern's identity, not a specific log line."""
    identity = json.dumps(
        {
            "name": pattern.name,
            "regex": pattern.regex.pattern,
            "category": pattern.category,
        },
        sort_keys=True,
    )
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:16]


def text_signature(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


class WisdomService:
    """Tracks successful (signature, fix action) pairs across sessions."""

    def __init__(
        self,
        wisdom_file: Path,
        pattern_expiry_days: int = 30,
        min_success_for_trust: int = 3,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.wisdom_file = Path(wisdom_file)
        self.pattern_expiry_days = pattern_expiry_days
        self.min_success_for_trust = min_success_for_trust
        self.enabled = enabled
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()

        self.patterns: List[WisdomPattern] = []
        self.session_count = 0
        self.total_heals = 0
        self.total_failures = 0
        self.last_updated: Optional[datetime] = None
        self._load()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ── Persistence ───────────────────────────────────────────────────

    def _load(self) -> None:
        raw = read_json(self.wisdom_file, dict)
        if not isinstance(raw, dict):
            raw = {}

        patterns = []
        for item in raw.get("patterns") or []:
            try:
                patterns.append(WisdomPattern.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError):
                self.logger.debug("Dropping malformed wisdom pattern")

        self.patterns = patterns
        self.session_count = int(raw.get("sessionCount", 0)) + 1
        self.total_heals = int(raw.get("totalHeals", 0))
        self.total_failures = int(raw.get("totalFailures", 0))

        removed = self._purge_expired()
        if removed:
            self.logger.info(f"Purged {removed} expired wisdom patterns on load")
        if self.enabled:
            self._save()

    def _save(self) -> None:
        self.last_updated = self._now()
        write_json(
            self.wisdom_file,
            {
                "lastUpdated": self.last_updated.isoformat(),
                "version": WISDOM_VERSION,
                "patterns": [p.to_dict() for p in self.patterns],
                "sessionCount": self.session_count,
                "totalHeals": self.total_heals,
                "totalFailures": self.total_failures,
            },
        )

    def _purge_expired(self) -> int:
        now = self._now()
        before = len(self.patterns)
        self.patterns = [
            p for p in self.patterns if not p.is_expired(now, self.pattern_expiry_days)
        ]
        return before - len(self.patterns)

    # ── Learning ──────────────────────────────────────────────────────

    def record_success(
        self,
        signature: str,
        action_name: str,
        context_tags: Optional[Dict[str, List[str]]] = None,
    ) -> Optional[WisdomPattern]:
        """Record that ``action_name`` healed failures with ``signature``.

        Args:
            signature: Failure signature (see pattern_signature()).
            action_name: Name of the remediation that worked.
            context_tags: Optional tag lists (e.g. fileTypes, errorTypes)
                unioned into the stored pattern.

        Returns:
            The created or updated pattern, or None when disabled.
        """
        if not self.enabled:
            return None

        now = self._now()
        with self._lock:
            existing = next(
                (
                    p
                    for p in self.patterns
                    if p.error_signature == signature and p.fix_action == action_name
                ),
                None,
            )
            if existing is None:
                stamp = int(now.timestamp() * 1000)
                existing = WisdomPattern(
                    id=f"wisdom-{signature}-{action_name}-{stamp}",
                    error_signature=signature,
                    fix_action=action_name,
                    success_count=0,
                    first_seen=now,
                    last_seen=now,
                )
                self.patterns.append(existing)

            existing.success_count += 1
            existing.last_seen = now
            for key, tags in (context_tags or {}).items():
                merged = existing.context.setdefault(key, [])
                merged.extend(t for t in tags if t not in merged)

            self.total_heals += 1
            self._save()

        self.logger.debug(
            f"Wisdom: {action_name} succeeded for {signature} "
            f"({existing.success_count} total)"
        )
        return existing

    def record_failure(self, signature: str, action_name: str) -> None:
        if not self.enabled:
            return
        with self._lock:
            self.total_failures += 1
            self._save()
        self.logger.debug(f"Wisdom: {action_name} failed for {signature}")

    def find_trusted(self, signature: str) -> Optional[WisdomPattern]:
        """Best learned fix for a signature, if trusted and not expired."""
        if not self.enabled:
            return None
        now = self._now()
        with self._lock:
            candidates = [
                p
                for p in self.patterns
                if p.error_signature == signature
                and p.success_count >= self.min_success_for_trust
                and not p.is_expired(now, self.pattern_expiry_days)
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.success_count)

    # ── Maintenance ───────────────────────────────────────────────────

    def get_patterns(self) -> List[WisdomPattern]:
        with self._lock:
            return list(self.patterns)

    def clear_expired(self) -> int:
        with self._lock:
            removed = self._purge_expired()
            if removed:
                self._save()
        return removed

    def reset(self) -> None:
        """Forget every learned pattern and counter."""
        with self._lock:
            self.patterns = []
            self.total_heals = 0
            self.total_failures = 0
            self.session_count = 0
            self._save()

    def stats(self) -> WisdomStats:
        with self._lock:
            seen = [p.first_seen for p in self.patterns]
            return WisdomStats(
                total_patterns=len(self.patterns),
                trusted_patterns=sum(
                    1
                    for p in self.patterns
                    if p.success_count >= self.min_success_for_trust
                ),
                session_count=self.session_count,
                total_heals=self.total_heals,
                total_failures=self.total_failures,
                oldest_pattern=min(seen) if seen else None,
                newest_pattern=max(seen) if seen else None,
            )
