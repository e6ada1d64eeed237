"""LLM fallback analysis for errors the pattern table does not recognize.

Pipeline per message, stopping at the first hit:
1. Cache lookup by normalized error hash.
2. Deterministic keyword rules.
3. Throttle check (session quota and cooldown).
4. One external call through an OpenAI-compatible client.
"""

import hashlib
import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from openai import OpenAI

from loop_medic.exceptions import AdmissionResetError, AdmissionTimeoutError
from loop_medic.models.analysis import Analysis, CacheEntry
from loop_medic.services.concurrency import ConcurrencyController, make_key
from loop_medic.utils.json_store import read_json, write_json

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_MS = 24 * 60 * 60 * 1000
HASH_INPUT_LIMIT = 100

MODEL_MAP = {
    "haiku": "claude-3-haiku-20240307",
    "sonnet": "claude-3-5-sonnet-20241022",
    "opus": "claude-3-opus-20240229",
}

ANALYSIS_PROMPT = """Analyze this task-loop error log entry and suggest a fix:
{error}

Return your analysis in this JSON format ONLY:
{{
  "rootCause": "Short description of the root cause",
  "suggestedFixes": ["fix 1", "fix 2", "fix 3"],
  "confidence": 0.8
}}

Where confidence is a number between 0 and 1 indicating how confident you are in the analysis."""

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_TIME_RE = re.compile(r"\d{2}:\d{2}:\d{2}(?:[.,]\d+)?")
_PATH_RE = re.compile(r"(?<![\w.])(?:[a-z]:\\|~/|/)[^\s'\"()\[\]]+")
_JSON_RE = re.compile(r"\{[\s\S]*\}")

# (regex, root cause, suggested fixes, confidence)
_KEYWORD_RULES: List[Tuple["re.Pattern[str]", str, List[str], float]] = [
    (
        re.compile(r"ENOENT|not found|no such file", re.IGNORECASE),
        "File or resource not found",
        [
            "Verify file path exists and is accessible",
            "Check for typos in file paths",
        ],
        0.8,
    ),
    (
        re.compile(r"EACCES|EPERM|permission", re.IGNORECASE),
        "Permission denied",
        [
            "Check file/directory permissions",
            "Run with appropriate user privileges",
        ],
        0.9,
    ),
    (
        re.compile(r"timeout|timed out|ETIMEDOUT", re.IGNORECASE),
        "Operation timed out",
        [
            "Increase timeout limit",
            "Check network connectivity",
            "Verify service availability",
        ],
        0.7,
    ),
    (
        re.compile(r"rate limit|429|too many requests", re.IGNORECASE),
        "Rate limit exceeded",
        [
            "Wait before retrying",
            "Reduce request frequency",
            "Implement exponential backoff",
        ],
        0.9,
    ),
]


def hash_error(message: str) -> str:
    """Hash an error message so cosmetic differences collapse together.

    Lower-cases, replaces dates, times and absolute paths with placeholders
    and truncates before hashing.

    Args:
        message: Raw error text.

    Returns:
        32-character hex digest.
    """
    normalized = message.lower()
    normalized = _DATE_RE.sub("DATE", normalized)
    normalized = _TIME_RE.sub("TIME", normalized)
    normalized = _PATH_RE.sub("PATH", normalized)
    normalized = normalized.strip()[:HASH_INPUT_LIMIT]
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:32]


def pattern_based_analysis(message: str) -> Optional[Analysis]:
    """Diagnose a message with the deterministic keyword rules."""
    for regex, root_cause, fixes, confidence in _KEYWORD_RULES:
        if regex.search(message):
            return Analysis(
                root_cause=root_cause,
                suggested_fixes=list(fixes),
                confidence=confidence,
                source="pattern",
            )
    return None


def unknown_analysis(source: str = "pattern", **extra: Any) -> Analysis:
    """Well-formed result for a message nothing could diagnose."""
    return Analysis(
        root_cause="Unknown error",
        suggested_fixes=["Manual investigation required"],
        confidence=0.3 if extra.get("throttled") else 0.5,
        source=source,
        **extra,
    )


@dataclass
class ThrottleDecision:
    """Whether a paid call is allowed right now."""

    throttled: bool
    reason: Optional[str] = None


def should_throttle(
    call_count: int,
    last_call_ms: int,
    max_per_session: int,
    cooldown_ms: int,
    now_ms: int,
) -> ThrottleDecision:
    """Apply the session quota and cooldown to a prospective call."""
    if call_count >= max_per_session:
        return ThrottleDecision(
            True,
            f"LLM analysis throttled: max {max_per_session} calls per session reached",
        )
    elapsed = now_ms - last_call_ms
    if last_call_ms and elapsed < cooldown_ms:
        remaining = -(-(cooldown_ms - elapsed) // 1000)
        return ThrottleDecision(
            True,
            f"LLM analysis throttled: {remaining}s remaining in cooldown period",
        )
    return ThrottleDecision(False)


def parse_analysis_response(content: str) -> Optional[Analysis]:
    """Extract the JSON analysis from a model response.

    Returns:
        Analysis, or None when the response holds no usable JSON.
    """
    match = _JSON_RE.search(content or "")
    if not match:
        logger.warning(f"No JSON found in LLM response: {(content or '')[:100]}")
        return None
    try:
        data = json.loads(match.group())
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning(f"Failed to parse LLM JSON: {e}")
        return None
    if not isinstance(data, dict):
        return None

    fixes = data.get("suggestedFixes")
    confidence = data.get("confidence")
    return Analysis(
        root_cause=str(data.get("rootCause") or "Unknown error"),
        suggested_fixes=(
            [str(f) for f in fixes]
            if isinstance(fixes, list)
            else ["Manual investigation required"]
        ),
        confidence=(
            float(confidence)
            if isinstance(confidence, (int, float)) and not isinstance(confidence, bool)
            else 0.5
        ),
        source="llm",
    )


class AnalysisCache:
    """File-backed cache of analyses keyed by normalized error hash."""

    def __init__(
        self,
        cache_file: Path,
        ttl_ms: int = DEFAULT_CACHE_TTL_MS,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_file = Path(cache_file)
        self.ttl = timedelta(milliseconds=ttl_ms)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Optional[Dict[str, CacheEntry]] = None

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def load(self) -> Dict[str, CacheEntry]:
        """Read the cache file, skipping malformed entries."""
        raw = read_json(self.cache_file, dict)
        entries: Dict[str, CacheEntry] = {}
        if not isinstance(raw, dict):
            return entries
        for key, value in raw.items():
            try:
                entries[key] = CacheEntry.from_dict(value)
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.debug(f"Dropping malformed cache entry {key}")
        return entries

    def save(self, entries: Dict[str, CacheEntry]) -> None:
        write_json(self.cache_file, {k: v.to_dict() for k, v in entries.items()})

    def _ensure_loaded(self) -> Dict[str, CacheEntry]:
        if self._entries is None:
            self._entries = self.load()
        return self._entries

    def get(self, message: str) -> Optional[Analysis]:
        """Return the cached analysis for a message, if present and fresh."""
        key = hash_error(message)
        with self._lock:
            entry = self._ensure_loaded().get(key)
            if entry is None:
                return None
            if entry.is_expired(self._now()):
                return None
            a = entry.analysis
            return Analysis(
                root_cause=a.root_cause,
                suggested_fixes=list(a.suggested_fixes),
                confidence=a.confidence,
                cached=True,
                source=a.source,
            )

    def put(self, message: str, analysis: Analysis) -> CacheEntry:
        """Store an analysis and write the cache through to disk."""
        key = hash_error(message)
        now = self._now()
        entry = CacheEntry(
            error_hash=key,
            analysis=Analysis(
                root_cause=analysis.root_cause,
                suggested_fixes=list(analysis.suggested_fixes),
                confidence=analysis.confidence,
                source=analysis.source,
            ),
            cached_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock:
            entries = self._ensure_loaded()
            entries[key] = entry
            self.save(entries)
        return entry

    def cleanup(self) -> int:
        """Delete every expired entry.

        Returns:
            Number of entries removed.
        """
        now = self._now()
        with self._lock:
            entries = self._ensure_loaded()
            expired = [k for k, e in entries.items() if e.is_expired(now)]
            for key in expired:
                del entries[key]
            if expired:
                self.save(entries)
        if expired:
            logger.info(f"Removed {len(expired)} expired analysis cache entries")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries = {}
            self.save(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ensure_loaded())


class LLMAnalyzer:
    """Diagnoses unknown errors, spending paid calls only as a last resort."""

    def __init__(
        self,
        cache: Optional[AnalysisCache] = None,
        model: str = "haiku",
        provider: str = "claude",
        api_key: str = "",
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        max_per_session: int = 10,
        cooldown_ms: int = 300000,
        controller: Optional[ConcurrencyController] = None,
        acquire_timeout_ms: int = 30000,
        client: Optional[OpenAI] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the analyzer.

        Args:
            cache: Analysis cache; None disables caching.
            model: Model alias (haiku/sonnet/opus) or full model ID.
            provider: Provider name used for the admission key.
            api_key: API key; without one (and no client) no call is made.
            base_url: OpenAI-compatible endpoint.
            timeout: Request timeout in seconds.
            max_per_session: Paid calls allowed per session.
            cooldown_ms: Minimum gap between paid calls.
            controller: Admission controller wrapping each call.
            acquire_timeout_ms: How long to wait for an admission slot.
            client: Pre-built client (testing).
            clock: Time source in epoch seconds.
            logger: Logger to use (defaults to the module logger).
        """
        self.cache = cache
        self.model = model
        self.provider = provider
        self.max_per_session = max_per_session
        self.cooldown_ms = cooldown_ms
        self.controller = controller
        self.acquire_timeout_ms = acquire_timeout_ms
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._lock = threading.Lock()
        self.call_count = 0
        self.last_call_ms = 0

        self._client = client
        if self._client is None and api_key:
            self._client = OpenAI(base_url=base_url, api_key=api_key, timeout=timeout)

    @property
    def model_id(self) -> str:
        return MODEL_MAP.get(self.model, self.model)

    @property
    def admission_key(self) -> str:
        return make_key(self.provider, self.model)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def sync_state(self, call_count: int, last_call_ms: int) -> None:
        """Restore counters from persisted session state."""
        with self._lock:
            self.call_count = call_count
            self.last_call_ms = last_call_ms

    def check_throttle(self) -> ThrottleDecision:
        with self._lock:
            return should_throttle(
                self.call_count,
                self.last_call_ms,
                self.max_per_session,
                self.cooldown_ms,
                self._now_ms(),
            )

    def can_make_call(self) -> bool:
        return not self.check_throttle().throttled

    def time_until_next_call(self) -> int:
        """Milliseconds until the cooldown allows another call (0 if now)."""
        with self._lock:
            if not self.last_call_ms:
                return 0
            elapsed = self._now_ms() - self.last_call_ms
            return max(0, self.cooldown_ms - elapsed)

    def analyze(self, message: str) -> Analysis:
        """Diagnose an error message.

        Never raises for environmental failures; every path returns a
        well-formed Analysis.
        """
        if self.cache is not None:
            cached = self.cache.get(message)
            if cached is not None:
                self.logger.debug("Analysis cache hit")
                return cached

        rule_result = pattern_based_analysis(message)
        if rule_result is not None:
            if self.cache is not None:
                self.cache.put(message, rule_result)
            return rule_result

        decision = self.check_throttle()
        if decision.throttled:
            self.logger.info(decision.reason)
            return unknown_analysis(throttled=True, throttle_reason=decision.reason)

        if self._client is None:
            self.logger.debug("No LLM API key configured, using offline analysis")
            return unknown_analysis(source="offline")

        try:
            if self.controller is not None:
                with self.controller.acquire(
                    self.admission_key, self.acquire_timeout_ms
                ):
                    result = self._call_llm(message)
            else:
                result = self._call_llm(message)
        except (AdmissionTimeoutError, AdmissionResetError) as e:
            self.logger.warning(f"LLM analysis blocked: {e}")
            return unknown_analysis(throttled=True, throttle_reason=str(e))

        if result is None:
            return unknown_analysis(source="fallback")

        if self.cache is not None:
            self.cache.put(message, result)
        return result

    def _call_llm(self, message: str) -> Optional[Analysis]:
        """Issue one paid call; counters advance whether or not it succeeds."""
        with self._lock:
            self.call_count += 1
            self.last_call_ms = self._now_ms()
        self.logger.info(
            f"Requesting LLM analysis ({self.call_count}/{self.max_per_session}) "
            f"with {self.model_id}"
        )

        try:
            response = self._client.chat.completions.create(
                model=self.model_id,
                messages=[
                    {"role": "user", "content": ANALYSIS_PROMPT.format(error=message)}
                ],
                temperature=0.2,
                max_tokens=1024,
            )
            content = response.choices[0].message.content or ""
        except Exception as e:
            self.logger.error(f"LLM analysis failed: {e}")
            return None

        return parse_analysis_response(content)

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()

    def cleanup_expired(self) -> int:
        if self.cache is None:
            return 0
        return self.cache.cleanup()
