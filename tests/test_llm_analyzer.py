"""Tests for the LLM fallback analyzer."""

import json
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from loop_medic.models.analysis import Analysis
from loop_medic.services.concurrency import ConcurrencyController
from loop_medic.services.llm_analyzer import (
    MODEL_MAP,
    AnalysisCache,
    LLMAnalyzer,
    hash_error,
    parse_analysis_response,
    pattern_based_analysis,
    should_throttle,
)

UNKNOWN = "Segmentation fault in worker 3"


def _client(content: str) -> MagicMock:
    client = MagicMock()
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    client.chat.completions.create.return_value = MagicMock(choices=[choice])
    return client


def _llm_json(**overrides) -> str:
    data = {
        "rootCause": "Native extension crashed",
        "suggestedFixes": ["Rebuild the extension", "Pin the library version"],
        "confidence": 0.75,
    }
    data.update(overrides)
    return f"Here is my analysis:\n```json\n{json.dumps(data)}\n```"


@pytest.fixture
def cache(tmp_path, clock):
    return AnalysisCache(tmp_path / "llm-cache.json", clock=clock)


# ── Hashing ──────────────────────────────────────────────────────────


class TestHashError:
    def test_deterministic(self):
        """Test the same message always hashes the same."""
        assert hash_error("Boom at line 4") == hash_error("Boom at line 4")

    def test_length(self):
        """Test the hash is a 32-character digest."""
        assert len(hash_error("x")) == 32

    def test_dates_and_times_normalized(self):
        """Test dates and times do not affect the hash."""
        a = hash_error("2025-01-01 10:00:00 Error: connection reset")
        b = hash_error("2026-12-31 23:59:59.123 Error: connection reset")
        assert a == b

    def test_absolute_paths_normalized(self):
        """Test absolute paths do not affect the hash."""
        a = hash_error("Cannot open /home/alice/project/app.log for writing")
        b = hash_error("Cannot open /var/tmp/other.log for writing")
        assert a == b

    def test_case_insensitive(self):
        """Test hashing ignores case."""
        assert hash_error("FATAL Crash") == hash_error("fatal crash")

    def test_different_messages_differ(self):
        """Test distinct messages hash differently."""
        assert hash_error("disk full") != hash_error("out of memory")

    def test_truncated_before_hashing(self):
        """Test only the message prefix is hashed."""
        prefix = "x" * 100
        assert hash_error(prefix + "tail one") == hash_error(prefix + "tail two")


# ── Rules and parsing ────────────────────────────────────────────────


class TestPatternBasedAnalysis:
    @pytest.mark.parametrize(
        "message,root_cause,confidence",
        [
            ("ENOENT: no such file", "File or resource not found", 0.8),
            ("EACCES on /tmp/x", "Permission denied", 0.9),
            ("socket ETIMEDOUT", "Operation timed out", 0.7),
            ("HTTP 429 from provider", "Rate limit exceeded", 0.9),
        ],
    )
    def test_rules(self, message, root_cause, confidence):
        """Test each built-in rule's root cause and confidence."""
        result = pattern_based_analysis(message)
        assert result.root_cause == root_cause
        assert result.confidence == confidence
        assert result.suggested_fixes

    def test_no_rule(self):
        """Test unmatched messages get no rule-based analysis."""
        assert pattern_based_analysis(UNKNOWN) is None


class TestParseAnalysisResponse:
    def test_fenced_json(self):
        """Test parsing a fenced JSON reply."""
        result = parse_analysis_response(_llm_json())
        assert result.root_cause == "Native extension crashed"
        assert result.confidence == 0.75
        assert result.source == "llm"

    def test_malformed_json(self):
        """Test malformed JSON parses to None."""
        assert parse_analysis_response('{"rootCause": "x", ') is None

    def test_no_json(self):
        """Test a reply without JSON parses to None."""
        assert parse_analysis_response("I am not sure.") is None

    def test_defaults_for_bad_fields(self):
        """Test invalid fields fall back to defaults."""
        result = parse_analysis_response('{"suggestedFixes": "nope", "confidence": "hi"}')
        assert result.root_cause == "Unknown error"
        assert result.suggested_fixes == ["Manual investigation required"]
        assert result.confidence == 0.5


# ── Throttle ─────────────────────────────────────────────────────────


class TestShouldThrottle:
    def test_session_cap(self):
        """Test the session call cap throttles."""
        decision = should_throttle(10, 0, 10, 300000, 1_000_000)
        assert decision.throttled
        assert "max 10 calls per session" in decision.reason

    def test_cooldown(self):
        """Test calls inside the cooldown are throttled."""
        decision = should_throttle(1, 1_000_000, 10, 300000, 1_000_000 + 100000)
        assert decision.throttled
        assert "200s remaining in cooldown period" in decision.reason

    def test_allowed(self):
        """Test a call after the cooldown is allowed."""
        assert not should_throttle(1, 1_000_000, 10, 300000, 1_300_000).throttled

    def test_first_call_allowed(self):
        """Test the first call of a session is allowed."""
        assert not should_throttle(0, 0, 10, 300000, 5).throttled


# ── Cache ────────────────────────────────────────────────────────────


class TestAnalysisCache:
    def test_round_trip(self, cache):
        """Test a cache hit matches the stored analysis apart from the cached flag."""
        original = Analysis(
            root_cause="Bad config",
            suggested_fixes=["Fix it"],
            confidence=0.6,
            source="llm",
        )
        cache.put(UNKNOWN, original)
        hit = cache.get(UNKNOWN)
        assert hit.cached is True
        assert replace(hit, cached=False) == original

    def test_hit_for_normalized_variant(self, cache):
        """Test variants of a message share a cache entry."""
        cache.put("2025-01-01 Error in /a/b.py", Analysis(root_cause="r"))
        assert cache.get("2025-02-02 Error in /c/d.py") is not None

    def test_expiry_and_cleanup(self, cache, clock):
        """Test entries expire after the TTL and cleanup removes them."""
        cache.put(UNKNOWN, Analysis(root_cause="r"))
        clock.advance(seconds=24 * 3600 - 1)
        assert cache.get(UNKNOWN) is not None
        clock.advance(seconds=1)
        assert cache.get(UNKNOWN) is None
        assert cache.cleanup() == 1
        assert len(cache) == 0

    def test_persisted_shape(self, cache, tmp_path):
        """Test the on-disk entry layout."""
        entry = cache.put(UNKNOWN, Analysis(root_cause="r", suggested_fixes=["f"]))
        data = json.loads((tmp_path / "llm-cache.json").read_text())
        stored = data[entry.error_hash]
        assert stored["errorHash"] == entry.error_hash
        assert stored["analysis"]["rootCause"] == "r"
        assert stored["source"] == "pattern"
        assert stored["cachedAt"].startswith("2025-01-15T12:00:00")
        assert stored["expiresAt"].startswith("2025-01-16T12:00:00")

    def test_reloads_from_disk(self, cache, tmp_path, clock):
        """Test a fresh cache reads entries written by another."""
        cache.put(UNKNOWN, Analysis(root_cause="r", source="llm"))
        fresh = AnalysisCache(tmp_path / "llm-cache.json", clock=clock)
        hit = fresh.get(UNKNOWN)
        assert hit.root_cause == "r"
        assert hit.source == "llm"

    def test_entry_without_source_loads_as_llm(self, tmp_path, clock):
        """Test entries stored without a source load as LLM analyses."""
        path = tmp_path / "llm-cache.json"
        key = hash_error(UNKNOWN)
        path.write_text(
            json.dumps(
                {
                    key: {
                        "errorHash": key,
                        "analysis": {"rootCause": "r"},
                        "cachedAt": "2025-01-15T12:00:00+00:00",
                        "expiresAt": "2025-01-16T12:00:00+00:00",
                    }
                }
            )
        )
        assert AnalysisCache(path, clock=clock).get(UNKNOWN).source == "llm"

    def test_corrupt_file_is_empty(self, tmp_path, clock):
        """Test a corrupt cache file loads as empty."""
        path = tmp_path / "llm-cache.json"
        path.write_text("{{{")
        assert len(AnalysisCache(path, clock=clock)) == 0

    def test_clear(self, cache):
        """Test clear drops every entry."""
        cache.put(UNKNOWN, Analysis(root_cause="r"))
        cache.clear()
        assert cache.get(UNKNOWN) is None


# ── Analyzer ─────────────────────────────────────────────────────────


class TestLLMAnalyzer:
    def test_model_aliases(self):
        """Test model aliases resolve to model IDs."""
        assert LLMAnalyzer(model="haiku").model_id == MODEL_MAP["haiku"]
        assert LLMAnalyzer(model="custom-model").model_id == "custom-model"

    def test_rule_result_cached(self, cache):
        """Test rule-based results are cached without an LLM call."""
        analyzer = LLMAnalyzer(cache=cache)
        first = analyzer.analyze("ENOENT: missing config")
        assert first.cached is False
        second = analyzer.analyze("ENOENT: missing config")
        assert second.cached is True
        assert second.root_cause == "File or resource not found"
        assert second.source == "pattern"
        assert analyzer.call_count == 0

    def test_llm_called_for_unknown(self, cache, clock):
        """Test unknown errors go to the LLM and are cached."""
        client = _client(_llm_json())
        analyzer = LLMAnalyzer(cache=cache, client=client, clock=clock)
        result = analyzer.analyze(UNKNOWN)
        assert result.root_cause == "Native extension crashed"
        assert analyzer.call_count == 1
        assert analyzer.last_call_ms == int(clock() * 1000)

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == MODEL_MAP["haiku"]
        assert UNKNOWN in kwargs["messages"][0]["content"]

        assert cache.get(UNKNOWN).root_cause == "Native extension crashed"

    def test_cache_hit_skips_call(self, cache, clock):
        """Test a cache hit does not call the LLM again."""
        client = _client(_llm_json())
        analyzer = LLMAnalyzer(cache=cache, client=client, clock=clock)
        analyzer.analyze(UNKNOWN)
        clock.advance(seconds=600)
        hit = analyzer.analyze(UNKNOWN)
        assert hit.cached is True
        assert hit.source == "llm"
        assert client.chat.completions.create.call_count == 1

    def test_throttled_after_cap(self, clock):
        """Test analysis is throttled once the session cap is reached."""
        client = _client(_llm_json())
        analyzer = LLMAnalyzer(
            client=client, max_per_session=1, cooldown_ms=0, clock=clock
        )
        analyzer.analyze(UNKNOWN)
        result = analyzer.analyze("Another mystery crash")
        assert result.throttled is True
        assert result.confidence == 0.3
        assert "max 1 calls per session" in result.throttle_reason
        assert analyzer.call_count == 1

    def test_throttled_during_cooldown(self, clock):
        """Test analysis is throttled during the cooldown."""
        analyzer = LLMAnalyzer(client=_client(_llm_json()), clock=clock)
        analyzer.analyze(UNKNOWN)
        clock.advance(seconds=10)
        result = analyzer.analyze("Another mystery crash")
        assert result.throttled is True
        assert analyzer.time_until_next_call() == 290000
        assert not analyzer.can_make_call()

    def test_malformed_response_falls_back(self, cache, clock):
        """Test an unparseable reply falls back and is not cached."""
        analyzer = LLMAnalyzer(cache=cache, client=_client("not json"), clock=clock)
        result = analyzer.analyze(UNKNOWN)
        assert result.root_cause == "Unknown error"
        assert result.source == "fallback"
        assert analyzer.call_count == 1
        assert cache.get(UNKNOWN) is None

    def test_api_error_falls_back(self, clock):
        """Test an API error falls back to the unknown analysis."""
        client = MagicMock()
        client.chat.completions.create.side_effect = RuntimeError("503")
        analyzer = LLMAnalyzer(client=client, clock=clock)
        result = analyzer.analyze(UNKNOWN)
        assert result.root_cause == "Unknown error"
        assert analyzer.call_count == 1

    def test_no_api_key_is_offline(self):
        """Test the analyzer runs offline without an API key."""
        analyzer = LLMAnalyzer()
        result = analyzer.analyze(UNKNOWN)
        assert result.source == "offline"
        assert analyzer.call_count == 0

    def test_admission_timeout_is_blocked(self, clock):
        """Test a full provider slot pool blocks the call."""
        controller = ConcurrencyController(default=1)
        controller.acquire("claude:haiku")
        analyzer = LLMAnalyzer(
            client=_client(_llm_json()),
            controller=controller,
            acquire_timeout_ms=20,
            clock=clock,
        )
        result = analyzer.analyze(UNKNOWN)
        assert result.throttled is True
        assert "claude:haiku" in result.throttle_reason
        assert analyzer.call_count == 0

    def test_lease_released_after_call(self, clock):
        """Test the provider slot is released after a call."""
        controller = ConcurrencyController(default=1)
        analyzer = LLMAnalyzer(
            client=_client(_llm_json()), controller=controller, clock=clock
        )
        analyzer.analyze(UNKNOWN)
        assert controller.available_slots("claude:haiku") == 1

    def test_sync_state(self, clock):
        """Test restored counters feed the throttle."""
        analyzer = LLMAnalyzer(max_per_session=3, clock=clock)
        analyzer.sync_state(3, 0)
        assert analyzer.check_throttle().throttled
