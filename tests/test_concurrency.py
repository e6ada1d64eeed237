"""Tests for the concurrency admission controller."""

import threading
import time

import pytest

from loop_medic.exceptions import AdmissionResetError, AdmissionTimeoutError
from loop_medic.services.concurrency import ConcurrencyController, make_key


@pytest.fixture
def controller():
    return ConcurrencyController(
        default=3,
        providers={"claude": 2, "gemini": 3},
        models={"claude-opus": 1, "haiku": 4},
    )


class TestLimits:
    def test_make_key(self):
        """Test provider and model join into a key."""
        assert make_key("claude", "opus") == "claude:opus"

    def test_provider_model_most_specific(self, controller):
        """Test a provider:model limit beats broader ones."""
        assert controller.get_limit("claude:opus") == 1

    def test_bare_model(self, controller):
        """Test a model limit applies without a provider limit."""
        assert controller.get_limit("claude:haiku") == 4

    def test_provider(self, controller):
        """Test a provider limit applies to its models."""
        assert controller.get_limit("claude:sonnet") == 2
        assert controller.get_limit("gemini") == 3

    def test_default(self, controller):
        """Test unknown keys get the default limit."""
        assert controller.get_limit("openai:gpt") == 3


class TestAcquire:
    def test_acquire_and_release(self, controller):
        """Test acquiring and releasing a slot."""
        lease = controller.acquire("claude:sonnet")
        assert controller.available_slots("claude:sonnet") == 1
        lease.release()
        assert controller.available_slots("claude:sonnet") == 2

    def test_lease_releases_once(self, controller):
        """Test releasing a lease twice frees one slot."""
        with controller.lease("claude:sonnet") as lease:
            pass
        lease.release()
        assert controller.available_slots("claude:sonnet") == 2

    def test_timeout_when_full(self, controller):
        """Test acquire times out when every slot is taken."""
        controller.acquire("claude:opus")
        with pytest.raises(AdmissionTimeoutError, match="claude:opus"):
            controller.acquire("claude:opus", timeout_ms=50)
        assert controller.queue_length("claude:opus") == 0

    def test_timeout_error_is_timeout(self):
        """Test the admission error is a TimeoutError."""
        assert issubclass(AdmissionTimeoutError, TimeoutError)

    def test_release_hands_slot_to_waiter(self, controller):
        """Test a released slot goes to a waiting caller."""
        first = controller.acquire("claude:opus")
        acquired = threading.Event()

        def waiter():
            with controller.acquire("claude:opus", timeout_ms=2000):
                acquired.set()

        thread = threading.Thread(target=waiter)
        thread.start()
        deadline = time.monotonic() + 2
        while controller.queue_length("claude:opus") == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert not acquired.is_set()

        first.release()
        thread.join(timeout=2)
        assert acquired.is_set()
        assert controller.available_slots("claude:opus") == 1

    def test_waiters_served_fifo(self, controller):
        """Test waiters are admitted in arrival order."""
        held = controller.acquire("claude:opus")
        order = []

        def waiter(name):
            lease = controller.acquire("claude:opus", timeout_ms=3000)
            order.append(name)
            lease.release()

        threads = []
        for name in ("a", "b", "c"):
            t = threading.Thread(target=waiter, args=(name,))
            t.start()
            threads.append(t)
            deadline = time.monotonic() + 2
            while (
                controller.queue_length("claude:opus") < len(threads)
                and time.monotonic() < deadline
            ):
                time.sleep(0.01)

        held.release()
        for t in threads:
            t.join(timeout=3)
        assert order == ["a", "b", "c"]

    def test_reset_rejects_waiters(self, controller):
        """Test reset fails pending waiters."""
        controller.acquire("claude:opus")
        errors = []

        def waiter():
            try:
                controller.acquire("claude:opus", timeout_ms=3000)
            except AdmissionResetError as e:
                errors.append(e)

        thread = threading.Thread(target=waiter)
        thread.start()
        deadline = time.monotonic() + 2
        while controller.queue_length("claude:opus") == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        controller.reset()
        thread.join(timeout=3)
        assert len(errors) == 1
        assert controller.available_slots("claude:opus") == 1


class TestStats:
    def test_stats(self, controller):
        """Test the per-key slot usage summary."""
        controller.acquire("claude:sonnet")
        controller.acquire("claude:sonnet")
        controller.acquire("gemini:pro")
        stats = controller.stats()
        assert stats.active_slots == {"claude:sonnet": 2, "gemini:pro": 1}
        assert stats.total_active == 3
        assert stats.total_queued == 0
