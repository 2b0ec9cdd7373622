"""Tests for the per-order submission guard."""

from __future__ import annotations

import pytest

from src.credit_bridge.core.exceptions import DuplicateSubmissionError
from src.credit_bridge.credit.guard import SubmissionGuard


class TestSubmissionGuard:
    def test_try_acquire_claims_once(self):
        guard = SubmissionGuard()
        assert guard.try_acquire(42) is True
        assert guard.try_acquire(42) is False
        assert guard.is_held(42)

    def test_release_allows_reacquire(self):
        guard = SubmissionGuard()
        guard.try_acquire(42)
        guard.release(42)
        assert not guard.is_held(42)
        assert guard.try_acquire(42) is True

    def test_release_of_unheld_order_is_noop(self):
        SubmissionGuard().release(99)

    def test_orders_are_independent(self):
        guard = SubmissionGuard()
        assert guard.try_acquire(1)
        assert guard.try_acquire(2)

    def test_hold_rejects_second_holder(self):
        guard = SubmissionGuard()
        with guard.hold(5):
            with pytest.raises(DuplicateSubmissionError) as exc_info:
                with guard.hold(5):
                    pass
        assert exc_info.value.order_id == 5
        assert "5" in str(exc_info.value)

    def test_hold_releases_on_exception(self):
        guard = SubmissionGuard()
        with pytest.raises(RuntimeError):
            with guard.hold(5):
                raise RuntimeError("boom")
        assert not guard.is_held(5)

    def test_rejected_hold_keeps_original_claim(self):
        guard = SubmissionGuard()
        with guard.hold(5):
            with pytest.raises(DuplicateSubmissionError):
                with guard.hold(5):
                    pass
            assert guard.is_held(5)
        assert not guard.is_held(5)
