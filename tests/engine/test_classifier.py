"""Tests for price change classification."""

from __future__ import annotations

import pytest

from pricesync.core.config import TenantPolicy
from pricesync.engine.classifier import ChangeReason, change_percent, classify


@pytest.fixture
def policy() -> TenantPolicy:
    return TenantPolicy()


class TestChangePercent:
    """Tests for change_percent."""

    def test_relative_to_local(self) -> None:
        assert change_percent(100, 110) == pytest.approx(10.0)
        assert change_percent(200, 150) == pytest.approx(-25.0)

    def test_zero_local_is_full_increase(self) -> None:
        """A zero local value should count as a 100% increase."""
        assert change_percent(0, 5) == 100.0
        assert change_percent(0, 0) == 0.0


class TestClassify:
    """Tests for classify."""

    @pytest.mark.parametrize("value", [0.01, 19.99, 100.0, 12345.67])
    def test_identical_values_never_update(self, policy: TenantPolicy, value: float) -> None:
        """classify(x, x) should never report a change."""
        decision = classify(value, value, policy)
        assert decision.should_update is False
        assert decision.reason == ChangeReason.WITHIN_TOLERANCE
        assert decision.rejected is False

    def test_within_tolerance_band(self, policy: TenantPolicy) -> None:
        """A 0.3% move on 100 should be treated as noise."""
        decision = classify(100.0, 100.3, policy)
        assert decision.should_update is False
        assert decision.reason == ChangeReason.WITHIN_TOLERANCE

    def test_outside_tolerance_band(self, policy: TenantPolicy) -> None:
        """A 2% move on 100 should be applied."""
        decision = classify(100.0, 102.0, policy)
        assert decision.should_update is True
        assert decision.reason == ChangeReason.APPLIED
        assert decision.change_percent == pytest.approx(2.0)
        assert decision.change_amount == 2.0

    def test_small_percent_but_large_amount_applies(self, policy: TenantPolicy) -> None:
        """Noise needs both a small percentage and a small amount."""
        decision = classify(10000.0, 10020.0, policy)
        assert decision.change_percent < policy.tolerance_band_percent
        assert decision.should_update is True

    def test_increase_cap(self, policy: TenantPolicy) -> None:
        """Doubling a price should exceed the 50% increase cap."""
        decision = classify(100.0, 200.0, policy)
        assert decision.should_update is False
        assert decision.reason == ChangeReason.EXCEEDS_CAP
        assert decision.rejected is True

    def test_decrease_cap(self, policy: TenantPolicy) -> None:
        """A 40% drop should exceed the 30% decrease cap."""
        decision = classify(100.0, 60.0, policy)
        assert decision.reason == ChangeReason.EXCEEDS_CAP

    def test_unbounded_caps(self) -> None:
        """None caps should let any positive change through."""
        policy = TenantPolicy(max_increase_percent=None, max_decrease_percent=None)
        assert classify(100.0, 1000.0, policy).should_update is True
        assert classify(100.0, 1.0, policy).should_update is True

    @pytest.mark.parametrize("proposed", [0.0, -5.0])
    def test_non_positive_rejected(self, policy: TenantPolicy, proposed: float) -> None:
        decision = classify(100.0, proposed, policy)
        assert decision.should_update is False
        assert decision.reason == ChangeReason.INVALID_VALUE
        assert decision.rejected is True

    def test_zero_local_is_capped(self, policy: TenantPolicy) -> None:
        """Pricing a free product counts as +100% and hits the cap."""
        decision = classify(0.0, 10.0, policy)
        assert decision.reason == ChangeReason.EXCEEDS_CAP
