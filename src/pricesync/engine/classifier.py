"""Change classification: decide whether a proposed price replaces the local one.

Policy, in order:
1. Reject non-positive proposals (INVALID_VALUE).
2. Skip noise: relative AND absolute change below tolerance (WITHIN_TOLERANCE).
3. Reject changes beyond the increase/decrease caps (EXCEEDS_CAP).
4. Otherwise apply (APPLIED).

Percentages are relative to the local (pre-change) value. A local value
of zero is treated as a 100% increase.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pricesync.core.config import TenantPolicy


class ChangeReason(str, Enum):
    """Why a proposal was applied or not."""

    INVALID_VALUE = "invalid_value"
    WITHIN_TOLERANCE = "within_tolerance"
    EXCEEDS_CAP = "exceeds_cap"
    APPLIED = "applied"


@dataclass(frozen=True)
class Classification:
    """Result of classify()."""

    should_update: bool
    reason: ChangeReason
    change_percent: float
    change_amount: float

    @property
    def rejected(self) -> bool:
        """True when the proposal was refused (not merely a no-op)."""
        return self.reason in (ChangeReason.INVALID_VALUE, ChangeReason.EXCEEDS_CAP)


def change_percent(local: float, proposed: float) -> float:
    """Relative change against the local value, zero-division guarded."""
    if local == 0:
        return 0.0 if proposed == 0 else 100.0
    return (proposed - local) / local * 100


def classify(local: float, proposed: float, policy: TenantPolicy) -> Classification:
    """Classify a proposed value against the local one.

    Args:
        local: Current local value.
        proposed: Value computed from the ERP fact and pricing rules.
        policy: Tenant thresholds.

    Returns:
        Classification with the decision and the computed deltas.
    """
    amount = round(proposed - local, 2)
    percent = change_percent(local, proposed)

    if proposed <= 0:
        return Classification(False, ChangeReason.INVALID_VALUE, percent, amount)

    if (
        abs(percent) < policy.tolerance_band_percent
        and abs(amount) < policy.min_absolute_change
    ):
        return Classification(False, ChangeReason.WITHIN_TOLERANCE, percent, amount)

    if proposed == local:
        return Classification(False, ChangeReason.WITHIN_TOLERANCE, percent, amount)

    if policy.max_increase_percent is not None and percent > policy.max_increase_percent:
        return Classification(False, ChangeReason.EXCEEDS_CAP, percent, amount)

    if policy.max_decrease_percent is not None and percent < -policy.max_decrease_percent:
        return Classification(False, ChangeReason.EXCEEDS_CAP, percent, amount)

    return Classification(True, ChangeReason.APPLIED, percent, amount)
