"""
Earnings Rules

Turns platform events into entitlements: ad revenue share by level,
daily spin prizes, referral tier bonuses and level upgrade fees.
"""

from .events import AdViewEvent, ClickEvent, OfferCompletionEvent, parse_ad_event
from .referrals import ReferralBonusCalculator
from .rule_engine import (
    EarningsRuleEngine,
    LevelPlan,
    ReferralTier,
    RewardsConfig,
    SpinSettings,
)
from .spin import SpinWheelController

__all__ = [
    "AdViewEvent",
    "ClickEvent",
    "OfferCompletionEvent",
    "parse_ad_event",
    "ReferralBonusCalculator",
    "EarningsRuleEngine",
    "LevelPlan",
    "ReferralTier",
    "RewardsConfig",
    "SpinSettings",
    "SpinWheelController",
]
