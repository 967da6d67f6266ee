"""
Referral hierarchy and commission calculation

This module provides:
- The three-level referral index (A-level edges only, B/C derived)
- Pure commission calculations for referral rewards and management bonuses
- One-time referral reward payouts through the ledger
"""

from .models import Ancestors, CommissionAward, ReferralEdge, ReferralLevel
from .hierarchy import ReferralHierarchyIndex
from .commission import (
    ReferralRewardService,
    compute_management_bonuses,
    compute_referral_rewards,
)

__all__ = [
    "Ancestors",
    "CommissionAward",
    "ReferralEdge",
    "ReferralLevel",
    "ReferralHierarchyIndex",
    "ReferralRewardService",
    "compute_management_bonuses",
    "compute_referral_rewards",
]
