"""
Risk scoring helpers shared by the detectors and the campaign engine.
"""

from typing import Dict

from ..models import RiskLevel

READ = 1
WRITE = 2
ADMIN = 3

ACCESS_RANKS: Dict[str, int] = {
    "read": READ,
    "viewer": READ,
    "member": READ,
    "write": WRITE,
    "editor": WRITE,
    "contributor": WRITE,
    "admin": ADMIN,
    "owner": ADMIN,
    "super-admin": ADMIN,
}

RANK_NAMES = {READ: "read", WRITE: "write", ADMIN: "admin"}

MISSING_REQUIRED_WEIGHT = 2
MAX_SCORE = 100


def access_rank(access_type: str) -> int:
    """Rank of an access type; unknown types rank as read."""
    return ACCESS_RANKS.get((access_type or "").strip().lower(), READ)


def is_admin_access(access_type: str) -> bool:
    return access_rank(access_type) == ADMIN


def excess_weight(access_type: str) -> int:
    """Weight of one excess entitlement: admin 3, write 2, read 1."""
    return access_rank(access_type)


def clamp_score(score: int) -> int:
    return max(0, min(MAX_SCORE, score))


def risk_level_for_score(score: int) -> RiskLevel:
    """
    Map a 0-100 score onto the shared risk bands.

    0-24 low, 25-49 medium, 50-74 high, 75-100 critical.
    """
    if score >= 75:
        return RiskLevel.CRITICAL
    if score >= 50:
        return RiskLevel.HIGH
    if score >= 25:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def review_item_risk(access_type: str) -> RiskLevel:
    """Risk level shown on a review item, derived from its access level."""
    rank = access_rank(access_type)
    if rank == ADMIN:
        return RiskLevel.HIGH
    if rank == WRITE:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW
