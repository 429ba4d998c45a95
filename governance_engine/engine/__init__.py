"""
Policy Engine Package.

This package provides the role policy and governance state components
used by the detectors, the campaign engine and the orchestrator.
"""

from .policy_store import RolePolicyStore
from .risk import access_rank, is_admin_access, risk_level_for_score
from .state_manager import GovernanceStore

__all__ = [
    "RolePolicyStore",
    "GovernanceStore",
    "access_rank",
    "is_admin_access",
    "risk_level_for_score",
]
