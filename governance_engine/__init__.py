"""
Access Governance & Review Engine

Continuous access certification for multi-tenant identity platforms:
access review campaigns, privilege drift detection, overprivileged account
detection and segregation-of-duties evaluation, driven by a scheduler
that isolates failures per tenant.
"""

__version__ = "1.0.0"
__author__ = "Governance Engine Team"
__email__ = "team@example.com"

from .campaigns.engine import CampaignEngine
from .detectors.drift import PrivilegeDriftDetector
from .detectors.overprivileged import OverprivilegedAccountDetector
from .detectors.sod import SoDEvaluator
from .engine.policy_store import RolePolicyStore
from .engine.state_manager import GovernanceStore
from .scheduler.orchestrator import Orchestrator
from .service import GovernanceService

__all__ = [
    "CampaignEngine",
    "GovernanceService",
    "GovernanceStore",
    "Orchestrator",
    "OverprivilegedAccountDetector",
    "PrivilegeDriftDetector",
    "RolePolicyStore",
    "SoDEvaluator",
]
