"""
Campaigns Package.

Exports the CampaignEngine and scope resolution.
"""

from .engine import CampaignEngine
from .scope import resolve_scope

__all__ = ["CampaignEngine", "resolve_scope"]
