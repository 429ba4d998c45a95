"""
Campaign scope resolution.

Selects the grants a campaign certifies. The selection depends only on the
campaign's scope and the snapshot passed in.
"""

from typing import Dict, List

from ..engine.risk import review_item_risk
from ..models import AccessReviewCampaign, EntitlementGrant, ScopeType, UserProfile

SCOPE_KEYS = {
    ScopeType.DEPARTMENT: "departments",
    ScopeType.RISK_TIER: "risk_levels",
    ScopeType.APPS: "app_ids",
    ScopeType.USERS: "user_ids",
}


def resolve_scope(
    campaign: AccessReviewCampaign,
    users: List[UserProfile],
    grants_by_user: Dict[str, List[EntitlementGrant]],
) -> List[EntitlementGrant]:
    """
    Resolve the in-scope grants of a campaign.

    Scope config keys: ``departments`` for department scope, ``risk_levels``
    for risk_tier scope, ``app_ids`` for apps scope and ``user_ids`` for users
    scope. A filtered scope with an empty selection matches nothing.

    Args:
        campaign: The campaign being populated
        users: Directory records of the tenant
        grants_by_user: Current grants keyed by user id

    Returns:
        Grants of active users selected by the scope, in stable order
    """
    scope = campaign.scope_type
    selection = {v.lower() for v in campaign.scope_config.get(SCOPE_KEYS.get(scope, ""), [])}

    selected: List[EntitlementGrant] = []
    for user in sorted(users, key=lambda u: u.user_id):
        if not user.is_active:
            continue

        if scope == ScopeType.DEPARTMENT and (user.department or "").lower() not in selection:
            continue
        if scope == ScopeType.USERS and user.user_id.lower() not in selection:
            continue

        for grant in sorted(grants_by_user.get(user.user_id, []), key=lambda g: (g.app_id, g.access_type)):
            if scope == ScopeType.APPS and grant.app_id.lower() not in selection:
                continue
            if scope == ScopeType.RISK_TIER and review_item_risk(grant.access_type).value not in selection:
                continue
            selected.append(grant)

    return selected
