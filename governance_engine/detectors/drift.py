"""
Privilege Drift Detector for the Governance Engine.

Compares each user's actual grants against the entitlements their role
template expects, scores the difference and maintains one open drift alert
per (tenant, user, role template).
"""

import logging
from typing import Dict, List, Optional, Tuple

from ..audit.event_bus import DRIFT_ALERT_CREATED
from ..engine.risk import (
    MISSING_REQUIRED_WEIGHT,
    RANK_NAMES,
    access_rank,
    clamp_score,
    excess_weight,
    risk_level_for_score,
)
from ..errors import InvalidTransition, RecordNotFound
from ..models import (
    AlertStatus,
    AppEntitlement,
    DriftResolution,
    DriftResult,
    EntitlementGrant,
    ExpectedEntitlement,
    PrivilegeDriftAlert,
    RoleTemplate,
    SYSTEM_REVIEWER,
    UserProfile,
    utcnow,
)
from .base import BaseDetector

logger = logging.getLogger(__name__)

REVOKE_EXCESS = "Revoke excess access"
GRANT_OR_UPDATE_ROLE = "Grant required access or update role"
CLEARED_NOTE = "Drift no longer detected"


def _entitlement(grant: EntitlementGrant) -> AppEntitlement:
    return AppEntitlement(app_id=grant.app_id, access_type=grant.access_type, app_name=grant.app_name)


def compute_drift(user: UserProfile, template: RoleTemplate, grants: List[EntitlementGrant]) -> DriftResult:
    """
    Compare a user's grants with their role template.

    A grant on an expected app at the same or a higher rank covers the
    expectation. Higher-than-expected grants are reported as elevated with
    zero weight; apps the template does not mention are excess.

    Args:
        user: The user's directory record
        template: Role template that applies to the user
        grants: The user's current grants

    Returns:
        DriftResult with evidence, score and recommended action
    """
    expected: Dict[str, List[ExpectedEntitlement]] = {}
    for entry in template.expected_apps:
        expected.setdefault(entry.app_id, []).append(entry)

    held: Dict[str, List[EntitlementGrant]] = {}
    for grant in grants:
        held.setdefault(grant.app_id, []).append(grant)

    excess: List[AppEntitlement] = []
    elevated: List[AppEntitlement] = []
    missing: List[AppEntitlement] = []
    factors: List[str] = []
    excess_score = 0

    for grant in sorted(grants, key=lambda g: (g.app_id, g.access_type)):
        app_label = grant.app_name or grant.app_id
        expectations = expected.get(grant.app_id)

        if not expectations:
            excess.append(_entitlement(grant))
            excess_score += excess_weight(grant.access_type)
            factors.append(f"Unauthorized {grant.access_type} access to {app_label}")
            continue

        highest_expected = max(access_rank(e.access_type) for e in expectations)
        if access_rank(grant.access_type) > highest_expected:
            elevated.append(_entitlement(grant))
            factors.append(
                f"Elevated {grant.access_type} access to {app_label} "
                f"(role expects {RANK_NAMES[highest_expected]})"
            )

    for entry in template.expected_apps:
        if not entry.required:
            continue
        needed = access_rank(entry.access_type)
        if any(access_rank(g.access_type) >= needed for g in held.get(entry.app_id, [])):
            continue
        missing.append(AppEntitlement(app_id=entry.app_id, access_type=entry.access_type, app_name=entry.app_name))
        factors.append(f"Missing required {entry.access_type} access to {entry.app_name or entry.app_id}")

    missing_score = len(missing) * MISSING_REQUIRED_WEIGHT
    score = clamp_score(excess_score + missing_score)

    if excess or missing:
        action = REVOKE_EXCESS if excess_score >= missing_score else GRANT_OR_UPDATE_ROLE
    else:
        action = ""

    return DriftResult(
        tenant_id=user.tenant_id,
        user_id=user.user_id,
        role_template_id=template.id,
        excess_apps=excess,
        missing_apps=missing,
        elevated_apps=elevated,
        risk_score=score,
        risk_level=risk_level_for_score(score),
        risk_factors=factors,
        recommended_action=action,
    )


class PrivilegeDriftDetector(BaseDetector):
    """Detects users whose access has drifted from their role template."""

    def scan_user(self, user: UserProfile, grants: Optional[List[EntitlementGrant]] = None) -> Optional[DriftResult]:
        """
        Scan a single user.

        Args:
            user: The user to scan
            grants: The user's grants; read from the entitlement source when omitted

        Returns:
            DriftResult (possibly without drift), or None if no role template applies
        """
        template = self.policy_store.get_template_for_user(user)
        if not template:
            logger.debug(f"No role template for user {user.user_id}, skipping drift check")
            return None

        if grants is None:
            grants = self.source.list_grants(user.tenant_id, user.user_id)

        return compute_drift(user, template, grants)

    def scan_all(self, tenant_id: str) -> List[DriftResult]:
        """
        Scan every active user of a tenant.

        Returns:
            Results for users with excess or missing entitlements
        """
        grants_by_user = self.source.grants_by_user(tenant_id)
        results = []

        for user in self.source.list_users(tenant_id):
            if not user.is_active:
                continue
            result = self.scan_user(user, grants_by_user.get(user.user_id, []))
            if result and result.has_drift:
                results.append(result)

        logger.info(f"Drift scan for tenant {tenant_id} found {len(results)} users with drift")
        return results

    def _upsert_alert(self, result: DriftResult) -> Tuple[PrivilegeDriftAlert, bool]:
        now = utcnow()
        alert = self.store.find_open_drift_alert(result.tenant_id, result.user_id, result.role_template_id)

        if alert:
            alert.excess_apps = result.excess_apps
            alert.missing_apps = result.missing_apps
            alert.elevated_apps = result.elevated_apps
            alert.risk_score = result.risk_score
            alert.risk_level = result.risk_level
            alert.risk_factors = result.risk_factors
            alert.recommended_action = result.recommended_action
            alert.last_checked = now
            self.store.save_drift_alert(alert)
            return alert, False

        alert = PrivilegeDriftAlert(
            **result.model_dump(exclude={"excess_apps", "missing_apps", "elevated_apps"}),
            excess_apps=result.excess_apps,
            missing_apps=result.missing_apps,
            elevated_apps=result.elevated_apps,
            detected_at=now,
            last_checked=now,
        )
        self.store.save_drift_alert(alert)
        self._emit(DRIFT_ALERT_CREATED, alert.tenant_id, {
            "alertId": alert.id,
            "userId": alert.user_id,
            "roleTemplateId": alert.role_template_id,
            "riskScore": alert.risk_score,
            "riskLevel": alert.risk_level.value,
        })
        logger.info(f"Created drift alert {alert.id} for user {alert.user_id} (score {alert.risk_score})")
        return alert, True

    def create_drift_alert(self, result: DriftResult) -> PrivilegeDriftAlert:
        """
        Record a drift result.

        Updates the open alert for the same user and role template, or opens
        a new one when none exists.

        Raises:
            InvalidTransition: The result has no excess or missing entitlements
        """
        if not result.has_drift:
            raise InvalidTransition(f"No drift for user {result.user_id}; nothing to record")
        alert, _ = self._upsert_alert(result)
        return alert

    def sync_alerts(self, tenant_id: str) -> Dict[str, int]:
        """
        Scan a tenant and upsert an alert for every result.

        Open alerts whose user and role template no longer show drift are
        resolved as ``cleared`` by the system reviewer.
        """
        created = updated = closed = 0
        detected = set()
        with self.store.batch():
            for result in self.scan_all(tenant_id):
                _, is_new = self._upsert_alert(result)
                detected.add((result.user_id, result.role_template_id))
                if is_new:
                    created += 1
                else:
                    updated += 1

            for alert in self.store.list_drift_alerts(tenant_id, AlertStatus.OPEN):
                if (alert.user_id, alert.role_template_id) not in detected:
                    self._close(alert, DriftResolution.CLEARED, SYSTEM_REVIEWER, CLEARED_NOTE)
                    closed += 1

        return {"drift_alerts_created": created, "drift_alerts_updated": updated, "drift_alerts_closed": closed}

    def get_alert(self, tenant_id: str, alert_id: str) -> PrivilegeDriftAlert:
        alert = self.store.get_drift_alert(tenant_id, alert_id)
        if not alert:
            raise RecordNotFound("Drift alert", alert_id)
        return alert

    def resolve_alert(
        self,
        tenant_id: str,
        alert_id: str,
        resolution_type: DriftResolution,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> PrivilegeDriftAlert:
        """
        Resolve an open drift alert.

        A ``revoked`` resolution asks the access-link API to remove every
        excess entitlement. Revocation failures are logged and audited but do
        not block the resolution.

        Raises:
            RecordNotFound: No such alert for the tenant
            InvalidTransition: The alert is not open
        """
        alert = self.get_alert(tenant_id, alert_id)
        if alert.status != AlertStatus.OPEN:
            raise InvalidTransition(f"Drift alert {alert_id} is already {alert.status.value}")

        if resolution_type == DriftResolution.REVOKED:
            for entitlement in alert.excess_apps:
                self._revoke(tenant_id, alert.user_id, entitlement.app_id, entitlement.access_type,
                             actor=resolved_by, subject=alert.id)

        self._close(alert, resolution_type, resolved_by, notes)
        self._audit(tenant_id, "drift_resolution", resolved_by, alert.id,
                    f"Resolved drift alert as {resolution_type.value}", user_id=alert.user_id)
        return alert

    def _close(self, alert: PrivilegeDriftAlert, resolution_type: DriftResolution,
               resolved_by: str, notes: Optional[str]):
        alert.status = AlertStatus.RESOLVED
        alert.resolution_type = resolution_type
        alert.resolution_notes = notes
        alert.resolved_by = resolved_by
        alert.resolved_at = utcnow()
        self.store.save_drift_alert(alert)
        logger.info(f"Resolved drift alert {alert.id} as {resolution_type.value}")
