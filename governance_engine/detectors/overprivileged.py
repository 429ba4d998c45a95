"""
Overprivileged Account Detector for the Governance Engine.

Flags users holding admin-level access to too many applications, recommends
downgrades for admin grants that have gone unused, and tracks each finding
through remediation, risk acceptance or resolution.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..audit.event_bus import OVERPRIVILEGED_RECORD_CREATED
from ..engine.risk import MAX_SCORE, is_admin_access, risk_level_for_score
from ..errors import InvalidTransition, RecordNotFound
from ..models import (
    SYSTEM_REVIEWER,
    AdminApp,
    AppDowngrade,
    EntitlementGrant,
    OverprivilegedAccountRecord,
    OverprivilegedStatus,
    OverprivResult,
    RemediationAction,
    RiskLevel,
    UserProfile,
    utcnow,
)
from .base import BaseDetector

logger = logging.getLogger(__name__)

SCORE_PER_ADMIN_APP = 10

RECOMMENDED_ACTIONS = {
    RiskLevel.CRITICAL: "Critical: Immediately revoke stale admin access and review all admin permissions",
    RiskLevel.HIGH: "High priority: Downgrade to standard user for unused apps, implement JIT access",
    RiskLevel.MEDIUM: "Review admin access justification and downgrade where appropriate",
    RiskLevel.LOW: "Monitor during next access review cycle",
}

CLEARED_NOTE = "Admin footprint no longer above threshold"


def least_privilege_alternative(admin_app_count: int) -> str:
    if admin_app_count >= 10:
        return "Implement Just-In-Time (JIT) access with 8-hour admin sessions instead of permanent admin rights"
    if admin_app_count >= 7:
        return "Use approval workflows for admin actions instead of permanent admin access"
    return "Downgrade to standard user and elevate on-demand with MFA verification"


class OverprivilegedAccountDetector(BaseDetector):
    """Detects users with admin access to at least ``threshold`` applications."""

    @property
    def threshold(self) -> int:
        return self.config.overprivileged_threshold

    def evaluate_user(
        self,
        user: UserProfile,
        grants: List[EntitlementGrant],
        now: Optional[datetime] = None,
    ) -> Optional[OverprivResult]:
        """
        Evaluate one user's admin footprint.

        Returns:
            OverprivResult, or None when the user is below the threshold
        """
        now = now or utcnow()
        admin_apps: Dict[str, AdminApp] = {}

        for grant in grants:
            if not is_admin_access(grant.access_type) or grant.app_id in admin_apps:
                continue
            days_unused = (now - grant.last_used_at).days if grant.last_used_at else None
            admin_apps[grant.app_id] = AdminApp(
                app_id=grant.app_id,
                access_type=grant.access_type,
                app_name=grant.app_name,
                days_since_last_use=days_unused,
            )

        count = len(admin_apps)
        if count < self.threshold:
            return None

        stale = sorted(
            (
                a for a in admin_apps.values()
                if a.days_since_last_use is not None and a.days_since_last_use >= self.config.stale_access_days
            ),
            key=lambda a: a.app_id,
        )
        score = min(MAX_SCORE, count * SCORE_PER_ADMIN_APP)
        level = risk_level_for_score(score)

        factors = [f"Admin access to {count} apps"]
        if stale:
            factors.append(
                f"{len(stale)} stale admin account{'s' if len(stale) > 1 else ''} "
                f"({self.config.stale_access_days}+ days unused)"
            )

        return OverprivResult(
            tenant_id=user.tenant_id,
            user_id=user.user_id,
            admin_app_count=count,
            admin_apps=sorted(admin_apps.values(), key=lambda a: a.app_id),
            stale_admin_count=len(stale),
            risk_score=score,
            risk_level=level,
            risk_factors=factors,
            recommended_action=RECOMMENDED_ACTIONS[level],
            recommended_apps_to_downgrade=[
                AppDowngrade(
                    app_id=a.app_id,
                    app_name=a.app_name,
                    current_access=a.access_type,
                    recommended_access=self.config.downgrade_access_type,
                )
                for a in stale
            ],
            least_privilege_alternative=least_privilege_alternative(count),
        )

    def scan_all(self, tenant_id: str, now: Optional[datetime] = None) -> List[OverprivResult]:
        """
        Scan every active user of a tenant.

        Returns:
            Results sorted by risk score, highest first
        """
        grants_by_user = self.source.grants_by_user(tenant_id)
        results = []

        for user in self.source.list_users(tenant_id):
            if not user.is_active:
                continue
            result = self.evaluate_user(user, grants_by_user.get(user.user_id, []), now)
            if result:
                results.append(result)

        results.sort(key=lambda r: r.risk_score, reverse=True)
        logger.info(f"Overprivileged scan for tenant {tenant_id} flagged {len(results)} users")
        return results

    def _upsert_record(
        self, result: OverprivResult, now: Optional[datetime] = None
    ) -> Tuple[OverprivilegedAccountRecord, str]:
        """Returns the record and one of "created", "updated" or "accepted"."""
        now = now or utcnow()
        records = self.store.find_overprivileged(result.tenant_id, result.user_id)

        for record in records:
            if record.is_active:
                record.admin_app_count = result.admin_app_count
                record.admin_apps = result.admin_apps
                record.stale_admin_count = result.stale_admin_count
                record.risk_score = result.risk_score
                record.risk_level = result.risk_level
                record.risk_factors = result.risk_factors
                record.recommended_action = result.recommended_action
                record.recommended_apps_to_downgrade = result.recommended_apps_to_downgrade
                record.least_privilege_alternative = result.least_privilege_alternative
                record.last_checked = now
                self.store.save_overprivileged(record)
                return record, "updated"

        for record in records:
            if record.risk_accepted_at(now):
                logger.debug(f"User {result.user_id} is covered by accepted risk {record.id}")
                return record, "accepted"

        record = OverprivilegedAccountRecord(**result.model_dump(), detected_at=now, last_checked=now)
        self.store.save_overprivileged(record)
        self._emit(OVERPRIVILEGED_RECORD_CREATED, record.tenant_id, {
            "recordId": record.id,
            "userId": record.user_id,
            "adminAppCount": record.admin_app_count,
            "riskLevel": record.risk_level.value,
        })
        logger.info(f"Created overprivileged record {record.id} for user {record.user_id}")
        return record, "created"

    def create_record(self, result: OverprivResult) -> OverprivilegedAccountRecord:
        """
        Record a result.

        Updates the user's open record if there is one. A user whose admin
        access is covered by an unexpired accepted risk gets no new record;
        the accepted record is returned instead.
        """
        record, _ = self._upsert_record(result)
        return record

    def sync_records(self, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Scan a tenant and reconcile its records.

        Open records of users no longer above the threshold are resolved by
        the system reviewer.
        """
        counts = {"created": 0, "updated": 0, "accepted": 0}
        flagged = set()
        with self.store.batch():
            for result in self.scan_all(tenant_id, now):
                _, outcome = self._upsert_record(result, now)
                counts[outcome] += 1
                flagged.add(result.user_id)

            closed = 0
            for record in self.store.list_overprivileged(tenant_id):
                if record.is_active and record.user_id not in flagged:
                    self._resolve(record, SYSTEM_REVIEWER, CLEARED_NOTE)
                    closed += 1

        if closed:
            logger.info(f"Closed {closed} overprivileged records in tenant {tenant_id}")
        return {
            "overprivileged_created": counts["created"],
            "overprivileged_updated": counts["updated"],
            "overprivileged_accepted": counts["accepted"],
            "overprivileged_closed": closed,
        }

    def get_record(self, tenant_id: str, record_id: str) -> OverprivilegedAccountRecord:
        record = self.store.get_overprivileged(tenant_id, record_id)
        if not record:
            raise RecordNotFound("Overprivileged account", record_id)
        return record

    def _get_active_record(self, tenant_id: str, record_id: str) -> OverprivilegedAccountRecord:
        record = self.get_record(tenant_id, record_id)
        if not record.is_active:
            raise InvalidTransition(f"Overprivileged record {record_id} is already {record.status.value}")
        return record

    def _resolve(self, record: OverprivilegedAccountRecord, resolved_by: str, notes: Optional[str]):
        record.status = OverprivilegedStatus.RESOLVED
        record.resolution_notes = notes
        record.resolved_by = resolved_by
        record.resolved_at = utcnow()
        self.store.save_overprivileged(record)

        self._audit(record.tenant_id, "overprivileged_resolution", resolved_by, record.id,
                    "Resolved overprivileged account", user_id=record.user_id)

    def resolve_record(
        self,
        tenant_id: str,
        record_id: str,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> OverprivilegedAccountRecord:
        """
        Resolve an open or in-remediation record.

        Raises:
            RecordNotFound: No such record for the tenant
            InvalidTransition: The record is already resolved or accepted
        """
        record = self._get_active_record(tenant_id, record_id)
        self._resolve(record, resolved_by, notes)
        return record

    def remediate_record(
        self,
        tenant_id: str,
        record_id: str,
        action: RemediationAction,
        remediated_by: str,
        plan: Optional[str] = None,
    ) -> OverprivilegedAccountRecord:
        """
        Start remediation of an overprivileged account.

        ``downgrade`` asks the access-link API to move every recommended
        stale admin grant to standard access and resolves the record.
        Individual downgrade failures are logged and audited, and the record
        stays in remediation if any of them failed. ``accept_risk`` moves
        the record to accepted risk. The other actions put the record in
        remediation with a deadline.

        Raises:
            RecordNotFound: No such record for the tenant
            InvalidTransition: The record is not open or in remediation, or
                a downgrade was requested with nothing to downgrade
        """
        record = self._get_active_record(tenant_id, record_id)
        if action == RemediationAction.DOWNGRADE and not record.recommended_apps_to_downgrade:
            raise InvalidTransition(f"Overprivileged record {record_id} has no stale admin apps to downgrade")

        record.remediation_action = action
        record.remediation_plan = plan
        self._audit(tenant_id, "overprivileged_remediation", remediated_by, record.id,
                    f"Remediation {action.value}", user_id=record.user_id)

        if action == RemediationAction.ACCEPT_RISK:
            record.status = OverprivilegedStatus.ACCEPTED_RISK
            self.store.save_overprivileged(record)
            return record

        record.status = OverprivilegedStatus.IN_REMEDIATION
        record.remediation_deadline = utcnow() + timedelta(days=self.config.remediation_deadline_days)

        if action != RemediationAction.DOWNGRADE:
            self.store.save_overprivileged(record)
            return record

        downgraded = 0
        for app in record.recommended_apps_to_downgrade:
            if self._change_access(tenant_id, record.user_id, app.app_id, app.current_access,
                                   app.recommended_access, actor=remediated_by, subject=record.id):
                downgraded += 1

        total = len(record.recommended_apps_to_downgrade)
        if downgraded == total:
            self._resolve(record, remediated_by, f"Downgraded {total} apps to standard user access")
        else:
            logger.warning(f"Downgraded {downgraded} of {total} apps for record {record.id}")
            self.store.save_overprivileged(record)
        return record

    def add_justification(
        self,
        tenant_id: str,
        record_id: str,
        justification: str,
        approved_by: str,
        expires_at: Optional[datetime] = None,
    ) -> OverprivilegedAccountRecord:
        """
        Accept the admin footprint on a business justification.

        Until ``expires_at`` passes, scans do not open a new record for the
        user.
        """
        record = self._get_active_record(tenant_id, record_id)
        record.status = OverprivilegedStatus.ACCEPTED_RISK
        record.justification = justification
        record.justification_approved_by = approved_by
        record.justification_expires_at = expires_at
        self.store.save_overprivileged(record)

        self._audit(tenant_id, "overprivileged_justification", approved_by, record.id,
                    "Accepted admin access on justification", user_id=record.user_id)
        return record

    def get_remediation_recommendation(self, tenant_id: str, record_id: str) -> Dict[str, Any]:
        record = self.get_record(tenant_id, record_id)
        apps = [
            {
                **app.model_dump(),
                "reason": f"Unused for {self.config.stale_access_days}+ days - downgrade to reduce risk",
            }
            for app in record.recommended_apps_to_downgrade
        ]
        return {
            "record_id": record.id,
            "apps_to_downgrade": apps,
            "least_privilege_alternative": record.least_privilege_alternative,
            "estimated_risk_reduction": min(len(apps) * SCORE_PER_ADMIN_APP, record.risk_score),
        }

    def get_statistics(self, tenant_id: str) -> Dict[str, Any]:
        """
        Summarize overprivileged records for a tenant.

        Returns:
            Counts by status and risk level, average admin apps of active
            records and remediation progress
        """
        records = self.store.list_overprivileged(tenant_id)
        active = [r for r in records if r.is_active]
        by_status = {status.value: 0 for status in OverprivilegedStatus}
        for record in records:
            by_status[record.status.value] += 1
        resolved = by_status[OverprivilegedStatus.RESOLVED.value]

        by_level = {level.value: 0 for level in RiskLevel}
        for record in active:
            by_level[record.risk_level.value] += 1

        average = round(sum(r.admin_app_count for r in active) / len(active), 1) if active else 0.0

        return {
            "total": len(records),
            "open": len(active),
            "resolved": resolved,
            "by_status": by_status,
            "by_risk_level": by_level,
            "average_admin_apps": average,
            "total_stale_admin": sum(r.stale_admin_count for r in active),
            "remediation_progress": round(resolved / len(records) * 100) if records else 100,
        }
