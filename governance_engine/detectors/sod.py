"""
Segregation of Duties Evaluator for the Governance Engine.

A violation exists when a user holds every entitlement of an active SoD
rule's conflict set. Accepted violations are remembered by fingerprint so
that the same accepted risk is not reported again.
"""

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from ..audit.event_bus import SOD_VIOLATION_CREATED
from ..errors import InvalidTransition, RecordNotFound
from ..models import (
    AppEntitlement,
    EntitlementGrant,
    SoDRule,
    SYSTEM_REVIEWER,
    SoDViolation,
    ViolationStatus,
    utcnow,
)
from .base import BaseDetector

logger = logging.getLogger(__name__)

RESOLVED_STATUSES = (ViolationStatus.REMEDIATED, ViolationStatus.ACCEPTED)
CLEARED_NOTE = "Conflicting entitlements no longer held"


def match_rule(rule: SoDRule, grants: List[EntitlementGrant]) -> Optional[List[AppEntitlement]]:
    """
    Check a user's grants against one rule.

    Returns:
        The held entitlements matching the conflict set, or None if at least
        one member of the set is not held
    """
    evidence: List[AppEntitlement] = []
    for ref in rule.conflicting_entitlements:
        matched = [g for g in grants if ref.matches(g)]
        if not matched:
            return None
        for grant in matched:
            entitlement = AppEntitlement(app_id=grant.app_id, access_type=grant.access_type, app_name=grant.app_name)
            if entitlement not in evidence:
                evidence.append(entitlement)
    return sorted(evidence, key=lambda e: (e.app_id, e.access_type))


def violation_fingerprint(rule: SoDRule, evidence: List[AppEntitlement]) -> str:
    """Stable hash of the rule definition and the evidence held against it."""
    material = {
        "rule": rule.id,
        "conflicts": sorted(ref.label for ref in rule.conflicting_entitlements),
        "evidence": sorted(f"{e.app_id}:{e.access_type}" for e in evidence),
    }
    return hashlib.sha256(json.dumps(material, sort_keys=True).encode("utf-8")).hexdigest()


class SoDEvaluator(BaseDetector):
    """Evaluates segregation-of-duties rules for a tenant."""

    def evaluate(self, tenant_id: str) -> List[SoDViolation]:
        """
        Evaluate every active rule against every active user.

        Creates a violation for each newly detected conflict and refreshes the
        evidence of open ones. A conflict matching an accepted violation with
        the same fingerprint is not reported again. Open violations of active
        rules whose conflict is no longer held are marked remediated by the
        system reviewer.

        Returns:
            Open violations found in this evaluation
        """
        rules = self.policy_store.get_active_sod_rules(tenant_id)
        grants_by_user = self.source.grants_by_user(tenant_id)
        users = [u for u in self.source.list_users(tenant_id) if u.is_active]
        found: List[SoDViolation] = []

        with self.store.batch():
            for rule in rules:
                for user in users:
                    if user.user_id in rule.exempted_users:
                        continue
                    evidence = match_rule(rule, grants_by_user.get(user.user_id, []))
                    if evidence is None:
                        continue
                    violation = self._upsert_violation(tenant_id, rule, user.user_id, evidence)
                    if violation:
                        found.append(violation)

            found_ids = {v.id for v in found}
            rule_ids = {r.id for r in rules}
            for violation in self.store.list_sod_violations(tenant_id, ViolationStatus.OPEN):
                if violation.rule_id in rule_ids and violation.id not in found_ids:
                    self._close(violation, ViolationStatus.REMEDIATED, SYSTEM_REVIEWER, CLEARED_NOTE)

        logger.info(
            f"SoD evaluation for tenant {tenant_id}: {len(found)} open violations across {len(rules)} rules"
        )
        return found

    def _upsert_violation(
        self, tenant_id: str, rule: SoDRule, user_id: str, evidence: List[AppEntitlement]
    ) -> Optional[SoDViolation]:
        now = utcnow()
        fingerprint = violation_fingerprint(rule, evidence)
        existing = self.store.find_sod_violations(tenant_id, rule.id, user_id)

        for violation in existing:
            if violation.status == ViolationStatus.OPEN:
                violation.evidence = evidence
                violation.fingerprint = fingerprint
                violation.severity = rule.severity
                violation.last_checked = now
                self.store.save_sod_violation(violation)
                return violation

        for violation in existing:
            if violation.status == ViolationStatus.ACCEPTED and violation.fingerprint == fingerprint:
                logger.debug(f"Conflict {rule.id} for {user_id} matches accepted violation {violation.id}")
                return None

        violation = SoDViolation(
            tenant_id=tenant_id,
            rule_id=rule.id,
            user_id=user_id,
            severity=rule.severity,
            evidence=evidence,
            fingerprint=fingerprint,
            compliance_framework=rule.compliance_framework,
            detected_at=now,
            last_checked=now,
        )
        self.store.save_sod_violation(violation)
        self._emit(SOD_VIOLATION_CREATED, tenant_id, {
            "violationId": violation.id,
            "ruleId": rule.id,
            "ruleName": rule.name,
            "userId": user_id,
            "severity": rule.severity.value,
        })
        logger.warning(f"SoD violation {violation.id}: user {user_id} breaks rule '{rule.name}'")
        return violation

    def check_grant(self, tenant_id: str, user_id: str, app_id: str, access_type: str) -> List[SoDRule]:
        """
        Check a prospective grant before it is made.

        Returns:
            Active rules the new grant would complete for the user
        """
        current = self.source.list_grants(tenant_id, user_id)
        proposed = EntitlementGrant(tenant_id=tenant_id, user_id=user_id, app_id=app_id, access_type=access_type)
        with_grant = current + [proposed]

        conflicts = []
        for rule in self.policy_store.get_active_sod_rules(tenant_id):
            if user_id in rule.exempted_users:
                continue
            if not any(ref.matches(proposed) for ref in rule.conflicting_entitlements):
                continue
            if match_rule(rule, with_grant) is not None and match_rule(rule, current) is None:
                conflicts.append(rule)

        if conflicts:
            logger.info(f"Grant {app_id}:{access_type} to {user_id} would break {len(conflicts)} SoD rules")
        return conflicts

    def get_violation(self, tenant_id: str, violation_id: str) -> SoDViolation:
        violation = self.store.get_sod_violation(tenant_id, violation_id)
        if not violation:
            raise RecordNotFound("SoD violation", violation_id)
        return violation

    def resolve_violation(
        self,
        tenant_id: str,
        violation_id: str,
        status: ViolationStatus,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> SoDViolation:
        """
        Move an open violation to ``remediated`` or ``accepted``.

        Raises:
            RecordNotFound: No such violation for the tenant
            InvalidTransition: The violation is not open, or the target status is not final
        """
        violation = self.get_violation(tenant_id, violation_id)
        if status not in RESOLVED_STATUSES:
            raise InvalidTransition(f"Cannot resolve a violation as {status.value}")
        if violation.status != ViolationStatus.OPEN:
            raise InvalidTransition(f"SoD violation {violation_id} is already {violation.status.value}")

        self._close(violation, status, resolved_by, notes)
        self._audit(tenant_id, "sod_resolution", resolved_by, violation.id,
                    f"Marked SoD violation {status.value}", rule_id=violation.rule_id,
                    user_id=violation.user_id)
        return violation

    def _close(self, violation: SoDViolation, status: ViolationStatus, resolved_by: str, notes: Optional[str]):
        violation.status = status
        violation.resolved_by = resolved_by
        violation.resolved_at = utcnow()
        violation.notes = notes
        self.store.save_sod_violation(violation)
        logger.info(f"SoD violation {violation.id} marked {status.value} by {resolved_by}")

    def get_compliance_report(self, tenant_id: str, framework: Optional[str] = None) -> Dict[str, Any]:
        """
        Summarize SoD posture for a tenant.

        Args:
            tenant_id: Tenant to report on
            framework: Restrict to rules tagged with this compliance framework

        Returns:
            Dictionary with rule coverage, violation counts and a compliance score
        """
        rules = self.policy_store.get_active_sod_rules(tenant_id)
        if framework:
            rules = [r for r in rules if (r.compliance_framework or "").lower() == framework.lower()]
        rule_ids = {r.id for r in rules}

        violations = [v for v in self.store.list_sod_violations(tenant_id) if v.rule_id in rule_ids]
        open_violations = [v for v in violations if v.status == ViolationStatus.OPEN]

        by_status = {status.value: 0 for status in ViolationStatus}
        for violation in violations:
            by_status[violation.status.value] += 1

        by_severity: Dict[str, int] = {}
        for violation in open_violations:
            by_severity[violation.severity.value] = by_severity.get(violation.severity.value, 0) + 1

        rules_in_violation = {v.rule_id for v in open_violations}
        per_rule = [
            {
                "rule_id": rule.id,
                "name": rule.name,
                "severity": rule.severity.value,
                "compliance_framework": rule.compliance_framework,
                "open_violations": len([v for v in open_violations if v.rule_id == rule.id]),
            }
            for rule in rules
        ]

        score = round((len(rules) - len(rules_in_violation)) / len(rules) * 100) if rules else 100

        return {
            "tenant_id": tenant_id,
            "framework": framework,
            "generated_at": utcnow().isoformat(),
            "active_rules": len(rules),
            "violations_by_status": by_status,
            "open_violations_by_severity": by_severity,
            "rules": per_rule,
            "compliance_score": score,
        }
