"""
Campaign Engine for the Governance Engine.

This module runs access certification campaigns: it materialises review
items from the in-scope grants, records reviewer decisions, sends reminders
and escalations, and applies timeout auto-approval.
"""

import csv
import io
import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..audit.audit_logger import AuditLogger
from ..audit.event_bus import ACCESS_REVIEW_COMPLETED, EventBus
from ..config import GovernanceConfig
from ..connectors.base_connector import AccessLinkConnector, EntitlementSource, NotificationGateway
from ..engine.risk import review_item_risk
from ..engine.state_manager import GovernanceStore
from ..errors import (
    CampaignNotActive,
    ConcurrentDecisionConflict,
    DuplicateActiveCampaign,
    InvalidTransition,
    NotificationDeliveryFailed,
    RecordNotFound,
)
from ..models import (
    SYSTEM_REVIEWER,
    AccessReviewCampaign,
    CampaignConfig,
    CampaignProgress,
    CampaignStatus,
    CampaignType,
    EnforcementStatus,
    ReviewDecision,
    ReviewItem,
    ScopeType,
    utcnow,
)
from .scope import resolve_scope

logger = logging.getLogger(__name__)

ENFORCEMENT_PENDING_WARNING = "decision recorded, enforcement pending"
AUTO_APPROVE_NOTE = "Auto-approved after review deadline"

DECIDED = (ReviewDecision.APPROVED, ReviewDecision.REVOKED)


def quarter_of(moment: datetime) -> int:
    return (moment.month - 1) // 3 + 1


def days_until(due_date: datetime, now: datetime) -> int:
    """Whole days until the due date, rounded up; negative once overdue."""
    return math.ceil((due_date - now).total_seconds() / 86400)


class CampaignEngine:
    """
    Manages the lifecycle of access review campaigns.

    Campaign state machine: active -> completed, active -> cancelled.
    Overdue is derived from the due date and never stored.
    """

    def __init__(
        self,
        source: EntitlementSource,
        store: GovernanceStore,
        notifier: NotificationGateway,
        access_link: AccessLinkConnector,
        event_bus: Optional[EventBus] = None,
        audit_logger: Optional[AuditLogger] = None,
        config: Optional[GovernanceConfig] = None,
    ):
        self.source = source
        self.store = store
        self.notifier = notifier
        self.access_link = access_link
        self.event_bus = event_bus
        self.audit_logger = audit_logger
        self.config = config or GovernanceConfig()
        self._lock = threading.RLock()

    # Lookups

    def get_campaign(self, tenant_id: str, campaign_id: str) -> AccessReviewCampaign:
        campaign = self.store.get_campaign(tenant_id, campaign_id)
        if not campaign:
            raise RecordNotFound("Campaign", campaign_id)
        return campaign

    def _get_active_campaign(self, tenant_id: str, campaign_id: str) -> AccessReviewCampaign:
        campaign = self.get_campaign(tenant_id, campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            raise CampaignNotActive(f"Campaign {campaign_id} is {campaign.status.value}")
        return campaign

    def get_review_item(self, tenant_id: str, item_id: str) -> ReviewItem:
        item = self.store.get_review_item(tenant_id, item_id)
        if not item:
            raise RecordNotFound("Review item", item_id)
        return item

    # Creation

    def create_campaign(self, tenant_id: str, config: CampaignConfig) -> str:
        """
        Create an access review campaign.

        Args:
            tenant_id: Tenant the campaign certifies
            config: Campaign parameters

        Returns:
            The new campaign id

        Raises:
            DuplicateActiveCampaign: An active campaign of the same type and
                scope already exists for the tenant
        """
        with self._lock:
            for existing in self.store.list_campaigns(tenant_id, CampaignStatus.ACTIVE, config.campaign_type):
                if existing.scope_type == config.scope_type and existing.scope_config == config.scope_config:
                    raise DuplicateActiveCampaign(tenant_id, config.campaign_type.value, existing.id)

            campaign = AccessReviewCampaign(tenant_id=tenant_id, **config.model_dump())
            self.store.save_campaign(campaign)

        logger.info(f"Created {campaign.campaign_type.value} campaign '{campaign.name}' ({campaign.id}) for {tenant_id}")
        return campaign.id

    def create_quarterly_campaign(self, tenant_id: str, now: Optional[datetime] = None) -> str:
        """Create the tenant's quarterly campaign covering every grant."""
        now = now or utcnow()
        config = CampaignConfig(
            name=f"Q{quarter_of(now)} {now.year} Access Review",
            description="Quarterly access certification",
            campaign_type=CampaignType.QUARTERLY,
            scope_type=ScopeType.ALL,
            start_date=now,
            due_date=now + timedelta(days=self.config.campaign_duration_days),
            auto_approve_on_timeout=self.config.quarterly_auto_approve,
            created_by=SYSTEM_REVIEWER,
        )
        return self.create_campaign(tenant_id, config)

    def generate_review_items(self, tenant_id: str, campaign_id: str) -> int:
        """
        Materialise one pending review item per in-scope grant.

        Items are keyed by (campaign, user, app, access type), so repeated
        calls only add items for grants that appeared since the last call.

        Returns:
            Number of items newly created
        """
        campaign = self._get_active_campaign(tenant_id, campaign_id)
        users = self.source.list_users(tenant_id)
        directory = {u.user_id: u for u in users}
        grants = resolve_scope(campaign, users, self.source.grants_by_user(tenant_id))

        created = 0
        with self.store.batch():
            for grant in grants:
                user = directory[grant.user_id]
                item = ReviewItem(
                    tenant_id=tenant_id,
                    campaign_id=campaign.id,
                    user_id=grant.user_id,
                    app_id=grant.app_id,
                    access_type=grant.access_type,
                    app_name=grant.app_name,
                    user_name=user.name,
                    user_department=user.department,
                    assigned_reviewer_id=user.manager_id or campaign.created_by,
                    granted_at=grant.granted_at,
                    last_used_at=grant.last_used_at,
                    risk_level=review_item_risk(grant.access_type),
                )
                if self.store.add_review_item_if_absent(item):
                    created += 1

            with self._lock:
                campaign.items_generated = True
                self._refresh_counters(campaign)

        logger.info(f"Generated {created} review items for campaign {campaign.id} ({len(grants)} in scope)")
        return created

    # Decisions

    def record_decision(
        self,
        tenant_id: str,
        item_id: str,
        decision: ReviewDecision,
        reviewer_id: str,
        notes: Optional[str] = None,
    ) -> ReviewItem:
        """
        Record a reviewer decision on a review item.

        A revocation is forwarded to the access-link API. If that fails the
        decision stands and the item is marked for enforcement follow-up.

        Raises:
            RecordNotFound: Unknown item or campaign
            CampaignNotActive: The campaign is completed or cancelled
            ConcurrentDecisionConflict: The item is already approved or revoked
            InvalidTransition: ``decision`` is ``pending``
        """
        if decision == ReviewDecision.PENDING:
            raise InvalidTransition("A review item cannot be reset to pending")

        with self._lock:
            item = self.get_review_item(tenant_id, item_id)
            campaign = self._get_active_campaign(tenant_id, item.campaign_id)

            if item.decision in DECIDED:
                raise ConcurrentDecisionConflict(f"Review item {item_id} is already {item.decision.value}")

            item.decision = decision
            item.reviewer_id = reviewer_id
            item.decided_at = utcnow()
            item.notes = notes
            item.enforcement_status = (
                EnforcementStatus.PENDING if decision == ReviewDecision.REVOKED else EnforcementStatus.NOT_REQUIRED
            )
            self.store.save_review_item(item)

        if decision == ReviewDecision.REVOKED:
            self._enforce_revocation(item)

        self._audit(tenant_id, "review_decision", reviewer_id, item.id,
                    f"{decision.value} {item.app_id}:{item.access_type} for {item.user_id}",
                    campaign_id=campaign.id)

        with self._lock:
            self._refresh_counters(campaign)
            if self._all_decided(campaign):
                self._complete(campaign)

        return item

    def record_bulk_decision(
        self,
        tenant_id: str,
        item_ids: List[str],
        decision: ReviewDecision,
        reviewer_id: str,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Apply one decision to several items; per-item errors are collected."""
        succeeded: List[str] = []
        errors: Dict[str, str] = {}

        for item_id in item_ids:
            try:
                self.record_decision(tenant_id, item_id, decision, reviewer_id, notes)
                succeeded.append(item_id)
            except (RecordNotFound, CampaignNotActive, ConcurrentDecisionConflict, InvalidTransition) as e:
                errors[item_id] = str(e)

        return {"succeeded": succeeded, "errors": errors}

    def _enforce_revocation(self, item: ReviewItem):
        result = self.access_link.revoke_access(item.tenant_id, item.user_id, item.app_id, item.access_type)

        if result.success:
            item.enforcement_status = EnforcementStatus.COMPLETED
        else:
            item.enforcement_status = EnforcementStatus.FAILED
            item.warning = ENFORCEMENT_PENDING_WARNING
            logger.error(f"Revocation for review item {item.id} failed: {result.error or result.message}")

        self.store.save_review_item(item)
        self._audit(item.tenant_id, "revoke", item.reviewer_id or SYSTEM_REVIEWER, item.id,
                    f"Revoke {item.app_id}:{item.access_type} from {item.user_id}",
                    success=result.success, error_message=result.error)

    # Reminders, escalation and timeout

    def send_reminders(self, tenant_id: str, campaign_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Remind each reviewer with pending items, at most once per campaign per day.

        Returns:
            Summary with ``sent`` count, ``skipped`` flag and delivery ``warnings``
        """
        now = now or utcnow()
        campaign = self._get_active_campaign(tenant_id, campaign_id)

        if not self.store.record_notification(f"reminder:{campaign.id}:{now.date().isoformat()}"):
            logger.debug(f"Reminders for campaign {campaign.id} already sent on {now.date()}")
            return {"sent": 0, "skipped": True, "warnings": []}

        pending = self._pending_by_reviewer(campaign)
        days_left = days_until(campaign.due_date, now)
        sent = 0
        warnings: List[str] = []

        for reviewer_id, items in pending.items():
            subject = f"Reminder: {len(items)} access reviews pending in {campaign.name}"
            body = (
                f"You have {len(items)} pending access reviews in '{campaign.name}'. "
                f"The campaign is due on {campaign.due_date.date().isoformat()} ({days_left} days remaining)."
            )
            result = self.notifier.send(tenant_id, reviewer_id, subject, body, {
                "campaign_id": campaign.id,
                "pending_items": len(items),
                "days_remaining": days_left,
            })
            if result.success:
                sent += 1
            else:
                warnings.append(str(NotificationDeliveryFailed(reviewer_id, result.error or result.message)))

        logger.info(f"Sent {sent} reminders for campaign {campaign.id}")
        return {"sent": sent, "skipped": False, "warnings": warnings}

    def escalate_overdue_reviews(
        self,
        tenant_id: str,
        campaign_id: str,
        days_overdue: int,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Notify the manager of every reviewer who still has pending items.

        Each manager is alerted at most once per (campaign, days overdue)
        milestone. Reviewers without a known manager escalate to the campaign
        owner.

        Returns:
            Summary with ``escalated`` and ``suppressed`` counts and delivery ``warnings``
        """
        campaign = self._get_active_campaign(tenant_id, campaign_id)
        directory = {u.user_id: u for u in self.source.list_users(tenant_id)}

        by_manager: Dict[str, Dict[str, int]] = {}
        for reviewer_id, items in self._pending_by_reviewer(campaign).items():
            reviewer = directory.get(reviewer_id)
            manager_id = (reviewer.manager_id if reviewer else None) or campaign.created_by
            by_manager.setdefault(manager_id, {})[reviewer_id] = len(items)

        escalated = suppressed = 0
        warnings: List[str] = []

        for manager_id, reviewers in by_manager.items():
            key = f"escalation:{campaign.id}:{days_overdue}:{manager_id}"
            if self.store.has_notification(key):
                suppressed += 1
                continue

            lines = [f"- {rid}: {count} pending" for rid, count in sorted(reviewers.items())]
            subject = f"ESCALATION: Overdue access reviews in {campaign.name} ({days_overdue} days overdue)"
            body = "The following reviewers have overdue access reviews:\n" + "\n".join(lines)
            result = self.notifier.send(tenant_id, manager_id, subject, body, {
                "campaign_id": campaign.id,
                "days_overdue": days_overdue,
                "reviewers": reviewers,
            })

            if result.success:
                self.store.record_notification(key)
                escalated += 1
            else:
                warnings.append(str(NotificationDeliveryFailed(manager_id, result.error or result.message)))

        if escalated:
            logger.warning(f"Escalated campaign {campaign.id} to {escalated} managers ({days_overdue} days overdue)")
        return {"escalated": escalated, "suppressed": suppressed, "warnings": warnings}

    def auto_approve_pending_items(self, tenant_id: str, campaign_id: str) -> int:
        """
        Approve every pending item as the system reviewer.

        Only applies to campaigns created with ``auto_approve_on_timeout``.
        Deferred items are left for a human decision.

        Returns:
            Number of items approved
        """
        campaign = self._get_active_campaign(tenant_id, campaign_id)
        if not campaign.auto_approve_on_timeout:
            return 0

        approved = 0
        with self._lock, self.store.batch():
            for item in self.store.list_review_items(tenant_id, campaign.id, ReviewDecision.PENDING):
                item.decision = ReviewDecision.APPROVED
                item.reviewer_id = SYSTEM_REVIEWER
                item.decided_at = utcnow()
                item.notes = AUTO_APPROVE_NOTE
                self.store.save_review_item(item)
                approved += 1

            self._refresh_counters(campaign)
            if approved and self._all_decided(campaign):
                self._complete(campaign)

        if approved:
            self._audit(tenant_id, "auto_approve", SYSTEM_REVIEWER, campaign.id,
                        f"Auto-approved {approved} pending items")
            logger.info(f"Auto-approved {approved} items in campaign {campaign.id}")
        return approved

    # Completion

    def complete_campaign(self, tenant_id: str, campaign_id: str) -> Dict[str, Any]:
        """
        Complete an active campaign.

        Returns:
            The completion report
        """
        with self._lock:
            campaign = self._get_active_campaign(tenant_id, campaign_id)
            self._refresh_counters(campaign)
            return self._complete(campaign)

    def cancel_campaign(self, tenant_id: str, campaign_id: str, cancelled_by: str = SYSTEM_REVIEWER) -> AccessReviewCampaign:
        with self._lock:
            campaign = self._get_active_campaign(tenant_id, campaign_id)
            campaign.status = CampaignStatus.CANCELLED
            campaign.completed_at = utcnow()
            self.store.save_campaign(campaign)

        self._audit(tenant_id, "campaign_cancelled", cancelled_by, campaign.id, "Cancelled campaign")
        logger.info(f"Cancelled campaign {campaign.id}")
        return campaign

    def _complete(self, campaign: AccessReviewCampaign) -> Dict[str, Any]:
        campaign.status = CampaignStatus.COMPLETED
        campaign.completed_at = utcnow()
        self.store.save_campaign(campaign)

        report = self.build_completion_report(campaign)
        if self.event_bus:
            self.event_bus.emit(ACCESS_REVIEW_COMPLETED, campaign.tenant_id, {
                "tenantId": campaign.tenant_id,
                "campaignId": campaign.id,
                "campaignName": campaign.name,
                "totalItems": campaign.total_items,
                "reviewedItems": campaign.reviewed_items,
                "revokedItems": campaign.revoked_items,
            })
        logger.info(f"Campaign {campaign.id} completed")
        return report

    def build_completion_report(self, campaign: AccessReviewCampaign) -> Dict[str, Any]:
        """Summary of a campaign's outcome for compliance evidence."""
        items = self.store.list_review_items(campaign.tenant_id, campaign.id)
        reviewers = sorted({i.reviewer_id for i in items if i.reviewer_id})

        return {
            "campaign": {
                "id": campaign.id,
                "name": campaign.name,
                "type": campaign.campaign_type.value,
                "start_date": campaign.start_date.isoformat(),
                "due_date": campaign.due_date.isoformat(),
                "completed_at": campaign.completed_at.isoformat() if campaign.completed_at else None,
            },
            "summary": {
                "total_items": campaign.total_items,
                "reviewed_items": campaign.reviewed_items,
                "approved_items": campaign.approved_items,
                "revoked_items": campaign.revoked_items,
                "deferred_items": campaign.deferred_items,
                "pending_items": len([i for i in items if i.decision == ReviewDecision.PENDING]),
                "auto_approved_items": len([i for i in items if i.reviewer_id == SYSTEM_REVIEWER]),
                "failed_enforcements": len([i for i in items if i.enforcement_status == EnforcementStatus.FAILED]),
            },
            "reviewers": reviewers,
        }

    # Progress and export

    def get_campaign_progress(self, tenant_id: str, campaign_id: str, now: Optional[datetime] = None) -> CampaignProgress:
        now = now or utcnow()
        campaign = self.get_campaign(tenant_id, campaign_id)
        self._refresh_counters(campaign, persist=False)

        pending = campaign.total_items - campaign.reviewed_items - campaign.deferred_items
        percent = round(campaign.reviewed_items / campaign.total_items * 100) if campaign.total_items else 0

        return CampaignProgress(
            campaign_id=campaign.id,
            status=campaign.status,
            total_items=campaign.total_items,
            reviewed_items=campaign.reviewed_items,
            pending_items=pending,
            approved_items=campaign.approved_items,
            revoked_items=campaign.revoked_items,
            deferred_items=campaign.deferred_items,
            percent_complete=percent,
            days_remaining=days_until(campaign.due_date, now),
            is_overdue=campaign.status == CampaignStatus.ACTIVE and campaign.due_date < now,
        )

    def export_campaign_csv(self, tenant_id: str, campaign_id: str) -> str:
        """Render a campaign's items and decisions as CSV for auditors."""
        campaign = self.get_campaign(tenant_id, campaign_id)
        items = self.store.list_review_items(tenant_id, campaign.id)

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            "Campaign Name", "Campaign Type", "User ID", "User Name", "User Department",
            "Application", "Access Type", "Risk Level", "Granted Date", "Last Used Date",
            "Decision", "Reviewer", "Decision Date", "Decision Notes", "Enforcement Status",
        ])
        for item in items:
            writer.writerow([
                campaign.name,
                campaign.campaign_type.value,
                item.user_id,
                item.user_name or "",
                item.user_department or "",
                item.app_name or item.app_id,
                item.access_type,
                item.risk_level.value,
                item.granted_at.date().isoformat() if item.granted_at else "",
                item.last_used_at.date().isoformat() if item.last_used_at else "",
                item.decision.value,
                item.reviewer_id or "",
                item.decided_at.isoformat() if item.decided_at else "",
                item.notes or "",
                item.enforcement_status.value,
            ])

        return output.getvalue()

    # Helpers

    def _pending_by_reviewer(self, campaign: AccessReviewCampaign) -> Dict[str, List[ReviewItem]]:
        grouped: Dict[str, List[ReviewItem]] = {}
        for item in self.store.list_review_items(campaign.tenant_id, campaign.id, ReviewDecision.PENDING):
            grouped.setdefault(item.assigned_reviewer_id or campaign.created_by, []).append(item)
        return grouped

    def _refresh_counters(self, campaign: AccessReviewCampaign, persist: bool = True):
        items = self.store.list_review_items(campaign.tenant_id, campaign.id)
        campaign.total_items = len(items)
        campaign.approved_items = len([i for i in items if i.decision == ReviewDecision.APPROVED])
        campaign.revoked_items = len([i for i in items if i.decision == ReviewDecision.REVOKED])
        campaign.deferred_items = len([i for i in items if i.decision == ReviewDecision.DEFERRED])
        campaign.reviewed_items = campaign.approved_items + campaign.revoked_items
        if persist:
            self.store.save_campaign(campaign)

    @staticmethod
    def _all_decided(campaign: AccessReviewCampaign) -> bool:
        return campaign.total_items > 0 and campaign.reviewed_items == campaign.total_items

    def _audit(self, tenant_id: str, event_type: str, actor: str, subject: str, action: str,
               success: bool = True, error_message: Optional[str] = None, **metadata: Any):
        if self.audit_logger:
            self.audit_logger.record(tenant_id, event_type, actor, subject, action,
                                     success=success, error_message=error_message, **metadata)
