"""
Governance Store for the Governance Engine.

Holds campaigns, review items, detector findings and scheduler bookkeeping.
Provides in-memory state with optional JSON file persistence. Every write is
a single-record upsert scoped by tenant and natural key.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..models import (
    AccessReviewCampaign,
    AlertStatus,
    CampaignStatus,
    CampaignType,
    JobRun,
    OverprivilegedAccountRecord,
    OverprivilegedStatus,
    PrivilegeDriftAlert,
    ReviewDecision,
    ReviewItem,
    SoDViolation,
    ViolationStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class GovernanceStore:
    """
    Tenant-scoped store for governance records.

    Lookups by id never cross tenants: a record that exists under another
    tenant is reported as missing.
    """

    def __init__(self, storage_path: Optional[Union[str, Path]] = None):
        """
        Initialize the store.

        Args:
            storage_path: Path to store governance state as JSON.
                         If None, state is kept in memory only.
        """
        self.storage_path = Path(storage_path) if storage_path else None
        self._lock = threading.RLock()

        self.campaigns: Dict[str, AccessReviewCampaign] = {}
        self.review_items: Dict[str, ReviewItem] = {}
        self.drift_alerts: Dict[str, PrivilegeDriftAlert] = {}
        self.overprivileged: Dict[str, OverprivilegedAccountRecord] = {}
        self.sod_violations: Dict[str, SoDViolation] = {}
        self.job_runs: Dict[str, JobRun] = {}
        self.notification_ledger: Dict[str, datetime] = {}
        self._item_keys: Dict[tuple, str] = {}
        self._batch_depth = 0
        self._dirty = False

        if self.storage_path:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

        logger.info(
            f"Initialized GovernanceStore with {'persistent' if self.storage_path else 'in-memory'} storage"
        )

    # Campaigns

    def save_campaign(self, campaign: AccessReviewCampaign) -> AccessReviewCampaign:
        with self._lock:
            self.campaigns[campaign.id] = campaign
            self._save_state()
        return campaign

    def get_campaign(self, tenant_id: str, campaign_id: str) -> Optional[AccessReviewCampaign]:
        campaign = self.campaigns.get(campaign_id)
        if campaign and campaign.tenant_id == tenant_id:
            return campaign
        return None

    def list_campaigns(
        self,
        tenant_id: str,
        status: Optional[CampaignStatus] = None,
        campaign_type: Optional[CampaignType] = None,
    ) -> List[AccessReviewCampaign]:
        with self._lock:
            campaigns = [c for c in self.campaigns.values() if c.tenant_id == tenant_id]
        if status:
            campaigns = [c for c in campaigns if c.status == status]
        if campaign_type:
            campaigns = [c for c in campaigns if c.campaign_type == campaign_type]
        return sorted(campaigns, key=lambda c: c.created_at)

    # Review items

    def add_review_item_if_absent(self, item: ReviewItem) -> bool:
        """
        Insert a review item unless one already exists for its natural key.

        Returns:
            True if the item was inserted
        """
        key = (item.tenant_id,) + item.natural_key
        with self._lock:
            if key in self._item_keys:
                return False
            self.review_items[item.id] = item
            self._item_keys[key] = item.id
            self._save_state()
        return True

    def save_review_item(self, item: ReviewItem) -> ReviewItem:
        with self._lock:
            self.review_items[item.id] = item
            self._item_keys[(item.tenant_id,) + item.natural_key] = item.id
            self._save_state()
        return item

    def get_review_item(self, tenant_id: str, item_id: str) -> Optional[ReviewItem]:
        item = self.review_items.get(item_id)
        if item and item.tenant_id == tenant_id:
            return item
        return None

    def list_review_items(
        self,
        tenant_id: str,
        campaign_id: str,
        decision: Optional[ReviewDecision] = None,
    ) -> List[ReviewItem]:
        with self._lock:
            items = [
                i for i in self.review_items.values()
                if i.tenant_id == tenant_id and i.campaign_id == campaign_id
            ]
        if decision:
            items = [i for i in items if i.decision == decision]
        return sorted(items, key=lambda i: (i.user_id, i.app_id, i.access_type))

    # Privilege drift alerts

    def save_drift_alert(self, alert: PrivilegeDriftAlert) -> PrivilegeDriftAlert:
        with self._lock:
            self.drift_alerts[alert.id] = alert
            self._save_state()
        return alert

    def get_drift_alert(self, tenant_id: str, alert_id: str) -> Optional[PrivilegeDriftAlert]:
        alert = self.drift_alerts.get(alert_id)
        if alert and alert.tenant_id == tenant_id:
            return alert
        return None

    def find_open_drift_alert(
        self, tenant_id: str, user_id: str, role_template_id: str
    ) -> Optional[PrivilegeDriftAlert]:
        with self._lock:
            for alert in self.drift_alerts.values():
                if (
                    alert.tenant_id == tenant_id
                    and alert.user_id == user_id
                    and alert.role_template_id == role_template_id
                    and alert.status == AlertStatus.OPEN
                ):
                    return alert
        return None

    def list_drift_alerts(
        self, tenant_id: str, status: Optional[AlertStatus] = None
    ) -> List[PrivilegeDriftAlert]:
        with self._lock:
            alerts = [a for a in self.drift_alerts.values() if a.tenant_id == tenant_id]
        if status:
            alerts = [a for a in alerts if a.status == status]
        return sorted(alerts, key=lambda a: a.risk_score, reverse=True)

    # Overprivileged account records

    def save_overprivileged(self, record: OverprivilegedAccountRecord) -> OverprivilegedAccountRecord:
        with self._lock:
            self.overprivileged[record.id] = record
            self._save_state()
        return record

    def get_overprivileged(self, tenant_id: str, record_id: str) -> Optional[OverprivilegedAccountRecord]:
        record = self.overprivileged.get(record_id)
        if record and record.tenant_id == tenant_id:
            return record
        return None

    def find_open_overprivileged(self, tenant_id: str, user_id: str) -> Optional[OverprivilegedAccountRecord]:
        """The user's open or in-remediation record, if any."""
        for record in self.find_overprivileged(tenant_id, user_id):
            if record.is_active:
                return record
        return None

    def find_overprivileged(self, tenant_id: str, user_id: str) -> List[OverprivilegedAccountRecord]:
        with self._lock:
            return [
                r for r in self.overprivileged.values()
                if r.tenant_id == tenant_id and r.user_id == user_id
            ]

    def list_overprivileged(
        self, tenant_id: str, status: Optional[OverprivilegedStatus] = None
    ) -> List[OverprivilegedAccountRecord]:
        with self._lock:
            records = [r for r in self.overprivileged.values() if r.tenant_id == tenant_id]
        if status:
            records = [r for r in records if r.status == status]
        return sorted(records, key=lambda r: r.risk_score, reverse=True)

    # SoD violations

    def save_sod_violation(self, violation: SoDViolation) -> SoDViolation:
        with self._lock:
            self.sod_violations[violation.id] = violation
            self._save_state()
        return violation

    def get_sod_violation(self, tenant_id: str, violation_id: str) -> Optional[SoDViolation]:
        violation = self.sod_violations.get(violation_id)
        if violation and violation.tenant_id == tenant_id:
            return violation
        return None

    def find_sod_violations(self, tenant_id: str, rule_id: str, user_id: str) -> List[SoDViolation]:
        with self._lock:
            return [
                v for v in self.sod_violations.values()
                if v.tenant_id == tenant_id and v.rule_id == rule_id and v.user_id == user_id
            ]

    def list_sod_violations(
        self,
        tenant_id: str,
        status: Optional[ViolationStatus] = None,
        user_id: Optional[str] = None,
    ) -> List[SoDViolation]:
        with self._lock:
            violations = [v for v in self.sod_violations.values() if v.tenant_id == tenant_id]
        if status:
            violations = [v for v in violations if v.status == status]
        if user_id:
            violations = [v for v in violations if v.user_id == user_id]
        return sorted(violations, key=lambda v: v.detected_at)

    # Scheduler bookkeeping

    def get_job_run(self, tenant_id: str, job: str) -> Optional[JobRun]:
        return self.job_runs.get(f"{tenant_id}:{job}")

    def set_job_run(self, tenant_id: str, job: str, period: str) -> JobRun:
        run = JobRun(tenant_id=tenant_id, job=job, last_run_period=period)
        with self._lock:
            self.job_runs[f"{tenant_id}:{job}"] = run
            self._save_state()
        return run

    def record_notification(self, key: str) -> bool:
        """
        Record a notification milestone in the dedupe ledger.

        Returns:
            True if the key was new, False if it was already recorded
        """
        with self._lock:
            if key in self.notification_ledger:
                return False
            self.notification_ledger[key] = utcnow()
            self._save_state()
        return True

    def has_notification(self, key: str) -> bool:
        return key in self.notification_ledger

    def get_summary(self, tenant_id: str) -> Dict[str, Any]:
        """
        Get a summary of governance records for a tenant.

        Returns:
            Dictionary with record counts by kind and status
        """
        summary: Dict[str, Any] = {
            "campaigns_by_status": {},
            "open_drift_alerts": 0,
            "open_overprivileged_accounts": 0,
            "sod_violations_by_status": {},
        }

        for campaign in self.list_campaigns(tenant_id):
            status = campaign.status.value
            summary["campaigns_by_status"][status] = summary["campaigns_by_status"].get(status, 0) + 1

        summary["open_drift_alerts"] = len(self.list_drift_alerts(tenant_id, AlertStatus.OPEN))
        summary["open_overprivileged_accounts"] = len(
            [r for r in self.list_overprivileged(tenant_id) if r.is_active]
        )

        for violation in self.list_sod_violations(tenant_id):
            status = violation.status.value
            summary["sod_violations_by_status"][status] = (
                summary["sod_violations_by_status"].get(status, 0) + 1
            )

        return summary

    @contextmanager
    def batch(self):
        """
        Group many writes into one save.

        Writes inside the block only mark the state dirty; the outermost
        block writes the file once on exit.
        """
        with self._lock:
            self._batch_depth += 1
        try:
            yield self
        finally:
            with self._lock:
                self._batch_depth -= 1
                if self._batch_depth == 0 and self._dirty:
                    self._dirty = False
                    self._save_state()

    def _save_state(self):
        """Save current state to persistent storage."""
        if not self.storage_path:
            return
        if self._batch_depth:
            self._dirty = True
            return

        try:
            state_data = {
                "campaigns": [c.model_dump(mode="json") for c in self.campaigns.values()],
                "review_items": [i.model_dump(mode="json") for i in self.review_items.values()],
                "drift_alerts": [a.model_dump(mode="json") for a in self.drift_alerts.values()],
                "overprivileged": [r.model_dump(mode="json") for r in self.overprivileged.values()],
                "sod_violations": [v.model_dump(mode="json") for v in self.sod_violations.values()],
                "job_runs": [r.model_dump(mode="json") for r in self.job_runs.values()],
                "notification_ledger": {
                    key: sent_at.isoformat() for key, sent_at in self.notification_ledger.items()
                },
                "last_updated": utcnow().isoformat(),
            }

            with open(self.storage_path, "w", encoding="utf-8") as f:
                json.dump(state_data, f, indent=2, default=str)

        except OSError as e:
            logger.error(f"Failed to save state to {self.storage_path}: {e}")

    def _load_state(self):
        """Load state from persistent storage."""
        if not self.storage_path or not self.storage_path.exists():
            return

        try:
            with open(self.storage_path, encoding="utf-8") as f:
                state_data = json.load(f)

            for data in state_data.get("campaigns", []):
                campaign = AccessReviewCampaign.model_validate(data)
                self.campaigns[campaign.id] = campaign

            for data in state_data.get("review_items", []):
                item = ReviewItem.model_validate(data)
                self.review_items[item.id] = item
                self._item_keys[(item.tenant_id,) + item.natural_key] = item.id

            for data in state_data.get("drift_alerts", []):
                alert = PrivilegeDriftAlert.model_validate(data)
                self.drift_alerts[alert.id] = alert

            for data in state_data.get("overprivileged", []):
                record = OverprivilegedAccountRecord.model_validate(data)
                self.overprivileged[record.id] = record

            for data in state_data.get("sod_violations", []):
                violation = SoDViolation.model_validate(data)
                self.sod_violations[violation.id] = violation

            for data in state_data.get("job_runs", []):
                run = JobRun.model_validate(data)
                self.job_runs[f"{run.tenant_id}:{run.job}"] = run

            for key, sent_at in state_data.get("notification_ledger", {}).items():
                self.notification_ledger[key] = datetime.fromisoformat(sent_at)

            logger.info(
                f"Loaded state for {len(self.campaigns)} campaigns and "
                f"{len(self.review_items)} review items from {self.storage_path}"
            )

        except (OSError, ValueError) as e:
            logger.error(f"Failed to load state from {self.storage_path}: {e}")
            # Continue with empty state if load fails
