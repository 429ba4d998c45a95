"""
Orchestrator for the Governance Engine.

Runs the four periodic governance jobs across every tenant:

- quarterly_campaigns: opens the quarterly certification campaign
- drift_scan: daily privilege drift scan plus SoD evaluation
- overprivileged_scan: weekly admin-footprint scan
- review_pass: daily reminders, escalations and timeout auto-approval

Tenants are processed one after another; a failure in one tenant is recorded
in the job's BatchReport and never stops the others.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..audit.event_bus import ACCESS_REVIEW_OVERDUE, COMPLIANCE_CHECK_COMPLETED, EventBus
from ..campaigns.engine import CampaignEngine, days_until, quarter_of
from ..config import GovernanceConfig
from ..connectors.base_connector import EntitlementSource
from ..detectors.drift import PrivilegeDriftDetector
from ..detectors.overprivileged import OverprivilegedAccountDetector
from ..detectors.sod import SoDEvaluator
from ..engine.state_manager import GovernanceStore
from ..errors import DownstreamUnavailable, DuplicateActiveCampaign
from ..models import BatchReport, CampaignStatus, TenantResult, utcnow

logger = logging.getLogger(__name__)

QUARTERLY_CAMPAIGNS = "quarterly_campaigns"
DRIFT_SCAN = "drift_scan"
OVERPRIVILEGED_SCAN = "overprivileged_scan"
REVIEW_PASS = "review_pass"

JOBS = [QUARTERLY_CAMPAIGNS, DRIFT_SCAN, OVERPRIVILEGED_SCAN, REVIEW_PASS]


class Orchestrator:
    """
    Time-triggered driver for the governance jobs.

    Each (tenant, job) pair remembers the last period it completed, so a job
    runs at most once per period no matter how often it ticks. A job whose
    previous tick is still running is skipped, never queued.
    """

    def __init__(
        self,
        source: EntitlementSource,
        store: GovernanceStore,
        campaign_engine: CampaignEngine,
        drift_detector: PrivilegeDriftDetector,
        overprivileged_detector: OverprivilegedAccountDetector,
        sod_evaluator: SoDEvaluator,
        event_bus: Optional[EventBus] = None,
        config: Optional[GovernanceConfig] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            source: Entitlement source that lists the tenants
            store: Governance store holding job bookkeeping
            campaign_engine: Campaign engine for quarterly campaigns and review passes
            drift_detector: Privilege drift detector
            overprivileged_detector: Overprivileged account detector
            sod_evaluator: SoD evaluator, run with the drift scan
            event_bus: Receives overdue and compliance-check events
            config: Cadence and milestone settings
        """
        self.source = source
        self.store = store
        self.campaign_engine = campaign_engine
        self.drift_detector = drift_detector
        self.overprivileged_detector = overprivileged_detector
        self.sod_evaluator = sod_evaluator
        self.event_bus = event_bus
        self.config = config or GovernanceConfig()

        self._handlers: Dict[str, Callable[[str, datetime], Dict[str, Any]]] = {
            QUARTERLY_CAMPAIGNS: self._run_quarterly_campaigns,
            DRIFT_SCAN: self._run_drift_scan,
            OVERPRIVILEGED_SCAN: self._run_overprivileged_scan,
            REVIEW_PASS: self._run_review_pass,
        }
        self._locks = {job: threading.Lock() for job in JOBS}
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._running = False

    # Scheduling

    def period_for(self, job: str, now: datetime) -> Optional[str]:
        """
        Idempotency key of the period ``now`` falls in for a job.

        Returns:
            Period key, or None when the job is not scheduled at ``now``
        """
        if job == QUARTERLY_CAMPAIGNS:
            return f"{now.year}-Q{quarter_of(now)}"
        if job in (DRIFT_SCAN, REVIEW_PASS):
            return now.date().isoformat()
        if job == OVERPRIVILEGED_SCAN:
            if now.weekday() != self.config.overprivileged_weekday_index:
                return None
            year, week, _ = now.isocalendar()
            return f"{year}-W{week:02d}"
        raise ValueError(f"Unknown job: {job}")

    def run_job(self, job: str, now: Optional[datetime] = None) -> BatchReport:
        """
        Run one job tick synchronously across all tenants.

        Args:
            job: One of quarterly_campaigns, drift_scan, overprivileged_scan, review_pass
            now: Clock override

        Returns:
            BatchReport with one TenantResult per tenant
        """
        if job not in self._handlers:
            raise ValueError(f"Unknown job: {job}")

        now = now or utcnow()
        period = self.period_for(job, now)
        report = BatchReport(job=job, period=period or "")

        lock = self._locks[job]
        if not lock.acquire(blocking=False):
            logger.warning(f"Job {job} is still running; skipping this tick")
            report.skipped = True
            report.completed_at = utcnow()
            return report

        try:
            if period is None:
                logger.debug(f"Job {job} is not scheduled at {now.isoformat()}")
                report.skipped = True
                return report

            try:
                tenants = self.source.list_tenants()
            except DownstreamUnavailable as e:
                logger.error(f"Job {job}: cannot list tenants: {e}")
                return report

            for tenant_id in tenants:
                report.results.append(self._run_tenant(job, tenant_id, period, now))

            return report

        finally:
            report.completed_at = report.completed_at or utcnow()
            lock.release()
            if not report.skipped:
                logger.info(f"Job {job} finished: {report.to_summary()}")

    def run_all(self, now: Optional[datetime] = None) -> List[BatchReport]:
        """Run every job once, in a fixed order."""
        now = now or utcnow()
        return [self.run_job(job, now) for job in JOBS]

    def _run_tenant(self, job: str, tenant_id: str, period: str, now: datetime) -> TenantResult:
        last = self.store.get_job_run(tenant_id, job)
        if last and last.last_run_period == period:
            return TenantResult(tenant_id=tenant_id, success=True, skipped=True,
                                summary={"reason": f"already ran for {period}"})

        try:
            summary = self._handlers[job](tenant_id, now)
        except Exception as e:
            logger.exception(f"Job {job} failed for tenant {tenant_id}: {e}")
            return TenantResult(tenant_id=tenant_id, success=False, error=str(e), error_type=type(e).__name__)

        self.store.set_job_run(tenant_id, job, period)
        if self.event_bus:
            self.event_bus.emit(COMPLIANCE_CHECK_COMPLETED, tenant_id, {
                "tenantId": tenant_id,
                "job": job,
                "period": period,
                "summary": summary,
            })
        return TenantResult(tenant_id=tenant_id, success=True, summary=summary)

    # Jobs

    def _run_quarterly_campaigns(self, tenant_id: str, now: datetime) -> Dict[str, Any]:
        try:
            campaign_id = self.campaign_engine.create_quarterly_campaign(tenant_id, now)
        except DuplicateActiveCampaign as e:
            logger.info(f"Tenant {tenant_id} already has active quarterly campaign {e.existing_id}")
            existing = self.campaign_engine.get_campaign(tenant_id, e.existing_id)
            created = 0
            if not existing.items_generated:
                created = self.campaign_engine.generate_review_items(tenant_id, existing.id)
            return {"campaign_id": existing.id, "duplicate": True, "items_created": created}

        created = self.campaign_engine.generate_review_items(tenant_id, campaign_id)
        return {"campaign_id": campaign_id, "duplicate": False, "items_created": created}

    def _run_drift_scan(self, tenant_id: str, now: datetime) -> Dict[str, Any]:
        summary = self.drift_detector.sync_alerts(tenant_id)
        summary["sod_open_violations"] = len(self.sod_evaluator.evaluate(tenant_id))
        return summary

    def _run_overprivileged_scan(self, tenant_id: str, now: datetime) -> Dict[str, Any]:
        return self.overprivileged_detector.sync_records(tenant_id, now)

    def _run_review_pass(self, tenant_id: str, now: datetime) -> Dict[str, Any]:
        summary = {"campaigns": 0, "reminders_sent": 0, "escalations": 0, "auto_approved": 0, "warnings": []}

        campaigns = self.store.list_campaigns(tenant_id, CampaignStatus.ACTIVE)
        for campaign in campaigns:
            summary["campaigns"] += 1
            days_remaining = days_until(campaign.due_date, now)

            if days_remaining in self.config.reminder_days:
                result = self.campaign_engine.send_reminders(tenant_id, campaign.id, now)
                summary["reminders_sent"] += result["sent"]
                summary["warnings"].extend(result["warnings"])

            if campaign.due_date >= now:
                continue

            days_overdue = -days_remaining
            if days_overdue in self.config.escalation_days:
                result = self.campaign_engine.escalate_overdue_reviews(tenant_id, campaign.id, days_overdue, now)
                summary["escalations"] += result["escalated"]
                summary["warnings"].extend(result["warnings"])

            timed_out = campaign.auto_approve_on_timeout and days_overdue >= self.config.auto_approve_after_days
            auto_approved = 0
            if timed_out:
                auto_approved = self.campaign_engine.auto_approve_pending_items(tenant_id, campaign.id)
                summary["auto_approved"] += auto_approved

            if self.event_bus:
                self.event_bus.emit(ACCESS_REVIEW_OVERDUE, tenant_id, {
                    "tenantId": tenant_id,
                    "campaignId": campaign.id,
                    "daysOverdue": days_overdue,
                    "autoApproved": timed_out,
                    "autoApprovedItems": auto_approved,
                })

        return summary

    # Background execution

    def start(self):
        """Start one background thread per job."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._run_loop, args=(job,), name=f"governance-{job}", daemon=True)
            for job in JOBS
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Orchestrator started ({len(self._threads)} jobs, every {self.config.check_interval_seconds}s)")

    def stop(self, timeout: float = 5.0):
        """Stop the background threads."""
        self._running = False
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Orchestrator stopped")

    def is_running(self) -> bool:
        return self._running

    def _run_loop(self, job: str):
        while not self._stop_event.is_set():
            try:
                self.run_job(job)
            except Exception as e:
                logger.exception(f"Job {job} tick failed: {e}")
            self._stop_event.wait(self.config.check_interval_seconds)

    def get_status(self) -> Dict[str, Any]:
        """Last completed period per tenant and job."""
        status: Dict[str, Any] = {"running": self._running, "jobs": {}}
        try:
            tenants = self.source.list_tenants()
        except DownstreamUnavailable as e:
            logger.error(f"Cannot list tenants for status: {e}")
            tenants = []

        for job in JOBS:
            status["jobs"][job] = {
                tenant_id: (run.last_run_period if run else None)
                for tenant_id in tenants
                for run in [self.store.get_job_run(tenant_id, job)]
            }
        return status
