"""
FastAPI Server for the Governance Engine.

Provides REST API endpoints for access review campaigns, privilege drift
alerts, overprivileged accounts and SoD violations. The tenant is taken
from the X-Tenant-ID header on every governance request.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from ..config import load_config
from ..errors import (
    CampaignNotActive,
    ConcurrentDecisionConflict,
    DownstreamUnavailable,
    DuplicateActiveCampaign,
    GovernanceError,
    InvalidTransition,
    RecordNotFound,
)
from ..models import (
    SYSTEM_REVIEWER,
    AccessReviewCampaign,
    AlertStatus,
    BatchReport,
    CampaignConfig,
    CampaignProgress,
    CampaignStatus,
    CampaignType,
    DriftResolution,
    OverprivilegedAccountRecord,
    OverprivilegedStatus,
    PrivilegeDriftAlert,
    RemediationAction,
    ReviewDecision,
    ReviewItem,
    ScopeType,
    SoDViolation,
    ViolationStatus,
    utcnow,
)
from ..scheduler.orchestrator import JOBS
from ..service import GovernanceService

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"


# Pydantic models for API requests/responses
class CampaignCreateRequest(BaseModel):
    """Access review campaign creation request."""
    name: str = Field(..., min_length=1, description="Campaign name")
    description: Optional[str] = Field(None, description="Campaign description")
    campaign_type: CampaignType = Field(CampaignType.AD_HOC, description="quarterly or ad-hoc")
    scope_type: ScopeType = Field(ScopeType.ALL, description="Population selector")
    scope_config: Dict[str, List[str]] = Field(default_factory=dict, description="Scope selection values")
    start_date: Optional[datetime] = Field(None, description="Defaults to now")
    due_date: Optional[datetime] = Field(None, description="Defaults to start plus the campaign duration")
    auto_approve_on_timeout: bool = Field(False, description="Approve pending items once overdue")
    created_by: str = Field(SYSTEM_REVIEWER, description="Campaign owner")


class CampaignCreateResponse(BaseModel):
    campaign_id: str


class GenerateItemsResponse(BaseModel):
    campaign_id: str
    items_created: int


class DecisionRequest(BaseModel):
    """Reviewer decision on a review item."""
    decision: ReviewDecision
    reviewer_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


class BulkDecisionRequest(BaseModel):
    item_ids: List[str] = Field(..., min_length=1)
    decision: ReviewDecision
    reviewer_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


class DriftResolveRequest(BaseModel):
    """Drift alert resolution request."""
    model_config = ConfigDict(populate_by_name=True)

    resolution_type: DriftResolution = Field(..., alias="resolutionType")
    notes: Optional[str] = None
    resolved_by: str = Field("api", alias="resolvedBy")


class ResolveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notes: Optional[str] = None
    resolved_by: str = Field("api", alias="resolvedBy")


class RemediateRequest(BaseModel):
    """Remediation of an overprivileged account."""
    model_config = ConfigDict(populate_by_name=True)

    action: RemediationAction
    plan: Optional[str] = None
    remediated_by: str = Field("api", alias="remediatedBy")


class JustificationRequest(BaseModel):
    """Business justification accepting an overprivileged account."""
    model_config = ConfigDict(populate_by_name=True)

    justification: str = Field(..., min_length=1)
    approved_by: str = Field(..., min_length=1, alias="approvedBy")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")


class ViolationResolveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: ViolationStatus
    notes: Optional[str] = None
    resolved_by: str = Field("api", alias="resolvedBy")


# Global components (initialized on startup)
service: Optional[GovernanceService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global service

    if service is None:
        logger.info("Initializing Governance Engine API server components")
        service = GovernanceService(load_config(os.environ.get("GOVERNANCE_CONFIG")))

    logger.info("Governance Engine API server components initialized")

    yield

    logger.info("Shutting down Governance Engine API server")
    if service and service.orchestrator.is_running():
        service.orchestrator.stop()


# Create FastAPI app
app = FastAPI(
    title="Access Governance Engine API",
    description="Access reviews, privilege drift, overprivileged accounts and segregation of duties",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS = [
    (RecordNotFound, 404),
    (DuplicateActiveCampaign, 409),
    (ConcurrentDecisionConflict, 409),
    (CampaignNotActive, 409),
    (InvalidTransition, 409),
    (DownstreamUnavailable, 503),
]


@app.exception_handler(GovernanceError)
async def governance_error_handler(request: Request, exc: GovernanceError):
    """Map domain errors onto HTTP status codes."""
    status_code = 500
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


def _service() -> GovernanceService:
    if not service:
        raise HTTPException(status_code=503, detail="Governance service not available")
    return service


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Access Governance Engine API", "version": "1.0.0", "status": "running"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "components": {
            "store": service is not None,
            "campaign_engine": service is not None and service.campaign_engine is not None,
            "orchestrator_running": service is not None and service.orchestrator.is_running(),
        }
    }


# Access review campaigns

@app.get("/access-reviews/campaigns", response_model=List[AccessReviewCampaign])
def list_campaigns(
    status: Optional[CampaignStatus] = Query(None, description="Filter by status"),
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    """List access review campaigns."""
    return _service().store.list_campaigns(tenant_id, status)


@app.post("/access-reviews/campaigns", response_model=CampaignCreateResponse, status_code=201)
def create_campaign(request: CampaignCreateRequest, tenant_id: str = Header(..., alias=TENANT_HEADER)):
    """Create an access review campaign."""
    svc = _service()
    start = request.start_date or utcnow()
    due = request.due_date or start + timedelta(days=svc.config.campaign_duration_days)

    try:
        config = CampaignConfig(
            **request.model_dump(exclude={"start_date", "due_date"}),
            start_date=start,
            due_date=due,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return CampaignCreateResponse(campaign_id=svc.campaign_engine.create_campaign(tenant_id, config))


@app.get("/access-reviews/campaigns/{campaign_id}", response_model=AccessReviewCampaign)
def get_campaign(campaign_id: str, tenant_id: str = Header(..., alias=TENANT_HEADER)):
    return _service().campaign_engine.get_campaign(tenant_id, campaign_id)


@app.post("/access-reviews/campaigns/{campaign_id}/generate-items", response_model=GenerateItemsResponse)
def generate_items(campaign_id: str, tenant_id: str = Header(..., alias=TENANT_HEADER)):
    """Materialise review items for the campaign's scope."""
    created = _service().campaign_engine.generate_review_items(tenant_id, campaign_id)
    return GenerateItemsResponse(campaign_id=campaign_id, items_created=created)


@app.get("/access-reviews/campaigns/{campaign_id}/progress", response_model=CampaignProgress)
def campaign_progress(campaign_id: str, tenant_id: str = Header(..., alias=TENANT_HEADER)):
    return _service().campaign_engine.get_campaign_progress(tenant_id, campaign_id)


@app.get("/access-reviews/campaigns/{campaign_id}/items", response_model=List[ReviewItem])
def list_review_items(
    campaign_id: str,
    decision: Optional[ReviewDecision] = Query(None, description="Filter by decision"),
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    svc = _service()
    svc.campaign_engine.get_campaign(tenant_id, campaign_id)
    return svc.store.list_review_items(tenant_id, campaign_id, decision)


@app.post("/access-reviews/campaigns/{campaign_id}/items/{item_id}/decision", response_model=ReviewItem)
def record_decision(
    campaign_id: str,
    item_id: str,
    request: DecisionRequest,
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    """
    Record a reviewer decision.

    A revocation that cannot be enforced is still recorded; the returned
    item then carries a warning.
    """
    engine = _service().campaign_engine
    item = engine.get_review_item(tenant_id, item_id)
    if item.campaign_id != campaign_id:
        raise RecordNotFound("Review item", item_id)

    try:
        return engine.record_decision(tenant_id, item_id, request.decision, request.reviewer_id, request.notes)
    except InvalidTransition as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@app.post("/access-reviews/campaigns/{campaign_id}/items/bulk-decision")
def record_bulk_decision(
    campaign_id: str,
    request: BulkDecisionRequest,
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    engine = _service().campaign_engine
    engine.get_campaign(tenant_id, campaign_id)
    return engine.record_bulk_decision(tenant_id, request.item_ids, request.decision,
                                       request.reviewer_id, request.notes)


@app.post("/access-reviews/campaigns/{campaign_id}/complete")
def complete_campaign(campaign_id: str, tenant_id: str = Header(..., alias=TENANT_HEADER)):
    """Complete a campaign and return its completion report."""
    return _service().campaign_engine.complete_campaign(tenant_id, campaign_id)


@app.post("/access-reviews/campaigns/{campaign_id}/cancel", response_model=AccessReviewCampaign)
def cancel_campaign(campaign_id: str, tenant_id: str = Header(..., alias=TENANT_HEADER)):
    return _service().campaign_engine.cancel_campaign(tenant_id, campaign_id, cancelled_by="api")


@app.get("/access-reviews/campaigns/{campaign_id}/export")
def export_campaign(campaign_id: str, tenant_id: str = Header(..., alias=TENANT_HEADER)):
    """Export campaign items and decisions as CSV."""
    csv_data = _service().campaign_engine.export_campaign_csv(tenant_id, campaign_id)
    return Response(
        content=csv_data,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename=campaign_{campaign_id}.csv"},
    )


# Privilege drift

@app.get("/privilege-drift", response_model=List[PrivilegeDriftAlert])
def list_drift_alerts(
    status: Optional[AlertStatus] = Query(None, description="Filter by status"),
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    return _service().store.list_drift_alerts(tenant_id, status)


@app.get("/privilege-drift/{alert_id}", response_model=PrivilegeDriftAlert)
def get_drift_alert(alert_id: str, tenant_id: str = Header(..., alias=TENANT_HEADER)):
    return _service().drift_detector.get_alert(tenant_id, alert_id)


@app.post("/privilege-drift/{alert_id}/resolve", response_model=PrivilegeDriftAlert)
def resolve_drift_alert(
    alert_id: str,
    request: DriftResolveRequest,
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    """Resolve a drift alert; ``revoked`` removes the excess entitlements."""
    return _service().drift_detector.resolve_alert(
        tenant_id, alert_id, request.resolution_type, request.resolved_by, request.notes
    )


# Overprivileged accounts

@app.get("/overprivileged-accounts", response_model=List[OverprivilegedAccountRecord])
def list_overprivileged_accounts(
    status: Optional[OverprivilegedStatus] = Query(None, description="Filter by status"),
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    return _service().store.list_overprivileged(tenant_id, status)


@app.get("/overprivileged-accounts/statistics")
def overprivileged_statistics(tenant_id: str = Header(..., alias=TENANT_HEADER)) -> Dict[str, Any]:
    return _service().overprivileged_detector.get_statistics(tenant_id)


@app.post("/overprivileged-accounts/{record_id}/resolve", response_model=OverprivilegedAccountRecord)
def resolve_overprivileged_account(
    record_id: str,
    request: ResolveRequest,
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    return _service().overprivileged_detector.resolve_record(
        tenant_id, record_id, request.resolved_by, request.notes
    )


@app.post("/overprivileged-accounts/{record_id}/remediate", response_model=OverprivilegedAccountRecord)
def remediate_overprivileged_account(
    record_id: str,
    request: RemediateRequest,
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    """Start remediation; ``downgrade`` moves stale admin grants to standard access."""
    return _service().overprivileged_detector.remediate_record(
        tenant_id, record_id, request.action, request.remediated_by, request.plan
    )


@app.post("/overprivileged-accounts/{record_id}/justification", response_model=OverprivilegedAccountRecord)
def justify_overprivileged_account(
    record_id: str,
    request: JustificationRequest,
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    return _service().overprivileged_detector.add_justification(
        tenant_id, record_id, request.justification, request.approved_by, request.expires_at
    )


@app.get("/overprivileged-accounts/{record_id}/recommendation")
def overprivileged_recommendation(
    record_id: str,
    tenant_id: str = Header(..., alias=TENANT_HEADER),
) -> Dict[str, Any]:
    return _service().overprivileged_detector.get_remediation_recommendation(tenant_id, record_id)


# Segregation of duties

@app.get("/sod-violations", response_model=List[SoDViolation])
def list_sod_violations(
    status: Optional[ViolationStatus] = Query(None, description="Filter by status"),
    user_id: Optional[str] = Query(None, description="Filter by user"),
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    return _service().store.list_sod_violations(tenant_id, status, user_id)


@app.get("/sod-violations/compliance-report")
def sod_compliance_report(
    framework: Optional[str] = Query(None, description="Compliance framework, e.g. SOX"),
    tenant_id: str = Header(..., alias=TENANT_HEADER),
) -> Dict[str, Any]:
    return _service().sod_evaluator.get_compliance_report(tenant_id, framework)


@app.post("/sod-violations/{violation_id}/resolve", response_model=SoDViolation)
def resolve_sod_violation(
    violation_id: str,
    request: ViolationResolveRequest,
    tenant_id: str = Header(..., alias=TENANT_HEADER),
):
    return _service().sod_evaluator.resolve_violation(
        tenant_id, violation_id, request.status, request.resolved_by, request.notes
    )


# Scheduler

@app.post("/scheduler/jobs/{job}/run", response_model=BatchReport)
def run_job(
    job: str,
    background_tasks: BackgroundTasks,
    background: bool = Query(False, description="Queue the run and return 202 immediately"),
):
    """
    Run one orchestrator job across all tenants.

    With ``background=true`` the batch runs after the response is sent and
    its report is only logged.
    """
    orchestrator = _service().orchestrator
    if job not in JOBS:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job}")

    if background:
        background_tasks.add_task(orchestrator.run_job, job)
        return JSONResponse(status_code=202, content={"job": job, "status": "accepted"})

    return orchestrator.run_job(job)


@app.get("/scheduler/status")
def scheduler_status():
    return _service().orchestrator.get_status()


def start_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False):
    """Start the FastAPI server."""
    uvicorn.run(
        "governance_engine.api.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    start_server()
