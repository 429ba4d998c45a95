"""
Core data models for the Governance Engine.

This module defines the Pydantic models used throughout the system
for entitlement facts, role policy, certification campaigns, detector
findings and the orchestrator's batch reports.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SYSTEM_REVIEWER = "system"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new record identifier."""
    return str(uuid.uuid4())


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RiskLevel(str, Enum):
    """Risk bands shared by every detector."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CampaignType(str, Enum):
    """Kinds of access certification campaigns."""
    QUARTERLY = "quarterly"
    AD_HOC = "ad-hoc"


class ScopeType(str, Enum):
    """How the population of a campaign is selected."""
    ALL = "all"
    DEPARTMENT = "department"
    RISK_TIER = "risk_tier"
    APPS = "apps"
    USERS = "users"


class CampaignStatus(str, Enum):
    """Lifecycle state of a campaign."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReviewDecision(str, Enum):
    """Reviewer decision on a single entitlement."""
    PENDING = "pending"
    APPROVED = "approved"
    REVOKED = "revoked"
    DEFERRED = "deferred"


class EnforcementStatus(str, Enum):
    """Downstream enforcement state of a review decision."""
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AlertStatus(str, Enum):
    """Status of drift alerts and overprivileged records."""
    OPEN = "open"
    RESOLVED = "resolved"


class DriftResolution(str, Enum):
    """How a drift alert was resolved."""
    REVOKED = "revoked"
    ROLE_UPDATED = "role_updated"
    FALSE_POSITIVE = "false_positive"
    CLEARED = "cleared"


class OverprivilegedStatus(str, Enum):
    """Lifecycle of an overprivileged-account record."""
    OPEN = "open"
    IN_REMEDIATION = "in_remediation"
    ACCEPTED_RISK = "accepted_risk"
    RESOLVED = "resolved"


class RemediationAction(str, Enum):
    """Remediation chosen for an overprivileged account."""
    DOWNGRADE = "downgrade"
    IMPLEMENT_JIT = "implement_jit"
    REQUIRE_MFA = "require_mfa"
    ACCEPT_RISK = "accept_risk"


class ViolationStatus(str, Enum):
    """Status of a segregation-of-duties violation."""
    OPEN = "open"
    REMEDIATED = "remediated"
    ACCEPTED = "accepted"


class ExpectedEntitlement(BaseModel):
    """An entitlement a role template expects its members to hold."""
    app_id: str = Field(..., description="Application identifier")
    app_name: Optional[str] = Field(None, description="Display name of the application")
    access_type: str = Field("read", description="Expected access level (read, write, admin, ...)")
    required: bool = Field(False, description="Whether holders must have this entitlement")


class RoleTemplate(BaseModel):
    """Expected entitlement set for a role/department combination."""
    id: str
    tenant_id: str
    name: str
    department: Optional[str] = None
    role_level: Optional[str] = None
    expected_apps: List[ExpectedEntitlement] = Field(default_factory=list)
    is_active: bool = True


class EntitlementGrant(BaseModel):
    """Immutable (user, application, access-level) fact from the entitlement source."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    user_id: str
    app_id: str
    access_type: str = Field(..., description="Granted access level")
    app_name: Optional[str] = None
    granted_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @field_validator("access_type")
    @classmethod
    def normalize_access_type(cls, v: str) -> str:
        """Access types are compared case-insensitively."""
        if not v or not v.strip():
            raise ValueError("access_type is required")
        return v.strip().lower()

    @field_validator("granted_at", "last_used_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def label(self) -> str:
        return f"{self.app_id}:{self.access_type}"


class UserProfile(BaseModel):
    """Directory record for a user, supplied alongside their grants."""
    tenant_id: str
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None
    role_template_id: Optional[str] = None
    manager_id: Optional[str] = None
    is_active: bool = True

    @property
    def display_name(self) -> str:
        return self.name or self.user_id


class AppEntitlement(BaseModel):
    """An (application, access level) pair used in detector evidence."""
    app_id: str
    access_type: str
    app_name: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.app_name or self.app_id}:{self.access_type}"


class CampaignConfig(BaseModel):
    """Parameters for creating an access review campaign."""
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    campaign_type: CampaignType = CampaignType.AD_HOC
    scope_type: ScopeType = ScopeType.ALL
    scope_config: Dict[str, List[str]] = Field(default_factory=dict)
    start_date: datetime
    due_date: datetime
    auto_approve_on_timeout: bool = False
    created_by: str = SYSTEM_REVIEWER

    @field_validator("start_date", "due_date")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @model_validator(mode="after")
    def validate_dates(self) -> "CampaignConfig":
        if self.due_date <= self.start_date:
            raise ValueError("due_date must be after start_date")
        return self


class AccessReviewCampaign(BaseModel):
    """A bounded-time certification exercise."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    description: Optional[str] = None
    campaign_type: CampaignType
    scope_type: ScopeType
    scope_config: Dict[str, List[str]] = Field(default_factory=dict)
    start_date: datetime
    due_date: datetime
    status: CampaignStatus = CampaignStatus.ACTIVE
    auto_approve_on_timeout: bool = False
    created_by: str = SYSTEM_REVIEWER
    created_at: datetime = Field(default_factory=utcnow)
    items_generated: bool = False
    total_items: int = 0
    reviewed_items: int = 0
    approved_items: int = 0
    revoked_items: int = 0
    deferred_items: int = 0
    completed_at: Optional[datetime] = None


class ReviewItem(BaseModel):
    """One entitlement under certification within a campaign."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    campaign_id: str
    user_id: str
    app_id: str
    access_type: str
    app_name: Optional[str] = None
    user_name: Optional[str] = None
    user_department: Optional[str] = None
    assigned_reviewer_id: Optional[str] = Field(None, description="Reviewer the item is assigned to")
    granted_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    risk_level: RiskLevel = RiskLevel.LOW
    decision: ReviewDecision = ReviewDecision.PENDING
    reviewer_id: Optional[str] = None
    decided_at: Optional[datetime] = None
    notes: Optional[str] = None
    enforcement_status: EnforcementStatus = EnforcementStatus.NOT_REQUIRED
    warning: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def natural_key(self) -> tuple:
        return (self.campaign_id, self.user_id, self.app_id, self.access_type)


class CampaignProgress(BaseModel):
    """Point-in-time progress of a campaign."""
    campaign_id: str
    status: CampaignStatus
    total_items: int
    reviewed_items: int
    pending_items: int
    approved_items: int
    revoked_items: int
    deferred_items: int
    percent_complete: int
    days_remaining: int
    is_overdue: bool


class DriftResult(BaseModel):
    """Outcome of comparing one user's grants against their role template."""
    tenant_id: str
    user_id: str
    role_template_id: str
    excess_apps: List[AppEntitlement] = Field(default_factory=list)
    missing_apps: List[AppEntitlement] = Field(default_factory=list)
    elevated_apps: List[AppEntitlement] = Field(default_factory=list)
    risk_score: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    risk_factors: List[str] = Field(default_factory=list)
    recommended_action: str = ""

    @property
    def has_drift(self) -> bool:
        return bool(self.excess_apps or self.missing_apps)


class PrivilegeDriftAlert(BaseModel):
    """Persisted drift finding for a (tenant, user, role template) key."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    user_id: str
    role_template_id: str
    excess_apps: List[AppEntitlement] = Field(default_factory=list)
    missing_apps: List[AppEntitlement] = Field(default_factory=list)
    elevated_apps: List[AppEntitlement] = Field(default_factory=list)
    risk_score: int = Field(0, ge=0, le=100)
    risk_level: RiskLevel = RiskLevel.LOW
    risk_factors: List[str] = Field(default_factory=list)
    recommended_action: str = ""
    status: AlertStatus = AlertStatus.OPEN
    resolution_type: Optional[DriftResolution] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    detected_at: datetime = Field(default_factory=utcnow)
    last_checked: datetime = Field(default_factory=utcnow)


class AdminApp(BaseModel):
    """Admin-level grant recorded as overprivilege evidence."""
    app_id: str
    access_type: str
    app_name: Optional[str] = None
    days_since_last_use: Optional[int] = None


class AppDowngrade(BaseModel):
    """Stale admin grant recommended for downgrade to standard access."""
    app_id: str
    current_access: str
    recommended_access: str
    app_name: Optional[str] = None


class OverprivResult(BaseModel):
    """Outcome of the admin-footprint check for one user."""
    tenant_id: str
    user_id: str
    admin_app_count: int
    admin_apps: List[AdminApp] = Field(default_factory=list)
    stale_admin_count: int = 0
    risk_score: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    risk_factors: List[str] = Field(default_factory=list)
    recommended_action: str = ""
    recommended_apps_to_downgrade: List[AppDowngrade] = Field(default_factory=list)
    least_privilege_alternative: str = ""


class OverprivilegedAccountRecord(BaseModel):
    """Persisted overprivileged-account finding keyed by (tenant, user)."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    user_id: str
    admin_app_count: int
    admin_apps: List[AdminApp] = Field(default_factory=list)
    stale_admin_count: int = 0
    risk_score: int = Field(0, ge=0, le=100)
    risk_level: RiskLevel = RiskLevel.LOW
    risk_factors: List[str] = Field(default_factory=list)
    recommended_action: str = ""
    recommended_apps_to_downgrade: List[AppDowngrade] = Field(default_factory=list)
    least_privilege_alternative: str = ""
    status: OverprivilegedStatus = OverprivilegedStatus.OPEN
    remediation_action: Optional[RemediationAction] = None
    remediation_plan: Optional[str] = None
    remediation_deadline: Optional[datetime] = None
    justification: Optional[str] = None
    justification_approved_by: Optional[str] = None
    justification_expires_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    detected_at: datetime = Field(default_factory=utcnow)
    last_checked: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        """Open or being remediated."""
        return self.status in (OverprivilegedStatus.OPEN, OverprivilegedStatus.IN_REMEDIATION)

    def risk_accepted_at(self, now: datetime) -> bool:
        """Whether an accepted risk still covers the account at ``now``."""
        if self.status != OverprivilegedStatus.ACCEPTED_RISK:
            return False
        return self.justification_expires_at is None or self.justification_expires_at > now


class EntitlementRef(BaseModel):
    """Reference to an entitlement inside a SoD conflict set.

    A missing access_type matches any access level on the application.
    """
    app_id: str
    access_type: Optional[str] = None

    @field_validator("access_type")
    @classmethod
    def normalize_access_type(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else None

    def matches(self, grant: EntitlementGrant) -> bool:
        if grant.app_id != self.app_id:
            return False
        return self.access_type is None or grant.access_type == self.access_type

    @property
    def label(self) -> str:
        return f"{self.app_id}:{self.access_type or '*'}"


class SoDRule(BaseModel):
    """A set of mutually exclusive entitlements."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    conflicting_entitlements: List[EntitlementRef] = Field(..., min_length=2)
    severity: RiskLevel = RiskLevel.HIGH
    is_active: bool = True
    rationale: Optional[str] = None
    compliance_framework: Optional[str] = None
    exempted_users: List[str] = Field(default_factory=list)


class SoDViolation(BaseModel):
    """A user holding every entitlement of an active SoD rule."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    rule_id: str
    user_id: str
    severity: RiskLevel
    status: ViolationStatus = ViolationStatus.OPEN
    evidence: List[AppEntitlement] = Field(default_factory=list)
    fingerprint: str = ""
    compliance_framework: Optional[str] = None
    detected_at: datetime = Field(default_factory=utcnow)
    last_checked: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None


class GovernanceEvent(BaseModel):
    """Domain event emitted for external policy automation."""
    id: str = Field(default_factory=new_id)
    name: str
    tenant_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=utcnow)


class AuditRecord(BaseModel):
    """Audit record for decisions and resolutions."""
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    tenant_id: str
    event_type: str = Field(..., description="Type of event (decision, resolution, revoke, ...)")
    actor: str = Field(..., description="Reviewer or system principal")
    subject: str = Field(..., description="Record the action applied to")
    action: str
    success: bool = True
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class JobRun(BaseModel):
    """Last completed period of a scheduled job for one tenant."""
    tenant_id: str
    job: str
    last_run_period: str
    completed_at: datetime = Field(default_factory=utcnow)


class TenantResult(BaseModel):
    """Outcome of one tenant's unit of work inside a job tick."""
    tenant_id: str
    success: bool
    skipped: bool = False
    summary: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None


class BatchReport(BaseModel):
    """Aggregated outcome of one orchestrator job tick across tenants."""
    job: str
    period: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    skipped: bool = False
    results: List[TenantResult] = Field(default_factory=list)

    @property
    def failed_tenants(self) -> List[str]:
        return [r.tenant_id for r in self.results if not r.success]

    @property
    def succeeded(self) -> int:
        return len([r for r in self.results if r.success])

    def to_summary(self) -> Dict[str, Any]:
        """Compact representation for logs and operators."""
        return {
            "job": self.job,
            "period": self.period,
            "skipped": self.skipped,
            "tenants": len(self.results),
            "succeeded": self.succeeded,
            "failed": self.failed_tenants,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
