"""
Shared fixtures for the Governance Engine tests.
"""

from datetime import datetime, timezone
from typing import Optional

import pytest

from governance_engine.audit import AuditLogger, EventBus
from governance_engine.campaigns import CampaignEngine
from governance_engine.config import GovernanceConfig
from governance_engine.connectors import (
    MockAccessLinkConnector,
    MockEntitlementSource,
    MockNotificationGateway,
)
from governance_engine.detectors import (
    OverprivilegedAccountDetector,
    PrivilegeDriftDetector,
    SoDEvaluator,
)
from governance_engine.engine import GovernanceStore, RolePolicyStore
from governance_engine.models import EntitlementGrant, UserProfile
from governance_engine.scheduler import Orchestrator

TENANT = "acme"
NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: cross-component tests")


def make_user(user_id: str, tenant_id: str = TENANT, department: Optional[str] = None,
              manager_id: Optional[str] = None, role_template_id: Optional[str] = None,
              is_active: bool = True) -> UserProfile:
    return UserProfile(
        tenant_id=tenant_id,
        user_id=user_id,
        name=user_id.title(),
        email=f"{user_id}@example.com",
        department=department,
        manager_id=manager_id,
        role_template_id=role_template_id,
        is_active=is_active,
    )


def make_grant(user_id: str, app_id: str, access_type: str, tenant_id: str = TENANT,
               last_used_at: Optional[datetime] = None) -> EntitlementGrant:
    return EntitlementGrant(
        tenant_id=tenant_id,
        user_id=user_id,
        app_id=app_id,
        access_type=access_type,
        app_name=app_id.title(),
        last_used_at=last_used_at,
    )


@pytest.fixture
def config(tmp_path):
    return GovernanceConfig(audit_dir=str(tmp_path / "audit"))


@pytest.fixture
def source():
    return MockEntitlementSource()


@pytest.fixture
def access_link(source):
    return MockAccessLinkConnector(source=source)


@pytest.fixture
def notifier():
    return MockNotificationGateway()


@pytest.fixture
def store():
    return GovernanceStore()


@pytest.fixture
def policy_store(tmp_path):
    """Policy store without packaged templates or rules."""
    policy_dir = tmp_path / "policy"
    policy_dir.mkdir()
    return RolePolicyStore(policy_dir)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def audit_logger(config):
    return AuditLogger(config.audit_dir)


@pytest.fixture
def detector_kwargs(source, policy_store, store, event_bus, access_link, audit_logger, config):
    return dict(
        source=source,
        policy_store=policy_store,
        store=store,
        event_bus=event_bus,
        access_link=access_link,
        audit_logger=audit_logger,
        config=config,
    )


@pytest.fixture
def drift_detector(detector_kwargs):
    return PrivilegeDriftDetector(**detector_kwargs)


@pytest.fixture
def overprivileged_detector(detector_kwargs):
    return OverprivilegedAccountDetector(**detector_kwargs)


@pytest.fixture
def sod_evaluator(detector_kwargs):
    return SoDEvaluator(**detector_kwargs)


@pytest.fixture
def campaign_engine(source, store, notifier, access_link, event_bus, audit_logger, config):
    return CampaignEngine(
        source=source,
        store=store,
        notifier=notifier,
        access_link=access_link,
        event_bus=event_bus,
        audit_logger=audit_logger,
        config=config,
    )


@pytest.fixture
def orchestrator(source, store, campaign_engine, drift_detector, overprivileged_detector,
                 sod_evaluator, event_bus, config):
    return Orchestrator(
        source=source,
        store=store,
        campaign_engine=campaign_engine,
        drift_detector=drift_detector,
        overprivileged_detector=overprivileged_detector,
        sod_evaluator=sod_evaluator,
        event_bus=event_bus,
        config=config,
    )
