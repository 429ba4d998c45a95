"""
Component wiring for the Governance Engine.

Builds the store, connectors, detectors, campaign engine and orchestrator
from one GovernanceConfig, for use by the API server and the CLI.
"""

import logging
from pathlib import Path
from typing import Optional

from .audit import AuditLogger, EventBus
from .campaigns import CampaignEngine
from .config import GovernanceConfig
from .connectors import build_connectors
from .detectors import OverprivilegedAccountDetector, PrivilegeDriftDetector, SoDEvaluator
from .engine import GovernanceStore, RolePolicyStore
from .scheduler import Orchestrator

logger = logging.getLogger(__name__)


class GovernanceService:
    """All engine components, wired together."""

    def __init__(self, config: Optional[GovernanceConfig] = None):
        self.config = config or GovernanceConfig()

        self.store = GovernanceStore(self.config.state_file)
        self.policy_store = RolePolicyStore(Path(self.config.policy_dir) if self.config.policy_dir else None)
        self.audit_logger = AuditLogger(self.config.audit_dir)
        self.event_bus = EventBus(self.config.event_log_dir, self.config.event_history_size)
        self.source, self.access_link, self.notifier = build_connectors(self.config)

        detector_args = dict(
            source=self.source,
            policy_store=self.policy_store,
            store=self.store,
            event_bus=self.event_bus,
            access_link=self.access_link,
            audit_logger=self.audit_logger,
            config=self.config,
        )
        self.drift_detector = PrivilegeDriftDetector(**detector_args)
        self.overprivileged_detector = OverprivilegedAccountDetector(**detector_args)
        self.sod_evaluator = SoDEvaluator(**detector_args)

        self.campaign_engine = CampaignEngine(
            source=self.source,
            store=self.store,
            notifier=self.notifier,
            access_link=self.access_link,
            event_bus=self.event_bus,
            audit_logger=self.audit_logger,
            config=self.config,
        )

        self.orchestrator = Orchestrator(
            source=self.source,
            store=self.store,
            campaign_engine=self.campaign_engine,
            drift_detector=self.drift_detector,
            overprivileged_detector=self.overprivileged_detector,
            sod_evaluator=self.sod_evaluator,
            event_bus=self.event_bus,
            config=self.config,
        )

        logger.info(f"Governance service ready (mock_mode={self.config.mock_mode})")
