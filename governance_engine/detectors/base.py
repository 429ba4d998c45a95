"""
Shared plumbing for the detectors.
"""

import logging
from typing import Any, Dict, Optional

from ..audit.audit_logger import AuditLogger
from ..audit.event_bus import EventBus
from ..config import GovernanceConfig
from ..connectors.base_connector import AccessLinkConnector, EntitlementSource
from ..engine.policy_store import RolePolicyStore
from ..engine.state_manager import GovernanceStore

logger = logging.getLogger(__name__)


class BaseDetector:
    """Wires a detector to its collaborators."""

    def __init__(
        self,
        source: EntitlementSource,
        policy_store: RolePolicyStore,
        store: GovernanceStore,
        event_bus: Optional[EventBus] = None,
        access_link: Optional[AccessLinkConnector] = None,
        audit_logger: Optional[AuditLogger] = None,
        config: Optional[GovernanceConfig] = None,
    ):
        self.source = source
        self.policy_store = policy_store
        self.store = store
        self.event_bus = event_bus
        self.access_link = access_link
        self.audit_logger = audit_logger
        self.config = config or GovernanceConfig()

    def _emit(self, name: str, tenant_id: str, payload: Dict[str, Any]):
        if self.event_bus:
            self.event_bus.emit(name, tenant_id, payload)

    def _audit(self, tenant_id: str, event_type: str, actor: str, subject: str, action: str,
               success: bool = True, error_message: Optional[str] = None, **metadata: Any):
        if self.audit_logger:
            self.audit_logger.record(tenant_id, event_type, actor, subject, action,
                                     success=success, error_message=error_message, **metadata)

    def _revoke(self, tenant_id: str, user_id: str, app_id: str, access_type: Optional[str],
                actor: str, subject: str) -> bool:
        """Request a revocation; failures are logged and audited, never raised."""
        if not self.access_link:
            logger.warning(f"No access-link connector configured; cannot revoke {app_id} from {user_id}")
            return False

        result = self.access_link.revoke_access(tenant_id, user_id, app_id, access_type)
        if not result.success:
            logger.error(f"Revocation of {app_id} from {user_id} failed: {result.error or result.message}")

        self._audit(tenant_id, "revoke", actor, subject, f"Revoke {app_id}:{access_type or '*'}",
                    success=result.success, error_message=result.error,
                    user_id=user_id, app_id=app_id)
        return result.success

    def _change_access(self, tenant_id: str, user_id: str, app_id: str, current_access: str,
                       new_access: str, actor: str, subject: str) -> bool:
        """Request an access-level change; failures are logged and audited, never raised."""
        if not self.access_link:
            logger.warning(f"No access-link connector configured; cannot change {app_id} for {user_id}")
            return False

        result = self.access_link.change_access(tenant_id, user_id, app_id, current_access, new_access)
        if not result.success:
            logger.error(f"Access change of {app_id} for {user_id} failed: {result.error or result.message}")

        self._audit(tenant_id, "access_change", actor, subject,
                    f"Change {app_id} from {current_access} to {new_access}",
                    success=result.success, error_message=result.error,
                    user_id=user_id, app_id=app_id)
        return result.success
